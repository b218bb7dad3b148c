"""
Agent command dispatch.
"""
from .dispatcher import (
    AgentDispatcher,
    CommandReply,
    CommandType,
    HTTPAgentDispatcher,
    probe_params,
)

__all__ = [
    "AgentDispatcher",
    "CommandReply",
    "CommandType",
    "HTTPAgentDispatcher",
    "probe_params",
]
