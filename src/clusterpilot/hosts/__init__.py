"""
Host inventory lookups.
"""
from .directory import (
    AgentStatus,
    HostDirectory,
    HostInfo,
    HTTPHostDirectory,
    InMemoryHostDirectory,
)

__all__ = [
    "AgentStatus",
    "HostDirectory",
    "HostInfo",
    "HTTPHostDirectory",
    "InMemoryHostDirectory",
]
