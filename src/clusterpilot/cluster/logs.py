"""
Node log retrieval boundary.

Reading log files happens on the host; the control plane only validates the
query and hands it to a LogCollector, by default the node's agent.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from ..agents.dispatcher import AgentDispatcher, CommandType
from ..hosts.directory import HostInfo
from ..registry.models import Cluster, Node
from ..utils.exceptions import DependencyError, ValidationError


class LogMode(str, Enum):
    TAIL = "tail"
    HEAD = "head"
    ALL = "all"


DEFAULT_LOG_LINES = 100


@dataclass
class LogQuery:
    lines: int = DEFAULT_LOG_LINES
    mode: LogMode = LogMode.TAIL
    filter: str = ""
    date: str = ""

    @classmethod
    def parse(cls, lines=None, mode=None, filter=None, date=None) -> "LogQuery":
        if lines is None or lines <= 0:
            lines = DEFAULT_LOG_LINES
        try:
            log_mode = LogMode(mode) if mode else LogMode.TAIL
        except ValueError:
            raise ValidationError(f"invalid log mode: {mode} (expected tail, head or all)")
        return cls(lines=lines, mode=log_mode, filter=filter or "", date=date or "")


class LogCollector(ABC):
    """Fetches a node's engine log from its host."""

    @abstractmethod
    async def collect(self, cluster: Cluster, node: Node, host: HostInfo, query: LogQuery) -> str:
        pass


class AgentLogCollector(LogCollector):
    """
    Collects logs through the node's agent.

    The agent reads ``<install_dir>/logs`` and answers with the selected
    lines in the reply message.
    """

    def __init__(self, dispatcher: AgentDispatcher):
        self.dispatcher = dispatcher

    async def collect(self, cluster: Cluster, node: Node, host: HostInfo, query: LogQuery) -> str:
        if not host.agent_id:
            raise DependencyError(f"host {host.id} has no agent to collect logs from")

        params = {
            "install_dir": node.install_dir or cluster.install_dir,
            "role": node.role.value,
            "lines": str(query.lines),
            "mode": query.mode.value,
            "filter": query.filter,
            "date": query.date,
        }
        reply = await self.dispatcher.send(host.agent_id, CommandType.COLLECT_LOGS, params)
        if not reply.success:
            raise DependencyError(f"failed to collect logs for node {node.id}: {reply.message}")
        return reply.message
