"""
Agent command dispatch.

Every remote action goes through an AgentDispatcher: one typed command with
string-keyed parameters to one host's agent, answered by a success flag and a
message. Transport failures raise DispatchError; a command that ran and failed
is a normal reply with success=False.
"""
import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

import aiohttp

from ..utils.exceptions import AgentUnreachableError, CommandTimeoutError, DispatchError
from ..utils.logging import logger


DEFAULT_COMMAND_TIMEOUT = 30.0


class CommandType(str, Enum):
    START = "start"
    STOP = "stop"
    RESTART = "restart"
    CHECK_PORT = "check_port"
    CHECK_DIRECTORY = "check_directory"
    CHECK_HTTP = "check_http"
    COLLECT_LOGS = "collect_logs"


@dataclass
class CommandReply:
    success: bool
    message: str = ""


class AgentDispatcher(ABC):
    """Sends commands to per-host agents."""

    def __init__(self, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        self.timeout = timeout
        self.logger = logger.getChild("dispatcher")

    @abstractmethod
    async def send(
        self,
        agent_id: str,
        command_type: CommandType,
        params: Dict[str, str],
        timeout: Optional[float] = None
    ) -> CommandReply:
        """
        Send one command and wait for the agent's reply.

        Args:
            agent_id: Opaque identifier of the target agent
            command_type: Command to run
            params: Command parameters
            timeout: Seconds to wait for the reply (default: dispatcher timeout)

        Returns:
            CommandReply from the agent

        Raises:
            AgentUnreachableError: If the agent cannot be contacted
            CommandTimeoutError: If no reply arrives in time
            DispatchError: For any other transport failure
        """
        pass


def probe_params(command_type: CommandType, **params: Any) -> Dict[str, str]:
    """Build parameters for a precheck probe; agents route probes by ``sub_command``."""
    result = {key: str(value) for key, value in params.items()}
    result["sub_command"] = CommandType(command_type).value
    return result


class HTTPAgentDispatcher(AgentDispatcher):
    """
    Dispatcher that relays commands through the agent gateway.

    ``POST {gateway_url}/api/agents/{agent_id}/commands`` with
    ``{"command_type": ..., "params": {...}}``; the gateway answers with
    ``{"success": bool, "message": str}``.
    """

    def __init__(self, gateway_url: str, timeout: float = DEFAULT_COMMAND_TIMEOUT):
        super().__init__(timeout)
        self.gateway_url = gateway_url.rstrip("/")

    async def send(
        self,
        agent_id: str,
        command_type: CommandType,
        params: Dict[str, str],
        timeout: Optional[float] = None
    ) -> CommandReply:
        command_type = CommandType(command_type)
        timeout = timeout or self.timeout
        url = f"{self.gateway_url}/api/agents/{agent_id}/commands"
        payload = {
            "command_type": command_type.value,
            "params": params
        }

        self.logger.debug(f"Sending {command_type.value} to agent {agent_id}: {params}")

        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(
                    url, json=payload, timeout=aiohttp.ClientTimeout(total=timeout)
                ) as response:
                    if response.status == 404:
                        raise AgentUnreachableError(agent_id, "agent not connected to gateway")
                    if response.status >= 500:
                        error = await response.text()
                        raise DispatchError(f"gateway error for agent '{agent_id}': {error}")
                    data = await response.json()

        except asyncio.TimeoutError:
            self.logger.warning(f"Command {command_type.value} to agent {agent_id} timed out")
            raise CommandTimeoutError(agent_id, timeout)
        except aiohttp.ClientConnectionError as e:
            raise AgentUnreachableError(agent_id, str(e))
        except aiohttp.ClientError as e:
            raise DispatchError(f"failed to send command to agent '{agent_id}': {e}")

        reply = CommandReply(
            success=bool(data.get("success", False)),
            message=str(data.get("message", ""))
        )
        self.logger.debug(
            f"Agent {agent_id} replied to {command_type.value}: "
            f"success={reply.success}, message={reply.message}"
        )
        return reply
