"""Role runners for Agent Relay."""

from agent_relay.agents.base import (
    AgentResult,
    AgentRunner,
    CancellationToken,
    RoleInvocation,
)
from agent_relay.agents.model_agent import ModelRoleAgent, extract_json
from agent_relay.agents.tools import CommandResult, RoleTools, model_tools_for

__all__ = [
    "AgentResult",
    "AgentRunner",
    "CancellationToken",
    "CommandResult",
    "ModelRoleAgent",
    "RoleInvocation",
    "RoleTools",
    "extract_json",
    "model_tools_for",
]
