"""Protected operations and fallbacks for LLM agent calls."""

from agent_circuit.agents.cli_agent import (
    AgentCommandError,
    AgentReply,
    AgentRequest,
    CliAgentOperation,
)
from agent_circuit.agents.fallbacks import (
    NoCachedResponseError,
    ResponseCache,
    ResponseStore,
    chained_fallback,
    static_fallback,
)
from agent_circuit.agents.response_store import SqliteResponseStore

__all__ = [
    "AgentCommandError",
    "AgentReply",
    "AgentRequest",
    "CliAgentOperation",
    "NoCachedResponseError",
    "ResponseCache",
    "ResponseStore",
    "SqliteResponseStore",
    "chained_fallback",
    "static_fallback",
]
