from .base import Capabilities, CliAgent, PromptMethod
from .registry import BUILTIN_AGENTS, agent_names, get_agent

__all__ = [
    "BUILTIN_AGENTS",
    "Capabilities",
    "CliAgent",
    "PromptMethod",
    "agent_names",
    "get_agent",
]
