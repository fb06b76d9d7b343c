"""Registry of built-in coding agents."""

from __future__ import annotations

from typing import Optional

from ..errors import ConfigError
from .base import Capabilities, CliAgent, PromptMethod

# ---------------------------------------------------------------------------
# Built-in capability descriptions
# ---------------------------------------------------------------------------

BUILTIN_AGENTS: dict[str, tuple[str, Capabilities]] = {
    "claude": (
        "claude",
        Capabilities(
            prompt_method=PromptMethod.ARG,
            prompt_flag="-p",
            autonomous_flag="--dangerously-skip-permissions",
            output_format_args=("--output-format", "json"),
            optional_env=("ANTHROPIC_API_KEY",),
        ),
    ),
    "codex": (
        "codex",
        Capabilities(
            prompt_method=PromptMethod.SUBCOMMAND,
            subcommand="exec",
            autonomous_flag="--full-auto",
            output_format_args=("--json",),
            optional_env=("OPENAI_API_KEY",),
        ),
    ),
    "opencode": (
        "opencode",
        Capabilities(
            prompt_method=PromptMethod.SUBCOMMAND,
            subcommand="run",
            output_format_args=("--format", "json"),
        ),
    ),
}

CUSTOM_AGENT = "custom"


def agent_names() -> list[str]:
    return sorted([*BUILTIN_AGENTS, CUSTOM_AGENT])


def get_agent(name: str, command_template: Optional[str] = None) -> CliAgent:
    """Resolve an agent by name.

    Args:
        name: One of the built-in agents, or ``custom``.
        command_template: For ``custom`` (or any name when given), a command
            with a ``{prompt}`` placeholder; without one the prompt goes to stdin.

    Raises:
        ConfigError: If the name is unknown or ``custom`` has no template.
    """
    key = (name or "").strip().lower()
    if key == CUSTOM_AGENT or (command_template and key not in BUILTIN_AGENTS):
        if not command_template:
            raise ConfigError("agent 'custom' requires agent.command in the config")
        return CliAgent(
            name=key or CUSTOM_AGENT,
            executable=command_template.split()[0],
            capabilities=Capabilities(prompt_method=PromptMethod.TEMPLATE),
            template=command_template,
        )
    if key not in BUILTIN_AGENTS:
        raise ConfigError(f"unknown agent {name!r}; expected one of {', '.join(agent_names())}")
    executable, capabilities = BUILTIN_AGENTS[key]
    if command_template:
        # A template on a built-in agent replaces its command line, keeping its flags.
        return CliAgent(
            name=key,
            executable=command_template.split()[0],
            capabilities=Capabilities(
                prompt_method=PromptMethod.TEMPLATE,
                autonomous_flag=capabilities.autonomous_flag,
                output_format_args=capabilities.output_format_args,
                required_env=capabilities.required_env,
                optional_env=capabilities.optional_env,
            ),
            template=command_template,
        )
    return CliAgent(name=key, executable=executable, capabilities=capabilities)
