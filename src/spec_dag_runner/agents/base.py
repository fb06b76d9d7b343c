"""Capability-described command-line coding agents.

Each agent is described by how it accepts a prompt (flag, subcommand,
command template or stdin), the flag that lets it act without confirmation,
the arguments that switch it to structured output, and the environment it
needs. The rest of the runner only calls `CliAgent.build_command` and
`CliAgent.execute`.
"""

from __future__ import annotations

import os
import shlex
import shutil
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Mapping, Optional

from ..errors import ConfigError
from ..process import ProcessResult, run_process


class PromptMethod(str, Enum):
    ARG = "arg"  # <exe> <flag> <prompt>
    SUBCOMMAND = "subcommand"  # <exe> <subcommand> <prompt>
    TEMPLATE = "template"  # user template with a {prompt} placeholder
    STDIN = "stdin"  # prompt written to stdin


@dataclass(frozen=True)
class Capabilities:
    prompt_method: PromptMethod
    prompt_flag: str = ""
    subcommand: str = ""
    autonomous_flag: str = ""
    output_format_args: tuple[str, ...] = ()
    required_env: tuple[str, ...] = ()
    optional_env: tuple[str, ...] = ()


class CliAgent:
    """A coding agent invoked as an external command."""

    def __init__(
        self,
        name: str,
        executable: str,
        capabilities: Capabilities,
        template: Optional[str] = None,
    ):
        if capabilities.prompt_method == PromptMethod.TEMPLATE and not template:
            raise ConfigError(f"agent {name}: a command template is required")
        self.name = name
        self.executable = executable
        self.capabilities = capabilities
        self.template = template

    def __repr__(self) -> str:
        return f"CliAgent(name={self.name!r}, executable={self.executable!r})"

    def _mode_args(self, autonomous: bool, structured_output: bool) -> list[str]:
        caps = self.capabilities
        args: list[str] = []
        if autonomous and caps.autonomous_flag:
            args.append(caps.autonomous_flag)
        if structured_output:
            args.extend(caps.output_format_args)
        return args

    def build_command(self, prompt: str, autonomous: bool = True, structured_output: bool = False) -> list[str]:
        """Return the argument vector that delivers ``prompt`` to the agent.

        Template commands are kept as written; mode flags the template does not
        already contain are appended after it.
        """
        caps = self.capabilities
        if caps.prompt_method == PromptMethod.TEMPLATE:
            assert self.template is not None
            parts = shlex.split(self.template)
            command = [part.replace("{prompt}", prompt) for part in parts]
            command.extend(arg for arg in self._mode_args(autonomous, structured_output) if arg not in parts)
            return command

        command = [self.executable]
        if caps.prompt_method == PromptMethod.SUBCOMMAND:
            command.append(caps.subcommand)
        command.extend(self._mode_args(autonomous, structured_output))
        if caps.prompt_method == PromptMethod.ARG:
            if caps.prompt_flag:
                command.append(caps.prompt_flag)
            command.append(prompt)
        elif caps.prompt_method == PromptMethod.SUBCOMMAND:
            command.append(prompt)
        return command

    def _uses_stdin(self) -> bool:
        if self.capabilities.prompt_method == PromptMethod.STDIN:
            return True
        return self.capabilities.prompt_method == PromptMethod.TEMPLATE and "{prompt}" not in (self.template or "")

    def missing_env(self, env: Mapping[str, str]) -> list[str]:
        return [name for name in self.capabilities.required_env if not env.get(name)]

    def is_available(self) -> bool:
        """True when the executable is on PATH and the required environment is set."""
        if self.missing_env(os.environ):
            return False
        if self.capabilities.prompt_method == PromptMethod.TEMPLATE:
            parts = shlex.split(self.template or "")
            return bool(parts) and shutil.which(parts[0]) is not None
        return shutil.which(self.executable) is not None

    def execute(
        self,
        prompt: str,
        workdir: Path,
        *,
        autonomous: bool = True,
        timeout_seconds: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        log_path: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
        echo: bool = False,
        structured_output: bool = False,
    ) -> ProcessResult:
        """Run the agent on ``prompt`` in ``workdir``.

        Raises:
            ConfigError: If a required environment variable is unset.
        """
        missing = self.missing_env({**os.environ, **(env or {})})
        if missing:
            raise ConfigError(f"agent {self.name}: missing required environment variable(s) {', '.join(missing)}")
        return run_process(
            self.build_command(prompt, autonomous=autonomous, structured_output=structured_output),
            workdir,
            env=env,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            log_path=log_path,
            stdin_text=prompt if self._uses_stdin() else None,
            echo=echo,
            label=self.name,
        )
