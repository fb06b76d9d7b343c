"""Invoke the per-spec workflow inside a worktree.

The workflow itself is an external collaborator. The runner hands it a spec
id, a description and a worktree, and reads back an exit status plus the last
stage the workflow reported in its progress file.
"""

from __future__ import annotations

import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional, Protocol

from loguru import logger

from .agents import CliAgent
from .constants import DEFAULT_SPECS_DIR, DEFAULT_WORKFLOW_COMMAND, STAGE_EXECUTE
from .errors import ExecutionError
from .io_utils import _stage_from_progress
from .process import ProcessResult, run_process

PROGRESS_ENV = "SPEC_DAG_PROGRESS_FILE"
_PROGRESS_POLL_SECONDS = 2.0


@dataclass
class WorkflowRequest:
    spec_id: str
    description: str
    worktree: Path
    branch: str
    dag_id: str
    timeout_seconds: float
    progress_path: Path
    log_path: Optional[Path] = None
    cancel_event: threading.Event = field(default_factory=threading.Event)
    echo: bool = False
    specs_dir: str = DEFAULT_SPECS_DIR
    on_stage: Optional[Callable[[str], None]] = None

    @property
    def spec_dir(self) -> Path:
        return self.worktree / self.specs_dir / self.spec_id


@dataclass
class WorkflowOutcome:
    exit_code: int
    duration_seconds: float = 0.0
    stage: str = STAGE_EXECUTE
    timed_out: bool = False
    cancelled: bool = False
    output_tail: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    def failure_reason(self, timeout_seconds: float) -> str:
        if self.timed_out:
            return f"[{self.stage}] timed out after {int(timeout_seconds)}s"
        if self.cancelled:
            return f"[{self.stage}] cancelled"
        return f"[{self.stage}] exit code {self.exit_code}"


class WorkflowExecutor(Protocol):
    def execute(self, request: WorkflowRequest) -> WorkflowOutcome:
        ...


class _ProgressWatcher:
    """Poll a workflow's progress file and report stage changes."""

    def __init__(self, request: WorkflowRequest):
        self.request = request
        self.stage = STAGE_EXECUTE
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name=f"progress-{request.spec_id}", daemon=True)

    def __enter__(self) -> "_ProgressWatcher":
        self._thread.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self._stop.set()
        self._thread.join(timeout=5)
        self._poll()

    def _poll(self) -> None:
        stage = _stage_from_progress(self.request.progress_path)
        if stage and stage != self.stage:
            self.stage = stage
            if self.request.on_stage:
                self.request.on_stage(stage)

    def _run(self) -> None:
        while not self._stop.wait(_PROGRESS_POLL_SECONDS):
            self._poll()


def _outcome(result: ProcessResult, stage: str) -> WorkflowOutcome:
    return WorkflowOutcome(
        exit_code=result.exit_code,
        duration_seconds=result.duration_seconds,
        stage=stage,
        timed_out=result.timed_out,
        cancelled=result.cancelled,
        output_tail=result.output_tail,
    )


def _prepare(request: WorkflowRequest) -> None:
    request.progress_path.parent.mkdir(parents=True, exist_ok=True)
    if request.progress_path.exists():
        request.progress_path.unlink()


class CommandWorkflowExecutor:
    """Run a shell command template per spec.

    Placeholders: ``{spec_id}``, ``{description}``, ``{worktree}``,
    ``{branch}``, ``{dag_id}``, ``{spec_dir}`` and ``{progress_file}``. Values
    are shell-quoted. When the template does not mention ``{description}`` and
    the spec folder does not exist yet, ``-a <description>`` is appended so the
    workflow can originate the spec.
    """

    def __init__(self, command: str = DEFAULT_WORKFLOW_COMMAND):
        if not command.strip():
            raise ExecutionError("workflow command is empty")
        self.command = command

    def render(self, request: WorkflowRequest) -> str:
        values = {
            "spec_id": request.spec_id,
            "description": request.description,
            "worktree": str(request.worktree),
            "branch": request.branch,
            "dag_id": request.dag_id,
            "spec_dir": str(request.spec_dir),
            "progress_file": str(request.progress_path),
        }
        try:
            rendered = self.command.format(**{key: shlex.quote(value) for key, value in values.items()})
        except (KeyError, IndexError) as exc:
            raise ExecutionError(f"unknown placeholder in workflow command: {exc}") from exc
        if "{description}" not in self.command and request.description and not request.spec_dir.exists():
            rendered += f" -a {shlex.quote(request.description)}"
        return rendered

    def execute(self, request: WorkflowRequest) -> WorkflowOutcome:
        _prepare(request)
        command = self.render(request)
        logger.bind(spec_id=request.spec_id).info("Running workflow: {}", command)
        with _ProgressWatcher(request) as watcher:
            result = run_process(
                command,
                request.worktree,
                env={PROGRESS_ENV: str(request.progress_path)},
                timeout_seconds=request.timeout_seconds,
                cancel_event=request.cancel_event,
                log_path=request.log_path,
                echo=request.echo,
                label=request.spec_id,
            )
        return _outcome(result, watcher.stage)


WORKFLOW_PROMPT = """You are implementing spec {spec_id} in this repository worktree.

Description:
{description}

Spec folder: {spec_dir}
Work only inside this worktree. When you are done, commit all changes on the
current branch ({branch}) with a descriptive message.
"""


class AgentWorkflowExecutor:
    """Deliver the spec as a prompt to a coding agent."""

    def __init__(self, agent: CliAgent, autonomous: bool = True, structured_output: bool = False):
        self.agent = agent
        self.autonomous = autonomous
        self.structured_output = structured_output

    def build_prompt(self, request: WorkflowRequest) -> str:
        return WORKFLOW_PROMPT.format(
            spec_id=request.spec_id,
            description=request.description,
            spec_dir=request.spec_dir,
            branch=request.branch,
        )

    def execute(self, request: WorkflowRequest) -> WorkflowOutcome:
        _prepare(request)
        logger.bind(spec_id=request.spec_id).info("Delegating {} to agent {}", request.spec_id, self.agent.name)
        with _ProgressWatcher(request) as watcher:
            result = self.agent.execute(
                self.build_prompt(request),
                request.worktree,
                autonomous=self.autonomous,
                timeout_seconds=request.timeout_seconds,
                cancel_event=request.cancel_event,
                log_path=request.log_path,
                env={PROGRESS_ENV: str(request.progress_path)},
                echo=request.echo,
                structured_output=self.structured_output,
            )
        return _outcome(result, watcher.stage)
