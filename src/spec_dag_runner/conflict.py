"""Build conflict context and resolve merge conflicts manually or with an agent."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence

from loguru import logger
from rich.console import Console

from .agents import CliAgent
from .constants import (
    CONFLICT_MARKER_END,
    CONFLICT_MARKER_START,
    CONFLICT_RESOLUTION_STEPS,
    DEFAULT_AGENT_RESOLVE_TIMEOUT_SECONDS,
    MAX_AGENT_RESOLVE_ATTEMPTS,
    ON_CONFLICT_AGENT,
    ON_CONFLICT_MANUAL,
)
from .errors import ConfigError
from .git_utils import _git_add, _git_conflicted_files

BANNER = "=" * 80
_CONTEXT_LINES = 3


@dataclass
class ConflictHunk:
    start_line: int
    end_line: int
    text: str


@dataclass
class ConflictContext:
    """Everything needed to resolve one conflicted file."""

    file: str
    hunks: list[ConflictHunk]
    spec_id: str
    description: str
    source_branch: str
    target_branch: str
    workdir: Path
    surrounding: str = ""


@dataclass
class ResolutionResult:
    resolved: bool
    method: str
    unresolved: list[str] = field(default_factory=list)
    block: Optional[str] = None


def extract_conflict_hunks(text: str) -> list[ConflictHunk]:
    """Return each ``<<<<<<< ... >>>>>>>`` block with 1-based line numbers."""
    hunks: list[ConflictHunk] = []
    lines = text.splitlines()
    start: Optional[int] = None
    for index, line in enumerate(lines):
        if line.startswith(CONFLICT_MARKER_START):
            start = index
        elif line.startswith(CONFLICT_MARKER_END) and start is not None:
            hunks.append(
                ConflictHunk(
                    start_line=start + 1,
                    end_line=index + 1,
                    text="\n".join(lines[start : index + 1]),
                )
            )
            start = None
    return hunks


def has_conflict_markers(path: Path) -> bool:
    try:
        text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return False
    return bool(extract_conflict_hunks(text))


def _surrounding(text: str, hunks: Sequence[ConflictHunk]) -> str:
    if not hunks:
        return ""
    lines = text.splitlines()
    first = hunks[0]
    before = lines[max(0, first.start_line - 1 - _CONTEXT_LINES) : first.start_line - 1]
    after = lines[first.end_line : first.end_line + _CONTEXT_LINES]
    return "\n".join([*before, "...", *after])


def build_conflict_contexts(
    workdir: Path,
    files: Sequence[str],
    *,
    spec_id: str,
    description: str,
    source_branch: str,
    target_branch: str,
) -> list[ConflictContext]:
    contexts: list[ConflictContext] = []
    for rel in files:
        path = workdir / rel
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            # Deleted on one side: no markers to show.
            text = ""
        hunks = extract_conflict_hunks(text)
        contexts.append(
            ConflictContext(
                file=rel,
                hunks=hunks,
                spec_id=spec_id,
                description=description,
                source_branch=source_branch,
                target_branch=target_branch,
                workdir=workdir,
                surrounding=_surrounding(text, hunks),
            )
        )
    return contexts


def format_manual_block(contexts: Sequence[ConflictContext], continue_command: str) -> str:
    """Render a self-contained, copy-pasteable description of the conflicts."""
    if not contexts:
        return ""
    first = contexts[0]
    out = [
        BANNER,
        "MERGE CONFLICT - Manual Resolution Required",
        BANNER,
        f"Spec:        {first.spec_id}",
        f"Description: {first.description}",
        f"Merging:     {first.source_branch} -> {first.target_branch}",
        f"Directory:   {first.workdir}",
        f"Files:       {len(contexts)}",
        "",
    ]
    for number, context in enumerate(contexts, 1):
        out.append(f"--- [{number}/{len(contexts)}] {context.file} ---")
        out.append("Context:")
        out.append(f"  Spec {context.spec_id} changes this file on {context.source_branch};")
        out.append(f"  {context.target_branch} changed the same lines.")
        if context.surrounding:
            out.append("  Nearby lines:")
            out.extend(f"    {line}" for line in context.surrounding.splitlines())
        out.append("Conflict Markers:")
        if context.hunks:
            for hunk in context.hunks:
                out.append(f"  Line {hunk.start_line}:")
                out.extend(f"    {line}" for line in hunk.text.splitlines())
        else:
            out.append("  (no text markers; the file was modified on one side and deleted on the other)")
        out.append("")
    out.append("Resolution Steps:")
    out.append(f"  cd {first.workdir}")
    for step_number, step in enumerate(CONFLICT_RESOLUTION_STEPS, 1):
        out.append(f"  {step_number}. {step}")
    out.append("")
    out.append(f"After resolving, run: {continue_command}")
    out.append(BANNER)
    return "\n".join(out)


RESOLVE_PROMPT = """Resolve the git merge conflict in {file}.

Spec {spec_id} ({description}) is being merged from {source} into {target}.
Keep the intent of both sides. Remove every conflict marker
('<<<<<<<', '=======', '>>>>>>>') and leave the file in a compilable state.
Edit only {file}. Do not commit.

Conflicting hunks:
{hunks}
"""


class ConflictResolver:
    """Route merge conflicts to a human or to a coding agent."""

    def __init__(
        self,
        mode: str = ON_CONFLICT_MANUAL,
        agent: Optional[CliAgent] = None,
        *,
        max_attempts: int = MAX_AGENT_RESOLVE_ATTEMPTS,
        timeout_seconds: float = DEFAULT_AGENT_RESOLVE_TIMEOUT_SECONDS,
    ):
        self.mode = mode
        self.agent = agent
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds

    def _resolve_with_agent(
        self,
        context: ConflictContext,
        cancel_event: Optional[threading.Event],
        log_path: Optional[Path],
    ) -> bool:
        assert self.agent is not None
        path = context.workdir / context.file
        prompt = RESOLVE_PROMPT.format(
            file=context.file,
            spec_id=context.spec_id,
            description=context.description,
            source=context.source_branch,
            target=context.target_branch,
            hunks="\n\n".join(f"Line {h.start_line}:\n{h.text}" for h in context.hunks) or "(none)",
        )
        for attempt in range(1, self.max_attempts + 1):
            if cancel_event is not None and cancel_event.is_set():
                return False
            logger.info("Agent resolving {} (attempt {}/{})", context.file, attempt, self.max_attempts)
            try:
                result = self.agent.execute(
                    prompt,
                    context.workdir,
                    timeout_seconds=self.timeout_seconds,
                    cancel_event=cancel_event,
                    log_path=log_path,
                )
            except ConfigError as exc:
                logger.error("Cannot resolve {} with an agent: {}", context.file, exc)
                return False
            if result.ok and path.exists() and not has_conflict_markers(path):
                _git_add(context.workdir, [context.file])
                return True
            logger.warning("Agent attempt {} left {} unresolved (exit {})", attempt, context.file, result.exit_code)
        return False

    def resolve(
        self,
        contexts: Sequence[ConflictContext],
        continue_command: str,
        *,
        cancel_event: Optional[threading.Event] = None,
        log_path: Optional[Path] = None,
    ) -> ResolutionResult:
        """Try to resolve ``contexts``.

        In agent mode every file is delegated to the agent; any file it cannot
        resolve falls back to the manual block. In manual mode the block is
        returned right away.
        """
        if self.mode == ON_CONFLICT_AGENT and self.agent is not None and contexts:
            unresolved = [
                context.file for context in contexts if not self._resolve_with_agent(context, cancel_event, log_path)
            ]
            workdir = contexts[0].workdir
            if not unresolved and not _git_conflicted_files(workdir):
                return ResolutionResult(resolved=True, method=ON_CONFLICT_AGENT)
            logger.warning("Agent could not resolve {}; falling back to manual resolution", ", ".join(unresolved))
            remaining = [context for context in contexts if context.file in set(unresolved)]
            return ResolutionResult(
                resolved=False,
                method=ON_CONFLICT_MANUAL,
                unresolved=unresolved,
                block=format_manual_block(remaining or list(contexts), continue_command),
            )
        return ResolutionResult(
            resolved=False,
            method=ON_CONFLICT_MANUAL,
            unresolved=[context.file for context in contexts],
            block=format_manual_block(contexts, continue_command),
        )


def print_manual_block(block: str, console: Optional[Console] = None) -> None:
    """Print the block verbatim so it stays copy-pasteable."""
    console = console or Console(soft_wrap=True)
    console.print(block, markup=False, highlight=False)
