"""Verify that a finished spec left its work committed on its branch.

`WorktreeCommitter` applies the same commit action afterwards to worktrees a
run left with uncommitted changes.
"""

from __future__ import annotations

import shlex
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from loguru import logger

from .agents import CliAgent
from .constants import (
    DEFAULT_AUTOCOMMIT_RETRIES,
    DEFAULT_COMMIT_COMMAND_TIMEOUT_SECONDS,
    DEFAULT_COMMIT_SESSION_TIMEOUT_SECONDS,
    EXIT_FAILED,
    EXIT_SUCCESS,
)
from .context import RunContext
from .errors import ConfigError, GitError
from .git_utils import _git_commits_ahead, _git_has_changes, _git_head_sha, _git_status_porcelain
from .models import CommitStatus
from .process import ProcessResult, run_process
from .worktree import WorktreeManager

FALLBACK_COMMIT_COMMAND = "git add -A && git commit -m {message}"

COMMIT_PROMPT = """The working tree of branch {branch} has uncommitted changes made while
implementing spec {spec_id}. Review them, then stage and commit everything that
belongs to the spec with a clear commit message. Do not push.

git status:
{status}
"""


@dataclass
class CommitResult:
    status: CommitStatus
    sha: Optional[str] = None
    attempts: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == CommitStatus.COMMITTED


class CommitVerifier:
    """Check for uncommitted work and commits ahead of the base reference.

    With ``enabled`` set, uncommitted changes trigger a commit action: the
    custom ``command_template`` when configured, else a commit session with
    ``agent``, else a plain ``git add -A && git commit``. The action is retried
    up to ``retries`` times.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        retries: int = DEFAULT_AUTOCOMMIT_RETRIES,
        command_template: Optional[str] = None,
        agent: Optional[CliAgent] = None,
        dag_id: str = "",
        command_timeout: float = DEFAULT_COMMIT_COMMAND_TIMEOUT_SECONDS,
        session_timeout: float = DEFAULT_COMMIT_SESSION_TIMEOUT_SECONDS,
    ):
        self.enabled = enabled
        self.retries = max(1, retries)
        self.command_template = command_template
        self.agent = agent
        self.dag_id = dag_id
        self.command_timeout = command_timeout
        self.session_timeout = session_timeout

    def _commit_action(
        self,
        worktree: Path,
        spec_id: str,
        branch: str,
        base_ref: str,
        cancel_event: Optional[threading.Event],
        log_path: Optional[Path],
    ) -> ProcessResult:
        if self.command_template:
            values = {
                "spec_id": spec_id,
                "worktree": str(worktree),
                "branch": branch,
                "base_branch": base_ref,
                "dag_id": self.dag_id,
            }
            command = self.command_template.format(**{k: shlex.quote(v) for k, v in values.items()})
            return run_process(
                ["sh", "-c", command],
                worktree,
                timeout_seconds=self.command_timeout,
                cancel_event=cancel_event,
                log_path=log_path,
                label=f"commit {spec_id}",
            )
        if self.agent is not None:
            prompt = COMMIT_PROMPT.format(
                branch=branch,
                spec_id=spec_id,
                status="\n".join(_git_status_porcelain(worktree)),
            )
            return self.agent.execute(
                prompt,
                worktree,
                timeout_seconds=self.session_timeout,
                cancel_event=cancel_event,
                log_path=log_path,
            )
        command = FALLBACK_COMMIT_COMMAND.format(message=shlex.quote(f"Implement spec {spec_id}"))
        return run_process(
            command,
            worktree,
            timeout_seconds=self.command_timeout,
            cancel_event=cancel_event,
            log_path=log_path,
            label=f"commit {spec_id}",
        )

    def verify(
        self,
        worktree: Path,
        *,
        spec_id: str,
        branch: str,
        base_ref: str,
        cancel_event: Optional[threading.Event] = None,
        log_path: Optional[Path] = None,
    ) -> CommitResult:
        """Return the commit status of ``worktree`` relative to ``base_ref``."""
        if not worktree.is_dir():
            return CommitResult(status=CommitStatus.FAILED, error=f"worktree {worktree} does not exist")

        attempts = 0
        log = logger.bind(spec_id=spec_id)
        while self.enabled and attempts < self.retries and _git_has_changes(worktree):
            if cancel_event is not None and cancel_event.is_set():
                break
            attempts += 1
            log.info("Uncommitted changes in {}; commit attempt {}/{}", spec_id, attempts, self.retries)
            result = self._commit_action(worktree, spec_id, branch, base_ref, cancel_event, log_path)
            if not result.ok:
                log.warning("Commit attempt {} for {} exited with {}", attempts, spec_id, result.exit_code)

        if _git_has_changes(worktree):
            if not self.enabled:
                error = "uncommitted changes left in worktree (autocommit disabled)"
            else:
                error = f"uncommitted changes remain after {attempts} commit attempt(s)"
            return CommitResult(status=CommitStatus.FAILED, attempts=attempts, error=error)

        try:
            ahead = _git_commits_ahead(worktree, base_ref)
        except GitError as exc:
            return CommitResult(status=CommitStatus.FAILED, attempts=attempts, error=str(exc))
        if ahead == 0:
            return CommitResult(
                status=CommitStatus.FAILED,
                attempts=attempts,
                error=f"no commits ahead of {base_ref}",
            )
        return CommitResult(status=CommitStatus.COMMITTED, sha=_git_head_sha(worktree), attempts=attempts)


@dataclass
class WorktreeCommitReport:
    committed: dict[str, str] = field(default_factory=dict)
    failed: dict[str, str] = field(default_factory=dict)
    pending: dict[str, list[str]] = field(default_factory=dict)

    @property
    def exit_code(self) -> int:
        return EXIT_FAILED if self.failed else EXIT_SUCCESS


class WorktreeCommitter:
    """Commit work a run left uncommitted in its spec worktrees.

    Only specs whose recorded worktree still exists and has changes are
    touched. The outcome is written back as the spec's commit status; the
    spec status itself is left for the next run to settle.
    """

    def __init__(self, ctx: RunContext, worktrees: WorktreeManager, verifier: CommitVerifier):
        self.ctx = ctx
        self.worktrees = worktrees
        self.verifier = verifier

    def find_uncommitted(self, only: Optional[str] = None) -> dict[str, Path]:
        """Map spec id to worktree path for every worktree with uncommitted changes.

        Raises:
            ConfigError: If ``only`` names a spec the definition does not have.
        """
        spec_ids = self.ctx.graph.spec_ids()
        if only is not None and only not in spec_ids:
            raise ConfigError(f"unknown spec id {only!r}")
        snapshot = self.ctx.store.snapshot()
        found: dict[str, Path] = {}
        for spec_id in spec_ids:
            if only is not None and spec_id != only:
                continue
            state = snapshot.specs.get(spec_id)
            if state is None or not state.worktree:
                continue
            worktree = self.worktrees.get(state.worktree)
            if worktree is None or not worktree.path.is_dir():
                continue
            if _git_has_changes(worktree.path):
                found[spec_id] = worktree.path
        return found

    def run(self, only: Optional[str] = None, dry_run: bool = False) -> WorktreeCommitReport:
        report = WorktreeCommitReport()
        for spec_id, path in self.find_uncommitted(only).items():
            if dry_run:
                report.pending[spec_id] = _git_status_porcelain(path)
                continue
            state = self.ctx.store.spec(spec_id)
            result = self.verifier.verify(
                path,
                spec_id=spec_id,
                branch=state.branch or "",
                base_ref=state.base_ref or self.ctx.config.base_branch,
                log_path=self.ctx.log_path(spec_id),
            )
            self.ctx.store.update_spec(spec_id, commit_status=result.status, commit_sha=result.sha)
            if result.ok:
                report.committed[spec_id] = result.sha or ""
                logger.info("Committed pending work of {} at {}", spec_id, result.sha)
            else:
                report.failed[spec_id] = result.error or "commit failed"
                logger.error("Could not commit pending work of {}: {}", spec_id, result.error)
        return report
