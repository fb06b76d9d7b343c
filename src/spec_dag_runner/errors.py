"""Exception hierarchy for the spec DAG runner."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional, Sequence

if TYPE_CHECKING:
    from .validator import ValidationReport


class SpecDagError(Exception):
    """Base class for all runner errors."""


class ConfigError(SpecDagError):
    """A configuration value is missing or malformed."""


# ---------------------------------------------------------------------------
# Definition errors
# ---------------------------------------------------------------------------


class DefinitionError(SpecDagError):
    """Raised for problems with the graph definition document."""

    def __init__(self, message: str, line: Optional[int] = None, column: Optional[int] = None):
        self.message = message
        self.line = line
        self.column = column
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.line is not None and self.column is not None:
            return f"line {self.line}, column {self.column}: {self.message}"
        if self.line is not None:
            return f"line {self.line}: {self.message}"
        return self.message


class ParseError(DefinitionError):
    """The document is not well-formed YAML or has the wrong shape."""


class CycleError(DefinitionError):
    """The combined dependency relation contains a cycle."""

    def __init__(self, path: Sequence[str], line: Optional[int] = None, column: Optional[int] = None):
        self.path = list(path)
        super().__init__(f"dependency cycle detected: {' -> '.join(self.path)}", line, column)


class ValidationFailed(DefinitionError):
    """Validation produced one or more errors."""

    def __init__(self, report: "ValidationReport"):
        self.report = report
        count = len(report.errors)
        first = str(report.errors[0]) if report.errors else ""
        super().__init__(f"{count} validation error(s): {first}")


# ---------------------------------------------------------------------------
# Git and worktree errors
# ---------------------------------------------------------------------------


class GitError(SpecDagError):
    """A git command exited unsuccessfully."""

    def __init__(self, command: Sequence[str], returncode: int, output: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output.strip()
        detail = f": {self.output}" if self.output else ""
        super().__init__(f"{' '.join(self.command)} exited with {returncode}{detail}")


class WorktreeError(SpecDagError):
    """Raised when a worktree cannot be created, validated or removed."""


class WorktreeExistsError(WorktreeError):
    """A worktree with the same name is already tracked."""


class SetupError(WorktreeError):
    """The worktree setup script failed or timed out."""


class UnsafeRemovalError(WorktreeError):
    """Removal refused because work would be lost."""


# ---------------------------------------------------------------------------
# Execution, commit and merge errors
# ---------------------------------------------------------------------------


class ExecutionError(SpecDagError):
    """The per-spec workflow could not be executed."""


class CommitVerificationError(SpecDagError):
    """A spec finished without a verifiable commit."""


class MergeError(SpecDagError):
    """A merge could not be performed for a reason other than conflicts."""


class MergeConflictError(MergeError):
    """A merge stopped with unresolved conflicts."""

    def __init__(self, spec_id: str, source: str, target: str, files: Sequence[str]):
        self.spec_id = spec_id
        self.source = source
        self.target = target
        self.files = list(files)
        super().__init__(
            f"merging {source} into {target} conflicts in {len(self.files)} file(s): {', '.join(self.files)}"
        )


# ---------------------------------------------------------------------------
# State and locking errors
# ---------------------------------------------------------------------------


class StateError(SpecDagError):
    """The embedded run state is unreadable or inconsistent."""


class InvalidTransitionError(StateError):
    """A spec status change is not allowed by the state machine."""

    def __init__(self, spec_id: str, current: str, target: str):
        self.spec_id = spec_id
        self.current = current
        self.target = target
        super().__init__(f"spec {spec_id}: invalid transition {current} -> {target}")


class LockHeldError(SpecDagError):
    """A spec lock is held by a live owner."""


class RunLockedError(SpecDagError):
    """Another process is already operating on the same definition."""
