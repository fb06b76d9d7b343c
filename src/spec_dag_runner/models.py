"""Define the graph definition and the durable run state models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional


class SpecStatus(str, Enum):
    """Lifecycle status of a single spec."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    BLOCKED = "blocked"
    POISON = "poison"


class RunStatus(str, Enum):
    """Overall status of a run."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"
    PAUSED = "paused"


class CommitStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


class MergeStatus(str, Enum):
    PENDING = "pending"
    MERGED = "merged"
    CONFLICT = "conflict"
    MERGE_FAILED = "merge_failed"
    SKIPPED = "skipped"


# Statuses a spec can hold once the current invocation is done with it.
SETTLED_STATUSES = {
    SpecStatus.COMPLETED,
    SpecStatus.FAILED,
    SpecStatus.POISON,
    SpecStatus.BLOCKED,
}

# Dependencies in these states make a dependent unrunnable.
BLOCKING_STATUSES = {
    SpecStatus.FAILED,
    SpecStatus.POISON,
    SpecStatus.BLOCKED,
}

# Leaving COMPLETED or POISON requires an explicit reset.
ALLOWED_TRANSITIONS: dict[SpecStatus, set[SpecStatus]] = {
    SpecStatus.PENDING: {SpecStatus.RUNNING, SpecStatus.BLOCKED},
    SpecStatus.RUNNING: {
        SpecStatus.COMPLETED,
        SpecStatus.FAILED,
        SpecStatus.INTERRUPTED,
        SpecStatus.POISON,
    },
    SpecStatus.FAILED: {SpecStatus.PENDING, SpecStatus.POISON},
    SpecStatus.INTERRUPTED: {SpecStatus.PENDING, SpecStatus.POISON},
    SpecStatus.BLOCKED: {SpecStatus.PENDING},
    SpecStatus.COMPLETED: set(),
    SpecStatus.POISON: set(),
}


def can_transition(current: SpecStatus, target: SpecStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, set())


def _coerce_enum(enum_cls: type[Enum], value: Any, default: Enum) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value))
    except ValueError:
        return default


def _compact(data: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in data.items() if value not in (None, [], {})}


# ---------------------------------------------------------------------------
# Graph definition
# ---------------------------------------------------------------------------


@dataclass
class SpecDef:
    """A spec as declared in the definition document."""

    id: str
    description: str
    layer_id: str
    depends_on: list[str] = field(default_factory=list)
    timeout: Optional[float] = None
    line: Optional[int] = None
    column: Optional[int] = None
    dep_marks: dict[str, tuple[int, int]] = field(default_factory=dict)


@dataclass
class Layer:
    """A named group of specs acting as a coarse dependency barrier."""

    id: str
    name: str = ""
    depends_on: list[str] = field(default_factory=list)
    specs: list[SpecDef] = field(default_factory=list)
    line: Optional[int] = None
    column: Optional[int] = None
    dep_marks: dict[str, tuple[int, int]] = field(default_factory=dict)


@dataclass
class ExecutionDefaults:
    """Optional ``execution:`` block of the definition document."""

    max_parallel: Optional[int] = None
    timeout: Optional[float] = None
    base_branch: Optional[str] = None
    on_conflict: Optional[str] = None
    merge_cadence: Optional[str] = None
    autocommit: Optional[bool] = None
    autocommit_cmd: Optional[str] = None
    layer_staging: Optional[bool] = None
    max_stage_failures: Optional[int] = None
    max_spec_retries: Optional[int] = None


@dataclass
class GraphDefinition:
    """Parsed graph definition: metadata, execution defaults and layers."""

    schema_version: str = ""
    name: str = ""
    explicit_id: str = ""
    layers: list[Layer] = field(default_factory=list)
    execution: ExecutionDefaults = field(default_factory=ExecutionDefaults)
    path: Optional[Path] = None
    # (line, column) of top-level keys such as "schema_version" or "dag.name".
    marks: dict[str, tuple[int, int]] = field(default_factory=dict)

    def iter_specs(self) -> Iterator[SpecDef]:
        for layer in self.layers:
            yield from layer.specs

    def spec_ids(self) -> list[str]:
        return [spec.id for spec in self.iter_specs()]

    def get_spec(self, spec_id: str) -> Optional[SpecDef]:
        for spec in self.iter_specs():
            if spec.id == spec_id:
                return spec
        return None


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------


@dataclass
class MergeState:
    status: MergeStatus = MergeStatus.PENDING
    target: Optional[str] = None
    conflicts: list[str] = field(default_factory=list)
    resolution: Optional[str] = None
    merged_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "MergeState":
        if not isinstance(data, dict):
            return cls()
        return cls(
            status=_coerce_enum(MergeStatus, data.get("status"), MergeStatus.PENDING),
            target=data.get("target"),
            conflicts=[str(item) for item in data.get("conflicts") or []],
            resolution=data.get("resolution"),
            merged_at=data.get("merged_at"),
            error=data.get("error"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "status": self.status.value,
                "target": self.target,
                "conflicts": list(self.conflicts),
                "resolution": self.resolution,
                "merged_at": self.merged_at,
                "error": self.error,
            }
        )


@dataclass
class SpecState:
    """Durable per-spec state used to resume and route execution."""

    layer: Optional[str] = None
    status: SpecStatus = SpecStatus.PENDING
    worktree: Optional[str] = None
    branch: Optional[str] = None
    base_ref: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    current_stage: Optional[str] = None
    commit_sha: Optional[str] = None
    commit_status: Optional[CommitStatus] = None
    failure_reason: Optional[str] = None
    failure_stage: Optional[str] = None
    failure_count: int = 0
    exit_code: Optional[int] = None
    blocked_by: list[str] = field(default_factory=list)
    merge: MergeState = field(default_factory=MergeState)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "SpecState":
        """Create a `SpecState` from a persisted mapping.

        Unknown keys are preserved in `extra` so hand-added notes survive a save.
        """
        extra = dict(data) if isinstance(data, dict) else {}

        def _pop(key: str, default: Any = None) -> Any:
            return extra.pop(key, default)

        commit_status = _pop("commit_status")
        exit_code = _pop("exit_code")
        return cls(
            layer=_pop("layer"),
            status=_coerce_enum(SpecStatus, _pop("status"), SpecStatus.PENDING),
            worktree=_pop("worktree"),
            branch=_pop("branch"),
            base_ref=_pop("base_ref"),
            started_at=_pop("started_at"),
            completed_at=_pop("completed_at"),
            current_stage=_pop("current_stage"),
            commit_sha=_pop("commit_sha"),
            commit_status=_coerce_enum(CommitStatus, commit_status, CommitStatus.PENDING)
            if commit_status
            else None,
            failure_reason=_pop("failure_reason"),
            failure_stage=_pop("failure_stage"),
            failure_count=int(_pop("failure_count", 0) or 0),
            exit_code=int(exit_code) if exit_code is not None else None,
            blocked_by=[str(item) for item in _pop("blocked_by", []) or []],
            merge=MergeState.from_dict(_pop("merge")),
            extra=extra,
        )

    def to_dict(self) -> dict[str, Any]:
        data = _compact(
            {
                "layer": self.layer,
                "status": self.status.value,
                "worktree": self.worktree,
                "branch": self.branch,
                "base_ref": self.base_ref,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
                "current_stage": self.current_stage,
                "commit_sha": self.commit_sha,
                "commit_status": self.commit_status.value if self.commit_status else None,
                "failure_reason": self.failure_reason,
                "failure_stage": self.failure_stage,
                "failure_count": self.failure_count or None,
                "exit_code": self.exit_code,
                "blocked_by": list(self.blocked_by),
                "merge": self.merge.to_dict(),
            }
        )
        data.update(self.extra)
        return data


@dataclass
class LayerStaging:
    branch: str
    base: Optional[str] = None
    created_at: Optional[str] = None
    specs_merged: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Any) -> "LayerStaging":
        data = data if isinstance(data, dict) else {}
        return cls(
            branch=str(data.get("branch") or ""),
            base=data.get("base"),
            created_at=data.get("created_at"),
            specs_merged=[str(item) for item in data.get("specs_merged") or []],
        )

    def to_dict(self) -> dict[str, Any]:
        data = _compact({"branch": self.branch, "base": self.base, "created_at": self.created_at})
        data["specs_merged"] = list(self.specs_merged)
        return data


@dataclass
class RunInfo:
    status: RunStatus = RunStatus.RUNNING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    merged_into: Optional[str] = None
    merged_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> Optional["RunInfo"]:
        if not isinstance(data, dict):
            return None
        return cls(
            status=_coerce_enum(RunStatus, data.get("status"), RunStatus.RUNNING),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            merged_into=data.get("merged_into"),
            merged_at=data.get("merged_at"),
        )

    def to_dict(self) -> dict[str, Any]:
        return _compact(
            {
                "status": self.status.value,
                "started_at": self.started_at,
                "completed_at": self.completed_at,
                "merged_into": self.merged_into,
                "merged_at": self.merged_at,
            }
        )


@dataclass
class RunState:
    """Runtime sections stored below the separator of a definition document."""

    run: Optional[RunInfo] = None
    specs: dict[str, SpecState] = field(default_factory=dict)
    staging: dict[str, LayerStaging] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> "RunState":
        data = data if isinstance(data, dict) else {}
        specs_raw = data.get("specs") if isinstance(data.get("specs"), dict) else {}
        staging_raw = data.get("staging") if isinstance(data.get("staging"), dict) else {}
        return cls(
            run=RunInfo.from_dict(data.get("run")),
            specs={str(key): SpecState.from_dict(value) for key, value in specs_raw.items()},
            staging={str(key): LayerStaging.from_dict(value) for key, value in staging_raw.items()},
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.run is not None:
            data["run"] = self.run.to_dict()
        if self.specs:
            data["specs"] = {key: value.to_dict() for key, value in self.specs.items()}
        if self.staging:
            data["staging"] = {key: value.to_dict() for key, value in self.staging.items()}
        return data

    def is_empty(self) -> bool:
        return self.run is None and not self.specs and not self.staging

    def statuses(self) -> dict[str, SpecStatus]:
        return {spec_id: state.status for spec_id, state in self.specs.items()}
