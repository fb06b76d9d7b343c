"""Resolve everything an invocation needs from a definition path.

The run is identified by the resolved path of its definition document. Branch
names and the state directory use a shorter naming id derived from the
definition's metadata.
"""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional

from loguru import logger

from .config import RunnerConfig, build_config
from .constants import (
    BRANCH_PREFIX,
    INTEGRATION_WORKTREE_SUFFIX,
    LOCKS_DIR,
    LOGS_DIR,
    PROGRESS_DIR,
    RUN_LOCK_SUFFIX,
    RUNS_DIR,
    STAGE_BRANCH_PREFIX,
    STATE_DIR_NAME,
    STATE_LOCK_SUFFIX,
)
from .errors import ConfigError, RunLockedError
from .git_utils import _ensure_local_exclude, _git_branch_exists, _git_repo_root
from .graph import DefinitionGraph
from .io_utils import FileLock
from .models import GraphDefinition, SpecState
from .state_store import StateStore
from .utils import short_hash, slugify
from .validator import ValidationReport, validate_definition


def resolve_dag_id(definition: GraphDefinition) -> str:
    if definition.explicit_id:
        return slugify(definition.explicit_id)
    if definition.name:
        return slugify(definition.name)
    if definition.path is not None:
        return slugify(definition.path.stem)
    return "dag"


@dataclass
class RunContext:
    definition_path: Path
    repo_root: Path
    dag_id: str
    config: RunnerConfig
    store: StateStore
    graph: DefinitionGraph
    report: ValidationReport

    @property
    def definition(self) -> GraphDefinition:
        return self.graph.definition

    @property
    def state_dir(self) -> Path:
        return self.repo_root / STATE_DIR_NAME / RUNS_DIR / f"{self.dag_id}-{short_hash(str(self.definition_path))}"

    @property
    def locks_dir(self) -> Path:
        return self.state_dir / LOCKS_DIR

    def log_path(self, spec_id: str) -> Path:
        return self.state_dir / LOGS_DIR / f"{spec_id}.log"

    def progress_path(self, spec_id: str) -> Path:
        return self.state_dir / PROGRESS_DIR / f"{spec_id}.json"

    @property
    def specs_dir(self) -> Path:
        return self.repo_root / self.config.specs_dir

    # ------------------------------------------------------------------
    # Naming
    # ------------------------------------------------------------------

    def spec_branch(self, spec_id: str) -> str:
        return f"{BRANCH_PREFIX}/{self.dag_id}/{spec_id}"

    def stage_branch(self, layer_id: str) -> str:
        return f"{BRANCH_PREFIX}/{self.dag_id}/{STAGE_BRANCH_PREFIX}{layer_id}"

    def worktree_name(self, spec_id: str) -> str:
        return f"{self.config.worktree.prefix}{self.dag_id}-{spec_id}"

    @property
    def integration_worktree_name(self) -> str:
        return f"{self.config.worktree.prefix}{self.dag_id}--{INTEGRATION_WORKTREE_SUFFIX}"

    def resolve_spec_branch(self, spec_id: str, state: SpecState) -> str:
        """Pick the branch for a spec, avoiding branches this run does not own."""
        if state.branch:
            return state.branch
        candidate = self.spec_branch(spec_id)
        if _git_branch_exists(self.repo_root, candidate):
            suffixed = f"{candidate}-{short_hash(str(self.definition_path))}"
            logger.warning("Branch {} already exists and is not owned by this run; using {}", candidate, suffixed)
            return suffixed
        return candidate

    def continue_command(self) -> str:
        return f"spec-dag merge {self.definition_path} --continue"

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def run_lock(self) -> Iterator[None]:
        """Hold the single-writer lock for this definition.

        Raises:
            RunLockedError: If another process holds it.
        """
        lock = FileLock(self.definition_path.with_name(self.definition_path.name + RUN_LOCK_SUFFIX), blocking=False)
        try:
            lock.acquire()
        except OSError as exc:
            raise RunLockedError(f"another invocation is already operating on {self.definition_path}") from exc
        try:
            yield
        finally:
            lock.release()


def open_context(
    definition_path: Path,
    *,
    overrides: Optional[Mapping[str, Any]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> RunContext:
    """Load, validate and wire up a definition.

    Raises:
        ParseError: If the document cannot be parsed.
        ValidationFailed: If validation reports errors.
        ConfigError: If the definition is not inside a git repository or the
            configuration is invalid.
    """
    definition_path = definition_path.resolve()
    store = StateStore(definition_path)
    store.load()
    assert store.document is not None
    document = store.document

    repo_root = _git_repo_root(definition_path.parent)
    if repo_root is None:
        raise ConfigError(f"{definition_path} is not inside a git repository")

    config = build_config(repo_root, document.definition, env=env, overrides=overrides)
    report = validate_definition(document, specs_dir=repo_root / config.specs_dir)
    report.raise_for_errors()
    for warning in report.warnings:
        logger.warning(warning)

    graph = DefinitionGraph(document.definition)
    ctx = RunContext(
        definition_path=definition_path,
        repo_root=repo_root,
        dag_id=resolve_dag_id(document.definition),
        config=config,
        store=store,
        graph=graph,
        report=report,
    )
    for entry in (f"{STATE_DIR_NAME}/", f"*{RUN_LOCK_SUFFIX}", f"*{STATE_LOCK_SUFFIX}"):
        _ensure_local_exclude(repo_root, entry)
    return ctx
