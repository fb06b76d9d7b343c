"""Dispatch ready specs onto a bounded worker pool.

The scheduler owns every status transition. Worker threads only materialize
worktrees, run the workflow and verify commits, then hand a `SpecResult` back
to the main loop, which records it, merges completed specs into staging and
recomputes the ready set.
"""

from __future__ import annotations

import concurrent.futures
import threading
import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .commit import CommitVerifier
from .conflict import print_manual_block
from .constants import (
    DEFAULT_SCHEDULER_POLL_SECONDS,
    MERGE_CADENCE_IMMEDIATE,
    STAGE_COMMIT,
    STAGE_EXECUTE,
    STAGE_MERGE,
    STAGE_WORKTREE,
)
from .context import RunContext
from .errors import ConfigError, LockHeldError, MergeError, SpecDagError, WorktreeError
from .execution import WorkflowExecutor, WorkflowRequest
from .git_coordinator import get_git_coordinator
from .git_utils import _git_branch_exists, _git_delete_branch
from .logging_utils import spec_log_sink
from .models import (
    SETTLED_STATUSES,
    Layer,
    MergeState,
    MergeStatus,
    RunStatus,
    SpecState,
    SpecStatus,
)
from .speclock import SpecLockManager
from .staging import StagingManager
from .utils import _now_iso, format_seconds
from .worktree import WorktreeManager


@dataclass
class RunOptions:
    only: Optional[list[str]] = None
    clean: bool = False
    force: bool = False
    fail_fast: bool = False


@dataclass
class SpecResult:
    """Outcome of one worker job."""

    spec_id: str
    success: bool
    stage: str
    error: Optional[str] = None
    exit_code: Optional[int] = None
    cancelled: bool = False
    duration_seconds: float = 0.0


@dataclass
class RunSummary:
    status: RunStatus
    counts: dict[str, int]
    conflict_block: Optional[str] = None
    message: Optional[str] = None

    @property
    def exit_code(self) -> int:
        return 0 if self.status == RunStatus.COMPLETED else 1


class Scheduler:
    """Run the specs of one definition to completion, failure or pause."""

    def __init__(
        self,
        ctx: RunContext,
        executor: WorkflowExecutor,
        worktrees: WorktreeManager,
        staging: StagingManager,
        verifier: CommitVerifier,
        locks: Optional[SpecLockManager] = None,
        options: Optional[RunOptions] = None,
        *,
        poll_seconds: float = DEFAULT_SCHEDULER_POLL_SECONDS,
    ):
        self.ctx = ctx
        self.executor = executor
        self.worktrees = worktrees
        self.staging = staging
        self.verifier = verifier
        self.locks = locks or SpecLockManager(
            ctx.locks_dir,
            heartbeat_seconds=ctx.config.heartbeat_seconds,
            grace_seconds=ctx.config.heartbeat_grace_seconds,
        )
        self.options = options or RunOptions()
        self.poll_seconds = poll_seconds
        self.max_parallel = max(1, ctx.config.max_parallel)
        self.echo = self.max_parallel == 1

        self._stop_dispatch = threading.Event()
        self._kill = threading.Event()
        self._cancel_requested_at: Optional[float] = None
        self._in_flight: dict[str, concurrent.futures.Future[SpecResult]] = {}
        self._retries: Counter = Counter()
        self._halted: Optional[str] = None
        self._conflict_block: Optional[str] = None
        self._fail_fast_hit = False
        self._scope: set[str] = set(ctx.graph.spec_ids())

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop dispatching; a second call cancels in-flight work immediately."""
        if self._stop_dispatch.is_set():
            logger.warning("Cancelling in-flight specs now")
            self._kill.set()
            return
        logger.warning(
            "Cancellation requested: no new specs will start; in-flight specs get {}",
            format_seconds(self.ctx.config.cancel_grace_seconds),
        )
        self._cancel_requested_at = time.monotonic()
        self._stop_dispatch.set()

    def _maybe_kill(self) -> None:
        if self._cancel_requested_at is None or self._kill.is_set():
            return
        if time.monotonic() - self._cancel_requested_at >= self.ctx.config.cancel_grace_seconds:
            logger.warning("Grace period over; cancelling {} in-flight spec(s)", len(self._in_flight))
            self._kill.set()

    def _stopping(self) -> bool:
        return (
            self._stop_dispatch.is_set()
            or self._halted is not None
            or self._conflict_block is not None
            or self._fail_fast_hit
        )

    # ------------------------------------------------------------------
    # Preparation
    # ------------------------------------------------------------------

    def _resolve_scope(self) -> set[str]:
        all_ids = self.ctx.graph.spec_ids()
        if not self.options.only:
            return set(all_ids)
        unknown = [spec_id for spec_id in self.options.only if spec_id not in all_ids]
        if unknown:
            raise ConfigError(f"unknown spec id(s) in --only: {', '.join(unknown)}")
        return set(self.options.only)

    def _check_only_dependencies(self) -> None:
        if not self.options.only:
            return
        snapshot = self.ctx.store.snapshot()
        for spec_id in self._scope:
            for dep in self.ctx.graph.effective_deps(spec_id):
                dep_state = snapshot.specs.get(dep)
                if dep in self._scope or (dep_state and dep_state.status == SpecStatus.COMPLETED):
                    continue
                raise ConfigError(
                    f"spec {spec_id} depends on {dep}, which is neither completed nor listed in --only"
                )

    def clean_spec(self, spec_id: str) -> None:
        """Discard a spec's worktree, branch and state so it runs from scratch."""
        state = self.ctx.store.spec(spec_id)
        name = state.worktree or self.ctx.worktree_name(spec_id)
        if self.worktrees.get(name) is not None:
            self.worktrees.remove(name, force=True)
        branch = state.branch
        repo = self.ctx.repo_root
        if branch and _git_branch_exists(repo, branch):
            get_git_coordinator().execute_git_operation(
                lambda: _git_delete_branch(repo, branch, force=True), f"delete {branch}"
            )
        self.locks.release(spec_id)
        self.ctx.store.reset_spec(spec_id)
        logger.info("Cleaned {}", spec_id)

    def _next_failure_count(self, state: SpecState, stage: str) -> int:
        return state.failure_count + 1 if state.failure_stage == stage else 1

    def _normalize(self) -> None:
        """Make leftover state from an earlier invocation schedulable again."""
        limit = self.ctx.config.max_stage_failures
        for spec_id, state in self.ctx.store.snapshot().specs.items():
            if spec_id not in self._scope:
                continue
            if state.status == SpecStatus.INTERRUPTED:
                if state.failure_count >= limit:
                    self.ctx.store.transition(spec_id, SpecStatus.POISON)
                    logger.warning("{} is poison after {} interruptions at {}", spec_id, limit, state.failure_stage)
                else:
                    self.ctx.store.transition(spec_id, SpecStatus.PENDING)
            elif state.status == SpecStatus.FAILED:
                self.ctx.store.transition(spec_id, SpecStatus.PENDING)
                logger.info("Retrying failed spec {}", spec_id)
            elif state.status == SpecStatus.BLOCKED:
                self.ctx.store.transition(spec_id, SpecStatus.PENDING, blocked_by=[])
            elif state.status == SpecStatus.POISON:
                logger.warning(
                    "Skipping poison spec {} ({}); retry with --only {} --clean or --force",
                    spec_id,
                    state.failure_reason,
                    spec_id,
                )

    def _prepare(self) -> None:
        graph = self.ctx.graph
        self.ctx.store.ensure_specs({spec_id: graph.layer_of(spec_id).id for spec_id in graph.spec_ids()})
        self._scope = self._resolve_scope()
        if self.options.clean:
            for spec_id in graph.topological_specs(self._scope):
                self.clean_spec(spec_id)
        if self.options.force:
            for spec_id, state in self.ctx.store.snapshot().specs.items():
                if spec_id in self._scope and state.status == SpecStatus.POISON:
                    self.ctx.store.reset_spec(spec_id)
                    logger.info("Reset poison spec {}", spec_id)
        self.check_stale()
        self._normalize()
        self._check_only_dependencies()

    # ------------------------------------------------------------------
    # Stale detection
    # ------------------------------------------------------------------

    def check_stale(self) -> list[str]:
        """Interrupt specs recorded as running that no live worker owns.

        Returns:
            The ids that were interrupted.
        """
        interrupted: list[str] = []
        for spec_id, state in self.ctx.store.snapshot().specs.items():
            if state.status != SpecStatus.RUNNING or spec_id in self._in_flight:
                continue
            lock = self.locks.read(spec_id)
            ours = lock is not None and lock.owner == self.locks.owner
            if not ours and not self.locks.is_stale(lock):
                continue
            stage = state.current_stage or STAGE_EXECUTE
            count = self._next_failure_count(state, stage)
            self.ctx.store.transition(
                spec_id,
                SpecStatus.INTERRUPTED,
                failure_reason=f"[{stage}] stale heartbeat; no live process owns this spec",
                failure_stage=stage,
                failure_count=count,
            )
            self.locks.release(spec_id)
            logger.warning("{} was running with a stale heartbeat; marked interrupted", spec_id)
            if count >= self.ctx.config.max_stage_failures:
                self.ctx.store.transition(spec_id, SpecStatus.POISON)
            else:
                self.ctx.store.transition(spec_id, SpecStatus.PENDING)
            interrupted.append(spec_id)
        return interrupted

    # ------------------------------------------------------------------
    # Layers
    # ------------------------------------------------------------------

    def _layer_settled(self, layer: Layer, specs: dict[str, SpecState]) -> bool:
        for spec in layer.specs:
            if spec.id not in self._scope:
                continue
            state = specs.get(spec.id)
            if spec.id in self._in_flight or state is None or state.status not in SETTLED_STATUSES:
                return False
        return True

    def _layer_closed(self, layer: Layer, specs: dict[str, SpecState]) -> bool:
        if not self._layer_settled(layer, specs):
            return False
        return all(
            specs[spec.id].merge.status == MergeStatus.MERGED
            for spec in layer.specs
            if spec.id in specs and specs[spec.id].status == SpecStatus.COMPLETED
        )

    def open_layers(self) -> list[str]:
        """Layers whose specs may be dispatched: every layer up to the first unclosed one."""
        if not self.staging.enabled:
            return [layer.id for layer in self.ctx.graph.layers]
        specs = self.ctx.store.snapshot().specs
        opened: list[str] = []
        for layer in self.ctx.graph.layers:
            opened.append(layer.id)
            if not self._layer_closed(layer, specs):
                break
        return opened

    def _advance_layers(self) -> None:
        """Open layers in order and merge settled layers that still owe merges."""
        if not self.staging.enabled:
            return
        for layer in self.ctx.graph.layers:
            try:
                self.staging.ensure_layer_branch(layer.id)
                self.staging.sync_layer_branch(layer.id)
            except (MergeError, WorktreeError) as exc:
                self._halted = str(exc)
                logger.error("{}", exc)
                return
            specs = self.ctx.store.snapshot().specs
            if not self._layer_settled(layer, specs):
                return
            layer_ids = [spec.id for spec in layer.specs]
            for spec_id in self.ctx.graph.topological_specs(layer_ids):
                state = specs.get(spec_id)
                if state is None or state.status != SpecStatus.COMPLETED:
                    continue
                if state.merge.status == MergeStatus.MERGED:
                    continue
                if state.merge.status == MergeStatus.CONFLICT or not self._merge(spec_id):
                    return

    def _merge(self, spec_id: str) -> bool:
        """Merge ``spec_id`` into its staging branch. False stops further merges."""
        self.ctx.store.update_spec(spec_id, current_stage=STAGE_MERGE)
        try:
            result = self.staging.merge_spec(spec_id, cancel_event=self._kill)
        except (MergeError, WorktreeError) as exc:
            self._halted = f"merge of {spec_id} failed: {exc}"
            self.ctx.store.update_merge(spec_id, status=MergeStatus.MERGE_FAILED, error=str(exc))
            logger.error("{}", self._halted)
            return False
        if result.status == MergeStatus.CONFLICT:
            self._conflict_block = result.block
            if result.block:
                print_manual_block(result.block)
            return False
        if result.status != MergeStatus.MERGED:
            self._halted = f"merge of {spec_id} failed: {result.error}"
            logger.error("{}", self._halted)
            return False
        self.ctx.store.update_spec(spec_id, current_stage=None)
        return True

    # ------------------------------------------------------------------
    # Blocking and dispatch
    # ------------------------------------------------------------------

    def _mark_blocked(self) -> None:
        changed = True
        while changed:
            changed = False
            statuses = self.ctx.store.snapshot().statuses()
            for spec_id in self.ctx.graph.spec_ids():
                if spec_id not in self._scope or statuses.get(spec_id) != SpecStatus.PENDING:
                    continue
                blockers = self.ctx.graph.blocked_by(spec_id, statuses)
                if blockers:
                    self.ctx.store.transition(spec_id, SpecStatus.BLOCKED, blocked_by=blockers)
                    logger.warning("{} blocked by {}", spec_id, ", ".join(blockers))
                    changed = True

    def ready_specs(self) -> list[str]:
        statuses = self.ctx.store.snapshot().statuses()
        return [
            spec_id
            for spec_id in self.ctx.graph.ready_set(statuses, self.open_layers())
            if spec_id in self._scope and spec_id not in self._in_flight
        ]

    def _dispatch(self, pool: concurrent.futures.ThreadPoolExecutor) -> int:
        capacity = self.max_parallel - len(self._in_flight)
        if capacity <= 0:
            return 0
        dispatched = 0
        for spec_id in self.ready_specs()[:capacity]:
            try:
                self.locks.acquire(spec_id)
            except LockHeldError as exc:
                logger.warning("Not starting {}: {}", spec_id, exc)
                continue
            self.ctx.store.transition(
                spec_id,
                SpecStatus.RUNNING,
                started_at=_now_iso(),
                completed_at=None,
                current_stage=STAGE_WORKTREE,
                failure_reason=None,
                exit_code=None,
                blocked_by=[],
                commit_status=None,
                commit_sha=None,
                merge=MergeState(),
            )
            logger.info("Starting {} ({})", spec_id, self.ctx.graph.spec(spec_id).description)
            self._in_flight[spec_id] = pool.submit(self._execute_spec, spec_id)
            dispatched += 1
        return dispatched

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _materialize(self, spec_id: str) -> tuple[Path, str, str]:
        state = self.ctx.store.spec(spec_id)
        name = self.ctx.worktree_name(spec_id)
        base_ref = self.staging.base_ref_for_layer(self.ctx.graph.layer_of(spec_id).id)
        if self.worktrees.is_usable(name):
            existing = self.worktrees.get(name)
            assert existing is not None
            base_ref = state.base_ref or existing.base_ref or base_ref
            logger.bind(spec_id=spec_id).info("Reusing worktree {} at {}", name, existing.path)
            self.ctx.store.update_spec(spec_id, worktree=name, branch=existing.branch, base_ref=base_ref)
            return existing.path, existing.branch, base_ref
        if self.worktrees.get(name) is not None:
            logger.bind(spec_id=spec_id).warning("Worktree {} is unusable; recreating it", name)
            self.worktrees.remove(name, force=True)
        branch = self.ctx.resolve_spec_branch(spec_id, state)
        worktree = self.worktrees.create(
            name,
            branch,
            base_ref,
            cancel_event=self._kill,
            log_path=self.ctx.log_path(spec_id),
        )
        self.ctx.store.update_spec(spec_id, worktree=name, branch=branch, base_ref=base_ref)
        return worktree.path, branch, base_ref

    def _execute_spec(self, spec_id: str) -> SpecResult:
        spec = self.ctx.graph.spec(spec_id)
        log_path = self.ctx.log_path(spec_id)
        log = logger.bind(spec_id=spec_id)
        started = time.monotonic()
        stage = STAGE_WORKTREE
        with spec_log_sink(log_path, spec_id, self.ctx.config.max_log_size):
            try:
                path, branch, base_ref = self._materialize(spec_id)

                stage = STAGE_EXECUTE
                self.ctx.store.update_spec(spec_id, current_stage=stage)
                timeout = spec.timeout or self.ctx.config.spec_timeout
                request = WorkflowRequest(
                    spec_id=spec_id,
                    description=spec.description,
                    worktree=path,
                    branch=branch,
                    dag_id=self.ctx.dag_id,
                    timeout_seconds=timeout,
                    progress_path=self.ctx.progress_path(spec_id),
                    log_path=log_path,
                    cancel_event=self._kill,
                    echo=self.echo,
                    specs_dir=self.ctx.config.specs_dir,
                    on_stage=lambda current: self.ctx.store.update_spec(spec_id, current_stage=current),
                )
                outcome = self.executor.execute(request)
                if not outcome.success:
                    return SpecResult(
                        spec_id=spec_id,
                        success=False,
                        stage=outcome.stage,
                        error=outcome.failure_reason(timeout),
                        exit_code=outcome.exit_code,
                        cancelled=outcome.cancelled,
                        duration_seconds=time.monotonic() - started,
                    )

                stage = STAGE_COMMIT
                self.ctx.store.update_spec(spec_id, current_stage=stage)
                commit = self.verifier.verify(
                    path,
                    spec_id=spec_id,
                    branch=branch,
                    base_ref=base_ref,
                    cancel_event=self._kill,
                    log_path=log_path,
                )
                self.ctx.store.update_spec(spec_id, commit_status=commit.status, commit_sha=commit.sha)
                if not commit.ok:
                    return SpecResult(
                        spec_id=spec_id,
                        success=False,
                        stage=STAGE_COMMIT,
                        error=f"[{STAGE_COMMIT}] {commit.error}",
                        cancelled=self._kill.is_set(),
                        duration_seconds=time.monotonic() - started,
                    )
                log.info("{} finished in {}", spec_id, format_seconds(time.monotonic() - started))
                return SpecResult(
                    spec_id=spec_id,
                    success=True,
                    stage=STAGE_COMMIT,
                    exit_code=0,
                    duration_seconds=time.monotonic() - started,
                )
            except SpecDagError as exc:
                log.error("{} failed at {}: {}", spec_id, stage, exc)
                return SpecResult(
                    spec_id=spec_id,
                    success=False,
                    stage=stage,
                    error=f"[{stage}] {exc}",
                    cancelled=self._kill.is_set(),
                    duration_seconds=time.monotonic() - started,
                )

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------

    def _record_failure(self, result: SpecResult) -> SpecStatus:
        state = self.ctx.store.spec(result.spec_id)
        count = self._next_failure_count(state, result.stage)
        if result.cancelled:
            target = SpecStatus.INTERRUPTED
        elif count >= self.ctx.config.max_stage_failures:
            target = SpecStatus.POISON
        else:
            target = SpecStatus.FAILED
        self.ctx.store.transition(
            result.spec_id,
            target,
            failure_reason=result.error,
            failure_stage=result.stage,
            failure_count=count,
            exit_code=result.exit_code,
            current_stage=result.stage,
        )
        if target == SpecStatus.POISON:
            logger.error(
                "{} is poison after {} consecutive failures at {}: {}", result.spec_id, count, result.stage, result.error
            )
        elif target == SpecStatus.INTERRUPTED:
            logger.warning("{} interrupted at {}", result.spec_id, result.stage)
        else:
            logger.error("{} failed: {}", result.spec_id, result.error)
        return target

    def _handle_result(self, spec_id: str, future: concurrent.futures.Future[SpecResult]) -> None:
        self._in_flight.pop(spec_id, None)
        try:
            result = future.result()
        except Exception as exc:
            logger.exception("Unexpected error executing spec {}: {}", spec_id, exc)
            result = SpecResult(spec_id=spec_id, success=False, stage=STAGE_EXECUTE, error=f"unexpected error: {exc}")

        try:
            if result.success:
                self.ctx.store.transition(
                    spec_id,
                    SpecStatus.COMPLETED,
                    completed_at=_now_iso(),
                    current_stage=None,
                    failure_reason=None,
                    failure_stage=None,
                    failure_count=0,
                    exit_code=0,
                )
                logger.success("✓ {} completed ({})", spec_id, format_seconds(result.duration_seconds))
                if (
                    self.staging.enabled
                    and self.ctx.config.merge_cadence == MERGE_CADENCE_IMMEDIATE
                    and self._conflict_block is None
                    and self._halted is None
                ):
                    self._merge(spec_id)
                return

            status = self._record_failure(result)
            if status == SpecStatus.FAILED and self._retries[spec_id] < self.ctx.config.max_spec_retries:
                self._retries[spec_id] += 1
                self.ctx.store.transition(spec_id, SpecStatus.PENDING)
                logger.info(
                    "Re-queued {} (retry {}/{})", spec_id, self._retries[spec_id], self.ctx.config.max_spec_retries
                )
            elif status in (SpecStatus.FAILED, SpecStatus.POISON) and self.options.fail_fast:
                self._fail_fast_hit = True
                logger.warning("Stopping dispatch after failure of {} (--fail-fast)", spec_id)
        finally:
            self.locks.release(spec_id)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _waiting_on_stale(self) -> bool:
        specs = self.ctx.store.snapshot().specs
        return any(
            state.status == SpecStatus.RUNNING and spec_id not in self._in_flight
            for spec_id, state in specs.items()
            if spec_id in self._scope
        )

    def _final_status(self) -> RunStatus:
        if self._stop_dispatch.is_set():
            return RunStatus.INTERRUPTED
        if self._conflict_block is not None or self.staging.pending_conflict() is not None:
            return RunStatus.PAUSED
        if self._halted is not None or self._fail_fast_hit:
            return RunStatus.FAILED
        specs = self.ctx.store.snapshot().specs
        for spec_id in self._scope:
            state = specs.get(spec_id)
            if state is None or state.status != SpecStatus.COMPLETED:
                return RunStatus.FAILED
            if self.staging.enabled and state.merge.status != MergeStatus.MERGED:
                return RunStatus.FAILED
        return RunStatus.COMPLETED

    def _summary(self, status: RunStatus) -> RunSummary:
        specs = self.ctx.store.snapshot().specs
        counts = Counter(
            (specs[spec_id].status if spec_id in specs else SpecStatus.PENDING).value
            for spec_id in self.ctx.graph.spec_ids()
        )
        return RunSummary(status=status, counts=dict(counts), conflict_block=self._conflict_block, message=self._halted)

    def run(self) -> RunSummary:
        """Run until every in-scope spec is settled, or the run pauses or is cancelled."""
        self.ctx.store.update_run(status=RunStatus.RUNNING, started_at=_now_iso(), completed_at=None)
        self._prepare()

        pending = self.staging.pending_conflict()
        if pending is not None:
            self._conflict_block = self.staging.conflict_block(pending)
            print_manual_block(self._conflict_block)
            self.ctx.store.update_run(status=RunStatus.PAUSED)
            return self._summary(RunStatus.PAUSED)

        logger.info(
            "Running {} spec(s) of {} with max_parallel={}",
            len(self._scope),
            self.ctx.dag_id,
            self.max_parallel,
        )
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=self.max_parallel, thread_name_prefix="spec")
        try:
            while True:
                self.check_stale()
                if not self._stopping():
                    self._advance_layers()
                self._mark_blocked()
                if not self._stopping():
                    self._dispatch(pool)

                if not self._in_flight:
                    if self._stopping() or not self._waiting_on_stale():
                        break
                    self._stop_dispatch.wait(self.poll_seconds)
                    continue

                futures = {future: spec_id for spec_id, future in self._in_flight.items()}
                done, _ = concurrent.futures.wait(
                    futures, timeout=self.poll_seconds, return_when=concurrent.futures.FIRST_COMPLETED
                )
                for future in done:
                    self._handle_result(futures[future], future)
                self._maybe_kill()
        finally:
            pool.shutdown(wait=True)
            self.locks.stop()

        status = self._final_status()
        self.ctx.store.update_run(status=status, completed_at=_now_iso())
        summary = self._summary(status)
        logger.info(
            "Run {}: {}", status.value, ", ".join(f"{key}={value}" for key, value in sorted(summary.counts.items()))
        )
        return summary
