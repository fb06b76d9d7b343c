"""The ``merge`` operation: bring completed work into the target branch."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from loguru import logger

from .cleanup import CleanupManager, CleanupReport
from .constants import EXIT_FAILED, EXIT_SUCCESS
from .context import RunContext
from .models import MergeStatus, SpecStatus
from .staging import StagingManager
from .utils import _now_iso
from .worktree import WorktreeManager


@dataclass
class MergeReport:
    status: str = "completed"
    target: Optional[str] = None
    merged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    conflict_block: Optional[str] = None
    message: Optional[str] = None
    cleanup: Optional[CleanupReport] = None

    @property
    def exit_code(self) -> int:
        return EXIT_SUCCESS if self.status == "completed" else EXIT_FAILED


class MergeManager:
    """Merge completed specs into staging, then the last staging branch into the target."""

    def __init__(self, ctx: RunContext, staging: StagingManager, worktrees: WorktreeManager):
        self.ctx = ctx
        self.staging = staging
        self.worktrees = worktrees

    def run(
        self,
        target: Optional[str] = None,
        *,
        continue_: bool = False,
        skip_failed: bool = False,
        cleanup: bool = False,
    ) -> MergeReport:
        """Run the merge.

        Raises:
            MergeError: If ``--continue`` finds unresolved files or git fails.
        """
        target = target or self.ctx.config.base_branch
        report = MergeReport(target=target)
        final_source = self.ctx.stage_branch(self.ctx.graph.layers[-1].id) if self.staging.enabled else None

        if continue_:
            resolved = self.staging.continue_pending()
            if resolved:
                report.merged.append(resolved)
            elif final_source and self.staging.continue_final(final_source, target):
                logger.info("Final merge into {} completed", target)
            else:
                logger.info("No paused merge to continue")

        pending = self.staging.pending_conflict()
        if pending is not None:
            report.status = "paused"
            report.conflict_block = self.staging.conflict_block(pending)
            return report

        order = self.ctx.graph.topological_specs()
        snapshot = self.ctx.store.snapshot()
        incomplete = [
            spec_id
            for spec_id in order
            if snapshot.specs.get(spec_id) is None or snapshot.specs[spec_id].status != SpecStatus.COMPLETED
        ]
        if incomplete and not skip_failed:
            report.status = "failed"
            report.failed = incomplete
            report.message = f"specs not completed: {', '.join(incomplete)} (use --skip-failed to merge the rest)"
            return report
        for spec_id in incomplete:
            state = snapshot.specs.get(spec_id)
            if state is not None and state.merge.status != MergeStatus.SKIPPED:
                self.ctx.store.update_merge(spec_id, status=MergeStatus.SKIPPED)
            report.skipped.append(spec_id)

        if self.staging.enabled:
            for layer in self.ctx.graph.layers:
                self.staging.ensure_layer_branch(layer.id)

        for spec_id in order:
            if spec_id in incomplete:
                continue
            state = self.ctx.store.spec(spec_id)
            if self.staging.enabled:
                already = self.staging.is_stage_branch(state.merge.target)
            else:
                already = state.merge.target == target
            if state.merge.status == MergeStatus.MERGED and already:
                continue
            if self.staging.enabled:
                result = self.staging.merge_spec(spec_id)
            else:
                result = self.staging.merge_direct(spec_id, target)
            if result.status == MergeStatus.MERGED:
                report.merged.append(spec_id)
            elif result.status == MergeStatus.CONFLICT:
                report.status = "paused"
                report.conflict_block = result.block
                return report
            elif skip_failed:
                self.ctx.store.update_merge(spec_id, status=MergeStatus.SKIPPED)
                report.skipped.append(spec_id)
            else:
                report.status = "failed"
                report.failed.append(spec_id)
                report.message = f"merge of {spec_id} failed: {result.error}"
                return report

        if final_source is not None:
            for layer in self.ctx.graph.layers:
                self.staging.sync_layer_branch(layer.id)
            block = self.staging.final_merge(final_source, target)
            if block is not None:
                report.status = "paused"
                report.conflict_block = block
                return report
        else:
            self.ctx.store.update_run(merged_into=target, merged_at=_now_iso())

        if cleanup:
            report.cleanup = CleanupManager(self.ctx, self.worktrees, self.staging).run(force=False)
        return report
