"""Render the state of a run as a rich table."""

from __future__ import annotations

from collections import Counter
from typing import Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from .context import RunContext
from .models import MergeStatus, SpecState, SpecStatus

_STATUS_STYLES = {
    SpecStatus.PENDING: "dim",
    SpecStatus.RUNNING: "cyan",
    SpecStatus.COMPLETED: "green",
    SpecStatus.FAILED: "red",
    SpecStatus.INTERRUPTED: "yellow",
    SpecStatus.BLOCKED: "magenta",
    SpecStatus.POISON: "bold red",
}


def _detail(state: SpecState) -> str:
    if state.status == SpecStatus.BLOCKED and state.blocked_by:
        return f"blocked by {', '.join(state.blocked_by)}"
    if state.merge.status == MergeStatus.CONFLICT:
        return f"conflict in {', '.join(state.merge.conflicts)}"
    if state.failure_reason:
        if state.failure_count > 1:
            return f"{state.failure_reason} (x{state.failure_count})"
        return state.failure_reason
    if state.merge.error:
        return state.merge.error
    return ""


def status_counts(ctx: RunContext) -> Counter:
    snapshot = ctx.store.snapshot()
    return Counter(
        (snapshot.specs[spec_id].status if spec_id in snapshot.specs else SpecStatus.PENDING).value
        for spec_id in ctx.graph.spec_ids()
    )


def build_status_table(ctx: RunContext) -> Table:
    snapshot = ctx.store.snapshot()
    table = Table(title=f"{ctx.definition.name or ctx.dag_id}", show_lines=False)
    table.add_column("Spec", style="bold")
    table.add_column("Layer")
    table.add_column("Status")
    table.add_column("Stage")
    table.add_column("Merge")
    table.add_column("Branch", overflow="fold")
    table.add_column("Detail", overflow="fold")
    for layer in ctx.graph.layers:
        for spec in layer.specs:
            state = snapshot.specs.get(spec.id) or SpecState(layer=layer.id)
            style = _STATUS_STYLES.get(state.status, "")
            table.add_row(
                spec.id,
                layer.id,
                f"[{style}]{state.status.value}[/{style}]" if style else state.status.value,
                state.current_stage or "-",
                state.merge.status.value,
                state.branch or "-",
                escape(_detail(state)),
            )
    return table


def render_status(ctx: RunContext, console: Optional[Console] = None) -> None:
    console = console or Console()
    snapshot = ctx.store.snapshot()
    run = snapshot.run
    console.print(f"[bold]Definition:[/bold] {ctx.definition_path}")
    console.print(f"[bold]Run:[/bold]        {run.status.value if run else 'not started'}")
    if run and run.started_at:
        console.print(f"[bold]Started:[/bold]    {run.started_at}")
    if run and run.completed_at:
        console.print(f"[bold]Finished:[/bold]   {run.completed_at}")
    if run and run.merged_into:
        console.print(f"[bold]Merged into:[/bold] {run.merged_into} at {run.merged_at or '-'}")
    if ctx.config.layer_staging and snapshot.staging:
        for layer in ctx.graph.layers:
            staging = snapshot.staging.get(layer.id)
            if staging:
                console.print(
                    f"[bold]Layer {layer.id}:[/bold] {staging.branch} "
                    f"({len(staging.specs_merged)}/{len(layer.specs)} merged)"
                )
    console.print(build_status_table(ctx))
    counts = status_counts(ctx)
    console.print("Specs: " + ", ".join(f"{key}={value}" for key, value in sorted(counts.items())))
