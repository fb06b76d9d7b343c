"""Tests for the status table."""

from __future__ import annotations

from pathlib import Path
from typing import Callable

from rich.console import Console

from spec_dag_runner.context import open_context
from spec_dag_runner.models import SpecStatus
from spec_dag_runner.status import render_status, status_counts

DEFINITION = """schema_version: "1.0"
dag:
  name: Status board
layers:
  - id: L0
    features:
      - id: A
        description: alpha
      - id: B
        description: beta
  - id: L1
    depends_on: [L0]
    features:
      - id: C
        description: gamma
"""


def test_status_lists_every_spec(repo: Path, write_definition: Callable[..., Path]) -> None:
    ctx = open_context(write_definition(DEFINITION), env={})
    ctx.store.ensure_specs({"A": "L0", "B": "L0", "C": "L1"})
    ctx.store.transition("A", SpecStatus.RUNNING)
    ctx.store.transition("A", SpecStatus.FAILED, failure_reason="[execute] exit code 2", failure_count=2)
    ctx.store.transition("C", SpecStatus.BLOCKED, blocked_by=["A"])
    console = Console(record=True, width=200)

    render_status(ctx, console)

    text = console.export_text()
    assert "Status board" in text
    assert "not started" in text
    assert "[execute] exit code 2 (x2)" in text
    assert "blocked by A" in text
    assert status_counts(ctx) == {"failed": 1, "pending": 1, "blocked": 1}
    assert "Specs: blocked=1, failed=1, pending=1" in text
