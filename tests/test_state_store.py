"""Tests for the run state embedded in the definition document."""

from __future__ import annotations

from pathlib import Path

import pytest

from spec_dag_runner.constants import STATE_SEPARATOR
from spec_dag_runner.errors import InvalidTransitionError
from spec_dag_runner.graph import DefinitionGraph
from spec_dag_runner.models import MergeStatus, RunStatus, SpecStatus
from spec_dag_runner.state_store import StateStore

DEFINITION = """# Checkout work for Q3
schema_version: "1.0"
dag:
  name: Checkout   # keep this comment
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


@pytest.fixture
def store(tmp_path: Path) -> StateStore:
    path = tmp_path / "dag.yaml"
    path.write_text(DEFINITION, encoding="utf-8")
    store = StateStore(path)
    store.load()
    store.ensure_specs({"A": "L0", "B": "L0", "C": "L1"})
    return store


def test_definition_text_is_preserved_byte_for_byte(store: StateStore) -> None:
    store.transition("A", SpecStatus.RUNNING, current_stage="execute")

    text = store.path.read_text(encoding="utf-8")
    definition, _, state = text.partition(STATE_SEPARATOR)
    assert definition == DEFINITION
    assert "A:" in state
    assert "status: running" in state


def test_reload_reconstructs_the_ready_set(store: StateStore) -> None:
    store.transition("A", SpecStatus.RUNNING)
    store.transition("A", SpecStatus.COMPLETED, commit_sha="abc123")
    store.transition("B", SpecStatus.RUNNING)
    store.transition("B", SpecStatus.COMPLETED)
    store.update_run(status=RunStatus.RUNNING)

    reloaded = StateStore(store.path)
    reloaded.load()
    assert reloaded.document is not None
    graph = DefinitionGraph(reloaded.document.definition)

    assert graph.ready_set(reloaded.state.statuses()) == graph.ready_set(store.state.statuses()) == ["C"]
    assert reloaded.spec("A").commit_sha == "abc123"
    assert reloaded.state.run is not None
    assert reloaded.state.run.status == RunStatus.RUNNING


def test_invalid_transition_is_refused(store: StateStore) -> None:
    with pytest.raises(InvalidTransitionError):
        store.transition("A", SpecStatus.COMPLETED)

    store.transition("A", SpecStatus.RUNNING)
    store.transition("A", SpecStatus.COMPLETED)
    with pytest.raises(InvalidTransitionError):
        store.transition("A", SpecStatus.PENDING)


def test_status_changes_must_use_transition(store: StateStore) -> None:
    with pytest.raises(ValueError):
        store.update_spec("A", status=SpecStatus.COMPLETED)


def test_reset_spec_clears_state_and_staging_record(store: StateStore) -> None:
    store.transition("A", SpecStatus.RUNNING)
    store.transition("A", SpecStatus.COMPLETED)
    store.update_layer("L0", branch="dag/checkout/stage-L0", base="main")
    store.record_layer_merge("L0", "A")
    store.update_merge("A", status=MergeStatus.MERGED, target="dag/checkout/stage-L0")

    state = store.reset_spec("A")

    assert state.status == SpecStatus.PENDING
    assert state.layer == "L0"
    assert state.merge.status == MergeStatus.PENDING
    staging = store.staging("L0")
    assert staging is not None
    assert staging.specs_merged == []


def test_unknown_keys_survive_a_save(store: StateStore) -> None:
    store.save()
    text = store.path.read_text(encoding="utf-8")
    store.path.write_text(text.replace("layer: L0\n", "layer: L0\n    note: keep me\n", 1), encoding="utf-8")

    store.load()
    store.update_spec("A", current_stage="execute")

    reloaded = StateStore(store.path)
    reloaded.load()
    assert reloaded.spec("A").extra == {"note": "keep me"}


def test_definition_edits_made_while_running_are_kept(store: StateStore) -> None:
    store.transition("A", SpecStatus.RUNNING)
    text = store.path.read_text(encoding="utf-8")
    store.path.write_text(text.replace("description: gamma", "description: gamma, revised"), encoding="utf-8")

    store.transition("A", SpecStatus.COMPLETED)

    assert "description: gamma, revised" in store.path.read_text(encoding="utf-8")


def test_inline_state_moves_below_separator(tmp_path: Path) -> None:
    path = tmp_path / "dag.yaml"
    path.write_text(DEFINITION + "specs:\n  A:\n    layer: L0\n    status: completed\n", encoding="utf-8")
    store = StateStore(path)
    store.load()

    assert store.spec("A").status == SpecStatus.COMPLETED
    store.update_spec("A", commit_sha="def456")

    definition, separator, state = path.read_text(encoding="utf-8").partition(STATE_SEPARATOR)
    assert separator
    assert "specs:" not in definition
    assert "commit_sha: def456" in state


def test_fresh_drops_every_state_section(store: StateStore) -> None:
    store.transition("A", SpecStatus.RUNNING)

    store.fresh()

    assert store.path.read_text(encoding="utf-8") == DEFINITION
    assert store.state.is_empty()
