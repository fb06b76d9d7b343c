"""Tests for definition parsing."""

from __future__ import annotations

from pathlib import Path

import pytest

from spec_dag_runner.constants import STATE_SEPARATOR
from spec_dag_runner.errors import ParseError
from spec_dag_runner.parser import load_document, parse_definition, split_document

DEFINITION = """schema_version: "1.0"
dag:
  name: Checkout revamp
  id: checkout
execution:
  max_parallel: 3
  timeout: 30m
  base_branch: develop
  on_conflict: agent
layers:
  - id: L0
    name: Foundations
    features:
      - id: 001-auth
        description: Add token auth
        timeout: 45m
      - id: 002-db
        description: Add the orders table
  - id: L1
    depends_on: [L0]
    specs:
      - id: 003-api
        description: Expose the checkout API
        depends_on: [001-auth]
"""


class TestParseDefinition:
    def test_reads_metadata_and_execution_defaults(self):
        document = parse_definition(DEFINITION)
        definition = document.definition

        assert definition.schema_version == "1.0"
        assert definition.name == "Checkout revamp"
        assert definition.explicit_id == "checkout"
        assert definition.execution.max_parallel == 3
        assert definition.execution.timeout == 1800.0
        assert definition.execution.base_branch == "develop"
        assert definition.execution.on_conflict == "agent"
        assert document.problems == []

    def test_reads_layers_and_specs(self):
        definition = parse_definition(DEFINITION).definition

        assert [layer.id for layer in definition.layers] == ["L0", "L1"]
        assert definition.layers[0].name == "Foundations"
        assert definition.layers[1].depends_on == ["L0"]
        assert definition.spec_ids() == ["001-auth", "002-db", "003-api"]

        auth = definition.get_spec("001-auth")
        assert auth is not None
        assert auth.timeout == 2700.0
        assert auth.layer_id == "L0"

    def test_specs_key_is_an_alias_for_features(self):
        definition = parse_definition(DEFINITION).definition
        api = definition.get_spec("003-api")

        assert api is not None
        assert api.layer_id == "L1"
        assert api.depends_on == ["001-auth"]

    def test_records_source_positions(self):
        definition = parse_definition(DEFINITION).definition
        api = definition.get_spec("003-api")

        assert definition.layers[0].line == 11
        assert api is not None
        assert api.line is not None and api.line > definition.layers[1].line
        assert "001-auth" in api.dep_marks

    def test_malformed_yaml_reports_position(self):
        with pytest.raises(ParseError) as excinfo:
            parse_definition("schema_version: \"1.0\"\nlayers: [L0, L1\n")

        assert excinfo.value.line is not None

    def test_non_mapping_root_is_rejected(self):
        with pytest.raises(ParseError):
            parse_definition("- just\n- a list\n")

    def test_empty_document_is_rejected(self):
        with pytest.raises(ParseError):
            parse_definition("")

    def test_bad_shapes_are_collected_as_problems(self):
        text = DEFINITION.replace("max_parallel: 3", "max_parallel: lots").replace("timeout: 45m", "timeout: soon")
        document = parse_definition(text)

        messages = [str(problem) for problem in document.problems]
        assert any("max_parallel must be an integer" in message for message in messages)
        assert any("Invalid duration" in message for message in messages)


class TestRuntimeState:
    def test_split_document_without_state(self):
        definition, state = split_document(DEFINITION)

        assert definition == DEFINITION
        assert state is None

    def test_state_below_separator_is_loaded(self):
        text = DEFINITION + STATE_SEPARATOR + "\nspecs:\n  001-auth:\n    status: completed\n"
        document = parse_definition(text)

        assert document.definition_text == DEFINITION
        assert document.state_data["specs"]["001-auth"]["status"] == "completed"
        assert document.inline_state is False

    def test_state_keys_above_separator_are_flagged_inline(self):
        text = DEFINITION + "specs:\n  001-auth:\n    status: running\n"
        document = parse_definition(text)

        assert document.inline_state is True
        assert document.state_data["specs"]["001-auth"]["status"] == "running"

    def test_invalid_state_section_raises(self):
        with pytest.raises(ParseError):
            parse_definition(DEFINITION + STATE_SEPARATOR + "\n- not\n- a mapping\n")


def test_load_document_resolves_path(tmp_path: Path) -> None:
    path = tmp_path / "dag.yaml"
    path.write_text(DEFINITION, encoding="utf-8")

    document = load_document(path)

    assert document.definition.path == path.resolve()


def test_load_document_missing_file(tmp_path: Path) -> None:
    with pytest.raises(ParseError):
        load_document(tmp_path / "missing.yaml")
