"""Tests for configuration layering."""

from __future__ import annotations

from pathlib import Path

import pytest

from spec_dag_runner.config import RunnerConfig, build_config, configured_specs_dir
from spec_dag_runner.errors import ConfigError
from spec_dag_runner.parser import parse_definition

DEFINITION = """schema_version: "1.0"
dag:
  name: Config
execution:
  max_parallel: 2
  timeout: 30m
  on_conflict: agent
layers:
  - id: L0
    features:
      - id: A
        description: alpha
"""


def _write_config(repo: Path, text: str) -> None:
    path = repo / ".spec_dag" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def test_defaults(tmp_path: Path) -> None:
    config = build_config(tmp_path, env={})

    assert config == RunnerConfig()
    assert config.base_branch == "main"
    assert config.max_parallel == 4
    assert config.layer_staging is True
    assert config.max_stage_failures == 3


def test_definition_overrides_config_file(tmp_path: Path) -> None:
    _write_config(
        tmp_path,
        "execution:\n  max_parallel: 8\n  base_branch: develop\nworktree:\n  prefix: wt-\n  copy_dirs: [node_modules]\n",
    )
    definition = parse_definition(DEFINITION).definition

    config = build_config(tmp_path, definition, env={})

    assert config.max_parallel == 2
    assert config.base_branch == "develop"
    assert config.spec_timeout == 1800
    assert config.on_conflict == "agent"
    assert config.worktree.prefix == "wt-"
    assert config.worktree.copy_dirs == ("node_modules",)


def test_environment_and_overrides_win(tmp_path: Path) -> None:
    definition = parse_definition(DEFINITION).definition
    env = {
        "SPEC_DAG_MAX_PARALLEL": "6",
        "SPEC_DAG_AUTOCOMMIT": "off",
        "SPEC_DAG_WORKTREE_BASE_DIR": "worktrees",
        "SPEC_DAG_COPY_DIRS": "node_modules, .venv",
    }

    config = build_config(tmp_path, definition, env=env)
    assert config.max_parallel == 6
    assert config.autocommit is False
    assert config.worktree.base_dir == (tmp_path / "worktrees").resolve()
    assert config.worktree.copy_dirs == ("node_modules", ".venv")

    config = build_config(tmp_path, definition, env=env, overrides={"max_parallel": 1, "timeout": None})
    assert config.max_parallel == 1
    assert config.spec_timeout == 1800


@pytest.mark.parametrize(
    ("variable", "value", "message"),
    [
        ("SPEC_DAG_MAX_PARALLEL", "0", "max_parallel"),
        ("SPEC_DAG_MAX_PARALLEL", "many", "max_parallel"),
        ("SPEC_DAG_ON_CONFLICT", "ignore", "on_conflict"),
        ("SPEC_DAG_LAYER_STAGING", "maybe", "layer_staging"),
        ("SPEC_DAG_TIMEOUT", "soon", "timeout"),
    ],
)
def test_malformed_values_raise(tmp_path: Path, variable: str, value: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        build_config(tmp_path, env={variable: value})


def test_unreadable_config_file(tmp_path: Path) -> None:
    _write_config(tmp_path, "execution: [unclosed\n")

    with pytest.raises(ConfigError, match="config.yaml"):
        build_config(tmp_path, env={})


def test_agent_section(tmp_path: Path) -> None:
    _write_config(tmp_path, "agent:\n  name: codex\n  structured_output: true\n")

    config = build_config(tmp_path, env={})
    assert config.agent.name == "codex"
    assert config.agent.structured_output is True

    config = build_config(tmp_path, env={"SPEC_DAG_AGENT_STRUCTURED_OUTPUT": "no"})
    assert config.agent.structured_output is False


def test_configured_specs_dir(tmp_path: Path) -> None:
    assert configured_specs_dir(tmp_path) == tmp_path / "specs"

    _write_config(tmp_path, "specs_dir: docs/specs\n")

    assert configured_specs_dir(tmp_path) == tmp_path / "docs" / "specs"
    assert build_config(tmp_path, env={}).specs_dir == "docs/specs"
