"""Tests for the coding agent registry and command construction."""

from __future__ import annotations

from pathlib import Path

import pytest

from spec_dag_runner.agents import BUILTIN_AGENTS, Capabilities, CliAgent, PromptMethod, agent_names, get_agent
from spec_dag_runner.errors import ConfigError


class TestRegistry:
    def test_builtin_agents_exist(self):
        assert {"claude", "codex", "opencode"} <= set(BUILTIN_AGENTS)
        assert "custom" in agent_names()

    def test_unknown_agent_is_rejected(self):
        with pytest.raises(ConfigError, match="unknown agent"):
            get_agent("hal9000")

    def test_custom_requires_template(self):
        with pytest.raises(ConfigError):
            get_agent("custom")

    def test_names_are_case_insensitive(self):
        assert get_agent("  Claude ").name == "claude"


class TestBuildCommand:
    def test_prompt_flag(self):
        agent = get_agent("claude")

        assert agent.build_command("do it") == ["claude", "--dangerously-skip-permissions", "-p", "do it"]
        assert agent.build_command("do it", autonomous=False) == ["claude", "-p", "do it"]

    def test_subcommand(self):
        agent = get_agent("codex")

        assert agent.build_command("do it") == ["codex", "exec", "--full-auto", "do it"]

    def test_template_with_prompt_placeholder(self):
        agent = get_agent("custom", "my-agent --yes --message {prompt}")

        assert agent.build_command("fix the bug") == ["my-agent", "--yes", "--message", "fix the bug"]

    def test_template_on_builtin_appends_autonomous_flag(self):
        agent = get_agent("claude", "/opt/claude/bin/claude -p {prompt}")

        assert agent.build_command("go") == ["/opt/claude/bin/claude", "-p", "go", "--dangerously-skip-permissions"]

    def test_template_keeps_its_subcommand_in_place(self):
        agent = get_agent("codex", "codex exec {prompt}")

        assert agent.build_command("go") == ["codex", "exec", "go", "--full-auto"]

    def test_template_flag_is_not_repeated(self):
        agent = get_agent("codex", "codex exec --full-auto {prompt}")

        assert agent.build_command("go") == ["codex", "exec", "--full-auto", "go"]

    def test_structured_output_args(self):
        assert get_agent("claude").build_command("go", structured_output=True) == [
            "claude",
            "--dangerously-skip-permissions",
            "--output-format",
            "json",
            "-p",
            "go",
        ]
        assert get_agent("codex").build_command("go", autonomous=False, structured_output=True) == [
            "codex",
            "exec",
            "--json",
            "go",
        ]
        assert get_agent("custom", "my-agent {prompt}").build_command("go", structured_output=True) == [
            "my-agent",
            "go",
        ]

    def test_template_capability_requires_template(self):
        with pytest.raises(ConfigError):
            CliAgent("broken", "x", Capabilities(prompt_method=PromptMethod.TEMPLATE))


def test_template_without_placeholder_reads_prompt_from_stdin(tmp_path: Path) -> None:
    agent = get_agent("custom", "sh -c 'cat > prompt.txt'")

    result = agent.execute("resolve the conflict", tmp_path, timeout_seconds=10)

    assert result.ok
    assert (tmp_path / "prompt.txt").read_text(encoding="utf-8") == "resolve the conflict"


def test_missing_env_and_availability() -> None:
    agent = CliAgent(
        "needs-key",
        "definitely-not-installed-agent",
        Capabilities(prompt_method=PromptMethod.STDIN, required_env=("AGENT_TOKEN",)),
    )

    assert agent.missing_env({}) == ["AGENT_TOKEN"]
    assert agent.missing_env({"AGENT_TOKEN": "x"}) == []
    assert not agent.is_available()


def test_missing_required_env_blocks_availability(monkeypatch: pytest.MonkeyPatch) -> None:
    agent = CliAgent(
        "needs-key",
        "sh",
        Capabilities(prompt_method=PromptMethod.STDIN, required_env=("SPEC_DAG_TEST_TOKEN",)),
    )

    monkeypatch.delenv("SPEC_DAG_TEST_TOKEN", raising=False)
    assert not agent.is_available()

    monkeypatch.setenv("SPEC_DAG_TEST_TOKEN", "secret")
    assert agent.is_available()


def test_execute_refuses_without_required_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("SPEC_DAG_TEST_TOKEN", raising=False)
    agent = CliAgent(
        "needs-key",
        "sh",
        Capabilities(prompt_method=PromptMethod.TEMPLATE, required_env=("SPEC_DAG_TEST_TOKEN",)),
        template="sh -c 'cat > prompt.txt'",
    )

    with pytest.raises(ConfigError, match="SPEC_DAG_TEST_TOKEN"):
        agent.execute("go", tmp_path, timeout_seconds=10)
    assert not (tmp_path / "prompt.txt").exists()

    result = agent.execute("go", tmp_path, timeout_seconds=10, env={"SPEC_DAG_TEST_TOKEN": "secret"})

    assert result.ok
    assert (tmp_path / "prompt.txt").read_text(encoding="utf-8") == "go"
