"""Tests for the per-spec workflow executors."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from spec_dag_runner.agents import get_agent
from spec_dag_runner.errors import ExecutionError
from spec_dag_runner.execution import AgentWorkflowExecutor, CommandWorkflowExecutor, WorkflowRequest


def _request(tmp_path: Path, **overrides) -> WorkflowRequest:
    worktree = tmp_path / "wt"
    worktree.mkdir(exist_ok=True)
    values = dict(
        spec_id="001-auth",
        description="Add token auth",
        worktree=worktree,
        branch="dag/checkout/001-auth",
        dag_id="checkout",
        timeout_seconds=30,
        progress_path=tmp_path / "progress" / "001-auth.json",
        log_path=tmp_path / "logs" / "001-auth.log",
    )
    values.update(overrides)
    return WorkflowRequest(**values)


class TestRender:
    def test_placeholders_are_quoted(self, tmp_path: Path):
        executor = CommandWorkflowExecutor("run {spec_id} --branch {branch} --note {description}")

        rendered = executor.render(_request(tmp_path))

        assert rendered == "run 001-auth --branch dag/checkout/001-auth --note 'Add token auth'"

    def test_description_is_appended_when_spec_folder_is_missing(self, tmp_path: Path):
        executor = CommandWorkflowExecutor("autospec run -spti")

        assert executor.render(_request(tmp_path)) == "autospec run -spti -a 'Add token auth'"

    def test_description_is_not_appended_when_spec_folder_exists(self, tmp_path: Path):
        request = _request(tmp_path)
        request.spec_dir.mkdir(parents=True)

        assert CommandWorkflowExecutor("autospec run -spti").render(request) == "autospec run -spti"

    def test_unknown_placeholder(self, tmp_path: Path):
        with pytest.raises(ExecutionError):
            CommandWorkflowExecutor("run {nope}").render(_request(tmp_path))

    def test_empty_command(self):
        with pytest.raises(ExecutionError):
            CommandWorkflowExecutor("   ")


class TestExecute:
    def test_success_and_log_capture(self, tmp_path: Path):
        executor = CommandWorkflowExecutor("echo implementing {spec_id}")
        request = _request(tmp_path)

        outcome = executor.execute(request)

        assert outcome.success
        assert "implementing 001-auth" in request.log_path.read_text(encoding="utf-8")

    def test_failure_reports_stage_from_progress_file(self, tmp_path: Path):
        stages: list[str] = []
        executor = CommandWorkflowExecutor(
            'echo \'{{"stage": "implement"}}\' > "$SPEC_DAG_PROGRESS_FILE"; exit 2 # {spec_id}'
        )
        request = _request(tmp_path, on_stage=stages.append)

        outcome = executor.execute(request)

        assert not outcome.success
        assert outcome.exit_code == 2
        assert outcome.stage == "implement"
        assert outcome.failure_reason(30) == "[implement] exit code 2"
        assert stages == ["implement"]

    def test_timeout(self, tmp_path: Path):
        executor = CommandWorkflowExecutor("sleep 10 # {spec_id}")

        outcome = executor.execute(_request(tmp_path, timeout_seconds=0.5))

        assert outcome.timed_out
        assert outcome.failure_reason(0.5) == "[execute] timed out after 0s"

    def test_cancellation(self, tmp_path: Path):
        cancel = threading.Event()
        cancel.set()
        executor = CommandWorkflowExecutor("sleep 10 # {spec_id}")

        outcome = executor.execute(_request(tmp_path, cancel_event=cancel))

        assert outcome.cancelled
        assert outcome.failure_reason(30) == "[execute] cancelled"


def test_agent_executor_sends_prompt(tmp_path: Path) -> None:
    agent = get_agent("custom", "sh -c 'cat > prompt.txt'")
    executor = AgentWorkflowExecutor(agent)
    request = _request(tmp_path)

    outcome = executor.execute(request)

    assert outcome.success
    prompt = (request.worktree / "prompt.txt").read_text(encoding="utf-8")
    assert "001-auth" in prompt
    assert "Add token auth" in prompt
    assert "dag/checkout/001-auth" in prompt
