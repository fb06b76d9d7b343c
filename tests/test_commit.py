"""Tests for commit verification after a spec finishes."""

from __future__ import annotations

import subprocess
from pathlib import Path

from spec_dag_runner.commit import CommitVerifier
from spec_dag_runner.git_utils import _git_has_changes, _git_head_sha
from spec_dag_runner.models import CommitStatus


def _feature_branch(repo: Path) -> None:
    subprocess.run(["git", "checkout", "-q", "-b", "feature"], cwd=repo, check=True, capture_output=True)


def _last_message(repo: Path) -> str:
    result = subprocess.run(["git", "log", "-1", "--format=%s"], cwd=repo, check=True, capture_output=True, text=True)
    return result.stdout.strip()


def test_uncommitted_work_is_committed_with_plain_git(repo: Path) -> None:
    _feature_branch(repo)
    (repo / "feature.txt").write_text("done\n", encoding="utf-8")

    result = CommitVerifier().verify(repo, spec_id="A", branch="feature", base_ref="main")

    assert result.ok
    assert result.status == CommitStatus.COMMITTED
    assert result.attempts == 1
    assert result.sha == _git_head_sha(repo)
    assert not _git_has_changes(repo)
    assert _last_message(repo) == "Implement spec A"


def test_already_committed_work_needs_no_action(repo: Path) -> None:
    _feature_branch(repo)
    (repo / "feature.txt").write_text("done\n", encoding="utf-8")
    subprocess.run(["git", "add", "-A"], cwd=repo, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "work"], cwd=repo, check=True, capture_output=True)

    result = CommitVerifier().verify(repo, spec_id="A", branch="feature", base_ref="main")

    assert result.ok
    assert result.attempts == 0


def test_no_commits_ahead_fails(repo: Path) -> None:
    _feature_branch(repo)

    result = CommitVerifier().verify(repo, spec_id="A", branch="feature", base_ref="main")

    assert result.status == CommitStatus.FAILED
    assert result.error == "no commits ahead of main"


def test_disabled_autocommit_reports_leftover_changes(repo: Path) -> None:
    _feature_branch(repo)
    (repo / "feature.txt").write_text("wip\n", encoding="utf-8")

    result = CommitVerifier(enabled=False).verify(repo, spec_id="A", branch="feature", base_ref="main")

    assert result.status == CommitStatus.FAILED
    assert "autocommit disabled" in (result.error or "")
    assert _git_has_changes(repo)


def test_custom_command_template(repo: Path) -> None:
    _feature_branch(repo)
    (repo / "feature.txt").write_text("done\n", encoding="utf-8")
    verifier = CommitVerifier(command_template="git add -A && git commit -q -m {spec_id}", dag_id="checkout")

    result = verifier.verify(repo, spec_id="001-auth", branch="feature", base_ref="main")

    assert result.ok
    assert _last_message(repo) == "001-auth"


def test_commit_action_is_retried_then_gives_up(repo: Path) -> None:
    _feature_branch(repo)
    (repo / "feature.txt").write_text("wip\n", encoding="utf-8")
    verifier = CommitVerifier(command_template="true", retries=2)

    result = verifier.verify(repo, spec_id="A", branch="feature", base_ref="main")

    assert result.status == CommitStatus.FAILED
    assert result.attempts == 2
    assert result.error == "uncommitted changes remain after 2 commit attempt(s)"


def test_missing_worktree(tmp_path: Path) -> None:
    result = CommitVerifier().verify(tmp_path / "gone", spec_id="A", branch="feature", base_ref="main")

    assert result.status == CommitStatus.FAILED
    assert "does not exist" in (result.error or "")
