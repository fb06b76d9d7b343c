"""Tests for logging_utils module."""

from __future__ import annotations

from pathlib import Path

from loguru import logger

from spec_dag_runner.logging_utils import follow_log, spec_log_sink, truncate_log


class TestTruncateLog:
    def test_small_file_untouched(self, tmp_path: Path):
        path = tmp_path / "spec.log"
        path.write_text("line one\nline two\n")

        truncate_log(path, 1024)

        assert path.read_text() == "line one\nline two\n"

    def test_missing_file_is_ignored(self, tmp_path: Path):
        truncate_log(tmp_path / "missing.log", 10)

        assert not (tmp_path / "missing.log").exists()

    def test_keeps_newest_half_on_line_boundary(self, tmp_path: Path):
        path = tmp_path / "spec.log"
        lines = [f"line {index:04d}" for index in range(200)]
        path.write_text("\n".join(lines) + "\n")

        truncate_log(path, 1000)

        text = path.read_text()
        assert text.startswith("[log truncated]\n")
        body = text.splitlines()[1:]
        assert body[-1] == "line 0199"
        assert all(line.startswith("line ") and len(line) == 9 for line in body)
        assert path.stat().st_size <= 1000

    def test_zero_limit_disables_truncation(self, tmp_path: Path):
        path = tmp_path / "spec.log"
        path.write_text("x" * 5000)

        truncate_log(path, 0)

        assert path.stat().st_size == 5000


class TestSpecLogSink:
    def test_routes_only_bound_records(self, tmp_path: Path):
        log_path = tmp_path / "logs" / "A.log"

        with spec_log_sink(log_path, "A"):
            logger.bind(spec_id="A").info("working on A")
            logger.bind(spec_id="B").info("working on B")
            logger.info("unbound message")

        text = log_path.read_text()
        assert "working on A" in text
        assert "working on B" not in text
        assert "unbound message" not in text

    def test_sink_removed_on_exit(self, tmp_path: Path):
        log_path = tmp_path / "A.log"

        with spec_log_sink(log_path, "A"):
            logger.bind(spec_id="A").info("inside")
        logger.bind(spec_id="A").info("outside")

        text = log_path.read_text()
        assert "inside" in text
        assert "outside" not in text


class TestFollowLog:
    def test_dumps_existing_file_when_not_following(self, tmp_path: Path):
        path = tmp_path / "A.log"
        path.write_text("one\ntwo\n")

        assert list(follow_log(path, lambda: False, poll_seconds=0)) == ["one", "two"]

    def test_picks_up_lines_written_while_following(self, tmp_path: Path):
        path = tmp_path / "A.log"
        path.write_text("one\n")
        calls = []

        def keep_following() -> bool:
            calls.append(1)
            if len(calls) == 1:
                return True
            with path.open("a") as handle:
                handle.write("two\n")
            return False

        assert list(follow_log(path, keep_following, poll_seconds=0)) == ["one", "two"]

    def test_waits_for_the_file_to_appear(self, tmp_path: Path):
        path = tmp_path / "logs" / "A.log"
        calls = []

        def keep_following() -> bool:
            calls.append(1)
            if len(calls) < 3:
                return True
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text("late\n")
            return False

        assert list(follow_log(path, keep_following, poll_seconds=0)) == ["late"]
        assert len(calls) == 3
