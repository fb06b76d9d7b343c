#!/usr/bin/env python3
"""Provide the ``spec-dag`` command line.

Subcommands: ``run``, ``status``, ``merge``, ``cleanup``, ``validate``, ``logs``
and ``commit``.
Exit codes: 0 on success, 1 when specs failed, a run paused or a runtime
error occurred, and 3 for invalid arguments or an invalid definition.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.markup import escape

from .agents import CliAgent, get_agent
from .cleanup import CleanupManager
from .commit import CommitVerifier, WorktreeCommitter
from .config import RunnerConfig, configured_specs_dir
from .conflict import ConflictResolver, print_manual_block
from .constants import EXIT_FAILED, EXIT_INVALID_ARGS, EXIT_SUCCESS
from .context import RunContext, open_context
from .errors import ConfigError, DefinitionError, SpecDagError, ValidationFailed
from .execution import AgentWorkflowExecutor, CommandWorkflowExecutor, WorkflowExecutor
from .git_utils import _git_repo_root
from .graph import DefinitionGraph
from .logging_utils import configure_logging, follow_log
from .merge import MergeManager
from .models import SpecStatus
from .parser import load_document
from .scheduler import RunOptions, Scheduler
from .staging import StagingManager
from .status import render_status
from .validator import validate_definition
from .worktree import WorktreeManager

COMMANDS = ("run", "status", "merge", "cleanup", "validate", "logs", "commit")
LOG_LEVELS = ["TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"]


class _ArgumentParser(argparse.ArgumentParser):
    """Report usage errors with the invalid-arguments exit code."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(EXIT_INVALID_ARGS, f"{self.prog}: error: {message}\n")


def _positive_int(value: str) -> int:
    try:
        number = int(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {value!r}") from exc
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _new_parser(command: str, description: str) -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog=f"spec-dag {command}", description=description)
    parser.add_argument("definition", type=Path, help="Path to the DAG definition YAML")
    parser.add_argument(
        "--log-level",
        type=str.upper,
        default=os.environ.get("SPEC_DAG_LOG_LEVEL", "INFO").upper(),
        choices=LOG_LEVELS,
        help="Log level (default: INFO, or SPEC_DAG_LOG_LEVEL)",
    )
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = _new_parser("run", "Spec DAG Runner - execute the specs of a DAG definition")
    parser.add_argument(
        "--parallel",
        action="store_true",
        help="Run independent specs concurrently (default: sequential)",
    )
    parser.add_argument(
        "--max-parallel",
        type=_positive_int,
        default=None,
        help="Maximum concurrent specs with --parallel (default: definition value, else 4)",
    )
    parser.add_argument("--fresh", action="store_true", help="Discard existing run state before starting")
    parser.add_argument(
        "--only",
        action="append",
        default=None,
        help="Comma-separated spec ids to run (repeatable)",
    )
    parser.add_argument("--clean", action="store_true", help="Reset state and worktrees of the selected specs")
    parser.add_argument("--dry-run", action="store_true", help="Print the execution plan and exit")
    parser.add_argument("--force", action="store_true", help="Reset poison specs so they run again")
    parser.add_argument("--fail-fast", action="store_true", help="Stop dispatching after the first failure")
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    return _new_parser("status", "Spec DAG Runner - show the state of a run")


def _build_merge_parser() -> argparse.ArgumentParser:
    parser = _new_parser("merge", "Spec DAG Runner - merge completed work into the target branch")
    parser.add_argument("--branch", type=str, default=None, help="Target branch (default: base branch)")
    parser.add_argument("--continue", dest="continue_", action="store_true", help="Finish a paused conflict")
    parser.add_argument("--skip-failed", action="store_true", help="Merge what completed and skip the rest")
    parser.add_argument("--cleanup", action="store_true", help="Remove merged worktrees afterwards")
    return parser


def _build_cleanup_parser() -> argparse.ArgumentParser:
    parser = _new_parser("cleanup", "Spec DAG Runner - remove worktrees of merged specs")
    parser.add_argument("--force", action="store_true", help="Remove every worktree of the run")
    return parser


def _build_validate_parser() -> argparse.ArgumentParser:
    return _new_parser("validate", "Spec DAG Runner - validate a DAG definition")


def _build_logs_parser() -> argparse.ArgumentParser:
    parser = _new_parser("logs", "Spec DAG Runner - show the log of one spec")
    parser.add_argument("spec_id", help="Spec whose log to show")
    parser.add_argument(
        "-f",
        "--follow",
        action="store_true",
        help="Keep streaming new lines while the spec is pending or running",
    )
    return parser


def _build_commit_parser() -> argparse.ArgumentParser:
    parser = _new_parser("commit", "Spec DAG Runner - commit work left uncommitted in spec worktrees")
    parser.add_argument("--only", type=str, default=None, help="Commit only this spec")
    parser.add_argument("--dry-run", action="store_true", help="List uncommitted changes without committing")
    parser.add_argument(
        "--cmd",
        type=str,
        default=None,
        help="Commit command template (overrides autocommit_cmd)",
    )
    return parser


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def _resolve_agent(config: RunnerConfig) -> CliAgent:
    return get_agent(config.agent.name, config.agent.command)


def _build_executor(config: RunnerConfig, agent: Optional[CliAgent]) -> WorkflowExecutor:
    if config.workflow_mode == "agent":
        if agent is None:
            raise ConfigError("workflow mode 'agent' requires an agent")
        missing = agent.missing_env(os.environ)
        if missing:
            raise ConfigError(f"agent {agent.name} needs environment variable(s) {', '.join(missing)}")
        return AgentWorkflowExecutor(
            agent,
            autonomous=config.agent.autonomous,
            structured_output=config.agent.structured_output,
        )
    return CommandWorkflowExecutor(config.workflow_command)


def _build_staging(ctx: RunContext, agent: Optional[CliAgent]) -> tuple[WorktreeManager, StagingManager]:
    worktrees = WorktreeManager(ctx.repo_root, ctx.config.worktree)
    resolver = ConflictResolver(ctx.config.on_conflict, agent)
    return worktrees, StagingManager(ctx, resolver, worktrees)


def _install_signal_handlers(scheduler: Scheduler) -> dict[int, Any]:
    def _handler(signum: int, frame: Any) -> None:
        logger.warning("Received {}", signal.Signals(signum).name)
        scheduler.cancel()

    previous: dict[int, Any] = {}
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, _handler)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for signum, handler in previous.items():
        signal.signal(signum, handler)


def _split_only(values: Optional[list[str]]) -> Optional[list[str]]:
    if not values:
        return None
    ids: list[str] = []
    for value in values:
        ids.extend(item.strip() for item in value.split(",") if item.strip())
    return ids or None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


def _run_command(args: argparse.Namespace) -> int:
    overrides: dict[str, Any] = {}
    if not args.parallel:
        overrides["max_parallel"] = 1
    elif args.max_parallel is not None:
        overrides["max_parallel"] = args.max_parallel
    ctx = open_context(args.definition, overrides=overrides)

    if args.dry_run:
        sys.stdout.write(ctx.graph.visualize_execution_plan())
        sys.stdout.write(ctx.graph.visualize_as_tree())
        return EXIT_SUCCESS

    with ctx.run_lock():
        agent = _resolve_agent(ctx.config)
        executor = _build_executor(ctx.config, agent)
        if args.fresh:
            logger.info("Discarding existing run state of {}", ctx.definition_path.name)
            ctx.store.fresh()
        worktrees, staging = _build_staging(ctx, agent)
        verifier = CommitVerifier(
            enabled=ctx.config.autocommit,
            retries=ctx.config.autocommit_retries,
            command_template=ctx.config.autocommit_cmd,
            agent=agent if agent.is_available() else None,
            dag_id=ctx.dag_id,
        )
        scheduler = Scheduler(
            ctx,
            executor,
            worktrees,
            staging,
            verifier,
            options=RunOptions(
                only=_split_only(args.only),
                clean=bool(args.clean),
                force=bool(args.force),
                fail_fast=bool(args.fail_fast),
            ),
        )
        previous = _install_signal_handlers(scheduler)
        try:
            summary = scheduler.run()
        finally:
            _restore_signal_handlers(previous)

    render_status(ctx)
    if summary.message:
        logger.error(summary.message)
    if summary.conflict_block:
        logger.warning("Run paused on a merge conflict; resolve it, then run: {}", ctx.continue_command())
    return summary.exit_code


def _status_command(args: argparse.Namespace) -> int:
    ctx = open_context(args.definition)
    render_status(ctx)
    return EXIT_SUCCESS


def _merge_command(args: argparse.Namespace) -> int:
    ctx = open_context(args.definition)
    with ctx.run_lock():
        agent = _resolve_agent(ctx.config)
        worktrees, staging = _build_staging(ctx, agent)
        report = MergeManager(ctx, staging, worktrees).run(
            args.branch,
            continue_=bool(args.continue_),
            skip_failed=bool(args.skip_failed),
            cleanup=bool(args.cleanup),
        )

    console = Console()
    if report.merged:
        console.print(f"[green]Merged:[/green] {', '.join(report.merged)}")
    if report.skipped:
        console.print(f"[yellow]Skipped:[/yellow] {', '.join(report.skipped)}")
    if report.conflict_block:
        print_manual_block(report.conflict_block, console)
    if report.message:
        logger.error(report.message)
    if report.status == "completed":
        console.print(f"[bold green]All work merged into {report.target}[/bold green]")
    if report.cleanup:
        _print_cleanup(console, report.cleanup.removed, report.cleanup.kept)
    return report.exit_code


def _print_cleanup(console: Console, removed: list[str], kept: dict[str, str]) -> None:
    for name in removed:
        console.print(f"[green]Removed[/green] {name}")
    for name, reason in kept.items():
        console.print(f"[yellow]Kept[/yellow] {name}: {reason}", markup=True, highlight=False)


def _cleanup_command(args: argparse.Namespace) -> int:
    ctx = open_context(args.definition)
    with ctx.run_lock():
        worktrees, staging = _build_staging(ctx, None)
        report = CleanupManager(ctx, worktrees, staging).run(force=bool(args.force))
    console = Console()
    _print_cleanup(console, report.removed, report.kept)
    if report.pruned:
        console.print(f"Pruned stale entries: {', '.join(report.pruned)}")
    if not report.removed and not report.kept:
        console.print("Nothing to clean up")
    return EXIT_SUCCESS


def _validate_command(args: argparse.Namespace) -> int:
    path = args.definition.resolve()
    document = load_document(path)
    repo_root = _git_repo_root(path.parent) or path.parent
    report = validate_definition(document, specs_dir=configured_specs_dir(repo_root))
    if report.warnings or report.errors:
        sys.stdout.write(report.format() + "\n")
    if not report.ok:
        return EXIT_INVALID_ARGS
    plan = DefinitionGraph(document.definition).execution_waves()
    sys.stdout.write(
        f"{path.name}: valid ({plan.total_specs} specs, {len(plan.batches)} waves, "
        f"max parallelism {plan.max_parallelism})\n"
    )
    return EXIT_SUCCESS


def _logs_command(args: argparse.Namespace) -> int:
    ctx = open_context(args.definition)
    spec_ids = ctx.graph.spec_ids()
    if args.spec_id not in spec_ids:
        raise ConfigError(f"unknown spec id {args.spec_id!r}; expected one of {', '.join(spec_ids)}")
    path = ctx.log_path(args.spec_id)
    sys.stderr.write(f"Log: {path}\n\n")
    if not args.follow and not path.exists():
        sys.stderr.write(f"No log for {args.spec_id} yet\n")
        return EXIT_SUCCESS

    def _keep_following() -> bool:
        if not args.follow:
            return False
        state = ctx.store.load().specs.get(args.spec_id)
        return state is None or state.status in (SpecStatus.PENDING, SpecStatus.RUNNING)

    try:
        for line in follow_log(path, _keep_following):
            sys.stdout.write(line + "\n")
            sys.stdout.flush()
    except KeyboardInterrupt:
        pass
    return EXIT_SUCCESS


def _commit_command(args: argparse.Namespace) -> int:
    ctx = open_context(args.definition)
    with ctx.run_lock():
        agent = _resolve_agent(ctx.config)
        verifier = CommitVerifier(
            enabled=True,
            retries=ctx.config.autocommit_retries,
            command_template=args.cmd or ctx.config.autocommit_cmd,
            agent=agent if agent.is_available() else None,
            dag_id=ctx.dag_id,
        )
        worktrees = WorktreeManager(ctx.repo_root, ctx.config.worktree)
        report = WorktreeCommitter(ctx, worktrees, verifier).run(only=args.only, dry_run=bool(args.dry_run))

    console = Console()
    if not (report.pending or report.committed or report.failed):
        console.print(f"[green]No uncommitted changes[/green] in {escape(ctx.definition_path.name)}")
    for spec_id, lines in report.pending.items():
        console.print(f"[bold]{escape(spec_id)}[/bold]")
        for line in lines:
            console.print(f"  {escape(line)}", highlight=False)
    for spec_id, sha in report.committed.items():
        console.print(f"[green]Committed[/green] {escape(spec_id)} {sha[:12]}")
    for spec_id, error in report.failed.items():
        console.print(f"[red]Failed[/red] {escape(spec_id)}: {escape(error)}")
    return report.exit_code


_HANDLERS: dict[str, tuple[Callable[[], argparse.ArgumentParser], Callable[[argparse.Namespace], int]]] = {
    "run": (_build_run_parser, _run_command),
    "status": (_build_status_parser, _status_command),
    "merge": (_build_merge_parser, _merge_command),
    "cleanup": (_build_cleanup_parser, _cleanup_command),
    "validate": (_build_validate_parser, _validate_command),
    "logs": (_build_logs_parser, _logs_command),
    "commit": (_build_commit_parser, _commit_command),
}


def _invoke(command: Callable[[argparse.Namespace], int], args: argparse.Namespace) -> int:
    """Run ``command`` and map runner errors to exit codes."""
    try:
        return command(args)
    except ValidationFailed as exc:
        logger.error("Invalid definition {}:\n{}", args.definition, exc.report.format())
        return EXIT_INVALID_ARGS
    except (DefinitionError, ConfigError) as exc:
        logger.error("{}: {}", args.definition, exc)
        return EXIT_INVALID_ARGS
    except FileNotFoundError as exc:
        logger.error("File not found: {}", exc.filename or exc)
        return EXIT_INVALID_ARGS
    except SpecDagError as exc:
        logger.error("{}", exc)
        return EXIT_FAILED


def _usage() -> str:
    return f"usage: spec-dag {{{','.join(COMMANDS)}}} <definition> [options]\n"


def main(argv: list[str] | None = None) -> None:
    """Run the ``spec-dag`` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses ``sys.argv[1:]``.

    Raises:
        SystemExit: Always, carrying the process exit code.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] in ("-h", "--help"):
        sys.stdout.write(_usage())
        raise SystemExit(EXIT_SUCCESS if argv else EXIT_INVALID_ARGS)
    if argv[0] not in _HANDLERS:
        sys.stderr.write(_usage())
        sys.stderr.write(f"spec-dag: error: unknown command {argv[0]!r}\n")
        raise SystemExit(EXIT_INVALID_ARGS)

    build_parser, command = _HANDLERS[argv[0]]
    args = build_parser().parse_args(argv[1:])
    configure_logging(args.log_level)
    raise SystemExit(_invoke(command, args))


if __name__ == "__main__":
    main()
