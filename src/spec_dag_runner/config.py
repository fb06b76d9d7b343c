"""Load runner configuration.

Values are layered, later sources winning: built-in defaults, the optional
``.spec_dag/config.yaml`` in the repository root, the definition's
``execution:`` block, ``SPEC_DAG_*`` environment variables, and finally
command-line overrides.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from .constants import (
    CONFIG_FILE,
    DEFAULT_AUTOCOMMIT_RETRIES,
    DEFAULT_BASE_BRANCH,
    DEFAULT_CANCEL_GRACE_SECONDS,
    DEFAULT_HEARTBEAT_GRACE_SECONDS,
    DEFAULT_HEARTBEAT_SECONDS,
    DEFAULT_MAX_PARALLEL,
    DEFAULT_MAX_SPEC_RETRIES,
    DEFAULT_MAX_STAGE_FAILURES,
    DEFAULT_SETUP_TIMEOUT_SECONDS,
    DEFAULT_SPEC_TIMEOUT_SECONDS,
    DEFAULT_SPECS_DIR,
    DEFAULT_WORKFLOW_COMMAND,
    DEFAULT_WORKTREE_PREFIX,
    MERGE_CADENCE_IMMEDIATE,
    MERGE_CADENCES,
    ON_CONFLICT_MANUAL,
    ON_CONFLICT_MODES,
    STATE_DIR_NAME,
)
from .errors import ConfigError
from .io_utils import _load_data_with_error
from .models import GraphDefinition
from .utils import parse_duration, parse_size

WORKFLOW_MODES = {"command", "agent"}

# Environment variable -> (section, key) in the flattened config.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "SPEC_DAG_BASE_BRANCH": ("execution", "base_branch"),
    "SPEC_DAG_MAX_PARALLEL": ("execution", "max_parallel"),
    "SPEC_DAG_TIMEOUT": ("execution", "timeout"),
    "SPEC_DAG_ON_CONFLICT": ("execution", "on_conflict"),
    "SPEC_DAG_MERGE_CADENCE": ("execution", "merge_cadence"),
    "SPEC_DAG_AUTOCOMMIT": ("execution", "autocommit"),
    "SPEC_DAG_AUTOCOMMIT_CMD": ("execution", "autocommit_cmd"),
    "SPEC_DAG_AUTOCOMMIT_RETRIES": ("execution", "autocommit_retries"),
    "SPEC_DAG_LAYER_STAGING": ("execution", "layer_staging"),
    "SPEC_DAG_MAX_SPEC_RETRIES": ("execution", "max_spec_retries"),
    "SPEC_DAG_MAX_STAGE_FAILURES": ("execution", "max_stage_failures"),
    "SPEC_DAG_HEARTBEAT_SECONDS": ("execution", "heartbeat_seconds"),
    "SPEC_DAG_HEARTBEAT_GRACE_SECONDS": ("execution", "heartbeat_grace_seconds"),
    "SPEC_DAG_MAX_LOG_SIZE": ("execution", "max_log_size"),
    "SPEC_DAG_WORKTREE_BASE_DIR": ("worktree", "base_dir"),
    "SPEC_DAG_WORKTREE_PREFIX": ("worktree", "prefix"),
    "SPEC_DAG_SETUP_SCRIPT": ("worktree", "setup_script"),
    "SPEC_DAG_SETUP_TIMEOUT": ("worktree", "setup_timeout"),
    "SPEC_DAG_AUTO_SETUP": ("worktree", "auto_setup"),
    "SPEC_DAG_TRACK_STATUS": ("worktree", "track_status"),
    "SPEC_DAG_COPY_DIRS": ("worktree", "copy_dirs"),
    "SPEC_DAG_AGENT": ("agent", "name"),
    "SPEC_DAG_AGENT_COMMAND": ("agent", "command"),
    "SPEC_DAG_AGENT_STRUCTURED_OUTPUT": ("agent", "structured_output"),
    "SPEC_DAG_WORKFLOW_MODE": ("workflow", "mode"),
    "SPEC_DAG_WORKFLOW_COMMAND": ("workflow", "command"),
}

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


@dataclass(frozen=True)
class WorktreeConfig:
    base_dir: Optional[Path] = None
    prefix: str = DEFAULT_WORKTREE_PREFIX
    setup_script: Optional[str] = None
    setup_timeout: float = DEFAULT_SETUP_TIMEOUT_SECONDS
    copy_dirs: tuple[str, ...] = ()
    auto_setup: bool = True
    track_status: bool = True
    preserve_on_failure: bool = False


@dataclass(frozen=True)
class AgentConfig:
    name: str = "claude"
    command: Optional[str] = None
    autonomous: bool = True
    structured_output: bool = False


@dataclass(frozen=True)
class RunnerConfig:
    """Effective configuration for one invocation."""

    base_branch: str = DEFAULT_BASE_BRANCH
    max_parallel: int = DEFAULT_MAX_PARALLEL
    spec_timeout: float = DEFAULT_SPEC_TIMEOUT_SECONDS
    on_conflict: str = ON_CONFLICT_MANUAL
    merge_cadence: str = MERGE_CADENCE_IMMEDIATE
    autocommit: bool = True
    autocommit_cmd: Optional[str] = None
    autocommit_retries: int = DEFAULT_AUTOCOMMIT_RETRIES
    layer_staging: bool = True
    max_stage_failures: int = DEFAULT_MAX_STAGE_FAILURES
    max_spec_retries: int = DEFAULT_MAX_SPEC_RETRIES
    heartbeat_seconds: float = DEFAULT_HEARTBEAT_SECONDS
    heartbeat_grace_seconds: float = DEFAULT_HEARTBEAT_GRACE_SECONDS
    cancel_grace_seconds: float = DEFAULT_CANCEL_GRACE_SECONDS
    max_log_size: int = 50 * 1024 * 1024
    specs_dir: str = DEFAULT_SPECS_DIR
    workflow_mode: str = "command"
    workflow_command: str = DEFAULT_WORKFLOW_COMMAND
    worktree: WorktreeConfig = field(default_factory=WorktreeConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)


def load_runner_config(repo_root: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        repo_root: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = repo_root.resolve() / STATE_DIR_NAME / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def configured_specs_dir(repo_root: Path) -> Path:
    """Return the spec content directory named by the config file, else the default."""
    file_config, err = load_runner_config(repo_root)
    if err:
        raise ConfigError(f"invalid {STATE_DIR_NAME}/{CONFIG_FILE}: {err}")
    return repo_root / str(file_config.get("specs_dir") or DEFAULT_SPECS_DIR)


def _get_nested(config: Mapping[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, Mapping):
            return None
        cur = cur.get(key)
    return cur


def _as_bool(value: Any, name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    raise ConfigError(f"{name}: expected a boolean, got {value!r}")


def _as_int(value: Any, name: str, minimum: int = 0) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"{name}: expected an integer, got {value!r}") from exc
    if number < minimum:
        raise ConfigError(f"{name}: must be at least {minimum}, got {number}")
    return number


def _as_seconds(value: Any, name: str) -> float:
    try:
        seconds = parse_duration(value)
    except ValueError as exc:
        raise ConfigError(f"{name}: {exc}") from exc
    if seconds is None or seconds <= 0:
        raise ConfigError(f"{name}: must be a positive duration")
    return seconds


def _as_choice(value: Any, name: str, choices: set[str]) -> str:
    text = str(value).strip().lower()
    if text not in choices:
        raise ConfigError(f"{name}: must be one of {sorted(choices)}, got {value!r}")
    return text


def _as_dirs(value: Any) -> tuple[str, ...]:
    if isinstance(value, str):
        return tuple(item.strip() for item in value.split(",") if item.strip())
    return tuple(str(item) for item in value or [])


def _definition_layer(definition: Optional[GraphDefinition]) -> dict[str, Any]:
    if definition is None:
        return {}
    execution = definition.execution
    values = {
        "max_parallel": execution.max_parallel,
        "timeout": execution.timeout,
        "base_branch": execution.base_branch,
        "on_conflict": execution.on_conflict,
        "merge_cadence": execution.merge_cadence,
        "autocommit": execution.autocommit,
        "autocommit_cmd": execution.autocommit_cmd,
        "layer_staging": execution.layer_staging,
        "max_stage_failures": execution.max_stage_failures,
        "max_spec_retries": execution.max_spec_retries,
    }
    return {key: value for key, value in values.items() if value is not None}


def build_config(
    repo_root: Path,
    definition: Optional[GraphDefinition] = None,
    *,
    env: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, Any]] = None,
) -> RunnerConfig:
    """Resolve the effective configuration.

    Args:
        repo_root: Repository root holding ``.spec_dag/config.yaml``.
        definition: Parsed definition whose ``execution:`` block applies.
        env: Environment mapping (defaults to ``os.environ``).
        overrides: Execution-level values from the command line.

    Raises:
        ConfigError: If the config file is unreadable or a value is malformed.
    """
    env = os.environ if env is None else env
    file_config, err = load_runner_config(repo_root)
    if err:
        raise ConfigError(f"invalid {STATE_DIR_NAME}/{CONFIG_FILE}: {err}")

    sections: dict[str, dict[str, Any]] = {}
    for section in ("execution", "worktree", "agent", "workflow"):
        raw = _get_nested(file_config, section)
        sections[section] = dict(raw) if isinstance(raw, Mapping) else {}
    sections["execution"].update(_definition_layer(definition))
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = env.get(variable)
        if value is not None and value != "":
            sections[section][key] = value
    for key, value in (overrides or {}).items():
        if value is not None:
            sections["execution"][key] = value

    execution = sections["execution"]
    worktree = sections["worktree"]
    agent = sections["agent"]
    workflow = sections["workflow"]
    defaults = RunnerConfig()
    worktree_defaults = WorktreeConfig()

    base_dir = worktree.get("base_dir")
    base_dir_path: Optional[Path] = None
    if base_dir:
        base_dir_path = Path(os.path.expanduser(str(base_dir)))
        if not base_dir_path.is_absolute():
            base_dir_path = (repo_root / base_dir_path).resolve()

    return RunnerConfig(
        base_branch=str(execution.get("base_branch") or defaults.base_branch),
        max_parallel=_as_int(execution.get("max_parallel", defaults.max_parallel), "max_parallel", 1),
        spec_timeout=_as_seconds(execution.get("timeout", defaults.spec_timeout), "timeout"),
        on_conflict=_as_choice(execution.get("on_conflict", defaults.on_conflict), "on_conflict", ON_CONFLICT_MODES),
        merge_cadence=_as_choice(
            execution.get("merge_cadence", defaults.merge_cadence), "merge_cadence", MERGE_CADENCES
        ),
        autocommit=_as_bool(execution.get("autocommit", defaults.autocommit), "autocommit"),
        autocommit_cmd=execution.get("autocommit_cmd") or None,
        autocommit_retries=_as_int(
            execution.get("autocommit_retries", defaults.autocommit_retries), "autocommit_retries", 1
        ),
        layer_staging=_as_bool(execution.get("layer_staging", defaults.layer_staging), "layer_staging"),
        max_stage_failures=_as_int(
            execution.get("max_stage_failures", defaults.max_stage_failures), "max_stage_failures", 1
        ),
        max_spec_retries=_as_int(execution.get("max_spec_retries", defaults.max_spec_retries), "max_spec_retries"),
        heartbeat_seconds=_as_seconds(
            execution.get("heartbeat_seconds", defaults.heartbeat_seconds), "heartbeat_seconds"
        ),
        heartbeat_grace_seconds=_as_seconds(
            execution.get("heartbeat_grace_seconds", defaults.heartbeat_grace_seconds), "heartbeat_grace_seconds"
        ),
        cancel_grace_seconds=_as_seconds(
            execution.get("cancel_grace_seconds", defaults.cancel_grace_seconds), "cancel_grace_seconds"
        ),
        max_log_size=parse_size(execution.get("max_log_size", defaults.max_log_size)),
        specs_dir=str(file_config.get("specs_dir") or defaults.specs_dir),
        workflow_mode=_as_choice(workflow.get("mode", defaults.workflow_mode), "workflow.mode", WORKFLOW_MODES),
        workflow_command=str(workflow.get("command") or defaults.workflow_command),
        worktree=WorktreeConfig(
            base_dir=base_dir_path,
            prefix=str(worktree.get("prefix", worktree_defaults.prefix)),
            setup_script=worktree.get("setup_script") or None,
            setup_timeout=_as_seconds(
                worktree.get("setup_timeout", worktree_defaults.setup_timeout), "worktree.setup_timeout"
            ),
            copy_dirs=_as_dirs(worktree.get("copy_dirs")),
            auto_setup=_as_bool(worktree.get("auto_setup", worktree_defaults.auto_setup), "worktree.auto_setup"),
            track_status=_as_bool(
                worktree.get("track_status", worktree_defaults.track_status), "worktree.track_status"
            ),
            preserve_on_failure=_as_bool(
                worktree.get("preserve_on_failure", worktree_defaults.preserve_on_failure),
                "worktree.preserve_on_failure",
            ),
        ),
        agent=AgentConfig(
            name=str(agent.get("name") or "claude"),
            command=agent.get("command") or None,
            autonomous=_as_bool(agent.get("autonomous", True), "agent.autonomous"),
            structured_output=_as_bool(agent.get("structured_output", False), "agent.structured_output"),
        ),
    )
