STATE_DIR_NAME = ".spec_dag"
CONFIG_FILE = "config.yaml"
WORKTREE_REGISTRY_FILE = "worktrees.yaml"
RUNS_DIR = "runs"
LOCKS_DIR = "locks"
LOGS_DIR = "logs"
PROGRESS_DIR = "progress"
RUN_LOCK_SUFFIX = ".run.lock"
STATE_LOCK_SUFFIX = ".state.lock"
WINDOWS_LOCK_BYTES = 1

STATE_SEPARATOR = "# ====== RUNTIME STATE (auto-managed, do not edit) ======"
KNOWN_SCHEMA_VERSIONS = {"1", "1.0"}
DEFAULT_SPECS_DIR = "specs"

BRANCH_PREFIX = "dag"
STAGE_BRANCH_PREFIX = "stage-"
DEFAULT_WORKTREE_PREFIX = "dag-"
INTEGRATION_WORKTREE_SUFFIX = "integration"

DEFAULT_BASE_BRANCH = "main"
DEFAULT_MAX_PARALLEL = 4
DEFAULT_SPEC_TIMEOUT_SECONDS = 60 * 60
DEFAULT_SETUP_TIMEOUT_SECONDS = 5 * 60
DEFAULT_COMMIT_COMMAND_TIMEOUT_SECONDS = 30
DEFAULT_COMMIT_SESSION_TIMEOUT_SECONDS = 10 * 60
DEFAULT_AGENT_RESOLVE_TIMEOUT_SECONDS = 10 * 60
DEFAULT_HEARTBEAT_SECONDS = 30
DEFAULT_HEARTBEAT_GRACE_SECONDS = 120
DEFAULT_CANCEL_GRACE_SECONDS = 10
DEFAULT_SCHEDULER_POLL_SECONDS = 2.0
DEFAULT_MAX_STAGE_FAILURES = 3
DEFAULT_AUTOCOMMIT_RETRIES = 2
DEFAULT_MAX_SPEC_RETRIES = 0
MAX_AGENT_RESOLVE_ATTEMPTS = 3
DEFAULT_WORKFLOW_COMMAND = "autospec run -spti"

ON_CONFLICT_MANUAL = "manual"
ON_CONFLICT_AGENT = "agent"
ON_CONFLICT_MODES = {ON_CONFLICT_MANUAL, ON_CONFLICT_AGENT}

MERGE_CADENCE_IMMEDIATE = "immediate"
MERGE_CADENCE_BATCHED = "batched"
MERGE_CADENCES = {MERGE_CADENCE_IMMEDIATE, MERGE_CADENCE_BATCHED}

STAGE_WORKTREE = "worktree"
STAGE_EXECUTE = "execute"
STAGE_COMMIT = "commit"
STAGE_MERGE = "merge"

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_INVALID_ARGS = 3

CONFLICT_MARKER_START = "<<<<<<<"
CONFLICT_MARKER_END = ">>>>>>>"

# Shown in the manual conflict block after the file list.
CONFLICT_RESOLUTION_STEPS = [
    "Open each file listed above and pick the correct content between the markers",
    "Remove every '<<<<<<<', '=======' and '>>>>>>>' line",
    "Stage the resolved files with 'git add <file>' inside the integration worktree",
]
