STATE_DIR_NAME = ".dispatcher"
STATE_FILE = "state.json"
LOCK_FILE = "lock"
STATE_MUTEX_FILE = "state.mutex"
LOCK_GUARD_FILE = "lock.mutex"
CONTROL_FILE = "control.jsonl"
EVENTS_FILE = "events.ndjson"
CONFIG_FILE = "config.yaml"
INBOX_DIR = "inbox"
SESSIONS_DIR = "sessions"
WORKTREES_DIR = "worktrees"

# Where the plan document lives inside each working tree.
WORKTREE_LOCAL_DIR = ".dispatcher-local"
WORKTREE_PLAN_RELPATH = f"{WORKTREE_LOCAL_DIR}/plan.md"
WORKTREE_REVIEW_RELPATH = f"{WORKTREE_LOCAL_DIR}/review.md"
WORKTREE_TRIAGE_RESULT_RELPATH = f"{WORKTREE_LOCAL_DIR}/triage-result.json"

SESSION_LOG_FILE = "worker.log"
SESSION_EXIT_CODE_FILE = "worker.exitcode"
SESSION_PROMPT_FILE = "worker.prompt"

DEFAULT_AGENT = "codex"
DEFAULT_BASE_BRANCH = "main"
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_SESSION_WAIT_INTERVAL_SECONDS = 1.0
DEFAULT_MAX_TODO_RETRIES = 3  # Consecutive failed attempts on one TODO before blocking
DEFAULT_MAX_ACTIVE_PLANS = 4
DEFAULT_MISSING_MARKER_EXIT_CODE = 0
DEFAULT_REVIEW_PROVIDER = "local"
DEFAULT_REVIEW_POLL_INTERVAL_SECONDS = 60.0
DEFAULT_SESSION_PREFIX = "dispatcher"
DEFAULT_EVENT_BUFFER_SIZE = 100
LOG_TAIL_LINES = 30

COMMAND_STOP = "stop"
COMMAND_REVIEW = "review"
COMMAND_KILL = "kill"
COMMAND_POLL = "poll"
QUEUED_COMMAND_TYPES = {COMMAND_STOP, COMMAND_REVIEW, COMMAND_KILL, COMMAND_POLL}

ERROR_ZERO_TODOS = "Plan has zero TODO items. Please add tasks."
