"""Defaults and fixed names shared across the orchestrator."""

from __future__ import annotations

STATE_DIR_NAME = ".sprint_agents"
CONFIG_FILE_NAME = "config.yaml"
SANDBOX_REGISTRY_FILE = "sandboxes.json"
SANDBOXES_DIR_NAME = "sandboxes"
RUNS_DIR_NAME = "runs"
LOGS_DIR_NAME = "logs"
EVENTS_FILE_NAME = "events.jsonl"

DEFAULT_API_BASE = "http://localhost:8000/api/v1"
API_KEY_HEADER = "X-API-Key"
HTTP_TIMEOUT_SECONDS = 30.0

DEFAULT_ROLES = ("dev", "qa", "devops", "documenter", "po")
DEFAULT_REPORT_ROLES = ("po",)

DEFAULT_POLL_INTERVAL_SECONDS = 30.0
DEFAULT_MAX_ITERATIONS = 0
DEFAULT_MAX_FIX_RETRIES = 3
DEFAULT_RECOMMENDATION_LIMIT = 5
DEFAULT_BASE_BRANCH = "main"
DEFAULT_REMOTE = "origin"
DEFAULT_COMMIT_SCOPE = "backlog"
DEFAULT_COMMAND_TIMEOUT_SECONDS = 1800.0
DEFAULT_BACKEND_TIMEOUT_SECONDS = 2700.0
DEFAULT_GIT_TIMEOUT_SECONDS = 300.0
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 3600.0
DEFAULT_APPROVAL_POLL_SECONDS = 60.0
DEFAULT_RECOVERY_INTERVAL_SECONDS = 300.0
SUCCESS_PAUSE_SECONDS = 2.0
TERMINATE_GRACE_SECONDS = 2.0

BRANCH_PREFIX = "task/"
SLUG_MAX_CHARS = 40

CHANGE_REQUEST_TITLE_PREFIX = "[Task] "
REVIEW_NEEDED_PREFIX = "[NEEDS REVIEW] "

DEFAULT_CLAUDE_COMMAND = "claude --print --dangerously-skip-permissions --model {model}"
DEFAULT_CLAUDE_MODEL = "sonnet"
DEFAULT_CODEX_COMMAND = "codex exec --full-auto --model {model} -"
DEFAULT_CODEX_MODEL = "gpt-5-codex"
ANTHROPIC_MESSAGES_URL = "https://api.anthropic.com/v1/messages"
ANTHROPIC_VERSION = "2023-06-01"
DEFAULT_API_MODEL = "claude-sonnet-4-5"
DEFAULT_API_MAX_TOKENS = 8192

# Output fragments git prints when the remote branch moved ahead of ours.
PUSH_REJECTED_MARKERS = (
    "[rejected]",
    "non-fast-forward",
    "Updates were rejected",
    "fetch first",
)
CONFLICT_MARKER_PREFIXES = ("<<<<<<< ", ">>>>>>> ")
UNMERGED_STATUS_CODES = ("DD", "AU", "UD", "UA", "DU", "AA", "UU")

FAILED_CHECK_STATES = ("FAILURE", "ERROR", "CANCELLED", "TIMED_OUT", "ACTION_REQUIRED")
PASSED_CHECK_STATES = ("SUCCESS", "NEUTRAL", "SKIPPED")

TEST_RUNNER_PATTERNS = (
    r"pnpm.*test",
    r"npm.*test",
    r"turbo.*test",
    r"vitest",
    r"playwright test",
    r"node.*playwright",
    r"node.*vitest",
    r"cargo test",
    r"pytest",
)

VERIFY_DETAIL_MAX_CHARS = 4000

ERROR_TYPE_NO_OP = "no_op_execution"
ERROR_TYPE_WORKSPACE_DIRTY = "workspace_dirty"
ERROR_TYPE_SANDBOX_BUSY = "sandbox_busy"
ERROR_TYPE_BACKEND = "backend_failed"
ERROR_TYPE_PUSH_FAILED = "push_failed"
ERROR_TYPE_MERGE_CONFLICT = "merge_conflict_unresolved"
ERROR_TYPE_CR_REJECTED = "change_request_rejected"
ERROR_TYPE_APPROVAL_TIMEOUT = "approval_timeout"
ERROR_TYPE_UNEXPECTED = "unexpected_error"
