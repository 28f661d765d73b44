"""Shared constants."""

ALWAYS_PATH = "__always"
WHOLE_CONTEXT_PATH = "*"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_HEARTBEAT_INTERVAL = 0.8
DEFAULT_EXECUTION_TIMEOUT = 120.0
DEFAULT_TICK_INTERVAL = 1.0
DEFAULT_HISTORY_LIMIT = 50
MAX_DEAD_LETTER_ENTRIES = 300
SUMMARY_WINDOW = 3

WORKFLOW_COMPLETE_ACTION = "workflow.complete"
CONNECTOR_MUTATION_HINTS = (
    "create_",
    "update_",
    "delete_",
    "append_",
    "send_",
    "write_",
    "set_",
)
