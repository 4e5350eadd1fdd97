"""Default tuning values shared across convoy modules."""

DEFAULT_CONCURRENCY = 4
DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_OPERATION_TIMEOUT = 300.0
DEFAULT_POLL_INTERVAL = 10.0
DEFAULT_CONVERGENCE_TIMEOUT = 900.0
DEFAULT_APPROVAL_TIMEOUT = 3600.0

STATE_LOCK_NAME = "default"
