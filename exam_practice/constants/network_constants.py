"""Network and sync configuration constants for the quiz application."""

DEFAULT_HOST: str = "127.0.0.1"
DEFAULT_PORT: int = 8000

RETRY_BASE_DELAY_SECONDS: float = 1.0
RETRY_MAX_DELAY_SECONDS: float = 30.0
MAX_RETRY_ATTEMPTS: int = 3
PERIODIC_SYNC_INTERVAL_SECONDS: float = 30.0
STARTUP_SYNC_DELAY_SECONDS: float = 1.0
SYNC_REQUEST_TIMEOUT_SECONDS: float = 10.0
