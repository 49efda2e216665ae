"""Storage keys and limits shared by the persistence services."""

QUIZ_STATE_PREFIX: str = "quiz_state_"
QUIZ_RESULTS_KEY: str = "quiz_results"
USER_PREFERENCES_KEY: str = "user_preferences"
EXAM_STATS_PREFIX: str = "exam_stats_"
OFFLINE_STATE_KEY: str = "offline_state"
BACKUP_SUFFIX: str = "_backup"

MAX_STORAGE_SIZE_BYTES: int = 5 * 1024 * 1024
WARNING_THRESHOLD: float = 0.8
CRITICAL_THRESHOLD: float = 0.9
BACKUP_SHARE_WARNING: float = 0.1

# Eviction limits applied when usage crosses the warning threshold.
MAX_QUIZ_STATES_KEPT: int = 10
MAX_RESULTS_KEPT: int = 100

RESULTS_HISTORY_LIMIT: int = 50
ERROR_LOG_LIMIT: int = 5

QUIZ_STATE_VERSION: int = 1
FULL_BACKUP_VERSION: int = 1
PREFERENCES_EXPORT_VERSION: int = 1
