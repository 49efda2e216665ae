"""Quiz-related constants shared across the session, timer and scoring layers."""

AUTO_SAVE_INTERVAL_SECONDS: float = 5.0
MAX_HISTORY_SIZE: int = 50
MAX_NAVIGATION_PATTERNS: int = 50

TIMER_TICK_SECONDS: float = 1.0
FINAL_WARNING_SECONDS: float = 5 * 60

PASSING_SCORE: float = 70.0
DUPLICATE_RESULT_WINDOW_SECONDS: float = 1.0
DEFAULT_TREND_DAYS: int = 30
RECENT_RESULTS_COUNT: int = 5
