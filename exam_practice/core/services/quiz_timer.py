"""Elapsed/countdown timer with pause support and one-shot warnings."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import Callable

from exam_practice.constants.quiz_constants import FINAL_WARNING_SECONDS, TIMER_TICK_SECONDS
from exam_practice.core.scheduling import ScheduledTask, Scheduler
from exam_practice.utils.observable import Observable

logger = logging.getLogger(__name__)


class TimerWarningType(str, Enum):
    HALF = "half"
    QUARTER = "quarter"
    FINAL = "final"
    OVERTIME = "overtime"


@dataclass(slots=True)
class TimerWarning:
    type: TimerWarningType
    message: str
    triggered: bool = False


class QuizTimer:
    """Counts up, or down when a duration is given.

    Warnings are checked on a periodic tick and fire once each until
    ``clear_warnings`` re-arms them.
    """

    def __init__(self, scheduler: Scheduler, tick_interval: float = TIMER_TICK_SECONDS) -> None:
        self._scheduler = scheduler
        self._tick_interval = tick_interval
        self._duration: float | None = None
        self._accumulated = 0.0
        self._running_since: float | None = None
        self._running = False
        self._paused = False
        self._tick: ScheduledTask | None = None
        self._warnings: list[TimerWarning] = []
        self._warning_channel: Observable[TimerWarning] = Observable("timer warnings")

    def start(self, duration: float | None = None) -> None:
        """Start from zero; ``duration`` is the time limit in seconds."""
        if duration is not None and duration <= 0:
            raise ValueError("Timer duration must be positive.")
        self._cancel_tick()
        self._duration = duration
        self._accumulated = 0.0
        self._running_since = self._scheduler.monotonic()
        self._running = True
        self._paused = False
        self._warnings = self._create_warnings(duration) if duration is not None else []
        self._arm_tick()

    def pause(self) -> None:
        if not self._running or self._paused:
            return
        self._accumulated += self._scheduler.monotonic() - self._running_since
        self._running_since = None
        self._paused = True
        self._cancel_tick()

    def resume(self) -> None:
        if not self._running or not self._paused:
            return
        self._running_since = self._scheduler.monotonic()
        self._paused = False
        self._arm_tick()

    def stop(self) -> None:
        self._cancel_tick()
        self._duration = None
        self._accumulated = 0.0
        self._running_since = None
        self._running = False
        self._paused = False
        self._warnings = []

    def add_time(self, seconds: float) -> None:
        """Extend the time limit; has no effect on an open-ended timer."""
        if self._duration is None:
            return
        self._duration = max(0.0, self._duration + seconds)

    def elapsed(self) -> float:
        if not self._running:
            return 0.0
        running = self._scheduler.monotonic() - self._running_since if self._running_since is not None else 0.0
        return self._accumulated + running

    def remaining(self) -> float | None:
        if self._duration is None:
            return None
        return max(0.0, self._duration - self.elapsed())

    def is_time_up(self) -> bool:
        return self._running and self._duration is not None and self.elapsed() >= self._duration

    @property
    def duration(self) -> float | None:
        return self._duration

    def status(self) -> str:
        if not self._running:
            return "stopped"
        if self._paused:
            return "paused"
        if self.is_time_up():
            return "overtime"
        return "running"

    def progress(self) -> float:
        """Share of the time limit used, in percent (0 for open-ended timers)."""
        if not self._duration:
            return 0.0
        return min(100.0, self.elapsed() / self._duration * 100)

    def formatted(self) -> str:
        remaining = self.remaining()
        shown = int(remaining if remaining is not None else self.elapsed())
        hours, rest = divmod(shown, 3600)
        minutes, seconds = divmod(rest, 60)
        if hours:
            return f"{hours:02d}:{minutes:02d}:{seconds:02d}"
        return f"{minutes:02d}:{seconds:02d}"

    def active_warnings(self) -> list[TimerWarning]:
        return [warning for warning in self._warnings if warning.triggered]

    def clear_warnings(self) -> None:
        for warning in self._warnings:
            warning.triggered = False

    def on_warning(self, callback: Callable[[TimerWarning], None]) -> Callable[[], None]:
        return self._warning_channel.subscribe(callback)

    def check_warnings(self) -> list[TimerWarning]:
        """Fire every warning whose threshold has been crossed; returns the newly fired ones."""
        remaining = self.remaining()
        if remaining is None:
            return []
        thresholds = {
            TimerWarningType.HALF: self._duration / 2,
            TimerWarningType.QUARTER: self._duration / 4,
            TimerWarningType.FINAL: FINAL_WARNING_SECONDS,
            TimerWarningType.OVERTIME: 0.0,
        }
        fired = []
        for warning in self._warnings:
            if not warning.triggered and remaining <= thresholds[warning.type]:
                warning.triggered = True
                fired.append(warning)
                logger.info("Timer warning: %s", warning.message)
                self._warning_channel.emit(warning)
        return fired

    def _create_warnings(self, duration: float) -> list[TimerWarning]:
        minutes = duration / 60
        warnings = [
            TimerWarning(
                TimerWarningType.HALF,
                f"You have {int(minutes / 2)} minutes remaining (halfway point)",
            ),
            TimerWarning(TimerWarningType.QUARTER, f"Warning: Only {int(minutes / 4)} minutes left!"),
        ]
        if duration > FINAL_WARNING_SECONDS:
            warnings.append(
                TimerWarning(TimerWarningType.FINAL, "Final warning: Less than 5 minutes remaining!")
            )
        warnings.append(
            TimerWarning(
                TimerWarningType.OVERTIME,
                "Time is up! You can continue but your time will be recorded as overtime.",
            )
        )
        return warnings

    def _arm_tick(self) -> None:
        self._tick = self._scheduler.call_every(self._tick_interval, self.check_warnings)

    def _cancel_tick(self) -> None:
        if self._tick is not None:
            self._tick.cancel()
            self._tick = None
