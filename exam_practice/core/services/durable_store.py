"""Crash-resilient key/value persistence on top of a storage backend.

Every write keeps the previous value under ``<key>_backup`` so a failed
write or a corrupted read can fall back to it. Failures never escape as
exceptions: they are converted to ``StorageError`` records and broadcast to
``on_error`` subscribers, and the calling operation returns ``False`` or
``None``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
import logging
from typing import Any, Callable

from pydantic import ValidationError

from exam_practice.constants.storage_constants import (
    BACKUP_SHARE_WARNING,
    BACKUP_SUFFIX,
    CRITICAL_THRESHOLD,
    ERROR_LOG_LIMIT,
    EXAM_STATS_PREFIX,
    MAX_QUIZ_STATES_KEPT,
    MAX_RESULTS_KEPT,
    MAX_STORAGE_SIZE_BYTES,
    OFFLINE_STATE_KEY,
    QUIZ_RESULTS_KEY,
    QUIZ_STATE_PREFIX,
    QUIZ_STATE_VERSION,
    USER_PREFERENCES_KEY,
    WARNING_THRESHOLD,
    FULL_BACKUP_VERSION,
)
from exam_practice.core.models import QuizResult, QuizSession, StorageError, StorageErrorType
from exam_practice.core.records import (
    ExamStatsRecord,
    FullBackupRecord,
    QuizResultRecord,
    QuizStateRecord,
)
from exam_practice.core.services.storage_backends import (
    QuotaExceededError,
    StorageBackend,
    StorageBackendError,
    entry_size,
)
from exam_practice.utils.observable import Observable

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


@dataclass(slots=True)
class StorageUsage:
    used: int
    available: int
    percentage: float
    breakdown: dict[str, int] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RepairReport:
    is_healthy: bool
    repairs_attempted: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


def backup_key(key: str) -> str:
    return key + BACKUP_SUFFIX


def quiz_state_key(exam_id: str) -> str:
    return f"{QUIZ_STATE_PREFIX}{exam_id}"


class DurableStore:
    """Safe persistence with backups, quota management and repair."""

    def __init__(
        self,
        backend: StorageBackend,
        *,
        max_storage_bytes: int = MAX_STORAGE_SIZE_BYTES,
        warning_threshold: float = WARNING_THRESHOLD,
        max_quiz_states: int = MAX_QUIZ_STATES_KEPT,
        max_results: int = MAX_RESULTS_KEPT,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if not 0 < warning_threshold <= 1:
            raise ValueError("Warning threshold must be a fraction in (0, 1].")
        self._backend = backend
        self._max_storage_bytes = max_storage_bytes
        self._warning_threshold = warning_threshold
        self._max_quiz_states = max_quiz_states
        self._max_results = max_results
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._error_channel: Observable[StorageError] = Observable("storage errors")
        self._error_log: list[StorageError] = []

    # --- Error channel ---

    def on_error(self, callback: Callable[[StorageError], None]) -> Callable[[], None]:
        """Register an error observer; returns a function that unregisters it."""
        return self._error_channel.subscribe(callback)

    @property
    def recent_errors(self) -> list[StorageError]:
        return list(self._error_log)

    def now(self) -> datetime:
        return self._clock()

    def report_error(
        self, error_type: StorageErrorType, message: str, recoverable: bool = True
    ) -> StorageError:
        error = StorageError(
            type=error_type,
            message=message,
            timestamp=self._clock(),
            recoverable=recoverable,
        )
        logger.warning("Storage error (%s): %s", error_type.value, message)
        self._error_log = [*self._error_log[-(ERROR_LOG_LIMIT - 1):], error]
        self._error_channel.emit(error)
        return error

    # --- Raw access ---

    def read_raw(self, key: str) -> str | None:
        try:
            return self._backend.get_item(key)
        except StorageBackendError as exc:
            logger.error("Failed to read %s: %s", key, exc)
            backup = self._read_backup(key)
            if backup is not None:
                self.report_error(
                    StorageErrorType.CORRUPTED_DATA,
                    f"Failed to read {key}: {exc}; using backup copy",
                    recoverable=True,
                )
                return backup
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Failed to read {key}: {exc}",
                recoverable=False,
            )
            return None

    def write_raw(self, key: str, value: str) -> bool:
        if not self._check_and_cleanup():
            self.report_error(
                StorageErrorType.QUOTA_EXCEEDED,
                "Storage cleanup failed, cannot save data",
                recoverable=False,
            )
            return False

        backed_up = self._create_backup(key)
        try:
            self._backend.set_item(key, value)
            return True
        except QuotaExceededError as exc:
            self.report_error(
                StorageErrorType.QUOTA_EXCEEDED, f"Failed to save {key}: {exc}", recoverable=True
            )
        except StorageBackendError as exc:
            self.report_error(
                StorageErrorType.PERMISSION_DENIED, f"Failed to save {key}: {exc}", recoverable=False
            )
        if backed_up:
            self._restore_from_backup(key)
        return False

    def remove(self, key: str) -> None:
        """Delete ``key`` together with its backup copy."""
        for target in (key, backup_key(key)):
            try:
                self._backend.remove_item(target)
            except StorageBackendError as exc:
                self.report_error(
                    StorageErrorType.PERMISSION_DENIED,
                    f"Failed to remove {target}: {exc}",
                    recoverable=False,
                )

    def keys(self, prefix: str = "") -> list[str]:
        return [
            key
            for key in self._backend.keys()
            if key.startswith(prefix) and not key.endswith(BACKUP_SUFFIX)
        ]

    # --- JSON access ---

    def write(self, key: str, value: Any) -> bool:
        try:
            serialized = json.dumps(value)
        except (TypeError, ValueError) as exc:
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Failed to serialize {key}: {exc}",
                recoverable=False,
            )
            return False
        return self.write_raw(key, serialized)

    def read(self, key: str) -> Any | None:
        raw = self.read_raw(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.error("Stored value for %s is not valid JSON: %s", key, exc)

        backup = self._read_backup(key)
        if backup is not None:
            try:
                value = json.loads(backup)
            except ValueError:
                logger.error("Backup for %s is not valid JSON either", key)
            else:
                self.report_error(
                    StorageErrorType.CORRUPTED_DATA,
                    f"Corrupted value for {key}; recovered from backup",
                    recoverable=True,
                )
                return value
        self.report_error(
            StorageErrorType.CORRUPTED_DATA,
            f"Corrupted value for {key} and no usable backup",
            recoverable=False,
        )
        return None

    # --- Quiz state helpers ---

    def save_quiz_state(self, exam_id: str, session: QuizSession) -> bool:
        record = QuizStateRecord.from_session(session, saved_at=self._clock())
        return self.write(quiz_state_key(exam_id), record.to_json_dict())

    def load_quiz_state(self, exam_id: str) -> QuizSession | None:
        key = quiz_state_key(exam_id)
        data = self.read(key)
        if data is None:
            return None
        try:
            record = QuizStateRecord.model_validate(data)
        except ValidationError as exc:
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Corrupted quiz state for exam {exam_id}: {exc.error_count()} invalid field(s)",
                recoverable=True,
            )
            record = self._load_quiz_state_backup(key)
            if record is None:
                return None
        if record.version > QUIZ_STATE_VERSION:
            logger.warning(
                "Quiz state for %s has version %s, newer than supported; loading anyway",
                exam_id,
                record.version,
            )
        return record.to_session()

    def clear_quiz_state(self, exam_id: str) -> None:
        self.remove(quiz_state_key(exam_id))

    def _load_quiz_state_backup(self, key: str) -> QuizStateRecord | None:
        backup = self._read_backup(key)
        if backup is None:
            return None
        try:
            record = QuizStateRecord.model_validate_json(backup)
        except ValidationError:
            logger.error("Backup quiz state for %s is invalid as well", key)
            return None
        logger.info("Recovered quiz state %s from backup", key)
        return record

    # --- Results helpers ---

    def load_quiz_results(self) -> list[QuizResult]:
        data = self.read(QUIZ_RESULTS_KEY)
        if not isinstance(data, list):
            return []
        results: list[QuizResult] = []
        for item in data:
            try:
                results.append(QuizResultRecord.model_validate(item).to_result())
            except ValidationError:
                logger.warning("Skipping invalid stored result record")
        return results

    def save_quiz_results(self, results: list[QuizResult]) -> bool:
        payload = [QuizResultRecord.from_result(result).to_json_dict() for result in results]
        return self.write(QUIZ_RESULTS_KEY, payload)

    def clear_all(self) -> None:
        """Remove every application record (states, results, stats, preferences, queue)."""
        for key in self.keys():
            if key.startswith((QUIZ_STATE_PREFIX, EXAM_STATS_PREFIX)) or key in (
                QUIZ_RESULTS_KEY,
                USER_PREFERENCES_KEY,
                OFFLINE_STATE_KEY,
            ):
                self.remove(key)

    # --- Quota management ---

    def usage(self) -> StorageUsage:
        breakdown = {
            "quiz_states": 0,
            "results": 0,
            "preferences": 0,
            "exam_stats": 0,
            "offline": 0,
            "backups": 0,
            "other": 0,
        }
        used = 0
        try:
            for key in self._backend.keys():
                value = self._backend.get_item(key) or ""
                size = entry_size(key, value)
                used += size
                if key.endswith(BACKUP_SUFFIX):
                    breakdown["backups"] += size
                elif key.startswith(QUIZ_STATE_PREFIX):
                    breakdown["quiz_states"] += size
                elif key == QUIZ_RESULTS_KEY:
                    breakdown["results"] += size
                elif key == USER_PREFERENCES_KEY:
                    breakdown["preferences"] += size
                elif key.startswith(EXAM_STATS_PREFIX):
                    breakdown["exam_stats"] += size
                elif key == OFFLINE_STATE_KEY:
                    breakdown["offline"] += size
                else:
                    breakdown["other"] += size
        except StorageBackendError as exc:
            logger.error("Error calculating storage usage: %s", exc)
            return StorageUsage(
                used=0,
                available=self._max_storage_bytes,
                percentage=0.0,
                warnings=["Unable to calculate storage usage"],
            )

        percentage = used / self._max_storage_bytes * 100
        warnings: list[str] = []
        if percentage > CRITICAL_THRESHOLD * 100:
            warnings.append("Storage is critically low (>90%). Consider clearing old data.")
        elif percentage > self._warning_threshold * 100:
            warnings.append("Storage is running low. Some cleanup may be needed.")
        if breakdown["backups"] > self._max_storage_bytes * BACKUP_SHARE_WARNING:
            warnings.append("Backup files are taking up significant space.")
        return StorageUsage(
            used=used,
            available=self._max_storage_bytes,
            percentage=percentage,
            breakdown=breakdown,
            warnings=warnings,
        )

    def _check_and_cleanup(self) -> bool:
        usage = self.usage()
        if usage.percentage < self._warning_threshold * 100:
            return True

        self.report_error(
            StorageErrorType.QUOTA_EXCEEDED,
            f"Storage usage is at {round(usage.percentage)}%. Some old data will be cleaned up.",
            recoverable=True,
        )
        try:
            self._evict_old_quiz_states()
            self._evict_old_results()
        except StorageBackendError as exc:
            logger.error("Failed to clean up storage: %s", exc)
            return False
        return True

    def _evict_old_quiz_states(self) -> None:
        def started_at(key: str) -> datetime:
            raw = self._backend.get_item(key)
            if raw is None:
                return _EPOCH
            try:
                return QuizStateRecord.model_validate_json(raw).start_time
            except ValidationError:
                return _EPOCH

        state_keys = sorted(self.keys(QUIZ_STATE_PREFIX), key=started_at, reverse=True)
        for key in state_keys[self._max_quiz_states:]:
            logger.info("Evicting old quiz state %s", key)
            self._backend.remove_item(key)
            self._backend.remove_item(backup_key(key))

    def _evict_old_results(self) -> None:
        raw = self._backend.get_item(QUIZ_RESULTS_KEY)
        if raw is None:
            return
        try:
            data = json.loads(raw)
        except ValueError:
            return
        if not isinstance(data, list) or len(data) <= self._max_results:
            return

        def ended_at(item: Any) -> datetime:
            try:
                return QuizResultRecord.model_validate(item).end_time
            except ValidationError:
                return _EPOCH

        recent = sorted(data, key=ended_at, reverse=True)[: self._max_results]
        recent.reverse()
        logger.info("Trimming stored results from %d to %d", len(data), len(recent))
        self._backend.set_item(QUIZ_RESULTS_KEY, json.dumps(recent))

    # --- Backups ---

    def _create_backup(self, key: str) -> bool:
        try:
            current = self._backend.get_item(key)
            if current is None:
                return False
            self._backend.set_item(backup_key(key), current)
            return True
        except StorageBackendError as exc:
            logger.warning("Failed to create backup for %s: %s", key, exc)
            return False

    def _restore_from_backup(self, key: str) -> bool:
        try:
            backup = self._backend.get_item(backup_key(key))
            if backup is None:
                return False
            self._backend.set_item(key, backup)
            self._backend.remove_item(backup_key(key))
            return True
        except StorageBackendError as exc:
            logger.warning("Failed to restore %s from backup: %s", key, exc)
            return False

    def _read_backup(self, key: str) -> str | None:
        try:
            return self._backend.get_item(backup_key(key))
        except StorageBackendError as exc:
            logger.error("Backup for %s is unreadable as well: %s", key, exc)
            return None

    # --- Health ---

    def validate_and_repair(self) -> RepairReport:
        """Scan the store, discarding or restoring anything structurally invalid."""
        report = RepairReport(is_healthy=True)
        try:
            self._repair_orphaned_backups(report)
            self._repair_quiz_states(report)
            self._repair_results(report)
            self._repair_exam_stats(report)
        except StorageBackendError as exc:
            report.errors.append(f"Storage validation failed: {exc}")
            report.is_healthy = False
        if report.repairs_attempted:
            logger.info("Storage repairs: %s", "; ".join(report.repairs_attempted))
        return report

    def _repair_orphaned_backups(self, report: RepairReport) -> None:
        all_keys = self._backend.keys()
        main_keys = {key for key in all_keys if not key.endswith(BACKUP_SUFFIX)}
        for key in all_keys:
            if not key.endswith(BACKUP_SUFFIX):
                continue
            main_key = key[: -len(BACKUP_SUFFIX)]
            if main_key in main_keys:
                continue
            data = self._backend.get_item(key)
            if data is not None:
                try:
                    json.loads(data)
                except ValueError as exc:
                    report.errors.append(f"Failed to restore backup {key}: {exc}")
                    report.is_healthy = False
                else:
                    self._backend.set_item(main_key, data)
                    report.repairs_attempted.append(f"Restored {main_key} from backup")
            self._backend.remove_item(key)
            report.repairs_attempted.append(f"Removed orphaned backup: {key}")

    def _repair_quiz_states(self, report: RepairReport) -> None:
        for key in self.keys(QUIZ_STATE_PREFIX):
            raw = self._backend.get_item(key)
            if raw is None:
                continue
            try:
                QuizStateRecord.model_validate_json(raw)
            except ValidationError:
                self._backend.remove_item(key)
                report.repairs_attempted.append(f"Removed corrupted quiz state: {key}")

    def _repair_results(self, report: RepairReport) -> None:
        raw = self._backend.get_item(QUIZ_RESULTS_KEY)
        if raw is None:
            return
        try:
            data = json.loads(raw)
        except ValueError:
            data = None
        if not isinstance(data, list):
            self._backend.remove_item(QUIZ_RESULTS_KEY)
            report.repairs_attempted.append("Removed unreadable results history")
            return

        valid = []
        for item in data:
            try:
                QuizResultRecord.model_validate(item)
            except ValidationError:
                continue
            valid.append(item)
        if len(valid) != len(data):
            self._backend.set_item(QUIZ_RESULTS_KEY, json.dumps(valid))
            report.repairs_attempted.append(
                f"Cleaned up {len(data) - len(valid)} corrupted results"
            )

    def _repair_exam_stats(self, report: RepairReport) -> None:
        for key in self.keys(EXAM_STATS_PREFIX):
            raw = self._backend.get_item(key)
            if raw is None:
                continue
            try:
                ExamStatsRecord.model_validate_json(raw)
            except ValidationError:
                self._backend.remove_item(key)
                report.repairs_attempted.append(f"Removed corrupted exam stats: {key}")

    # --- Full backup ---

    def create_full_backup(self) -> str | None:
        try:
            data = {}
            for key in self._backend.keys():
                value = self._backend.get_item(key)
                if value is not None:
                    data[key] = value
        except StorageBackendError as exc:
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Backup creation failed: {exc}",
                recoverable=False,
            )
            return None
        record = FullBackupRecord(version=FULL_BACKUP_VERSION, timestamp=self._clock(), data=data)
        return record.model_dump_json(by_alias=True, indent=2)

    def restore_full_backup(self, backup_data: str) -> bool:
        """Replace the whole store with ``backup_data``.

        The blob is validated completely before anything is cleared; if
        writing fails part way, the previous contents are put back.
        """
        try:
            record = FullBackupRecord.model_validate_json(backup_data)
        except ValidationError as exc:
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Backup restoration failed: invalid backup format ({exc.error_count()} error(s))",
                recoverable=False,
            )
            return False

        try:
            previous = {key: self._backend.get_item(key) for key in self._backend.keys()}
        except StorageBackendError as exc:
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Backup restoration failed: current data unreadable ({exc})",
                recoverable=False,
            )
            return False
        try:
            self._backend.clear()
            for key, value in record.data.items():
                self._backend.set_item(key, value)
        except StorageBackendError as exc:
            self.report_error(
                StorageErrorType.CORRUPTED_DATA,
                f"Backup restoration failed: {exc}",
                recoverable=False,
            )
            self._rollback(previous)
            return False
        logger.info("Full backup restored (%d keys)", len(record.data))
        return True

    def _rollback(self, previous: dict[str, str | None]) -> None:
        try:
            self._backend.clear()
            for key, value in previous.items():
                if value is not None:
                    self._backend.set_item(key, value)
        except StorageBackendError:
            logger.exception("Rollback after failed restore did not complete")
