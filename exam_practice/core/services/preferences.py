"""Validated user preferences persisted through the durable store."""

from __future__ import annotations

import logging
from typing import Any, Callable, Literal

from pydantic import Field, StrictBool, ValidationError

from exam_practice.constants.storage_constants import (
    ERROR_LOG_LIMIT,
    PREFERENCES_EXPORT_VERSION,
    USER_PREFERENCES_KEY,
)
from exam_practice.core.models import QuizMode, StorageError, StorageErrorType
from exam_practice.core.records import StoredRecord
from exam_practice.core.services.durable_store import DurableStore
from exam_practice.utils.observable import Observable

logger = logging.getLogger(__name__)

Theme = Literal["light", "dark", "system"]


class UserPreferences(StoredRecord):
    theme: Theme = "system"
    show_timer: StrictBool = True
    show_question_numbers: StrictBool = True
    auto_save: StrictBool = True
    review_mode: StrictBool = False
    sound: StrictBool = False
    animations_enabled: StrictBool = True
    default_quiz_mode: QuizMode | None = Field(default=None)


def _field_name(key: str) -> str | None:
    """Map a snake_case or camelCase key to the model field name."""
    for name, info in UserPreferences.model_fields.items():
        if key in (name, info.alias):
            return name
    return None


class PreferencesManager:
    def __init__(self, store: DurableStore) -> None:
        self._store = store
        self._preferences = UserPreferences()
        self._errors: list[StorageError] = []
        self._changes: Observable[UserPreferences] = Observable("preferences")
        self._store_unsubscribe: Callable[[], None] | None = store.on_error(self._on_store_error)

    @property
    def preferences(self) -> UserPreferences:
        return self._preferences.model_copy()

    @property
    def errors(self) -> list[StorageError]:
        return list(self._errors)

    def subscribe(self, listener: Callable[[UserPreferences], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    def load(self) -> UserPreferences:
        """Merge stored values over the defaults, dropping anything invalid."""
        stored = self._store.read(USER_PREFERENCES_KEY)
        if stored is None:
            stored = {}
        if not isinstance(stored, dict):
            self._record_error(StorageErrorType.CORRUPTED_DATA, "Stored preferences are not a mapping")
            stored = {}
        merged, rejected = self._merge(UserPreferences(), stored)
        if rejected:
            logger.warning("Dropped invalid stored preferences: %s", ", ".join(rejected))
        self._preferences = merged
        self._changes.emit(self.preferences)
        return self.preferences

    def get(self, key: str) -> Any:
        name = _field_name(key)
        if name is None:
            raise KeyError(key)
        return getattr(self._preferences, name)

    def update_preference(self, key: str, value: Any) -> bool:
        merged, rejected = self._merge(self._preferences, {key: value})
        if rejected:
            logger.error("Invalid value for preference %s: %r", key, value)
            self._record_error(StorageErrorType.CORRUPTED_DATA, f"Invalid value for preference {key}")
            return False
        self._apply(merged)
        return True

    def update_multiple(self, updates: dict[str, Any]) -> int:
        """Apply every valid entry; returns how many were applied."""
        merged, rejected = self._merge(self._preferences, updates)
        if rejected:
            logger.error("Invalid preferences: %s", ", ".join(rejected))
            self._record_error(
                StorageErrorType.CORRUPTED_DATA, f"Invalid preferences: {', '.join(rejected)}"
            )
        applied = len(updates) - len(rejected)
        if applied:
            self._apply(merged)
        return applied

    def toggle(self, key: str) -> bool:
        current = self.get(key)
        if not isinstance(current, bool):
            logger.error("Cannot toggle non-boolean preference: %s", key)
            return False
        return self.update_preference(key, not current)

    def reset(self, confirm: bool = False) -> bool:
        if not confirm:
            logger.warning("Preferences reset requires confirmation")
            return False
        defaults = UserPreferences()
        if not self._store.write(USER_PREFERENCES_KEY, defaults.to_json_dict()):
            return False
        self._preferences = defaults
        self._errors = []
        self._changes.emit(self.preferences)
        return True

    def export(self) -> dict[str, Any]:
        return {
            "preferences": self._preferences.to_json_dict(),
            "exportedAt": self._store.now().isoformat(),
            "version": PREFERENCES_EXPORT_VERSION,
        }

    def import_preferences(self, data: Any) -> int:
        """Import an ``export()`` payload over the defaults; returns the number of accepted keys."""
        if not isinstance(data, dict) or not isinstance(data.get("preferences"), dict) or not data.get("version"):
            self._record_error(
                StorageErrorType.CORRUPTED_DATA, "Import failed: Invalid import format", recoverable=False
            )
            return 0
        imported = data["preferences"]
        merged, rejected = self._merge(UserPreferences(), imported)
        accepted = len(imported) - len(rejected)
        if accepted == 0:
            return 0
        if not self._store.write(USER_PREFERENCES_KEY, merged.to_json_dict()):
            return 0
        self._preferences = merged
        self._changes.emit(self.preferences)
        return accepted

    def resolve_theme(self, system_prefers_dark: bool = False) -> Literal["light", "dark"]:
        if self._preferences.theme == "system":
            return "dark" if system_prefers_dark else "light"
        return self._preferences.theme

    def clear_errors(self) -> None:
        self._errors = []

    def destroy(self) -> None:
        if self._store_unsubscribe is not None:
            self._store_unsubscribe()
            self._store_unsubscribe = None
        self._changes.clear()

    def _merge(self, base: UserPreferences, updates: dict[str, Any]) -> tuple[UserPreferences, list[str]]:
        values = base.model_dump()
        rejected: list[str] = []
        for key, value in updates.items():
            name = _field_name(key)
            if name is None:
                rejected.append(key)
                continue
            try:
                UserPreferences.model_validate({**values, name: value})
            except ValidationError:
                rejected.append(key)
                continue
            values[name] = value
        return UserPreferences.model_validate(values), rejected

    def _apply(self, preferences: UserPreferences) -> None:
        self._preferences = preferences
        if not self._store.write(USER_PREFERENCES_KEY, preferences.to_json_dict()):
            self._record_error(StorageErrorType.PERMISSION_DENIED, "Failed to save preferences")
        self._changes.emit(self.preferences)

    def _record_error(
        self, error_type: StorageErrorType, message: str, recoverable: bool = True
    ) -> None:
        error = StorageError(
            type=error_type, message=message, timestamp=self._store.now(), recoverable=recoverable
        )
        self._errors = [*self._errors[-(ERROR_LOG_LIMIT - 1):], error]

    def _on_store_error(self, error: StorageError) -> None:
        if USER_PREFERENCES_KEY in error.message:
            self._errors = [*self._errors[-(ERROR_LOG_LIMIT - 1):], error]
