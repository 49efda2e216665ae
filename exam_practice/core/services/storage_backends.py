"""Key/value storage media used underneath the durable store.

Backends are deliberately dumb: synchronous string-in/string-out storage
that may fail. Failures are reported with the exceptions below so the
durable store can classify them.
"""

from __future__ import annotations

import errno
import json
import os
from pathlib import Path
import tempfile
from typing import Protocol


class StorageBackendError(Exception):
    """Base class for failures raised by a storage backend."""


class QuotaExceededError(StorageBackendError):
    """Raised when a write would exceed the medium's capacity."""


class StoragePermissionError(StorageBackendError):
    """Raised when the environment refuses writes (read-only media, privacy mode)."""


class StorageReadError(StorageBackendError):
    """Raised when a stored value cannot be read back."""


class StorageBackend(Protocol):
    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...

    def clear(self) -> None: ...


def entry_size(key: str, value: str) -> int:
    """Size accounting shared by all backends: characters of key plus value."""
    return len(key) + len(value)


class MemoryStorageBackend:
    """In-process storage with an optional hard quota."""

    def __init__(self, quota_bytes: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._quota_bytes = quota_bytes

    def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        if not isinstance(value, str):
            raise TypeError("Storage values must be strings.")
        self._check_quota(key, value)
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)

    def clear(self) -> None:
        self._data.clear()

    def used_bytes(self) -> int:
        return sum(entry_size(key, value) for key, value in self._data.items())

    def _check_quota(self, key: str, value: str) -> None:
        if self._quota_bytes is None:
            return
        current = self._data.get(key)
        used = self.used_bytes() - (entry_size(key, current) if current is not None else 0)
        if used + entry_size(key, value) > self._quota_bytes:
            raise QuotaExceededError(
                f"Writing {key} would exceed the storage quota of {self._quota_bytes} bytes."
            )


class JsonFileStorageBackend(MemoryStorageBackend):
    """Storage persisted to a single JSON file, rewritten atomically on every change."""

    def __init__(self, path: Path, quota_bytes: int | None = None) -> None:
        super().__init__(quota_bytes=quota_bytes)
        self._path = Path(path)
        self._data = self._load()

    @property
    def path(self) -> Path:
        return self._path

    def set_item(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        super().set_item(key, value)
        try:
            self._flush()
        except StorageBackendError:
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def remove_item(self, key: str) -> None:
        if key not in self._data:
            return
        previous = self._data.pop(key)
        try:
            self._flush()
        except StorageBackendError:
            self._data[key] = previous
            raise

    def clear(self) -> None:
        previous = dict(self._data)
        self._data.clear()
        try:
            self._flush()
        except StorageBackendError:
            self._data = previous
            raise

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise StorageReadError(f"Cannot read storage file {self._path}: {exc}") from exc
        if not isinstance(raw, dict) or not all(isinstance(v, str) for v in raw.values()):
            raise StorageReadError(f"Storage file {self._path} does not hold a string mapping.")
        return raw

    def _flush(self) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".storage-", suffix=".json")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(self._data, handle)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except PermissionError as exc:
            raise StoragePermissionError(str(exc)) from exc
        except OSError as exc:
            if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
                raise QuotaExceededError(str(exc)) from exc
            raise StoragePermissionError(str(exc)) from exc
