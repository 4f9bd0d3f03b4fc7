"""Key-value cache stores that remember when each key was written."""

from __future__ import annotations

import json
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, TypeVar

import structlog
from pydantic import BaseModel, TypeAdapter, ValidationError

from k8s_metrics_agent.errors import KeyNotFoundError, StorageDecodeError, StorageError

log = structlog.get_logger()

T = TypeVar("T")

FILE_EXT = ".json"

Clock = Callable[[], float]


class Storage(Protocol):
    """Key-value store that records the Unix timestamp at which each key was written."""

    def write(self, key: str, value: Any) -> None:
        """Store ``value`` under ``key`` together with the current timestamp."""
        ...

    def read(self, key: str, shape: type[T]) -> tuple[int, T]:
        """Return ``(stored_at, value)`` with the value restored into ``shape``."""
        ...

    def delete(self, key: str) -> None:
        """Remove ``key`` from the store."""
        ...


def _encode(value: Any) -> Any:
    """Convert a value into its JSON-compatible form, rejecting values that can't round-trip."""
    if value is None:
        msg = "given cache value is None"
        raise StorageError(msg)
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, (list, tuple)) and all(isinstance(v, BaseModel) for v in value):
        return [v.model_dump(mode="json") for v in value]
    if not isinstance(value, (dict, list, tuple)):
        msg = f"given value is not a model or container, got {type(value).__name__!r}"
        raise StorageError(msg)
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError) as err:
        msg = f"given value is not serializable: {err}"
        raise StorageError(msg) from err


def _decode(key: str, payload: Any, shape: type[T]) -> T:
    try:
        return TypeAdapter(shape).validate_python(payload)
    except ValidationError as err:
        msg = f"cannot restore cached value for {key!r}: {err}"
        raise StorageDecodeError(msg) from err


class MemoryStorage:
    """Process-local store, lost on restart."""

    def __init__(self, clock: Clock = time.time) -> None:
        self._clock = clock
        self._values: dict[str, tuple[int, Any]] = {}
        self._lock = threading.Lock()

    def write(self, key: str, value: Any) -> None:
        encoded = _encode(value)
        with self._lock:
            self._values[key] = (int(self._clock()), encoded)

    def read(self, key: str, shape: type[T]) -> tuple[int, T]:
        with self._lock:
            entry = self._values.get(key)
        if entry is None:
            raise KeyNotFoundError(key)
        timestamp, payload = entry
        return timestamp, _decode(key, payload, shape)

    def delete(self, key: str) -> None:
        """Remove ``key``; unlike the disk store, a missing key is an error here."""
        with self._lock:
            if key not in self._values:
                raise KeyNotFoundError(key)
            del self._values[key]


class JSONDiskStorage:
    """File-per-key store persisting ``{"timestamp", "value"}`` envelopes as JSON.

    Keys must be valid file names without extension.
    """

    def __init__(self, root_path: str | Path, clock: Clock = time.time) -> None:
        self._root = Path(root_path)
        self._clock = clock
        self._ensure_root()

    def _ensure_root(self) -> None:
        if self._root.exists():
            return
        try:
            self._root.mkdir(parents=True, exist_ok=True)
        except OSError as err:
            log.warning("storage_directory_create_failed", path=str(self._root), error=str(err))

    def path_for(self, key: str) -> Path:
        return self._root / f"{key}{FILE_EXT}"

    def write(self, key: str, value: Any) -> None:
        entry = {"timestamp": int(self._clock()), "value": _encode(value)}
        self._ensure_root()
        try:
            self.path_for(key).write_text(json.dumps(entry))
        except OSError as err:
            msg = f"cannot write cache file for {key!r}: {err}"
            raise StorageError(msg) from err

    def read(self, key: str, shape: type[T]) -> tuple[int, T]:
        try:
            raw = self.path_for(key).read_text()
        except FileNotFoundError:
            raise KeyNotFoundError(key) from None
        except OSError as err:
            msg = f"cannot read cache file for {key!r}: {err}"
            raise StorageError(msg) from err

        try:
            entry = json.loads(raw)
            timestamp = int(entry["timestamp"])
            payload = entry["value"]
        except (ValueError, TypeError, KeyError) as err:
            msg = f"corrupt cache file for {key!r}: {err}"
            raise StorageDecodeError(msg) from err

        return timestamp, _decode(key, payload, shape)

    def delete(self, key: str) -> None:
        """Remove ``key``; deleting a key that does not exist is not an error."""
        try:
            self.path_for(key).unlink(missing_ok=True)
        except OSError as err:
            msg = f"cannot delete cache file for {key!r}: {err}"
            raise StorageError(msg) from err
