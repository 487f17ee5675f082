"""Key/value persistence for console state.

A single ``KeyValueStore`` is created per process and passed to every
``PersistentSlot`` that needs it. Each slot holds one JSON-encoded value under
its own key and debounces its writes independently.

Reads never raise: a missing key or a value that fails to decode yields the
slot default. Writes that fail are logged and dropped; the in-memory value
stays authoritative.
"""

from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, Protocol, TypeVar

from loguru import logger

from .log_buffer import normalize_logs
from .models import JobSnapshot, LogEntry
from .settings import (
    JOB_CURSOR_KEY,
    JOB_LOGS_KEY,
    JOB_SNAPSHOT_KEY,
    LOG_WRITE_DELAY,
    OPTION_SELECTIONS_KEY,
    SELECTED_ACTION_KEY,
    SELECTED_OWNERS_KEY,
)

T = TypeVar("T")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]:
        ...

    def set(self, key: str, value: str) -> None:
        ...

    def remove(self, key: str) -> None:
        ...


class MemoryStore:
    """In-process store, used for tests and when persistence is disabled."""

    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


def _atomic_write_json(path: Path, payload: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    temp_path = path.parent / f".{path.name}.tmp"
    try:
        with open(temp_path, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        try:
            os.chmod(temp_path, 0o600)
        except OSError:
            pass
        temp_path.replace(path)
    except Exception:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError:
            pass
        raise


class JsonFileStore:
    """Store all keys in one JSON object on disk, rewritten atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._data: Dict[str, str] = self._load()

    def _load(self) -> Dict[str, str]:
        try:
            content = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            logger.warning(f"Failed to read state file {self.path}: {exc}")
            return {}
        try:
            data = json.loads(content) if content else {}
        except json.JSONDecodeError:
            logger.warning(f"State file {self.path} is not valid JSON; starting empty")
            return {}
        if not isinstance(data, dict):
            return {}
        return {str(key): value for key, value in data.items() if isinstance(value, str)}

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        updated = dict(self._data)
        updated[key] = value
        _atomic_write_json(self.path, updated)
        self._data = updated

    def remove(self, key: str) -> None:
        if key not in self._data:
            return
        updated = dict(self._data)
        updated.pop(key)
        _atomic_write_json(self.path, updated)
        self._data = updated


class PersistentSlot(Generic[T]):
    """One persisted value with an optional debounced write.

    ``encode``/``decode`` convert between the held value and plain JSON data.
    ``reduce_before_persist`` is applied to the value only when it is written.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str,
        default: T,
        *,
        write_delay: float = 0.0,
        encode: Optional[Callable[[T], Any]] = None,
        decode: Optional[Callable[[Any], T]] = None,
        reduce_before_persist: Optional[Callable[[T], T]] = None,
    ):
        self.store = store
        self.key = key
        self.default = default
        self.write_delay = write_delay
        self._encode = encode or (lambda value: value)
        self._decode = decode or (lambda data: data)
        self._reduce = reduce_before_persist
        self._pending: Optional[asyncio.TimerHandle] = None
        self._dirty = False
        self._value: T = self._load()

    def _load(self) -> T:
        try:
            raw = self.store.get(self.key)
            if raw is None:
                return self.default
            return self._decode(json.loads(raw))
        except (OSError, AttributeError, TypeError, ValueError, KeyError) as exc:
            logger.debug(f"Discarding unreadable value for {self.key}: {exc}")
            return self.default

    @property
    def value(self) -> T:
        return self._value

    @property
    def has_pending_write(self) -> bool:
        return self._pending is not None

    def set(self, value: T) -> None:
        self._value = value
        self._dirty = True
        self._schedule_write()

    def _schedule_write(self) -> None:
        if self.write_delay <= 0:
            self.flush()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._cancel_pending()
        self._pending = loop.call_later(self.write_delay, self._fire)

    def _fire(self) -> None:
        self._pending = None
        self.flush()

    def _cancel_pending(self) -> None:
        if self._pending is not None:
            self._pending.cancel()
            self._pending = None

    def flush(self) -> None:
        """Write the current value now if it changed, dropping any scheduled write."""
        self._cancel_pending()
        if not self._dirty:
            return
        self._dirty = False
        value = self._reduce(self._value) if self._reduce else self._value
        try:
            self.store.set(self.key, json.dumps(self._encode(value), ensure_ascii=False))
        except (OSError, TypeError, ValueError) as exc:
            logger.debug(f"Failed to persist {self.key}: {exc}")

    def clear(self) -> None:
        """Reset to the default and remove the stored key."""
        self._cancel_pending()
        self._value = self.default
        self._dirty = False
        try:
            self.store.remove(self.key)
        except OSError as exc:
            logger.debug(f"Failed to remove {self.key}: {exc}")


def _encode_job(job: Optional[JobSnapshot]) -> Optional[Dict[str, Any]]:
    return job.to_dict() if job else None


def _decode_job(data: Any) -> Optional[JobSnapshot]:
    return JobSnapshot.from_dict(data) if data else None


def _encode_logs(entries: List[LogEntry]) -> List[Dict[str, Any]]:
    return [entry.to_dict() for entry in entries]


def _decode_logs(data: Any) -> List[LogEntry]:
    return [LogEntry.from_dict(item) for item in data]


def _decode_cursor(data: Any) -> int:
    return max(int(data), 0)


def _decode_string_list(data: Any) -> List[str]:
    if not isinstance(data, list):
        raise TypeError("expected a list")
    return [str(item) for item in data]


def _decode_selections(data: Any) -> Dict[str, List[str]]:
    if not isinstance(data, dict):
        raise TypeError("expected an object")
    return {str(key): _decode_string_list(value) for key, value in data.items()}


def _decode_selected_action(data: Any) -> Optional[str]:
    return str(data) if data else None


class ConsoleState:
    """All persisted slots of one console process, sharing one store."""

    def __init__(self, store: KeyValueStore, *, log_write_delay: float = LOG_WRITE_DELAY):
        self.store = store
        self.selected_action: PersistentSlot[Optional[str]] = PersistentSlot(
            store, SELECTED_ACTION_KEY, None, decode=_decode_selected_action
        )
        self.option_selections: PersistentSlot[Dict[str, List[str]]] = PersistentSlot(
            store, OPTION_SELECTIONS_KEY, {}, decode=_decode_selections
        )
        self.selected_owners: PersistentSlot[List[str]] = PersistentSlot(
            store, SELECTED_OWNERS_KEY, [], decode=_decode_string_list
        )
        self.job: PersistentSlot[Optional[JobSnapshot]] = PersistentSlot(
            store, JOB_SNAPSHOT_KEY, None, encode=_encode_job, decode=_decode_job
        )
        self.logs: PersistentSlot[List[LogEntry]] = PersistentSlot(
            store,
            JOB_LOGS_KEY,
            [],
            write_delay=log_write_delay,
            encode=_encode_logs,
            decode=_decode_logs,
            reduce_before_persist=normalize_logs,
        )
        self.cursor: PersistentSlot[int] = PersistentSlot(store, JOB_CURSOR_KEY, 0, decode=_decode_cursor)

    def slots(self) -> List[PersistentSlot]:
        return [
            self.selected_action,
            self.option_selections,
            self.selected_owners,
            self.job,
            self.logs,
            self.cursor,
        ]

    def flush_all(self) -> None:
        for slot in self.slots():
            slot.flush()
