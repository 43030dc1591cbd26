"""
Storage substrate interface and an in-process implementation.

A substrate is a string key/value store shared by several contexts. Each
context gets its own view; writes made through one view are announced to
listeners subscribed on every *other* view, never on the writer's own.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol, runtime_checkable

from .models import StorageEvent


logger = logging.getLogger("statesync.substrate")

Listener = Callable[[StorageEvent], None]


class Subscription:
    """Handle for one registered listener; `close()` unregisters it."""

    def __init__(self, release: Callable[[], None]) -> None:
        self._release: Optional[Callable[[], None]] = release
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._release is not None

    def close(self) -> None:
        with self._lock:
            release, self._release = self._release, None
        if release is not None:
            release()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@runtime_checkable
class StorageBackend(Protocol):
    available: bool

    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def subscribe(self, listener: Listener) -> Subscription: ...


class ListenerRegistry:
    """Thread-safe listener list shared by the substrate implementations."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def add(self, listener: Listener) -> Subscription:
        with self._lock:
            self._listeners.append(listener)

        def release() -> None:
            with self._lock:
                try:
                    self._listeners.remove(listener)
                except ValueError:
                    pass

        return Subscription(release)

    def __len__(self) -> int:
        with self._lock:
            return len(self._listeners)

    def dispatch(self, event: StorageEvent) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                # One failing listener must not starve the others
                logger.exception("Storage listener raised")


class MemoryOrigin:
    """
    Process-local store shared by any number of `MemoryStorage` contexts.

    Plays the role of a browser origin's localStorage: every context sees the
    same data, and each write is announced to the other contexts only.
    """

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.RLock()
        self._contexts: List["MemoryStorage"] = []

    def context(self) -> "MemoryStorage":
        return MemoryStorage(self)

    def snapshot(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._data)

    @property
    def context_count(self) -> int:
        """Contexts currently receiving change events."""
        with self._lock:
            return len(self._contexts)

    # -------- Internal: used by MemoryStorage --------
    def _attach(self, ctx: "MemoryStorage") -> None:
        with self._lock:
            if ctx not in self._contexts:
                self._contexts.append(ctx)

    def _detach(self, ctx: "MemoryStorage") -> None:
        with self._lock:
            if ctx in self._contexts:
                self._contexts.remove(ctx)

    def _get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._data.get(key)

    def _write(self, source: "MemoryStorage", key: Optional[str], value: Optional[str]) -> None:
        with self._lock:
            if key is None:
                if not self._data:
                    return
                old = None
                self._data.clear()
            else:
                old = self._data.get(key)
                if value is None:
                    if key not in self._data:
                        return
                    del self._data[key]
                else:
                    self._data[key] = value
            others = [c for c in self._contexts if c is not source]
        event = StorageEvent(key=key, old_value=old, new_value=value)
        for ctx in others:
            ctx._listeners.dispatch(event)


class MemoryStorage:
    """One context's view of a `MemoryOrigin`.

    The context is registered with the origin while it has at least one
    subscribed listener.
    """

    available = True

    def __init__(self, origin: Optional[MemoryOrigin] = None) -> None:
        self._origin = origin if origin is not None else MemoryOrigin()
        self._listeners = ListenerRegistry()

    @property
    def origin(self) -> MemoryOrigin:
        return self._origin

    def get(self, key: str) -> Optional[str]:
        return self._origin._get(key)

    def set(self, key: str, value: str) -> None:
        self._origin._write(self, key, value)

    def remove(self, key: str) -> None:
        self._origin._write(self, key, None)

    def clear(self) -> None:
        self._origin._write(self, None, None)

    def subscribe(self, listener: Listener) -> Subscription:
        inner = self._listeners.add(listener)
        self._origin._attach(self)

        def release() -> None:
            inner.close()
            # Contexts without listeners drop out of the origin's dispatch list
            if not len(self._listeners):
                self._origin._detach(self)

        return Subscription(release)


__all__ = [
    "Listener",
    "Subscription",
    "StorageBackend",
    "ListenerRegistry",
    "MemoryOrigin",
    "MemoryStorage",
]
