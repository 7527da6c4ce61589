"""Registry of one-shot completion slots keyed by command id.

Each slot is an :class:`asyncio.Future` created on the waiter's event loop.
Insertion and removal happen under a lock so a push notification arriving on
another thread cannot resolve a slot twice or resurrect one that has already
been abandoned. Whoever pops the slot first wins; every later resolution
attempt for the same id is a no-op.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Generic, Optional, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class PendingCompletionRegistry(Generic[T]):
    """Owns pending completion slots for the lifetime of one push channel."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slots: Dict[str, asyncio.Future[T]] = {}
        self._closed = False

    def register(self, key: str) -> asyncio.Future[T]:
        """Create a slot for ``key`` bound to the running loop."""

        loop = asyncio.get_running_loop()
        with self._lock:
            if self._closed:
                raise RuntimeError("Completion registry is closed")
            if key in self._slots:
                raise ValueError(f"Completion already pending for {key!r}")
            future: asyncio.Future[T] = loop.create_future()
            self._slots[key] = future
        return future

    def resolve(self, key: str, value: T) -> bool:
        """Resolve the slot for ``key``; return True if this call won."""

        with self._lock:
            future = self._slots.pop(key, None)
        if future is None:
            return False

        loop = future.get_loop()
        if _running_loop() is loop:
            _set_result(future, value)
        else:
            loop.call_soon_threadsafe(_set_result, future, value)
        LOGGER.debug("Resolved pending completion %s", key)
        return True

    def discard(self, key: str) -> bool:
        """Drop the slot for ``key`` without resolving it."""

        with self._lock:
            future = self._slots.pop(key, None)
        if future is None:
            return False
        _cancel(future)
        return True

    def close(self) -> None:
        """Cancel and drop every pending slot; later registrations fail."""

        with self._lock:
            self._closed = True
            pending = list(self._slots.values())
            self._slots.clear()
        for future in pending:
            _cancel(future)

    def reopen(self) -> None:
        with self._lock:
            self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def get(self, key: str) -> Optional[asyncio.Future[T]]:
        with self._lock:
            return self._slots.get(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._slots

    def __len__(self) -> int:
        with self._lock:
            return len(self._slots)


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _set_result(future: asyncio.Future, value: object) -> None:
    if not future.done():
        future.set_result(value)


def _cancel(future: asyncio.Future) -> None:
    loop = future.get_loop()
    if _running_loop() is loop:
        future.cancel()
    elif not loop.is_closed():
        loop.call_soon_threadsafe(future.cancel)
