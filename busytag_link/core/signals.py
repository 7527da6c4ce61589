"""Notification hub used by the device facade to publish state changes."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections import defaultdict
from enum import Enum
from typing import Any, Awaitable, Callable, DefaultDict, List, Set

LOGGER = logging.getLogger(__name__)

Listener = Callable[[Any], Awaitable[None] | None]


class Signal(str, Enum):
    CONNECTION_CHANGED = "connection_changed"
    BASIC_INFO = "basic_info"
    SOLID_COLOR = "solid_color"
    PATTERN = "pattern"
    DISPLAY_BRIGHTNESS = "display_brightness"
    USB_MASS_STORAGE = "usb_mass_storage"
    FILE_LIST = "file_list"
    UPLOAD_PROGRESS = "upload_progress"
    UPLOAD_FINISHED = "upload_finished"
    SHOWING_PICTURE = "showing_picture"
    FIRMWARE_UPDATE = "firmware_update"
    PATTERN_PLAYING = "pattern_playing"
    WRITING_IN_STORAGE = "writing_in_storage"


class SignalHub:
    """Fan-out of facade signals to subscribed listeners.

    Listeners run on the event loop that emits. Coroutine results are
    scheduled as tasks so a slow listener never stalls the protocol engine.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: DefaultDict[Signal, List[Listener]] = defaultdict(list)
        self._tasks: Set[asyncio.Task[Any]] = set()

    def subscribe(self, signal: Signal, listener: Listener) -> None:
        with self._lock:
            listeners = self._listeners[signal]
            if listener in listeners:
                raise ValueError("Listener already registered")
            listeners.append(listener)

    def unsubscribe(self, signal: Signal, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners[signal].remove(listener)
            except ValueError:
                pass

    def emit(self, signal: Signal, payload: Any = None) -> None:
        with self._lock:
            listeners = list(self._listeners.get(signal, ()))

        for listener in listeners:
            try:
                result = listener(payload)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Listener for %s failed", signal.value)
                continue
            if asyncio.iscoroutine(result):
                self._schedule(signal, result)

    async def drain(self) -> None:
        """Wait for listener tasks scheduled so far."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, signal: Signal, coro: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            LOGGER.warning(
                "Dropping coroutine listener for %s: no running event loop",
                signal.value,
            )
            coro.close()
            return

        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            LOGGER.error("Signal listener raised", exc_info=exc)
