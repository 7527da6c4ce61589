"""Command dispatcher enforcing one in-flight command per transport.

Bytes from the transport are handed to the event loop with
``call_soon_threadsafe`` and classified there. Event lines are fanned out to
subscribers immediately; every other line is queued for the exchange that
currently holds the guard. Lines arriving while no exchange is active are
stale and dropped.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections import deque
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    List,
    Optional,
    Set,
)

from .core.errors import (
    DeviceNotConnectedError,
    DispatcherBusyError,
    DispatchTimeoutError,
)
from .core.models import CommandResponse, DeviceEvent, ResponseState
from .core.protocols import Transport
from .protocol import commands
from .protocol.lines import ClassifiedLine, LineClassifier, LineKind

LOGGER = logging.getLogger(__name__)

EventHandler = Callable[[DeviceEvent], Awaitable[None] | None]
DisconnectHandler = Callable[[], Awaitable[None] | None]


class Exchange:
    """Write-then-wait primitives available while holding the dispatcher guard."""

    def __init__(self, dispatcher: "CommandDispatcher") -> None:
        self._dispatcher = dispatcher
        self.failed = False
        self.events: List[DeviceEvent] = []

    async def write_line(self, text: str) -> None:
        await self._dispatcher._write(commands.encode(text), text)

    async def write_raw(self, data: bytes) -> None:
        await self._dispatcher._write(data, None)

    def discard_input(self) -> None:
        self._dispatcher._discard_input()

    async def command(
        self,
        text: str,
        timeout: float,
        *,
        wait_for_first_token: bool = True,
        discard_input: bool = True,
        expect_prompt: bool = False,
    ) -> CommandResponse:
        """Write ``text`` (if any) and collect the reply.

        An empty ``text`` only waits, which is how the final ``OK`` of an
        upload is collected.
        """
        if discard_input:
            self.discard_input()
        if text:
            await self.write_line(text)
        return await self.collect(
            text,
            timeout,
            wait_for_first_token=wait_for_first_token,
            expect_prompt=expect_prompt,
        )

    async def collect(
        self,
        command: str,
        timeout: float,
        *,
        wait_for_first_token: bool = True,
        expect_prompt: bool = False,
    ) -> CommandResponse:
        """Gather lines until a terminal token or ``timeout``.

        With ``wait_for_first_token`` disabled the call returns as soon as
        any input is seen; the response then stays ``PENDING`` unless that
        input happened to be terminal.
        """
        dispatcher = self._dispatcher
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        response = CommandResponse(command)
        events_start = len(self.events)

        while True:
            while dispatcher._inbox:
                line = dispatcher._inbox.popleft()
                if self._consume(response, line, expect_prompt):
                    response.events = self.events[events_start:]
                    LOGGER.debug("RX: %s", response.text or response.terminal)
                    return response

            if not wait_for_first_token and (
                response.lines or dispatcher._classifier.pending
            ):
                response.text = "\n".join(response.lines)
                response.events = self.events[events_start:]
                return response

            dispatcher._ensure_connected()

            remaining = deadline - loop.time()
            if remaining <= 0:
                response.state = ResponseState.TIMED_OUT
                partial = "\n".join(response.lines)
                LOGGER.debug("Timeout waiting for %r (partial=%r)", command, partial)
                raise DispatchTimeoutError(command or "<wait>", timeout, partial)

            await dispatcher._wait_for_activity(remaining)

    def begin_binary(self) -> None:
        """Route all further input into a raw byte buffer."""

        self._dispatcher._classifier.reset()
        self._dispatcher._binary = bytearray()

    def end_binary(self) -> None:
        self._dispatcher._binary = None
        self._dispatcher._classifier.reset()

    async def read_binary(self, timeout: float) -> bytes:
        """Take all raw bytes buffered so far, waiting up to ``timeout`` for some."""

        dispatcher = self._dispatcher
        if dispatcher._binary is None:
            raise RuntimeError("Exchange is not in binary mode")
        if not dispatcher._binary:
            await dispatcher._wait_for_activity(timeout)
            dispatcher._ensure_connected()
        buffer = dispatcher._binary
        if buffer is None or not buffer:
            return b""
        data = bytes(buffer)
        buffer.clear()
        return data

    def _consume(
        self, response: CommandResponse, line: ClassifiedLine, expect_prompt: bool
    ) -> bool:
        if line.kind is LineKind.OK:
            response.state = ResponseState.COMPLETED
            response.terminal = line.text
        elif line.kind is LineKind.ERROR:
            response.state = ResponseState.FAILED
            response.terminal = line.text
        elif line.kind is LineKind.PROMPT and expect_prompt:
            response.state = ResponseState.COMPLETED
            response.terminal = line.text
        else:
            response.lines.append(line.text)
            return False

        response.text = "\n".join(response.lines + [response.terminal])
        return True


class CommandDispatcher:
    """Correlates commands with replies over one transport."""

    def __init__(self, transport: Transport) -> None:
        self._transport = transport
        self._classifier = LineClassifier()
        self._guard = asyncio.Lock()
        self._activity = asyncio.Event()
        self._inbox: Deque[ClassifiedLine] = deque()
        self._binary: Optional[bytearray] = None
        self._current: Optional[Exchange] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event_handlers: List[EventHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []
        self._tasks: Set[asyncio.Task[Any]] = set()
        self._last_activity = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def busy(self) -> bool:
        return self._guard.locked()

    @property
    def last_activity(self) -> float:
        """Event-loop time of the most recent write or received chunk."""

        return self._last_activity

    def attach(self) -> None:
        """Bind to the running loop and install transport callbacks."""

        self._loop = asyncio.get_running_loop()
        self._transport.set_data_handler(self._on_transport_data)
        self._transport.set_connection_handler(self._on_transport_connection)

    def detach(self) -> None:
        self._transport.set_data_handler(None)
        self._transport.set_connection_handler(None)
        self._loop = None

    def subscribe(self, handler: EventHandler) -> None:
        if handler in self._event_handlers:
            raise ValueError("Event handler already registered")
        self._event_handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        with contextlib.suppress(ValueError):
            self._event_handlers.remove(handler)

    def register_disconnect_handler(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    @contextlib.asynccontextmanager
    async def session(self) -> AsyncIterator[Exchange]:
        """Hold the single-flight guard for a multi-step exchange.

        Raises ``DispatcherBusyError`` immediately if another exchange is
        active; callers sequence their own commands.
        """
        if self._loop is None:
            self.attach()
        if self._guard.locked():
            raise DispatcherBusyError("Another command is already in flight")

        async with self._guard:
            self._ensure_connected()
            exchange = Exchange(self)
            self._current = exchange
            try:
                yield exchange
            finally:
                self._current = None
                self._binary = None
                self._inbox.clear()

    async def send(
        self,
        command: str,
        timeout: float = 1.0,
        *,
        wait_for_first_token: bool = True,
        discard_input: bool = True,
        expect_prompt: bool = False,
    ) -> CommandResponse:
        async with self.session() as exchange:
            return await exchange.command(
                command,
                timeout,
                wait_for_first_token=wait_for_first_token,
                discard_input=discard_input,
                expect_prompt=expect_prompt,
            )

    async def aclose(self) -> None:
        self.detach()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _on_transport_data(self, data: bytes) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._feed, data)

    def _on_transport_connection(self, connected: bool) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(self._connection_changed, connected)

    def _feed(self, data: bytes) -> None:
        self._last_activity = self._now()

        if self._binary is not None:
            self._binary.extend(data)
            self._activity.set()
            return

        for line in self._classifier.feed(data):
            if line.kind is LineKind.EVENT and line.event is not None:
                if self._current is not None:
                    self._current.events.append(line.event)
                self._dispatch_event(line.event)
                continue

            if self._current is None:
                LOGGER.debug("Dropping unsolicited line: %s", line.text)
                continue

            if line.kind is LineKind.ERROR:
                self._current.failed = True
            self._inbox.append(line)

        self._activity.set()

    def _connection_changed(self, connected: bool) -> None:
        if connected:
            return
        LOGGER.info("Transport %s reported disconnect", self._transport.endpoint)
        self._activity.set()
        self._notify_disconnect()

    def _dispatch_event(self, event: DeviceEvent) -> None:
        LOGGER.debug("Device event %s %s", event.type, ",".join(event.args))
        for handler in list(self._event_handlers):
            try:
                result = handler(event)
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Device event handler failed")
                continue
            if asyncio.iscoroutine(result):
                self._track(result)

    def _notify_disconnect(self) -> None:
        for handler in list(self._disconnect_handlers):
            try:
                result = handler()
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Disconnect handler failed")
                continue
            if asyncio.iscoroutine(result):
                self._track(result)

    def _track(self, coro: Any) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _ensure_connected(self) -> None:
        if not self._transport.is_connected:
            self._notify_disconnect()
            raise DeviceNotConnectedError(
                f"Transport {self._transport.endpoint} is not connected"
            )

    def _discard_input(self) -> None:
        self._inbox.clear()
        self._classifier.reset()
        self._transport.reset_input()

    async def _write(self, data: bytes, text: Optional[str]) -> None:
        self._ensure_connected()
        try:
            await self._transport.write(data)
        except OSError as exc:
            LOGGER.warning("Write to %s failed: %s", self._transport.endpoint, exc)
            self._notify_disconnect()
            raise DeviceNotConnectedError(str(exc)) from exc
        self._last_activity = self._now()
        if text is not None:
            LOGGER.debug("TX: %s", text)
        else:
            LOGGER.debug("TX: %d raw bytes", len(data))

    async def _wait_for_activity(self, timeout: float) -> None:
        self._activity.clear()
        if timeout <= 0:
            return
        try:
            async with asyncio.timeout(timeout):
                await self._activity.wait()
        except TimeoutError:
            pass

    def _now(self) -> float:
        loop = self._loop
        if loop is None:
            return 0.0
        return loop.time()
