"""WebSocket push channel delivering cloud command updates."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set
from urllib.parse import urlparse, urlunparse

import aiohttp

from ..core.models import CommandStatus
from ..core.registry import PendingCompletionRegistry
from ..core.utils import coerce_bool, parse_timestamp

LOGGER = logging.getLogger(__name__)

PushListener = Callable[[str, Mapping[str, Any]], Awaitable[None] | None]

EVENT_COMMAND_UPDATED = "command:updated"
EVENT_COMMAND_CREATED = "command:created"
EVENT_DEVICE_UPDATE = "device:update"
EVENT_DEVICE_REGISTERED = "device:registered"
EVENT_EVENT_CREATED = "event:created"
EVENT_IMAGE_UPLOADED = "image:uploaded"
SUBSCRIBE_DEVICE = "subscribe:device"


def decode_command_status(payload: Mapping[str, Any]) -> Optional[CommandStatus]:
    """Build a :class:`CommandStatus` from a REST or push payload."""

    command_id = payload.get("command_id")
    if command_id is None:
        return None
    return CommandStatus(
        command_id=str(command_id),
        status=str(payload.get("status") or "unknown").lower(),
        success=coerce_bool(payload.get("success")),
        response=payload.get("response"),
        completed_at=parse_timestamp(payload.get("completed_at")),
    )


class PushChannel:
    """Listens for server pushes and resolves pending command completions.

    The channel owns the lifetime of its :class:`PendingCompletionRegistry`:
    stopping the channel cancels every outstanding slot so waiters fall back
    to polling.
    """

    def __init__(
        self,
        url: str,
        *,
        registry: PendingCompletionRegistry[CommandStatus],
        session: Optional[aiohttp.ClientSession] = None,
        reconnect_initial: float = 2.0,
        reconnect_max: float = 30.0,
        origin: Optional[str] = None,
    ) -> None:
        self.registry = registry
        self.reconnect_initial = reconnect_initial
        self.reconnect_max = reconnect_max

        self._ws_url = _build_ws_url(url)
        self._headers: Dict[str, str] = {}
        if origin:
            self._headers["Origin"] = origin

        self._session = session
        self._owns_session = session is None
        self._listeners: List[PushListener] = []
        self._devices: Set[str] = set()
        self._listener_task: Optional[asyncio.Task[None]] = None
        self._stop_event = asyncio.Event()
        self._active_ws: Optional[aiohttp.ClientWebSocketResponse] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def url(self) -> str:
        return self._ws_url

    @property
    def connected(self) -> bool:
        ws = self._active_ws
        return ws is not None and not ws.closed

    def add_listener(self, listener: PushListener) -> None:
        if listener in self._listeners:
            raise ValueError("Listener already registered")
        self._listeners.append(listener)

    def remove_listener(self, listener: PushListener) -> None:
        with contextlib.suppress(ValueError):
            self._listeners.remove(listener)

    async def start(self) -> None:
        if self._listener_task is not None:
            return

        if self._session is None:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=None)
            )
            self._owns_session = True

        self.registry.reopen()
        self._stop_event.clear()
        self._listener_task = asyncio.create_task(self._listen_loop())
        await asyncio.sleep(0)

    async def stop(self) -> None:
        self._stop_event.set()

        if self._listener_task is not None:
            self._listener_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._listener_task
            self._listener_task = None

        self.registry.close()

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def aclose(self) -> None:
        await self.stop()

    async def wait_connected(self, timeout: float) -> bool:
        """Wait until the socket is up, returning False after ``timeout``."""

        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not self.connected:
            if loop.time() >= deadline:
                return False
            await asyncio.sleep(0.05)
        return True

    async def subscribe_device(self, device_id: str) -> None:
        """Ask the server for pushes about ``device_id``, now and after reconnects."""

        self._devices.add(device_id)
        ws = self._active_ws
        if ws is None or ws.closed:
            return
        await self._send_subscription(ws, device_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _listen_loop(self) -> None:
        backoff = self.reconnect_initial

        while not self._stop_event.is_set():
            try:
                assert self._session is not None
                async with self._session.ws_connect(
                    self._ws_url, headers=self._headers, heartbeat=30.0
                ) as ws:
                    LOGGER.info("Connected to push channel at %s", self._ws_url)
                    backoff = self.reconnect_initial

                    self._active_ws = ws
                    try:
                        for device_id in sorted(self._devices):
                            await self._send_subscription(ws, device_id)
                        async for message in ws:
                            if self._stop_event.is_set():
                                break
                            if message.type == aiohttp.WSMsgType.TEXT:
                                await self._dispatch(message.data)
                            elif message.type == aiohttp.WSMsgType.ERROR:
                                raise ws.exception() or RuntimeError("Websocket error")
                    finally:
                        self._active_ws = None
                    LOGGER.info("Push channel closed by server")
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # pragma: no cover - defensive net handling
                if self._stop_event.is_set():
                    break
                LOGGER.warning("Push channel error: %s", exc)

            if self._stop_event.is_set():
                break
            await asyncio.sleep(random.uniform(0, backoff))
            backoff = min(backoff * 2, self.reconnect_max)

    async def _dispatch(self, raw_data: str) -> None:
        try:
            payload = json.loads(raw_data)
        except json.JSONDecodeError:
            return
        if not isinstance(payload, dict):
            return

        event = payload.get("event")
        data = payload.get("data")
        if not isinstance(event, str):
            return
        if not isinstance(data, dict):
            data = {}

        if event == EVENT_COMMAND_UPDATED:
            status = decode_command_status(data)
            if status is not None and status.is_terminal:
                if self.registry.resolve(status.command_id, status):
                    LOGGER.debug(
                        "Push completion for %s (%s)", status.command_id, status.status
                    )

        for listener in list(self._listeners):
            try:
                result = listener(event, data)
                if asyncio.iscoroutine(result):
                    await result
            except Exception:  # pragma: no cover - defensive logging
                LOGGER.exception("Push listener failed for %s", event)

    async def _send_subscription(
        self, ws: aiohttp.ClientWebSocketResponse, device_id: str
    ) -> None:
        try:
            await ws.send_json({"event": SUBSCRIBE_DEVICE, "data": device_id})
        except (aiohttp.ClientError, ConnectionResetError) as exc:
            LOGGER.warning("Failed to subscribe to device %s: %s", device_id, exc)


def _build_ws_url(http_url: str) -> str:
    parsed = urlparse(http_url)
    if parsed.scheme in ("ws", "wss"):
        return http_url
    scheme = "wss" if parsed.scheme == "https" else "ws"
    path = parsed.path.rstrip("/") or "/ws"
    return urlunparse((scheme, parsed.netloc, path, "", parsed.query, ""))
