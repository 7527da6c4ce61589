"""HTTP client for the cloud command queue."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from pathlib import PurePosixPath
from typing import Any, Optional, Sequence

import aiohttp

from .. import constants
from ..config import CloudConfig
from ..core.errors import CloudQueueError, CommandTimeoutError
from ..core.models import (
    CloudTestResult,
    CommandOutcome,
    CommandStatus,
    DeviceStatus,
    ImageUploadResult,
    LatestImage,
    PatternLine,
    QueuedCommand,
    ResponseState,
)
from ..core.registry import PendingCompletionRegistry
from ..core.utils import coerce_bool, coerce_int, parse_timestamp
from ..protocol import commands
from .push import PushChannel, decode_command_status

LOGGER = logging.getLogger(__name__)

MIN_POLL_INTERVAL = 0.01  # seconds

_IMAGE_TYPES = {
    ".png": "image/png",
    ".gif": "image/gif",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}


class CloudQueueClient:
    """Queues AT commands for a device that polls the cloud.

    Completion is observed through the push channel when one is connected,
    with a status poller racing it; otherwise the status endpoint is polled.
    Helper methods never raise on network failures and report through their
    result records instead.
    """

    def __init__(
        self,
        config: CloudConfig,
        *,
        session: Optional[aiohttp.ClientSession] = None,
        registry: Optional[PendingCompletionRegistry[CommandStatus]] = None,
        push: Optional[PushChannel] = None,
    ) -> None:
        if not config.device_id:
            raise ValueError("A cloud device id is required")

        self.config = config
        self.device_id = config.device_id
        self._base_url = config.base_url.rstrip("/")
        self._headers = {"X-Device-Key": config.device_id}
        self._session = session
        self._owns_session = session is None
        self._push = push
        if registry is None:
            registry = push.registry if push is not None else PendingCompletionRegistry()
        self._registry = registry

    async def __aenter__(self) -> "CloudQueueClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    @property
    def registry(self) -> PendingCompletionRegistry[CommandStatus]:
        return self._registry

    @property
    def push(self) -> Optional[PushChannel]:
        return self._push

    async def aclose(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Command queue
    # ------------------------------------------------------------------
    async def queue_command(self, command: str, priority: int = 1) -> QueuedCommand:
        """Post ``command`` to the device queue.

        Raises:
            CloudQueueError: on HTTP errors, network failures or a reply
                without a command id.
        """

        url = f"{self._base_url}/device/{self.device_id}/commands"
        payload = {"command": command, "priority": priority}
        try:
            status, body = await self._request_json("POST", url, json=payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise CloudQueueError(f"Failed to queue command: {exc}") from exc

        if status >= 400:
            raise CloudQueueError(f"HTTP {status}: {body}", status=status)
        if not isinstance(body, dict) or body.get("command_id") is None:
            raise CloudQueueError(f"Unexpected queue reply: {body!r}", status=status)

        queued = QueuedCommand(
            command_id=str(body["command_id"]),
            status=str(body.get("status") or "unknown"),
        )
        LOGGER.debug("Queued %r as %s (priority=%d)", command, queued.command_id, priority)
        return queued

    async def get_command_status(self, command_id: str) -> Optional[CommandStatus]:
        url = f"{self._base_url}/commands/{command_id}"
        try:
            status, body = await self._request_json("GET", url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Status request for %s failed: %s", command_id, exc)
            return None
        if status >= 400 or not isinstance(body, dict):
            return None
        body.setdefault("command_id", command_id)
        return decode_command_status(body)

    async def wait_for_completion(
        self,
        command_id: str,
        timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
    ) -> Optional[CommandStatus]:
        """Wait for ``command_id`` to reach ``completed`` or ``failed``.

        Returns ``None`` when ``timeout`` elapses first.
        """

        timeout = self.config.command_timeout_seconds if timeout is None else timeout
        if poll_interval is None:
            poll_interval = self.config.poll_interval_seconds
        interval = max(poll_interval, MIN_POLL_INTERVAL)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        slot = self._register_slot(command_id)
        if slot is None:
            return await self._poll_until_terminal(command_id, deadline, interval)

        poller = asyncio.create_task(self._poll_into_registry(command_id, interval))
        try:
            await asyncio.wait(
                {slot, poller},
                timeout=max(0.0, deadline - loop.time()),
                return_when=asyncio.FIRST_COMPLETED,
            )
            if slot.done() and not slot.cancelled():
                return slot.result()
        finally:
            self._registry.discard(command_id)
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass
            except Exception:
                LOGGER.exception("Status poller for %s failed", command_id)

        # The push channel went away while waiting; keep polling.
        if slot.cancelled() and loop.time() < deadline:
            return await self._poll_until_terminal(command_id, deadline, interval)
        LOGGER.info("Command %s not completed within %.1fs", command_id, timeout)
        return None

    async def execute(
        self,
        command: str,
        *,
        priority: int = constants.CLOUD_COMMAND_PRIORITY,
        timeout: Optional[float] = None,
    ) -> CommandStatus:
        """Queue ``command`` and return its terminal status.

        Raises:
            CloudQueueError: if queueing fails.
            CommandTimeoutError: if the device never completes the command.
        """

        timeout = self.config.command_timeout_seconds if timeout is None else timeout
        queued = await self.queue_command(command, priority)
        status = await self.wait_for_completion(queued.command_id, timeout)
        if status is None:
            raise CommandTimeoutError(queued.command_id, timeout)
        return status

    # ------------------------------------------------------------------
    # Device status
    # ------------------------------------------------------------------
    async def get_device_status(self) -> Optional[DeviceStatus]:
        url = f"{self._base_url}/device/{self.device_id}/status"
        try:
            status, body = await self._request_json("GET", url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Device status request failed: %s", exc)
            return None
        if status >= 400 or not isinstance(body, dict):
            return None

        active_image = body.get("active_image") or None
        return DeviceStatus(
            online=bool(coerce_bool(body.get("online"), default=False)),
            storage_total=coerce_int(body.get("storage_total")),
            storage_free=coerce_int(body.get("storage_free")),
            active_image=active_image,
            active_image_url=(
                f"{self._base_url}/uploads/{self.device_id}/{active_image}"
                if active_image
                else None
            ),
            firmware_version=body.get("firmware_version"),
            device_name=body.get("device_name"),
            last_seen=parse_timestamp(body.get("last_seen")),
        )

    async def wait_for_device_online(
        self, timeout: float, poll_interval: float = 3.0
    ) -> bool:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = await self.get_device_status()
            if status is not None and status.online:
                return True
            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(poll_interval, remaining))

    async def test_connection(
        self, timeout: float = 45.0, wait_for_online: bool = True
    ) -> CloudTestResult:
        """Round-trip a harmless query through the device to prove the link."""

        if wait_for_online:
            online_timeout = min(30.0, timeout / 2)
            if not await self.wait_for_device_online(online_timeout):
                return CloudTestResult(
                    success=False,
                    message="Device did not connect to cloud",
                    details=f"Device not online after {online_timeout:.0f} seconds",
                )

        try:
            queued = await self.queue_command(
                commands.GET_DEVICE_NAME, constants.CLOUD_URGENT_PRIORITY
            )
        except CloudQueueError as exc:
            return CloudTestResult(
                success=False, message="Failed to queue test command", details=str(exc)
            )

        remaining = max(15.0, timeout - (30.0 if wait_for_online else 0.0))
        status = await self.wait_for_completion(queued.command_id, remaining, 2.0)
        if status is None:
            return CloudTestResult(
                success=False,
                message="Device did not respond within timeout period",
                details="Command queued but not executed; the device may not be polling",
                command_id=queued.command_id,
            )
        if status.status == ResponseState.COMPLETED.value and status.success:
            return CloudTestResult(
                success=True,
                message="Cloud connection successful",
                details=f"Device responded: {status.response}",
                command_id=queued.command_id,
                response=status.response,
            )
        return CloudTestResult(
            success=False,
            message="Device responded but command failed",
            details=status.response or "No response",
            command_id=queued.command_id,
        )

    async def register_device(
        self, device_name: str = "", firmware_version: str = ""
    ) -> bool:
        url = f"{self._base_url}/device/{self.device_id}/register"
        payload = {"device_name": device_name, "firmware_version": firmware_version}
        try:
            status, _ = await self._request_json("POST", url, json=payload)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.warning("Device registration failed: %s", exc)
            return False
        return status < 400

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    async def get_latest_image(self) -> Optional[LatestImage]:
        url = f"{self._base_url}/device/{self.device_id}/image/latest"
        try:
            status, body = await self._request_json("GET", url)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Latest image request failed: %s", exc)
            return None
        if status == 204 or status >= 400 or not isinstance(body, dict):
            return None
        if not body.get("url"):
            return None
        return LatestImage(
            url=str(body["url"]),
            filename=body.get("filename"),
            hash=body.get("hash"),
            uploaded_at=parse_timestamp(body.get("timestamp")),
        )

    async def upload_image(self, data: bytes, file_name: str) -> ImageUploadResult:
        suffix = PurePosixPath(file_name).suffix.lower()
        content_type = _IMAGE_TYPES.get(suffix) or (
            mimetypes.guess_type(file_name)[0] or "application/octet-stream"
        )
        form = aiohttp.FormData()
        form.add_field("image", data, filename=file_name, content_type=content_type)

        url = f"{self._base_url}/device/{self.device_id}/image/upload"
        try:
            status, body = await self._request_json("POST", url, data=form)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            return ImageUploadResult(
                success=False, error_message=f"Failed to upload image: {exc}"
            )
        if status >= 400:
            return ImageUploadResult(success=False, error_message=f"HTTP {status}: {body}")

        body = body if isinstance(body, dict) else {}
        LOGGER.info("Uploaded %s (%d bytes) to the cloud", file_name, len(data))
        return ImageUploadResult(
            success=True,
            file_name=body.get("filename") or file_name,
            hash=body.get("hash"),
            message=body.get("message"),
        )

    async def download_image(self, url: str) -> Optional[bytes]:
        if url.startswith("http://"):
            url = "https://" + url[len("http://"):]
        elif url.startswith("/"):
            url = f"{self._base_url}{url}"

        session = await self._ensure_session()
        try:
            async with session.get(url, headers=self._headers) as response:
                if response.status >= 400:
                    LOGGER.debug("Image download failed: HTTP %d for %s", response.status, url)
                    return None
                return await response.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            LOGGER.debug("Image download failed for %s: %s", url, exc)
            return None

    async def download_active_image(self) -> Optional[bytes]:
        latest = await self.get_latest_image()
        if latest is None:
            return None
        return await self.download_image(latest.url)

    # ------------------------------------------------------------------
    # Convenience commands
    # ------------------------------------------------------------------
    async def set_solid_color(
        self, color: str, led_bits: int = constants.DEFAULT_LED_BITS, timeout: float = 30.0
    ) -> CommandOutcome:
        return await self._run_command(commands.set_solid_color(led_bits, color), timeout)

    async def show_picture(self, file_name: str, timeout: float = 30.0) -> CommandOutcome:
        return await self._run_command(commands.show_picture(file_name), timeout)

    async def set_display_brightness(
        self, brightness: int, timeout: float = 30.0
    ) -> CommandOutcome:
        return await self._run_command(
            commands.set_display_brightness(brightness), timeout
        )

    async def send_pattern(
        self, lines: Sequence[PatternLine], timeout: float = 30.0
    ) -> CommandOutcome:
        block = [commands.set_custom_pattern(len(lines)), *commands.serialize_pattern(lines)]
        return await self._run_command("\n".join(block), timeout)

    async def get_device_name(self, timeout: float = 30.0) -> CommandOutcome:
        return await self._run_command(commands.GET_DEVICE_NAME, timeout)

    async def get_firmware_version(self, timeout: float = 30.0) -> CommandOutcome:
        return await self._run_command(commands.GET_FIRMWARE_VERSION, timeout)

    async def send_custom_command(
        self,
        command: str,
        priority: int = constants.CLOUD_COMMAND_PRIORITY,
        timeout: float = 30.0,
    ) -> CommandOutcome:
        return await self._run_command(command, timeout, priority=priority)

    async def restart_device(self) -> CommandOutcome:
        return await self._run_command(
            commands.RESTART, 0, priority=constants.CLOUD_URGENT_PRIORITY
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _run_command(
        self,
        command: str,
        timeout: float,
        *,
        priority: int = constants.CLOUD_COMMAND_PRIORITY,
    ) -> CommandOutcome:
        try:
            queued = await self.queue_command(command, priority)
        except CloudQueueError as exc:
            LOGGER.warning("Queueing %r failed: %s", command, exc)
            return CommandOutcome(success=False, error_message=str(exc))

        if timeout <= 0:
            return CommandOutcome(
                success=True, command_id=queued.command_id, status=queued.status
            )

        status = await self.wait_for_completion(
            queued.command_id, timeout, self.config.poll_interval_seconds
        )
        if status is None:
            return CommandOutcome(
                success=False,
                command_id=queued.command_id,
                status=queued.status,
                error_message=f"Command not completed within {timeout:.0f}s",
            )
        return CommandOutcome(
            success=(
                status.status == ResponseState.COMPLETED.value
                and status.success is not False
            ),
            command_id=queued.command_id,
            status=status.status,
            response=status.response,
            completion=status,
        )

    def _register_slot(self, command_id: str) -> Optional[asyncio.Future[CommandStatus]]:
        push = self._push
        if push is None or not push.connected:
            return None
        try:
            return self._registry.register(command_id)
        except (RuntimeError, ValueError) as exc:
            LOGGER.debug("Falling back to polling for %s: %s", command_id, exc)
            return None

    async def _poll_into_registry(self, command_id: str, interval: float) -> None:
        while True:
            status = await self.get_command_status(command_id)
            if status is not None and status.is_terminal:
                self._registry.resolve(command_id, status)
                return
            await asyncio.sleep(interval)

    async def _poll_until_terminal(
        self, command_id: str, deadline: float, interval: float
    ) -> Optional[CommandStatus]:
        loop = asyncio.get_running_loop()
        while True:
            status = await self.get_command_status(command_id)
            if status is not None and status.is_terminal:
                return status
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(interval, remaining))

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
            self._owns_session = True
        return self._session

    async def _request_json(
        self, method: str, url: str, **kwargs: Any
    ) -> tuple[int, Any]:
        session = await self._ensure_session()
        async with session.request(method, url, headers=self._headers, **kwargs) as response:
            if response.status == 204:
                return response.status, None
            try:
                text = await response.text()
            except UnicodeDecodeError:
                raw = await response.read()
                return response.status, raw.decode("utf-8", errors="replace")
            if not text:
                return response.status, None
            try:
                return response.status, await response.json(content_type=None)
            except ValueError:
                return response.status, text
