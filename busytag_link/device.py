"""High-level facade for one BusyTag device on a local transport."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Set, TypeVar, Union

from .config import LinkConfig
from .core.errors import (
    BusyTagError,
    DeviceNotConnectedError,
    DispatchError,
    DispatcherBusyError,
    DispatchTimeoutError,
)
from .core.models import (
    DeviceEvent,
    DeviceSession,
    DeviceState,
    EventType,
    FileEntry,
    LedColor,
    PatternLine,
    ResponseState,
    UploadErrorType,
    UploadOutcome,
)
from .core.protocols import Transport
from .core.signals import Signal, SignalHub
from .core.utils import parse_version
from .dispatcher import CommandDispatcher
from .protocol import commands
from .storage import Capabilities, StorageStrategy, create_strategy
from .transfer import FileTransferEngine

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class BusyTagDevice:
    """Coordinates connection lifecycle and version-gated device operations.

    All public operations return plain values (``bool``, ``None`` or an
    outcome record) instead of raising on I/O failures. Operations are
    serialised with an internal lock so callers may issue them concurrently;
    the dispatcher underneath still enforces one command on the wire.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        config: Optional[LinkConfig] = None,
        signals: Optional[SignalHub] = None,
    ) -> None:
        self._transport = transport
        self._config = config or LinkConfig.defaults()
        self.signals = signals or SignalHub()
        self.session = DeviceSession()
        self._dispatcher = CommandDispatcher(transport)
        self._dispatcher.subscribe(self._on_device_event)
        self._dispatcher.register_disconnect_handler(self._on_transport_lost)
        self._capabilities: Optional[Capabilities] = None
        self._storage: Optional[StorageStrategy] = None
        self._transfer: Optional[FileTransferEngine] = None
        self._operation_lock = asyncio.Lock()
        self._liveness_task: Optional[asyncio.Task[None]] = None
        self._background: Set[asyncio.Task[Any]] = set()
        self._tearing_down = False

    async def __aenter__(self) -> "BusyTagDevice":
        if not await self.connect():
            raise DeviceNotConnectedError(
                f"Unable to connect to {self._transport.endpoint}"
            )
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.disconnect()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def state(self) -> DeviceState:
        return self.session.state

    @property
    def is_ready(self) -> bool:
        return self.session.state is DeviceState.READY

    @property
    def dispatcher(self) -> CommandDispatcher:
        return self._dispatcher

    @property
    def capabilities(self) -> Optional[Capabilities]:
        return self._capabilities

    @property
    def storage(self) -> Optional[StorageStrategy]:
        return self._storage

    @property
    def transfer(self) -> Optional[FileTransferEngine]:
        return self._transfer

    def _transition(self, state: DeviceState) -> None:
        previous = self.session.state
        if previous is state:
            return
        self.session.state = state
        LOGGER.info(
            "Device %s state transition %s -> %s",
            self._transport.endpoint,
            previous.value,
            state.value,
        )

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> bool:
        """Open the transport and bring the device to ``READY``."""

        if self.session.state is not DeviceState.DISCONNECTED:
            return self.is_ready

        self.session = DeviceSession()
        self._transition(DeviceState.CONNECTING)
        try:
            self._dispatcher.attach()
            await self._transport.connect()
            self.signals.emit(Signal.CONNECTION_CHANGED, True)

            await self._fetch_basic_info()
            self._transition(DeviceState.BASIC_INFO_FETCHED)

            await self._apply_capabilities()
            assert self._storage is not None
            self.session.files = await self._storage.list_files()
            self.signals.emit(Signal.FILE_LIST, list(self.session.files))
        except (BusyTagError, OSError) as exc:
            LOGGER.error("Connecting to %s failed: %s", self._transport.endpoint, exc)
            await self._teardown()
            return False

        self._transition(DeviceState.READY)
        self.signals.emit(Signal.BASIC_INFO, True)
        self._liveness_task = asyncio.create_task(self._liveness_loop())
        return True

    async def disconnect(self) -> None:
        await self._teardown()

    async def aclose(self) -> None:
        await self._teardown()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._dispatcher.aclose()
        await self.signals.drain()

    async def _fetch_basic_info(self) -> None:
        session = self.session

        name = await self._query(commands.GET_DEVICE_NAME, commands.KEY_DEVICE_NAME)
        if name:
            session.device_name = name
        manufacturer = await self._query(
            commands.GET_MANUFACTURER, commands.KEY_MANUFACTURER
        )
        if manufacturer:
            session.manufacturer = manufacturer
        session.device_id = (
            await self._query(commands.GET_DEVICE_ID, commands.KEY_DEVICE_ID) or ""
        )
        session.firmware_label = (
            await self._query(
                commands.GET_FIRMWARE_VERSION, commands.KEY_FIRMWARE_VERSION
            )
            or ""
        )
        session.firmware_version = parse_version(session.firmware_label)
        session.current_image = (
            await self._query(commands.GET_CURRENT_IMAGE, commands.KEY_CURRENT_IMAGE)
            or ""
        )
        session.total_storage = commands.parse_int(
            await self._query(commands.GET_TOTAL_STORAGE, commands.KEY_TOTAL_STORAGE)
        )
        session.free_storage = commands.parse_int(
            await self._query(commands.GET_FREE_STORAGE, commands.KEY_FREE_STORAGE)
        )
        session.solid_color = commands.parse_solid_color(
            await self._query(commands.GET_SOLID_COLOR, commands.KEY_SOLID_COLOR)
        )
        LOGGER.info(
            "Connected to %s (id=%s, firmware=%s, image=%s)",
            session.device_name,
            session.device_id or "?",
            session.firmware_label or "?",
            session.current_image or "-",
        )
        self.signals.emit(Signal.SOLID_COLOR, session.solid_color)

    async def _apply_capabilities(self) -> None:
        capabilities = Capabilities.from_version(self.session.firmware_version)
        self._capabilities = capabilities

        # Mass-storage mode is only wanted where files live on the volume.
        await self._best_effort(
            commands.set_usb_mass_storage(capabilities.mass_storage_toggle)
        )
        if capabilities.auto_scan_setting:
            await self._best_effort(commands.set_auto_storage_scan(False))

        self._storage = create_strategy(
            capabilities,
            self._dispatcher,
            self.session,
            device_config=self._config.device,
            commands_config=self._config.commands,
            transfer_config=self._config.transfer,
        )
        self._transfer = FileTransferEngine(
            self._storage,
            self.session,
            config=self._config.transfer,
            cache_dir=self._config.device.cache_dir,
        )
        self._transfer.add_progress_listener(
            lambda progress: self.signals.emit(Signal.UPLOAD_PROGRESS, progress)
        )
        self._transfer.add_finished_listener(
            lambda outcome: self.signals.emit(Signal.UPLOAD_FINISHED, outcome)
        )
        LOGGER.info(
            "Firmware %.2f uses %s", capabilities.version, self._storage.describe()
        )

    async def _teardown(self) -> None:
        if self._tearing_down or self.session.state is DeviceState.DISCONNECTED:
            return
        self._tearing_down = True
        try:
            task = self._liveness_task
            self._liveness_task = None
            if task is not None and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

            if self._transfer is not None:
                self._transfer.cancel()

            try:
                await self._transport.disconnect()
            except OSError as exc:
                LOGGER.warning("Closing %s failed: %s", self._transport.endpoint, exc)

            self._dispatcher.detach()
            self._transition(DeviceState.DISCONNECTED)
            self.signals.emit(Signal.CONNECTION_CHANGED, False)
        finally:
            self._tearing_down = False

    def _on_transport_lost(self) -> None:
        if self._tearing_down or self.session.state is DeviceState.DISCONNECTED:
            return
        self._spawn(self._teardown())

    async def _liveness_loop(self) -> None:
        settings = self._config.liveness
        loop = asyncio.get_running_loop()
        failures = 0

        while True:
            await asyncio.sleep(settings.interval_seconds)

            if not self._transport.is_connected:
                LOGGER.warning("Lost connection to %s", self._transport.endpoint)
                self._spawn(self._teardown())
                return

            if not settings.probe:
                continue
            if (
                self._operation_lock.locked()
                or self._dispatcher.busy
                or (self._transfer is not None and self._transfer.in_progress)
            ):
                continue
            if loop.time() - self._dispatcher.last_activity < settings.interval_seconds:
                failures = 0
                continue

            try:
                async with self._operation_lock:
                    await self._dispatcher.send(
                        commands.PING, self._config.commands.timeout_seconds
                    )
                failures = 0
            except DispatcherBusyError:
                continue
            except DispatchTimeoutError:
                failures += 1
                LOGGER.warning(
                    "Liveness probe unanswered (%d/%d)", failures, settings.max_failures
                )
                if failures >= settings.max_failures:
                    self._spawn(self._teardown())
                    return
            except DeviceNotConnectedError:
                self._spawn(self._teardown())
                return

    # ------------------------------------------------------------------
    # Device events
    # ------------------------------------------------------------------
    def _on_device_event(self, event: DeviceEvent) -> None:
        event_type = event.event_type
        session = self.session

        if event_type is EventType.SHOWING_PICTURE:
            session.current_image = event.first_arg
            self.signals.emit(Signal.SHOWING_PICTURE, session.current_image)
            self._schedule_cache_sync(session.current_image)
        elif event_type is EventType.FIRMWARE_UPDATE:
            text = event.first_arg.rstrip("%").strip()
            try:
                progress = float(text)
            except ValueError:
                LOGGER.debug("Ignoring malformed firmware progress %r", event.first_arg)
                return
            self.signals.emit(Signal.FIRMWARE_UPDATE, progress)
        elif event_type is EventType.PATTERN_PLAYING:
            session.pattern_playing = event.first_arg == "1"
            self.signals.emit(Signal.PATTERN_PLAYING, session.pattern_playing)
        elif event_type is EventType.WRITING_IN_STORAGE:
            session.writing_in_storage = event.first_arg == "1"
            self.signals.emit(Signal.WRITING_IN_STORAGE, session.writing_in_storage)
        else:
            LOGGER.debug("Unhandled device event %s", event.type)

    def _schedule_cache_sync(self, file_name: str) -> None:
        transfer = self._transfer
        if (
            not file_name
            or transfer is None
            or self._config.device.cache_dir is None
            or transfer.in_progress
            or transfer.cached_path(file_name) is not None
        ):
            return
        self._spawn(self._sync_cached_image(file_name))

    async def _sync_cached_image(self, file_name: str) -> None:
        if await self.get_file(file_name) is None:
            LOGGER.debug("Could not cache %s", file_name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    async def get_device_name(self) -> Optional[str]:
        value = await self._guarded_query(
            commands.GET_DEVICE_NAME, commands.KEY_DEVICE_NAME
        )
        if value:
            self.session.device_name = value
        return value

    async def get_manufacturer_name(self) -> Optional[str]:
        value = await self._guarded_query(
            commands.GET_MANUFACTURER, commands.KEY_MANUFACTURER
        )
        if value:
            self.session.manufacturer = value
        return value

    async def get_device_id(self) -> Optional[str]:
        value = await self._guarded_query(commands.GET_DEVICE_ID, commands.KEY_DEVICE_ID)
        if value:
            self.session.device_id = value
        return value

    async def get_firmware_version(self) -> Optional[float]:
        value = await self._guarded_query(
            commands.GET_FIRMWARE_VERSION, commands.KEY_FIRMWARE_VERSION
        )
        if value is None:
            return None
        self.session.firmware_label = value
        return parse_version(value)

    async def get_current_image(self) -> Optional[str]:
        value = await self._guarded_query(
            commands.GET_CURRENT_IMAGE, commands.KEY_CURRENT_IMAGE
        )
        if value is not None:
            self.session.current_image = value
        return value

    async def get_free_storage(self) -> Optional[int]:
        async def operation() -> int:
            assert self._storage is not None
            self.session.free_storage = await self._storage.free_space()
            return self.session.free_storage

        return await self._run("Reading free storage", operation, None)

    async def get_total_storage(self) -> Optional[int]:
        async def operation() -> int:
            assert self._storage is not None
            self.session.total_storage = await self._storage.total_space()
            return self.session.total_storage

        return await self._run("Reading total storage", operation, None)

    async def get_solid_color(self) -> Optional[LedColor]:
        value = await self._guarded_query(
            commands.GET_SOLID_COLOR, commands.KEY_SOLID_COLOR
        )
        if value is None:
            return None
        color = commands.parse_solid_color(value)
        self.session.solid_color = color
        self.signals.emit(Signal.SOLID_COLOR, color)
        return color

    async def get_display_brightness(self) -> Optional[int]:
        value = await self._guarded_query(
            commands.GET_DISPLAY_BRIGHTNESS, commands.KEY_DISPLAY_BRIGHTNESS
        )
        if value is None:
            return None
        brightness = commands.parse_int(value)
        self.session.display_brightness = brightness
        self.signals.emit(Signal.DISPLAY_BRIGHTNESS, brightness)
        return brightness

    async def get_custom_pattern(self) -> Optional[List[PatternLine]]:
        async def operation() -> List[PatternLine]:
            response = await self._dispatcher.send(
                commands.GET_CUSTOM_PATTERN, self._config.commands.timeout_seconds
            )
            if not response.success:
                raise DispatchError(f"Pattern query failed: {response.text}")
            return commands.parse_pattern(response.lines)

        pattern = await self._run("Reading custom pattern", operation, None)
        if pattern is not None:
            self.session.pattern = pattern
            self.signals.emit(Signal.PATTERN, list(pattern))
        return pattern

    async def get_usb_mass_storage_active(self) -> Optional[bool]:
        value = commands.parse_flag(
            await self._guarded_query(
                commands.GET_USB_MASS_STORAGE, commands.KEY_USB_MASS_STORAGE
            )
        )
        if value is not None:
            self.session.usb_mass_storage = value
            self.signals.emit(Signal.USB_MASS_STORAGE, value)
        return value

    async def list_files(self) -> Optional[List[FileEntry]]:
        async def operation() -> List[FileEntry]:
            assert self._storage is not None
            return await self._storage.list_files()

        files = await self._run("Listing files", operation, None)
        if files is not None:
            self.session.files = files
            self.signals.emit(Signal.FILE_LIST, list(files))
        return files

    def file_exists_on_device(self, file_name: str) -> bool:
        return self.session.find_file(file_name) is not None

    def get_file_info(self, file_name: str) -> Optional[FileEntry]:
        return self.session.find_file(file_name)

    def cached_file_path(self, file_name: str) -> Optional[Path]:
        if self._transfer is None:
            return None
        return self._transfer.cached_path(file_name)

    def file_exists_in_cache(self, file_name: str) -> bool:
        return self.cached_file_path(file_name) is not None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    async def send_rgb_color(
        self, red: int, green: int, blue: int, led_bits: int = 127
    ) -> bool:
        color = commands.rgb_to_hex(red, green, blue)
        if not await self._guarded_execute(commands.set_solid_color(led_bits, color)):
            return False
        self.session.solid_color = LedColor(led_bits, color)
        self.signals.emit(Signal.SOLID_COLOR, self.session.solid_color)
        return True

    async def set_solid_color(
        self, name: str, brightness: int = 100, led_bits: int = 127
    ) -> bool:
        """Set one of the named colours; unknown names turn the LEDs off."""

        try:
            color = commands.named_color(name, brightness)
        except ValueError:
            LOGGER.warning("Unknown colour %r, switching LEDs off", name)
            color = "000000"
        red, green, blue = (int(color[i : i + 2], 16) for i in (0, 2, 4))
        return await self.send_rgb_color(red, green, blue, led_bits)

    async def set_display_brightness(self, brightness: int) -> bool:
        command = commands.set_display_brightness(brightness)
        if not await self._guarded_execute(command):
            return False
        self.session.display_brightness = brightness
        self.signals.emit(Signal.DISPLAY_BRIGHTNESS, brightness)
        return True

    async def show_picture(self, file_name: str) -> bool:
        async def operation() -> bool:
            response = await self._dispatcher.send(
                commands.show_picture(file_name),
                self._config.commands.show_picture_timeout_seconds,
            )
            shown = any(
                event.event_type is EventType.SHOWING_PICTURE for event in response.events
            )
            return shown or response.success

        return await self._run(f"Showing {file_name}", operation, False)

    async def set_custom_pattern(
        self,
        lines: Sequence[PatternLine],
        play_after_sending: bool = False,
        play_non_stop: bool = False,
    ) -> bool:
        pattern = list(lines)
        if not pattern:
            LOGGER.warning("Refusing to program an empty pattern")
            return False

        if self.session.pattern_playing:
            await self.play_pattern(False, 3)

        async def operation() -> bool:
            assert self._capabilities is not None and self._storage is not None
            if not self._capabilities.pattern_command:
                await self._storage.store_pattern(pattern)
                return True

            settings = self._config.commands
            timeout = settings.timeout_seconds
            async with self._dispatcher.session() as exchange:
                reply = await exchange.command(
                    commands.set_custom_pattern(len(pattern)), timeout, expect_prompt=True
                )
                if not reply.prompted:
                    LOGGER.warning("Pattern upload not accepted: %s", reply.text)
                    return False

                # Intermediate lines may go unacknowledged; the last one may not.
                for line in pattern[:-1]:
                    text = commands.pattern_line(line)
                    try:
                        reply = await exchange.command(
                            text, settings.pattern_line_timeout_seconds, discard_input=False
                        )
                    except DispatchTimeoutError:
                        continue
                    if reply.state is ResponseState.FAILED:
                        LOGGER.warning("Pattern line %s rejected: %s", text, reply.text)
                        return False

                final = await exchange.command(
                    commands.pattern_line(pattern[-1]), timeout * 2, discard_input=False
                )
                if exchange.failed or final.state is not ResponseState.COMPLETED:
                    LOGGER.warning("Pattern upload failed: %s", final.text)
                    return False
            return True

        if not await self._run("Programming pattern", operation, False):
            return False

        self.session.pattern = pattern
        self.signals.emit(Signal.PATTERN, list(pattern))
        if play_after_sending:
            return await self.play_pattern(True, 255 if play_non_stop else 5)
        return True

    async def play_pattern(self, allow: bool, repeat: int) -> bool:
        return await self._guarded_execute(commands.play_pattern(allow, repeat))

    async def delete_file(self, file_name: str) -> bool:
        async def operation() -> bool:
            assert self._storage is not None and self._transfer is not None
            await self._storage.delete(file_name)
            await self._transfer.refresh()
            return True

        deleted = await self._run(f"Deleting {file_name}", operation, False)
        if deleted:
            self.signals.emit(Signal.FILE_LIST, list(self.session.files))
        return deleted

    async def send_file(
        self, source: Union[Path, str, bytes], file_name: Optional[str] = None
    ) -> UploadOutcome:
        """Upload a local file (or raw bytes with ``file_name``) to the device."""

        if isinstance(source, (bytes, bytearray)):
            if not file_name:
                raise ValueError("file_name is required when uploading raw bytes")
            data = bytes(source)
        else:
            path = Path(source)
            file_name = file_name or path.name
            try:
                data = await asyncio.to_thread(path.read_bytes)
            except OSError as exc:
                LOGGER.error("Unable to read %s: %s", path, exc)
                return UploadOutcome(file_name, False, UploadErrorType.UNKNOWN, str(exc))

        if not self.is_ready or self._transfer is None:
            outcome = UploadOutcome(
                file_name, False, UploadErrorType.CONNECTION_LOST, "Device not ready"
            )
            self.signals.emit(Signal.UPLOAD_FINISHED, outcome)
            return outcome

        transfer = self._transfer
        async with self._operation_lock:
            outcome = await transfer.send_file(data, file_name)
        if outcome.success:
            self.signals.emit(Signal.FILE_LIST, list(self.session.files))
        return outcome

    def cancel_upload(self) -> bool:
        if self._transfer is None:
            return False
        return self._transfer.cancel()

    async def get_file(self, file_name: str) -> Optional[bytes]:
        async def operation() -> bytes:
            assert self._transfer is not None
            return await self._transfer.get_file(file_name)

        return await self._run(f"Downloading {file_name}", operation, None)

    async def restart(self) -> bool:
        return await self._guarded_execute(commands.RESTART)

    async def format_disk(self) -> bool:
        formatted = await self._guarded_execute(
            commands.FORMAT_DISK, self._config.commands.format_timeout_seconds
        )
        if formatted:
            await self.list_files()
        return formatted

    async def set_usb_mass_storage_active(self, active: bool) -> bool:
        if not await self._guarded_execute(commands.set_usb_mass_storage(active)):
            return False
        self.session.usb_mass_storage = active
        self.signals.emit(Signal.USB_MASS_STORAGE, active)
        return True

    async def set_auto_storage_scan(self, enabled: bool) -> bool:
        return await self._guarded_execute(commands.set_auto_storage_scan(enabled))

    async def activate_storage_scan(self) -> bool:
        return await self._guarded_execute(commands.ACTIVATE_STORAGE_SCAN)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _query(
        self, command: str, key: str, timeout: Optional[float] = None
    ) -> Optional[str]:
        response = await self._dispatcher.send(
            command, timeout or self._config.commands.timeout_seconds
        )
        return response.value(key)

    async def _best_effort(self, command: str) -> None:
        try:
            response = await self._dispatcher.send(
                command, self._config.commands.timeout_seconds
            )
        except DispatchTimeoutError:
            LOGGER.warning("No reply to %s", command)
            return
        if not response.success:
            LOGGER.warning("%s rejected: %s", command, response.text)

    async def _guarded_query(self, command: str, key: str) -> Optional[str]:
        return await self._run(command, lambda: self._query(command, key), None)

    async def _guarded_execute(self, command: str, timeout: Optional[float] = None) -> bool:
        async def operation() -> bool:
            response = await self._dispatcher.send(
                command, timeout or self._config.commands.timeout_seconds
            )
            if not response.success:
                LOGGER.warning("%s rejected: %s", command, response.text)
            return response.success

        return await self._run(command, operation, False)

    async def _run(
        self,
        description: str,
        operation: Callable[[], Awaitable[T]],
        default: Any,
    ) -> Any:
        if not self.is_ready:
            LOGGER.warning("%s skipped: device is %s", description, self.state.value)
            return default
        async with self._operation_lock:
            try:
                return await operation()
            except (BusyTagError, OSError) as exc:
                LOGGER.warning("%s failed: %s", description, exc)
                return default

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
