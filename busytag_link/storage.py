"""Storage strategies selected once per connection from the firmware version.

Firmware 2.0 and later expose their flash through chunked AT transfer
commands (:class:`DirectTransferStrategy`). Older firmware exposes it as a
USB mass-storage volume that the host reads and writes directly
(:class:`LegacyMassStorageStrategy`). Every file operation goes through the
strategy chosen at connect time.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Protocol, Sequence

from . import constants
from .config import CommandConfig, DeviceConfig, TransferConfig
from .core.errors import (
    DeviceNotConnectedError,
    DispatchError,
    DispatchTimeoutError,
    DownloadError,
    MalformedResponseError,
    MassStorageUnavailableError,
    StorageError,
    UploadError,
)
from .core.models import (
    DeviceSession,
    DeviceSettings,
    DownloadErrorType,
    FileEntry,
    PatternLine,
    UploadErrorType,
)
from .dispatcher import CommandDispatcher, Exchange
from .protocol import commands

LOGGER = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]
CancelCheck = Callable[[], bool]

README_NAME = "readme.txt"
SETTINGS_NAME = "config.json"


@dataclass(slots=True, frozen=True)
class Capabilities:
    """Feature switches derived from the firmware version."""

    version: float
    direct_transfer: bool
    pattern_command: bool
    auto_scan_setting: bool
    mass_storage_toggle: bool

    @classmethod
    def from_version(cls, version: float) -> "Capabilities":
        return cls(
            version=version,
            direct_transfer=version >= constants.DIRECT_TRANSFER_MIN_VERSION,
            pattern_command=version > constants.PATTERN_COMMAND_MIN_VERSION,
            auto_scan_setting=version > constants.AUTO_SCAN_SETTING_MIN_VERSION,
            mass_storage_toggle=version < constants.DIRECT_TRANSFER_MIN_VERSION,
        )


def download_timeout(size: int) -> float:
    """Wall-clock budget for receiving ``size`` bytes over the serial link."""

    return max(30.0, size / 1024 + 15.0)


class StorageStrategy(Protocol):
    name: str

    async def list_files(self) -> List[FileEntry]:
        ...

    async def free_space(self) -> int:
        ...

    async def total_space(self) -> int:
        ...

    async def delete(self, file_name: str) -> None:
        ...

    async def write_file(
        self,
        data: bytes,
        file_name: str,
        *,
        on_progress: ProgressCallback,
        should_cancel: CancelCheck,
    ) -> None:
        ...

    async def read_file(self, file_name: str, *, should_cancel: CancelCheck) -> bytes:
        ...

    async def store_pattern(self, lines: Sequence[PatternLine]) -> None:
        ...

    def describe(self) -> str:
        ...


class DirectTransferStrategy:
    """File operations carried over the AT command channel."""

    name = "direct"

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        *,
        commands_config: Optional[CommandConfig] = None,
        transfer_config: Optional[TransferConfig] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._commands = commands_config or CommandConfig()
        self._transfer = transfer_config or TransferConfig()

    def describe(self) -> str:
        return "direct transfer over serial"

    async def list_files(self) -> List[FileEntry]:
        response = await self._dispatcher.send(
            commands.GET_FILE_LIST, self._commands.file_list_timeout_seconds
        )
        if not response.success:
            raise StorageError(f"File listing failed: {response.text}")
        return commands.parse_file_list(response.values(commands.KEY_FILE_LIST))

    async def free_space(self) -> int:
        return await self._query_size(commands.GET_FREE_STORAGE, commands.KEY_FREE_STORAGE)

    async def total_space(self) -> int:
        return await self._query_size(commands.GET_TOTAL_STORAGE, commands.KEY_TOTAL_STORAGE)

    async def delete(self, file_name: str) -> None:
        response = await self._dispatcher.send(
            commands.delete_file(file_name), self._commands.timeout_seconds
        )
        if not response.success:
            raise StorageError(f"Device refused to delete {file_name}: {response.text}")

    async def write_file(
        self,
        data: bytes,
        file_name: str,
        *,
        on_progress: ProgressCallback,
        should_cancel: CancelCheck,
    ) -> None:
        chunk_size = self._transfer.chunk_size
        announce = commands.upload_file(file_name, len(data))

        async with self._dispatcher.session() as exchange:
            try:
                reply = await exchange.command(
                    announce,
                    self._transfer.announce_timeout_seconds,
                    expect_prompt=True,
                )
            except DispatchTimeoutError as exc:
                raise UploadError(
                    UploadErrorType.DEVICE_ERROR, "Device did not accept the upload"
                ) from exc
            if not reply.prompted:
                raise UploadError(
                    UploadErrorType.DEVICE_ERROR, f"Upload rejected: {reply.text}"
                )

            sent = 0
            for offset in range(0, len(data), chunk_size):
                if should_cancel():
                    raise UploadError(UploadErrorType.CANCELLED, "Upload cancelled")
                if exchange.failed:
                    raise UploadError(
                        UploadErrorType.DEVICE_ERROR, "Device reported an error mid-transfer"
                    )
                chunk = data[offset : offset + chunk_size]
                try:
                    await exchange.write_raw(chunk)
                except DeviceNotConnectedError as exc:
                    raise UploadError(UploadErrorType.CONNECTION_LOST, str(exc)) from exc
                sent += len(chunk)
                on_progress(sent)

            try:
                final = await exchange.command(
                    "",
                    self._transfer.completion_timeout_seconds,
                    discard_input=False,
                )
            except DeviceNotConnectedError as exc:
                raise UploadError(UploadErrorType.CONNECTION_LOST, str(exc)) from exc
            except DispatchTimeoutError as exc:
                raise UploadError(
                    UploadErrorType.TRANSFER_INTERRUPTED,
                    "No confirmation after the last chunk",
                ) from exc

            if not final.success:
                raise UploadError(UploadErrorType.DEVICE_ERROR, final.text)

    async def read_file(self, file_name: str, *, should_cancel: CancelCheck) -> bytes:
        loop = asyncio.get_running_loop()
        async with self._dispatcher.session() as exchange:
            exchange.discard_input()
            exchange.begin_binary()
            try:
                await exchange.write_line(commands.download_file(file_name))
                header, payload = await self._read_header(exchange, loop)

                deadline = loop.time() + download_timeout(header.size)
                poll = self._transfer.download_poll_seconds
                while len(payload) < header.size:
                    if should_cancel():
                        raise DownloadError(DownloadErrorType.CANCELLED)
                    remaining = deadline - loop.time()
                    if remaining <= 0:
                        raise DownloadError(
                            DownloadErrorType.INCOMPLETE,
                            f"Received {len(payload)}/{header.size} bytes of {file_name}",
                        )
                    payload.extend(await exchange.read_binary(min(poll, remaining)))
            except DeviceNotConnectedError as exc:
                raise DownloadError(DownloadErrorType.CONNECTION_LOST, str(exc)) from exc
            finally:
                exchange.end_binary()

        LOGGER.debug("Downloaded %s (%d bytes)", file_name, header.size)
        return bytes(payload[: header.size])

    async def store_pattern(self, lines: Sequence[PatternLine]) -> None:
        raise StorageError("Pattern files are only used by mass-storage firmware")

    async def _read_header(
        self, exchange: Exchange, loop: asyncio.AbstractEventLoop
    ) -> tuple[commands.DownloadHeader, bytearray]:
        buffer = bytearray()
        deadline = loop.time() + self._transfer.download_header_timeout_seconds
        while True:
            try:
                header = commands.parse_download_header(bytes(buffer))
            except ValueError as exc:
                error_type = (
                    DownloadErrorType.DEVICE_ERROR
                    if b"ERROR" in buffer
                    else DownloadErrorType.INVALID_RESPONSE
                )
                raise DownloadError(error_type, str(exc)) from exc
            if header is not None:
                return header, bytearray(buffer[header.data_offset :])
            error_at = buffer.find(b"ERROR")
            if error_at >= 0 and b"\n" in buffer[error_at:]:
                raise DownloadError(
                    DownloadErrorType.DEVICE_ERROR,
                    buffer.decode("utf-8", errors="replace").strip(),
                )
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise DownloadError(
                    DownloadErrorType.INVALID_RESPONSE, "No download header received"
                )
            buffer.extend(await exchange.read_binary(remaining))

    async def _query_size(self, command: str, key: str) -> int:
        response = await self._dispatcher.send(command, self._commands.timeout_seconds)
        value = response.value(key)
        if value is None:
            raise MalformedResponseError(command, f"+{key}:", response.text)
        return commands.parse_int(value)


class LegacyMassStorageStrategy:
    """File operations on the USB mass-storage volume of old firmware."""

    name = "mass-storage"

    def __init__(
        self,
        dispatcher: CommandDispatcher,
        session: DeviceSession,
        *,
        device_config: Optional[DeviceConfig] = None,
        commands_config: Optional[CommandConfig] = None,
        transfer_config: Optional[TransferConfig] = None,
    ) -> None:
        self._dispatcher = dispatcher
        self._session = session
        self._device = device_config or DeviceConfig()
        self._commands = commands_config or CommandConfig()
        self._transfer = transfer_config or TransferConfig()
        self._volume: Optional[Path] = self._device.mass_storage_path

    def describe(self) -> str:
        return f"mass-storage volume {self._volume or '(not located)'}"

    @property
    def volume(self) -> Optional[Path]:
        return self._volume

    async def locate(self) -> Path:
        if self._volume is not None and self._volume.is_dir():
            return self._volume
        roots = self._device.mass_storage_search_roots or default_search_roots()
        found = await asyncio.to_thread(
            locate_mass_storage, self._session.device_name, roots
        )
        if found is None:
            raise MassStorageUnavailableError(
                f"No volume advertising {self._session.local_address} found"
            )
        LOGGER.info("Located device volume at %s", found)
        self._volume = found
        return found

    async def list_files(self) -> List[FileEntry]:
        volume = await self.locate()
        return await asyncio.to_thread(_scan_volume, volume)

    async def free_space(self) -> int:
        volume = await self.locate()
        usage = await asyncio.to_thread(shutil.disk_usage, volume)
        return int(usage.free)

    async def total_space(self) -> int:
        volume = await self.locate()
        usage = await asyncio.to_thread(shutil.disk_usage, volume)
        return int(usage.total)

    async def delete(self, file_name: str) -> None:
        path = await self._path_for(file_name)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError as exc:
            raise StorageError(f"{file_name} does not exist on the device") from exc
        except OSError as exc:
            raise StorageError(f"Unable to delete {file_name}: {exc}") from exc

    async def write_file(
        self,
        data: bytes,
        file_name: str,
        *,
        on_progress: ProgressCallback,
        should_cancel: CancelCheck,
    ) -> None:
        path = await self._path_for(file_name)
        chunk_size = self._transfer.chunk_size
        handle = await asyncio.to_thread(path.open, "wb")
        completed = False
        try:
            sent = 0
            for offset in range(0, len(data), chunk_size):
                if should_cancel():
                    raise UploadError(UploadErrorType.CANCELLED, "Upload cancelled")
                chunk = data[offset : offset + chunk_size]
                try:
                    await asyncio.to_thread(handle.write, chunk)
                except OSError as exc:
                    raise UploadError(
                        UploadErrorType.TRANSFER_INTERRUPTED, str(exc)
                    ) from exc
                sent += len(chunk)
                on_progress(sent)
            await asyncio.to_thread(_flush, handle)
            completed = True
        finally:
            await asyncio.to_thread(handle.close)
            if not completed:
                await asyncio.to_thread(_unlink_quietly, path)

        await self._rescan()

    async def read_file(self, file_name: str, *, should_cancel: CancelCheck) -> bytes:
        path = await self._path_for(file_name)
        if should_cancel():
            raise DownloadError(DownloadErrorType.CANCELLED)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except FileNotFoundError as exc:
            raise DownloadError(DownloadErrorType.NOT_FOUND, str(exc)) from exc
        except OSError as exc:
            raise DownloadError(DownloadErrorType.INCOMPLETE, str(exc)) from exc

    async def store_pattern(self, lines: Sequence[PatternLine]) -> None:
        """Write the pattern into ``config.json`` and ask the device to reload it."""

        path = await self._path_for(SETTINGS_NAME)
        settings = await asyncio.to_thread(_read_settings, path)
        settings.activate_pattern = False
        settings.custom_pattern = list(lines)
        payload = json.dumps(settings.to_dict())
        await asyncio.to_thread(path.write_text, payload, "utf-8")
        await self._rescan()

    async def _path_for(self, file_name: str) -> Path:
        volume = await self.locate()
        if Path(file_name).name != file_name:
            raise StorageError(f"Invalid file name: {file_name!r}")
        return volume / file_name

    async def _rescan(self) -> None:
        try:
            await self._dispatcher.send(
                commands.ACTIVATE_STORAGE_SCAN, self._commands.timeout_seconds
            )
        except DispatchError as exc:
            LOGGER.warning("Storage rescan request failed: %s", exc)


def create_strategy(
    capabilities: Capabilities,
    dispatcher: CommandDispatcher,
    session: DeviceSession,
    *,
    device_config: Optional[DeviceConfig] = None,
    commands_config: Optional[CommandConfig] = None,
    transfer_config: Optional[TransferConfig] = None,
) -> StorageStrategy:
    if capabilities.direct_transfer:
        return DirectTransferStrategy(
            dispatcher,
            commands_config=commands_config,
            transfer_config=transfer_config,
        )
    return LegacyMassStorageStrategy(
        dispatcher,
        session,
        device_config=device_config,
        commands_config=commands_config,
        transfer_config=transfer_config,
    )


def default_search_roots() -> List[str]:
    if sys.platform.startswith("win"):
        return [f"{letter}:\\" for letter in "DEFGHIJKLMNOPQRSTUVWXYZ"]
    if sys.platform == "darwin":
        return ["/Volumes"]
    user = os.environ.get("USER", "")
    roots = ["/media", "/mnt", "/run/media"]
    if user:
        roots = [f"/media/{user}", f"/run/media/{user}"] + roots
    return roots


def locate_mass_storage(device_name: str, roots: Iterable[str]) -> Optional[Path]:
    """Find the mounted volume whose readme mentions ``http://<name>.local``."""

    marker = f"http://{device_name}.local".lower()
    for root in roots:
        base = Path(root).expanduser()
        if not base.is_dir():
            continue
        candidates = [base]
        try:
            candidates.extend(sorted(p for p in base.iterdir() if p.is_dir()))
        except OSError:
            continue
        for candidate in candidates:
            readme = candidate / README_NAME
            try:
                if marker in readme.read_text(encoding="utf-8", errors="replace").lower():
                    return candidate
            except OSError:
                continue
    return None


def _scan_volume(volume: Path) -> List[FileEntry]:
    entries: List[FileEntry] = []
    for path in sorted(volume.iterdir()):
        if not path.is_file() or path.name.startswith("."):
            continue
        stat = path.stat()
        created = getattr(stat, "st_birthtime", None) or stat.st_ctime
        entries.append(FileEntry(path.name, int(stat.st_size), float(created)))
    return entries


def _read_settings(path: Path) -> DeviceSettings:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return DeviceSettings()
    except (OSError, ValueError) as exc:
        LOGGER.warning("Ignoring unreadable %s: %s", path, exc)
        return DeviceSettings()
    if not isinstance(payload, dict):
        return DeviceSettings()
    return DeviceSettings.from_dict(payload)


def _flush(handle) -> None:
    handle.flush()
    os.fsync(handle.fileno())


def _unlink_quietly(path: Path) -> None:
    try:
        path.unlink()
    except OSError:
        pass
