"""pyserial-backed transport for BusyTag devices on a USB CDC port."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

import serial
import serial.tools.list_ports

from .. import constants
from ..config import DeviceConfig
from ..core.protocols import ConnectionHandler, DataHandler

LOGGER = logging.getLogger(__name__)

READ_TIMEOUT = 0.1  # seconds


@dataclass(slots=True, frozen=True)
class PortInfo:
    device: str
    description: str
    hwid: str
    is_busytag: bool


def list_candidates() -> List[PortInfo]:
    """Enumerate serial ports, BusyTag devices (by USB VID/PID) first."""

    ports: List[PortInfo] = []
    for port in serial.tools.list_ports.comports():
        ports.append(
            PortInfo(
                device=port.device,
                description=port.description or "",
                hwid=port.hwid or "",
                is_busytag=(
                    port.vid == constants.USB_VENDOR_ID
                    and port.pid == constants.USB_PRODUCT_ID
                ),
            )
        )
    ports.sort(key=lambda info: (not info.is_busytag, info.device))
    return ports


class SerialTransport:
    """Serial port with a reader thread feeding the installed data handler."""

    def __init__(
        self,
        port: str,
        *,
        baudrate: int = constants.DEFAULT_BAUDRATE,
        write_timeout: float = 2.0,
    ) -> None:
        self._port = port
        self._baudrate = baudrate
        self._write_timeout = write_timeout
        self._serial: Optional[serial.Serial] = None
        self._reader: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._write_lock = threading.Lock()
        self._data_handler: Optional[DataHandler] = None
        self._connection_handler: Optional[ConnectionHandler] = None

    @classmethod
    def from_config(cls, config: DeviceConfig, port: Optional[str] = None) -> "SerialTransport":
        selected = port or config.port
        if not selected:
            candidates = [info for info in list_candidates() if info.is_busytag]
            if not candidates:
                raise OSError("No BusyTag serial port found")
            selected = candidates[0].device
        return cls(
            selected,
            baudrate=config.baudrate,
            write_timeout=config.write_timeout_seconds,
        )

    @property
    def is_connected(self) -> bool:
        handle = self._serial
        return handle is not None and handle.is_open

    @property
    def endpoint(self) -> str:
        return self._port

    def set_data_handler(self, handler: Optional[DataHandler]) -> None:
        self._data_handler = handler

    def set_connection_handler(self, handler: Optional[ConnectionHandler]) -> None:
        self._connection_handler = handler

    async def connect(self) -> None:
        if self.is_connected:
            return
        try:
            self._serial = await asyncio.to_thread(
                serial.Serial,
                port=self._port,
                baudrate=self._baudrate,
                timeout=READ_TIMEOUT,
                write_timeout=self._write_timeout,
            )
        except serial.SerialException as exc:
            raise OSError(f"Failed to open {self._port}: {exc}") from exc

        self._serial.reset_input_buffer()
        self._stop.clear()
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"busytag-serial-{self._port}",
            daemon=True,
        )
        self._reader.start()
        LOGGER.info("Serial port opened: %s @ %d baud", self._port, self._baudrate)
        self._notify_connection(True)

    async def disconnect(self) -> None:
        handle = self._serial
        if handle is None:
            return

        self._stop.set()
        reader = self._reader
        self._reader = None
        if reader is not None and reader is not threading.current_thread():
            await asyncio.to_thread(reader.join, 1.0)

        self._serial = None
        try:
            handle.close()
        except serial.SerialException as exc:
            raise OSError(f"Failed to close {self._port}: {exc}") from exc
        LOGGER.info("Serial port closed: %s", self._port)

    async def write(self, data: bytes) -> None:
        handle = self._serial
        if handle is None or not handle.is_open:
            raise OSError(f"Serial port {self._port} is not open")
        try:
            await asyncio.to_thread(self._write_blocking, handle, data)
        except serial.SerialException as exc:
            raise OSError(f"Write to {self._port} failed: {exc}") from exc

    def reset_input(self) -> None:
        handle = self._serial
        if handle is None:
            return
        try:
            handle.reset_input_buffer()
        except serial.SerialException as exc:
            LOGGER.debug("Unable to reset input of %s: %s", self._port, exc)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _write_blocking(self, handle: serial.Serial, data: bytes) -> None:
        with self._write_lock:
            handle.write(data)
            handle.flush()

    def _read_loop(self) -> None:
        handle = self._serial
        while handle is not None and not self._stop.is_set():
            try:
                data = handle.read(handle.in_waiting or 1)
            except (serial.SerialException, OSError, TypeError) as exc:
                # TypeError is raised by pyserial when the port is closed mid-read.
                if self._stop.is_set():
                    return
                LOGGER.warning("Serial read on %s failed: %s", self._port, exc)
                try:
                    handle.close()
                except serial.SerialException:
                    LOGGER.debug("Closing %s after read failure failed", self._port)
                self._notify_connection(False)
                return

            if data:
                handler = self._data_handler
                if handler is not None:
                    try:
                        handler(data)
                    except Exception:  # pragma: no cover - defensive logging
                        LOGGER.exception("Serial data handler failed")

    def _notify_connection(self, connected: bool) -> None:
        handler = self._connection_handler
        if handler is None:
            return
        try:
            handler(connected)
        except Exception:  # pragma: no cover - defensive logging
            LOGGER.exception("Serial connection handler failed")
