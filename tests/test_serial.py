"""Tests for the pyserial transport without real hardware."""

from types import SimpleNamespace

import pytest
import serial

from busytag_link.adapters import serial as serial_adapter
from busytag_link.adapters.serial import SerialTransport, list_candidates


class _FakeHandle:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.requested = []
        self.is_open = True

    @property
    def in_waiting(self):
        return len(self._chunks[0]) if self._chunks else 0

    def read(self, size):
        self.requested.append(size)
        if not self._chunks:
            raise serial.SerialException("device reports readiness to read but returned no data")
        return self._chunks.pop(0)

    def close(self):
        self.is_open = False


def test_reader_reads_what_is_waiting_and_blocks_for_one_byte_otherwise():
    handle = _FakeHandle([b"OK\r\n", b"", b"+evn:SP,a.png\r\n"])
    transport = SerialTransport("/dev/ttyACM0")
    transport._serial = handle
    received = []
    connection = []
    transport.set_data_handler(received.append)
    transport.set_connection_handler(connection.append)

    transport._read_loop()

    assert handle.requested == [4, 1, 15, 1]
    assert received == [b"OK\r\n", b"+evn:SP,a.png\r\n"]
    assert connection == [False]
    assert not handle.is_open
    assert not transport.is_connected


def test_busytag_ports_are_listed_first(monkeypatch):
    ports = [
        SimpleNamespace(device="/dev/ttyUSB0", description="FTDI", hwid="x", vid=0x0403, pid=0x6001),
        SimpleNamespace(
            device="/dev/ttyACM1",
            description="BusyTag",
            hwid="USB VID:PID=303A:81DF",
            vid=0x303A,
            pid=0x81DF,
        ),
    ]
    monkeypatch.setattr(serial_adapter.serial.tools.list_ports, "comports", lambda: ports)

    candidates = list_candidates()

    assert [info.device for info in candidates] == ["/dev/ttyACM1", "/dev/ttyUSB0"]
    assert candidates[0].is_busytag
    assert not candidates[1].is_busytag


@pytest.mark.asyncio
async def test_write_on_closed_port_raises_os_error():
    transport = SerialTransport("/dev/ttyACM0")

    with pytest.raises(OSError):
        await transport.write(b"AT\r\n")
