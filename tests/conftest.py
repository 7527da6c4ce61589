import asyncio
from typing import Callable, Dict, List, Optional, Sequence, Union

import pytest

from busytag_link.config import LinkConfig

Reply = Union[bytes, Sequence[bytes], None]
Responder = Union[Reply, Callable[[str], Reply]]


class ScriptedTransport:
    """In-memory transport that answers written commands from a script.

    ``responses`` maps a command line (without CRLF) to the bytes the device
    would send back, either a single chunk or a list of chunks delivered on
    separate loop iterations. ``raw_handler`` sees every write that is not a
    complete line, which is how uploaded file chunks are answered.
    """

    def __init__(
        self,
        responses: Optional[Dict[str, Responder]] = None,
        *,
        raw_handler: Optional[Callable[[bytes], Reply]] = None,
        endpoint: str = "scripted",
    ) -> None:
        self.responses: Dict[str, Responder] = dict(responses or {})
        self.raw_handler = raw_handler
        self.writes: List[bytes] = []
        self.connected = False
        self.connect_count = 0
        self._endpoint = endpoint
        self._data_handler = None
        self._connection_handler = None

    @property
    def is_connected(self) -> bool:
        return self.connected

    @property
    def endpoint(self) -> str:
        return self._endpoint

    @property
    def lines(self) -> List[str]:
        return [
            data.decode("utf-8", errors="replace").strip()
            for data in self.writes
            if data.endswith(b"\r\n")
        ]

    def set_data_handler(self, handler) -> None:
        self._data_handler = handler

    def set_connection_handler(self, handler) -> None:
        self._connection_handler = handler

    async def connect(self) -> None:
        self.connected = True
        self.connect_count += 1

    async def disconnect(self) -> None:
        self.connected = False

    async def write(self, data: bytes) -> None:
        if not self.connected:
            raise OSError("scripted transport closed")
        self.writes.append(data)

        if data.endswith(b"\r\n"):
            text = data.decode("utf-8").strip()
            reply = self.responses.get(text)
            if callable(reply):
                reply = reply(text)
        elif self.raw_handler is not None:
            reply = self.raw_handler(data)
        else:
            reply = None

        if reply:
            self.deliver(reply)

    def reset_input(self) -> None:
        pass

    def deliver(self, reply: Reply) -> None:
        """Send device output to the installed handler, chunk by chunk."""

        if reply is None:
            return
        chunks = [reply] if isinstance(reply, bytes) else list(reply)
        loop = asyncio.get_running_loop()
        for delay, chunk in enumerate(chunks):
            loop.call_later(0.001 * delay, self._feed, chunk)

    def drop(self) -> None:
        self.connected = False
        if self._connection_handler is not None:
            self._connection_handler(False)

    def _feed(self, chunk: bytes) -> None:
        if self._data_handler is not None:
            self._data_handler(chunk)


def device_script(
    *,
    firmware: str = "2.1",
    name: str = "busytag-A1B2C3",
    files: Sequence[tuple[str, int]] = (("coffee.png", 1024), ("logo.gif", 2048)),
    free: int = 100_000,
    total: int = 400_000,
    current_image: str = "coffee.png",
) -> Dict[str, Responder]:
    """Replies a healthy device gives during and after the connect sequence."""

    listing = b"".join(f"+FL:{n},{s}\r\n".encode() for n, s in files)
    return {
        "AT": b"OK\r\n",
        "AT+GDN": f"+DN:{name}\r\nOK\r\n".encode(),
        "AT+GMN": b"+MN:BUSY TAG SIA\r\nOK\r\n",
        "AT+GID": b"+ID:A1B2C3D4\r\nOK\r\n",
        "AT+GFV": f"+FV:{firmware}\r\nOK\r\n".encode(),
        "AT+SP?": f"+SP:{current_image}\r\nOK\r\n".encode(),
        "AT+GTSS": f"+TSS:{total}\r\nOK\r\n".encode(),
        "AT+GFSS": f"+FSS:{free}\r\nOK\r\n".encode(),
        "AT+SC?": b"+SC:127,990000\r\nOK\r\n",
        "AT+UMSA=0": b"OK\r\n",
        "AT+UMSA=1": b"OK\r\n",
        "AT+AASS=0": b"OK\r\n",
        "AT+GFL": listing + b"OK\r\n",
    }


@pytest.fixture
def link_config(tmp_path) -> LinkConfig:
    config = LinkConfig.defaults()
    config.device.cache_dir = None
    config.liveness.interval_seconds = 60.0
    config.commands.timeout_seconds = 0.3
    config.commands.file_list_timeout_seconds = 0.3
    config.commands.show_picture_timeout_seconds = 0.3
    config.commands.pattern_line_timeout_seconds = 0.05
    config.transfer.announce_timeout_seconds = 0.3
    config.transfer.completion_timeout_seconds = 0.5
    config.transfer.download_header_timeout_seconds = 0.3
    config.transfer.download_poll_seconds = 0.01
    config.path = tmp_path / "busytag-link.cfg"
    return config


@pytest.fixture
def scripted():
    """Factory for :class:`ScriptedTransport` instances."""

    return ScriptedTransport


@pytest.fixture
def device_replies():
    """Factory for the reply script of a healthy device."""

    return device_script
