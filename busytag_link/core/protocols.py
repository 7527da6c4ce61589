"""Protocol definitions for transports and completion results."""

from __future__ import annotations

from typing import Callable, Optional, Protocol

DataHandler = Callable[[bytes], None]
ConnectionHandler = Callable[[bool], None]


class Transport(Protocol):
    """Bidirectional byte channel to one device.

    Handlers may be invoked from any thread; consumers must hop onto their
    own event loop before touching shared state.
    """

    @property
    def is_connected(self) -> bool:
        ...

    @property
    def endpoint(self) -> str:
        """Human readable identifier of the endpoint, e.g. a port name."""
        ...

    async def connect(self) -> None:
        """Open the channel; raise ``OSError`` on failure."""
        ...

    async def disconnect(self) -> None:
        ...

    async def write(self, data: bytes) -> None:
        """Write bytes; raise ``OSError`` if the channel is unusable."""
        ...

    def reset_input(self) -> None:
        """Drop bytes buffered below the data handler."""
        ...

    def set_data_handler(self, handler: Optional[DataHandler]) -> None:
        ...

    def set_connection_handler(self, handler: Optional[ConnectionHandler]) -> None:
        ...


class Completion(Protocol):
    """Common shape of local command responses and cloud command status."""

    @property
    def status(self) -> str:
        ...

    @property
    def success(self) -> Optional[bool]:
        ...

    @property
    def response(self) -> Optional[str]:
        ...
