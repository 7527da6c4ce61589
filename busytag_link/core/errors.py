"""Exception hierarchy for device, transfer and cloud failures."""

from __future__ import annotations

from typing import Optional

from .models import DownloadErrorType, UploadErrorType


class BusyTagError(RuntimeError):
    """Base class for all busytag-link errors."""


class DispatchError(BusyTagError):
    """Raised when a command exchange with the device fails."""


class DeviceNotConnectedError(DispatchError):
    """Raised when the transport is closed or a write fails."""


class DispatcherBusyError(DispatchError):
    """Raised when a command is issued while another one is in flight."""


class DispatchTimeoutError(DispatchError):
    def __init__(self, command: str, timeout: float, partial: str = "") -> None:
        super().__init__(f"No terminal response to {command!r} within {timeout:.2f}s")
        self.command = command
        self.timeout = timeout
        self.partial = partial


class MalformedResponseError(DispatchError):
    def __init__(self, command: str, expected: str, text: str) -> None:
        super().__init__(f"Response to {command!r} is missing {expected!r}: {text!r}")
        self.command = command
        self.expected = expected
        self.text = text


class StorageError(BusyTagError):
    """Raised for storage-level failures."""


class InsufficientStorageError(StorageError):
    def __init__(self, required: int, free: int, total: int) -> None:
        super().__init__(
            f"Unable to free {required} bytes (free={free}, total={total})"
        )
        self.required = required
        self.free = free
        self.total = total


class MassStorageUnavailableError(StorageError):
    """Raised when the device volume of a legacy firmware cannot be located."""


class UploadError(BusyTagError):
    def __init__(self, error_type: UploadErrorType, message: Optional[str] = None) -> None:
        super().__init__(message or error_type.value)
        self.error_type = error_type


class DownloadError(BusyTagError):
    def __init__(
        self, error_type: DownloadErrorType, message: Optional[str] = None
    ) -> None:
        super().__init__(message or error_type.value)
        self.error_type = error_type


class CloudError(BusyTagError):
    """Raised for failures talking to the cloud command queue."""


class CloudQueueError(CloudError):
    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class CommandTimeoutError(CloudError):
    def __init__(self, command_id: str, timeout: float) -> None:
        super().__init__(f"Command {command_id} not completed within {timeout:.1f}s")
        self.command_id = command_id
        self.timeout = timeout
