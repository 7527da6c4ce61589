"""Core primitives for busytag-link."""

from .errors import (
    BusyTagError,
    CloudError,
    CloudQueueError,
    CommandTimeoutError,
    DeviceNotConnectedError,
    DispatchError,
    DispatcherBusyError,
    DispatchTimeoutError,
    DownloadError,
    InsufficientStorageError,
    MalformedResponseError,
    MassStorageUnavailableError,
    StorageError,
    UploadError,
)
from .models import (
    CommandResponse,
    CommandStatus,
    DeviceEvent,
    DeviceSession,
    DeviceState,
    DownloadErrorType,
    EventType,
    FileEntry,
    LedColor,
    PatternLine,
    ResponseState,
    UploadErrorType,
    UploadOutcome,
    UploadProgress,
)
from .protocols import Completion, ConnectionHandler, DataHandler, Transport
from .registry import PendingCompletionRegistry
from .signals import Signal, SignalHub
from .utils import coerce_bool, coerce_int

__all__ = [
    "BusyTagError",
    "CloudError",
    "CloudQueueError",
    "CommandResponse",
    "CommandStatus",
    "CommandTimeoutError",
    "Completion",
    "ConnectionHandler",
    "DataHandler",
    "DeviceEvent",
    "DeviceNotConnectedError",
    "DeviceSession",
    "DeviceState",
    "DispatchError",
    "DispatcherBusyError",
    "DispatchTimeoutError",
    "DownloadError",
    "DownloadErrorType",
    "EventType",
    "FileEntry",
    "InsufficientStorageError",
    "LedColor",
    "MalformedResponseError",
    "MassStorageUnavailableError",
    "PatternLine",
    "PendingCompletionRegistry",
    "ResponseState",
    "Signal",
    "SignalHub",
    "StorageError",
    "Transport",
    "UploadError",
    "UploadErrorType",
    "UploadOutcome",
    "UploadProgress",
    "coerce_bool",
    "coerce_int",
]
