"""Data structures shared across busytag-link components."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from .. import constants

_HEX_COLOR = re.compile(r"^[0-9A-Fa-f]{6}$")


class ResponseState(str, Enum):
    """Lifecycle of a single outstanding command, local or cloud-queued."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class DeviceState(str, Enum):
    """Connection lifecycle of a device facade."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    BASIC_INFO_FETCHED = "basic_info_fetched"
    READY = "ready"


class EventType(str, Enum):
    """Unsolicited ``+evn`` notification types emitted by the device."""

    SHOWING_PICTURE = "SP"
    FIRMWARE_UPDATE = "FU"
    PATTERN_PLAYING = "PP"
    WRITING_IN_STORAGE = "WIS"


class UploadErrorType(str, Enum):
    NONE = "none"
    FILENAME_TOO_LONG = "filename_too_long"
    INSUFFICIENT_STORAGE = "insufficient_storage"
    CONNECTION_LOST = "connection_lost"
    TRANSFER_INTERRUPTED = "transfer_interrupted"
    DEVICE_ERROR = "device_error"
    CANCELLED = "cancelled"
    UNKNOWN = "unknown"


class DownloadErrorType(str, Enum):
    INVALID_RESPONSE = "invalid_response"
    INCOMPLETE = "incomplete"
    DEVICE_ERROR = "device_error"
    CONNECTION_LOST = "connection_lost"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"


@dataclass(slots=True, frozen=True)
class FileEntry:
    """A file stored on the device.

    ``created_at`` is only known when the storage is reachable as a mounted
    volume; direct-transfer listings carry names and sizes only.
    """

    name: str
    size: int
    created_at: Optional[float] = None

    @property
    def is_image(self) -> bool:
        return self.name.lower().endswith(constants.IMAGE_EXTENSIONS)


@dataclass(slots=True, frozen=True)
class PatternLine:
    """One frame of an LED animation."""

    led_bits: int
    color: str
    speed: int
    delay: int

    def __post_init__(self) -> None:
        if not 0 <= self.led_bits <= 0xFF:
            raise ValueError(f"led_bits out of range: {self.led_bits}")
        if not _HEX_COLOR.match(self.color):
            raise ValueError(f"Invalid colour {self.color!r}, expected RRGGBB")
        for name in ("speed", "delay"):
            value = getattr(self, name)
            if not 0 <= value <= 0xFFFF:
                raise ValueError(f"{name} out of range: {value}")
        object.__setattr__(self, "color", self.color.upper())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "led_bits": self.led_bits,
            "color": self.color,
            "speed": self.speed,
            "delay": self.delay,
        }


@dataclass(slots=True, frozen=True)
class LedColor:
    led_bits: int
    color: str


@dataclass(slots=True, frozen=True)
class UploadProgress:
    file_name: str
    percent: float


@dataclass(slots=True, frozen=True)
class UploadOutcome:
    file_name: str
    success: bool
    error_type: UploadErrorType = UploadErrorType.NONE
    message: Optional[str] = None


@dataclass(slots=True, frozen=True)
class DeviceEvent:
    """Parsed ``+evn:TYPE,args`` line."""

    type: str
    args: tuple[str, ...] = ()

    @property
    def event_type(self) -> Optional[EventType]:
        try:
            return EventType(self.type)
        except ValueError:
            return None

    @property
    def first_arg(self) -> str:
        return self.args[0] if self.args else ""


@dataclass(slots=True)
class CommandResponse:
    """Result of one write-then-wait exchange with the device.

    Shares the ``status``/``success``/``response`` shape with
    :class:`CommandStatus` so callers can treat local and cloud completions
    alike.
    """

    command: str
    text: str = ""
    state: ResponseState = ResponseState.PENDING
    terminal: Optional[str] = None
    lines: List[str] = field(default_factory=list)
    events: List[DeviceEvent] = field(default_factory=list)

    @property
    def status(self) -> str:
        return self.state.value

    @property
    def success(self) -> bool:
        return self.state is ResponseState.COMPLETED

    @property
    def response(self) -> str:
        return self.text

    @property
    def prompted(self) -> bool:
        return self.terminal == ">"

    def value(self, key: str) -> Optional[str]:
        """Return the value of the first ``+KEY:value`` line, if any."""

        prefix = f"+{key}:"
        for line in self.lines:
            if line.startswith(prefix):
                return line[len(prefix):].strip()
        return None

    def values(self, key: str) -> List[str]:
        prefix = f"+{key}:"
        return [line[len(prefix):].strip() for line in self.lines if line.startswith(prefix)]


@dataclass(slots=True)
class DeviceSession:
    """Mutable view of one connected device, owned by its facade."""

    state: DeviceState = DeviceState.DISCONNECTED
    device_name: str = constants.DEFAULT_DEVICE_NAME
    manufacturer: str = constants.DEFAULT_MANUFACTURER
    device_id: str = ""
    firmware_label: str = ""
    firmware_version: float = 0.0
    current_image: str = ""
    free_storage: int = 0
    total_storage: int = 0
    files: List[FileEntry] = field(default_factory=list)
    solid_color: Optional[LedColor] = None
    display_brightness: Optional[int] = None
    pattern: List[PatternLine] = field(default_factory=list)
    pattern_playing: bool = False
    writing_in_storage: bool = False
    usb_mass_storage: Optional[bool] = None

    @property
    def local_address(self) -> str:
        return f"http://{self.device_name}.local"

    def find_file(self, name: str) -> Optional[FileEntry]:
        for entry in self.files:
            if entry.name == name:
                return entry
        return None


@dataclass(slots=True)
class DeviceSettings:
    """``config.json`` document kept on the mass-storage volume of old firmware."""

    version: int = 1
    image: str = ""
    show_after_drop: bool = False
    allow_usb_msc: bool = True
    allow_file_server: bool = False
    disp_brightness: int = 100
    solid_color: LedColor = field(
        default_factory=lambda: LedColor(constants.DEFAULT_LED_BITS, constants.DEFAULT_SOLID_COLOR)
    )
    activate_pattern: bool = False
    pattern_repeat: int = 5
    custom_pattern: List[PatternLine] = field(default_factory=list)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "DeviceSettings":
        color = payload.get("solid_color") or {}
        lines: List[PatternLine] = []
        for item in payload.get("custom_pattern_arr") or []:
            try:
                lines.append(
                    PatternLine(
                        int(item.get("led_bits", 0)),
                        str(item.get("color", "000000")),
                        int(item.get("speed", 0)),
                        int(item.get("delay", 0)),
                    )
                )
            except (TypeError, ValueError, AttributeError):
                continue
        return cls(
            version=int(payload.get("version", 1) or 1),
            image=str(payload.get("image") or ""),
            show_after_drop=bool(payload.get("show_after_drop", False)),
            allow_usb_msc=bool(payload.get("allow_usb_msc", True)),
            allow_file_server=bool(payload.get("allow_file_server", False)),
            disp_brightness=int(payload.get("disp_brightness", 100) or 0),
            solid_color=LedColor(
                int(color.get("led_bits", constants.DEFAULT_LED_BITS)),
                str(color.get("color", constants.DEFAULT_SOLID_COLOR)),
            ),
            activate_pattern=bool(payload.get("activate_pattern", False)),
            pattern_repeat=int(payload.get("pattern_repeat", 5) or 0),
            custom_pattern=lines,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "image": self.image,
            "show_after_drop": self.show_after_drop,
            "allow_usb_msc": self.allow_usb_msc,
            "allow_file_server": self.allow_file_server,
            "disp_brightness": self.disp_brightness,
            "solid_color": {
                "led_bits": self.solid_color.led_bits,
                "color": self.solid_color.color,
            },
            "activate_pattern": self.activate_pattern,
            "pattern_repeat": self.pattern_repeat,
            "custom_pattern_arr": [line.to_dict() for line in self.custom_pattern],
        }


# ----------------------------------------------------------------------
# Cloud records
# ----------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class QueuedCommand:
    command_id: str
    status: str


@dataclass(slots=True)
class CommandStatus:
    """Server-side view of a queued command."""

    command_id: str
    status: str
    success: Optional[bool] = None
    response: Optional[str] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (ResponseState.COMPLETED.value, ResponseState.FAILED.value)


@dataclass(slots=True)
class DeviceStatus:
    online: bool
    storage_total: Optional[int] = None
    storage_free: Optional[int] = None
    active_image: Optional[str] = None
    active_image_url: Optional[str] = None
    firmware_version: Optional[str] = None
    device_name: Optional[str] = None
    last_seen: Optional[datetime] = None


@dataclass(slots=True, frozen=True)
class LatestImage:
    url: str
    filename: Optional[str] = None
    hash: Optional[str] = None
    uploaded_at: Optional[datetime] = None


@dataclass(slots=True)
class CommandOutcome:
    """Result of a convenience cloud call: queueing plus optional completion."""

    success: bool
    command_id: Optional[str] = None
    status: str = "unknown"
    response: Optional[str] = None
    error_message: Optional[str] = None
    completion: Optional[CommandStatus] = None


@dataclass(slots=True, frozen=True)
class CloudTestResult:
    success: bool
    message: str
    details: Optional[str] = None
    command_id: Optional[str] = None
    response: Optional[str] = None


@dataclass(slots=True, frozen=True)
class ImageUploadResult:
    success: bool
    file_name: Optional[str] = None
    hash: Optional[str] = None
    message: Optional[str] = None
    error_message: Optional[str] = None


