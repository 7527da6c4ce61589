"""AT command builders and response parsers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .. import constants
from ..core.models import FileEntry, LedColor, PatternLine

LINE_ENDING = "\r\n"

PING = "AT"
GET_DEVICE_NAME = "AT+GDN"
GET_MANUFACTURER = "AT+GMN"
GET_DEVICE_ID = "AT+GID"
GET_FIRMWARE_VERSION = "AT+GFV"
GET_CURRENT_IMAGE = "AT+SP?"
GET_FREE_STORAGE = "AT+GFSS"
GET_TOTAL_STORAGE = "AT+GTSS"
GET_FILE_LIST = "AT+GFL"
GET_SOLID_COLOR = "AT+SC?"
GET_CUSTOM_PATTERN = "AT+CP?"
GET_DISPLAY_BRIGHTNESS = "AT+DB?"
GET_USB_MASS_STORAGE = "AT+UMSA?"
ACTIVATE_STORAGE_SCAN = "AT+AFSS"
RESTART = "AT+RST"
FORMAT_DISK = "AT+FD"

# Reply keys, i.e. the ``KEY`` in ``+KEY:value``.
KEY_DEVICE_NAME = "DN"
KEY_MANUFACTURER = "MN"
KEY_DEVICE_ID = "ID"
KEY_FIRMWARE_VERSION = "FV"
KEY_CURRENT_IMAGE = "SP"
KEY_FREE_STORAGE = "FSS"
KEY_TOTAL_STORAGE = "TSS"
KEY_FILE_LIST = "FL"
KEY_SOLID_COLOR = "SC"
KEY_CUSTOM_PATTERN = "CP"
KEY_DISPLAY_BRIGHTNESS = "DB"
KEY_USB_MASS_STORAGE = "UMSA"
KEY_DOWNLOAD = "GF"

NAMED_COLORS: Dict[str, Tuple[int, int, int]] = {
    "off": (0, 0, 0),
    "red": (1, 0, 0),
    "green": (0, 1, 0),
    "blue": (0, 0, 1),
    "yellow": (1, 1, 0),
    "cyan": (0, 1, 1),
    "magenta": (1, 0, 1),
    "white": (1, 1, 1),
}

_DOWNLOAD_DELIMITERS = (b"\r\n\r\n", b"\n\n")


def encode(command: str) -> bytes:
    return f"{command}{LINE_ENDING}".encode("utf-8")


def rgb_to_hex(red: int, green: int, blue: int) -> str:
    for component in (red, green, blue):
        if not 0 <= component <= 0xFF:
            raise ValueError(f"Colour component out of range: {component}")
    return f"{red:02X}{green:02X}{blue:02X}"


def named_color(name: str, brightness: int = 100) -> str:
    """Resolve a colour name to ``RRGGBB`` scaled by ``brightness`` percent."""

    try:
        mask = NAMED_COLORS[name.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown colour name: {name!r}") from None
    level = int(max(0, min(100, brightness)) * 2.55)
    return rgb_to_hex(*(level * bit for bit in mask))


def set_solid_color(led_bits: int, color: str) -> str:
    return f"AT+SC={led_bits:d},{color.upper()}"


def show_picture(file_name: str) -> str:
    return f"AT+SP={file_name}"


def set_display_brightness(brightness: int) -> str:
    if not 0 <= brightness <= 100:
        raise ValueError("Brightness must be between 0 and 100")
    return f"AT+DB={brightness:d}"


def set_custom_pattern(count: int) -> str:
    return f"AT+CP={count:d}"


def play_pattern(allow: bool, repeat: int) -> str:
    return f"AT+PP={int(allow)},{repeat:d}"


def set_usb_mass_storage(active: bool) -> str:
    return f"AT+UMSA={int(active)}"


def set_auto_storage_scan(enabled: bool) -> str:
    return f"AT+AASS={int(enabled)}"


def upload_file(file_name: str, size: int) -> str:
    return f"AT+UF={file_name},{size:d}"


def download_file(file_name: str) -> str:
    return f"AT+GF={file_name}"


def delete_file(file_name: str) -> str:
    return f"AT+DF={file_name}"


def pattern_line(line: PatternLine) -> str:
    return f"+CP:{line.led_bits},{line.color},{line.speed},{line.delay}"


def serialize_pattern(lines: Sequence[PatternLine]) -> List[str]:
    return [pattern_line(line) for line in lines]


def parse_pattern(lines: Iterable[str]) -> List[PatternLine]:
    """Parse ``+CP:bits,color,speed,delay`` lines, skipping anything else.

    Bare values (without the ``+CP:`` prefix) are accepted too.
    """
    prefix = f"+{KEY_CUSTOM_PATTERN}:"
    pattern: List[PatternLine] = []
    for raw in lines:
        text = raw.strip()
        if text.startswith(prefix):
            text = text[len(prefix):]
        elif text.startswith("+"):
            continue
        parts = [part.strip() for part in text.split(",")]
        if len(parts) < 4:
            continue
        try:
            pattern.append(
                PatternLine(int(parts[0]), parts[1], int(parts[2]), int(parts[3]))
            )
        except ValueError:
            continue
    return pattern


def parse_file_list(values: Iterable[str]) -> List[FileEntry]:
    """Parse ``+FL:`` values of the form ``name,...,size``."""

    entries: List[FileEntry] = []
    for value in values:
        parts = value.split(",")
        if len(parts) < 2 or not parts[0]:
            continue
        try:
            size = int(parts[-1].strip())
        except ValueError:
            size = 0
        entries.append(FileEntry(parts[0].strip(), size))
    return entries


def parse_solid_color(value: Optional[str]) -> LedColor:
    if value:
        parts = value.split(",")
        if len(parts) >= 2:
            try:
                return LedColor(int(parts[0]), parts[1].strip().upper())
            except ValueError:
                pass
    return LedColor(constants.DEFAULT_LED_BITS, constants.DEFAULT_SOLID_COLOR)


def parse_int(value: Optional[str], default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(value.strip())
    except ValueError:
        return default


def parse_flag(value: Optional[str]) -> Optional[bool]:
    if value is None:
        return None
    text = value.strip()
    if text in ("1", "0"):
        return text == "1"
    return None


@dataclass(slots=True, frozen=True)
class DownloadHeader:
    file_name: str
    size: int
    data_offset: int


def parse_download_header(raw: bytes) -> Optional[DownloadHeader]:
    """Locate the ``+GF:`` header at the start of a download response.

    Returns ``None`` while the blank-line delimiter has not arrived yet.
    Raises ``ValueError`` when the header is complete but carries no usable
    size.
    """
    positions = [
        (index, len(delimiter))
        for delimiter in _DOWNLOAD_DELIMITERS
        if (index := raw.find(delimiter)) >= 0
    ]
    if not positions:
        return None
    index, length = min(positions)

    header_text = raw[:index].decode("utf-8", errors="replace")
    prefix = f"+{KEY_DOWNLOAD}:"
    for line in header_text.replace("\r", "\n").split("\n"):
        line = line.strip()
        if not line.startswith(prefix):
            continue
        body = line[len(prefix):]
        name, _, size_text = body.rpartition(",")
        try:
            size = int(size_text.strip())
        except ValueError:
            raise ValueError(f"Invalid download size in {line!r}") from None
        if size <= 0:
            raise ValueError(f"Non-positive download size in {line!r}")
        return DownloadHeader(name.strip(), size, index + length)

    raise ValueError(f"Download response has no {prefix} header: {header_text!r}")
