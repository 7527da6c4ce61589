"""Constants used across the busytag-link package."""

from __future__ import annotations

from pathlib import Path

APP_NAME = "busytag-link"
DEFAULT_HOME = Path.home() / ".busytag"
DEFAULT_CONFIG_FILENAME = f"{APP_NAME}.cfg"
DEFAULT_CONFIG_PATH = DEFAULT_HOME / DEFAULT_CONFIG_FILENAME
DEFAULT_CACHE_DIR = DEFAULT_HOME / "images"

DEFAULT_LOG_PATH = DEFAULT_HOME / "logs" / f"{APP_NAME}.log"

DEFAULT_BAUDRATE = 460800
USB_VENDOR_ID = 0x303A
USB_PRODUCT_ID = 0x81DF
DEVICE_NAME_PREFIX = "busytag-"
DEFAULT_DEVICE_NAME = "busytag"
DEFAULT_MANUFACTURER = "BUSY TAG SIA"

DIRECT_TRANSFER_MIN_VERSION = 2.0
PATTERN_COMMAND_MIN_VERSION = 0.8
AUTO_SCAN_SETTING_MIN_VERSION = 0.7

MAX_FILENAME_LENGTH = 40
DEFAULT_CHUNK_SIZE = 8192
MAX_EVICTION_ATTEMPTS = 20
IMAGE_EXTENSIONS = (".png", ".jpg", ".jpeg", ".gif")

DEFAULT_LED_BITS = 127
DEFAULT_SOLID_COLOR = "990000"

DEFAULT_CLOUD_BASE_URL = "https://greynut.com"
DEFAULT_CLOUD_ORIGIN = "https://greynut.com"
CLOUD_COMMAND_PRIORITY = 5
CLOUD_URGENT_PRIORITY = 10
