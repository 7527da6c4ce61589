"""Configuration loader for busytag-link."""

from __future__ import annotations

from configparser import ConfigParser
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, List, Optional

from . import constants


@dataclass(slots=True)
class DeviceConfig:
    port: Optional[str] = None
    baudrate: int = constants.DEFAULT_BAUDRATE
    write_timeout_seconds: float = 2.0
    cache_dir: Optional[Path] = constants.DEFAULT_CACHE_DIR
    mass_storage_path: Optional[Path] = None
    mass_storage_search_roots: List[str] = field(default_factory=list)


@dataclass(slots=True)
class CommandConfig:
    timeout_seconds: float = 1.0
    file_list_timeout_seconds: float = 2.0
    show_picture_timeout_seconds: float = 1.0
    format_timeout_seconds: float = 5.0
    pattern_line_timeout_seconds: float = 0.1


@dataclass(slots=True)
class TransferConfig:
    chunk_size: int = constants.DEFAULT_CHUNK_SIZE
    max_filename_length: int = constants.MAX_FILENAME_LENGTH
    eviction_attempts: int = constants.MAX_EVICTION_ATTEMPTS
    announce_timeout_seconds: float = 2.0
    completion_timeout_seconds: float = 10.0
    download_header_timeout_seconds: float = 2.0
    download_poll_seconds: float = 0.1


@dataclass(slots=True)
class LivenessConfig:
    interval_seconds: float = 3.0
    probe: bool = True
    max_failures: int = 3


@dataclass(slots=True)
class CloudConfig:
    base_url: str = constants.DEFAULT_CLOUD_BASE_URL
    device_id: Optional[str] = None
    push_url: Optional[str] = None
    request_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 1.0
    command_timeout_seconds: float = 30.0
    reconnect_initial_seconds: float = 2.0
    reconnect_max_seconds: float = 30.0
    origin: Optional[str] = constants.DEFAULT_CLOUD_ORIGIN


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    path: Optional[Path] = None
    log_network: bool = False


@dataclass(slots=True)
class LinkConfig:
    device: DeviceConfig
    commands: CommandConfig
    transfer: TransferConfig
    liveness: LivenessConfig
    cloud: CloudConfig
    logging: LoggingConfig
    raw: ConfigParser
    path: Path

    @classmethod
    def defaults(cls) -> "LinkConfig":
        """Build a configuration that ignores any file on disk."""

        return cls(
            device=DeviceConfig(),
            commands=CommandConfig(),
            transfer=TransferConfig(),
            liveness=LivenessConfig(),
            cloud=CloudConfig(),
            logging=LoggingConfig(),
            raw=ConfigParser(),
            path=constants.DEFAULT_CONFIG_PATH,
        )


def _parse_list(value: str, *, default: Iterable[str]) -> List[str]:
    if not value:
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


def _optional(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _optional_path(value: Optional[str]) -> Optional[Path]:
    value = _optional(value)
    if value is None:
        return None
    return Path(value).expanduser()


def load_config(path: Optional[Path] = None) -> LinkConfig:
    """Load configuration from disk, applying defaults where necessary."""

    config_path = path or constants.DEFAULT_CONFIG_PATH
    parser = ConfigParser()
    parser.read_dict(
        {
            "device": {
                "port": "",
                "baudrate": str(constants.DEFAULT_BAUDRATE),
                "write_timeout_seconds": "2.0",
                "cache_dir": str(constants.DEFAULT_CACHE_DIR),
                "mass_storage_path": "",
                "mass_storage_search_roots": "",
            },
            "commands": {
                "timeout_seconds": "1.0",
                "file_list_timeout_seconds": "2.0",
                "show_picture_timeout_seconds": "1.0",
                "format_timeout_seconds": "5.0",
                "pattern_line_timeout_seconds": "0.1",
            },
            "transfer": {
                "chunk_size": str(constants.DEFAULT_CHUNK_SIZE),
                "max_filename_length": str(constants.MAX_FILENAME_LENGTH),
                "eviction_attempts": str(constants.MAX_EVICTION_ATTEMPTS),
                "announce_timeout_seconds": "2.0",
                "completion_timeout_seconds": "10.0",
                "download_header_timeout_seconds": "2.0",
                "download_poll_seconds": "0.1",
            },
            "liveness": {
                "interval_seconds": "3.0",
                "probe": "true",
                "max_failures": "3",
            },
            "cloud": {
                "base_url": constants.DEFAULT_CLOUD_BASE_URL,
                "device_id": "",
                "push_url": "",
                "request_timeout_seconds": "30",
                "poll_interval_seconds": "1.0",
                "command_timeout_seconds": "30",
                "reconnect_initial_seconds": "2.0",
                "reconnect_max_seconds": "30.0",
                "origin": constants.DEFAULT_CLOUD_ORIGIN,
            },
            "logging": {
                "level": "INFO",
                "path": "",
                "log_network": "false",
            },
        }
    )

    if config_path.exists():
        parser.read(config_path)

    device = DeviceConfig(
        port=_optional(parser.get("device", "port", fallback="")),
        baudrate=max(
            1200,
            parser.getint(
                "device", "baudrate", fallback=constants.DEFAULT_BAUDRATE
            ),
        ),
        write_timeout_seconds=max(
            0.1, parser.getfloat("device", "write_timeout_seconds", fallback=2.0)
        ),
        cache_dir=_optional_path(parser.get("device", "cache_dir", fallback="")),
        mass_storage_path=_optional_path(
            parser.get("device", "mass_storage_path", fallback="")
        ),
        mass_storage_search_roots=_parse_list(
            parser.get("device", "mass_storage_search_roots", fallback=""),
            default=[],
        ),
    )

    commands = CommandConfig(
        timeout_seconds=max(
            0.05, parser.getfloat("commands", "timeout_seconds", fallback=1.0)
        ),
        file_list_timeout_seconds=max(
            0.05,
            parser.getfloat("commands", "file_list_timeout_seconds", fallback=2.0),
        ),
        show_picture_timeout_seconds=max(
            0.05,
            parser.getfloat(
                "commands", "show_picture_timeout_seconds", fallback=1.0
            ),
        ),
        format_timeout_seconds=max(
            0.05, parser.getfloat("commands", "format_timeout_seconds", fallback=5.0)
        ),
        pattern_line_timeout_seconds=max(
            0.01,
            parser.getfloat(
                "commands", "pattern_line_timeout_seconds", fallback=0.1
            ),
        ),
    )

    transfer_defaults = TransferConfig()

    transfer = TransferConfig(
        chunk_size=max(
            512,
            parser.getint(
                "transfer", "chunk_size", fallback=transfer_defaults.chunk_size
            ),
        ),
        max_filename_length=max(
            1,
            parser.getint(
                "transfer",
                "max_filename_length",
                fallback=transfer_defaults.max_filename_length,
            ),
        ),
        eviction_attempts=max(
            1,
            parser.getint(
                "transfer",
                "eviction_attempts",
                fallback=transfer_defaults.eviction_attempts,
            ),
        ),
        announce_timeout_seconds=max(
            0.05,
            parser.getfloat(
                "transfer",
                "announce_timeout_seconds",
                fallback=transfer_defaults.announce_timeout_seconds,
            ),
        ),
        completion_timeout_seconds=max(
            0.05,
            parser.getfloat(
                "transfer",
                "completion_timeout_seconds",
                fallback=transfer_defaults.completion_timeout_seconds,
            ),
        ),
        download_header_timeout_seconds=max(
            0.05,
            parser.getfloat(
                "transfer",
                "download_header_timeout_seconds",
                fallback=transfer_defaults.download_header_timeout_seconds,
            ),
        ),
        download_poll_seconds=max(
            0.001,
            parser.getfloat(
                "transfer",
                "download_poll_seconds",
                fallback=transfer_defaults.download_poll_seconds,
            ),
        ),
    )

    liveness = LivenessConfig(
        interval_seconds=max(
            0.1, parser.getfloat("liveness", "interval_seconds", fallback=3.0)
        ),
        probe=parser.getboolean("liveness", "probe", fallback=True),
        max_failures=max(1, parser.getint("liveness", "max_failures", fallback=3)),
    )

    cloud = CloudConfig(
        base_url=parser.get(
            "cloud", "base_url", fallback=constants.DEFAULT_CLOUD_BASE_URL
        ).rstrip("/"),
        device_id=_optional(parser.get("cloud", "device_id", fallback="")),
        push_url=_optional(parser.get("cloud", "push_url", fallback="")),
        request_timeout_seconds=max(
            1.0, parser.getfloat("cloud", "request_timeout_seconds", fallback=30.0)
        ),
        poll_interval_seconds=max(
            0.01, parser.getfloat("cloud", "poll_interval_seconds", fallback=1.0)
        ),
        command_timeout_seconds=max(
            0.0, parser.getfloat("cloud", "command_timeout_seconds", fallback=30.0)
        ),
        reconnect_initial_seconds=max(
            0.1,
            parser.getfloat("cloud", "reconnect_initial_seconds", fallback=2.0),
        ),
        reconnect_max_seconds=max(
            0.1, parser.getfloat("cloud", "reconnect_max_seconds", fallback=30.0)
        ),
        origin=_optional(parser.get("cloud", "origin", fallback="")),
    )

    logging_config = LoggingConfig(
        level=parser.get("logging", "level", fallback="INFO"),
        path=_optional_path(parser.get("logging", "path", fallback="")),
        log_network=parser.getboolean("logging", "log_network", fallback=False),
    )

    return LinkConfig(
        device=device,
        commands=commands,
        transfer=transfer,
        liveness=liveness,
        cloud=cloud,
        logging=logging_config,
        raw=parser,
        path=config_path,
    )


def save_config(config: LinkConfig) -> None:
    """Persist the current configuration to disk."""

    config_path = config.path
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as stream:
        config.raw.write(stream)
