from pathlib import Path

from busytag_link import constants
from busytag_link.config import LinkConfig, load_config, save_config


def test_load_config_defaults(tmp_path: Path) -> None:
    config_path = tmp_path / "busytag-link.cfg"
    config = load_config(config_path)

    assert config.path == config_path
    assert config.device.port is None
    assert config.device.baudrate == constants.DEFAULT_BAUDRATE
    assert config.device.cache_dir == constants.DEFAULT_CACHE_DIR
    assert config.device.mass_storage_search_roots == []
    assert config.commands.timeout_seconds == 1.0
    assert config.commands.format_timeout_seconds == 5.0
    assert config.transfer.chunk_size == constants.DEFAULT_CHUNK_SIZE
    assert config.transfer.max_filename_length == 40
    assert config.transfer.eviction_attempts == 20
    assert config.liveness.interval_seconds == 3.0
    assert config.liveness.probe is True
    assert config.cloud.base_url == constants.DEFAULT_CLOUD_BASE_URL
    assert config.cloud.device_id is None
    assert config.cloud.push_url is None
    assert config.logging.level == "INFO"


def test_load_config_overrides_defaults(tmp_path: Path) -> None:
    config_file = tmp_path / "busytag-link.cfg"
    config_file.write_text(
        """
[device]
port = /dev/ttyACM0
cache_dir =
mass_storage_search_roots = /media/me, /mnt

[commands]
timeout_seconds = 2.5

[liveness]
probe = false
max_failures = 5

[cloud]
base_url = https://example.com/
device_id = dev-123
push_url = https://example.com/ws

[logging]
level = DEBUG
log_network = true
"""
    )

    config = load_config(config_file)

    assert config.device.port == "/dev/ttyACM0"
    assert config.device.cache_dir is None
    assert config.device.mass_storage_search_roots == ["/media/me", "/mnt"]
    assert config.commands.timeout_seconds == 2.5
    assert config.liveness.probe is False
    assert config.liveness.max_failures == 5
    assert config.cloud.base_url == "https://example.com"
    assert config.cloud.device_id == "dev-123"
    assert config.cloud.push_url == "https://example.com/ws"
    assert config.logging.level == "DEBUG"
    assert config.logging.log_network is True


def test_load_config_clamps_out_of_range_values(tmp_path: Path) -> None:
    config_file = tmp_path / "busytag-link.cfg"
    config_file.write_text(
        """
[device]
baudrate = 9

[transfer]
chunk_size = 16
eviction_attempts = 0

[liveness]
interval_seconds = 0
max_failures = -2

[cloud]
poll_interval_seconds = 0
"""
    )

    config = load_config(config_file)

    assert config.device.baudrate == 1200
    assert config.transfer.chunk_size == 512
    assert config.transfer.eviction_attempts == 1
    assert config.liveness.interval_seconds == 0.1
    assert config.liveness.max_failures == 1
    assert config.cloud.poll_interval_seconds == 0.01


def test_save_config_round_trips_raw_sections(tmp_path: Path) -> None:
    config_file = tmp_path / "nested" / "busytag-link.cfg"
    config = load_config(config_file)
    config.raw.set("cloud", "device_id", "dev-9")

    save_config(config)

    assert load_config(config_file).cloud.device_id == "dev-9"


def test_defaults_ignore_files_on_disk() -> None:
    config = LinkConfig.defaults()

    assert config.raw.sections() == []
    assert config.cloud.origin == constants.DEFAULT_CLOUD_ORIGIN
