"""Tests for the busytag-link command line."""

from types import SimpleNamespace

import pytest

from busytag_link import cli
from busytag_link.adapters import PortInfo
from busytag_link.config import load_config


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args, **kwargs: None)


def test_parser_reads_global_and_command_options(tmp_path):
    parser = cli.build_parser()

    args = parser.parse_args(
        ["-c", str(tmp_path / "x.cfg"), "-p", "/dev/ttyACM0", "color", "red", "--brightness", "40"]
    )

    assert args.command == "color"
    assert args.port == "/dev/ttyACM0"
    assert args.brightness == 40
    assert args.led_bits == 127


def test_parser_requires_a_command():
    with pytest.raises(SystemExit):
        cli.build_parser().parse_args([])


@pytest.mark.parametrize(
    "value, expected",
    [("ff0000", "FF0000"), ("#00aa11", "00AA11"), ("red", None), ("12345", None)],
)
def test_parse_color(value, expected):
    assert cli.parse_color(value) == expected


def test_show_config_prints_sections(tmp_path, capsys):
    config_path = tmp_path / "busytag-link.cfg"
    config_path.write_text("[cloud]\ndevice_id = dev-1\n")

    assert cli.main(["-c", str(config_path), "show-config"]) == 0

    output = capsys.readouterr().out
    assert "[cloud]" in output
    assert "device_id = dev-1" in output
    assert "[device]" in output


def test_ports_lists_busytag_devices_first(tmp_path, monkeypatch, capsys):
    monkeypatch.setattr(
        cli,
        "list_candidates",
        lambda: [
            PortInfo("/dev/ttyACM1", "BusyTag", "USB VID:PID=303A:81DF", True),
            PortInfo("/dev/ttyS0", "ttyS0", "n/a", False),
        ],
    )

    assert cli.main(["-c", str(tmp_path / "x.cfg"), "ports"]) == 0

    lines = capsys.readouterr().out.splitlines()
    assert lines[0].startswith("* /dev/ttyACM1")
    assert lines[1].startswith("  /dev/ttyS0")


def test_set_cloud_saves_device_id(tmp_path):
    config_path = tmp_path / "busytag-link.cfg"

    exit_code = cli.main(
        ["-c", str(config_path), "set-cloud", "dev-42", "--base-url", "https://example.com"]
    )

    assert exit_code == 0
    config = load_config(config_path)
    assert config.cloud.device_id == "dev-42"
    assert config.cloud.base_url == "https://example.com"


def test_cloud_command_without_device_id_fails(tmp_path):
    assert cli.main(["-c", str(tmp_path / "x.cfg"), "cloud-status"]) == 1


def test_device_command_without_port_fails(tmp_path, monkeypatch):
    monkeypatch.setattr("busytag_link.adapters.serial.list_candidates", lambda: [])

    assert cli.main(["-c", str(tmp_path / "x.cfg"), "info"]) == 1


@pytest.mark.asyncio
async def test_color_command_uses_rgb_for_hex_values():
    calls = []

    class _Device:
        async def send_rgb_color(self, red, green, blue, led_bits):
            calls.append(("rgb", red, green, blue, led_bits))
            return True

        async def set_solid_color(self, name, brightness, led_bits):
            calls.append(("named", name, brightness, led_bits))
            return True

    device = _Device()
    await cli._color(device, SimpleNamespace(color="#00FF10", brightness=100, led_bits=15))
    await cli._color(device, SimpleNamespace(color="blue", brightness=50, led_bits=127))

    assert calls == [("rgb", 0, 255, 16, 15), ("named", "blue", 50, 127)]
