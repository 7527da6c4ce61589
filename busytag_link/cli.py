"""Command-line interface for busytag-link."""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from pathlib import Path
from typing import Awaitable, Callable, Optional

from . import constants
from .adapters import CloudQueueClient, PushChannel, SerialTransport, list_candidates
from .config import LinkConfig, load_config, save_config
from .core import PendingCompletionRegistry
from .core.patterns import get_pattern, pattern_names
from .device import BusyTagDevice
from .logging import configure_logging

LOGGER = logging.getLogger(__name__)

_HEX_COLOR = re.compile(r"^#?[0-9A-Fa-f]{6}$")

DeviceAction = Callable[[BusyTagDevice, argparse.Namespace], Awaitable[bool]]
CloudAction = Callable[[CloudQueueClient, argparse.Namespace], Awaitable[bool]]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="busytag-link", description="Control BusyTag devices over USB or the cloud"
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        default=constants.DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {constants.DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("-p", "--port", help="Serial port of the device")
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("ports", help="List serial ports, BusyTag devices first")
    subparsers.add_parser("info", help="Print device identity and storage")

    color_parser = subparsers.add_parser("color", help="Set the LED colour")
    color_parser.add_argument("color", help="Colour name or RRGGBB hex value")
    color_parser.add_argument("--brightness", type=int, default=100)
    color_parser.add_argument(
        "--led-bits", type=int, default=constants.DEFAULT_LED_BITS
    )

    brightness_parser = subparsers.add_parser(
        "brightness", help="Set the display brightness"
    )
    brightness_parser.add_argument("level", type=int, help="0..100")

    show_parser = subparsers.add_parser("show", help="Show a stored picture")
    show_parser.add_argument("file")

    pattern_parser = subparsers.add_parser("pattern", help="Play a built-in LED pattern")
    pattern_parser.add_argument("name", help=", ".join(pattern_names()))
    pattern_parser.add_argument(
        "--non-stop", action="store_true", help="Repeat the pattern indefinitely"
    )

    subparsers.add_parser("files", help="List files stored on the device")

    upload_parser = subparsers.add_parser("upload", help="Upload a file to the device")
    upload_parser.add_argument("path", type=Path)
    upload_parser.add_argument("--name", help="File name on the device")

    download_parser = subparsers.add_parser(
        "download", help="Download a file from the device"
    )
    download_parser.add_argument("name")
    download_parser.add_argument("-o", "--output", type=Path)

    delete_parser = subparsers.add_parser("delete", help="Delete a file on the device")
    delete_parser.add_argument("name")

    cloud_parser = subparsers.add_parser(
        "set-cloud", help="Store the cloud device id in the configuration file"
    )
    cloud_parser.add_argument("device_id")
    cloud_parser.add_argument("--base-url")

    subparsers.add_parser("cloud-status", help="Print the device status reported by the cloud")

    cloud_test_parser = subparsers.add_parser(
        "cloud-test", help="Round-trip a command through the cloud queue"
    )
    cloud_test_parser.add_argument("--timeout", type=float, default=45.0)

    cloud_color_parser = subparsers.add_parser(
        "cloud-color", help="Set the LED colour through the cloud"
    )
    cloud_color_parser.add_argument("color", help="RRGGBB hex value")
    cloud_color_parser.add_argument(
        "--led-bits", type=int, default=constants.DEFAULT_LED_BITS
    )
    cloud_color_parser.add_argument("--timeout", type=float, default=30.0)

    cloud_show_parser = subparsers.add_parser(
        "cloud-show", help="Show a picture through the cloud"
    )
    cloud_show_parser.add_argument("file")
    cloud_show_parser.add_argument("--timeout", type=float, default=30.0)

    subparsers.add_parser(
        "show-config", help="Print the resolved configuration and exit"
    )

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    configure_logging(
        "DEBUG" if args.verbose else config.logging.level,
        log_path=config.logging.path,
        log_network=config.logging.log_network,
    )

    if args.command == "show-config":
        print(f"Configuration loaded from {config.path!s}\n")
        for section in config.raw.sections():
            print(f"[{section}]")
            for key, value in config.raw[section].items():
                print(f"{key} = {value}")
            print()
        return 0

    if args.command == "ports":
        for info in list_candidates():
            marker = "*" if info.is_busytag else " "
            print(f"{marker} {info.device}\t{info.description}")
        return 0

    if args.command == "set-cloud":
        config.raw.set("cloud", "device_id", args.device_id)
        if args.base_url:
            config.raw.set("cloud", "base_url", args.base_url)
        save_config(config)
        print(f"Saved cloud settings to {config.path!s}")
        return 0

    device_action = _DEVICE_COMMANDS.get(args.command)
    if device_action is not None:
        return asyncio.run(_run_device(config, args, device_action))

    cloud_action = _CLOUD_COMMANDS.get(args.command)
    if cloud_action is not None:
        return asyncio.run(_run_cloud(config, args, cloud_action))

    LOGGER.error("Unknown command: %s", args.command)
    return 1


def parse_color(value: str) -> Optional[str]:
    """Return ``RRGGBB`` for a hex colour argument, or None for a colour name."""

    if _HEX_COLOR.match(value):
        return value.lstrip("#").upper()
    return None


async def _run_device(
    config: LinkConfig, args: argparse.Namespace, action: DeviceAction
) -> int:
    try:
        transport = SerialTransport.from_config(config.device, args.port)
    except OSError as exc:
        LOGGER.error("%s", exc)
        return 1

    device = BusyTagDevice(transport, config=config)
    if not await device.connect():
        await device.aclose()
        return 1
    try:
        ok = await action(device, args)
    finally:
        await device.aclose()
    return 0 if ok else 1


async def _run_cloud(
    config: LinkConfig, args: argparse.Namespace, action: CloudAction
) -> int:
    if not config.cloud.device_id:
        LOGGER.error("No cloud device id configured; run 'busytag-link set-cloud' first")
        return 1

    push: Optional[PushChannel] = None
    if config.cloud.push_url:
        push = PushChannel(
            config.cloud.push_url,
            registry=PendingCompletionRegistry(),
            reconnect_initial=config.cloud.reconnect_initial_seconds,
            reconnect_max=config.cloud.reconnect_max_seconds,
            origin=config.cloud.origin,
        )
        await push.subscribe_device(config.cloud.device_id)
        await push.start()
        await push.wait_connected(config.cloud.reconnect_initial_seconds)

    try:
        async with CloudQueueClient(config.cloud, push=push) as client:
            ok = await action(client, args)
    finally:
        if push is not None:
            await push.stop()
    return 0 if ok else 1


# ----------------------------------------------------------------------
# Device commands
# ----------------------------------------------------------------------
async def _info(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    session = device.session
    print(f"Name:          {session.device_name}")
    print(f"Manufacturer:  {session.manufacturer}")
    print(f"Device id:     {session.device_id}")
    print(f"Firmware:      {session.firmware_label}")
    print(f"Address:       {session.local_address}")
    print(f"Current image: {session.current_image}")
    print(f"Storage:       {session.free_storage} free of {session.total_storage}")
    if session.solid_color is not None:
        print(f"Colour:        {session.solid_color.color} (bits {session.solid_color.led_bits})")
    return True


async def _color(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    color = parse_color(args.color)
    if color is None:
        return await device.set_solid_color(args.color, args.brightness, args.led_bits)
    red, green, blue = (int(color[i : i + 2], 16) for i in (0, 2, 4))
    return await device.send_rgb_color(red, green, blue, args.led_bits)


async def _brightness(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    try:
        return await device.set_display_brightness(args.level)
    except ValueError as exc:
        LOGGER.error("%s", exc)
        return False


async def _show(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    return await device.show_picture(args.file)


async def _pattern(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    try:
        lines = get_pattern(args.name)
    except KeyError:
        LOGGER.error("Unknown pattern %r; choose from %s", args.name, ", ".join(pattern_names()))
        return False
    return await device.set_custom_pattern(
        lines, play_after_sending=True, play_non_stop=args.non_stop
    )


async def _files(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    files = await device.list_files()
    if files is None:
        return False
    for entry in files:
        print(f"{entry.size:>10}  {entry.name}")
    return True


async def _upload(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    outcome = await device.send_file(args.path, args.name)
    if not outcome.success:
        LOGGER.error(
            "Upload of %s failed (%s): %s",
            outcome.file_name,
            outcome.error_type.value,
            outcome.message or "-",
        )
    return outcome.success


async def _download(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    data = await device.get_file(args.name)
    if data is None:
        return False
    output = args.output or Path(args.name)
    await asyncio.to_thread(output.write_bytes, data)
    print(f"Saved {len(data)} bytes to {output}")
    return True


async def _delete(device: BusyTagDevice, args: argparse.Namespace) -> bool:
    return await device.delete_file(args.name)


_DEVICE_COMMANDS: dict[str, DeviceAction] = {
    "info": _info,
    "color": _color,
    "brightness": _brightness,
    "show": _show,
    "pattern": _pattern,
    "files": _files,
    "upload": _upload,
    "download": _download,
    "delete": _delete,
}


# ----------------------------------------------------------------------
# Cloud commands
# ----------------------------------------------------------------------
async def _cloud_status(client: CloudQueueClient, args: argparse.Namespace) -> bool:
    status = await client.get_device_status()
    if status is None:
        LOGGER.error("Cloud status unavailable")
        return False
    print(f"Online:       {status.online}")
    print(f"Device name:  {status.device_name or '-'}")
    print(f"Firmware:     {status.firmware_version or '-'}")
    print(f"Active image: {status.active_image_url or '-'}")
    if status.storage_total is not None:
        print(f"Storage:      {status.storage_free} free of {status.storage_total}")
    return True


async def _cloud_test(client: CloudQueueClient, args: argparse.Namespace) -> bool:
    result = await client.test_connection(timeout=args.timeout)
    print(result.message)
    if result.details:
        print(result.details)
    return result.success


async def _cloud_color(client: CloudQueueClient, args: argparse.Namespace) -> bool:
    color = parse_color(args.color)
    if color is None:
        LOGGER.error("Cloud colours must be RRGGBB hex values")
        return False
    outcome = await client.set_solid_color(color, args.led_bits, args.timeout)
    if not outcome.success:
        LOGGER.error("Cloud colour change failed: %s", outcome.error_message or outcome.status)
    return outcome.success


async def _cloud_show(client: CloudQueueClient, args: argparse.Namespace) -> bool:
    outcome = await client.show_picture(args.file, args.timeout)
    if not outcome.success:
        LOGGER.error("Cloud show failed: %s", outcome.error_message or outcome.status)
    return outcome.success


_CLOUD_COMMANDS: dict[str, CloudAction] = {
    "cloud-status": _cloud_status,
    "cloud-test": _cloud_test,
    "cloud-color": _cloud_color,
    "cloud-show": _cloud_show,
}


if __name__ == "__main__":
    sys.exit(main())
