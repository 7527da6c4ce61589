"""Tests for the device facade."""

import asyncio

import pytest

from busytag_link.core.models import DeviceState, LedColor, PatternLine, UploadErrorType
from busytag_link.core.signals import Signal
from busytag_link.device import BusyTagDevice
from busytag_link.storage import DirectTransferStrategy, LegacyMassStorageStrategy


class _Recorder:
    def __init__(self, device: BusyTagDevice, *signals: Signal) -> None:
        self.received = []
        self._events = {signal: asyncio.Event() for signal in signals}
        for signal in signals:
            device.signals.subscribe(signal, self._listener(signal))

    def _listener(self, signal):
        def on_signal(payload):
            self.received.append((signal, payload))
            self._events[signal].set()

        return on_signal

    def of(self, signal):
        return [payload for name, payload in self.received if name is signal]

    async def wait(self, signal, timeout=1.0):
        await asyncio.wait_for(self._events[signal].wait(), timeout=timeout)


@pytest.mark.asyncio
async def test_connect_fetches_identity_and_files(scripted, device_replies, link_config):
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=link_config)
    recorder = _Recorder(
        device, Signal.CONNECTION_CHANGED, Signal.BASIC_INFO, Signal.FILE_LIST
    )

    assert await device.connect()

    session = device.session
    assert device.state is DeviceState.READY
    assert session.device_name == "busytag-A1B2C3"
    assert session.manufacturer == "BUSY TAG SIA"
    assert session.device_id == "A1B2C3D4"
    assert session.firmware_version == pytest.approx(2.1)
    assert session.current_image == "coffee.png"
    assert session.total_storage == 400_000
    assert session.free_storage == 100_000
    assert [entry.name for entry in session.files] == ["coffee.png", "logo.gif"]
    assert isinstance(device.storage, DirectTransferStrategy)
    assert "AT+UMSA=0" in transport.lines
    assert "AT+AASS=0" in transport.lines
    assert recorder.of(Signal.CONNECTION_CHANGED) == [True]
    assert recorder.of(Signal.BASIC_INFO) == [True]
    assert device.file_exists_on_device("logo.gif")
    assert device.get_file_info("logo.gif").size == 2048

    await device.aclose()


@pytest.mark.asyncio
async def test_solid_color_command_emits_led_color(scripted, device_replies, link_config):
    replies = device_replies()
    replies["AT+SC=127,FF0000"] = b"OK\r\n"
    transport = scripted(replies)
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()
    recorder = _Recorder(device, Signal.SOLID_COLOR)

    assert await device.send_rgb_color(255, 0, 0)

    assert transport.lines[-1] == "AT+SC=127,FF0000"
    assert recorder.of(Signal.SOLID_COLOR) == [LedColor(127, "FF0000")]
    assert device.session.solid_color == LedColor(127, "FF0000")
    await device.aclose()


@pytest.mark.asyncio
async def test_unknown_color_name_switches_leds_off(scripted, device_replies, link_config):
    replies = device_replies()
    replies["AT+SC=127,000000"] = b"OK\r\n"
    transport = scripted(replies)
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()

    assert await device.set_solid_color("ultraviolet")

    assert transport.lines[-1] == "AT+SC=127,000000"
    await device.aclose()


@pytest.mark.asyncio
async def test_rejected_command_returns_false(scripted, device_replies, link_config):
    replies = device_replies()
    replies["AT+DB=40"] = b"ERROR\r\n"
    device = BusyTagDevice(scripted(replies), config=link_config)
    assert await device.connect()

    assert await device.set_display_brightness(40) is False
    assert device.session.display_brightness is None
    await device.aclose()


@pytest.mark.asyncio
async def test_old_firmware_uses_mass_storage_volume(
    scripted, device_replies, link_config, tmp_path
):
    volume = tmp_path / "BUSYTAG"
    volume.mkdir()
    (volume / "readme.txt").write_text("Visit http://busytag-old.local for settings")
    (volume / "coffee.png").write_bytes(b"x" * 10)
    (volume / "logo.gif").write_bytes(b"y" * 20)
    link_config.device.mass_storage_path = volume

    transport = scripted(device_replies(firmware="1.9", name="busytag-old"))
    device = BusyTagDevice(transport, config=link_config)

    assert await device.connect()

    assert isinstance(device.storage, LegacyMassStorageStrategy)
    assert "AT+GFL" not in transport.lines
    assert "AT+UMSA=1" in transport.lines
    sizes = {entry.name: entry.size for entry in device.session.files}
    assert sizes["coffee.png"] == 10
    assert sizes["logo.gif"] == 20
    await device.aclose()


@pytest.mark.asyncio
async def test_failed_connect_returns_false(scripted, link_config):
    transport = scripted({"AT+GDN": b"ERROR\r\n"})
    device = BusyTagDevice(transport, config=link_config)
    recorder = _Recorder(device, Signal.CONNECTION_CHANGED)

    assert await device.connect() is False

    assert device.state is DeviceState.DISCONNECTED
    assert not transport.connected
    assert recorder.of(Signal.CONNECTION_CHANGED) == [True, False]
    await device.aclose()


@pytest.mark.asyncio
async def test_operations_are_skipped_when_not_ready(scripted, link_config):
    transport = scripted()
    device = BusyTagDevice(transport, config=link_config)

    assert await device.show_picture("coffee.png") is False
    assert await device.list_files() is None
    outcome = await device.send_file(b"data", "pic.png")

    assert outcome.error_type is UploadErrorType.CONNECTION_LOST
    assert transport.writes == []
    await device.aclose()


@pytest.mark.asyncio
async def test_transport_drop_disconnects_device(scripted, device_replies, link_config):
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()
    recorder = _Recorder(device, Signal.CONNECTION_CHANGED)

    transport.drop()
    await recorder.wait(Signal.CONNECTION_CHANGED)

    assert recorder.of(Signal.CONNECTION_CHANGED) == [False]
    assert device.state is DeviceState.DISCONNECTED
    await device.aclose()


@pytest.mark.asyncio
async def test_showing_picture_event_updates_current_image(
    scripted, device_replies, link_config
):
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()
    recorder = _Recorder(device, Signal.SHOWING_PICTURE, Signal.PATTERN_PLAYING)

    transport.deliver(b"+evn:SP,logo.gif\r\n+evn:PP,1\r\n")
    await recorder.wait(Signal.PATTERN_PLAYING)

    assert device.session.current_image == "logo.gif"
    assert recorder.of(Signal.SHOWING_PICTURE) == ["logo.gif"]
    assert device.session.pattern_playing is True
    await device.aclose()


@pytest.mark.asyncio
async def test_show_picture_accepts_event_as_confirmation(
    scripted, device_replies, link_config
):
    replies = device_replies()
    replies["AT+SP=logo.gif"] = b"+evn:SP,logo.gif\r\nOK\r\n"
    device = BusyTagDevice(scripted(replies), config=link_config)
    assert await device.connect()

    assert await device.show_picture("logo.gif")
    assert device.session.current_image == "logo.gif"
    await device.aclose()


@pytest.mark.asyncio
async def test_custom_pattern_is_streamed_after_prompt(
    scripted, device_replies, link_config
):
    pattern = [PatternLine(127, "FF0000", 5, 10), PatternLine(127, "000000", 5, 10)]
    replies = device_replies()
    replies["AT+CP=2"] = b">"
    replies["+CP:127,000000,5,10"] = b"OK\r\n"
    replies["AT+PP=1,255"] = b"OK\r\n"
    transport = scripted(replies)
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()
    recorder = _Recorder(device, Signal.PATTERN)

    assert await device.set_custom_pattern(pattern, play_after_sending=True, play_non_stop=True)

    assert transport.lines[-4:] == [
        "AT+CP=2",
        "+CP:127,FF0000,5,10",
        "+CP:127,000000,5,10",
        "AT+PP=1,255",
    ]
    assert recorder.of(Signal.PATTERN) == [pattern]
    assert device.session.pattern == pattern
    await device.aclose()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "first_reply, last_reply",
    [(b"OK\r\n", b"ERROR:bad line\r\n"), (b"ERROR:bad line\r\n", b"OK\r\n")],
)
async def test_rejected_pattern_line_fails_the_upload(
    scripted, device_replies, link_config, first_reply, last_reply
):
    pattern = [PatternLine(127, "FF0000", 5, 10), PatternLine(127, "000000", 5, 10)]
    replies = device_replies()
    replies["AT+CP=2"] = b">"
    replies["+CP:127,FF0000,5,10"] = first_reply
    replies["+CP:127,000000,5,10"] = last_reply
    transport = scripted(replies)
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()
    recorder = _Recorder(device, Signal.PATTERN)

    assert await device.set_custom_pattern(pattern, play_after_sending=True) is False

    assert device.session.pattern == []
    assert recorder.of(Signal.PATTERN) == []
    assert not any(line.startswith("AT+PP") for line in transport.lines)
    await device.aclose()


@pytest.mark.asyncio
async def test_concurrent_operations_are_serialised(scripted, device_replies, link_config):
    replies = device_replies()
    replies["AT+DB?"] = b"+DB:80\r\nOK\r\n"
    transport = scripted(replies)
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()

    name, brightness = await asyncio.gather(
        device.get_device_name(), device.get_display_brightness()
    )

    assert name == "busytag-A1B2C3"
    assert brightness == 80
    await device.aclose()


@pytest.mark.asyncio
async def test_upload_through_facade_refreshes_file_list(
    scripted, device_replies, link_config
):
    payload = b"p" * 3000
    received = 0

    def on_raw(data):
        nonlocal received
        received += len(data)
        return b"OK\r\n" if received >= len(payload) else None

    listing = b"+FL:coffee.png,1024\r\n+FL:logo.gif,2048\r\n+FL:new.png,3000\r\nOK\r\n"
    replies = device_replies()
    replies["AT+UF=new.png,3000"] = b">"
    transport = scripted(replies, raw_handler=on_raw)
    device = BusyTagDevice(transport, config=link_config)
    assert await device.connect()
    transport.responses["AT+GFL"] = listing
    recorder = _Recorder(device, Signal.UPLOAD_FINISHED, Signal.FILE_LIST)

    outcome = await device.send_file(payload, "new.png")

    assert outcome.success, outcome.message
    assert device.file_exists_on_device("new.png")
    assert recorder.of(Signal.UPLOAD_FINISHED) == [outcome]
    assert recorder.of(Signal.FILE_LIST)[-1][-1].name == "new.png"
    await device.aclose()


@pytest.fixture
def fast_liveness(link_config):
    link_config.liveness.interval_seconds = 0.05
    link_config.liveness.max_failures = 2
    link_config.commands.timeout_seconds = 0.05
    return link_config


@pytest.mark.asyncio
async def test_unanswered_liveness_pings_disconnect(scripted, device_replies, fast_liveness):
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=fast_liveness)
    assert await device.connect()
    recorder = _Recorder(device, Signal.CONNECTION_CHANGED)
    del transport.responses["AT"]

    await recorder.wait(Signal.CONNECTION_CHANGED, timeout=2.0)

    assert recorder.of(Signal.CONNECTION_CHANGED) == [False]
    assert device.state is DeviceState.DISCONNECTED
    assert transport.lines.count("AT") == 2
    await device.aclose()


@pytest.mark.asyncio
async def test_answered_liveness_ping_keeps_device_ready(
    scripted, device_replies, fast_liveness
):
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=fast_liveness)
    assert await device.connect()

    await asyncio.sleep(0.3)

    assert "AT" in transport.lines
    assert device.state is DeviceState.READY
    await device.aclose()


@pytest.mark.asyncio
async def test_no_liveness_ping_during_transfer(scripted, device_replies, fast_liveness):
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=fast_liveness)
    assert await device.connect()
    device.transfer._active = "big.png"
    sent_before = len(transport.lines)

    await asyncio.sleep(0.3)

    assert "AT" not in transport.lines[sent_before:]
    assert device.state is DeviceState.READY
    device.transfer._active = None
    await device.aclose()


@pytest.mark.asyncio
async def test_recent_traffic_skips_liveness_ping(scripted, device_replies, fast_liveness):
    fast_liveness.liveness.interval_seconds = 0.1
    transport = scripted(device_replies())
    device = BusyTagDevice(transport, config=fast_liveness)
    assert await device.connect()
    sent_before = len(transport.lines)

    for _ in range(20):
        transport.deliver(b"+evn:PP,0\r\n")
        await asyncio.sleep(0.02)

    assert "AT" not in transport.lines[sent_before:]
    assert device.state is DeviceState.READY
    await device.aclose()
