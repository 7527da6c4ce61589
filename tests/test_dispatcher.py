"""Tests for the single-flight command dispatcher."""

import asyncio

import pytest

from busytag_link.core.errors import (
    DeviceNotConnectedError,
    DispatcherBusyError,
    DispatchTimeoutError,
)
from busytag_link.core.models import ResponseState
from busytag_link.dispatcher import CommandDispatcher


async def _connected(transport):
    dispatcher = CommandDispatcher(transport)
    dispatcher.attach()
    await transport.connect()
    return dispatcher


@pytest.mark.asyncio
async def test_send_collects_structured_lines_until_ok(scripted):
    transport = scripted({"AT+GDN": [b"+DN:busy", b"tag-1\r\nO", b"K\r\n"]})
    dispatcher = await _connected(transport)

    response = await dispatcher.send("AT+GDN", timeout=1.0)

    assert response.state is ResponseState.COMPLETED
    assert response.success
    assert response.status == "completed"
    assert response.value("DN") == "busytag-1"
    assert transport.writes == [b"AT+GDN\r\n"]
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_error_reply_fails_the_command(scripted):
    transport = scripted({"AT+SP=missing.png": b"ERROR\r\n"})
    dispatcher = await _connected(transport)

    response = await dispatcher.send("AT+SP=missing.png", timeout=1.0)

    assert response.state is ResponseState.FAILED
    assert not response.success
    assert response.terminal == "ERROR"
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_timeout_reports_partial_output(scripted):
    transport = scripted({"AT+GFL": b"+FL:a.png,1\r\n"})
    dispatcher = await _connected(transport)

    with pytest.raises(DispatchTimeoutError) as excinfo:
        await dispatcher.send("AT+GFL", timeout=0.1)

    assert excinfo.value.partial == "+FL:a.png,1"
    assert not dispatcher.busy
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_second_command_is_rejected_while_first_is_pending(scripted):
    transport = scripted()
    dispatcher = await _connected(transport)

    first = asyncio.create_task(dispatcher.send("AT+GDN", timeout=1.0))
    await asyncio.sleep(0.01)

    with pytest.raises(DispatcherBusyError):
        await dispatcher.send("AT+GID", timeout=1.0)

    transport.deliver(b"+DN:busytag-1\r\nOK\r\n")
    response = await first

    assert response.value("DN") == "busytag-1"
    assert transport.lines == ["AT+GDN"]
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_event_mid_command_is_delivered_once_and_not_a_reply(scripted):
    transport = scripted(
        {"AT+GDN": [b"+DN:busytag-1\r\n", b"+evn:SP,pic.png\r\n", b"OK\r\n"]}
    )
    dispatcher = await _connected(transport)
    events = []
    dispatcher.subscribe(events.append)

    response = await dispatcher.send("AT+GDN", timeout=1.0)

    assert [(event.type, event.args) for event in events] == [("SP", ("pic.png",))]
    assert response.lines == ["+DN:busytag-1"]
    assert [event.type for event in response.events] == ["SP"]
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_events_are_delivered_without_a_pending_command(scripted):
    transport = scripted()
    dispatcher = await _connected(transport)
    received = asyncio.Event()
    events = []

    async def on_event(event):
        events.append(event)
        received.set()

    dispatcher.subscribe(on_event)
    transport.deliver(b"+DN:stale\r\n+evn:PP,1\r\n")
    await asyncio.wait_for(received.wait(), timeout=1.0)

    assert events[0].type == "PP"
    assert events[0].first_arg == "1"
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_prompt_is_terminal_only_when_expected(scripted):
    transport = scripted({"AT+CP=1": b">", "+CP:127,FF0000,5,10": b"OK\r\n"})
    dispatcher = await _connected(transport)

    async with dispatcher.session() as exchange:
        reply = await exchange.command("AT+CP=1", 1.0, expect_prompt=True)
        assert reply.prompted
        final = await exchange.command("+CP:127,FF0000,5,10", 1.0)

    assert final.success
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_without_first_token_wait_returns_on_any_input(scripted):
    transport = scripted({"AT+RST": b"rebooting"})
    dispatcher = await _connected(transport)

    response = await dispatcher.send("AT+RST", timeout=1.0, wait_for_first_token=False)

    assert response.state is ResponseState.PENDING
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_closed_transport_raises_and_notifies(scripted):
    transport = scripted()
    dispatcher = await _connected(transport)
    notified = []
    dispatcher.register_disconnect_handler(lambda: notified.append(True))
    await transport.disconnect()

    with pytest.raises(DeviceNotConnectedError):
        await dispatcher.send("AT", timeout=0.5)

    assert notified
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_transport_drop_wakes_pending_command(scripted):
    transport = scripted()
    dispatcher = await _connected(transport)
    notified = asyncio.Event()
    dispatcher.register_disconnect_handler(notified.set)

    pending = asyncio.create_task(dispatcher.send("AT+GDN", timeout=5.0))
    await asyncio.sleep(0.01)
    transport.drop()

    with pytest.raises(DeviceNotConnectedError):
        await asyncio.wait_for(pending, timeout=1.0)
    assert notified.is_set()
    await dispatcher.aclose()


@pytest.mark.asyncio
async def test_binary_mode_buffers_raw_bytes(scripted):
    transport = scripted({"AT+GF=a.bin": [b"+GF:a.bin,6\r\n\r\nabc", b"def"]})
    dispatcher = await _connected(transport)

    async with dispatcher.session() as exchange:
        exchange.begin_binary()
        await exchange.write_line("AT+GF=a.bin")
        data = b""
        for _ in range(50):
            data += await exchange.read_binary(0.05)
            if data.endswith(b"def"):
                break
        exchange.end_binary()

    assert data == b"+GF:a.bin,6\r\n\r\nabcdef"
    await dispatcher.aclose()
