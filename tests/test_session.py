"""Tests for HeosSession command correlation and event delivery (session.py)."""

import asyncio
import json

import pytest

from heos_connect import (
    ConnectionClosedError,
    DeviceError,
    HeosChannel,
    HeosDiscovery,
    HeosSession,
    ProtocolError,
    discover_and_connect,
)

REGISTER_FOR_EVENTS = "heos://system/register_for_change_events?enable=on"


async def wait_until(predicate, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


def json_response(command_key, message="", result="success", payload=None):
    envelope = {"heos": {"command": command_key, "result": result, "message": message}}
    if payload is not None:
        envelope["payload"] = payload
    return json.dumps(envelope)


@pytest.fixture
async def session(command_server, event_server):
    session = await HeosSession.connect(
        "127.0.0.1",
        command_port=command_server.port,
        event_port=event_server.port,
    )
    assert await event_server.receive() == REGISTER_FOR_EVENTS
    yield session
    await session.close()


async def issue(server, session, group, name, params=None):
    """Sends a command from a background task and waits until the device has received it."""
    task = asyncio.ensure_future(session.send_command(group, name, params))
    line = await server.receive()
    return task, line


class TestConnect:
    async def test_registers_for_events(self, session):
        assert not session.is_closed
        assert session.command_channel is not None
        assert session.event_channel is not None

    async def test_without_event_registration(self, command_server, event_server):
        session = await HeosSession.connect(
            "127.0.0.1",
            command_port=command_server.port,
            event_port=event_server.port,
            register_for_events=False,
        )
        try:
            with pytest.raises(asyncio.TimeoutError):
                await event_server.receive(timeout=0.1)
        finally:
            await session.close()

    async def test_connection_refused(self, command_server):
        port = command_server.port
        await command_server.stop()
        with pytest.raises(OSError):
            await HeosSession.connect("127.0.0.1", command_port=port)

    async def test_event_channel_refused(self, command_server, event_server):
        event_port = event_server.port
        await event_server.stop()
        with pytest.raises(OSError):
            await HeosSession.connect("127.0.0.1", command_port=command_server.port, event_port=event_port)

    async def test_command_channel_drop_while_event_channel_connects(self, monkeypatch, command_server, event_server):
        open_channel = HeosChannel.open

        async def delayed_event_open(host, port, *args, **kwargs):
            if port == event_server.port:
                await command_server.connected.wait()
                command_server.drop_clients()
                await asyncio.sleep(0.2)
            return await open_channel(host, port, *args, **kwargs)

        monkeypatch.setattr(HeosChannel, "open", delayed_event_open)
        with pytest.raises(ConnectionClosedError):
            await asyncio.wait_for(
                HeosSession.connect("127.0.0.1", command_port=command_server.port, event_port=event_server.port),
                3.0,
            )
        # The event connection opened after teardown must not be left behind
        await wait_until(lambda: len(event_server.writers) == 1 and event_server.writers[0].is_closing())

    async def test_context_manager(self, command_server, event_server):
        async with await HeosSession.connect(
            "127.0.0.1", command_port=command_server.port, event_port=event_server.port
        ) as session:
            assert not session.is_closed
        assert session.is_closed

    async def test_discover_and_connect(self, ssdp_responder, command_server, event_server):
        discovery = HeosDiscovery(multicast_address="127.0.0.1", multicast_port=ssdp_responder.port)
        session = await discover_and_connect(
            discovery,
            timeout_ms=2000,
            command_port=command_server.port,
            event_port=event_server.port,
        )
        try:
            assert session.host == "127.0.0.1"
            assert await event_server.receive() == REGISTER_FOR_EVENTS
        finally:
            await session.close()


class TestCommands:
    async def test_bare_response(self, session, command_server):
        task, line = await issue(command_server, session, "player", "get_play_state", {"pid": 1})
        assert line == "heos://player/get_play_state?pid=1"
        command_server.send("heos://player/get_play_state?pid=1&state=play")
        response = await asyncio.wait_for(task, 2.0)
        assert dict(response) == {"pid": 1, "state": "play"}
        assert response.command_key == "player/get_play_state"

    async def test_json_response_with_payload(self, session, command_server):
        task, line = await issue(command_server, session, "player", "get_players")
        assert line == "heos://player/get_players"
        players = [{"name": "Kitchen", "pid": 1}, {"name": "Den", "pid": 2}]
        command_server.send(json_response("player/get_players", payload=players))
        response = await asyncio.wait_for(task, 2.0)
        assert response.result == "success"
        assert response.payload == players

    async def test_same_key_responses_match_in_send_order(self, session, command_server):
        first, _ = await issue(command_server, session, "player", "get_volume", {"pid": 1})
        second, _ = await issue(command_server, session, "player", "get_volume", {"pid": 2})
        command_server.send(json_response("player/get_volume", "pid=1&level=10"))
        command_server.send(json_response("player/get_volume", "pid=2&level=20"))
        assert (await asyncio.wait_for(first, 2.0))["level"] == 10
        assert (await asyncio.wait_for(second, 2.0))["level"] == 20

    async def test_other_keys_do_not_disturb_order(self, session, command_server):
        volume_1, _ = await issue(command_server, session, "player", "get_volume", {"pid": 1})
        players, _ = await issue(command_server, session, "player", "get_players")
        volume_2, _ = await issue(command_server, session, "player", "get_volume", {"pid": 2})
        command_server.send(json_response("player/get_players", payload=[]))
        command_server.send(json_response("player/get_volume", "pid=1&level=10"))
        command_server.send(json_response("player/get_volume", "pid=2&level=20"))
        assert (await asyncio.wait_for(players, 2.0)).payload == []
        assert (await asyncio.wait_for(volume_1, 2.0))["pid"] == 1
        assert (await asyncio.wait_for(volume_2, 2.0))["pid"] == 2
        assert session.pending_commands == {}

    async def test_device_error(self, session, command_server):
        task, _ = await issue(command_server, session, "player", "get_play_state", {"pid": 99})
        command_server.send(json_response("player/get_play_state", "eid=2&text=ID Not Valid&pid=99", result="fail"))
        with pytest.raises(DeviceError) as exc_info:
            await asyncio.wait_for(task, 2.0)
        assert exc_info.value.eid == 2
        assert exc_info.value.text == "ID Not Valid"
        assert exc_info.value.command_key == "player/get_play_state"

        # The session remains usable after a failed command
        task, _ = await issue(command_server, session, "system", "heart_beat")
        command_server.send(json_response("system/heart_beat"))
        assert (await asyncio.wait_for(task, 2.0)).result == "success"

    async def test_under_process_response_is_not_final(self, session, command_server):
        task, _ = await issue(command_server, session, "browse", "browse", {"sid": 1025})
        command_server.send(json_response("browse/browse", "command under process&sid=1025"))
        await asyncio.sleep(0.05)
        assert not task.done()
        command_server.send(json_response("browse/browse", "sid=1025&returned=1&count=1", payload=[{"name": "x"}]))
        response = await asyncio.wait_for(task, 2.0)
        assert response["count"] == 1
        assert session.protocol_error_count == 0

    async def test_cancelled_caller_keeps_fifo_alignment(self, session, command_server):
        first, _ = await issue(command_server, session, "player", "get_volume", {"pid": 1})
        second, _ = await issue(command_server, session, "player", "get_volume", {"pid": 2})
        first.cancel()
        await asyncio.sleep(0)
        command_server.send(json_response("player/get_volume", "pid=1&level=10"))
        command_server.send(json_response("player/get_volume", "pid=2&level=20"))
        assert (await asyncio.wait_for(second, 2.0))["level"] == 20
        assert first.cancelled()
        assert session.protocol_error_count == 0


class TestProtocolErrors:
    async def test_unmatched_response_is_reported(self, command_server, event_server):
        errors = []
        session = await HeosSession.connect(
            "127.0.0.1",
            command_port=command_server.port,
            event_port=event_server.port,
            on_protocol_error=errors.append,
        )
        try:
            task, _ = await issue(command_server, session, "player", "get_players")
            command_server.send(json_response("player/get_volume", "pid=1&level=10"))
            command_server.send("not a heos message")
            command_server.send(json_response("player/get_players", payload=[]))
            assert (await asyncio.wait_for(task, 2.0)).payload == []
            assert session.protocol_error_count == 2
            assert len(errors) == 2
            assert all(isinstance(error, ProtocolError) for error in errors)
            assert not session.is_closed
        finally:
            await session.close()

    async def test_no_reports_after_close(self, command_server, event_server):
        errors = []
        session = await HeosSession.connect(
            "127.0.0.1",
            command_port=command_server.port,
            event_port=event_server.port,
            on_protocol_error=errors.append,
        )
        await session.close()
        session._on_command_message(json_response("player/get_volume", "pid=1&level=10"))
        session._on_command_message("not a heos message")
        assert session.protocol_error_count == 0
        assert errors == []

    async def test_failing_error_handler_is_isolated(self, command_server, event_server):
        def explode(error):
            raise RuntimeError("handler failure")

        session = await HeosSession.connect(
            "127.0.0.1",
            command_port=command_server.port,
            event_port=event_server.port,
            on_protocol_error=explode,
        )
        try:
            await command_server.connected.wait()
            command_server.send(json_response("player/get_volume"))
            await wait_until(lambda: session.protocol_error_count == 1)
            assert not session.is_closed
        finally:
            await session.close()


class TestEvents:
    async def test_handlers_called_in_order_despite_exceptions(self, session, event_server):
        calls = []

        def first(event):
            calls.append(("first", event.event_type))
            raise RuntimeError("handler failure")

        def second(event):
            calls.append(("second", event.event_type))

        session.add_event_handler(first)
        session.add_event_handler(second)
        event_server.send("heos://event/player_state_changed?pid=1&state=pause")
        await wait_until(lambda: len(calls) == 2)
        assert calls == [("first", "player_state_changed"), ("second", "player_state_changed")]
        assert not session.is_closed

    async def test_json_event(self, session, event_server):
        events = []
        session.add_event_handler(events.append)
        event_server.send(json.dumps({"heos": {"command": "event/player_volume_changed", "message": "pid=1&level=30&mute=off"}}))
        await wait_until(lambda: len(events) == 1)
        assert events[0].event_type == "player_volume_changed"
        assert dict(events[0]) == {"pid": 1, "level": 30, "mute": "off"}

    async def test_events_arrive_in_order(self, session, event_server):
        events = []
        session.add_event_handler(events.append)
        for i in range(10):
            event_server.send(f"heos://event/player_now_playing_progress?pid=1&cur_pos={i}")
        await wait_until(lambda: len(events) == 10)
        assert [event["cur_pos"] for event in events] == list(range(10))

    async def test_remove_event_handler(self, session, event_server):
        events = []
        handler_id = session.add_event_handler(events.append)
        session.remove_event_handler(handler_id)
        marker = []
        session.add_event_handler(marker.append)
        event_server.send("heos://event/players_changed")
        await wait_until(lambda: len(marker) == 1)
        assert events == []

    async def test_non_events_on_event_channel_are_ignored(self, session, event_server):
        events = []
        session.add_event_handler(events.append)
        event_server.send(json_response("system/register_for_change_events", "enable=on"))
        event_server.send("heos://event/groups_changed")
        await wait_until(lambda: len(events) == 1)
        assert events[0].event_type == "groups_changed"


class TestClose:
    async def test_close_fails_pending_commands(self, session, command_server):
        order = []
        first, _ = await issue(command_server, session, "player", "get_volume", {"pid": 1})
        second, _ = await issue(command_server, session, "player", "get_players")
        first.add_done_callback(lambda _: order.append("first"))
        second.add_done_callback(lambda _: order.append("second"))
        await session.close()
        with pytest.raises(ConnectionClosedError):
            await first
        with pytest.raises(ConnectionClosedError):
            await second
        assert order == ["first", "second"]
        assert session.is_closed
        assert session.pending_commands == {}

    async def test_send_after_close(self, session):
        await session.close()
        with pytest.raises(ConnectionClosedError):
            await session.send_command("system", "heart_beat")

    async def test_close_is_idempotent(self, session):
        await session.close()
        await session.close()
        await session.wait_closed()
        assert session.is_closed

    async def test_device_drop_fails_pending_commands(self, session, command_server):
        task, _ = await issue(command_server, session, "player", "get_players")
        command_server.drop_clients()
        with pytest.raises(ConnectionClosedError):
            await asyncio.wait_for(task, 2.0)
        await asyncio.wait_for(session.wait_closed(), 2.0)
        assert session.is_closed

    async def test_event_channel_drop_closes_session(self, session, event_server):
        event_server.drop_clients()
        await asyncio.wait_for(session.wait_closed(), 2.0)
        with pytest.raises(ConnectionClosedError):
            await session.send_command("system", "heart_beat")

    async def test_no_events_after_close(self, session, event_server):
        events = []
        session.add_event_handler(events.append)
        await session.close()
        session._on_event_message("heos://event/players_changed")
        assert events == []
