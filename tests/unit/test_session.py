"""Tests for Session against a local TCP server."""

import asyncio
import socket

import pytest

from lobbyclient.errors import LobbyConnectionError
from lobbyclient.protocol import (
    ControlTimeoutRequest,
    GameJoinedEvent,
    NewStateEvent,
    SlotDescriptor,
)
from lobbyclient.session import PrepareFailure, PrepareSuccess, Session, SessionState


@pytest.fixture
async def session(server):
    """A session connected to the fake server."""
    client = Session("127.0.0.1", server.port)
    await client.connect()
    yield client
    await client.close()


def _unused_port() -> int:
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


async def _next_event(session: Session):
    return await asyncio.wait_for(anext(session.events()), timeout=2)


class TestConnect:
    """Tests for connecting."""

    @pytest.mark.asyncio
    async def test_connect_unreachable_raises(self):
        """An unreachable server is a fatal connection error."""
        client = Session("127.0.0.1", _unused_port())

        with pytest.raises(LobbyConnectionError):
            await client.connect()
        assert client.state == SessionState.FAILED

    @pytest.mark.asyncio
    async def test_connection_error_is_builtin_connection_error(self):
        client = Session("127.0.0.1", _unused_port())
        with pytest.raises(ConnectionError):
            await client.connect()

    @pytest.mark.asyncio
    async def test_connect_sets_state(self, session):
        assert session.state == SessionState.CONNECTED
        assert session.is_connected

    @pytest.mark.asyncio
    async def test_send_without_connection_raises(self):
        client = Session("127.0.0.1", _unused_port())
        with pytest.raises(LobbyConnectionError):
            await client.send(ControlTimeoutRequest(room_id="r", activate=True, slot=0))


class TestSend:
    """Tests for outbound requests."""

    @pytest.mark.asyncio
    async def test_authenticate_sends_password(self, session, server):
        await session.authenticate("secret")

        assert await server.next_message() == {"type": "authenticate", "password": "secret"}

    @pytest.mark.asyncio
    async def test_concurrent_sends_do_not_interleave(self, session, server):
        """Every concurrently sent request arrives as its own intact line."""
        await asyncio.gather(
            *(
                session.send(ControlTimeoutRequest(room_id="room-1", activate=False, slot=i))
                for i in range(20)
            )
        )

        slots = sorted([(await server.next_message())["slot"] for _ in range(20)])
        assert slots == list(range(20))


class TestEvents:
    """Tests for the inbound event stream."""

    @pytest.mark.asyncio
    async def test_events_arrive_in_order(self, session, server):
        await server.push({"type": "joined", "room_id": "room-1"})
        await server.push({"type": "new_state", "room_id": "room-1", "state": {"turn": 0}})

        events = session.events()
        first = await asyncio.wait_for(anext(events), timeout=2)
        second = await asyncio.wait_for(anext(events), timeout=2)

        assert first == GameJoinedEvent(room_id="room-1")
        assert second == NewStateEvent(room_id="room-1", state={"turn": 0})

    @pytest.mark.asyncio
    async def test_undecodable_lines_are_skipped(self, session, server):
        await server.push_raw(b"garbage\n")
        await server.push({"type": "welcome"})
        await server.push({"type": "joined", "room_id": "room-1"})

        assert await _next_event(session) == GameJoinedEvent(room_id="room-1")

    @pytest.mark.asyncio
    async def test_stream_ends_when_server_disconnects(self, session, server):
        await server.push({"type": "joined", "room_id": "room-1"})
        await server.disconnect_client()

        received = []

        async def collect():
            async for event in session.events():
                received.append(event)

        await asyncio.wait_for(collect(), timeout=2)

        assert received == [GameJoinedEvent(room_id="room-1")]
        assert session.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_stream_ends_once_per_connection(self, server):
        """After a disconnect and close, a reconnected session streams events again."""
        client = Session("127.0.0.1", server.port)
        await client.connect()
        await server.disconnect_client()

        async def consume():
            async for _ in client.events():
                pass

        await asyncio.wait_for(consume(), timeout=2)
        await client.close()

        server.connected.clear()
        await client.connect()
        await server.push({"type": "joined", "room_id": "room-2"})

        assert await _next_event(client) == GameJoinedEvent(room_id="room-2")
        await client.close()


class TestPrepareGame:
    """Tests for the PrepareGame request/response exchange."""

    @pytest.mark.asyncio
    async def test_prepare_success(self, session, server):
        async def respond():
            request = await server.next_message()
            assert request["type"] == "prepare"
            assert request["game_type"] == "test_game"
            assert len(request["slots"]) == 2
            await server.push(
                {
                    "type": "prepared",
                    "request_id": request["request_id"],
                    "room_id": "room-1",
                    "reservations": ["r1", "r2"],
                }
            )

        responder = asyncio.create_task(respond())
        result = await session.prepare_game(
            "test_game",
            [SlotDescriptor(display_name="One"), SlotDescriptor(display_name="Two")],
            paused=False,
            timeout=2,
        )
        await responder

        assert result == PrepareSuccess(room_id="room-1", reservations=["r1", "r2"])
        assert session._pending == {}

    @pytest.mark.asyncio
    async def test_prepare_error(self, session, server):
        async def respond():
            request = await server.next_message()
            await server.push(
                {"type": "error", "request_id": request["request_id"], "message": "bad slot"}
            )

        responder = asyncio.create_task(respond())
        result = await session.prepare_game("test_game", [], paused=True, timeout=2)
        await responder

        assert isinstance(result, PrepareFailure)
        assert result.error.message == "bad slot"

    @pytest.mark.asyncio
    async def test_prepare_ignores_other_requests_responses(self, session, server):
        async def respond():
            request = await server.next_message()
            await server.push(
                {"type": "prepared", "request_id": "someone-else", "room_id": "x", "reservations": []}
            )
            await server.push(
                {
                    "type": "prepared",
                    "request_id": request["request_id"],
                    "room_id": "room-2",
                    "reservations": ["a"],
                }
            )

        responder = asyncio.create_task(respond())
        result = await session.prepare_game(
            "test_game", [SlotDescriptor(display_name="One")], paused=False, timeout=2
        )
        await responder

        assert result == PrepareSuccess(room_id="room-2", reservations=["a"])

    @pytest.mark.asyncio
    async def test_prepare_times_out(self, session, server):
        """An unanswered PrepareGame fails with TimeoutError."""
        with pytest.raises(TimeoutError):
            await session.prepare_game("test_game", [], paused=False, timeout=0.05)

        assert session._pending == {}

    @pytest.mark.asyncio
    async def test_prepare_fails_when_connection_drops(self, session, server):
        async def drop():
            await server.next_message()
            await server.disconnect_client()

        dropper = asyncio.create_task(drop())
        with pytest.raises(LobbyConnectionError):
            await session.prepare_game("test_game", [], paused=False, timeout=2)
        await dropper


class TestClose:
    """Tests for closing."""

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, server):
        client = Session("127.0.0.1", server.port)
        await client.connect()

        await client.close()
        await client.close()

        assert client.state == SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_context_manager(self, server):
        async with Session("127.0.0.1", server.port) as client:
            assert client.is_connected
        assert not client.is_connected
