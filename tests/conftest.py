"""Pytest configuration and fixtures."""

import os

# Keep a developer's .env or environment from leaking into tests
os.environ["LOBBY_PASSWORD"] = "test-secret"
os.environ["LOBBY_GAME_TYPE"] = "test_game"
os.environ["LOBBY_PREPARE_TIMEOUT"] = "1.0"

# Clear the settings cache to pick up the new environment variables
from lobbyclient.settings import get_settings

get_settings.cache_clear()

import asyncio  # noqa: E402
import json  # noqa: E402
from collections.abc import AsyncIterator  # noqa: E402
from typing import Any  # noqa: E402

import pytest  # noqa: E402
from pydantic import BaseModel  # noqa: E402

from lobbyclient.errors import LobbyConnectionError  # noqa: E402
from lobbyclient.lobby import LobbyManager  # noqa: E402
from lobbyclient.participants import Participant  # noqa: E402
from lobbyclient.protocol import ServerEvent, SlotDescriptor  # noqa: E402
from lobbyclient.session import PrepareResult, SessionState  # noqa: E402
from lobbyclient.settings import Settings  # noqa: E402


class FakeSession:
    """In-memory stand-in for Session.

    Every sent request and every prepare call is appended to ``log`` so tests
    can assert on the interleaving with participant joins.
    """

    def __init__(self, log: list[tuple[Any, ...]]) -> None:
        self.host = "fake"
        self.port = 0
        self.state = SessionState.DISCONNECTED
        self.log = log
        self.sent: list[BaseModel] = []
        self.password: str | None = None
        self.prepare_result: PrepareResult | None = None
        self.prepare_exception: BaseException | None = None
        self.prepare_calls: list[dict[str, Any]] = []
        self.fail_sends = False
        self._events: asyncio.Queue[ServerEvent | None] = asyncio.Queue()

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    async def connect(self) -> None:
        self.state = SessionState.CONNECTED

    async def authenticate(self, password: str) -> None:
        self.password = password

    async def send(self, request: BaseModel) -> None:
        if self.fail_sends:
            raise LobbyConnectionError("Session is not connected")
        self.sent.append(request)
        self.log.append(("send", request))

    async def prepare_game(
        self,
        game_type: str,
        slots: list[SlotDescriptor],
        paused: bool,
        timeout: float,
    ) -> PrepareResult:
        self.prepare_calls.append(
            {"game_type": game_type, "slots": slots, "paused": paused, "timeout": timeout}
        )
        self.log.append(("prepare", game_type, paused))
        if self.prepare_exception is not None:
            raise self.prepare_exception
        assert self.prepare_result is not None
        return self.prepare_result

    def push(self, event: ServerEvent) -> None:
        self._events.put_nowait(event)

    async def events(self) -> AsyncIterator[ServerEvent]:
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        self.state = SessionState.DISCONNECTED
        self._events.put_nowait(None)


class RecordingParticipant(Participant):
    """Participant that records its join calls in a shared log."""

    def __init__(self, name: str, log: list[tuple[Any, ...]], fail: bool = False) -> None:
        super().__init__(name)
        self.log = log
        self.fail = fail

    async def join_any_game(self) -> None:
        self.log.append(("join_any", self.name))
        if self.fail:
            raise RuntimeError(f"{self.name} could not connect")

    async def join_prepared_game(self, reservation: str) -> None:
        self.log.append(("join_prepared", self.name, reservation))
        if self.fail:
            raise RuntimeError(f"{self.name} could not connect")


@pytest.fixture
def log() -> list[tuple[Any, ...]]:
    """Shared call log."""
    return []


@pytest.fixture
def settings() -> Settings:
    """Settings used by lobby manager tests."""
    return Settings(
        host="fake",
        port=0,
        password="test-secret",
        game_type="test_game",
        prepare_timeout=1.0,
        callback_workers=4,
    )


@pytest.fixture
def fake_session(log: list[tuple[Any, ...]]) -> FakeSession:
    """Create a fake session writing into the shared log."""
    return FakeSession(log)


@pytest.fixture
def manager(fake_session: FakeSession, settings: Settings) -> LobbyManager:
    """Create a lobby manager on top of the fake session."""
    return LobbyManager(session=fake_session, settings=settings)  # type: ignore[arg-type]


@pytest.fixture
def make_participants(log: list[tuple[Any, ...]]):
    """Factory for recording participants named p0, p1, ..."""

    def make(count: int, failing: set[int] | None = None) -> list[RecordingParticipant]:
        failing = failing or set()
        return [RecordingParticipant(f"p{i}", log, fail=i in failing) for i in range(count)]

    return make


class FakeServer:
    """Line-based test server accepting a single client."""

    def __init__(self) -> None:
        self.received: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self.connected = asyncio.Event()
        self.writer: asyncio.StreamWriter | None = None
        self.server: asyncio.Server | None = None
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.writer = writer
        self.connected.set()
        while line := await reader.readline():
            await self.received.put(json.loads(line))

    async def push_raw(self, data: bytes) -> None:
        await self.connected.wait()
        assert self.writer is not None
        self.writer.write(data)
        await self.writer.drain()

    async def push(self, message: dict[str, Any]) -> None:
        await self.push_raw((json.dumps(message) + "\n").encode())

    async def next_message(self) -> dict[str, Any]:
        return await asyncio.wait_for(self.received.get(), timeout=2)

    async def disconnect_client(self) -> None:
        await self.connected.wait()
        assert self.writer is not None
        self.writer.close()

    async def stop(self) -> None:
        if self.writer is not None:
            self.writer.close()
        assert self.server is not None
        self.server.close()
        await self.server.wait_closed()


@pytest.fixture
async def server():
    """Run a fake server for one test."""
    fake = FakeServer()
    await fake.start()
    yield fake
    await fake.stop()

