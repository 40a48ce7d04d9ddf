"""Connection to the game server.

The Session is the only component that touches the transport. It writes
requests as JSON lines, reads events on a background task and exposes them
as an async stream. PrepareGame is the one correlated request/response
exchange; its responses are matched by request id.
"""

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator
from dataclasses import dataclass
from enum import Enum

from pydantic import BaseModel

from lobbyclient.errors import LobbyConnectionError
from lobbyclient.protocol import (
    AuthenticateRequest,
    ErrorEvent,
    GamePreparedEvent,
    PrepareGameRequest,
    ServerEvent,
    SlotDescriptor,
    decode_line,
    encode_message,
    parse_server_message,
)

logger = logging.getLogger(__name__)

# Lines longer than this are treated as a broken stream
MAX_LINE_BYTES = 4 * 1024 * 1024


class SessionState(Enum):
    """Connection state of a Session."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class PrepareSuccess:
    """The server created a prepared room."""

    room_id: str
    reservations: list[str]


@dataclass
class PrepareFailure:
    """The server rejected a PrepareGame request."""

    error: ErrorEvent


PrepareResult = PrepareSuccess | PrepareFailure


class Session:
    """One connection to the game server.

    Attributes:
        host: Server host name
        port: Server port
        state: Current connection state
    """

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self.state = SessionState.DISCONNECTED
        self._reader: asyncio.StreamReader | None = None
        self._writer: asyncio.StreamWriter | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._events: asyncio.Queue[ServerEvent | None] = asyncio.Queue()
        self._stream_ended = False
        self._pending: dict[str, asyncio.Future[PrepareResult]] = {}
        self._send_lock = asyncio.Lock()

    async def __aenter__(self) -> "Session":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    async def connect(self) -> None:
        """Open the connection and start reading events.

        Raises:
            LobbyConnectionError: If the server is unreachable
        """
        if self.is_connected:
            return

        try:
            self._reader, self._writer = await asyncio.open_connection(
                self.host, self.port, limit=MAX_LINE_BYTES
            )
        except OSError as e:
            self.state = SessionState.FAILED
            logger.error(f"Could not connect to server {self.host}:{self.port}: {e}")
            raise LobbyConnectionError(
                f"Could not connect to server {self.host}:{self.port}: {e}"
            ) from e

        self.state = SessionState.CONNECTED
        self._events = asyncio.Queue()
        self._stream_ended = False
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"Connected to server {self.host}:{self.port}")

    async def authenticate(self, password: str) -> None:
        """Send credentials. Failures surface later as protocol errors."""
        await self.send(AuthenticateRequest(password=password))
        logger.debug("Sent authentication request")

    async def send(self, request: BaseModel) -> None:
        """Send a request without waiting for any answer.

        Concurrent callers are serialized so frames never interleave.

        Raises:
            LobbyConnectionError: If the session is not connected or the write fails
        """
        data = encode_message(request)
        async with self._send_lock:
            if self._writer is None or not self.is_connected:
                raise LobbyConnectionError("Session is not connected")
            try:
                self._writer.write(data)
                await self._writer.drain()
            except (ConnectionError, OSError) as e:
                self.state = SessionState.FAILED
                raise LobbyConnectionError(f"Failed to send request: {e}") from e
        logger.debug(f"Sent {request.type} request")  # type: ignore[attr-defined]

    async def prepare_game(
        self,
        game_type: str,
        slots: list[SlotDescriptor],
        paused: bool,
        timeout: float,
    ) -> PrepareResult:
        """Request a prepared room and wait for the server's answer.

        Args:
            game_type: Game type identifier
            slots: One descriptor per player slot
            paused: Whether the room starts paused
            timeout: Seconds to wait for the response

        Returns:
            PrepareSuccess or PrepareFailure

        Raises:
            TimeoutError: If no response arrives within ``timeout``
            LobbyConnectionError: If the connection fails before the response
        """
        request_id = uuid.uuid4().hex
        future: asyncio.Future[PrepareResult] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self.send(
                PrepareGameRequest(
                    request_id=request_id,
                    game_type=game_type,
                    slots=slots,
                    paused=paused,
                )
            )
            try:
                return await asyncio.wait_for(future, timeout)
            except TimeoutError:
                logger.warning(f"PrepareGame {request_id} timed out after {timeout}s")
                raise TimeoutError(f"No response to PrepareGame within {timeout}s") from None
        finally:
            self._pending.pop(request_id, None)

    async def events(self) -> AsyncIterator[ServerEvent]:
        """Yield inbound events in arrival order until the connection closes."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._reader_task is not None:
            self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError):
                pass
            self._writer = None

        if self.state == SessionState.CONNECTED:
            self.state = SessionState.DISCONNECTED
        self._fail_pending(LobbyConnectionError("Session closed"))
        self._end_stream()
        logger.info(f"Session to {self.host}:{self.port} closed")

    async def _read_loop(self) -> None:
        """Read event lines until EOF."""
        assert self._reader is not None
        try:
            while True:
                try:
                    line = await self._reader.readline()
                except (ConnectionError, OSError, ValueError) as e:
                    logger.warning(f"Connection to {self.host}:{self.port} failed: {e}")
                    self.state = SessionState.FAILED
                    break
                if not line:
                    logger.info(f"Server {self.host}:{self.port} closed the connection")
                    self.state = SessionState.DISCONNECTED
                    break
                if not line.strip():
                    continue

                data = decode_line(line)
                event = parse_server_message(data) if data is not None else None
                if event is None:
                    logger.warning(f"Ignoring undecodable message: {line[:200]!r}")
                    continue

                self._resolve_pending(event)
                self._events.put_nowait(event)
        finally:
            if not self.is_connected:
                self._fail_pending(LobbyConnectionError("Connection lost"))
                self._end_stream()

    def _end_stream(self) -> None:
        """Mark the end of this connection's event stream, once."""
        if not self._stream_ended:
            self._stream_ended = True
            self._events.put_nowait(None)

    def _resolve_pending(self, event: ServerEvent) -> None:
        """Complete the PrepareGame future this event answers, if any."""
        request_id = getattr(event, "request_id", None)
        if request_id is None:
            return
        future = self._pending.get(request_id)
        if future is None or future.done():
            return

        if isinstance(event, GamePreparedEvent):
            future.set_result(PrepareSuccess(room_id=event.room_id, reservations=event.reservations))
        elif isinstance(event, ErrorEvent):
            future.set_result(PrepareFailure(error=event))

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
