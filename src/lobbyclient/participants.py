"""Participants that can be placed into a room.

The lobby manager only ever calls the two join operations of a Participant.
Everything else (how a participant connects, how it decides on moves) is the
participant's own business.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from lobbyclient.protocol import (
    GameLeftEvent,
    GameOverEvent,
    GamePausedEvent,
    JoinAnyGameRequest,
    JoinPreparedGameRequest,
    MoveMessage,
    MoveRequestEvent,
    ServerEvent,
)
from lobbyclient.session import Session

logger = logging.getLogger(__name__)

Move = dict[str, Any]
MoveProvider = Callable[[dict[str, Any]], Awaitable[Move | None] | Move | None]


class Participant(ABC):
    """Anything that can join a room.

    Attributes:
        name: Display name, also used for the slot descriptor of prepared games
    """

    def __init__(self, name: str) -> None:
        self.name = name

    @abstractmethod
    async def join_any_game(self) -> None:
        """Join any open room (matchmaking)."""

    @abstractmethod
    async def join_prepared_game(self, reservation: str) -> None:
        """Join a prepared room using its reservation token.

        Args:
            reservation: Reservation token for this participant's slot
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class ExternalParticipant(Participant):
    """A player program started and connected outside this process.

    Joining is a no-op: the external program joins on its own and the lobby
    manager observes its join event like any other.
    """

    async def join_any_game(self) -> None:
        logger.info(f"Waiting for external player {self.name} to join")

    async def join_prepared_game(self, reservation: str) -> None:
        logger.info(f"External player {self.name} should join with reservation {reservation}")


class PlayerClient(Participant):
    """A player with its own connection that answers move requests.

    Moves come from ``move_provider(state)``, which may return a move directly
    or an awaitable of one. A None move skips the turn. When the awaitable is a
    future that gets cancelled (for example a human move wait cancelled on
    pause) nothing is sent.
    """

    def __init__(
        self,
        name: str,
        host: str,
        port: int,
        game_type: str,
        move_provider: MoveProvider,
    ) -> None:
        """Initialize the player.

        Args:
            name: Display name
            host: Server host
            port: Server port
            game_type: Game type used for matchmaking joins
            move_provider: Called with the game state on every move request
        """
        super().__init__(name)
        self.game_type = game_type
        self.move_provider = move_provider
        self.session = Session(host, port)
        self.room_id: str | None = None
        self._play_task: asyncio.Task[None] | None = None

    async def join_any_game(self) -> None:
        await self._connect()
        await self.session.send(JoinAnyGameRequest(game_type=self.game_type))
        logger.info(f"Player {self.name} requested to join any {self.game_type} game")

    async def join_prepared_game(self, reservation: str) -> None:
        await self._connect()
        await self.session.send(JoinPreparedGameRequest(reservation=reservation))
        logger.info(f"Player {self.name} requested to join prepared game")

    async def close(self) -> None:
        if self._play_task is not None and self._play_task is not asyncio.current_task():
            self._play_task.cancel()
            try:
                await self._play_task
            except asyncio.CancelledError:
                pass
        self._play_task = None
        await self.session.close()

    async def _connect(self) -> None:
        await self.session.connect()
        if self._play_task is None:
            self._play_task = asyncio.create_task(self._play())

    async def _play(self) -> None:
        async for event in self.session.events():
            if isinstance(event, MoveRequestEvent):
                self.room_id = event.room_id
                await self._answer(event)
            elif isinstance(event, GameOverEvent | GameLeftEvent):
                logger.info(f"Player {self.name}: {event.type} in room {event.room_id}")
                break
        await self.session.close()

    async def _answer(self, event: MoveRequestEvent) -> None:
        try:
            result = self.move_provider(event.state)
        except Exception:
            logger.exception(f"Player {self.name}: move provider failed, skipping")
            result = None

        if inspect.isawaitable(result):
            pending = asyncio.ensure_future(result)
            try:
                result = await pending
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if pending.cancelled() and not (current and current.cancelling()):
                    logger.info(f"Player {self.name}: move request cancelled")
                    return
                raise
            except Exception:
                logger.exception(f"Player {self.name}: move provider failed, skipping")
                result = None

        await self.session.send(MoveMessage(room_id=event.room_id, move=result))


class HumanMoveSource:
    """Bridges move requests to an interactive user.

    :meth:`request_move` returns a future the user completes with
    :meth:`submit`. At most one request is pending; a new request cancels the
    previous one. The pending request is cancelled when the game is paused.
    Once a request completes or is cancelled it is deregistered, so nothing
    leaks and every awaiter is released.
    """

    def __init__(self, on_request: Callable[[dict[str, Any]], Any] | None = None) -> None:
        """Initialize the source.

        Args:
            on_request: Optional hook called with the state whenever a move is requested
        """
        self.on_request = on_request
        self._pending: asyncio.Future[Move | None] | None = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def request_move(self, state: dict[str, Any]) -> "asyncio.Future[Move | None]":
        """Ask the user for a move in ``state``."""
        self.cancel_pending()
        future: asyncio.Future[Move | None] = asyncio.get_running_loop().create_future()
        future.add_done_callback(self._release)
        self._pending = future
        if self.on_request is not None:
            self.on_request(state)
        return future

    def submit(self, move: Move | None) -> bool:
        """Complete the pending request. None skips the turn.

        Returns:
            True if a request was pending
        """
        if self._pending is None or self._pending.done():
            return False
        self._pending.set_result(move)
        return True

    def cancel_pending(self) -> bool:
        """Cancel the pending request, if any.

        Returns:
            True if a request was cancelled
        """
        if self._pending is None or self._pending.done():
            return False
        future = self._pending
        self._pending = None
        future.cancel()
        logger.debug("Pending human move cancelled")
        return True

    def on_update(self, event: ServerEvent) -> None:
        """Room listener: cancels the pending request when the game is paused."""
        if isinstance(event, GamePausedEvent):
            self.cancel_pending()

    def _release(self, future: "asyncio.Future[Move | None]") -> None:
        if self._pending is future:
            self._pending = None
