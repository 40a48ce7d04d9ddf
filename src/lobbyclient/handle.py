"""Handle for one observed and controlled room.

A GameHandle is created when the lobby manager starts observing a room. It
collects state-update listeners, which the dispatcher notifies for every event
concerning the room, and translates control commands (pause/resume, timeout
toggling) into requests on the shared session.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from lobbyclient.errors import HandleClosedError
from lobbyclient.protocol import (
    ControlTimeoutRequest,
    GameOverEvent,
    GamePausedEvent,
    NewStateEvent,
    PauseGameRequest,
    ServerEvent,
)

if TYPE_CHECKING:
    from lobbyclient.session import Session

logger = logging.getLogger(__name__)

UpdateListener = Callable[[ServerEvent], Awaitable[Any] | Any]


class GameHandle:
    """Observes and controls a single room.

    Attributes:
        room_id: The observed room
        paused: Whether the room is paused. Set by pause events and cleared
            when the game moves on to a new state after resuming
        last_state: Most recent game state payload, or None before the first update
        game_over: Whether a game-over event has been seen
    """

    def __init__(self, room_id: str, session: "Session", paused: bool = False) -> None:
        """Initialize the handle.

        Args:
            room_id: The room to observe
            session: Shared session used for control requests
            paused: Whether the room was created paused
        """
        self.room_id = room_id
        self.session = session
        self.paused = paused
        self.last_state: dict[str, Any] | None = None
        self.game_over = False
        self._listeners: list[UpdateListener] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def listeners(self) -> tuple[UpdateListener, ...]:
        """Snapshot of the attached listeners."""
        return tuple(self._listeners)

    def add_listener(self, listener: UpdateListener) -> None:
        """Attach a listener called with every event for this room."""
        if self._closed:
            raise HandleClosedError(f"Handle for room {self.room_id} is closed")
        self._listeners.append(listener)

    def remove_listener(self, listener: UpdateListener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def apply_event(self, event: ServerEvent) -> None:
        """Update tracked room state from an event."""
        if isinstance(event, NewStateEvent):
            # The first state may be the snapshot of a room created paused
            if self.last_state is not None:
                self.paused = False
            self.last_state = event.state
        elif isinstance(event, GamePausedEvent):
            self.paused = True
        elif isinstance(event, GameOverEvent):
            self.game_over = True

    async def pause(self) -> None:
        await self.set_paused(True)

    async def resume(self) -> None:
        await self.set_paused(False)

    async def set_paused(self, paused: bool) -> None:
        """Pause or resume the room."""
        self._check_open()
        await self.session.send(PauseGameRequest(room_id=self.room_id, pause=paused))
        self.paused = paused
        logger.info(f"Room {self.room_id}: {'paused' if paused else 'resumed'}")

    async def set_timeout(self, slot: int, enabled: bool) -> None:
        """Enable or disable move timeout enforcement for a player slot.

        Args:
            slot: Zero-based slot index
            enabled: Whether the server should enforce move timeouts
        """
        self._check_open()
        await self.session.send(
            ControlTimeoutRequest(room_id=self.room_id, activate=enabled, slot=slot)
        )
        logger.debug(f"Room {self.room_id}: timeout for slot {slot} set to {enabled}")

    def close(self) -> None:
        """Detach all listeners. Further control commands raise HandleClosedError."""
        if self._closed:
            return
        self._closed = True
        self._listeners.clear()
        logger.info(f"Room {self.room_id}: handle closed")

    def _check_open(self) -> None:
        if self._closed:
            raise HandleClosedError(f"Handle for room {self.room_id} is closed")
