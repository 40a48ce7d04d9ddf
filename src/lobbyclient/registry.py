"""Registry of one-shot join waiters, join counters and game-over handlers.

The registry is shared between the dispatch path (resolving waiters as join
events arrive) and orchestration code (registering new waiters). All state is
guarded by a single lock so a waiter is never lost and never fires twice.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from lobbyclient.protocol import GameResult

logger = logging.getLogger(__name__)

JoinCallback = Callable[[str], Awaitable[Any] | Any]
GameOverHandler = Callable[[GameResult], Awaitable[Any] | Any]


class WaiterRegistry:
    """Holds pending join waiters keyed by room id or wildcard.

    A waiter registered with :meth:`register_any` is resolved by the next join
    event in any room. A waiter registered with :meth:`register_for_room` is
    resolved by the next join event in that room. Either kind fires at most
    once and is removed before it is returned for invocation.
    """

    def __init__(self) -> None:
        self._any_waiters: list[JoinCallback] = []
        self._room_waiters: dict[str, list[JoinCallback]] = {}  # room_id -> waiters
        self._joins: dict[str, int] = {}  # room_id -> join events seen
        self._game_over_handlers: dict[str, GameOverHandler] = {}
        self._lock = asyncio.Lock()

    async def register_any(self, callback: JoinCallback) -> None:
        """Call ``callback(room_id)`` once, on the next join event in any room."""
        async with self._lock:
            self._any_waiters.append(callback)

    async def register_for_room(self, room_id: str, callback: JoinCallback) -> None:
        """Call ``callback(room_id)`` once, on the next join event in ``room_id``."""
        async with self._lock:
            self._room_waiters.setdefault(room_id, []).append(callback)

    async def register_until_joins(
        self, room_id: str, count: int, callback: JoinCallback
    ) -> bool:
        """Wait for ``room_id`` to have seen at least ``count`` join events.

        If the room has already seen ``count`` joins nothing is
        registered and False is returned, so the caller proceeds right away.
        Otherwise ``callback`` is registered for the next join in the room and
        True is returned. The check and the registration happen under the same
        lock, so a join event can never slip in between them.

        Args:
            room_id: The room to watch
            count: Number of joins the caller needs to have been seen
            callback: Called with the room id on the next join event
        """
        async with self._lock:
            if self._joins.get(room_id, 0) >= count:
                return False
            self._room_waiters.setdefault(room_id, []).append(callback)
            return True

    async def cancel(self, callback: JoinCallback, room_id: str | None = None) -> bool:
        """Deregister a waiter that has not fired yet.

        Args:
            callback: The registered callback
            room_id: Room the waiter was registered for, or None for a wildcard waiter

        Returns:
            True if the waiter was pending and has been removed
        """
        async with self._lock:
            if room_id is None:
                waiters = self._any_waiters
            else:
                waiters = self._room_waiters.get(room_id, [])
            try:
                waiters.remove(callback)
            except ValueError:
                return False
            if room_id is not None and not waiters:
                self._room_waiters.pop(room_id, None)
            return True

    async def resolve_join(self, room_id: str) -> list[JoinCallback]:
        """Record a join event and take the waiters it resolves.

        The room's join counter is incremented. The returned list holds the
        waiters registered for ``room_id`` followed by every pending wildcard
        waiter, each in registration order. Both sets are cleared before
        returning, so the caller owns the only reference to them.
        """
        async with self._lock:
            self._joins[room_id] = self._joins.get(room_id, 0) + 1
            resolved = self._room_waiters.pop(room_id, [])
            resolved.extend(self._any_waiters)
            self._any_waiters = []
            logger.debug(f"Room {room_id} joined ({self._joins[room_id]} joins, {len(resolved)} waiters)")
            return resolved

    def get_joins_in_room(self, room_id: str | None = None) -> int:
        """Return the number of join events seen in ``room_id``, or in all rooms if None."""
        if room_id is None:
            return sum(self._joins.values())
        return self._joins.get(room_id, 0)

    def pending_waiters(self, room_id: str | None = None) -> int:
        """Return the number of pending waiters for ``room_id`` (None = wildcard)."""
        if room_id is None:
            return len(self._any_waiters)
        return len(self._room_waiters.get(room_id, []))

    async def set_game_over_handler(self, room_id: str, handler: GameOverHandler) -> None:
        """Install the game-over handler for ``room_id``, replacing any previous one."""
        async with self._lock:
            if room_id in self._game_over_handlers:
                logger.warning(f"Replacing game over handler for room {room_id}")
            self._game_over_handlers[room_id] = handler

    async def remove_game_over_handler(self, room_id: str) -> None:
        async with self._lock:
            self._game_over_handlers.pop(room_id, None)

    async def pop_game_over_handler(self, room_id: str) -> GameOverHandler | None:
        """Take the game-over handler for ``room_id`` so it runs at most once."""
        async with self._lock:
            return self._game_over_handlers.pop(room_id, None)
