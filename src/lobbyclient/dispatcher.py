"""Routing of inbound server events.

The dispatcher consumes the session's event stream and routes every event by
kind and room id: join events resolve waiters in the registry, game-over events
run the room's game-over handler, and everything else goes to the listeners of
the handle observing that room.

Callbacks never run inline on the dispatch loop. Each invocation is scheduled
as its own task, gated by a semaphore, and isolated: an exception raised by
one callback is logged and does not affect other callbacks or further dispatch.
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from lobbyclient.handle import GameHandle
from lobbyclient.protocol import (
    ErrorEvent,
    GameJoinedEvent,
    GameLeftEvent,
    GameObservedEvent,
    GameOverEvent,
    GamePausedEvent,
    GamePreparedEvent,
    MoveRequestEvent,
    NewStateEvent,
    RoomMessageEvent,
    ServerEvent,
)
from lobbyclient.registry import WaiterRegistry
from lobbyclient.session import Session

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Routes session events to the waiter registry and game handles."""

    def __init__(
        self,
        session: Session,
        registry: WaiterRegistry,
        max_workers: int = 4,
    ) -> None:
        """Initialize the dispatcher.

        Args:
            session: Session whose event stream is consumed
            registry: Registry resolving join waiters and game-over handlers
            max_workers: Maximum number of callback invocations running at once
        """
        self.session = session
        self.registry = registry
        self._handles: dict[str, GameHandle] = {}  # room_id -> handle
        self._workers = asyncio.Semaphore(max_workers)
        self._in_flight: set[asyncio.Task[None]] = set()
        self._run_task: asyncio.Task[None] | None = None

    def attach(self, handle: GameHandle) -> None:
        """Route events for ``handle.room_id`` to the handle's listeners."""
        previous = self._handles.get(handle.room_id)
        if previous is not None and previous is not handle:
            previous.close()
        self._handles[handle.room_id] = handle

    def detach(self, room_id: str) -> GameHandle | None:
        return self._handles.pop(room_id, None)

    def get_handle(self, room_id: str) -> GameHandle | None:
        return self._handles.get(room_id)

    def start(self) -> None:
        """Start consuming the session's events in the background."""
        if self._run_task is None or self._run_task.done():
            self._run_task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        """Stop consuming events and wait for in-flight callbacks."""
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            self._run_task = None
        await self.drain()

    async def run(self) -> None:
        """Dispatch events until the session's stream ends."""
        async for event in self.session.events():
            await self.dispatch(event)
        logger.info("Event stream ended")

    async def drain(self) -> None:
        """Wait until every scheduled callback invocation has finished.

        Callbacks scheduled while draining are waited for as well.
        """
        while self._in_flight:
            await asyncio.gather(*list(self._in_flight), return_exceptions=True)

    async def dispatch(self, event: ServerEvent) -> None:
        """Route a single event."""
        if isinstance(event, GameJoinedEvent):
            await self._on_game_joined(event)
        elif isinstance(event, GameOverEvent):
            await self._on_game_over(event)
        elif isinstance(event, GamePreparedEvent):
            logger.debug(f"lobby: game {event.room_id} was prepared")
        elif isinstance(event, ErrorEvent):
            logger.warning(f"lobby: error for {event.room_id or 'lobby'}: {event.message}")
            if event.room_id is not None:
                self._notify_listeners(event.room_id, event)
        elif isinstance(
            event,
            NewStateEvent
            | RoomMessageEvent
            | GameLeftEvent
            | GamePausedEvent
            | GameObservedEvent
            | MoveRequestEvent,
        ):
            logger.debug(f"lobby: {event.type} for {event.room_id}")
            self._notify_listeners(event.room_id, event)
        else:
            logger.info(f"lobby: ignoring unhandled event {type(event).__name__}")

    async def _on_game_joined(self, event: GameJoinedEvent) -> None:
        waiters = await self.registry.resolve_join(event.room_id)
        logger.debug(
            f"lobby: {event.room_id} game was joined "
            f"({self.registry.get_joins_in_room(event.room_id)} joins)"
        )
        for waiter in waiters:
            self.submit(waiter, event.room_id)
        self._notify_listeners(event.room_id, event)

    async def _on_game_over(self, event: GameOverEvent) -> None:
        logger.debug(f"lobby: {event.room_id} game is over")
        handler = await self.registry.pop_game_over_handler(event.room_id)
        if handler is not None:
            self.submit(handler, event.result)
        self._notify_listeners(event.room_id, event)

    def _notify_listeners(self, room_id: str, event: ServerEvent) -> None:
        handle = self._handles.get(room_id)
        if handle is None:
            return
        handle.apply_event(event)
        for listener in handle.listeners:
            self.submit(listener, event)

    def submit(self, callback: Callable[..., Any], *args: Any) -> asyncio.Task[None]:
        """Schedule ``callback(*args)`` on the bounded worker pool."""
        task = asyncio.create_task(self._invoke(callback, args))
        self._in_flight.add(task)
        task.add_done_callback(self._in_flight.discard)
        return task

    async def _invoke(self, callback: Callable[..., Any], args: tuple[Any, ...]) -> None:
        async with self._workers:
            try:
                result = callback(*args)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(f"Callback {callback!r} failed")
