"""Lobby manager: starts games on the server and fills them with participants.

Two start protocols are supported:

- Prepared start: the server creates a room with one reserved slot per
  participant and hands back a reservation token per slot. The room is
  observed first, then every participant joins with its own token.
- Open join: participants use matchmaking. The first join event in any room
  reveals the room id; the room is observed, move timeouts are disabled for
  every slot so slow (human) players are not timed out while others are still
  joining, and the remaining participants join strictly one after another,
  each only after the previous one's join event was seen.

Both return a future resolving to the room id as soon as it is known. Start
completion (or failure) is reported once through ``on_game_started``. A start
that does not complete within ``Settings.start_timeout`` is abandoned, and
:meth:`LobbyManager.cancel_start` aborts one explicitly.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from lobbyclient.dispatcher import EventDispatcher
from lobbyclient.errors import GameStartError, StartCancelledError, StartInProgressError
from lobbyclient.handle import GameHandle, UpdateListener
from lobbyclient.participants import Participant
from lobbyclient.protocol import (
    ControlTimeoutRequest,
    GameResult,
    ObserveGameRequest,
    SlotDescriptor,
)
from lobbyclient.registry import JoinCallback, WaiterRegistry
from lobbyclient.session import PrepareFailure, Session
from lobbyclient.settings import Settings, get_settings

logger = logging.getLogger(__name__)

GameStartedCallback = Callable[[BaseException | None], Awaitable[Any] | Any]
GameOverCallback = Callable[[str, GameResult], Awaitable[Any] | Any]


class StartAttempt:
    """State of one game start, from the request until it is reported.

    Attributes:
        result: Future resolving to the room id once the room is known
        done: Whether the outcome has been reported
        waiters: Join waiters armed for this start, as (callback, room_id) pairs
            with room_id None for the wildcard waiter
    """

    def __init__(
        self,
        result: "asyncio.Future[str]",
        on_game_started: GameStartedCallback | None,
    ) -> None:
        self.result = result
        self.on_game_started = on_game_started
        self.done = False
        self.waiters: set[tuple[JoinCallback, str | None]] = set()
        self.watchdog: asyncio.Task[None] | None = None


class LobbyManager:
    """Owns the administrative session and orchestrates game starts.

    This class is responsible for:
    - Connecting and authenticating the shared session
    - Running the event dispatcher
    - Starting games with either start protocol
    - Tracking the handle of the currently observed game

    Only one start may run at a time. Starting a new game after the previous
    start completed tears down the previous game's handle (listeners and
    game-over handler) before the new one is installed.
    """

    def __init__(
        self,
        session: Session | None = None,
        settings: Settings | None = None,
    ) -> None:
        """Initialize the lobby manager.

        Args:
            session: Session to use; one is created from settings if omitted
            settings: Client settings; defaults to the cached environment settings
        """
        self.settings = settings or get_settings()
        self.session = session or Session(self.settings.host, self.settings.port)
        self.registry = WaiterRegistry()
        self.dispatcher = EventDispatcher(
            self.session,
            self.registry,
            max_workers=self.settings.callback_workers,
        )
        self.game: GameHandle | None = None
        self._attempt: StartAttempt | None = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        """Connect, authenticate and start dispatching events.

        Raises:
            LobbyConnectionError: If the server is unreachable
        """
        await self.session.connect()
        await self.session.authenticate(self.settings.password)
        self.dispatcher.start()
        logger.info(f"Lobby manager connected to {self.settings.address}")

    async def close(self) -> None:
        """Abort a pending start, then tear down the game, dispatcher and session."""
        await self.cancel_start()
        await self._teardown_game()
        await self.dispatcher.stop()
        await self.session.close()

    async def __aenter__(self) -> "LobbyManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def is_starting(self) -> bool:
        """Whether a game start is still in progress."""
        return self._attempt is not None

    def get_joins_in_room(self, room_id: str | None = None) -> int:
        """Number of join events seen in ``room_id``, or in all rooms if None."""
        return self.registry.get_joins_in_room(room_id)

    async def start_new_game(
        self,
        participants: Iterable[Participant],
        prepared: bool,
        paused: bool = False,
        listener: UpdateListener | None = None,
        on_game_started: GameStartedCallback | None = None,
        on_game_over: GameOverCallback | None = None,
    ) -> "asyncio.Future[str]":
        """Start a new game.

        Args:
            participants: Participants to place into the room, in slot order
            prepared: Use the prepared-start protocol instead of open join
            paused: Whether a prepared room starts paused
            listener: Listener attached to the room's handle
            on_game_started: Called once with None on success or a GameStartError
            on_game_over: Called with (room_id, result) when the game ends

        Returns:
            Future resolving to the room id once it is known. It stays pending
            when the start fails before a room exists.

        Raises:
            StartInProgressError: If a previous start has not completed
            LobbyConnectionError: If the session fails while starting
        """
        async with self._lock:
            if self._attempt is not None:
                raise StartInProgressError("A game start is already in progress")
            attempt = StartAttempt(asyncio.get_running_loop().create_future(), on_game_started)
            self._attempt = attempt
            await self._teardown_game()

        participants = list(participants)
        logger.debug(
            f"Starting new game (prepared: {prepared}, paused: {paused}, "
            f"players: {participants})"
        )
        if self.settings.start_timeout is not None:
            attempt.watchdog = asyncio.create_task(
                self._expire(attempt, self.settings.start_timeout)
            )

        try:
            if prepared:
                await self._start_prepared(participants, paused, listener, on_game_over, attempt)
            else:
                await self._start_open(participants, paused, listener, on_game_over, attempt)
        except BaseException:
            self._release(attempt)
            raise
        return attempt.result

    async def cancel_start(self) -> bool:
        """Abort the game start in progress, if any.

        Pending join waiters of the start are deregistered and
        ``on_game_started`` receives a GameStartError caused by
        StartCancelledError. A game that is already observed stays observed.

        Returns:
            True if a start was in progress and has been aborted
        """
        attempt = self._attempt
        if attempt is None:
            return False
        return await self._abort(
            attempt, GameStartError(cause=StartCancelledError("Game start was cancelled"))
        )

    async def _start_prepared(
        self,
        participants: list[Participant],
        paused: bool,
        listener: UpdateListener | None,
        on_game_over: GameOverCallback | None,
        attempt: StartAttempt,
    ) -> None:
        slots = [SlotDescriptor(display_name=p.name, can_timeout=False) for p in participants]
        try:
            outcome = await self.session.prepare_game(
                self.settings.game_type,
                slots,
                paused,
                timeout=self.settings.prepare_timeout,
            )
        except TimeoutError as e:
            self._finish(attempt, GameStartError(cause=e))
            return

        if attempt.done:
            return

        if isinstance(outcome, PrepareFailure):
            logger.warning(f"Server rejected game preparation: {outcome.error.message}")
            self._finish(attempt, GameStartError(error=outcome.error))
            return

        if len(outcome.reservations) != len(participants):
            self._finish(
                attempt,
                GameStartError(
                    cause=ValueError(
                        f"Expected {len(participants)} reservations, "
                        f"got {len(outcome.reservations)}"
                    )
                ),
            )
            return

        await self._observe(outcome.room_id, paused, listener, on_game_over, attempt.result)
        for participant, reservation in zip(participants, outcome.reservations, strict=True):
            if attempt.done:
                return
            try:
                await participant.join_prepared_game(reservation)
            except Exception as e:
                logger.error(f"Participant {participant.name} failed to join room {outcome.room_id}: {e}")
                self._finish(attempt, GameStartError(cause=e))
                return
        self._finish(attempt, None)

    async def _start_open(
        self,
        participants: list[Participant],
        paused: bool,
        listener: UpdateListener | None,
        on_game_over: GameOverCallback | None,
        attempt: StartAttempt,
    ) -> None:
        if not participants:
            self._finish(attempt, None)
            return

        released = 0  # participants told to join so far

        async def release_next() -> bool:
            nonlocal released
            participant = participants[released]
            released += 1
            try:
                await participant.join_any_game()
            except Exception as e:
                logger.error(f"Participant {participant.name} failed to join: {e}")
                await self._abort(attempt, GameStartError(cause=e))
                return False
            return True

        async def advance(room_id: str) -> None:
            # Progress follows the room's join counter, so joins that arrived
            # while this chain was busy are never waited for a second time
            while not attempt.done:
                if await self.registry.register_until_joins(room_id, released, advance):
                    attempt.waiters.add((advance, room_id))
                    return
                if released == len(participants):
                    self._finish(attempt, None)
                    return
                if not await release_next():
                    return

        async def on_first_join(room_id: str) -> None:
            if attempt.done:
                return
            logger.debug(f"LobbyManager started room {room_id}")
            try:
                await self._observe(room_id, paused, listener, on_game_over, attempt.result)
                for slot in range(len(participants)):
                    await self.session.send(
                        ControlTimeoutRequest(room_id=room_id, activate=False, slot=slot)
                    )
            except Exception as e:
                logger.error(f"Failed to take control of room {room_id}: {e}")
                await self._abort(attempt, GameStartError(cause=e))
                return
            await advance(room_id)

        await self.registry.register_any(on_first_join)
        attempt.waiters.add((on_first_join, None))
        await release_next()

    async def _observe(
        self,
        room_id: str,
        paused: bool,
        listener: UpdateListener | None,
        on_game_over: GameOverCallback | None,
        result: "asyncio.Future[str]",
    ) -> GameHandle:
        """Begin observing ``room_id`` and make it the current game."""
        if not result.done():
            result.set_result(room_id)

        if on_game_over is not None:

            def handle_game_over(game_result: GameResult) -> Awaitable[Any] | Any:
                return on_game_over(room_id, game_result)

            await self.registry.set_game_over_handler(room_id, handle_game_over)

        handle = GameHandle(room_id, self.session, paused=paused)
        if listener is not None:
            handle.add_listener(listener)
        self.dispatcher.attach(handle)
        self.game = handle
        await self.session.send(ObserveGameRequest(room_id=room_id))
        logger.info(f"Observing room {room_id}")
        return handle

    async def _teardown_game(self) -> None:
        """Detach the current game's handle and game-over handler."""
        game = self.game
        if game is None:
            return
        self.game = None
        self.dispatcher.detach(game.room_id)
        await self.registry.remove_game_over_handler(game.room_id)
        game.close()
        logger.info(f"Stopped observing room {game.room_id}")

    async def _expire(self, attempt: StartAttempt, timeout: float) -> None:
        """Abandon ``attempt`` if it has not completed after ``timeout`` seconds."""
        await asyncio.sleep(timeout)
        await self._abort(
            attempt,
            GameStartError(cause=TimeoutError(f"Game start did not complete within {timeout} seconds")),
        )

    async def _abort(self, attempt: StartAttempt, error: GameStartError) -> bool:
        """Report ``error`` for ``attempt`` and deregister its pending waiters."""
        if not self._finish(attempt, error):
            return False
        for callback, room_id in list(attempt.waiters):
            await self.registry.cancel(callback, room_id)
        return True

    def _release(self, attempt: StartAttempt) -> bool:
        """Mark ``attempt`` as over so another start may begin."""
        if attempt.done:
            return False
        attempt.done = True
        if self._attempt is attempt:
            self._attempt = None
        watchdog = attempt.watchdog
        if watchdog is not None and watchdog is not asyncio.current_task():
            watchdog.cancel()
        return True

    def _finish(self, attempt: StartAttempt, error: BaseException | None) -> bool:
        """Report the outcome of ``attempt`` once; later calls are ignored."""
        if not self._release(attempt):
            return False
        if error is None:
            logger.info("Game started")
        else:
            logger.warning(f"Game start failed: {error}")
        if attempt.on_game_started is not None:
            self.dispatcher.submit(attempt.on_game_started, error)
        return True
