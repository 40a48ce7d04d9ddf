"""Command line entry point.

Connects to a game server, starts one game with external players and waits
for it to finish. The players are separate programs that join on their own.
"""

import argparse
import asyncio
import logging
import sys

from lobbyclient.errors import LobbyConnectionError
from lobbyclient.lobby import LobbyManager
from lobbyclient.participants import ExternalParticipant
from lobbyclient.protocol import GameResult, ServerEvent
from lobbyclient.settings import Settings, get_settings

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO") -> None:
    """Configure logging for the client."""
    formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    logging.getLogger("lobbyclient").setLevel(level)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def positive_int(value: str) -> int:
    """argparse type for counts that must be at least 1."""
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lobbyclient",
        description="Start a game on a game server and wait for its result.",
    )
    parser.add_argument("--host", help="Server host (default: LOBBY_HOST or localhost)")
    parser.add_argument("--port", type=int, help="Server port (default: LOBBY_PORT or 13050)")
    parser.add_argument("--players", type=positive_int, default=2, help="Number of external players")
    parser.add_argument("--prepared", action="store_true", help="Prepare the room with reservations")
    parser.add_argument("--paused", action="store_true", help="Create the prepared room paused")
    return parser


async def run(settings: Settings, players: int, prepared: bool, paused: bool) -> GameResult | None:
    """Start one game and wait for it to end.

    Returns:
        The game result, or None if the game could not be started
    """
    game_over: asyncio.Future[GameResult] = asyncio.get_running_loop().create_future()
    started: asyncio.Future[BaseException | None] = asyncio.get_running_loop().create_future()

    def on_game_started(error: BaseException | None) -> None:
        if not started.done():
            started.set_result(error)

    def on_game_over(room_id: str, result: GameResult) -> None:
        logger.info(f"Game in room {room_id} is over: {result.model_dump()}")
        if not game_over.done():
            game_over.set_result(result)

    def on_update(event: ServerEvent) -> None:
        logger.info(f"Room event: {event.type}")

    participants = [ExternalParticipant(f"Player {i + 1}") for i in range(players)]

    async with LobbyManager(settings=settings) as manager:
        room = await manager.start_new_game(
            participants,
            prepared=prepared,
            paused=paused,
            listener=on_update,
            on_game_started=on_game_started,
            on_game_over=on_game_over,
        )
        error = await started
        if error is not None:
            logger.error(str(error))
            return None
        logger.info(f"Game started in room {await room}")
        return await game_over


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {k: v for k, v in (("host", args.host), ("port", args.port)) if v is not None}
    settings = get_settings().model_copy(update=overrides)
    setup_logging(settings.log_level)

    try:
        result = asyncio.run(run(settings, args.players, args.prepared, args.paused))
    except LobbyConnectionError as e:
        logger.error(str(e))
        return 1
    except KeyboardInterrupt:
        return 130
    return 0 if result is not None else 2


if __name__ == "__main__":
    sys.exit(main())
