"""Exceptions raised by the lobby client."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lobbyclient.protocol import ErrorEvent


class LobbyError(Exception):
    """Base class for lobby client errors."""


class LobbyConnectionError(LobbyError, ConnectionError):
    """The connection to the game server could not be established or was lost."""


class ProtocolError(LobbyError):
    """A request was rejected by the server.

    Attributes:
        error: The error event reported by the server, if any
    """

    def __init__(self, message: str, error: "ErrorEvent | None" = None) -> None:
        super().__init__(message)
        self.error = error


class GameStartError(ProtocolError):
    """Starting a game failed.

    Wraps either the server's error payload or the exception that aborted the start.
    """

    def __init__(
        self,
        error: "ErrorEvent | None" = None,
        cause: BaseException | None = None,
    ) -> None:
        if error is not None:
            reason = error.message
        elif cause is not None:
            reason = str(cause) or type(cause).__name__
        else:
            reason = "unknown error"
        super().__init__(f"Failed to start game: {reason}", error)
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause


class StartInProgressError(LobbyError):
    """A game start was requested while a previous start is still running."""


class StartCancelledError(LobbyError):
    """A game start was aborted before it completed."""


class HandleClosedError(LobbyError):
    """A control command was issued on a closed game handle."""
