"""Lobby and session orchestration client for turn-based game servers.

This package opens a session to a game server, starts games (prepared with
reservations or by open matchmaking), places participants into the room and
routes server events back to the waiting application code.
"""

from lobbyclient.dispatcher import EventDispatcher
from lobbyclient.errors import (
    GameStartError,
    HandleClosedError,
    LobbyConnectionError,
    LobbyError,
    ProtocolError,
    StartInProgressError,
)
from lobbyclient.handle import GameHandle
from lobbyclient.lobby import LobbyManager
from lobbyclient.participants import (
    ExternalParticipant,
    HumanMoveSource,
    Participant,
    PlayerClient,
)
from lobbyclient.registry import WaiterRegistry
from lobbyclient.session import Session, SessionState

__all__ = [
    "EventDispatcher",
    "ExternalParticipant",
    "GameHandle",
    "GameStartError",
    "HandleClosedError",
    "HumanMoveSource",
    "LobbyConnectionError",
    "LobbyError",
    "LobbyManager",
    "Participant",
    "PlayerClient",
    "ProtocolError",
    "Session",
    "SessionState",
    "StartInProgressError",
    "WaiterRegistry",
]
