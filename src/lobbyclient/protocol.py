"""Lobby protocol message types.

Every message is a JSON object on its own line with a ``type`` discriminator.
Requests flow from client to server, events from server to client. Game states,
moves and results are opaque payloads; the client never interprets them.
"""

import json
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class ClientMessageType(Enum):
    """Types of requests sent from client to server."""

    AUTHENTICATE = "authenticate"
    PREPARE = "prepare"
    JOIN = "join"
    JOIN_PREPARED = "join_prepared"
    OBSERVE = "observe"
    CONTROL_TIMEOUT = "control_timeout"
    PAUSE = "pause"
    MOVE = "move"


class ServerMessageType(Enum):
    """Types of events pushed from server to client."""

    NEW_STATE = "new_state"
    ERROR = "error"
    ROOM_MESSAGE = "room_message"
    PREPARED = "prepared"
    LEFT = "left"
    JOINED = "joined"
    GAME_OVER = "game_over"
    PAUSED = "paused"
    OBSERVED = "observed"
    MOVE_REQUEST = "move_request"


# Client -> Server Requests


class AuthenticateRequest(BaseModel):
    """Authenticate as an administrative client."""

    type: str = "authenticate"
    password: str


class SlotDescriptor(BaseModel):
    """Describes one player slot of a prepared game."""

    display_name: str
    can_timeout: bool = True
    reserved: bool = True


class PrepareGameRequest(BaseModel):
    """Request creation of a room with fixed, reserved slots.

    The server answers with a ``prepared`` event carrying the same request_id,
    or an ``error`` event carrying it.
    """

    type: str = "prepare"
    request_id: str
    game_type: str
    slots: list[SlotDescriptor]
    paused: bool = True


class JoinAnyGameRequest(BaseModel):
    """Join any open room of the given game type, creating one if needed."""

    type: str = "join"
    game_type: str


class JoinPreparedGameRequest(BaseModel):
    """Join a prepared room using a reservation token."""

    type: str = "join_prepared"
    reservation: str


class ObserveGameRequest(BaseModel):
    """Start observing (and controlling) a room."""

    type: str = "observe"
    room_id: str


class ControlTimeoutRequest(BaseModel):
    """Enable or disable move timeout enforcement for one slot."""

    type: str = "control_timeout"
    room_id: str
    activate: bool
    slot: int


class PauseGameRequest(BaseModel):
    """Pause or resume a room."""

    type: str = "pause"
    room_id: str
    pause: bool


class MoveMessage(BaseModel):
    """A move sent by a player. ``move`` is None to skip."""

    type: str = "move"
    room_id: str
    move: dict[str, Any] | None = None


# Server -> Client Events


class NewStateEvent(BaseModel):
    """A room's game state changed."""

    type: str = "new_state"
    room_id: str
    state: dict[str, Any]


class ErrorEvent(BaseModel):
    """The server rejected a request.

    ``request_id`` is set when the error answers a correlated request such as
    PrepareGame; ``room_id`` is set when the error concerns a room.
    """

    type: str = "error"
    message: str
    room_id: str | None = None
    request_id: str | None = None


class RoomMessageEvent(BaseModel):
    """An arbitrary message forwarded from a room."""

    type: str = "room_message"
    room_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class GamePreparedEvent(BaseModel):
    """A prepared room was created. One reservation per requested slot, in order."""

    type: str = "prepared"
    room_id: str
    reservations: list[str]
    request_id: str | None = None


class GameLeftEvent(BaseModel):
    """This client left a room."""

    type: str = "left"
    room_id: str


class GameJoinedEvent(BaseModel):
    """A player joined a room."""

    type: str = "joined"
    room_id: str


class GameResult(BaseModel):
    """Outcome of a finished game. Unknown fields are kept."""

    model_config = ConfigDict(extra="allow")

    winner: str | None = None
    reason: str = ""
    scores: dict[str, int] = Field(default_factory=dict)


class GameOverEvent(BaseModel):
    """A room's game ended."""

    type: str = "game_over"
    room_id: str
    result: GameResult = Field(default_factory=GameResult)


class GamePausedEvent(BaseModel):
    """A room was paused; ``next_player`` is the player to move on resume."""

    type: str = "paused"
    room_id: str
    next_player: str | None = None


class GameObservedEvent(BaseModel):
    """This client is now observing a room."""

    type: str = "observed"
    room_id: str


class MoveRequestEvent(BaseModel):
    """The server asks a player for its next move."""

    type: str = "move_request"
    room_id: str
    state: dict[str, Any]


ClientRequest = (
    AuthenticateRequest
    | PrepareGameRequest
    | JoinAnyGameRequest
    | JoinPreparedGameRequest
    | ObserveGameRequest
    | ControlTimeoutRequest
    | PauseGameRequest
    | MoveMessage
)

ServerEvent = (
    NewStateEvent
    | ErrorEvent
    | RoomMessageEvent
    | GamePreparedEvent
    | GameLeftEvent
    | GameJoinedEvent
    | GameOverEvent
    | GamePausedEvent
    | GameObservedEvent
    | MoveRequestEvent
)

_SERVER_EVENT_MODELS: dict[str, type[BaseModel]] = {
    ServerMessageType.NEW_STATE.value: NewStateEvent,
    ServerMessageType.ERROR.value: ErrorEvent,
    ServerMessageType.ROOM_MESSAGE.value: RoomMessageEvent,
    ServerMessageType.PREPARED.value: GamePreparedEvent,
    ServerMessageType.LEFT.value: GameLeftEvent,
    ServerMessageType.JOINED.value: GameJoinedEvent,
    ServerMessageType.GAME_OVER.value: GameOverEvent,
    ServerMessageType.PAUSED.value: GamePausedEvent,
    ServerMessageType.OBSERVED.value: GameObservedEvent,
    ServerMessageType.MOVE_REQUEST.value: MoveRequestEvent,
}


def parse_server_message(data: dict[str, Any]) -> ServerEvent | None:
    """Parse a server event from JSON data.

    Args:
        data: Parsed JSON data

    Returns:
        Parsed event or None if the type is unknown or the payload is invalid
    """
    msg_type = data.get("type")
    if not isinstance(msg_type, str):
        return None

    model = _SERVER_EVENT_MODELS.get(msg_type)
    if model is None:
        return None

    try:
        return model.model_validate(data)  # type: ignore[return-value]
    except ValidationError:
        return None


def encode_message(message: BaseModel) -> bytes:
    """Encode a message as a single newline-terminated JSON line."""
    return (json.dumps(message.model_dump(mode="json")) + "\n").encode("utf-8")


def decode_line(line: bytes) -> dict[str, Any] | None:
    """Decode one JSON line into a dict, or None if it is not a JSON object."""
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(data, dict):
        return None
    return data
