from __future__ import annotations

import time
from datetime import datetime
from typing import Annotated, Any, Dict, Iterable, List, Literal, Type, TypeVar, Union

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from .errors import FrameError, ValidationError
from rtchat.utils.canonical import dumps_text, loads


Identity = Union[int, str]

# integer ids must fit a signed 64-bit SQLite INTEGER
ID_MIN = -(2**63)
ID_MAX = 2**63 - 1

ONLINE = "online"
OFFLINE = "offline"

# outbound event types
EV_MESSAGE = "message"
EV_USER_STATUS = "userStatus"
EV_MESSAGE_DELETED = "messageDeleted"
EV_HISTORY = "history"
EV_ONLINE_USERS = "onlineUsers"
EV_ERROR = "error"

# inbound event types
EV_SEND_MESSAGE = "sendMessage"
EV_DELETE_MESSAGE = "deleteMessage"
EV_GET_HISTORY = "getHistory"
EV_LIST_ONLINE = "listOnline"
EV_HEARTBEAT = "heartbeat"

ERROR_CODES = {
    "AUTH_FAILED",
    "VALIDATION",
    "BAD_FRAME",
    "STORAGE",
    "NOT_FOUND",
    "FORBIDDEN",
    "UNKNOWN_TYPE",
    "INTERNAL",
}


def now_ms() -> int:
    """Milliseconds since the Unix epoch."""

    return int(time.time() * 1000)


def is_identity(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return ID_MIN <= value <= ID_MAX
    return isinstance(value, str) and bool(value.strip())


def _check_identity(value: Identity) -> Identity:
    if not is_identity(value):
        raise ValueError("invalid user id")
    return value


UserId = Annotated[Identity, AfterValidator(_check_identity)]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class Message(BaseModel):
    """A stored direct message. Immutable once created."""

    id: int
    sender_id: Identity = Field(alias="senderId")
    receiver_id: Identity = Field(alias="receiverId")
    content: str
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class StatusEvent(BaseModel):
    user_id: Identity = Field(alias="userId")
    status: Literal["online", "offline"]

    model_config = ConfigDict(populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Inbound frames
# ---------------------------------------------------------------------------

class Frame(BaseModel):
    """JSON frame carried over the websocket in both directions."""

    type: str
    ts: int = Field(default_factory=now_ms)
    payload: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("type")
    @classmethod
    def _type_non_empty(cls, value: str) -> str:
        if not value:
            raise ValueError("type must be non-empty")
        return value

    @field_validator("ts")
    @classmethod
    def _ts_non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("timestamp must be non-negative")
        return value


class SendMessage(BaseModel):
    receiver_id: UserId = Field(alias="receiverId")
    content: str

    model_config = ConfigDict(populate_by_name=True)


class DeleteMessage(BaseModel):
    id: int = Field(ge=ID_MIN, le=ID_MAX)


class HistoryRequest(BaseModel):
    user_id: UserId = Field(alias="userId")

    model_config = ConfigDict(populate_by_name=True)


M = TypeVar("M", bound=BaseModel)


def _first_error(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    where = ".".join(str(p) for p in err.get("loc", ())) or "payload"
    return f"{where}: {err.get('msg', 'invalid')}"


def decode_frame(raw: Union[str, bytes]) -> Frame:
    """Parse an inbound websocket message; raises FrameError on any structural issue."""

    try:
        data = loads(raw)
    except ValueError as exc:
        raise FrameError(f"invalid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise FrameError("frame must be a JSON object")
    try:
        return Frame(**data)
    except PydanticValidationError as exc:
        raise FrameError(_first_error(exc)) from exc


def parse_payload(model: Type[M], payload: Dict[str, Any]) -> M:
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        raise ValidationError(_first_error(exc)) from exc


# ---------------------------------------------------------------------------
# Outbound frames
# ---------------------------------------------------------------------------

def build_frame(type: str, payload: Dict[str, Any], *, ts: int | None = None) -> Dict[str, Any]:
    return {"type": type, "ts": now_ms() if ts is None else ts, "payload": payload}


def encode_frame(frame: Dict[str, Any]) -> str:
    return dumps_text(frame)


def message_event(message: Message) -> Dict[str, Any]:
    return build_frame(EV_MESSAGE, message.to_wire())


def status_event(user_id: Identity, status: str) -> Dict[str, Any]:
    event = StatusEvent(user_id=user_id, status=status)
    return build_frame(EV_USER_STATUS, event.model_dump(by_alias=True))


def deleted_event(message_id: int) -> Dict[str, Any]:
    return build_frame(EV_MESSAGE_DELETED, {"id": message_id})


def history_event(user_id: Identity, messages: Iterable[Message]) -> Dict[str, Any]:
    return build_frame(EV_HISTORY, {"userId": user_id, "messages": [m.to_wire() for m in messages]})


def online_event(user_ids: Iterable[Identity]) -> Dict[str, Any]:
    ids: List[Identity] = sorted(user_ids, key=lambda u: (isinstance(u, str), u))
    return build_frame(EV_ONLINE_USERS, {"userIds": ids})


def error_event(code: str, detail: str) -> Dict[str, Any]:
    return build_frame(EV_ERROR, {"code": code, "detail": detail})


__all__ = [
    "Identity",
    "ID_MIN",
    "ID_MAX",
    "ONLINE",
    "OFFLINE",
    "ERROR_CODES",
    "Message",
    "StatusEvent",
    "Frame",
    "SendMessage",
    "DeleteMessage",
    "HistoryRequest",
    "now_ms",
    "is_identity",
    "decode_frame",
    "parse_payload",
    "build_frame",
    "encode_frame",
    "message_event",
    "status_event",
    "deleted_event",
    "history_event",
    "online_event",
    "error_event",
]
