"""Wire format for the terminal WebSocket.

Client -> broker messages are JSON text frames tagged by ``type``; a
binary frame is shorthand for an ``input`` message carrying its raw
bytes. Broker -> client events are JSON text frames, except ``output``,
which is sent as a binary frame holding the process's bytes untouched.

Every request may carry a ``ref`` string; replies and errors caused by
that request echo it back.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from termbroker.errors import ProtocolError
from termbroker.wire import EventType, WireEvent


class _Message(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    ref: str | None = None


class AuthenticateMessage(_Message):
    type: Literal["authenticate"] = "authenticate"
    token: str = ""


class CreateSessionMessage(_Message):
    type: Literal["create-session"] = "create-session"
    # Geometry is checked by the session layer so that bad values surface
    # as geometry errors rather than parse errors.
    cols: Any = None
    rows: Any = None
    workspace_ref: str = Field(default="", alias="workspaceRef")
    title: str | None = None


class AttachSessionMessage(_Message):
    type: Literal["attach-session"] = "attach-session"
    id: str
    cols: Any = None
    rows: Any = None
    replay: bool = True


class InputMessage(_Message):
    type: Literal["input"] = "input"
    data: bytes = b""

    @field_validator("data", mode="before")
    @classmethod
    def _encode_text(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.encode("utf-8")
        return value


class ResizeMessage(_Message):
    type: Literal["resize"] = "resize"
    cols: Any = None
    rows: Any = None


class DetachSessionMessage(_Message):
    type: Literal["detach-session"] = "detach-session"


class ListSessionsMessage(_Message):
    type: Literal["list-sessions"] = "list-sessions"
    project_id: str | None = Field(default=None, alias="projectId")


class KillSessionMessage(_Message):
    type: Literal["kill-session"] = "kill-session"
    id: str


class RenameSessionMessage(_Message):
    type: Literal["rename-session"] = "rename-session"
    id: str
    title: str


ClientMessage = Annotated[
    Union[
        AuthenticateMessage,
        CreateSessionMessage,
        AttachSessionMessage,
        InputMessage,
        ResizeMessage,
        DetachSessionMessage,
        ListSessionsMessage,
        KillSessionMessage,
        RenameSessionMessage,
    ],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_message(raw: str | bytes | dict[str, Any]) -> ClientMessage:
    """Parse one client text frame (or already-decoded JSON object).

    Raises:
        ProtocolError: Malformed JSON, unknown ``type``, or invalid fields.
    """
    payload: Any = raw
    if isinstance(raw, (str, bytes)):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ProtocolError(f"Malformed JSON: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError("Message must be a JSON object")

    try:
        return _client_message_adapter.validate_python(payload)
    except ValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ProtocolError(
            f"Invalid {payload.get('type')!r} message: {first['msg']} ({location})"
        ) from e


def input_from_binary(frame: bytes) -> InputMessage:
    """Wrap a binary client frame as an ``input`` message."""
    return InputMessage(data=frame)


def encode_event(event: WireEvent) -> str | bytes:
    """Serialize an event for the client.

    ``output`` becomes the raw bytes; everything else a JSON object with
    ``type`` plus the event's data.
    """
    if event.type is EventType.OUTPUT:
        return event.data["data"]
    return json.dumps({"type": event.type.value, **event.data})
