"""Pydantic schemas for the WebSocket protocol: client messages and server events."""
import json
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel


class ProtocolError(ValueError):
    """Inbound payload could not be decoded into a known client message."""


# -- Client -> server ---------------------------------------------------------

class RunMessage(BaseModel):
    type: Literal["run"] = "run"
    language: str
    code: str


class InputMessage(BaseModel):
    type: Literal["input"] = "input"
    input: str


class StopMessage(BaseModel):
    type: Literal["stop"] = "stop"


ClientMessage = RunMessage | InputMessage | StopMessage

_CLIENT_MESSAGES: dict[str, type[BaseModel]] = {
    "run": RunMessage,
    "input": InputMessage,
    "stop": StopMessage,
}


def parse_client_message(raw: str | bytes) -> ClientMessage | None:
    """Decode one inbound frame.

    Returns None for a well-formed envelope whose ``type`` is not recognised
    (callers log and ignore it). Raises ProtocolError for anything that is
    not a JSON object or fails validation for a known type.
    """
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProtocolError("Message must be a JSON object")

    msg_type = data.get("type")
    # Any type we do not route, string or not, is simply unknown
    model = _CLIENT_MESSAGES.get(msg_type) if isinstance(msg_type, str) else None
    if model is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ProtocolError(str(e)) from e


# -- Server -> client ---------------------------------------------------------

class ServerEvent(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ConnectedEvent(ServerEvent):
    type: Literal["connected"] = "connected"
    session_id: str


class StartedEvent(ServerEvent):
    type: Literal["started"] = "started"


class OutputEvent(ServerEvent):
    type: Literal["output"] = "output"
    data: str


class ErrorEvent(ServerEvent):
    """Service-level errors carry ``message``; stderr chunks carry ``data``."""

    type: Literal["error"] = "error"
    message: str | None = None
    data: str | None = None
    stream: Literal["stderr"] | None = None


class InputProcessedEvent(ServerEvent):
    type: Literal["inputProcessed"] = "inputProcessed"
    success: bool = True


class TerminatedEvent(ServerEvent):
    type: Literal["terminated"] = "terminated"
    exit_code: int


class StoppedEvent(ServerEvent):
    type: Literal["stopped"] = "stopped"
    message: str = "Execution stopped by user"


class HealthResponse(BaseModel):
    status: str = "ok"
