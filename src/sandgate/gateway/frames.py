"""Gateway wire frames.

Every WebSocket text message is one JSON object discriminated by ``type``::

    {"type": "req",   "id": "7", "method": "agent", "params": {...}}
    {"type": "res",   "id": "7", "ok": true,  "payload": {...}}
    {"type": "res",   "id": "7", "ok": false, "error": {"code": ..., "message": ...}}
    {"type": "event", "event": "chat", "payload": {...}}

Request ids are strings, strictly increasing per connection.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, field_validator

from sandgate.errors import GatewayProtocolError


class FrameError(BaseModel):
    model_config = ConfigDict(extra="allow")

    code: str | int = "unknown"
    message: str = ""


class RequestFrame(BaseModel):
    type: Literal["req"] = "req"
    id: str
    method: str
    params: Any = None


class ResponseFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["res"] = "res"
    id: str
    ok: bool
    payload: Any = None
    error: FrameError | None = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @property
    def error_message(self) -> str:
        if self.error is None:
            return "unknown error"
        return self.error.message or str(self.error.code)


class EventFrame(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Literal["event"] = "event"
    event: str
    payload: Any = None
    seq: int | None = None

    @property
    def payload_dict(self) -> dict[str, Any]:
        return self.payload if isinstance(self.payload, dict) else {}


GatewayFrame = Annotated[Union[RequestFrame, ResponseFrame, EventFrame], Field(discriminator="type")]

_frame_adapter: TypeAdapter[GatewayFrame] = TypeAdapter(GatewayFrame)


def parse_frame(raw: str | bytes) -> RequestFrame | ResponseFrame | EventFrame:
    """Decode one wire message.

    Raises:
        GatewayProtocolError: not JSON, or not a known frame shape.
    """
    try:
        return _frame_adapter.validate_json(raw)
    except ValidationError as exc:
        raise GatewayProtocolError(f"malformed gateway frame: {exc.errors()[0]['msg']}") from exc


def encode_frame(frame: RequestFrame | ResponseFrame | EventFrame) -> str:
    return frame.model_dump_json()
