"""Normalized AI event stream emitted to the host pipeline.

Every producer (gateway bridge, sandboxed agent provider) yields a sequence
of these events ending with exactly one ``DoneEvent``.  Within one
invocation at most one ``AssistantFinalEvent`` is emitted and it carries the
authoritative final text.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from sandgate.models import UsageFact


class TextDeltaEvent(BaseModel):
    type: Literal["text_delta"] = "text_delta"
    delta: str


class AssistantFinalEvent(BaseModel):
    type: Literal["assistant_final"] = "assistant_final"
    content: str


class UsageReportEvent(BaseModel):
    type: Literal["usage_report"] = "usage_report"
    fact: UsageFact


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    code: str
    message: str = ""


class DoneEvent(BaseModel):
    type: Literal["done"] = "done"


AiEvent = Annotated[
    Union[TextDeltaEvent, AssistantFinalEvent, UsageReportEvent, ErrorEvent, DoneEvent],
    Field(discriminator="type"),
]

ai_event_adapter: TypeAdapter[AiEvent] = TypeAdapter(AiEvent)
