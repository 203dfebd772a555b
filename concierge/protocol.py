from __future__ import annotations

import json
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class TranscriptUtterance(BaseModel):
    model_config = ConfigDict(extra="ignore")
    # Not a Literal: unknown roles are legal on the wire and reduce to "user".
    role: str
    content: str = ""


class RetellConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    auto_reconnect: bool
    call_details: bool


class AgentConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    responsiveness: Optional[float] = None
    interruption_sensitivity: Optional[float] = None
    reminder_trigger_ms: Optional[int] = None
    reminder_max_count: Optional[int] = None


class InboundPingPong(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["ping_pong"]
    timestamp: int


class InboundCallDetails(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["call_details"]
    call: dict[str, Any] = Field(default_factory=dict)


class InboundUpdateOnly(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["update_only"]
    transcript: list[TranscriptUtterance] = Field(default_factory=list)


class InboundResponseRequired(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["response_required"]
    response_id: int
    transcript: list[TranscriptUtterance]


class InboundReminderRequired(BaseModel):
    model_config = ConfigDict(extra="ignore")
    interaction_type: Literal["reminder_required"]
    response_id: int
    transcript: list[TranscriptUtterance]


InboundEvent = Annotated[
    Union[
        InboundPingPong,
        InboundCallDetails,
        InboundUpdateOnly,
        InboundResponseRequired,
        InboundReminderRequired,
    ],
    Field(discriminator="interaction_type"),
]

TurnRequest = Union[InboundResponseRequired, InboundReminderRequired]

_inbound_adapter = TypeAdapter(InboundEvent)


class OutboundConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")
    response_type: Literal["config"]
    config: RetellConfig


class OutboundUpdateAgent(BaseModel):
    model_config = ConfigDict(extra="forbid")
    response_type: Literal["update_agent"]
    agent_config: AgentConfig


class OutboundPingPong(BaseModel):
    model_config = ConfigDict(extra="forbid")
    response_type: Literal["ping_pong"]
    timestamp: int


class OutboundResponse(BaseModel):
    model_config = ConfigDict(extra="forbid")
    response_type: Literal["response"]
    response_id: int
    content: str
    content_complete: bool
    end_call: bool = False
    transfer_number: Optional[str] = None


OutboundEvent = Annotated[
    Union[
        OutboundConfig,
        OutboundUpdateAgent,
        OutboundPingPong,
        OutboundResponse,
    ],
    Field(discriminator="response_type"),
]

_outbound_adapter = TypeAdapter(OutboundEvent)


def response_chunk(response_id: int, content: str) -> OutboundResponse:
    return OutboundResponse(
        response_type="response",
        response_id=response_id,
        content=content,
        content_complete=False,
    )


def response_terminal(
    response_id: int,
    *,
    content: str = "",
    end_call: bool = False,
    transfer_number: Optional[str] = None,
) -> OutboundResponse:
    return OutboundResponse(
        response_type="response",
        response_id=response_id,
        content=content,
        content_complete=True,
        end_call=end_call,
        transfer_number=transfer_number or None,
    )


def parse_inbound_json(raw_text: str) -> InboundEvent:
    return parse_inbound_obj(json.loads(raw_text))


def parse_inbound_obj(obj: Any) -> InboundEvent:
    return _inbound_adapter.validate_python(obj)


def parse_outbound_json(raw_text: str) -> OutboundEvent:
    return _outbound_adapter.validate_python(json.loads(raw_text))


def dumps_outbound(event: OutboundEvent) -> str:
    # exclude_none keeps transfer_number off the wire unless a transfer was decided.
    return json.dumps(event.model_dump(exclude_none=True), separators=(",", ":"), sort_keys=True)
