from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional


class SessionState(str, Enum):
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSED = "closed"


class TurnStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ERRORED = "errored"


class TurnStateError(RuntimeError):
    """Raised when a Turn Record is mutated after it has been resolved."""


Role = Literal["user", "assistant"]


@dataclass(frozen=True, slots=True)
class Message:
    role: Role
    content: str

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(slots=True)
class TurnRecord:
    """
    One model invocation. reply_text only grows while the record is pending and is frozen
    once complete() or fail() has run.
    """

    response_id: int
    kind: Literal["response", "reminder"]
    messages: tuple[Message, ...]
    reply_text: str = ""
    status: TurnStatus = TurnStatus.PENDING
    transfer_number: Optional[str] = None
    end_call: bool = False
    error: Optional[str] = None
    increments: int = 0

    def _require_pending(self) -> None:
        if self.status is not TurnStatus.PENDING:
            raise TurnStateError(
                f"turn response_id={self.response_id} already {self.status.value}"
            )

    def append(self, text: str) -> None:
        self._require_pending()
        self.reply_text += text
        self.increments += 1

    def complete(self, *, transfer_number: Optional[str], end_call: bool) -> None:
        self._require_pending()
        self.status = TurnStatus.COMPLETED
        self.transfer_number = transfer_number
        self.end_call = end_call

    def fail(self, *, reason: str, transfer_number: Optional[str] = None) -> None:
        self._require_pending()
        self.status = TurnStatus.ERRORED
        self.error = reason
        self.transfer_number = transfer_number


def _pick(*vals: Any) -> Optional[str]:
    for v in vals:
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


@dataclass(slots=True)
class CallSession:
    call_id: Optional[str] = None
    from_number: Optional[str] = None
    state: SessionState = SessionState.CONNECTING
    turns: list[TurnRecord] = field(default_factory=list)
    latest_transcript: list[Any] = field(default_factory=list)

    @property
    def current_turn(self) -> Optional[TurnRecord]:
        if self.turns and self.turns[-1].status is TurnStatus.PENDING:
            return self.turns[-1]
        return None

    def begin_turn(self, turn: TurnRecord) -> TurnRecord:
        if self.current_turn is not None:
            raise TurnStateError(
                f"turn response_id={self.current_turn.response_id} is still in flight"
            )
        self.turns.append(turn)
        return turn

    def ingest_call_details(self, call: Any) -> None:
        if not isinstance(call, dict):
            return
        self.call_id = _pick(call.get("call_id"), call.get("id"), self.call_id)
        self.from_number = _pick(call.get("from_number"), call.get("from"), self.from_number)
