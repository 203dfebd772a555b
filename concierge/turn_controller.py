from __future__ import annotations

import asyncio
import logging
from contextlib import aclosing
from enum import Enum
from typing import Any, Awaitable, Callable

from .bounded_queue import QueueClosed
from .clock import Clock
from .completion import CompletionClient, CompletionFailed, TextDelta
from .config import BridgeConfig
from .log import log_event
from .metrics import METRIC, Metrics
from .protocol import (
    InboundReminderRequired,
    OutboundResponse,
    TurnRequest,
    response_chunk,
    response_terminal,
)
from .session import CallSession, TurnRecord, TurnStatus
from .trace import TraceSink
from .transcript import reduce_transcript
from .transfer_policy import EndCallPolicy, TransferPolicy


logger = logging.getLogger("concierge.turn")


class TurnPhase(str, Enum):
    IDLE = "idle"
    AWAITING_COMPLETION = "awaiting-completion"
    STREAMING_REPLY = "streaming-reply"
    DONE = "done"


EmitFn = Callable[[OutboundResponse], Awaitable[None]]


class TurnController:
    """
    Runs one model invocation at a time for a call.

    Every turn ends in exactly one content_complete=true frame for its response_id, except
    when the connection goes away mid-turn: then the turn is abandoned and nothing is sent.
    """

    def __init__(
        self,
        *,
        session: CallSession,
        config: BridgeConfig,
        completion: CompletionClient,
        transfer_policy: TransferPolicy,
        end_call_policy: EndCallPolicy,
        emit: EmitFn,
        clock: Clock,
        metrics: Metrics,
        trace: TraceSink,
        call_id: str = "",
    ) -> None:
        self._session = session
        self._config = config
        self._completion = completion
        self._transfer_policy = transfer_policy
        self._end_call_policy = end_call_policy
        self._emit = emit
        self._clock = clock
        self._metrics = metrics
        self._trace = trace
        self._call_id = call_id
        self.phase = TurnPhase.IDLE

    async def _trace_event(self, event_type: str, *, response_id: int, payload: dict[str, Any]) -> None:
        await self._trace.emit(
            t_ms=self._clock.now_ms(),
            call_id=self._call_id,
            response_id=response_id,
            session_state=self._session.state.value,
            turn_phase=self.phase.value,
            event_type=event_type,
            payload=payload,
        )

    async def _set_phase(self, phase: TurnPhase, *, response_id: int, reason: str) -> None:
        if self.phase == phase:
            return
        self.phase = phase
        await self._trace_event(
            "turn_phase_transition",
            response_id=response_id,
            payload={"new": phase.value, "reason": reason},
        )

    def _build_record(self, req: TurnRequest) -> TurnRecord:
        reminder = isinstance(req, InboundReminderRequired)
        messages = reduce_transcript(
            req.transcript,
            reminder=reminder,
            reminder_text=self._config.reminder_prompt_text,
            greeting_text=self._config.empty_transcript_text,
        )
        return TurnRecord(
            response_id=int(req.response_id),
            kind="reminder" if reminder else "response",
            messages=tuple(messages),
        )

    async def run_turn(self, req: TurnRequest) -> TurnRecord:
        record = self._session.begin_turn(self._build_record(req))
        rid = record.response_id
        started_ms = self._clock.now_ms()
        self._metrics.inc(METRIC["turns_started_total"], 1)
        await self._set_phase(TurnPhase.AWAITING_COMPLETION, response_id=rid, reason=record.kind)

        try:
            async with aclosing(self._completion.stream(record.messages)) as events:
                async for ev in events:
                    if isinstance(ev, TextDelta):
                        if not ev.text:
                            continue
                        if self.phase == TurnPhase.AWAITING_COMPLETION:
                            self._metrics.observe(
                                METRIC["turn_first_increment_ms"], self._clock.now_ms() - started_ms
                            )
                            await self._set_phase(
                                TurnPhase.STREAMING_REPLY, response_id=rid, reason="first_increment"
                            )
                        record.append(ev.text)
                        await self._emit(response_chunk(rid, ev.text))
                    elif isinstance(ev, CompletionFailed):
                        await self._fail(record, reason=ev.reason)
                        break
            if record.status is TurnStatus.PENDING:
                await self._finish(record)
        except asyncio.CancelledError:
            self._abandon(record, reason="abandoned")
            raise
        except QueueClosed:
            self._abandon(record, reason="abandoned")
            return record
        except Exception as e:
            log_event(
                logger,
                "turn_crashed",
                level=logging.ERROR,
                exc_info=True,
                component="turn",
                call_id=self._call_id,
                response_id=rid,
                error=type(e).__name__,
            )
            if record.status is TurnStatus.PENDING:
                try:
                    await self._fail(record, reason=f"internal_error: {type(e).__name__}")
                except QueueClosed:
                    self._abandon(record, reason="abandoned")
                    return record
        else:
            self._metrics.observe(METRIC["turn_total_ms"], self._clock.now_ms() - started_ms)
            self._metrics.observe(METRIC["turn_increments_count"], record.increments)

        if self.phase != TurnPhase.DONE:
            await self._set_phase(TurnPhase.IDLE, response_id=rid, reason=record.status.value)
        return record

    async def _finish(self, record: TurnRecord) -> None:
        decision = self._transfer_policy(record.reply_text)
        # A transferred call is handed off, never ended.
        end_call = (not decision.transfer) and bool(self._end_call_policy(record.reply_text))
        record.complete(transfer_number=decision.transfer_number, end_call=end_call)
        self._metrics.inc(METRIC["turns_completed_total"], 1)
        if decision.transfer:
            self._metrics.inc(METRIC["transfers_total"], 1)
        if end_call:
            self._metrics.inc(METRIC["end_calls_total"], 1)
        await self._trace_event(
            "turn_completed",
            response_id=record.response_id,
            payload={
                "transfer": decision.transfer,
                "matched_phrase": decision.matched_phrase,
                "end_call": end_call,
                "reply_chars": len(record.reply_text),
            },
        )
        log_event(
            logger,
            "turn_completed",
            component="turn",
            call_id=self._call_id,
            response_id=record.response_id,
            kind=record.kind,
            increments=record.increments,
            transfer=decision.transfer,
            end_call=end_call,
        )
        await self._emit(
            response_terminal(
                record.response_id,
                end_call=end_call,
                transfer_number=decision.transfer_number,
            )
        )

    async def _fail(self, record: TurnRecord, *, reason: str) -> None:
        decision = self._transfer_policy.forced()
        record.fail(reason=reason, transfer_number=decision.transfer_number)
        self._metrics.inc(METRIC["turns_errored_total"], 1)
        if decision.transfer:
            self._metrics.inc(METRIC["transfers_total"], 1)
        await self._trace_event(
            "turn_errored",
            response_id=record.response_id,
            payload={"reason": reason, "transfer": decision.transfer},
        )
        log_event(
            logger,
            "turn_errored",
            level=logging.WARNING,
            component="turn",
            call_id=self._call_id,
            response_id=record.response_id,
            kind=record.kind,
            reason=reason,
            increments=record.increments,
        )
        await self._emit(
            response_terminal(
                record.response_id,
                content=self._config.error_apology_text,
                transfer_number=decision.transfer_number,
            )
        )

    def _abandon(self, record: TurnRecord, *, reason: str) -> None:
        self.phase = TurnPhase.DONE
        if record.status is not TurnStatus.PENDING:
            return
        record.fail(reason=reason)
        self._metrics.inc(METRIC["turns_abandoned_total"], 1)
        log_event(
            logger,
            "turn_abandoned",
            component="turn",
            call_id=self._call_id,
            response_id=record.response_id,
            increments=record.increments,
        )

