from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import Any, Optional

from .bounded_queue import BoundedDequeQueue, QueueClosed
from .clock import Clock
from .completion import CompletionClient
from .config import BridgeConfig
from .log import log_event
from .metrics import METRIC, Metrics
from .protocol import (
    AgentConfig,
    InboundCallDetails,
    InboundPingPong,
    InboundReminderRequired,
    InboundResponseRequired,
    InboundUpdateOnly,
    OutboundConfig,
    OutboundEvent,
    OutboundPingPong,
    OutboundResponse,
    OutboundUpdateAgent,
    RetellConfig,
    TurnRequest,
    response_chunk,
    response_terminal,
)
from .session import CallSession, SessionState
from .trace import TraceSink
from .transfer_policy import EndCallPolicy, PhraseEndCallPolicy, PhraseTransferPolicy, TransferPolicy
from .transport_ws import InboundItem, OutboundEnvelope, TransportClosed
from .turn_controller import TurnController, TurnPhase


logger = logging.getLogger("concierge.session")


_TURN_REQUEST_TYPES = (InboundResponseRequired, InboundReminderRequired)


class Orchestrator:
    """
    Connection lifecycle manager and the only owner of the call's state.

    Consumes the inbound queue, answers keepalives, captures call metadata, and runs turns
    strictly one after another through the TurnController.
    """

    def __init__(
        self,
        *,
        call_id: str,
        config: BridgeConfig,
        clock: Clock,
        metrics: Metrics,
        trace: TraceSink,
        inbound_q: BoundedDequeQueue[InboundItem],
        outbound_q: BoundedDequeQueue[OutboundEnvelope],
        shutdown_evt: asyncio.Event,
        completion: CompletionClient,
        transfer_policy: Optional[TransferPolicy] = None,
        end_call_policy: Optional[EndCallPolicy] = None,
    ) -> None:
        self._call_id = call_id
        self._config = config
        self._clock = clock
        self._metrics = metrics
        self._trace = trace
        self._inbound_q = inbound_q
        self._outbound_q = outbound_q
        self._shutdown_evt = shutdown_evt

        self.session = CallSession()
        self._turns = TurnController(
            session=self.session,
            config=config,
            completion=completion,
            transfer_policy=transfer_policy
            or PhraseTransferPolicy(
                transfer_number=config.transfer_number, phrases=config.transfer_phrases
            ),
            end_call_policy=end_call_policy or PhraseEndCallPolicy(phrases=config.end_call_phrases),
            emit=self._enqueue_speech,
            clock=clock,
            metrics=metrics,
            trace=trace,
            call_id=call_id,
        )

        self._turn_task: Optional[asyncio.Task[Any]] = None
        self._pending_turns: deque[TurnRequest] = deque()
        self._ping_task: Optional[asyncio.Task[None]] = None
        self._close_reason: Optional[str] = None

    @property
    def turn_phase(self) -> TurnPhase:
        return self._turns.phase

    @property
    def close_reason(self) -> Optional[str]:
        return self._close_reason

    def pending_turn_count(self) -> int:
        return len(self._pending_turns)

    async def _trace_event(self, event_type: str, payload: dict[str, Any], *, response_id: int = 0) -> None:
        await self._trace.emit(
            t_ms=self._clock.now_ms(),
            call_id=self._call_id,
            response_id=response_id,
            session_state=self.session.state.value,
            turn_phase=self._turns.phase.value,
            event_type=event_type,
            payload=payload,
        )

    async def _set_session_state(self, new_state: SessionState, *, reason: str) -> None:
        if self.session.state == new_state:
            return
        self.session.state = new_state
        await self._trace_event("session_state_transition", {"new": new_state.value, "reason": reason})

    # ---------------------------------------------------------------------
    # Session lifecycle
    # ---------------------------------------------------------------------

    async def start(self) -> None:
        await self._set_session_state(SessionState.ACTIVE, reason="ws_accepted")
        self._metrics.inc(METRIC["sessions_started_total"], 1)
        log_event(logger, "session_started", component="ws_session", call_id=self._call_id)
        await self._send_config()
        await self._send_update_agent()

        if self._config.retell_auto_reconnect and self._config.ping_interval_ms > 0:
            self._ping_task = asyncio.create_task(self._ping_loop())

        if self._config.greeting_mode == "proactive":
            await self._send_begin_greeting()

    async def run(self) -> None:
        try:
            await self.start()
        except QueueClosed:
            await self.end_session(reason="queue_closed")
            return

        inbound_task: asyncio.Task[InboundItem] = asyncio.create_task(
            self._inbound_q.get_prefer(self._is_control_inbound)
        )
        try:
            while not self._shutdown_evt.is_set():
                wait_set: set[asyncio.Task[Any]] = {inbound_task}
                if self._turn_task is not None:
                    wait_set.add(self._turn_task)

                done, _ = await asyncio.wait(wait_set, return_when=asyncio.FIRST_COMPLETED)

                # Turn completion first so a queued request can start before the next inbound item.
                if self._turn_task is not None and self._turn_task in done:
                    finished = self._turn_task
                    self._turn_task = None
                    exc = None if finished.cancelled() else finished.exception()
                    if exc is not None:
                        log_event(
                            logger,
                            "turn_task_failed",
                            level=logging.ERROR,
                            component="ws_session",
                            call_id=self._call_id,
                            error=type(exc).__name__,
                        )
                    self._maybe_start_next_turn()

                if inbound_task in done:
                    exc = inbound_task.exception()
                    if exc is not None:
                        if isinstance(exc, QueueClosed):
                            await self.end_session(reason="queue_closed")
                            return
                        raise exc
                    item = inbound_task.result()
                    if isinstance(item, TransportClosed):
                        await self.end_session(reason=item.reason)
                        return
                    inbound_task = asyncio.create_task(
                        self._inbound_q.get_prefer(self._is_control_inbound)
                    )
                    await self._handle_inbound_event(item)

            # Shutdown set by another task, e.g. the writer after a fatal send.
            await self.end_session(reason=self._queued_close_reason(inbound_task))
        finally:
            if not inbound_task.done():
                inbound_task.cancel()
            await asyncio.gather(inbound_task, return_exceptions=True)

    @staticmethod
    def _queued_close_reason(inbound_task: asyncio.Task[InboundItem]) -> str:
        if inbound_task.done() and not inbound_task.cancelled() and inbound_task.exception() is None:
            item = inbound_task.result()
            if isinstance(item, TransportClosed):
                return item.reason
        return "shutdown"

    async def end_session(self, *, reason: str) -> None:
        if self.session.state == SessionState.CLOSED:
            return
        self._close_reason = reason
        safe_reason = "".join(ch if (ch.isalnum() or ch in "._-") else "_" for ch in str(reason))
        self._metrics.inc(f"{METRIC['close_reason_total']}.{safe_reason}", 1)
        self._metrics.inc(METRIC["sessions_closed_total"], 1)

        await self._set_session_state(SessionState.CLOSED, reason=reason)

        if self._ping_task is not None:
            self._ping_task.cancel()
            self._ping_task = None

        dropped = len(self._pending_turns)
        self._pending_turns.clear()

        # In-flight turn is abandoned; no outbound frame is attempted for it.
        turn_task, self._turn_task = self._turn_task, None
        if turn_task is not None:
            turn_task.cancel()
            await asyncio.gather(turn_task, return_exceptions=True)

        await self._inbound_q.close()
        await self._outbound_q.close()
        self._shutdown_evt.set()

        log_event(
            logger,
            "session_closed",
            component="ws_session",
            call_id=self._call_id,
            platform_call_id=self.session.call_id,
            reason=reason,
            turns=len(self.session.turns),
            pending_dropped=dropped,
        )

    # ---------------------------------------------------------------------
    # Inbound handling
    # ---------------------------------------------------------------------

    def _is_control_inbound(self, item: InboundItem) -> bool:
        return isinstance(item, (TransportClosed, InboundPingPong))

    async def _handle_inbound_event(self, ev: Any) -> None:
        if self.session.state == SessionState.CLOSED:
            return

        await self._trace_event(
            "inbound_event",
            {"interaction_type": str(getattr(ev, "interaction_type", type(ev).__name__))},
            response_id=int(getattr(ev, "response_id", 0) or 0),
        )

        if isinstance(ev, InboundPingPong):
            await self._enqueue_control(
                OutboundPingPong(response_type="ping_pong", timestamp=ev.timestamp)
            )
            return

        if isinstance(ev, InboundCallDetails):
            self.session.ingest_call_details(ev.call)
            log_event(
                logger,
                "call_details",
                component="ws_session",
                call_id=self._call_id,
                platform_call_id=self.session.call_id,
                from_number=self.session.from_number,
            )
            return

        if isinstance(ev, InboundUpdateOnly):
            # Informational only: every turn rebuilds from the replayed transcript.
            self.session.latest_transcript = list(ev.transcript)
            return

        if isinstance(ev, _TURN_REQUEST_TYPES):
            self._on_turn_request(ev)
            return

    def _on_turn_request(self, ev: TurnRequest) -> None:
        if self._turn_task is None:
            self._start_turn(ev)
            return
        if len(self._pending_turns) >= max(1, int(self._config.pending_turns_max)):
            stale = self._pending_turns.popleft()
            self._metrics.inc(METRIC["pending_turns_dropped_total"], 1)
            log_event(
                logger,
                "pending_turn_dropped",
                level=logging.WARNING,
                component="ws_session",
                call_id=self._call_id,
                response_id=stale.response_id,
            )
        self._pending_turns.append(ev)

    def _maybe_start_next_turn(self) -> None:
        if self._turn_task is None and self._pending_turns and not self._shutdown_evt.is_set():
            self._start_turn(self._pending_turns.popleft())

    def _start_turn(self, ev: TurnRequest) -> None:
        self._turn_task = asyncio.create_task(self._turns.run_turn(ev))

    # ---------------------------------------------------------------------
    # Outbound helpers + initial greeting
    # ---------------------------------------------------------------------

    async def _trace_outbound(self, msg: OutboundEvent) -> None:
        payload: dict[str, Any] = {"response_type": str(getattr(msg, "response_type", ""))}
        if isinstance(msg, OutboundResponse):
            payload["content_complete"] = msg.content_complete
            payload["transfer"] = msg.transfer_number is not None
        await self._trace_event(
            "outbound_enqueued",
            payload,
            response_id=int(getattr(msg, "response_id", 0) or 0),
        )

    async def _enqueue_control(self, msg: OutboundEvent) -> None:
        """Control frames never wait: when the queue is full a stale ping is replaced, else dropped."""
        if self._shutdown_evt.is_set():
            return
        env = OutboundEnvelope(
            msg=msg,
            plane="control",
            priority=100 if msg.response_type == "config" else 80,
            enqueued_ms=self._clock.now_ms(),
        )
        ok = await self._outbound_q.put(
            env,
            evict=lambda existing: existing.plane == "control"
            and existing.msg.response_type == "ping_pong",
        )
        if not ok:
            self._metrics.inc(METRIC["outbound_queue_dropped_total"], 1)
            return
        await self._trace_outbound(msg)

    async def _enqueue_speech(self, msg: OutboundResponse) -> None:
        """
        Speech frames wait for queue space, which back-pressures the provider stream.
        Raises QueueClosed once the session is torn down.
        """
        env = OutboundEnvelope(
            msg=msg,
            plane="speech",
            priority=100 if msg.content_complete else 50,
            enqueued_ms=self._clock.now_ms(),
        )
        await self._outbound_q.put_wait(env)
        await self._trace_outbound(msg)

    async def _send_config(self) -> None:
        cfg = RetellConfig(
            auto_reconnect=self._config.retell_auto_reconnect,
            call_details=self._config.retell_call_details,
        )
        await self._enqueue_control(OutboundConfig(response_type="config", config=cfg))

    async def _send_update_agent(self) -> None:
        if not self._config.retell_send_update_agent_on_connect:
            return
        agent_cfg = AgentConfig(
            responsiveness=float(self._config.retell_responsiveness),
            interruption_sensitivity=float(self._config.retell_interruption_sensitivity),
            reminder_trigger_ms=int(self._config.retell_reminder_trigger_ms),
            reminder_max_count=int(self._config.retell_reminder_max_count),
        )
        await self._enqueue_control(
            OutboundUpdateAgent(response_type="update_agent", agent_config=agent_cfg)
        )

    async def _send_begin_greeting(self) -> None:
        greeting = self._config.greeting_text.strip()
        if greeting:
            await self._enqueue_speech(response_chunk(0, greeting))
        await self._enqueue_speech(response_terminal(0))

    # ---------------------------------------------------------------------
    # Keepalive
    # ---------------------------------------------------------------------

    async def _ping_loop(self) -> None:
        try:
            while not self._shutdown_evt.is_set():
                await self._clock.sleep_ms(self._config.ping_interval_ms)
                await self._enqueue_control(
                    OutboundPingPong(
                        response_type="ping_pong",
                        timestamp=self._clock.now_ms(),
                    )
                )
        except asyncio.CancelledError:
            return
