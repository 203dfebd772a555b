from __future__ import annotations

import asyncio

from concierge.clock import FakeClock
from concierge.llm_client import FakeLLMClient
from concierge.metrics import METRIC
from concierge.protocol import InboundPingPong
from concierge.session import SessionState, TurnStatus
from concierge.turn_controller import TurnPhase

from tests.harness.transport_harness import FailingRecvTransport, HarnessSession, user_turn


def test_disconnect_mid_turn_abandons_turn_without_sending() -> None:
    async def _run() -> None:
        clock = FakeClock()
        closed: list[bool] = []

        class _SlowLLM:
            async def stream_text(self, *, system_prompt, max_output_tokens, messages):
                try:
                    yield "Let me look "
                    await clock.sleep_ms(10_000)
                    yield "that up."
                finally:
                    closed.append(True)

            async def aclose(self) -> None:
                return

        transport = FailingRecvTransport()
        session = await HarnessSession.start(llm=_SlowLLM(), clock=clock, transport=transport)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(user_turn(1, "Can you check my reservation?"))
            first = await session.recv_outbound()
            assert first.content == "Let me look "
            assert session.orch.turn_phase is TurnPhase.STREAMING_REPLY

            await transport.push_inbound(FailingRecvTransport.DISCONNECT)
            await asyncio.wait_for(session.shutdown_evt.wait(), timeout=2.0)

            assert session.orch.close_reason == "transport_read_error"
            assert session.orch.session.state is SessionState.CLOSED
            turn = session.orch.session.turns[0]
            assert turn.status is TurnStatus.ERRORED
            assert turn.error == "abandoned"
            assert turn.reply_text == "Let me look "
            assert closed == [True]
            assert session.orch.turn_phase is TurnPhase.DONE
            assert session.metrics.get(METRIC["turns_abandoned_total"]) == 1
            # No terminal frame was attempted for the abandoned turn.
            assert transport.outbound_qsize() == 0
        finally:
            await session.stop()

    asyncio.run(_run())


def test_end_session_drops_queued_requests() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(tokens=["ok"], clock=clock, token_delay_ms=1000)
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(user_turn(1, "one"))
            await session.send_inbound_obj(user_turn(2, "two"))
            assert session.orch.pending_turn_count() == 1

            await session.orch.end_session(reason="test_close")
            assert session.orch.pending_turn_count() == 0
            assert len(llm.requests) == 1
            assert session.metrics.get(f"{METRIC['close_reason_total']}.test_close") == 1
            assert session.metrics.get(METRIC["sessions_closed_total"]) == 1

            # Idempotent.
            await session.orch.end_session(reason="again")
            assert session.orch.close_reason == "test_close"
        finally:
            await session.stop()

    asyncio.run(_run())


def test_shutdown_set_elsewhere_still_closes_session() -> None:
    async def _run() -> None:
        clock = FakeClock()
        llm = FakeLLMClient(tokens=["ok"], clock=clock, token_delay_ms=1000)
        session = await HarnessSession.start(llm=llm, clock=clock)
        try:
            await session.recv_outbound()
            await session.send_inbound_obj(user_turn(1, "one"))

            # Shutdown flagged by another task; the loop notices after its next wakeup.
            session.shutdown_evt.set()
            await session.inbound_q.put(InboundPingPong(interaction_type="ping_pong", timestamp=5))

            await asyncio.wait_for(
                session.trace.wait_for("session_state_transition", new="closed"), timeout=2.0
            )
            assert session.orch.session.state is SessionState.CLOSED
            assert session.orch.close_reason == "shutdown"
            assert session.inbound_q.closed() is True
            assert session.outbound_q.closed() is True
            assert session.metrics.get(f"{METRIC['close_reason_total']}.shutdown") == 1
            assert session.orch.session.turns[0].status is TurnStatus.ERRORED
            assert session.orch.session.turns[0].error == "abandoned"
        finally:
            await session.stop()

    asyncio.run(_run())
