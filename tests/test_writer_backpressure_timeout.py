from __future__ import annotations

import asyncio

from concierge.config import BridgeConfig
from concierge.metrics import METRIC
from concierge.protocol import OutboundConfig, OutboundPingPong, OutboundResponse
from concierge.session import SessionState

from tests.harness.transport_harness import HarnessSession, InMemoryTransport


def test_consecutive_write_timeouts_close_session() -> None:
    async def _run() -> None:
        session = await HarnessSession.start(
            cfg=BridgeConfig(
                greeting_mode="silent",
                retell_auto_reconnect=False,
                ws_write_timeout_ms=50,
                ws_max_consecutive_write_timeouts=2,
                ws_close_on_write_timeout=True,
            )
        )
        try:
            await session.recv_outbound()

            # Block writer sends to simulate socket/TCP backpressure.
            session.transport.send_allowed.clear()
            await session.send_inbound_obj({"interaction_type": "ping_pong", "timestamp": 1})
            await session.send_inbound_obj({"interaction_type": "ping_pong", "timestamp": 2})

            for _ in range(20):
                if session.shutdown_evt.is_set():
                    break
                await session.clock.advance(50)
                for _ in range(20):
                    await asyncio.sleep(0)

            await asyncio.wait_for(
                session.trace.wait_for("session_state_transition", new="closed"), timeout=2.0
            )
            assert session.shutdown_evt.is_set() is True
            assert session.metrics.get(METRIC["ws_write_timeout_total"]) == 2
            assert session.metrics.get(METRIC["keepalive_ping_pong_write_timeout_total"]) == 2
            assert session.metrics.get(f"{METRIC['close_reason_total']}.WRITE_TIMEOUT_BACKPRESSURE") == 1
            assert session.orch.close_reason == "WRITE_TIMEOUT_BACKPRESSURE"
            assert session.transport.close_reason == "WRITE_TIMEOUT_BACKPRESSURE"
        finally:
            await session.stop()

    asyncio.run(_run())


def test_single_timeout_does_not_close_when_writes_recover() -> None:
    async def _run() -> None:
        session = await HarnessSession.start(
            cfg=BridgeConfig(
                greeting_mode="silent",
                retell_auto_reconnect=False,
                ws_write_timeout_ms=50,
                ws_max_consecutive_write_timeouts=2,
            )
        )
        try:
            await session.recv_outbound()
            session.transport.send_allowed.clear()
            await session.send_inbound_obj({"interaction_type": "ping_pong", "timestamp": 1})
            for _ in range(5):
                await asyncio.sleep(0)
            await session.clock.advance(50)
            for _ in range(20):
                await asyncio.sleep(0)
            assert session.metrics.get(METRIC["ws_write_timeout_total"]) == 1

            session.transport.send_allowed.set()
            await session.send_inbound_obj({"interaction_type": "ping_pong", "timestamp": 2})
            m = await session.recv_outbound()
            assert isinstance(m, OutboundPingPong)
            assert m.timestamp == 2
            assert session.shutdown_evt.is_set() is False
        finally:
            await session.stop()

    asyncio.run(_run())


def test_control_frames_jump_queued_speech() -> None:
    async def _run() -> None:
        # Hold the writer on the first frame so the greeting and the ping queue up behind it.
        transport = InMemoryTransport()
        transport.send_allowed.clear()
        session = await HarnessSession.start(
            cfg=BridgeConfig(greeting_mode="proactive", retell_auto_reconnect=False, ws_write_timeout_ms=5000),
            transport=transport,
        )
        try:
            await session.send_inbound_obj({"interaction_type": "ping_pong", "timestamp": 99})
            session.transport.send_allowed.set()

            got = [await session.recv_outbound() for _ in range(4)]
            assert isinstance(got[0], OutboundConfig)
            assert isinstance(got[1], OutboundPingPong)
            assert [type(m) for m in got[2:]] == [OutboundResponse, OutboundResponse]
        finally:
            await session.stop()

    asyncio.run(_run())


class _BrokenPipeTransport(InMemoryTransport):
    def __init__(self) -> None:
        super().__init__()
        self.fail_sends = False

    async def send_text(self, text: str) -> None:
        if self.fail_sends:
            raise BrokenPipeError("socket gone")
        await super().send_text(text)


def test_send_error_closes_session() -> None:
    async def _run() -> None:
        transport = _BrokenPipeTransport()
        session = await HarnessSession.start(
            cfg=BridgeConfig(greeting_mode="silent", retell_auto_reconnect=False),
            transport=transport,
        )
        try:
            assert isinstance(await session.recv_outbound(), OutboundConfig)

            transport.fail_sends = True
            await session.send_inbound_obj({"interaction_type": "ping_pong", "timestamp": 7})

            await asyncio.wait_for(
                session.trace.wait_for("session_state_transition", new="closed"), timeout=2.0
            )
            assert session.orch.close_reason == "WRITE_ERROR"
            assert session.orch.session.state is SessionState.CLOSED
            assert session.transport.close_reason == "WRITE_ERROR"
            assert session.metrics.get(METRIC["ws_send_error_total"]) == 1
            assert session.metrics.get(f"{METRIC['close_reason_total']}.WRITE_ERROR") == 1
        finally:
            await session.stop()

    asyncio.run(_run())
