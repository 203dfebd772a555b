from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Literal, Optional, Protocol, Union

from pydantic import ValidationError

from .bounded_queue import BoundedDequeQueue
from .clock import Clock
from .log import log_event
from .metrics import METRIC, Metrics
from .protocol import (
    InboundCallDetails,
    InboundEvent,
    InboundPingPong,
    InboundReminderRequired,
    InboundResponseRequired,
    InboundUpdateOnly,
    OutboundEvent,
    dumps_outbound,
    parse_inbound_obj,
)


logger = logging.getLogger("concierge.transport")


class Transport(Protocol):
    async def recv_text(self) -> str: ...

    async def send_text(self, text: str) -> None: ...

    async def close(self, *, code: int = 1000, reason: str = "") -> None: ...


@dataclass(frozen=True, slots=True)
class TransportClosed:
    reason: str


InboundItem = Union[InboundEvent, TransportClosed]


@dataclass(frozen=True, slots=True)
class OutboundEnvelope:
    """
    Writer-side wrapper. Only `msg` is serialized onto the wire.
    """

    msg: OutboundEvent
    plane: Literal["control", "speech"] = "speech"
    priority: int = 0
    enqueued_ms: Optional[int] = None


def _is_low_value_inbound(x: object) -> bool:
    return isinstance(x, (InboundUpdateOnly, InboundPingPong, InboundCallDetails))


async def socket_reader(
    *,
    transport: Transport,
    inbound_q: BoundedDequeQueue[InboundItem],
    metrics: Metrics,
    shutdown_evt: asyncio.Event,
    max_frame_bytes: int = 262_144,
    call_id: str = "",
) -> None:
    """
    WS frames -> JSON decode -> protocol validation -> bounded inbound queue.

    Frames that fail any step are logged, counted and dropped; the session carries on.
    Only a transport read failure ends the reader, and it is reported as TransportClosed.
    """

    def _drop(reason: str, **fields: object) -> None:
        metrics.inc(f"{METRIC['inbound_dropped_total']}.{reason}", 1)
        log_event(
            logger,
            "frame_dropped",
            level=logging.WARNING,
            component="ws_inbound",
            call_id=call_id,
            reason=reason,
            **fields,
        )

    try:
        while not shutdown_evt.is_set():
            raw = await transport.recv_text()
            if shutdown_evt.is_set():
                return
            size_bytes = len(raw.encode("utf-8"))
            if int(max_frame_bytes) > 0 and size_bytes > int(max_frame_bytes):
                _drop("frame_too_large", size_bytes=size_bytes)
                continue
            try:
                obj = json.loads(raw)
            except ValueError:
                _drop("bad_json", size_bytes=size_bytes)
                continue

            try:
                ev = parse_inbound_obj(obj)
            except ValidationError as e:
                interaction_type = ""
                if isinstance(obj, dict):
                    interaction_type = str(obj.get("interaction_type", ""))
                _drop("bad_schema", interaction_type=interaction_type, errors=e.error_count())
                continue

            log_event(
                logger,
                "frame_accepted",
                level=logging.DEBUG,
                component="ws_inbound",
                call_id=call_id,
                interaction_type=ev.interaction_type,
                size_bytes=size_bytes,
            )

            # Overflow policy (never blocks the reader):
            # - update_only: only the latest snapshot matters
            # - turn requests: evict side-channel traffic first
            # - ping_pong: evict an update_only to make room
            if isinstance(ev, InboundUpdateOnly):
                await inbound_q.drop_where(lambda x: isinstance(x, InboundUpdateOnly))
                ok = await inbound_q.put(ev)
            elif isinstance(ev, (InboundResponseRequired, InboundReminderRequired)):
                ok = await inbound_q.put(ev, evict=_is_low_value_inbound)
            elif isinstance(ev, InboundPingPong):
                ok = await inbound_q.put(ev)
                if not ok:
                    evicted = await inbound_q.evict_one_where(lambda x: isinstance(x, InboundUpdateOnly))
                    if evicted:
                        metrics.inc(METRIC["inbound_queue_evictions_total"], 1)
                        ok = await inbound_q.put(ev)
            else:
                ok = await inbound_q.put(ev, evict=lambda x: isinstance(x, InboundUpdateOnly))
            if not ok:
                metrics.inc(METRIC["inbound_queue_dropped_total"], 1)
                log_event(
                    logger,
                    "inbound_queue_full",
                    level=logging.WARNING,
                    component="ws_inbound",
                    call_id=call_id,
                    interaction_type=ev.interaction_type,
                )
    except Exception as e:
        if not shutdown_evt.is_set():
            log_event(
                logger,
                "read_error",
                component="ws_inbound",
                call_id=call_id,
                error=type(e).__name__,
            )
        await inbound_q.put(TransportClosed(reason="transport_read_error"), evict=_is_low_value_inbound)


async def socket_writer(
    *,
    transport: Transport,
    outbound_q: BoundedDequeQueue[OutboundEnvelope],
    metrics: Metrics,
    shutdown_evt: asyncio.Event,
    clock: Clock,
    inbound_q: Optional[BoundedDequeQueue[InboundItem]] = None,
    ws_write_timeout_ms: int = 400,
    ws_close_on_write_timeout: bool = True,
    ws_max_consecutive_write_timeouts: int = 2,
    call_id: str = "",
) -> None:
    """
    Single-writer rule: the only task that writes to the WS. Control-plane frames are dequeued
    ahead of queued speech; speech frames keep their FIFO order.
    """

    async def _signal_fatal_and_stop(reason: str) -> None:
        if inbound_q is not None:
            await inbound_q.put(TransportClosed(reason=reason), evict=_is_low_value_inbound)
        shutdown_evt.set()
        try:
            await transport.close(code=1011, reason=reason)
        except Exception as e:
            log_event(
                logger,
                "close_error",
                level=logging.DEBUG,
                component="ws_outbound",
                call_id=call_id,
                error=type(e).__name__,
            )

    consecutive_write_timeouts = 0

    while not shutdown_evt.is_set():
        try:
            env = await outbound_q.get_prefer(lambda e: e.plane == "control")
        except Exception:
            # QueueClosed: session teardown.
            return

        msg = env.msg
        rt = str(getattr(msg, "response_type", ""))
        payload = dumps_outbound(msg)

        if rt == "ping_pong":
            if env.enqueued_ms is not None:
                delay = max(0, clock.now_ms() - int(env.enqueued_ms))
                metrics.observe(METRIC["keepalive_ping_pong_queue_delay_ms"], delay)
            metrics.inc(METRIC["keepalive_ping_pong_write_attempt_total"], 1)

        try:
            await clock.run_with_timeout(
                transport.send_text(payload),
                timeout_ms=max(1, int(ws_write_timeout_ms)),
            )
            consecutive_write_timeouts = 0
        except TimeoutError:
            metrics.inc(METRIC["ws_write_timeout_total"], 1)
            if rt == "ping_pong":
                metrics.inc(METRIC["keepalive_ping_pong_write_timeout_total"], 1)
            consecutive_write_timeouts += 1
            log_event(
                logger,
                "write_timeout",
                level=logging.WARNING,
                component="ws_outbound",
                call_id=call_id,
                response_type=rt,
                consecutive=consecutive_write_timeouts,
            )
            if ws_close_on_write_timeout and consecutive_write_timeouts >= max(
                1, int(ws_max_consecutive_write_timeouts)
            ):
                await _signal_fatal_and_stop("WRITE_TIMEOUT_BACKPRESSURE")
                return
        except Exception as e:
            metrics.inc(METRIC["ws_send_error_total"], 1)
            log_event(
                logger,
                "send_error",
                level=logging.WARNING,
                component="ws_outbound",
                call_id=call_id,
                response_type=rt,
                error=type(e).__name__,
            )
            await _signal_fatal_and_stop("WRITE_ERROR")
            return
