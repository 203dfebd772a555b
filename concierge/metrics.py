from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Metrics:
    counters: dict[str, int] = field(default_factory=dict)
    histograms: dict[str, list[int]] = field(default_factory=dict)
    gauges: dict[str, int] = field(default_factory=dict)

    def inc(self, name: str, value: int = 1) -> None:
        self.counters[name] = self.counters.get(name, 0) + value

    def observe(self, name: str, value: int) -> None:
        self.histograms.setdefault(name, []).append(int(value))

    def set(self, name: str, value: int) -> None:
        self.gauges[name] = int(value)

    def get(self, name: str) -> int:
        return int(self.counters.get(name, 0))

    def get_hist(self, name: str) -> list[int]:
        return list(self.histograms.get(name, []))

    def get_gauge(self, name: str) -> int:
        return int(self.gauges.get(name, 0))

    def snapshot(self) -> dict[str, Any]:
        return {
            "counters": dict(self.counters),
            "histograms": {k: list(v) for k, v in self.histograms.items()},
            "gauges": dict(self.gauges),
        }


class CompositeMetrics:
    """
    Write-only fanout: the server feeds the per-session Metrics and the process exporter at once.
    """

    def __init__(self, *sinks: Any) -> None:
        self._sinks = [s for s in sinks if s is not None]

    def inc(self, name: str, value: int = 1) -> None:
        for s in self._sinks:
            s.inc(name, value)

    def observe(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.observe(name, value)

    def set(self, name: str, value: int) -> None:
        for s in self._sinks:
            s.set(name, value)


METRIC = {
    # Sessions
    "sessions_started_total": "session.started_total",
    "sessions_closed_total": "session.closed_total",
    "close_reason_total": "ws.close_reason_total",
    # Inbound
    "inbound_dropped_total": "inbound.dropped_total",
    "inbound_queue_dropped_total": "inbound.queue_dropped_total",
    "inbound_queue_evictions_total": "inbound.queue_evictions_total",
    "pending_turns_dropped_total": "turn.pending_dropped_total",
    # Turns
    "turns_started_total": "turn.started_total",
    "turns_completed_total": "turn.completed_total",
    "turns_errored_total": "turn.errored_total",
    "turns_abandoned_total": "turn.abandoned_total",
    "turn_first_increment_ms": "turn.first_increment_ms",
    "turn_total_ms": "turn.total_ms",
    "turn_increments_count": "turn.increments_count",
    "transfers_total": "turn.transfers_total",
    "end_calls_total": "turn.end_calls_total",
    # Keepalive / writer
    "keepalive_ping_pong_queue_delay_ms": "keepalive.ping_pong_queue_delay_ms",
    "keepalive_ping_pong_write_attempt_total": "keepalive.ping_pong_write_attempt_total",
    "keepalive_ping_pong_write_timeout_total": "keepalive.ping_pong_write_timeout_total",
    "ws_write_timeout_total": "ws.write_timeout_total",
    "ws_send_error_total": "ws.send_error_total",
    "outbound_queue_dropped_total": "outbound.queue_dropped_total",
    # Chat relay
    "chat_requests_total": "chat.requests_total",
    "chat_rate_limited_total": "chat.rate_limited_total",
    "chat_upstream_error_total": "chat.upstream_error_total",
}

# Families whose name carries a trailing ".<value>" that the exporter renders as a label.
LABELLED_METRICS = {
    METRIC["close_reason_total"]: "reason",
    METRIC["inbound_dropped_total"]: "reason",
}
