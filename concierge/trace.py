from __future__ import annotations

import asyncio
import hashlib
import json
from collections import deque
from dataclasses import dataclass
from typing import Any


def hash_payload(obj: Any) -> str:
    # Canonical JSON so equal payloads hash equally across runs.
    blob = json.dumps(obj, separators=(",", ":"), sort_keys=True, ensure_ascii=True, default=str)
    return hashlib.sha256(blob.encode("utf-8")).hexdigest()


@dataclass(frozen=True, slots=True)
class TraceEvent:
    seq: int
    t_ms: int
    call_id: str
    response_id: int
    session_state: str
    turn_phase: str
    event_type: str
    payload: dict[str, Any]
    payload_hash: str


class TraceSink:
    """
    Bounded, ordered record of one session's state transitions and wire events.

    Tests await specific transitions through wait_for() instead of sleeping.
    """

    def __init__(self, *, max_events: int = 10_000) -> None:
        self._seq = 0
        self._events: deque[TraceEvent] = deque(maxlen=int(max_events))
        self._cv = asyncio.Condition()

    @property
    def events(self) -> list[TraceEvent]:
        return list(self._events)

    def of_type(self, event_type: str) -> list[TraceEvent]:
        return [e for e in self._events if e.event_type == event_type]

    async def emit(
        self,
        *,
        t_ms: int,
        call_id: str,
        response_id: int,
        session_state: str,
        turn_phase: str,
        event_type: str,
        payload: dict[str, Any],
    ) -> None:
        self._seq += 1
        ev = TraceEvent(
            seq=self._seq,
            t_ms=int(t_ms),
            call_id=call_id,
            response_id=int(response_id),
            session_state=session_state,
            turn_phase=turn_phase,
            event_type=event_type,
            payload=dict(payload),
            payload_hash=hash_payload(payload),
        )
        async with self._cv:
            self._events.append(ev)
            self._cv.notify_all()

    async def wait_for(self, event_type: str, *, count: int = 1, **payload_match: Any) -> TraceEvent:
        """
        Block until `count` events of `event_type` whose payload contains payload_match exist.
        Returns the count-th such event.
        """

        def _matches(e: TraceEvent) -> bool:
            if e.event_type != event_type:
                return False
            return all(e.payload.get(k) == v for k, v in payload_match.items())

        async with self._cv:
            while True:
                hits = [e for e in self._events if _matches(e)]
                if len(hits) >= count:
                    return hits[count - 1]
                await self._cv.wait()
