from __future__ import annotations

import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

from .session import Message


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class ConversationEntry:
    id: str
    started_at: str
    last_message_at: str
    messages: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "startedAt": self.started_at,
            "lastMessageAt": self.last_message_at,
            "messages": [dict(m) for m in self.messages],
        }


class ConversationLog:
    """
    In-memory record of recent chat conversations, most recently updated last.

    Each record() call replaces the stored transcript with the client's copy plus the new
    reply, since chat clients resend the whole history every request. When full, the
    conversation that has been idle longest is evicted.
    """

    def __init__(self, *, max_size: int = 1000, now_iso: Callable[[], str] = utc_now_iso) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self.max_size = int(max_size)
        self._now_iso = now_iso
        self._lock = threading.Lock()
        self._entries: OrderedDict[str, ConversationEntry] = OrderedDict()
        self._unknown_seq = 0

    def __len__(self) -> int:
        return len(self._entries)

    def record(
        self,
        conversation_id: Optional[str],
        messages: Sequence[Message],
        reply: str,
    ) -> ConversationEntry:
        ts = self._now_iso()
        with self._lock:
            cid = (conversation_id or "").strip()
            if not cid:
                self._unknown_seq += 1
                cid = f"unknown_{self._unknown_seq}"
            entry = self._entries.get(cid)
            if entry is None:
                entry = ConversationEntry(id=cid, started_at=ts, last_message_at=ts)
                self._entries[cid] = entry
                while len(self._entries) > self.max_size:
                    self._entries.popitem(last=False)
            else:
                self._entries.move_to_end(cid)
            entry.last_message_at = ts
            entry.messages = [{**m.as_dict(), "timestamp": ts} for m in messages]
            entry.messages.append({"role": "assistant", "content": reply, "timestamp": ts})
            return entry

    def list(self, *, limit: int = 50, offset: int = 0) -> tuple[int, list[dict[str, Any]]]:
        with self._lock:
            newest_first = list(reversed(self._entries.values()))
        window = newest_first[max(0, offset) : max(0, offset) + max(0, limit)]
        return len(newest_first), [e.to_dict() for e in window]

    def get(self, conversation_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(conversation_id)
            return None if entry is None else entry.to_dict()
