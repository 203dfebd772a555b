from __future__ import annotations

from typing import Any, Iterable

from .session import Message, Role


def map_role(role: Any, *, assistant_role: str = "agent") -> Role:
    """Total role mapping: only the platform's assistant role becomes "assistant"."""
    return "assistant" if role == assistant_role else "user"


def reduce_transcript(
    transcript: Iterable[Any],
    *,
    reminder: bool = False,
    reminder_text: str,
    greeting_text: str = "Hello",
) -> list[Message]:
    """
    Rebuild the request message sequence from the platform's replayed transcript.

    Entries may be pydantic utterances or plain dicts. Nothing is cached between calls: the
    replayed transcript is authoritative on every response-worthy event.
    """
    messages: list[Message] = []
    for utt in transcript:
        if isinstance(utt, dict):
            role, content = utt.get("role"), utt.get("content")
        else:
            role, content = getattr(utt, "role", None), getattr(utt, "content", None)
        messages.append(Message(role=map_role(role), content="" if content is None else str(content)))

    if not messages:
        messages.append(Message(role="user", content=greeting_text))
    if reminder:
        messages.append(Message(role="user", content=reminder_text))
    return messages
