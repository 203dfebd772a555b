from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass
from typing import AsyncIterator, Optional, Sequence, Union

from .llm_client import LLMClient
from .session import Message


class CompletionError(RuntimeError):
    """Request/response completion failed (used by callers that want the whole text)."""


@dataclass(frozen=True, slots=True)
class TextDelta:
    text: str


@dataclass(frozen=True, slots=True)
class CompletionDone:
    pass


@dataclass(frozen=True, slots=True)
class CompletionFailed:
    reason: str


CompletionEvent = Union[TextDelta, CompletionDone, CompletionFailed]


class CompletionClient:
    """
    Fixed system prompt and output bound over one streaming provider.

    stream() yields TextDelta increments and always ends with exactly one CompletionDone or
    CompletionFailed. Provider exceptions never escape; there is no retry.
    """

    def __init__(
        self,
        *,
        llm: Optional[LLMClient],
        system_prompt: str,
        max_output_tokens: int,
    ) -> None:
        self._llm = llm
        self.system_prompt = system_prompt
        self.max_output_tokens = int(max_output_tokens)

    async def stream(self, messages: Sequence[Message]) -> AsyncIterator[CompletionEvent]:
        if self._llm is None:
            yield CompletionFailed(reason="no completion provider configured")
            return
        try:
            provider_stream = self._llm.stream_text(
                system_prompt=self.system_prompt,
                max_output_tokens=self.max_output_tokens,
                messages=list(messages),
            )
            async with aclosing(provider_stream) as s:
                async for text in s:
                    if text:
                        yield TextDelta(text=str(text))
        except Exception as e:
            yield CompletionFailed(reason=f"{type(e).__name__}: {e}")
            return
        yield CompletionDone()

    async def complete_text(self, messages: Sequence[Message]) -> str:
        parts: list[str] = []
        async with aclosing(self.stream(messages)) as events:
            async for ev in events:
                if isinstance(ev, TextDelta):
                    parts.append(ev.text)
                elif isinstance(ev, CompletionFailed):
                    raise CompletionError(ev.reason)
        return "".join(parts)
