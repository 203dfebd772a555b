from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional, Protocol, Sequence

from .clock import Clock
from .session import Message


class LLMClient(Protocol):
    def stream_text(
        self,
        *,
        system_prompt: str,
        max_output_tokens: int,
        messages: Sequence[Message],
    ) -> AsyncIterator[str]:
        ...

    async def aclose(self) -> None:
        ...


@dataclass(frozen=True, slots=True)
class FakeLLMClient:
    """
    Deterministic token stream for tests. Records every request it receives; raises `error`
    after the scripted tokens when one is given.
    """

    tokens: list[str]
    clock: Optional[Clock] = None
    token_delay_ms: int = 0
    error: Optional[Exception] = None
    requests: list[dict[str, Any]] = field(default_factory=list)

    async def stream_text(
        self,
        *,
        system_prompt: str,
        max_output_tokens: int,
        messages: Sequence[Message],
    ) -> AsyncIterator[str]:
        self.requests.append(
            {
                "system_prompt": system_prompt,
                "max_output_tokens": max_output_tokens,
                "messages": list(messages),
            }
        )
        for tok in self.tokens:
            if self.token_delay_ms > 0 and self.clock is not None:
                await self.clock.sleep_ms(self.token_delay_ms)
            yield tok
        if self.error is not None:
            raise self.error

    async def aclose(self) -> None:
        return


class AnthropicLLMClient:
    """
    Anthropic Messages streaming adapter.

    The SDK client is created lazily so tests and the `fake` provider never need credentials;
    a prebuilt client (or test double) can be passed as `client`.
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = "claude-sonnet-4-20250514",
        timeout_ms: int = 15000,
        client: Any = None,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.timeout_ms = int(timeout_ms)
        self._client: Any = client

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from anthropic import AsyncAnthropic
        except ImportError as e:
            raise RuntimeError(
                "AnthropicLLMClient requires the 'anthropic' package. "
                "Install with: python3 -m pip install -e ."
            ) from e
        self._client = AsyncAnthropic(
            api_key=self._api_key,
            timeout=max(1.0, self.timeout_ms / 1000.0),
            max_retries=0,
        )
        return self._client

    async def stream_text(
        self,
        *,
        system_prompt: str,
        max_output_tokens: int,
        messages: Sequence[Message],
    ) -> AsyncIterator[str]:
        client = self._ensure_client()
        async with client.messages.stream(
            model=self.model,
            max_tokens=int(max_output_tokens),
            system=system_prompt,
            messages=[m.as_dict() for m in messages],
        ) as stream:
            async for text in stream.text_stream:
                if text:
                    yield str(text)

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            self._client = None
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res


class OpenAILLMClient:
    """
    OpenAI Responses streaming adapter. Only output text deltas are surfaced.
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = "gpt-4o-mini",
        timeout_ms: int = 15000,
        client: Any = None,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self.timeout_ms = int(timeout_ms)
        self._client: Any = client

    def _ensure_client(self) -> Any:
        if self._client is not None:
            return self._client
        try:
            from openai import AsyncOpenAI
        except ImportError as e:
            raise RuntimeError(
                "OpenAILLMClient requires the optional dependency 'openai'. "
                "Install with: python3 -m pip install -e '.[openai]'"
            ) from e
        self._client = AsyncOpenAI(api_key=self._api_key, max_retries=0)
        return self._client

    @staticmethod
    def _delta_text(event: Any) -> str:
        if isinstance(event, dict):
            etype, delta = event.get("type"), event.get("delta")
        else:
            etype, delta = getattr(event, "type", None), getattr(event, "delta", None)
        if etype == "response.output_text.delta" and isinstance(delta, str):
            return delta
        return ""

    async def stream_text(
        self,
        *,
        system_prompt: str,
        max_output_tokens: int,
        messages: Sequence[Message],
    ) -> AsyncIterator[str]:
        client = self._ensure_client()
        stream = await client.responses.create(
            model=self.model,
            instructions=system_prompt,
            input=[m.as_dict() for m in messages],
            max_output_tokens=int(max_output_tokens),
            stream=True,
            timeout=max(1.0, self.timeout_ms / 1000.0),
        )
        async for event in stream:
            if isinstance(event, dict):
                etype = event.get("type")
            else:
                etype = getattr(event, "type", None)
            if etype in {"error", "response.failed"}:
                raise RuntimeError(f"openai stream failed: {etype}")
            delta = self._delta_text(event)
            if delta:
                yield delta

    async def aclose(self) -> None:
        if self._client is not None:
            close_fn = getattr(self._client, "close", None)
            self._client = None
            if callable(close_fn):
                res = close_fn()
                if asyncio.iscoroutine(res):
                    await res


class GeminiLLMClient:
    """
    Gemini streaming adapter using the Google Gen AI SDK (google-genai).
    """

    def __init__(
        self,
        *,
        api_key: str = "",
        model: str = "gemini-2.5-flash",
        client: Any = None,
    ) -> None:
        self._api_key = api_key
        self.model = model
        self._aclient: Any = client

    def _ensure_client(self) -> Any:
        if self._aclient is not None:
            return self._aclient
        try:
            from google import genai
        except ImportError as e:
            raise RuntimeError(
                "GeminiLLMClient requires the optional dependency 'google-genai'. "
                "Install with: python3 -m pip install -e '.[gemini]'"
            ) from e
        # The async surface (aio) owns the HTTP session lifecycle.
        self._aclient = genai.Client(api_key=self._api_key).aio
        return self._aclient

    @staticmethod
    def _chunk_text(chunk: Any) -> str:
        txt = getattr(chunk, "text", None)
        if txt:
            return str(txt)
        candidates = getattr(chunk, "candidates", None) or []
        if not candidates:
            return ""
        parts = getattr(getattr(candidates[0], "content", None), "parts", None) or []
        return "".join(
            str(p.text) for p in parts if getattr(p, "text", None) and not getattr(p, "thought", False)
        )

    async def stream_text(
        self,
        *,
        system_prompt: str,
        max_output_tokens: int,
        messages: Sequence[Message],
    ) -> AsyncIterator[str]:
        aclient = self._ensure_client()
        contents = [
            {"role": "model" if m.role == "assistant" else "user", "parts": [{"text": m.content}]}
            for m in messages
        ]
        stream = await aclient.models.generate_content_stream(
            model=self.model,
            contents=contents,
            config={
                "system_instruction": system_prompt,
                "max_output_tokens": int(max_output_tokens),
            },
        )
        # The stream may end with an empty chunk; drain it to completion.
        async for chunk in stream:
            text = self._chunk_text(chunk)
            if text:
                yield text

    async def aclose(self) -> None:
        if self._aclient is not None:
            close_fn = getattr(self._aclient, "aclose", None)
            self._aclient = None
            if callable(close_fn):
                await close_fn()
