from __future__ import annotations

import logging
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from .completion import CompletionClient, CompletionError
from .conversation_log import ConversationLog
from .log import log_event
from .session import Message
from .transcript import map_role


logger = logging.getLogger("concierge.chat")


class ChatInputError(ValueError):
    """Request body does not carry a usable message list (HTTP 400)."""


class ChatUnavailableError(RuntimeError):
    """No completion provider is configured (HTTP 500)."""


class ChatRequest(BaseModel):
    """
    Two accepted shapes: {messages, conversationId} from the web widget, or
    {message, history} from simpler clients.
    """

    # Browser widgets often send a numeric id (Date.now()).
    model_config = ConfigDict(extra="ignore", populate_by_name=True, coerce_numbers_to_str=True)
    messages: Optional[list[Any]] = None
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    message: Optional[str] = None
    history: Optional[list[Any]] = None

    def raw_messages(self) -> list[Any]:
        if self.messages:
            return list(self.messages)
        if self.message is not None and self.message.strip():
            return [*(self.history or []), {"role": "user", "content": self.message}]
        raise ChatInputError("Messages array is required.")


def clean_messages(raw: list[Any], *, max_messages: int, max_chars: int) -> list[Message]:
    """Keep the newest messages; anything that is not "assistant" speaks as the user."""
    cleaned: list[Message] = []
    for m in raw[-max_messages:]:
        if isinstance(m, dict):
            role, content = m.get("role"), m.get("content")
        else:
            role, content = None, m
        cleaned.append(
            Message(
                role=map_role(role, assistant_role="assistant"),
                content=("" if content is None else str(content))[:max_chars],
            )
        )
    return cleaned


class ChatRelay:
    def __init__(
        self,
        *,
        completion: Optional[CompletionClient],
        conversations: ConversationLog,
        fallback_reply: str,
        max_messages: int = 50,
        max_chars: int = 5000,
    ) -> None:
        self._completion = completion
        self._conversations = conversations
        self._fallback_reply = fallback_reply
        self._max_messages = int(max_messages)
        self._max_chars = int(max_chars)

    async def reply(self, req: ChatRequest) -> str:
        if self._completion is None:
            raise ChatUnavailableError("Server misconfigured: missing API key.")
        messages = clean_messages(
            req.raw_messages(), max_messages=self._max_messages, max_chars=self._max_chars
        )
        try:
            text = await self._completion.complete_text(messages)
        except CompletionError as e:
            log_event(
                logger,
                "chat_upstream_error",
                level=logging.WARNING,
                component="chat",
                conversation_id=req.conversation_id,
                reason=str(e),
            )
            raise
        reply = text.strip() or self._fallback_reply
        self._conversations.record(req.conversation_id, messages, reply)
        log_event(
            logger,
            "chat_reply",
            component="chat",
            conversation_id=req.conversation_id,
            messages=len(messages),
            reply_chars=len(reply),
        )
        return reply
