from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import BridgeConfig
from .log import log_event


logger = logging.getLogger("concierge.prompts")


DEFAULT_CHAT_RULES = """You are a friendly, knowledgeable customer service agent.
Answer questions about the business using only the knowledge base below.

TONE & STYLE:
- Warm and welcoming, professional but conversational.
- Answer the question directly, then offer relevant follow-up info. Keep responses brief for chat, 2-4 short paragraphs max.
- If you don't know something specific, say so honestly and direct them to contact the team.
- Use plain text only. No markdown, no bullet points, no bold formatting.

IMPORTANT GUIDELINES:
- Never fabricate specific dollar amounts beyond what the knowledge base states.
- Do NOT share internal operational details.
- Do NOT provide legal advice."""


DEFAULT_VOICE_RULES = """You are a friendly, knowledgeable phone agent answering a live call.
Answer questions about the business using only the knowledge base below.

SPEAKING STYLE:
- Your words are read aloud by a text-to-speech voice. Use short spoken sentences in plain text.
- No lists, markdown, URLs or symbols. Say numbers the way a person would say them.
- Keep each reply to one to three sentences, then let the caller talk.
- If you don't know something specific, say so honestly.

HANDOFF:
- If the caller asks for a person, has a billing, cancellation or account-specific issue, or you
  cannot help, say "Let me connect you with a team member" and stop talking.
- For emergencies on the water, tell the caller to hang up and call 911."""


@dataclass(frozen=True, slots=True)
class PromptSet:
    voice: str
    chat: str


def _read_text(path: str, *, what: str) -> str:
    if not path:
        return ""
    p = Path(path)
    try:
        return p.read_text(encoding="utf-8").strip()
    except OSError as e:
        log_event(
            logger,
            "prompt_source_unreadable",
            level=logging.WARNING,
            component="prompts",
            source=what,
            path=str(p),
            error=str(e),
        )
        return ""


def assemble_prompt(rules: str, knowledge_base: str) -> str:
    if not knowledge_base:
        return rules.strip()
    return f"{rules.strip()}\n\nKNOWLEDGE BASE:\n\n{knowledge_base}"


def load_prompt_set(cfg: BridgeConfig) -> PromptSet:
    """
    Knowledge base and channel rules are opaque text supplied by deployment. Missing
    sources degrade to the built-in rules rather than failing startup.
    """
    kb = _read_text(cfg.knowledge_base_path, what="knowledge_base")
    voice_rules = _read_text(cfg.voice_rules_path, what="voice_rules") or DEFAULT_VOICE_RULES
    chat_rules = _read_text(cfg.chat_rules_path, what="chat_rules") or DEFAULT_CHAT_RULES
    return PromptSet(
        voice=assemble_prompt(voice_rules, kb),
        chat=assemble_prompt(chat_rules, kb),
    )
