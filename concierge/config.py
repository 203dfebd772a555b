from __future__ import annotations

import os
from dataclasses import dataclass

from .transfer_policy import DEFAULT_TRANSFER_PHRASES


def _getenv_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def _getenv_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _getenv_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except ValueError:
        return default


def _getenv_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw


def _getenv_choice(name: str, default: str, choices: set[str]) -> str:
    value = _getenv_str(name, default).strip().lower()
    return value if value in choices else default


def _getenv_csv(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(part.strip() for part in raw.split(",") if part.strip())


DEFAULT_GREETING_TEXT = "Hi, thanks for calling! How can I help you today?"
DEFAULT_ERROR_APOLOGY_TEXT = (
    "I'm sorry, I'm having trouble on my end right now. "
    "Let me connect you with a team member who can help."
)
DEFAULT_REMINDER_PROMPT_TEXT = (
    "(The caller has been quiet for a few seconds. Briefly and warmly check in to see if "
    "they are still there or if there is anything else you can help with.)"
)
DEFAULT_EMPTY_TRANSCRIPT_TEXT = "Hello"
DEFAULT_CHAT_FALLBACK_REPLY = "I'm sorry, I couldn't generate a response."


@dataclass(frozen=True, slots=True)
class BridgeConfig:
    # Retell handshake
    retell_auto_reconnect: bool = True
    retell_call_details: bool = True
    retell_send_update_agent_on_connect: bool = False
    retell_responsiveness: float = 0.8
    retell_interruption_sensitivity: float = 0.8
    retell_reminder_trigger_ms: int = 10000
    retell_reminder_max_count: int = 2

    # Greeting policy: proactive (scripted response_id=0) | silent (wait for first inbound event)
    greeting_mode: str = "proactive"
    greeting_text: str = DEFAULT_GREETING_TEXT

    # Socket / queues
    inbound_queue_max: int = 256
    outbound_queue_max: int = 256
    pending_turns_max: int = 8
    ping_interval_ms: int = 2000
    ws_write_timeout_ms: int = 400
    ws_close_on_write_timeout: bool = True
    ws_max_consecutive_write_timeouts: int = 2
    ws_max_frame_bytes: int = 262_144

    # Completion provider
    llm_provider: str = "anthropic"  # anthropic | openai | gemini | fake
    llm_timeout_ms: int = 15000
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    voice_max_output_tokens: int = 300
    chat_max_output_tokens: int = 1024

    # Prompt sources (opaque text, assembled in prompts.py)
    knowledge_base_path: str = ""
    voice_rules_path: str = ""
    chat_rules_path: str = ""

    # Turn behavior
    transfer_number: str = "+19047704464"
    transfer_phrases: tuple[str, ...] = DEFAULT_TRANSFER_PHRASES
    end_call_phrases: tuple[str, ...] = ()
    error_apology_text: str = DEFAULT_ERROR_APOLOGY_TEXT
    reminder_prompt_text: str = DEFAULT_REMINDER_PROMPT_TEXT
    empty_transcript_text: str = DEFAULT_EMPTY_TRANSCRIPT_TEXT

    # Chat relay
    chat_rate_limit: int = 30
    chat_rate_window_ms: int = 60_000
    chat_max_messages: int = 50
    chat_max_message_chars: int = 5000
    chat_fallback_reply: str = DEFAULT_CHAT_FALLBACK_REPLY
    conversation_log_max: int = 1000
    admin_password: str = ""
    allowed_origins: tuple[str, ...] = ()

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json | text

    def api_key(self) -> str:
        return {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "gemini": self.gemini_api_key,
        }.get(self.llm_provider, "")

    @staticmethod
    def from_env() -> "BridgeConfig":
        return BridgeConfig(
            retell_auto_reconnect=_getenv_bool("RETELL_AUTO_RECONNECT", True),
            retell_call_details=_getenv_bool("RETELL_CALL_DETAILS", True),
            retell_send_update_agent_on_connect=_getenv_bool(
                "RETELL_SEND_UPDATE_AGENT_ON_CONNECT", False
            ),
            retell_responsiveness=_getenv_float("RETELL_RESPONSIVENESS", 0.8),
            retell_interruption_sensitivity=_getenv_float("RETELL_INTERRUPTION_SENSITIVITY", 0.8),
            retell_reminder_trigger_ms=_getenv_int("RETELL_REMINDER_TRIGGER_MS", 10000),
            retell_reminder_max_count=_getenv_int("RETELL_REMINDER_MAX_COUNT", 2),
            greeting_mode=_getenv_choice("GREETING_MODE", "proactive", {"proactive", "silent"}),
            greeting_text=_getenv_str("GREETING_TEXT", DEFAULT_GREETING_TEXT),
            inbound_queue_max=max(1, _getenv_int("INBOUND_QUEUE_MAX", 256)),
            outbound_queue_max=max(1, _getenv_int("OUTBOUND_QUEUE_MAX", 256)),
            pending_turns_max=max(1, _getenv_int("PENDING_TURNS_MAX", 8)),
            ping_interval_ms=_getenv_int("PING_INTERVAL_MS", 2000),
            ws_write_timeout_ms=_getenv_int("WS_WRITE_TIMEOUT_MS", 400),
            ws_close_on_write_timeout=_getenv_bool("WS_CLOSE_ON_WRITE_TIMEOUT", True),
            ws_max_consecutive_write_timeouts=_getenv_int("WS_MAX_CONSECUTIVE_WRITE_TIMEOUTS", 2),
            ws_max_frame_bytes=_getenv_int("WS_MAX_FRAME_BYTES", 262_144),
            llm_provider=_getenv_choice(
                "LLM_PROVIDER", "anthropic", {"anthropic", "openai", "gemini", "fake"}
            ),
            llm_timeout_ms=_getenv_int("LLM_TIMEOUT_MS", 15000),
            anthropic_api_key=_getenv_str("ANTHROPIC_API_KEY", ""),
            anthropic_model=_getenv_str("ANTHROPIC_MODEL", "claude-sonnet-4-20250514"),
            openai_api_key=_getenv_str("OPENAI_API_KEY", ""),
            openai_model=_getenv_str("OPENAI_MODEL", "gpt-4o-mini"),
            gemini_api_key=_getenv_str("GEMINI_API_KEY", ""),
            gemini_model=_getenv_str("GEMINI_MODEL", "gemini-2.5-flash"),
            voice_max_output_tokens=max(1, _getenv_int("VOICE_MAX_OUTPUT_TOKENS", 300)),
            chat_max_output_tokens=max(1, _getenv_int("CHAT_MAX_OUTPUT_TOKENS", 1024)),
            knowledge_base_path=_getenv_str("KNOWLEDGE_BASE_PATH", ""),
            voice_rules_path=_getenv_str("VOICE_RULES_PATH", ""),
            chat_rules_path=_getenv_str("CHAT_RULES_PATH", ""),
            transfer_number=_getenv_str("TRANSFER_NUMBER", "+19047704464").strip(),
            transfer_phrases=_getenv_csv("TRANSFER_PHRASES", DEFAULT_TRANSFER_PHRASES),
            end_call_phrases=_getenv_csv("END_CALL_PHRASES", ()),
            error_apology_text=_getenv_str("ERROR_APOLOGY_TEXT", DEFAULT_ERROR_APOLOGY_TEXT),
            reminder_prompt_text=_getenv_str("REMINDER_PROMPT_TEXT", DEFAULT_REMINDER_PROMPT_TEXT),
            chat_rate_limit=max(1, _getenv_int("CHAT_RATE_LIMIT", 30)),
            chat_rate_window_ms=max(1, _getenv_int("CHAT_RATE_WINDOW_MS", 60_000)),
            chat_max_messages=max(1, _getenv_int("CHAT_MAX_MESSAGES", 50)),
            chat_max_message_chars=max(1, _getenv_int("CHAT_MAX_MESSAGE_CHARS", 5000)),
            conversation_log_max=max(1, _getenv_int("CONVERSATION_LOG_MAX", 1000)),
            admin_password=_getenv_str("ADMIN_PASSWORD", ""),
            allowed_origins=_getenv_csv("ALLOWED_ORIGINS", ()),
            log_level=_getenv_str("LOG_LEVEL", "INFO").strip().upper(),
            log_format=_getenv_choice("LOG_FORMAT", "json", {"json", "text"}),
        )
