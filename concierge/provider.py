from __future__ import annotations

from .config import BridgeConfig
from .llm_client import AnthropicLLMClient, GeminiLLMClient, LLMClient, OpenAILLMClient


def build_llm_client(cfg: BridgeConfig) -> LLMClient | None:
    """
    None means "no provider": every voice turn takes the apology + transfer path and the
    chat relay answers 500.
    """
    if cfg.llm_provider == "fake" or not cfg.api_key():
        return None
    if cfg.llm_provider == "openai":
        return OpenAILLMClient(
            api_key=cfg.openai_api_key,
            model=cfg.openai_model,
            timeout_ms=cfg.llm_timeout_ms,
        )
    if cfg.llm_provider == "gemini":
        return GeminiLLMClient(api_key=cfg.gemini_api_key, model=cfg.gemini_model)
    return AnthropicLLMClient(
        api_key=cfg.anthropic_api_key,
        model=cfg.anthropic_model,
        timeout_ms=cfg.llm_timeout_ms,
    )
