from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dotenv import load_dotenv

from adlex_app.api.limits import (
    EMBEDDING_TIMEOUT_S,
    LLM_TIMEOUT_S,
    LMSTUDIO_TIMEOUT_S,
    env_int,
)

load_dotenv()


ALLOWED_PROVIDERS = {"openai", "openrouter", "lmstudio", "mock"}
EMBEDDING_PROVIDERS = {"openai", "lmstudio", "auto", "mock"}
PLACEHOLDER_KEYS = {"", "your-api-key", "your-openai-api-key", "changeme", "*"}

DEFAULT_CHAT_MODELS = {
    "openai": "gpt-4o",
    "openrouter": "openai/gpt-4o",
    "lmstudio": "llama-3.1-8b-instruct",
    "mock": "mock-chat-model",
}
DEFAULT_EMBEDDING_MODELS = {
    "openai": "text-embedding-3-small",
    "lmstudio": "text-embedding-nomic-embed-text-v1.5",
    "auto": "text-embedding-3-small",
    "mock": "mock-embedding-model",
}

APP_TITLE = "AdLex - Pharmaceutical Law Compliance Checker"


def _clean_key(raw: Optional[str]) -> str:
    key = (raw or "").strip()
    return "" if key.lower() in PLACEHOLDER_KEYS else key


def _truthy(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class LLMConfig:
    provider: str = "mock"
    chat_model: str = DEFAULT_CHAT_MODELS["mock"]
    embedding_provider: str = "mock"
    embedding_model: str = DEFAULT_EMBEDDING_MODELS["mock"]
    api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    openai_base: str = "https://api.openai.com/v1"
    openrouter_api_key: Optional[str] = None
    openrouter_base: str = "https://openrouter.ai/api/v1"
    lmstudio_api_key: str = "lm-studio"
    lmstudio_base: str = "http://localhost:1234/v1"
    app_url: str = "http://localhost:3000"
    app_title: str = APP_TITLE
    timeout_s: float = 40.0
    lmstudio_timeout_s: float = 90.0
    embedding_timeout_s: float = 60.0
    embedding_dimension: int = 1536
    max_tokens: int = 4000
    temperature: float = 0.1
    use_mock: bool = False
    valid: bool = True
    missing: List[str] = field(default_factory=list)

    @property
    def mode(self) -> str:
        if self.provider == "mock":
            return "mock"
        return "live" if self.valid else "misconfigured"

    def chat_timeout(self) -> float:
        return self.lmstudio_timeout_s if self.provider == "lmstudio" else self.timeout_s

    def meta(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "chat_model": self.chat_model,
            "embedding_provider": self.embedding_provider,
            "embedding_model": self.embedding_model,
            "embedding_dimension": self.embedding_dimension,
            "mode": self.mode,
            "valid": self.valid,
            "missing": list(self.missing),
        }


def _default_provider() -> str:
    env = (os.getenv("ADLEX_ENV") or "development").strip().lower()
    return "openai" if env == "production" else "lmstudio"


def load_llm_config() -> LLMConfig:
    log = logging.getLogger("adlex")
    use_mock = _truthy("ADLEX_USE_MOCK")
    provider = (os.getenv("AI_PROVIDER") or "").strip().lower() or _default_provider()
    if provider not in ALLOWED_PROVIDERS:
        log.warning("unknown AI_PROVIDER %r, falling back to mock", provider)
        provider = "mock"
    if use_mock:
        provider = "mock"

    cfg = LLMConfig(provider=provider, use_mock=use_mock)
    cfg.timeout_s = LLM_TIMEOUT_S
    cfg.lmstudio_timeout_s = LMSTUDIO_TIMEOUT_S
    cfg.embedding_timeout_s = EMBEDDING_TIMEOUT_S
    cfg.embedding_dimension = env_int("EMBEDDING_DIMENSION", 1536)
    cfg.max_tokens = env_int("AI_MAX_TOKENS", 4000)
    cfg.temperature = float(os.getenv("AI_TEMPERATURE", "0.1"))

    cfg.openai_base = (os.getenv("OPENAI_BASE_URL") or cfg.openai_base).rstrip("/")
    cfg.openrouter_base = (os.getenv("OPENROUTER_BASE_URL") or cfg.openrouter_base).rstrip("/")
    cfg.lmstudio_base = (os.getenv("LM_STUDIO_BASE_URL") or cfg.lmstudio_base).rstrip("/")
    cfg.app_url = os.getenv("ADLEX_APP_URL") or cfg.app_url

    generic_key = _clean_key(os.getenv("AI_API_KEY"))
    cfg.openai_api_key = _clean_key(os.getenv("OPENAI_API_KEY")) or (
        generic_key if provider == "openai" else ""
    ) or None
    cfg.openrouter_api_key = _clean_key(os.getenv("OPENROUTER_API_KEY")) or (
        generic_key if provider == "openrouter" else ""
    ) or None
    cfg.lmstudio_api_key = _clean_key(os.getenv("LM_STUDIO_API_KEY")) or "lm-studio"

    if provider == "openai":
        cfg.api_key = cfg.openai_api_key
    elif provider == "openrouter":
        cfg.api_key = cfg.openrouter_api_key
    elif provider == "lmstudio":
        cfg.api_key = cfg.lmstudio_api_key

    if provider == "lmstudio":
        chat_default = os.getenv("LM_STUDIO_CHAT_MODEL") or DEFAULT_CHAT_MODELS["lmstudio"]
    else:
        chat_default = DEFAULT_CHAT_MODELS[provider]
    cfg.chat_model = (os.getenv("AI_CHAT_MODEL") or chat_default).strip()

    if provider == "openrouter":
        # OpenRouter has no embeddings endpoint
        requested = (os.getenv("AI_EMBEDDING_PROVIDER") or "auto").strip().lower()
        cfg.embedding_provider = requested if requested in {"openai", "lmstudio", "auto"} else "auto"
    else:
        cfg.embedding_provider = provider
    if cfg.embedding_provider == "lmstudio":
        emb_default = os.getenv("LM_STUDIO_EMBEDDING_MODEL") or DEFAULT_EMBEDDING_MODELS["lmstudio"]
    else:
        emb_default = DEFAULT_EMBEDDING_MODELS[cfg.embedding_provider]
    cfg.embedding_model = (os.getenv("AI_EMBEDDING_MODEL") or emb_default).strip()

    required: List[str] = []
    if provider == "openai" and not cfg.openai_api_key:
        required.append("OPENAI_API_KEY")
    if provider == "openrouter" and not cfg.openrouter_api_key:
        required.append("OPENROUTER_API_KEY")
    if provider == "lmstudio" and not cfg.lmstudio_base:
        required.append("LM_STUDIO_BASE_URL")
    if cfg.embedding_provider == "openai" and not cfg.openai_api_key:
        required.append("OPENAI_API_KEY")
    cfg.missing = sorted(set(required))
    cfg.valid = provider == "mock" or not cfg.missing

    key = cfg.api_key or ""
    masked = (key[:4] + "***") if key else ""
    log.info(
        "LLM config: provider=%s chat_model=%s embedding_provider=%s embedding_model=%s dim=%s key=%s valid=%s",
        cfg.provider,
        cfg.chat_model,
        cfg.embedding_provider,
        cfg.embedding_model,
        cfg.embedding_dimension,
        masked,
        cfg.valid,
    )
    return cfg
