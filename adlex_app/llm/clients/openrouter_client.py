from __future__ import annotations

import re
from typing import List, Optional

from ..config import LLMConfig
from ..interfaces import ProviderModelMismatchError
from .openai_client import OpenAICompatibleClient


def sanitize_referer(url: str) -> str:
    """OpenRouter rejects referers with paths, queries or non-ASCII hosts."""
    m = re.match(r"^(https?://[A-Za-z0-9.\-]+(?::\d+)?)", (url or "").strip())
    return m.group(1) if m else "http://localhost:3000"


class OpenRouterClient(OpenAICompatibleClient):
    provider = "openrouter"

    def __init__(self, cfg: LLMConfig, *, timeout: Optional[float] = None, transport=None):
        super().__init__(
            cfg,
            base_url=cfg.openrouter_base,
            api_key=cfg.openrouter_api_key or "",
            timeout=timeout or cfg.timeout_s,
            extra_headers={
                "HTTP-Referer": sanitize_referer(cfg.app_url),
                "X-Title": cfg.app_title,
            },
            transport=transport,
        )

    async def embed(self, text: str) -> List[float]:
        raise ProviderModelMismatchError(
            self.provider, "OpenRouter does not serve embeddings; use openai or lmstudio"
        )
