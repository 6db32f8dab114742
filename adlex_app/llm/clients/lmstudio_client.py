from __future__ import annotations

from typing import Optional

from ..config import LLMConfig
from .openai_client import OpenAICompatibleClient


class LMStudioClient(OpenAICompatibleClient):
    """Local LM Studio server.

    Local models do not reliably honour ``tools``; requests are sent without
    them and the reply is recovered from free text by the extractor.
    """

    provider = "lmstudio"
    supports_tools = False
    unreachable_hint = (
        "LM Studioを起動し、チャットモデルとエンベディングモデルをロードしてから"
        "ローカルサーバーを開始してください。"
    )

    def __init__(self, cfg: LLMConfig, *, timeout: Optional[float] = None, transport=None):
        super().__init__(
            cfg,
            base_url=cfg.lmstudio_base,
            api_key=cfg.lmstudio_api_key,
            timeout=timeout or cfg.lmstudio_timeout_s,
            transport=transport,
        )
