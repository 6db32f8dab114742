from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from .clients import LMStudioClient, MockClient, OpenAIClient, OpenRouterClient
from .config import LLMConfig, load_llm_config
from .interfaces import (
    BaseClient,
    ProviderError,
    ProviderModelMismatchError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RawResponse,
)

log = logging.getLogger("adlex")

EMBEDDING_MARKERS = ("embedding", "embed")


def is_embedding_model(model: str) -> bool:
    low = (model or "").lower()
    return any(marker in low for marker in EMBEDDING_MARKERS)


def fit_dimension(vector: List[float], dim: int) -> List[float]:
    """Zero-pad or truncate ``vector`` to the storage dimension."""
    if len(vector) == dim:
        return vector
    if len(vector) > dim:
        return vector[:dim]
    return vector + [0.0] * (dim - len(vector))


def build_client(provider: str, cfg: LLMConfig, *, embedding: bool = False, transport=None) -> BaseClient:
    if provider == "mock":
        return MockClient(cfg)
    timeout = cfg.embedding_timeout_s if embedding else cfg.chat_timeout()
    if provider == "openai":
        if not cfg.openai_api_key:
            raise ProviderUnavailableError(provider, "OPENAI_API_KEYが設定されていません")
        return OpenAIClient(cfg, timeout=timeout, transport=transport)
    if provider == "openrouter":
        if not cfg.openrouter_api_key:
            raise ProviderUnavailableError(provider, "OPENROUTER_API_KEYが設定されていません")
        return OpenRouterClient(cfg, timeout=timeout, transport=transport)
    if provider == "lmstudio":
        return LMStudioClient(cfg, timeout=timeout, transport=transport)
    raise ProviderUnavailableError(provider, f"unsupported provider: {provider}")


class Gateway:
    """Single entry point for chat completions and embeddings.

    Clients are built lazily and memoised per provider. Every call is bounded
    by the provider timeout; failures surface as ``ProviderError`` subclasses.
    """

    def __init__(self, cfg: Optional[LLMConfig] = None, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.cfg = cfg or load_llm_config()
        self._transport = transport
        self._chat_client: Optional[BaseClient] = None
        self._embedding_clients: Dict[str, BaseClient] = {}

    @property
    def provider(self) -> str:
        return self.cfg.provider

    def chat_client(self) -> BaseClient:
        if self._chat_client is None:
            self._chat_client = build_client(self.cfg.provider, self.cfg, transport=self._transport)
        return self._chat_client

    def embedding_client(self, provider: str) -> BaseClient:
        client = self._embedding_clients.get(provider)
        if client is None:
            client = build_client(provider, self.cfg, embedding=True, transport=self._transport)
            self._embedding_clients[provider] = client
        return client

    async def create_chat_completion(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> RawResponse:
        if is_embedding_model(self.cfg.chat_model):
            raise ProviderModelMismatchError(
                self.cfg.provider,
                f"チャットモデルとしてエンベディングモデル '{self.cfg.chat_model}' が設定されています。"
                "AI_CHAT_MODELにチャット用モデルを指定してください",
            )
        client = self.chat_client()
        try:
            return await asyncio.wait_for(
                client.chat(
                    messages,
                    tools=tools,
                    tool_choice=tool_choice,
                    temperature=self.cfg.temperature if temperature is None else temperature,
                    max_tokens=max_tokens or self.cfg.max_tokens,
                ),
                timeout=client.timeout,
            )
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(client.provider, client.timeout)

    async def _embed_with(self, provider: str, text: str) -> List[float]:
        client = self.embedding_client(provider)
        try:
            return await asyncio.wait_for(client.embed(text), timeout=self.cfg.embedding_timeout_s)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(provider, self.cfg.embedding_timeout_s)

    async def create_embedding(self, text: str) -> List[float]:
        if not text:
            raise ValueError("text for embedding must be non-empty")
        provider = self.cfg.embedding_provider
        if provider == "auto":
            try:
                vector = await self._embed_with("openai", text)
            except ProviderError as exc:
                log.warning("openai embedding failed (%s), trying lmstudio", exc.detail)
                vector = await self._embed_with("lmstudio", text)
        else:
            vector = await self._embed_with(provider, text)
        if len(vector) != self.cfg.embedding_dimension:
            log.debug(
                "embedding dimension %s adjusted to %s", len(vector), self.cfg.embedding_dimension
            )
        return fit_dimension(vector, self.cfg.embedding_dimension)

    async def validate_models(self) -> Dict[str, Any]:
        """Report model configuration issues with suggested fixes."""
        report: Dict[str, Any] = {**self.cfg.meta(), "issues": [], "suggestions": []}
        issues, suggestions = report["issues"], report["suggestions"]
        if is_embedding_model(self.cfg.chat_model):
            issues.append(f"chat model '{self.cfg.chat_model}' is an embedding model")
            suggestions.append("AI_CHAT_MODELにチャット用モデルを指定してください")
        if self.cfg.embedding_provider != "mock" and not is_embedding_model(self.cfg.embedding_model):
            issues.append(f"embedding model '{self.cfg.embedding_model}' does not look like an embedding model")
            suggestions.append("AI_EMBEDDING_MODELにエンベディング用モデルを指定してください")
        for name in self.cfg.missing:
            issues.append(f"{name} is not set")
        if issues or self.cfg.provider == "mock":
            return report
        try:
            models = await self.chat_client().list_models()
        except ProviderError as exc:
            issues.append(exc.detail)
            if self.cfg.provider == "lmstudio":
                suggestions.append("LM Studioを起動し、ローカルサーバーを開始してください")
            return report
        report["available_models"] = models
        if self.cfg.chat_model not in models:
            issues.append(f"chat model '{self.cfg.chat_model}' is not loaded")
            suggestions.append("利用可能なモデル: " + ", ".join(models[:10]))
        return report

    async def aclose(self) -> None:
        clients = [self._chat_client, *self._embedding_clients.values()]
        for client in clients:
            if client is not None:
                await client.aclose()
        self._chat_client = None
        self._embedding_clients = {}
