from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..config import LLMConfig
from ..interfaces import (
    BaseClient,
    ProviderAuthError,
    ProviderBadResponseError,
    ProviderModelMismatchError,
    ProviderQuotaExceededError,
    ProviderTimeoutError,
    ProviderUnavailableError,
    RawResponse,
    ToolCall,
)

log = logging.getLogger("adlex")


def _looks_like_model_error(status: int, body: str) -> bool:
    low = body.lower()
    if "failed to load model" in low and "not llm" in low:
        return True
    if "model" in low and "not found" in low:
        return True
    if "model_not_found" in low or ("does not exist" in low and "model" in low):
        return True
    return status == 404


def parse_chat_payload(provider: str, data: Any) -> RawResponse:
    """Normalise an OpenAI-style ``/chat/completions`` body."""
    if not isinstance(data, dict):
        raise ProviderBadResponseError(provider, "response body is not an object")
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        raise ProviderBadResponseError(provider, "response has no choices")
    choice = choices[0]
    message = choice.get("message") or {}
    calls: List[ToolCall] = []
    for raw in message.get("tool_calls") or []:
        fn = (raw or {}).get("function") or {}
        if fn.get("name"):
            args = fn.get("arguments")
            if not isinstance(args, str):
                args = json.dumps(args or {}, ensure_ascii=False)
            calls.append(ToolCall(name=fn["name"], arguments=args))
    legacy = message.get("function_call")
    if not calls and isinstance(legacy, dict) and legacy.get("name"):
        calls.append(ToolCall(name=legacy["name"], arguments=legacy.get("arguments") or "{}"))
    return RawResponse(
        content=message.get("content"),
        tool_calls=calls,
        provider=provider,
        model=data.get("model") or "",
        usage=data.get("usage") or {},
        finish_reason=choice.get("finish_reason"),
    )


class OpenAICompatibleClient(BaseClient):
    """Shared transport for backends speaking the OpenAI REST dialect."""

    provider = "openai"
    unreachable_hint = "ネットワーク接続とAPIエンドポイントの設定を確認してください。"

    def __init__(
        self,
        cfg: LLMConfig,
        *,
        base_url: str,
        api_key: str,
        timeout: float,
        extra_headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.chat_model = cfg.chat_model
        self.embedding_model = cfg.embedding_model
        self.timeout = timeout
        self._base = base_url.rstrip("/")
        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        headers.update(extra_headers or {})
        self._http = httpx.AsyncClient(
            base_url=self._base, headers=headers, timeout=timeout, transport=transport
        )

    async def _request(self, method: str, path: str, payload: Optional[dict] = None, timeout: Optional[float] = None) -> Any:
        timeout = timeout or self.timeout
        try:
            r = await self._http.request(method, path, json=payload, timeout=timeout)
        except httpx.TimeoutException:
            raise ProviderTimeoutError(self.provider, timeout)
        except httpx.TransportError as exc:
            raise ProviderUnavailableError(
                self.provider,
                f"{self.provider}に接続できません ({self._base}): {exc}. {self.unreachable_hint}",
            )
        body = r.text
        if r.status_code in (401, 403):
            raise ProviderAuthError(self.provider, body)
        if r.status_code == 429 or (r.status_code >= 400 and "insufficient_quota" in body):
            raise ProviderQuotaExceededError(self.provider, body)
        if r.status_code >= 500 and not _looks_like_model_error(r.status_code, body):
            raise ProviderUnavailableError(self.provider, f"HTTP {r.status_code}: {body[:200]}")
        if r.status_code >= 400:
            if _looks_like_model_error(r.status_code, body):
                raise ProviderModelMismatchError(self.provider, body[:500])
            raise ProviderBadResponseError(self.provider, f"HTTP {r.status_code}: {body[:500]}")
        try:
            return r.json()
        except ValueError:
            raise ProviderBadResponseError(self.provider, f"non-JSON body: {body[:200]}")

    def _chat_payload(
        self,
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]],
        tool_choice: Optional[Any],
        temperature: float,
        max_tokens: int,
    ) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": self.chat_model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if tools and self.supports_tools:
            payload["tools"] = tools
            if tool_choice is not None:
                payload["tool_choice"] = tool_choice
        return payload

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> RawResponse:
        payload = self._chat_payload(messages, tools, tool_choice, temperature, max_tokens)
        data = await self._request("POST", "/chat/completions", payload)
        return parse_chat_payload(self.provider, data)

    async def embed(self, text: str) -> List[float]:
        data = await self._request(
            "POST", "/embeddings", {"model": self.embedding_model, "input": text}
        )
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError):
            raise ProviderBadResponseError(self.provider, "embedding response has no data")
        if not isinstance(vector, list) or not vector:
            raise ProviderBadResponseError(self.provider, "embedding vector is empty")
        return [float(x) for x in vector]

    async def list_models(self) -> List[str]:
        data = await self._request("GET", "/models")
        return [m.get("id", "") for m in (data or {}).get("data", []) if isinstance(m, dict)]

    async def aclose(self) -> None:
        await self._http.aclose()


class OpenAIClient(OpenAICompatibleClient):
    provider = "openai"

    def __init__(self, cfg: LLMConfig, *, timeout: Optional[float] = None, transport=None):
        super().__init__(
            cfg,
            base_url=cfg.openai_base,
            api_key=cfg.openai_api_key or "",
            timeout=timeout or cfg.timeout_s,
            transport=transport,
        )
