from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ToolCall:
    name: str
    arguments: str


@dataclass
class RawResponse:
    """Provider-neutral chat completion result."""

    content: Optional[str]
    tool_calls: List[ToolCall] = field(default_factory=list)
    provider: str = ""
    model: str = ""
    usage: Dict[str, Any] = field(default_factory=dict)
    finish_reason: Optional[str] = None

    def tool_call(self, name: str) -> Optional[ToolCall]:
        for call in self.tool_calls:
            if call.name == name:
                return call
        return None


class ProviderError(Exception):
    retryable = False

    def __init__(self, provider: str, detail: str):
        super().__init__(detail)
        self.provider = provider
        self.detail = detail


class ProviderTimeoutError(ProviderError):
    retryable = True

    def __init__(self, provider: str, timeout: float):
        super().__init__(provider, f"{provider} timeout {timeout}s")
        self.timeout = timeout


class ProviderUnavailableError(ProviderError):
    """Raised when a provider cannot be reached or is not configured."""

    retryable = True


class ProviderAuthError(ProviderError):
    pass


class ProviderQuotaExceededError(ProviderError):
    pass


class ProviderModelMismatchError(ProviderError):
    """The configured model cannot serve the requested operation."""


class ProviderBadResponseError(ProviderError):
    pass


class BaseClient(ABC):
    provider: str
    chat_model: str
    embedding_model: str
    timeout: float
    supports_tools: bool = True

    @abstractmethod
    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> RawResponse:  # pragma: no cover - interface
        ...

    @abstractmethod
    async def embed(self, text: str) -> List[float]:  # pragma: no cover - interface
        ...

    async def list_models(self) -> List[str]:
        return [self.chat_model]

    async def aclose(self) -> None:
        return None
