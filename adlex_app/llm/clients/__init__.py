from .lmstudio_client import LMStudioClient
from .mock_client import MockClient
from .openai_client import OpenAIClient
from .openrouter_client import OpenRouterClient

__all__ = ["LMStudioClient", "MockClient", "OpenAIClient", "OpenRouterClient"]
