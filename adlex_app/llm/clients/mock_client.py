from __future__ import annotations

import hashlib
import json
import random
import re
from typing import Any, Dict, List, Optional

from ..config import LLMConfig
from ..interfaces import BaseClient, RawResponse, ToolCall

MOCK_EMBEDDING_DIM = 384

# (pattern, replacement, reason, dictionary_id)
MOCK_RULES = [
    (
        r"驚異的な?効果",
        "健康的な毎日",
        "効果効能の誇大表現: 「驚異的な効果」は効果を保証・誇張する表現です",
        None,
    ),
    (
        r"がんが?(治る|治ります|消える)",
        "健康をサポートする",
        "医薬品的な効能効果: 疾病の治療をうたう表現は認められません",
        None,
    ),
    (
        r"血圧が?(下がる|下がります|改善)",
        "健康維持をサポート",
        "医薬品的な効能効果: 血圧への作用をうたう表現です",
        None,
    ),
    (
        r"糖尿病が?(治る|治ります|改善)",
        "健康的な生活をサポート",
        "医薬品的な効能効果: 疾病の治療・改善をうたう表現です",
        None,
    ),
    (
        r"必ず(痩せる|痩せます|効く|効きます)",
        "多くの方が実感",
        "効果の保証: 効果を確約する表現は認められません",
        None,
    ),
]


def _last_user_text(messages: List[Dict[str, Any]]) -> str:
    for msg in reversed(messages):
        if msg.get("role") == "user":
            content = msg.get("content")
            return content if isinstance(content, str) else ""
    return ""


def mock_analysis(text: str) -> Dict[str, Any]:
    """Deterministic rule-based rewrite used when no live provider is wired."""
    violations = []
    modified = text
    for pattern, replacement, reason, dictionary_id in MOCK_RULES:
        for m in re.finditer(pattern, text):
            violations.append(
                {
                    "start_pos": m.start(),
                    "end_pos": m.end(),
                    "reason": reason,
                    "dictionary_id": dictionary_id,
                }
            )
        modified = re.sub(pattern, replacement, modified)
    violations.sort(key=lambda v: v["start_pos"])
    return {"modified": modified, "violations": violations}


class MockClient(BaseClient):
    provider = "mock"

    def __init__(self, cfg: Optional[LLMConfig] = None):
        cfg = cfg or LLMConfig()
        self.chat_model = cfg.chat_model
        self.embedding_model = cfg.embedding_model
        self.timeout = cfg.chat_timeout()

    async def chat(
        self,
        messages: List[Dict[str, Any]],
        *,
        tools: Optional[List[Dict[str, Any]]] = None,
        tool_choice: Optional[Any] = None,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> RawResponse:
        text = _last_user_text(messages)
        payload = json.dumps(mock_analysis(text), ensure_ascii=False)
        if tools:
            name = tools[0].get("function", {}).get("name", "")
            return RawResponse(
                content=None,
                tool_calls=[ToolCall(name=name, arguments=payload)],
                provider=self.provider,
                model=self.chat_model,
                finish_reason="tool_calls",
            )
        return RawResponse(
            content=payload,
            provider=self.provider,
            model=self.chat_model,
            finish_reason="stop",
        )

    async def embed(self, text: str) -> List[float]:
        seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
        rnd = random.Random(seed)
        return [rnd.uniform(-1.0, 1.0) for _ in range(MOCK_EMBEDDING_DIM)]
