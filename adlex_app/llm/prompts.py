from __future__ import annotations

from typing import Any, Dict, List, Sequence

CHECK_TOOL_NAME = "apply_yakukiho_rules"

CHECK_TOOL: Dict[str, Any] = {
    "type": "function",
    "function": {
        "name": CHECK_TOOL_NAME,
        "description": "薬機法ルールを適用してテキストを修正し、違反箇所を特定",
        "parameters": {
            "type": "object",
            "properties": {
                "modified": {"type": "string", "description": "修正されたテキスト"},
                "violations": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "properties": {
                            "start_pos": {"type": "number"},
                            "end_pos": {"type": "number"},
                            "reason": {"type": "string"},
                            "dictionary_id": {"type": "number"},
                        },
                        "required": ["start_pos", "end_pos", "reason"],
                    },
                },
            },
            "required": ["modified", "violations"],
        },
    },
}

CHECK_TOOL_CHOICE = {"type": "function", "function": {"name": CHECK_TOOL_NAME}}

_SYSTEM_PROMPT = """薬機法専門家として違反表現を検出・修正してください。

{reference}
修正方針:
- 違反表現は薬機法に準拠した適切な表現に置き換える
- 元の文章の意味と構造を可能な限り保持する
- 断定的な表現は推定や可能性を示す表現に変更
- 医療的・治療的効果の主張は一般的な健康支援表現に変更
- 過度な効果を暗示する表現は控えめな表現に修正

違反箇所の start_pos / end_pos は入力テキスト中の文字位置（0始まり、end_pos は含まない）で示してください。
参考辞書の語句に該当する場合は dictionary_id にその ID を入れてください。

【重要】必ずJSON形式で回答してください。JSON以外のテキストは含めないでください。

出力形式（必須）:
{{
  "modified": "修正されたテキスト",
  "violations": [{{"start_pos": 0, "end_pos": 3, "reason": "違反理由の詳細", "dictionary_id": null}}]
}}
"""


def format_reference(candidates: Sequence[Any]) -> str:
    if not candidates:
        return ""
    lines = ["参考辞書（NG表現）:"]
    for c in candidates:
        lines.append(f"- [ID:{c.id}] {c.phrase} (類似度 {c.similarity:.2f})")
    return "\n".join(lines) + "\n"


def build_check_messages(text: str, candidates: Sequence[Any] = ()) -> List[Dict[str, str]]:
    return [
        {"role": "system", "content": _SYSTEM_PROMPT.format(reference=format_reference(candidates))},
        {"role": "user", "content": text},
    ]
