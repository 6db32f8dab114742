"""Turn raw model output into a validated rewrite plus violation spans.

Tool-call arguments are trusted to be JSON. Free text goes through an ordered
chain of strategies (fenced ``json`` block, any fenced block, brace-balanced
scan) and, failing those, a small set of plain-text heuristics.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from adlex_app.llm.interfaces import RawResponse
from adlex_app.llm.prompts import CHECK_TOOL_NAME

log = logging.getLogger("adlex")

MODIFIED_KEYS = ("modified", "modified_text", "modifiedText", "corrected", "rewritten")
VIOLATION_KEYS = ("violations", "issues", "findings")
START_KEYS = ("start_pos", "start", "startPos")
END_KEYS = ("end_pos", "end", "endPos")
DICTIONARY_KEYS = ("dictionary_id", "dictionaryId")

SHORT_REPLY_LIMIT = 100

INSTRUCTION_PATTERNS = (
    re.compile(r"(.+)(?:に変更|を修正|に置き換え|を|へ)(?:してください|すべき|する)"),
    re.compile(r"(.+)などの表現に変更"),
    re.compile(r"(.+)という表現"),
)


class ExtractionError(Exception):
    pass


class ResponseParseError(ExtractionError):
    """Tool-call arguments were not valid JSON."""


class InvalidResponseShapeError(ExtractionError):
    """Nothing usable could be recovered from the response."""


@dataclass(frozen=True)
class ExtractedViolation:
    start_pos: int
    end_pos: int
    reason: str
    dictionary_id: Optional[int] = None


@dataclass
class ExtractionResult:
    modified: str
    violations: List[ExtractedViolation] = field(default_factory=list)
    source: str = "tool_call"


# --- free-text strategies --------------------------------------------------

_JSON_FENCE = re.compile(r"```json\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_ANY_FENCE = re.compile(r"```[A-Za-z0-9_-]*\s*(.*?)```", re.DOTALL)


def extract_json_block(text: str) -> Optional[str]:
    m = _JSON_FENCE.search(text)
    return m.group(1).strip() if m else None


def extract_code_block(text: str) -> Optional[str]:
    m = _ANY_FENCE.search(text)
    return m.group(1).strip() if m else None


def find_balanced_braces(text: str, start: int = 0) -> Optional[str]:
    """Return the first complete ``{...}`` at or after ``start``.

    Braces inside JSON strings do not count towards nesting.
    """
    begin = text.find("{", start)
    if begin < 0:
        return None
    depth = 0
    in_string = False
    escape_next = False
    for i in range(begin, len(text)):
        ch = text[i]
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if ch == "\\":
                escape_next = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[begin : i + 1]
    return None


def extract_braced_object(text: str) -> Optional[str]:
    """First balanced brace span that parses as a JSON object."""
    pos = text.find("{")
    while pos >= 0:
        candidate = find_balanced_braces(text, pos)
        if candidate is not None and isinstance(_loads(candidate), dict):
            return candidate
        pos = text.find("{", pos + 1)
    return None


JSON_STRATEGIES: Sequence[Tuple[str, Callable[[str], Optional[str]]]] = (
    ("json_block", extract_json_block),
    ("code_block", extract_code_block),
    ("brace_scan", extract_braced_object),
)


def _loads(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except ValueError:
        return None


def extract_json_object(text: str) -> Optional[Tuple[str, Dict[str, Any]]]:
    for name, strategy in JSON_STRATEGIES:
        candidate = strategy(text)
        if candidate is None:
            continue
        payload = _loads(candidate)
        if isinstance(payload, dict):
            return name, payload
    return None


# --- heuristics ------------------------------------------------------------


def _strip_quotes(s: str) -> str:
    return s.strip().strip("「」『』\"'“”").strip()


def generate_from_plain_text(original: str, reply: str) -> Optional[Dict[str, Any]]:
    """Best-effort rewrite recovered from a non-JSON reply."""
    reply = reply.strip()
    if reply == original.strip():
        return {"modified": original, "violations": []}
    for pattern in INSTRUCTION_PATTERNS:
        m = pattern.search(reply)
        if m:
            suggestion = _strip_quotes(m.group(1))
            if suggestion:
                return {
                    "modified": suggestion,
                    "violations": [
                        {
                            "start_pos": 0,
                            "end_pos": len(original),
                            "reason": f"薬機法に抵触する表現のため修正が必要です: {reply}",
                            "dictionary_id": None,
                        }
                    ],
                }
    if len(reply) < SHORT_REPLY_LIMIT:
        return {
            "modified": reply,
            "violations": [
                {
                    "start_pos": 0,
                    "end_pos": len(original),
                    "reason": "薬機法に適合する表現への修正提案",
                    "dictionary_id": None,
                }
            ],
        }
    return None


# --- normalisation ---------------------------------------------------------


def _first(d: Dict[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in d:
            return d[key]
    return None


def _as_offset(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _as_dictionary_id(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def normalize_violation(raw: Any, text_length: int) -> Optional[ExtractedViolation]:
    if not isinstance(raw, dict):
        return None
    start = _as_offset(_first(raw, START_KEYS))
    end = _as_offset(_first(raw, END_KEYS))
    if start is None or end is None:
        return None
    if start < 0 or end > text_length or start >= end:
        return None
    reason = raw.get("reason")
    reason = reason.strip() if isinstance(reason, str) else ""
    return ExtractedViolation(
        start_pos=start,
        end_pos=end,
        reason=reason or "薬機法に抵触する可能性がある表現",
        dictionary_id=_as_dictionary_id(_first(raw, DICTIONARY_KEYS)),
    )


def normalize_payload(payload: Any, original: str, source: str) -> ExtractionResult:
    if not isinstance(payload, dict):
        raise InvalidResponseShapeError("response JSON is not an object")
    modified = _first(payload, MODIFIED_KEYS)
    if not isinstance(modified, str):
        raise InvalidResponseShapeError("response has no modified text")
    raw_violations = _first(payload, VIOLATION_KEYS)
    if raw_violations is None:
        raw_violations = []
    if not isinstance(raw_violations, list):
        raise InvalidResponseShapeError("violations is not a list")
    violations = []
    for raw in raw_violations:
        v = normalize_violation(raw, len(original))
        if v is None:
            log.debug("dropping out-of-range violation: %r", raw)
            continue
        violations.append(v)
    return ExtractionResult(modified=modified, violations=violations, source=source)


def extract(response: RawResponse, original: str, tool_name: str = CHECK_TOOL_NAME) -> ExtractionResult:
    call = response.tool_call(tool_name) or (response.tool_calls[0] if response.tool_calls else None)
    if call is not None:
        try:
            payload = json.loads(call.arguments)
        except ValueError as exc:
            raise ResponseParseError(f"tool call arguments are not valid JSON: {exc}") from exc
        return normalize_payload(payload, original, "tool_call")

    content = (response.content or "").strip()
    if not content:
        raise InvalidResponseShapeError("response has neither tool call nor content")
    found = extract_json_object(content)
    if found is not None:
        source, payload = found
        return normalize_payload(payload, original, source)
    payload = generate_from_plain_text(original, content)
    if payload is None:
        raise InvalidResponseShapeError("no JSON found in free-text response")
    log.info("recovered rewrite from plain text reply")
    return normalize_payload(payload, original, "heuristic")


__all__ = [
    "ExtractedViolation",
    "ExtractionError",
    "ExtractionResult",
    "InvalidResponseShapeError",
    "ResponseParseError",
    "extract",
    "extract_json_object",
    "find_balanced_braces",
    "generate_from_plain_text",
    "normalize_payload",
]
