import json

import pytest
from hypothesis import given, settings, strategies as st

from adlex_app.core.extractor import (
    ExtractedViolation,
    InvalidResponseShapeError,
    ResponseParseError,
    extract,
    find_balanced_braces,
    generate_from_plain_text,
)
from adlex_app.llm.interfaces import RawResponse, ToolCall
from adlex_app.llm.prompts import CHECK_TOOL_NAME

ORIGINAL = "このサプリメントで驚異的な効果を実感できます。"

_text = st.text(
    alphabet=st.characters(exclude_characters="`", exclude_categories=("Cs",)),
    max_size=40,
)


def _tool_response(payload) -> RawResponse:
    args = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return RawResponse(content=None, tool_calls=[ToolCall(name=CHECK_TOOL_NAME, arguments=args)])


def test_tool_call_is_preferred_over_content():
    resp = _tool_response({"modified": "A", "violations": []})
    resp.content = '{"modified": "B", "violations": []}'
    result = extract(resp, ORIGINAL)
    assert result.modified == "A"
    assert result.source == "tool_call"


def test_tool_call_with_broken_json_is_parse_error():
    with pytest.raises(ResponseParseError):
        extract(_tool_response('{"modified": "x", "violations": ['), ORIGINAL)


def test_json_fenced_block():
    content = '説明です\n```json\n{"modified": "健康的な毎日", "violations": [{"start_pos": 9, "end_pos": 15, "reason": "誇大"}]}\n```\n以上'
    result = extract(RawResponse(content=content), ORIGINAL)
    assert result.source == "json_block"
    assert result.violations == [ExtractedViolation(9, 15, "誇大", None)]


def test_generic_fenced_block():
    content = '```\n{"modified": "ok", "violations": []}\n```'
    result = extract(RawResponse(content=content), ORIGINAL)
    assert result.source == "code_block"
    assert result.modified == "ok"


def test_brace_scan_skips_braces_inside_strings():
    payload = {"modified": "置換 {効果} を修正", "violations": [{"start_pos": 0, "end_pos": 2, "reason": "閉じ括弧 } と { を含む"}]}
    content = "結果は次の通りです: " + json.dumps(payload, ensure_ascii=False) + " 以上です。"
    result = extract(RawResponse(content=content), ORIGINAL)
    assert result.source == "brace_scan"
    assert result.modified == payload["modified"]
    assert result.violations[0].reason == "閉じ括弧 } と { を含む"


def test_brace_scan_moves_past_unparseable_candidate():
    content = 'memo {not json} then {"modified": "m", "violations": []}'
    result = extract(RawResponse(content=content), ORIGINAL)
    assert result.modified == "m"


def test_find_balanced_braces_handles_escaped_quotes():
    text = 'x {"a": "say \\"}\\" now", "b": {"c": 1}} tail'
    assert find_balanced_braces(text) == '{"a": "say \\"}\\" now", "b": {"c": 1}}'
    assert find_balanced_braces("no braces") is None
    assert find_balanced_braces('{"open": 1') is None


def test_synonym_keys_are_normalised():
    content = json.dumps(
        {
            "modifiedText": "修正後",
            "issues": [{"start": 0, "end": 3, "reason": "r", "dictionaryId": "7"}],
        }
    )
    result = extract(RawResponse(content=content), ORIGINAL)
    assert result.modified == "修正後"
    assert result.violations == [ExtractedViolation(0, 3, "r", 7)]


def test_out_of_range_violations_are_dropped_individually():
    payload = {
        "modified": "m",
        "violations": [
            {"start_pos": 0, "end_pos": 4, "reason": "ok"},
            {"start_pos": 5, "end_pos": 5, "reason": "empty"},
            {"start_pos": -1, "end_pos": 2, "reason": "negative"},
            {"start_pos": 3, "end_pos": 999, "reason": "too far"},
            {"start_pos": "a", "end_pos": 2, "reason": "junk"},
            {"start_pos": 1.0, "end_pos": 2.0, "reason": "float ok"},
        ],
    }
    result = extract(_tool_response(payload), ORIGINAL)
    assert [v.reason for v in result.violations] == ["ok", "float ok"]


def test_missing_modified_is_invalid_shape():
    with pytest.raises(InvalidResponseShapeError):
        extract(_tool_response({"violations": []}), ORIGINAL)


def test_violations_not_a_list_is_invalid_shape():
    with pytest.raises(InvalidResponseShapeError):
        extract(_tool_response({"modified": "m", "violations": {"a": 1}}), ORIGINAL)


def test_absent_violations_means_none():
    result = extract(_tool_response({"modified": "m"}), ORIGINAL)
    assert result.violations == []


def test_empty_response_is_invalid_shape():
    with pytest.raises(InvalidResponseShapeError):
        extract(RawResponse(content="   "), ORIGINAL)


def test_long_prose_without_json_is_invalid_shape():
    prose = "I am unable to evaluate this advertisement copy right now. " * 4
    with pytest.raises(InvalidResponseShapeError):
        extract(RawResponse(content=prose), ORIGINAL)


def test_heuristic_reply_equal_to_input_means_no_violation():
    result = extract(RawResponse(content=ORIGINAL), ORIGINAL)
    assert result.source == "heuristic"
    assert result.modified == ORIGINAL
    assert result.violations == []


def test_heuristic_instruction_reply_has_whole_text_span():
    payload = generate_from_plain_text(ORIGINAL, "「健康的な毎日を応援します」に変更してください")
    assert payload is not None
    assert isinstance(payload["modified"], str) and payload["modified"]
    (v,) = payload["violations"]
    assert (v["start_pos"], v["end_pos"]) == (0, len(ORIGINAL))


def test_heuristic_short_reply_becomes_rewrite():
    result = extract(RawResponse(content="健康的な毎日をサポートします。"), ORIGINAL)
    assert result.source == "heuristic"
    assert result.modified
    assert all(0 <= v.start_pos < v.end_pos <= len(ORIGINAL) for v in result.violations)


@st.composite
def _analysis(draw):
    original = draw(st.text(min_size=1, max_size=30))
    n = len(original)
    violations = []
    for _ in range(draw(st.integers(min_value=0, max_value=4))):
        start = draw(st.integers(min_value=0, max_value=n - 1))
        end = draw(st.integers(min_value=start + 1, max_value=n))
        dict_id = draw(st.one_of(st.none(), st.integers(min_value=1, max_value=10_000)))
        violations.append(ExtractedViolation(start, end, draw(_text.filter(lambda s: s.strip() == s and s)), dict_id))
    return original, draw(_text), violations


@settings(max_examples=60, deadline=None)
@given(_analysis())
def test_tool_call_round_trip(case):
    original, modified, violations = case
    payload = {
        "modified": modified,
        "violations": [
            {"start_pos": v.start_pos, "end_pos": v.end_pos, "reason": v.reason, "dictionary_id": v.dictionary_id}
            for v in violations
        ],
    }
    result = extract(_tool_response(payload), original)
    assert result.modified == modified
    assert result.violations == violations


@settings(max_examples=60, deadline=None)
@given(modified=_text, reason=_text)
def test_brace_scan_recovers_object_with_arbitrary_strings(modified, reason):
    payload = {"modified": modified, "violations": [{"start_pos": 0, "end_pos": 1, "reason": reason}]}
    content = "回答:\n" + json.dumps(payload, ensure_ascii=False) + "\nご確認ください"
    result = extract(RawResponse(content=content), "x")
    assert result.modified == modified
    assert len(result.violations) == 1


@settings(max_examples=80, deadline=None)
@given(
    original=st.text(max_size=20),
    spans=st.lists(st.tuples(st.integers(-5, 30), st.integers(-5, 30)), max_size=6),
)
def test_kept_violations_are_always_within_bounds(original, spans):
    payload = {
        "modified": original,
        "violations": [{"start_pos": s, "end_pos": e, "reason": "r"} for s, e in spans],
    }
    result = extract(_tool_response(payload), original)
    for v in result.violations:
        assert 0 <= v.start_pos < v.end_pos <= len(original)


def test_short_fenced_non_json_falls_back_to_heuristic():
    result = extract(RawResponse(content="```json\nnot json\n```"), ORIGINAL)
    assert result.source == "heuristic"
    assert isinstance(result.modified, str) and result.modified
    assert all(0 <= v.start_pos < v.end_pos <= len(ORIGINAL) for v in result.violations)


def test_long_fenced_non_json_is_invalid_shape():
    content = "```json\n" + "this block was supposed to hold the analysis result. " * 4 + "\n```"
    with pytest.raises(InvalidResponseShapeError):
        extract(RawResponse(content=content), ORIGINAL)
