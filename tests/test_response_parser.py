"""Tests for oracle reply parsing: every bad reply must become Malformed, never raise."""
import pytest

from ai.response_parser import (
    extract_json_array,
    extract_json_object,
    parse_decision,
    parse_recommendations,
    parse_reflection,
)
from ai.schemas import Malformed, Ok


class TestExtraction:
    def test_object_inside_prose_and_fences(self):
        text = 'Sure! Here is my call:\n```json\n{"action": "BUY", "confidence": 80}\n```\nGood luck.'
        assert extract_json_object(text) == {"action": "BUY", "confidence": 80}

    def test_skips_broken_brace_before_valid_object(self):
        text = 'thinking {not json} then {"action": "HOLD"}'
        assert extract_json_object(text) == {"action": "HOLD"}

    def test_array_extraction(self):
        assert extract_json_array('recs: [{"symbol": "BTC"}] done') == [{"symbol": "BTC"}]

    def test_nothing_found(self):
        assert extract_json_object("no json here") is None
        assert extract_json_array("") is None


class TestParseDecision:
    def test_valid_decision(self):
        parsed = parse_decision('{"action": "buy", "confidence": 82, "reasoning": "RSI 35", "size_usd": 15}')
        assert isinstance(parsed, Ok)
        assert parsed.value.action == "BUY"
        assert parsed.value.confidence == 82
        assert parsed.value.size_usd == 15

    def test_hold_forces_zero_size(self):
        parsed = parse_decision('{"action": "HOLD", "confidence": 50, "reasoning": "wait", "size_usd": 12}')
        assert isinstance(parsed, Ok)
        assert parsed.value.size_usd == 0.0

    def test_hold_without_size_is_valid(self):
        parsed = parse_decision('{"action": "HOLD", "confidence": 10, "reasoning": "flat"}')
        assert isinstance(parsed, Ok)

    @pytest.mark.parametrize("reply", [
        "I think you should buy",
        '{"action": "YOLO", "confidence": 90, "reasoning": "x", "size_usd": 5}',
        '{"action": "BUY", "confidence": 150, "reasoning": "x", "size_usd": 5}',
        '{"action": "BUY", "confidence": true, "reasoning": "x", "size_usd": 5}',
        '{"action": "BUY", "confidence": "high", "reasoning": "x", "size_usd": 5}',
        '{"action": "BUY", "confidence": 80, "size_usd": 5}',
        '{"action": "BUY", "confidence": 80, "reasoning": "x"}',
        '{"action": "SELL", "confidence": 80, "reasoning": "x", "size_usd": -3}',
    ])
    def test_malformed_replies(self, reply):
        parsed = parse_decision(reply)
        assert isinstance(parsed, Malformed)
        assert parsed.reason

    def test_oversize_is_not_a_parse_error(self):
        # Caps are enforced by the gate chain and the executor, not the parser
        parsed = parse_decision('{"action": "BUY", "confidence": 90, "reasoning": "x", "size_usd": 500}')
        assert isinstance(parsed, Ok)
        assert parsed.value.size_usd == 500


class TestParseReflection:
    def test_approved(self):
        parsed = parse_reflection('{"approved": true, "reason": "ok"}')
        assert isinstance(parsed, Ok)
        assert parsed.value.approved is True

    def test_rejected(self):
        parsed = parse_reflection('Review: {"approved": false, "reason": "RSI too high"}')
        assert parsed.value.approved is False
        assert parsed.value.reason == "RSI too high"

    def test_string_approved_is_ambiguous(self):
        assert isinstance(parse_reflection('{"approved": "no"}'), Malformed)


class TestParseRecommendations:
    def test_drops_non_objects(self):
        parsed = parse_recommendations('[{"symbol": "BTCUSDT", "action": "BUY"}, 3, "x"]')
        assert isinstance(parsed, Ok)
        assert parsed.value == [{"symbol": "BTCUSDT", "action": "BUY"}]

    def test_object_instead_of_array(self):
        assert isinstance(parse_recommendations('{"symbol": "BTCUSDT"}'), Malformed)
