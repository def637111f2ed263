"""Tests for intent heuristics and tool-decision parsing."""

import pytest

from marketplace_assistant.application.exceptions import ToolParameterError
from marketplace_assistant.application.intent import (
    FilterMode,
    derive_parameters,
    describe_filters,
    detect_intent,
    extract_filters,
    filter_mode,
    merge_filters,
    parse_tool_decision,
)


class TestDetectIntent:
    @pytest.mark.parametrize(
        "text, expected",
        [
            ("show me sites under $500", "apply_filters"),
            ("find quality tech blogs", "apply_filters"),
            ("clear all filters", "apply_filters"),
            ("take me to my orders", "navigate"),
            ("open my cart", "navigate"),
            ("add example.com to my cart", "add_to_cart"),
            ("What is domain authority?", None),
            ("My name is Ava", None),
            ("how does spam score work", None),
        ],
    )
    def test_intent(self, text, expected):
        assert detect_intent(text) == expected

    def test_conceptual_question_with_action_still_filters(self):
        assert detect_intent("what tech sites can you show me under $200?") == "apply_filters"


class TestExtractFilters:
    def test_price_ceiling(self):
        assert extract_filters("show me sites under $500") == {"priceMax": 500}

    def test_price_floor_with_thousands(self):
        assert extract_filters("publishers over $1.5k")["priceMin"] == 1500

    def test_quality_words(self):
        assert extract_filters("good reputable sites") == {"daMin": 50, "drMin": 50, "spamMax": 2}

    def test_high_authority(self):
        filters = extract_filters("strong publishers")
        assert (filters["daMin"], filters["drMin"]) == (60, 60)

    def test_price_bands(self):
        assert extract_filters("cheap blogs") == {"priceMax": 500}
        assert extract_filters("premium blogs") == {"priceMin": 1000}
        assert extract_filters("mid-range blogs") == {"priceMin": 500, "priceMax": 1500}

    def test_traffic(self):
        assert extract_filters("popular blogs")["trafficMin"] == 10000
        assert extract_filters("blogs with established traffic")["trafficMin"] == 5000

    def test_explicit_traffic_is_not_read_as_price(self):
        filters = extract_filters("tech blogs with traffic over 5k under $300")
        assert filters == {"trafficMin": 5000, "priceMax": 300, "niche": "tech"}

    def test_explicit_authority(self):
        filters = extract_filters("sites with DA 40+ and DR over 55")
        assert filters["daMin"] == 40
        assert filters["drMin"] == 55

    def test_uppercase_us_is_a_country_but_lowercase_is_not(self):
        assert extract_filters("only US sites")["country"] == "us"
        assert "country" not in extract_filters("show us some sites")

    def test_country_and_niche(self):
        assert extract_filters("finance blogs in Germany") == {"niche": "finance", "country": "de"}

    def test_nothing_recognised(self):
        assert extract_filters("hello there") == {}


class TestFilterModes:
    @pytest.mark.parametrize(
        "text, mode",
        [
            ("show me tech blogs", FilterMode.NEW),
            ("also only UK", FilterMode.MERGE),
            ("and in Canada", FilterMode.MERGE),
            ("actually make it health instead", FilterMode.REPLACE),
            ("reset the filters", FilterMode.CLEAR),
        ],
    )
    def test_mode(self, text, mode):
        assert filter_mode(text) is mode

    def test_merge_keeps_current_filters(self):
        assert merge_filters({"niche": "tech"}, {"country": "uk"}, FilterMode.MERGE) == {
            "niche": "tech",
            "country": "uk",
        }

    def test_replace_drops_current_filters(self):
        assert merge_filters({"niche": "tech"}, {"niche": "health"}, FilterMode.REPLACE) == {"niche": "health"}

    def test_clear_empties(self):
        assert merge_filters({"niche": "tech"}, {}, FilterMode.CLEAR) == {}


class TestDeriveParameters:
    def test_filters_merge_with_current(self):
        params = derive_parameters("apply_filters", "also only US sites", {"niche": "tech"})
        assert params == {"niche": "tech", "country": "us"}

    def test_filters_without_any_signal(self):
        assert derive_parameters("apply_filters", "show me something nice", {}) is None

    def test_clear_returns_empty_filters(self):
        assert derive_parameters("apply_filters", "clear all filters", {"niche": "tech"}) == {}

    def test_navigate_route(self):
        assert derive_parameters("navigate", "take me to my orders") == {"route": "/orders"}
        assert derive_parameters("navigate", "go somewhere") is None

    def test_add_to_cart_by_domain(self):
        assert derive_parameters("add_to_cart", "add example.com to my cart") == {
            "itemId": "example.com",
            "quantity": 1,
        }

    def test_add_to_cart_by_id_with_quantity(self):
        params = derive_parameters("add_to_cart", "add publisher #4521 to cart, 3 posts please")
        assert params == {"itemId": "4521", "quantity": 3}

    def test_add_to_cart_without_item(self):
        assert derive_parameters("add_to_cart", "add this to my cart") is None

    def test_unknown_tool(self):
        assert derive_parameters("delete_account", "bye") is None


class TestParseToolDecision:
    def test_plain_json(self):
        decision = parse_tool_decision(
            '{"shouldExecuteTool": true, "toolName": "apply_filters", '
            '"parameters": {"priceMax": 500}, "confidence": 0.9, "reasoning": "price filter"}'
        )
        assert decision.should_execute_tool is True
        assert decision.tool_name == "apply_filters"
        assert decision.parameters == {"priceMax": 500}

    def test_code_fence_and_prose_are_tolerated(self):
        raw = 'Sure:\n```json\n{"shouldExecuteTool": false, "toolName": null}\n```'
        assert parse_tool_decision(raw).should_execute_tool is False

    @pytest.mark.parametrize(
        "raw",
        [
            "",
            "no tool needed",
            '{"toolName": "navigate"}',
            '{"shouldExecuteTool": true, "confidence": 7}',
            '{"shouldExecuteTool": true,',
        ],
    )
    def test_malformed_raises(self, raw):
        with pytest.raises(ToolParameterError):
            parse_tool_decision(raw)


def test_describe_filters():
    assert describe_filters({}) == "none"
    assert describe_filters({"niche": "tech", "country": "us"}) == '{"country": "us", "niche": "tech"}'
