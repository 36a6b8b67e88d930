"""
Unit tests for the model response schema and the tiered parser.

Tests agent/schema.py
"""

import json

import pytest

from agent.schema import (
    INVALID_JSON,
    NO_JSON,
    SCHEMA_INVALID,
    AgentResponseError,
    extract_json_object,
    parse_agent_response,
    parse_agent_response_detailed,
    parse_signal_pack_summary,
    repair_json,
    salvage_text,
)


def valid_payload(**overrides) -> dict:
    payload = {
        "narrative": "Knicks night at the Garden will push Wednesday dinner.",
        "recommendations": [{
            "locationLabel": "Hell's Kitchen Tavern",
            "action": "Wed 5:30 PM-8:30 PM: +2 FOH at Hell's Kitchen Tavern",
            "timeWindow": "Wed 5:30 PM-8:30 PM",
            "confidence": "high",
            "sourceName": "events",
            "why": ["Knicks vs. Celtics tips off at 7:30pm"],
            "deltaReasoning": "Covers the pre-game rush.",
            "escalationTrigger": "Quoted wait over 15 minutes.",
            "citations": [{"sourceName": "events", "freshnessSeconds": 0, "note": "Ticketmaster"}],
        }],
        "assumptions": [],
        "followUpQuestion": "Want a Thursday rain plan too?",
    }
    payload.update(overrides)
    return payload


class TestStrictTier:
    """Well-formed JSON, fenced or surrounded by prose."""

    def test_plain_json(self):
        parsed = parse_agent_response_detailed(json.dumps(valid_payload()))
        assert parsed.strategy_used == "strict"
        assert parsed.response.recommendations[0].location_label == "Hell's Kitchen Tavern"

    def test_fenced_json_with_prose(self):
        text = "Here you go:\n```json\n" + json.dumps(valid_payload()) + "\n```\nThanks!"
        assert parse_agent_response(text).follow_up_question == "Want a Thursday rain plan too?"

    def test_converts_to_recommendation(self):
        rec = parse_agent_response(json.dumps(valid_payload())).recommendations[0].to_recommendation()
        assert rec.source_name == "events"
        assert rec.explanation.escalation_trigger == "Quoted wait over 15 minutes."
        assert rec.citations[0].note == "Ticketmaster"


class TestRepairedTier:
    def test_trailing_commas_and_python_literals(self):
        raw = json.dumps(valid_payload())[:-1] + ",}"
        raw = raw.replace("}]", ", }]", 1)
        raw = raw.replace('"citations"', '"reviewBacked": False, "citations"')

        parsed = parse_agent_response_detailed(raw)

        assert parsed.strategy_used == "repaired"
        assert "JSON required repair" in parsed.warnings

    def test_repair_json_helpers(self):
        assert repair_json('{"a": [1, 2,], "b": None}') == '{"a": [1, 2], "b": null}'
        assert extract_json_object("no braces here") is None


class TestFailures:
    """Stable error codes, with salvage when the text allows it."""

    def test_no_json(self):
        with pytest.raises(AgentResponseError) as err:
            parse_agent_response("I think you should add staff.")
        assert err.value.code == NO_JSON
        assert err.value.salvage is None

    def test_invalid_json_salvages_narrative(self):
        text = '{"narrative": "Rain Thursday, Knicks Wednesday.", "recommendations": [}'
        with pytest.raises(AgentResponseError) as err:
            parse_agent_response(text)
        assert err.value.code == INVALID_JSON
        assert err.value.salvage.narrative == "Rain Thursday, Knicks Wednesday."

    def test_schema_invalid(self):
        with pytest.raises(AgentResponseError) as err:
            parse_agent_response(json.dumps(valid_payload(recommendations=[])))
        assert err.value.code == SCHEMA_INVALID

    def test_bad_source_name_is_schema_invalid(self):
        payload = valid_payload()
        payload["recommendations"][0]["sourceName"] = "twitter"
        with pytest.raises(AgentResponseError) as err:
            parse_agent_response(json.dumps(payload))
        assert err.value.code == SCHEMA_INVALID

    def test_salvage_text_needs_a_field(self):
        assert salvage_text('{"other": "x"}') is None
        assert salvage_text('{"followUpQuestion": "Patio open?"').follow_up_question == "Patio open?"


class TestSignalPackSummary:
    def test_summary(self):
        assert parse_signal_pack_summary('{"summary": " Busy Wednesday. "}') == "Busy Wednesday."

    def test_summary_errors(self):
        with pytest.raises(AgentResponseError) as err:
            parse_signal_pack_summary("Busy Wednesday.")
        assert err.value.code == NO_JSON

        with pytest.raises(AgentResponseError) as err:
            parse_signal_pack_summary('{"summary": ""}')
        assert err.value.code == SCHEMA_INVALID
