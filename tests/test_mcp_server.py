"""
Tests for the MCP tool surface.

Tests tools/mcp_server.py through an in-memory FastMCP client, with the
process-wide advisor swapped for one wired to the fixture providers.
"""

import pytest
from fastmcp import Client

from core.config import Settings

from agent.orchestrator import TurnOrchestrator
from tools import mcp_server

from fakes import HK_EVENT_ACTION, HK_LABEL, make_fetcher, make_providers


@pytest.fixture
def advisor(monkeypatch):
    orchestrator = TurnOrchestrator(Settings(), make_fetcher(make_providers()))
    monkeypatch.setattr(mcp_server, "_advisor", orchestrator)
    return orchestrator


async def call(tool: str, arguments: dict) -> dict:
    async with Client(mcp_server.mcp) as client:
        result = await client.call_tool(tool, arguments)
    return result.structured_content


class TestRunTurnTool:
    @pytest.mark.asyncio
    async def test_turn_result_is_flattened(self, advisor):
        payload = await call("run_turn", {
            "card_type": "staffing",
            "locations": ["Hell's Kitchen"],
            "baseline_context": [{"location_label": HK_LABEL, "baseline_foh": 4}],
        })

        assert payload["turn_index"] == 1
        assert payload["recommendations"][0]["action"] == HK_EVENT_ACTION
        assert payload["recommendations"][0]["confidence"] == "high"
        assert payload["sources"]["weather"]["status"] == "ok"

    @pytest.mark.asyncio
    async def test_bad_card_type(self, advisor):
        payload = await call("run_turn", {"card_type": "menu", "locations": ["Astoria"]})
        assert payload["error"].startswith("card_type must be one of")

    @pytest.mark.asyncio
    async def test_too_many_locations(self, advisor):
        payload = await call("run_turn", {"card_type": "risk", "locations": ["a", "b", "c", "d"]})
        assert payload == {"error": "Provide between 1 and 3 locations."}


class TestSessionTools:
    @pytest.mark.asyncio
    async def test_end_session(self, advisor):
        payload = await call("end_session", {"session_id": "s-mcp", "end_reason": "user_exit"})

        assert payload["ended"] is True
        assert advisor.store.sessions["s-mcp"].end_reason == "user_exit"

    @pytest.mark.asyncio
    async def test_end_session_rejects_unknown_reason(self, advisor):
        payload = await call("end_session", {"session_id": "s-mcp", "end_reason": "bored"})
        assert "error" in payload

    @pytest.mark.asyncio
    async def test_resolve_locations(self, advisor):
        payload = await call("resolve_locations", {"locations": ["Astoria; Hoboken"]})

        assert [loc["label"] for loc in payload["resolved"]] == ["Astoria Taverna"]
        assert payload["invalid"] == ["Hoboken"]
