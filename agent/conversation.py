# =============================================================================
# agent/conversation.py  —  Chat Conversation (baseline follow-ups)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Sits between a chat surface (CLI, MCP client) and the orchestrator and
#   keeps the little bit of state a conversation needs: the session id, the
#   resolved location labels, and the FOH baselines the user has told us.
#
#   Follow-up messages like "we run 4 FOH on Tuesdays" are read here:
#
#     "4 FOH at all/every/both"      → apply to every location, re-run
#     "4 FOH at <location name>"     → apply to that location, re-run
#     "4 FOH" with ONE location      → apply to it, re-run
#     "4 FOH" with 2+ locations      → ask once which scope is meant
#
#   The reply to that question resolves to all / one location, or, if it
#   names neither, defaults to the first-mentioned location.  The question
#   is never repeated for the same pending number.
#
#   Any other follow-up simply re-runs the turn with what we already know.
# =============================================================================

import logging
from dataclasses import dataclass
from typing import Optional

from core.baseline import (
    BaselineParse,
    clarification_question,
    parse_baseline_message,
    resolve_baseline_clarification,
)
from core.models import BaselineContext, TurnRequest, TurnResult

from agent.orchestrator import TurnOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class ConversationReply:
    text: str
    result: Optional[TurnResult] = None
    clarification: bool = False


class ChatConversation:
    """One chat about a fixed set of locations.

    Args:
        orchestrator:    Shared TurnOrchestrator.
        card_type:       "staffing", "risk" or "opportunity".
        location_inputs: Raw location strings as the user typed them.
        competitor_name: Optional competitor, checked on the first turn only.
    """

    def __init__(
        self,
        orchestrator: TurnOrchestrator,
        card_type: str,
        location_inputs: list[str],
        competitor_name: Optional[str] = None,
        distinct_id: Optional[str] = None,
    ):
        self.orchestrator = orchestrator
        self.card_type = card_type
        self.location_inputs = list(location_inputs)
        self.competitor_name = competitor_name
        self.distinct_id = distinct_id
        self.session_id: Optional[str] = None
        self.location_labels: list[str] = []
        self.baseline_by_location: dict[str, int] = {}
        self.pending: Optional[BaselineParse] = None
        self.last_result: Optional[TurnResult] = None

    async def start(self) -> ConversationReply:
        result = await self._run_turn(competitor_name=self.competitor_name)
        self.location_labels = list(result.location_labels)
        return ConversationReply(text=result.message, result=result)

    async def send(self, message: str) -> ConversationReply:
        if self.pending is not None:
            return await self._resolve_pending(message)

        parsed = parse_baseline_message(message, self.location_labels)
        if parsed.scope == "none" or not self.location_labels:
            return await self._rerun()

        if parsed.scope == "ambiguous":
            self.pending = parsed
            question = clarification_question(parsed.baseline_foh, self.location_labels[0])
            return ConversationReply(text=question, clarification=True)

        if parsed.scope == "all":
            self._apply_to_all(parsed.baseline_foh)
        else:
            self.baseline_by_location[parsed.location_label] = parsed.baseline_foh
        return await self._rerun()

    async def close(self, end_reason: str = "user_exit") -> None:
        if self.session_id is not None:
            await self.orchestrator.end_session(self.session_id, end_reason)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------
    async def _resolve_pending(self, message: str) -> ConversationReply:
        pending, self.pending = self.pending, None
        resolution = resolve_baseline_clarification(message, self.location_labels)
        if resolution.scope == "all":
            self._apply_to_all(pending.baseline_foh)
        else:
            self.baseline_by_location[resolution.location_label] = pending.baseline_foh
        logger.info("Baseline scope resolved as %s", resolution.scope)
        return await self._rerun()

    def _apply_to_all(self, baseline_foh: int) -> None:
        for label in self.location_labels:
            self.baseline_by_location[label] = baseline_foh

    async def _rerun(self) -> ConversationReply:
        result = await self._run_turn()
        return ConversationReply(text=result.message, result=result)

    async def _run_turn(self, competitor_name: Optional[str] = None) -> TurnResult:
        result = await self.orchestrator.run_turn(TurnRequest(
            card_type=self.card_type,
            locations=self.location_inputs,
            session_id=self.session_id,
            distinct_id=self.distinct_id,
            baseline_context=[
                BaselineContext(location_label=label, baseline_foh=value)
                for label, value in self.baseline_by_location.items()
            ],
            competitor_name=competitor_name,
        ))
        self.session_id = result.session_id
        self.last_result = result
        return result
