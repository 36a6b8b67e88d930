"""
Unit tests for the response policy, card profiles and the signal pack.

Tests core/policy.py, core/card_profile.py and core/signal_pack.py
"""

import json

from core.card_profile import default_follow_up, rank_by_card_profile
from core.models import (
    CompetitorContext,
    Explanation,
    Recommendation,
    SourceSnapshot,
    SourceStatus,
    WeatherSignal,
)
from core.policy import PolicyDraft, apply_response_policy, clamp_confidence
from core.reviews import build_review_signals
from core.signal_pack import build_signal_pack, summarize_signal_pack

from fakes import FIXED_NOW, HK_LABEL, WAIT_HEAVY_REVIEWS, hells_kitchen

OK = {name: SourceStatus(status="ok", freshness_seconds=0) for name in ("weather", "events", "closures", "doe", "reviews")}


def rec(label="A", source="events", confidence="high", review_backed=False, why=None) -> Recommendation:
    return Recommendation(
        location_label=label,
        action=f"Do something at {label}",
        time_window="Wed",
        confidence=confidence,
        source_name=source,
        explanation=Explanation(why=why or ["reason"], delta_reasoning="delta", escalation_trigger="trigger"),
        review_backed=review_backed,
    )


class TestConfidenceCaps:
    """Degraded sources, assumed baselines and missing citations."""

    def test_clamp(self):
        assert clamp_confidence("high", "medium") == "medium"
        assert clamp_confidence("low", "medium") == "low"

    def test_degraded_source_caps_to_low(self):
        statuses = dict(OK, events=SourceStatus(status="stale", error_code="EVENTS_PARTIAL"))
        outcome = apply_response_policy("staffing", PolicyDraft([rec()]), statuses)

        assert outcome.recommendations[0].confidence == "low"
        assert outcome.caps_applied

    def test_assumed_baseline_caps_first_location_only(self):
        draft = PolicyDraft([rec("A"), rec("B")])
        outcome = apply_response_policy("staffing", draft, OK, "A", baseline_assumed_for_first=True)

        by_label = {r.location_label: r.confidence for r in outcome.recommendations}
        assert by_label == {"A": "medium", "B": "high"}
        assert outcome.assumptions == ["Baseline staffing for A remains assumed until explicitly confirmed."]

    def test_citation_is_added_from_source_status(self):
        outcome = apply_response_policy("staffing", PolicyDraft([rec()]), OK)
        citation = outcome.recommendations[0].citations[0]

        assert citation.source_name == "events"
        assert citation.freshness_seconds == 0
        assert outcome.recommendations[0].source_freshness_seconds == 0

    def test_missing_status_means_no_citation_and_low(self):
        outcome = apply_response_policy("staffing", PolicyDraft([rec()]), {})
        assert outcome.recommendations[0].confidence == "low"

    def test_system_recommendations_cite_the_fallback_path(self):
        outcome = apply_response_policy("staffing", PolicyDraft([rec(source="system", confidence="low")]), OK)
        assert outcome.recommendations[0].citations[0].source_name == "system"

    def test_why_is_capped_at_two(self):
        outcome = apply_response_policy("staffing", PolicyDraft([rec(why=["a", "b", "c"])]), OK)
        assert outcome.recommendations[0].explanation.why == ["a", "b"]

    def test_review_evidence_is_back_filled(self):
        signal = build_review_signals("p", WAIT_HEAVY_REVIEWS, FIXED_NOW)
        outcome = apply_response_policy(
            "staffing",
            PolicyDraft([rec(source="reviews", confidence="medium", review_backed=True)]),
            OK,
            review_by_location={"A": signal},
        )
        evidence = outcome.recommendations[0].evidence
        assert evidence.evidence_count == 4
        assert len(evidence.top_refs) == 3


class TestFollowUpAndFailure:
    def test_default_follow_up_by_card(self):
        outcome = apply_response_policy("risk", PolicyDraft([rec()]), OK)
        assert outcome.follow_up_question == default_follow_up("risk")

    def test_draft_follow_up_wins(self):
        outcome = apply_response_policy("risk", PolicyDraft([rec()], follow_up_question="Patio open?"), OK)
        assert outcome.follow_up_question == "Patio open?"

    def test_broken_draft_falls_back_instead_of_raising(self):
        broken = PolicyDraft([rec(confidence="certain")])
        outcome = apply_response_policy("staffing", broken, OK, "A")

        assert outcome.failed
        assert outcome.recommendations[0].source_name == "system"
        assert outcome.recommendations[0].location_label == "A"


class TestCardProfileRanking:
    def test_risk_card_prefers_closures(self):
        ranked = rank_by_card_profile("risk", [rec(source="events"), rec(source="closures")])
        assert [r.source_name for r in ranked] == ["closures", "events"]

    def test_confidence_dominates_source_weight(self):
        ranked = rank_by_card_profile("staffing", [rec(source="events", confidence="medium"), rec(source="doe")])
        assert [r.source_name for r in ranked] == ["doe", "events"]


class TestSignalPack:
    def test_pack_and_digest(self):
        snapshot = SourceSnapshot(
            weather_by_location={HK_LABEL: WeatherSignal(HK_LABEL, True, "2026-03-12T18:00:00-04:00", False, None)},
            review_by_location={HK_LABEL: build_review_signals("mock-hk-001", WAIT_HEAVY_REVIEWS, FIXED_NOW)},
        )
        pack = build_signal_pack([hells_kitchen()], snapshot, OK, CompetitorContext())

        payload = json.loads(pack.to_json())
        assert payload["window"] == "next_3_days"
        assert payload["locations"][0]["review"]["top_theme"] == "wait_time"
        assert payload["competitor"] is None

        digest = summarize_signal_pack(pack)
        assert digest.startswith(f"{HK_LABEL}: rain risk in service windows; reviews theme=wait_time (4 refs)")
        assert digest.endswith("Source status: w=ok, e=ok, c=ok, d=ok, r=ok")

    def test_missing_status_reads_as_error(self):
        pack = build_signal_pack([hells_kitchen()], SourceSnapshot(), {})
        assert pack.source_status["weather"] == "error"
        assert summarize_signal_pack(pack).startswith(f"{HK_LABEL}: no major external signals")
