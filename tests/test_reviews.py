"""
Unit tests for guest-review signal extraction.

Tests core/reviews.py
"""

from core.reviews import NO_EVIDENCE_SNAPSHOT, build_review_signals, classify_theme, dominant_theme, hash_ref

from fakes import FIXED_NOW, WAIT_HEAVY_REVIEWS, review


class TestClassifyTheme:
    """Theme patterns are checked in a fixed order."""

    def test_themes(self):
        assert classify_theme("Long line out the door") == "wait_time"
        assert classify_theme("Slow service tonight") == "service_speed"
        assert classify_theme("The host lost our reservation") == "host_queue"
        assert classify_theme("Kitchen was backed up") == "kitchen_delay"
        assert classify_theme("Great cocktails") == "other"

    def test_first_match_wins(self):
        # Mentions both a wait and the host; wait_time is checked first.
        assert classify_theme("Waited while the host chatted") == "wait_time"


class TestBuildReviewSignals:
    """Recency window, dedupe, confidence and references."""

    def test_wait_heavy_place(self):
        signal = build_review_signals("place-1", WAIT_HEAVY_REVIEWS, FIXED_NOW)

        assert signal.evidence_count == 4
        assert signal.sample_review_count == 4
        assert signal.themes["wait_time"] == 3
        assert signal.themes["other"] == 1
        assert signal.confidence == "medium"
        assert len(signal.top_refs) == 3
        # Newest first.
        assert signal.top_refs[0].review_id_or_hash == hash_ref("places/test/reviews/r1")
        assert signal.guest_snapshot.startswith("Quick read on what guests are saying")

    def test_reviews_outside_window_are_ignored(self):
        reviews = [review("old", "Waited forever in line", 120)]
        signal = build_review_signals("place-1", reviews, FIXED_NOW)

        assert signal.evidence_count == 0
        assert signal.sample_review_count == 0
        assert signal.confidence == "low"
        assert signal.guest_snapshot == NO_EVIDENCE_SNAPSHOT

    def test_duplicates_and_empty_text_do_not_count(self):
        reviews = [
            review("dup", "Long wait for a table", 5),
            review("dup", "Long wait for a table", 5),
            review("blank", "", 6),
        ]
        signal = build_review_signals("place-1", reviews, FIXED_NOW)

        assert signal.sample_review_count == 3
        assert signal.evidence_count == 1
        assert signal.confidence == "low"

    def test_excerpts_are_bounded(self):
        reviews = [review("long", "line " * 100, 2)]
        signal = build_review_signals("place-1", reviews, FIXED_NOW)
        assert len(signal.top_refs[0].excerpt) <= 160


class TestDominantTheme:
    def test_clear_winner(self):
        signal = build_review_signals("place-1", WAIT_HEAVY_REVIEWS, FIXED_NOW)
        assert dominant_theme(signal) == "wait_time"

    def test_single_mention_is_not_enough(self):
        reviews = [
            review("a", "Waited a bit", 2),
            review("b", "Great cocktails", 3),
            review("c", "Lovely patio", 4),
        ]
        signal = build_review_signals("place-1", reviews, FIXED_NOW)
        assert dominant_theme(signal) is None

    def test_no_signal(self):
        assert dominant_theme(None) is None
