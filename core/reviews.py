# =============================================================================
# core/reviews.py  —  Guest Review Signals
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Condenses a place's raw guest reviews into a ReviewSignals record:
#
#     recent reviews (90-day window)
#         → keyword theme classification (wait / service / host / kitchen / other)
#         → hashed evidence references with short excerpts
#         → theme histogram, top-3 most recent refs, a one-line guest snapshot
#         → a confidence grade
#
#   Pure: `now` is passed in, there is no I/O.  The reviews fetcher in
#   core/sources.py handles the provider call, timeout and caching.
# =============================================================================

import hashlib
import re
from datetime import datetime, timedelta
from typing import Optional

from core import config
from core.geo import truncate_snippet
from core.models import REVIEW_THEMES, ReviewEvidenceRef, ReviewSignals
from core.providers import PlaceReview

NO_EVIDENCE_SNAPSHOT = (
    "Quick read: there is not enough recent review evidence to call a clear operational pattern yet."
)

# Checked in order; the first match wins.
_THEME_PATTERNS = [
    ("wait_time", re.compile(r"wait|line|queued|queue|seated")),
    ("service_speed", re.compile(r"slow service|service slow|took forever|server")),
    ("host_queue", re.compile(r"host|front desk|check in|reservation")),
    ("kitchen_delay", re.compile(r"kitchen|food took|cold food|hot food")),
]


def classify_theme(text: str) -> str:
    value = text.lower()
    for theme, pattern in _THEME_PATTERNS:
        if pattern.search(value):
            return theme
    return "other"


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO timestamp (with 'Z' or an offset).  None when unparseable."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return None
    return parsed


def hash_ref(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()[:16]


def _theme_label(theme: str) -> str:
    return theme.replace("_", " ")


def build_review_signals(
    place_id: str,
    reviews: list[PlaceReview],
    now: datetime,
    recency_window_days: int = config.REVIEW_RECENCY_WINDOW_DAYS,
) -> ReviewSignals:
    """Build the review signal for one place.

    Args:
        place_id:            Provider place id the reviews belong to.
        reviews:             Raw reviews, any order.
        now:                 Timezone-aware "current time".
        recency_window_days: Reviews older than this are ignored entirely.

    Returns:
        ReviewSignals.  With no usable evidence the snapshot says so and the
        confidence is low.
    """
    window_start = now - timedelta(days=recency_window_days)
    recent = []
    for review in reviews:
        published = parse_timestamp(review.publish_time)
        if published is not None and published >= window_start:
            recent.append((review, published))

    themes = {theme: 0 for theme in REVIEW_THEMES}
    refs: list[tuple[ReviewEvidenceRef, datetime]] = []
    seen_ids: set[str] = set()

    for review, published in recent:
        text = review.text or ""
        if not text:
            continue
        ref_id = hash_ref(review.name) if review.name else hash_ref(
            f"{place_id}:{text}:{review.publish_time}"
        )
        if ref_id in seen_ids:
            continue
        seen_ids.add(ref_id)

        theme = classify_theme(text)
        themes[theme] += 1
        refs.append((
            ReviewEvidenceRef(
                place_id=place_id,
                review_id_or_hash=ref_id,
                publish_time=review.publish_time,
                theme=theme,
                rating=review.rating,
                excerpt=truncate_snippet(text, config.REVIEW_EXCERPT_MAX_LEN),
            ),
            published,
        ))

    evidence_count = len(refs)
    if evidence_count == 0:
        return ReviewSignals(
            place_id=place_id,
            sample_review_count=len(recent),
            evidence_count=0,
            recency_window_days=recency_window_days,
            themes=themes,
            top_refs=[],
            guest_snapshot=NO_EVIDENCE_SNAPSHOT,
            confidence="low",
        )

    ranked = sorted(((name, count) for name, count in themes.items() if count > 0), key=lambda item: -item[1])
    top_theme = ranked[0][0]
    top_issue = next((name for name, _ in ranked if name != top_theme), "wait_time")

    confidence = "medium"
    if evidence_count < config.REVIEW_MIN_EVIDENCE_FOR_MEDIUM:
        confidence = "low"
    old_cutoff = now - timedelta(days=config.REVIEW_OLD_THRESHOLD_DAYS)
    if all(published < old_cutoff for _, published in refs):
        confidence = "low"

    newest_first = sorted(refs, key=lambda item: item[1], reverse=True)
    top_refs = [ref for ref, _ in newest_first[: config.REVIEW_TOP_REFS]]

    snapshot = (
        f"Quick read on what guests are saying: strongest praise trends around {_theme_label(top_theme)}, "
        f"while friction most often shows up in {_theme_label(top_issue)} mentions."
    )

    return ReviewSignals(
        place_id=place_id,
        sample_review_count=len(recent),
        evidence_count=evidence_count,
        recency_window_days=recency_window_days,
        themes=themes,
        top_refs=top_refs,
        guest_snapshot=snapshot,
        confidence=confidence,
    )


def dominant_theme(review: Optional[ReviewSignals]) -> Optional[str]:
    """The operational theme that clearly dominates the evidence, if any.

    'other' never counts.  The winner needs at least REVIEW_THEME_MIN_COUNT
    mentions and REVIEW_THEME_MIN_SHARE of all evidence.
    """
    if review is None or review.evidence_count <= 0:
        return None
    for theme, count in review.sorted_themes():
        if theme == "other" or count <= 0:
            continue
        share = count / review.evidence_count
        if count >= config.REVIEW_THEME_MIN_COUNT and share >= config.REVIEW_THEME_MIN_SHARE:
            return theme
        return None
    return None
