# =============================================================================
# core/baseline.py  —  FOH Baseline Parsing and Memory Rules
# =============================================================================
#
# WHAT THIS MODULE DOES:
#   Two small pieces of pure logic around the operator's front-of-house
#   (FOH) staffing baseline:
#
#   1. PARSING a chat message such as "we run 4 FOH on Tuesdays" into a
#      number plus a scope (which locations it applies to).
#
#   2. MEMORY RULES deciding which baseline memory event a turn should
#      record, given the latest stored event for each location:
#
#        explicit value, latest was assumed      → assumption_corrected
#        explicit value, latest explicit differs → fact_corrected
#        explicit value, nothing stored yet      → fact_set
#        explicit value, unchanged               → (nothing)
#        no value, first location, not assumed   → assumption_set
#
#      assumption_set is only written while the latest event is not
#      already an assumption, so it happens once per session, not every turn.
#
#   Persistence and event emission live in agent/.  This module only decides.
# =============================================================================

import re
from dataclasses import dataclass
from typing import Callable, Literal, Optional

BaselineScope = Literal["none", "all", "single", "ambiguous"]
ClarificationScope = Literal["all", "single", "assumed_single"]
MemoryEventType = Literal["fact_set", "fact_corrected", "assumption_set", "assumption_corrected"]

MEMORY_NAMESPACE = "baseline"
ASSUMPTION_TEXT = "No baseline provided; defaulting scope to first-mentioned location."

_FOH_PATTERN = re.compile(r"(\d+)\s*foh", re.IGNORECASE)
_ALL_SCOPE_PATTERN = re.compile(r"\b(all|every|both)\b", re.IGNORECASE)


def baseline_memory_key(location_label: str) -> str:
    return f"baseline.foh.{location_label}"


# -----------------------------------------------------------------------------
# Parsing
# -----------------------------------------------------------------------------
@dataclass
class BaselineParse:
    scope: BaselineScope
    baseline_foh: Optional[int] = None
    location_label: Optional[str] = None


@dataclass
class ClarificationResolution:
    scope: ClarificationScope
    location_label: Optional[str] = None


def _named_location(normalized: str, location_labels: list[str]) -> Optional[str]:
    return next((label for label in location_labels if label.lower() in normalized), None)


def parse_baseline_message(message: str, location_labels: list[str]) -> BaselineParse:
    """Extract "N FOH" and decide which locations it applies to.

    Returns scope "none" when the message carries no FOH number.  With more
    than one location and no scope keyword or label, the scope is
    "ambiguous" and the caller should ask once.
    """
    match = _FOH_PATTERN.search(message)
    if not match:
        return BaselineParse(scope="none")

    baseline_foh = int(match.group(1))
    if _ALL_SCOPE_PATTERN.search(message):
        return BaselineParse(scope="all", baseline_foh=baseline_foh)

    named = _named_location(message.lower(), location_labels)
    if named:
        return BaselineParse(scope="single", baseline_foh=baseline_foh, location_label=named)

    first = location_labels[0] if location_labels else None
    scope = "ambiguous" if len(location_labels) > 1 else "single"
    return BaselineParse(scope=scope, baseline_foh=baseline_foh, location_label=first)


def resolve_baseline_clarification(message: str, location_labels: list[str]) -> ClarificationResolution:
    """Interpret the reply to a scope question; silence means the first location."""
    if _ALL_SCOPE_PATTERN.search(message):
        return ClarificationResolution(scope="all")
    named = _named_location(message.lower(), location_labels)
    if named:
        return ClarificationResolution(scope="single", location_label=named)
    return ClarificationResolution(
        scope="assumed_single", location_label=location_labels[0] if location_labels else None
    )


def clarification_question(baseline_foh: int, first_label: str) -> str:
    return (
        f"Should I apply that {baseline_foh} FOH baseline to all locations or just {first_label}? "
        f"If you do not specify, I will apply it to {first_label}."
    )


# -----------------------------------------------------------------------------
# Memory rules
# -----------------------------------------------------------------------------
@dataclass
class MemoryEvent:
    """One baseline memory write, as stored and (for assumptions) emitted."""

    event_type: MemoryEventType
    memory_key: str
    new_value: dict
    old_value: Optional[dict] = None
    value_source: Literal["explicit", "assumed"] = "explicit"
    assumed: bool = False
    confidence_cap: Literal["none", "medium"] = "none"


def plan_baseline_memory(
    location_labels: list[str],
    baseline_by_location: dict[str, int],
    latest: Callable[[str], Optional[MemoryEvent]],
) -> list[MemoryEvent]:
    """Decide the memory events this turn should record.

    Args:
        location_labels:      Resolved labels in first-mentioned order.
        baseline_by_location: Explicit FOH baselines supplied with the turn.
        latest:               Memory key → latest stored MemoryEvent (or None).
    """
    planned: list[MemoryEvent] = []
    for index, label in enumerate(location_labels):
        key = baseline_memory_key(label)
        previous = latest(key)
        baseline_foh = baseline_by_location.get(label)

        if baseline_foh is not None:
            value = {"locationLabel": label, "baselineFoh": baseline_foh}
            if previous is not None and previous.assumed:
                planned.append(MemoryEvent(
                    event_type="assumption_corrected",
                    memory_key=key,
                    new_value=value,
                    old_value=previous.new_value,
                ))
            elif previous is None or previous.new_value != value:
                planned.append(MemoryEvent(
                    event_type="fact_corrected" if previous is not None else "fact_set",
                    memory_key=key,
                    new_value=value,
                    old_value=previous.new_value if previous is not None else None,
                ))
            continue

        if index != 0 or (previous is not None and previous.assumed):
            continue

        planned.append(MemoryEvent(
            event_type="assumption_set",
            memory_key=key,
            new_value={"locationLabel": label, "baselineFoh": None, "assumption": ASSUMPTION_TEXT},
            value_source="assumed",
            assumed=True,
            confidence_cap="medium",
        ))
    return planned
