# =============================================================================
# main.py  —  Entry Point for the NYC Restaurant Ops Advisor
# =============================================================================
#
# HOW TO RUN:
#   uv run python main.py
#
# WHAT HAPPENS:
#   1. Creates the advisor (agent/ops_agent.py): mock or live providers,
#      deterministic or model path, depending on .env
#   2. Asks for a card type, 1-3 NYC locations and an optional competitor
#   3. Runs the first turn and prints the action cards
#   4. Every further line is a follow-up, e.g. "we run 4 FOH on Tuesdays";
#      the conversation layer turns baseline numbers into a re-run turn
#   5. "quit" ends the session
#
# TRY IT OFFLINE (mock providers, no API keys needed):
#   Locations: Hell's Kitchen; Astoria
#   Follow-up: we run 4 FOH on Tuesdays      → asks which location
#   Follow-up: both                          → re-runs with the baseline
# =============================================================================

import asyncio
import logging
import sys

from dotenv import load_dotenv

# Load environment variables from .env file (OPENROUTER_API_KEY, AGENT_MODE,
# USE_LIVE_PROVIDERS, ...).  This must happen BEFORE creating the advisor,
# because settings and LiteLlm read the environment when they initialize.
load_dotenv()

from core.models import CARD_TYPES, TurnResult

from agent.conversation import ChatConversation
from agent.ops_agent import create_advisor

logging.basicConfig(
    level=logging.WARNING,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    stream=sys.stderr,
)


def _print_result(result: TurnResult) -> None:
    print("-" * 70)
    print(f"\n🤖 Advisor (turn {result.turn_index}):\n\n{result.message}\n")
    for rec in result.recommendations:
        badge = " · review-backed" if rec.review_backed else ""
        print(f"  • [{rec.location_label}] {rec.action}")
        print(f"      {rec.time_window} · {rec.confidence} confidence · {rec.source_name}{badge}")
    for snapshot in result.snapshots:
        print(f"  📝 {snapshot.location_label}: {snapshot.text}")
    if result.competitor_snapshot is not None:
        print(f"  🏁 {result.competitor_snapshot.label}: {result.competitor_snapshot.text}")
    if result.invalid_locations:
        print(f"  ⚠️  Could not match: {', '.join(result.invalid_locations)}")
    degraded = [name for name, status in result.sources.items() if status.status != "ok"]
    if degraded:
        print(f"  ⚠️  Degraded sources: {', '.join(degraded)}")
    print(f"\n  ({result.latency_ms} ms)")


def _ask(prompt: str) -> str:
    return input(prompt).strip()


async def run_advisor():
    """Run the ops advisor interactively."""
    print("=" * 70)
    print("  NYC RESTAURANT OPS ADVISOR")
    print("  Staffing and prep for the next 3 days")
    print("=" * 70)

    advisor = create_advisor()
    mode = "model + tools" if advisor.agent_enabled else "deterministic"
    print(f"\n🔧 Advisor ready ({mode} mode).\n")

    try:
        card_type = _ask(f"Card type [{'/'.join(CARD_TYPES)}] (default staffing): ").lower() or "staffing"
        if card_type not in CARD_TYPES:
            print(f"Unknown card type {card_type!r}; using staffing.")
            card_type = "staffing"
        raw_locations = _ask("Locations (1-3, separate with ';'): ")
        competitor = _ask("Competitor to check (optional): ") or None
    except (EOFError, KeyboardInterrupt):
        print("\n\n👋 Goodbye!")
        return

    conversation = ChatConversation(advisor, card_type, [raw_locations], competitor_name=competitor)
    reply = await conversation.start()
    _print_result(reply.result)

    print("\n💬 Ask a follow-up or share your FOH baseline (type 'quit' to exit)")
    while True:
        try:
            user_input = _ask("\n🧑 You: ")
        except (EOFError, KeyboardInterrupt):
            print("\n\n👋 Goodbye!")
            break

        if user_input.lower() in ("quit", "exit", "q"):
            print("\n👋 Goodbye!")
            break
        if not user_input:
            continue

        reply = await conversation.send(user_input)
        if reply.clarification:
            print(f"\n🤖 Advisor: {reply.text}")
        else:
            _print_result(reply.result)

    await conversation.close("user_exit")


# =============================================================================
# Script entry point
# =============================================================================
if __name__ == "__main__":
    asyncio.run(run_advisor())
