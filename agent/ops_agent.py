# =============================================================================
# agent/ops_agent.py  —  Advisor Wiring (Google ADK LiteLlm + source stack)
# =============================================================================
#
# WHAT THIS FILE DOES:
#   Builds a ready-to-use TurnOrchestrator from Settings.  This is the one
#   place that decides WHICH concrete pieces run:
#
#     USE_LIVE_PROVIDERS=true   → live Google Places / OpenWeather /
#                                 Ticketmaster / NYC Open Data clients
#     otherwise                 → deterministic mock providers
#
#     AGENT_MODE=on             → AgentController with a ModelClient
#     otherwise                 → deterministic engine only (no model calls)
#
# HOW IT FITS TOGETHER:
#
#   ┌──────────────────────────────────────────────────────────────────┐
#   │                       TurnOrchestrator                           │
#   │   session lock · idempotency · baseline memory · competitor      │
#   │                                                                  │
#   │   ┌──────────────────┐          ┌─────────────────────────────┐  │
#   │   │ AgentController  │─────────▶│ ModelClient (ADK LiteLlm)   │  │
#   │   │  (AGENT_MODE=on) │          │  primary → fallback model   │  │
#   │   └────────┬─────────┘          └─────────────────────────────┘  │
#   │            │ tool calls                                          │
#   │            ▼                                                     │
#   │   ┌──────────────────┐   deterministic path / agent fallback     │
#   │   │ TurnToolbox      │◀──────────────────────────────────────────│
#   │   └────────┬─────────┘                                           │
#   └────────────┼─────────────────────────────────────────────────────┘
#                ▼
#   ┌──────────────────────────┐
#   │ SourceFetcher + TtlCache │  one per process, shared by all turns
#   │ core/ (pure Python)      │
#   └──────────────────────────┘
#
# MODEL STRINGS:
#   "openrouter/moonshotai/kimi-k2.5" tells LiteLlm:
#     - Provider: "openrouter" (route through OpenRouter's gateway)
#     - Model:    "moonshotai/kimi-k2.5"
#   LiteLlm reads OPENROUTER_API_KEY from the environment, so load_dotenv()
#   must run before create_advisor().
# =============================================================================

from typing import Optional

from core.config import Settings, load_settings
from core.sources import SourceFetcher, build_providers

from agent.controller import AgentController
from agent.events import EventEmitter
from agent.llm_client import ModelClient
from agent.orchestrator import TurnOrchestrator


def create_advisor(settings: Optional[Settings] = None, events: Optional[EventEmitter] = None) -> TurnOrchestrator:
    """Create the ops advisor.

    Args:
        settings: Defaults to load_settings() from the environment.
        events:   Defaults to an EventEmitter that only logs.

    Returns:
        A TurnOrchestrator; call run_turn() / end_session() on it.
    """
    settings = settings or load_settings()
    fetcher = SourceFetcher(build_providers(settings))

    controller = None
    if settings.agent_mode:
        model = ModelClient(settings.primary_model, settings.fallback_model)
        controller = AgentController(settings, model, fetcher)

    return TurnOrchestrator(settings, fetcher, controller=controller, events=events)
