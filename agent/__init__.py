# =============================================================================
# agent/__init__.py
# =============================================================================
# This package runs chat turns for the NYC restaurant ops advisor.
#
# ARCHITECTURAL ROLE:
#   The agent/ layer coordinates everything a turn needs.  It:
#     1. Serializes turns per session and de-duplicates retried requests
#     2. Resolves locations, baseline memory and the competitor check
#     3. Runs either the model path (ADK LiteLlm + bounded tool loop) or
#        the deterministic engine, and falls back from the first to the
#        second when the model path degrades
#     4. Persists the turn and emits structured events
#
# WHAT THE AGENT IS NOT:
#   - It is NOT the business logic (that's in core/)
#   - It is NOT the tool implementations (that's in tools/)
#   - It does NOT decide confidence or ranking (core/policy.py does)
#
# THE LLM'S ROLE:
#   The model writes the narrative and may ask for deeper evidence through
#   tools.  Whatever it drafts still passes through the response policy,
#   and a failed or empty draft is replaced by the deterministic engine.
# =============================================================================
