# =============================================================================
# core/__init__.py
# =============================================================================
# This package contains ALL business logic for the NYC restaurant ops advisor:
# location resolution, source fetchers, review signals, the deterministic
# recommendation engine, and the response policy.
#
# CRITICAL ARCHITECTURAL RULE:
#   Nothing in this package imports Google ADK, FastMCP, or anything from
#   agent/ or tools/.  With mock providers (USE_LIVE_PROVIDERS=false) every
#   module here runs offline in a bare Python REPL.
# =============================================================================
