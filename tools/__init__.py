# =============================================================================
# tools/__init__.py
# =============================================================================
# This package is the tool layer of the ops advisor.
#
# ARCHITECTURAL ROLE:
#   tools/ is the "translation layer" between callers and core/:
#     - registry.py    the closed set of tools the MODEL may call during a
#                      turn, executed against the source fetchers
#     - mcp_server.py  the FastMCP surface OTHER programs call (run_turn,
#                      end_session, resolve_locations)
#
# WHAT TOOLS DO NOT DO:
#   - They do NOT contain business logic (that's in core/)
#   - They do NOT decide confidence or ranking (that's core/policy.py)
#   - registry.py does NOT know about Google ADK; agent/llm_client.py
#     converts its specs into function declarations
#
# TOOL CONTRACT QUALITY:
#   Each tool has a clear name, a description written for the model (it
#   reads it to decide WHEN to call), typed parameters and a documented,
#   bounded result shape.
# =============================================================================
