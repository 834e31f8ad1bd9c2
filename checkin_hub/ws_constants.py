"""WebSocket protocol constants: message types, error codes, and modes.

Pure data module -- no imports, no logic. Safe to import from any
checkin_hub module without risk of circular dependencies.
"""

# ── Client -> Server message types ────────────────────────────────────

MSG_CONNECT = "connect"
MSG_DAILY_CHECKIN = "daily_checkin"
MSG_REMEDIAL_COMPLETED = "remedial_completed"

# ── Server -> Client message types ────────────────────────────────────

MSG_CONNECTED = "connected"
MSG_CHECKIN_RESULT = "checkin_result"
MSG_INTERVENTION_ASSIGNED = "intervention_assigned"
# MSG_REMEDIAL_COMPLETED is echoed back as the completion confirmation
MSG_ERROR = "error"

# ── Error codes (machine-readable, included in MSG_ERROR messages) ────

ERR_INVALID_FORMAT = "INVALID_FORMAT"
ERR_MISSING_TYPE = "MISSING_TYPE"
ERR_UNKNOWN_TYPE = "UNKNOWN_TYPE"
ERR_INVALID_TOKEN = "INVALID_TOKEN"
ERR_NOT_AUTHENTICATED = "NOT_AUTHENTICATED"
ERR_ALREADY_CONNECTED = "ALREADY_CONNECTED"
ERR_VALIDATION = "VALIDATION_ERROR"
ERR_CHECKIN_FAILED = "CHECKIN_FAILED"
ERR_COMPLETION_FAILED = "COMPLETION_FAILED"
ERR_NOT_FOUND = "NOT_FOUND"
ERR_NOT_ASSIGNED = "NOT_ASSIGNED"
ERR_ALREADY_ASSIGNED = "ALREADY_ASSIGNED"
ERR_ALREADY_COMPLETED = "ALREADY_COMPLETED"
ERR_INTERNAL = "INTERNAL_ERROR"

# ── Close codes ───────────────────────────────────────────────────────

CLOSE_UNAUTHORIZED = 4001

# ── Modes carried on server messages ──────────────────────────────────

REVIEW_MODE_SIMULATION = "simulation"
REVIEW_MODE_DELEGATED = "delegated"

CLIENT_MODE_REMEDIAL_ONLY = "remedial_only"
CLIENT_MODE_NORMAL = "normal"
