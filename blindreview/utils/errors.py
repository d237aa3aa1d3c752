"""JSON error bodies for the engine's HTTP surface.

Every handler in ``blindreview._register_error_handlers`` answers with the
same shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}}

``details`` is present only when the engine exception carried structured
data (missing scores, blocked reviewer ids, the refused transition).
"""

from __future__ import annotations

from flask import jsonify


class E:
    """Machine-readable error codes, one per engine failure class."""

    NOT_FOUND = "ERR_NOT_FOUND"                 # unknown call / proposal / assignment
    FORBIDDEN = "ERR_FORBIDDEN"                 # caller lacks the role or is not the assignee
    VALIDATION_RULE = "ERR_VALIDATION_RULE"     # incomplete review, bad call settings
    CONFLICT_BLOCKED = "ERR_CONFLICT_BLOCKED"   # manual assignment hit a conflict record
    CONFLICT_STATE = "ERR_CONFLICT_STATE"       # lifecycle action not allowed from status
    RATE_LIMITED = "ERR_RATE_LIMITED"
    IMMUTABLE = "ERR_IMMUTABLE"                 # write on a sealed review or audit entry
    DATABASE = "ERR_DATABASE"


_STATUS_BY_CODE: dict[str, int] = {
    E.NOT_FOUND: 404,
    E.FORBIDDEN: 403,
    E.VALIDATION_RULE: 422,
    E.CONFLICT_BLOCKED: 409,
    E.CONFLICT_STATE: 409,
    E.RATE_LIMITED: 429,
    E.IMMUTABLE: 500,
    E.DATABASE: 500,
}


def api_error(code: str, message: str, *, status: int | None = None, details: dict | None = None):
    """``(response, status)`` for a Flask handler; status defaults from the code, else 400."""
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
