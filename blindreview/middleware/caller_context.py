"""
Caller context middleware.

Authentication belongs to the external identity provider, which sits in
front of this service and forwards the authenticated user in ``X-User-Id``.
This hook copies it to ``g.user_id`` and adds a request id for log
correlation. Routes that need a caller use ``require_caller()``.
"""

import logging
import time
import uuid

from flask import g, request

from blindreview.core.exceptions import NotAuthorized

logger = logging.getLogger(__name__)

USER_HEADER = "X-User-Id"

# Paths that never need a caller
SKIP_PREFIXES = (
    "/api/v1/health",
)


def require_caller() -> str:
    """Return the caller's user id or raise NotAuthorized."""
    user_id = getattr(g, "user_id", None)
    if not user_id:
        raise NotAuthorized(f"Missing {USER_HEADER} header")
    return user_id


def init_caller_context(app):
    """Register caller context hooks."""

    @app.before_request
    def _caller_context():
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        g.request_started = time.perf_counter()
        g.user_id = None
        if request.path.startswith(SKIP_PREFIXES):
            return None
        user_id = (request.headers.get(USER_HEADER) or "").strip()
        g.user_id = user_id or None
        return None

    @app.after_request
    def _log_request(response):
        if request.path.startswith("/api/"):
            started = getattr(g, "request_started", None)
            duration = (time.perf_counter() - started) * 1000 if started else None
            logger.info(
                "%s %s → %s", request.method, request.path, response.status_code,
                extra={
                    "method": request.method,
                    "path": request.path,
                    "status": response.status_code,
                    "duration_ms": duration,
                    "request_id": getattr(g, "request_id", None),
                    "user_id": getattr(g, "user_id", None),
                },
            )
        response.headers["X-Request-Id"] = getattr(g, "request_id", "")
        return response
