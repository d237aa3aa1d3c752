"""
Rate limiting configuration.

The Limiter instance is created in blindreview/__init__.py with no default
limits and keyed by caller identity (``g.user_id``, falling back to the
remote address). This module applies per-blueprint limits:

    - distribution:  DISTRIBUTION_RATE_LIMIT (default 10/minute per caller)
    - write-heavy:   60/minute
    - health:        exempt

Rate limiting is disabled in testing mode.

Usage:
    from blindreview.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

from flask import g, request as flask_request

logger = logging.getLogger(__name__)


def caller_rate_limit_key():
    """Dynamic rate limit key: caller id if known, else remote IP."""
    user_id = getattr(g, "user_id", None)
    if user_id:
        return f"user:{user_id}"
    return flask_request.remote_addr or "unknown"


def init_rate_limits(app, limiter):
    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    distribution_limit = app.config.get("DISTRIBUTION_RATE_LIMIT", "10/minute")
    bp = app.blueprints.get("distribution")
    if bp:
        limiter.limit(distribution_limit, key_func=caller_rate_limit_key)(bp)

    for bp_name in ("calls", "reviews"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit("60/minute", key_func=caller_rate_limit_key)(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info("Rate limiter configured — distribution: %s, write: 60/min", distribution_limit)
