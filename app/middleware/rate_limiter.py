"""
Rate limiting configuration.

Applies per-blueprint rate limits using Flask-Limiter.
The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Restores replace whole project subtrees; keep them scarce
RESTORE_LIMIT = "5/minute"
WRITE_LIMIT = "60/minute"
READ_LIMIT = "200/minute"

RESTORE_ENDPOINTS = ("version_bp.restore_version",)


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Restore endpoint:             5/minute
        - Mutation-heavy blueprints:   60/minute
        - Analytics (read-focused):   200/minute

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    for endpoint in RESTORE_ENDPOINTS:
        view = app.view_functions.get(endpoint)
        if view is not None:
            app.view_functions[endpoint] = limiter.limit(RESTORE_LIMIT)(view)

    for bp_name in ("version_bp", "change_bp", "propagation_bp", "jobs_bp"):
        bp = app.blueprints.get(bp_name)
        if bp:
            limiter.limit(WRITE_LIMIT)(bp)

    bp = app.blueprints.get("risk_bp")
    if bp:
        limiter.limit(READ_LIMIT)(bp)

    app.logger.info(
        "Rate limiter configured: restore %s, write %s, read %s",
        RESTORE_LIMIT, WRITE_LIMIT, READ_LIMIT,
    )
