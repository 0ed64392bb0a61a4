"""
Rate limiting configuration.

Applies per-blueprint and per-route rate limits using Flask-Limiter.
The Limiter instance is created in formflow/__init__.py with no default
limits; this module applies granular limits per route category.

Usage:
    from formflow.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# Batch status updates fan out into one transaction per instance
_BATCH_ENDPOINT = "forms.batch_update_status"


def init_rate_limits(app, limiter):
    """
    Apply rate limits to API blueprints.

    Limits (per remote IP):
        - Batch status updates:  BATCH_STATUS_RATE_LIMIT (default 30/minute)
        - Form engine routes:    120/minute
        - Health check:          exempt

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    batch_limit = app.config.get("BATCH_STATUS_RATE_LIMIT", "30/minute")
    view = app.view_functions.get(_BATCH_ENDPOINT)
    if view:
        app.view_functions[_BATCH_ENDPOINT] = limiter.limit(batch_limit)(view)

    bp = app.blueprints.get("forms")
    if bp:
        limiter.limit("120/minute")(bp)

    bp = app.blueprints.get("health")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — forms: 120/min, batch status: %s", batch_limit,
    )
