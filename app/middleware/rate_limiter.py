"""
Rate limiting configuration.

The Limiter instance is created in app/__init__.py with no default limits;
this module applies granular limits per route category.

Limits (per remote IP):
    - Sign endpoint:    SIGN_RATE_LIMIT (default 10/minute) — password-bearing
    - Login:            10/minute
    - Write endpoints:  60/minute on the log-entries blueprint
    - Health check:     exempt

Usage:
    from app.middleware.rate_limiter import init_rate_limits
    init_rate_limits(app, limiter)
"""

import logging

logger = logging.getLogger(__name__)

# endpoint → config key holding its limit (or a literal limit string)
_ENDPOINT_LIMITS = {
    "log_entries.sign_entry": "SIGN_RATE_LIMIT",
    "auth.login": "10/minute",
}


def init_rate_limits(app, limiter):
    """
    Apply rate limits to registered blueprints and endpoints.

    Rate limiting is disabled in testing mode.
    """

    if app.config.get("TESTING"):
        app.logger.info("Rate limiter disabled (TESTING=True)")
        return

    # Password-bearing endpoints: wrap the registered view functions
    for endpoint, setting in _ENDPOINT_LIMITS.items():
        view = app.view_functions.get(endpoint)
        if view is None:
            continue
        limit_value = app.config.get(setting, setting)
        app.view_functions[endpoint] = limiter.limit(limit_value)(view)

    bp = app.blueprints.get("log_entries")
    if bp:
        limiter.limit("60/minute", methods=["POST", "PUT", "PATCH"])(bp)

    bp = app.blueprints.get("health_bp")
    if bp:
        limiter.exempt(bp)

    app.logger.info(
        "Rate limiter configured — sign: %s, login: 10/min, write: 60/min",
        app.config.get("SIGN_RATE_LIMIT"),
    )
