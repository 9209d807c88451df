"""Sentry error tracking integration.

Initializes the Sentry SDK when SENTRY_DSN is set and does nothing otherwise,
so it is safe to call unconditionally at startup.

Vendor calls go through httpx, and the httpx integration records them as
breadcrumbs. Gemini authenticates with a `key=` query parameter, so query
strings are filtered out of every breadcrumb before it is stored.
"""

import logging

from app.core.config import settings

logger = logging.getLogger(__name__)

FILTERED = "[Filtered]"


def scrub_query(crumb: dict, hint: dict) -> dict:
    data = crumb.get("data")
    if data and data.get("http.query"):
        data["http.query"] = FILTERED
    return crumb


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True when enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration
    from sentry_sdk.integrations.httpx import HttpxIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_breadcrumb=scrub_query,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            HttpxIntegration(),
        ],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True
