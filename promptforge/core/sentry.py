"""Error reporting for the Prompt Forge API.

Unhandled request errors and background batch failures are sent to Sentry
when SENTRY_DSN is set. Without a DSN, init_sentry() leaves the SDK untouched.
"""

import logging

from promptforge.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """Returns True if Sentry was initialized."""
    if not settings.sentry_dsn:
        logger.debug("No SENTRY_DSN, error reporting disabled")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        integrations=[FastApiIntegration(transaction_style="endpoint")],
    )
    sentry_sdk.set_tag("concurrency_limit", settings.concurrency_limit)
    logger.info("Error reporting enabled (env=%s)", settings.app_env)
    return True
