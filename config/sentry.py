# coding: utf-8
"""
Sentry configuration for error monitoring and tracking
"""
import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration
from sentry_sdk.integrations.aiohttp import AioHttpIntegration
from loguru import logger

from config.config import SENTRY_DSN, ENVIRONMENT


FILTERED_HEADERS = (
    "Authorization",
    "X-API-Key",
    "X-XENTRIPAY-KEY",
    "x-pawapay-signature",
    "x-xentripay-signature",
)


def init_sentry() -> None:
    """
    Initialize Sentry SDK for error monitoring

    Gateway callbacks and outbound aiohttp calls are traced; PII is never sent.
    """
    if not SENTRY_DSN:
        logger.warning("SENTRY_DSN not configured - error monitoring disabled")
        return

    try:
        sentry_sdk.init(
            dsn=SENTRY_DSN,
            environment=ENVIRONMENT,
            integrations=[
                AsyncioIntegration(),
                SqlalchemyIntegration(),
                AioHttpIntegration(),
            ],
            traces_sample_rate=0.1 if ENVIRONMENT == "production" else 1.0,
            sample_rate=1.0,
            attach_stacktrace=True,
            send_default_pii=False,
            max_breadcrumbs=50,
            before_send=before_send_hook,
        )

        logger.info(f"Sentry initialized successfully (Environment: {ENVIRONMENT})")

    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}")


def before_send_hook(event, hint):
    """
    Strip credentials and webhook signatures from request headers
    """
    if 'exc_info' in hint:
        exc_type, exc_value, tb = hint['exc_info']
        if isinstance(exc_value, KeyboardInterrupt):
            return None

    request = event.get('request')
    if request:
        headers = request.get('headers', {})
        for name in list(headers):
            if any(name.lower() == filtered.lower() for filtered in FILTERED_HEADERS):
                headers[name] = '[Filtered]'

    return event


def capture_payment_anomaly(message: str, **extra_context):
    """
    Report a payment event that needs manual reconciliation

    Args:
        message: Short description (e.g. late success for a FAILED unlock)
        extra_context: unlock_id, reference, statuses
    """
    with sentry_sdk.push_scope() as scope:
        scope.set_tag("category", "payment_anomaly")
        for key, value in extra_context.items():
            scope.set_extra(key, value)

        sentry_sdk.capture_message(message, level="warning")
