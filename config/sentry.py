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

# Event keys that may carry wallet key material
SENSITIVE_KEYS = (
    "dev_wallet_key_encrypted",
    "ops_wallet_key_encrypted",
    "dev_encryption_iv",
    "ops_encryption_iv",
    "dev_encryption_auth_tag",
    "ops_encryption_auth_tag",
)


def init_sentry() -> None:
    """
    Initialize Sentry SDK for error monitoring
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
                AioHttpIntegration(),  # Trade executor HTTP calls
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


def _scrub(value):
    if isinstance(value, dict):
        return {
            k: "[Filtered]" if k in SENSITIVE_KEYS else _scrub(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def before_send_hook(event, hint):
    """
    Filter events before sending to Sentry

    Drops KeyboardInterrupt, strips API keys from request headers and
    encrypted wallet material from extras.
    """
    if 'exc_info' in hint:
        exc_type, exc_value, tb = hint['exc_info']
        if isinstance(exc_value, KeyboardInterrupt):
            return None

    if event.get('request'):
        headers = event['request'].get('headers', {})
        if 'X-API-Key' in headers:
            headers['X-API-Key'] = '[Filtered]'
        if 'Authorization' in headers:
            headers['Authorization'] = '[Filtered]'

    if event.get('extra'):
        event['extra'] = _scrub(event['extra'])

    return event
