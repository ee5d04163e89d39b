"""
Sentry Error Tracking
=====================

Centralized error tracking for unexpected failures in the refresh pipeline.

Related files:
- subbuddy/services/refresh_scheduler.py: captures unexpected per-project failures
  and timer-loop failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release identifier
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

from subbuddy.deps import get_settings

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once when the embedding application starts.

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    settings = get_settings()
    if not settings.SENTRY_DSN:
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                LoggingIntegration(
                    level=logging.INFO,         # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.0,
            # API keys travel in headers; never attach request data
            send_default_pii=False,
            release=settings.RELEASE_VERSION,
        )
        logger.debug(f"[SENTRY] Initialized for {settings.ENVIRONMENT} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: BaseException, extra: Optional[dict] = None) -> None:
    """
    Capture an exception that was caught and handled but should still be tracked.

    A no-op on the Sentry side when the SDK was never initialized.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
