"""Sentry error tracking for the gateway.

Initialized only when SENTRY_DSN is set; every helper here is a no-op
otherwise, so callers never check. Outbound vendor calls are traced through
the httpx integration with API keys stripped from breadcrumb URLs.
"""

from __future__ import annotations

import logging
import re
from typing import TYPE_CHECKING, Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.httpx import HttpxIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from chaingate.core.config import settings

if TYPE_CHECKING:
    from chaingate.gateway.types import ProviderResult

logger = logging.getLogger(__name__)

# Gemini authenticates with ?key=...
_KEY_PARAM = re.compile(r"(^|[?&])key=[^&]*")


def redact_provider_keys(crumb: dict[str, Any], hint: dict[str, Any] | None = None) -> dict[str, Any]:
    """before_breadcrumb hook: drop vendor API keys from recorded HTTP calls."""
    data = crumb.get("data") or {}
    for field in ("url", "http.query"):
        value = data.get(field)
        if isinstance(value, str):
            data[field] = _KEY_PARAM.sub(r"\1key=[Filtered]", value)
    return crumb


def init_sentry() -> None:
    """Initialize Sentry if SENTRY_DSN is configured."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        traces_sample_rate=0.1 if settings.app_env == "production" else 1.0,
        send_default_pii=False,
        before_breadcrumb=redact_provider_keys,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            HttpxIntegration(),
        ],
    )
    sentry_sdk.set_tag("service", "chaingate")
    logger.info("Sentry initialized (env=%s)", settings.app_env)


def record_provider_failure(stage: str, result: ProviderResult) -> None:
    """Tag the current request with the failing stage and leave a breadcrumb."""
    sentry_sdk.set_tag("chain.stage", stage)
    sentry_sdk.set_tag("provider.error_kind", result.error_kind.value)
    sentry_sdk.add_breadcrumb(
        category="provider",
        level="warning",
        message=result.error_message,
        data={
            "provider": result.provider,
            "model": result.model,
            "errorCode": result.error_code,
            "attempts": result.attempts,
            "elapsedMs": result.elapsed_ms,
        },
    )
