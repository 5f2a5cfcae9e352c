import logging
from collections.abc import Callable
from json import JSONDecodeError
from typing import Any

from fastapi import Request, Response
from slowapi.util import get_remote_address

from chaingate.core import metrics
from chaingate.core.exceptions import RateLimitExceededError, ValidationFailedError
from chaingate.gateway.providers import ProviderRegistry
from chaingate.gateway.rate_limiter import RateLimitTier, TieredRateLimiter
from chaingate.gateway.validation import validate

logger = logging.getLogger(__name__)


def get_client_ip(request: Request) -> str:
    """Remote address of the caller (the rate-limit key)."""
    return get_remote_address(request)


def get_rate_limiter(request: Request) -> TieredRateLimiter:
    return request.app.state.rate_limiter


def get_provider_registry(request: Request) -> ProviderRegistry:
    return request.app.state.providers


def rate_limit(tier: RateLimitTier) -> Callable:
    """Dependency factory: admit the caller against ``tier`` or raise 429.

    Usage:
        @router.post("/chain", dependencies=[Depends(rate_limit(RateLimitTier.CHAIN))])
    """

    async def _check(request: Request, response: Response) -> None:
        limiter = get_rate_limiter(request)
        admission = await limiter.admit(get_client_ip(request), tier)
        headers = {
            "RateLimit-Limit": str(admission.limit),
            "RateLimit-Remaining": str(admission.remaining),
            "RateLimit-Reset": str(admission.retry_after_seconds),
        }

        if not admission.admitted:
            metrics.RATE_LIMIT_REJECTIONS.labels(tier=tier.value).inc()
            logger.warning(
                "%s rate limit exceeded",
                tier.value,
                extra={
                    "context": {
                        "ip": get_client_ip(request),
                        "endpoint": request.url.path,
                        "method": request.method,
                    }
                },
            )
            raise RateLimitExceededError(admission.message, admission.retry_after_seconds, headers=headers)

        response.headers.update(headers)

    return _check


def validated_body(schema_name: str) -> Callable:
    """Dependency factory: parse the JSON body and validate it against a schema.

    Returns the normalized payload; raises 400 with field-level details.
    """

    async def _validate(request: Request) -> dict[str, Any]:
        try:
            raw = await request.json()
        except (JSONDecodeError, UnicodeDecodeError):
            raw = None

        result = validate(schema_name, raw)
        if not result.valid:
            logger.warning(
                "Validation failed",
                extra={
                    "context": {
                        "endpoint": request.url.path,
                        "method": request.method,
                        "ip": get_client_ip(request),
                        "errors": result.details(),
                    }
                },
            )
            raise ValidationFailedError(result.details())
        return result.data

    return _validate
