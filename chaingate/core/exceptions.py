"""HTTP-facing error taxonomy.

Every error is an HTTPException so FastAPI routes can simply ``raise``; the
handlers in ``chaingate.main`` render them through the response envelope.
"""

from __future__ import annotations

from typing import Any

from fastapi import HTTPException

from chaingate.gateway.types import ChainResult, ProviderErrorKind, ProviderResult


class AppError(HTTPException):
    status_code_default = 500

    def __init__(
        self,
        detail: str,
        *,
        details: Any = None,
        metadata: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(status_code=self.status_code_default, detail=detail, headers=headers)
        self.details = details
        self.metadata = metadata or {}


class BadRequestError(AppError):
    status_code_default = 400


class ValidationFailedError(BadRequestError):
    def __init__(self, details: list[dict[str, str]], detail: str = "Validation failed"):
        super().__init__(detail, details=details)


class UnauthorizedError(AppError):
    status_code_default = 401


class NotFoundError(AppError):
    status_code_default = 404


class RateLimitExceededError(AppError):
    status_code_default = 429

    def __init__(self, detail: str, retry_after: int, headers: dict[str, str] | None = None):
        super().__init__(
            detail,
            metadata={"retryAfter": retry_after},
            headers={**(headers or {}), "Retry-After": str(retry_after)},
        )
        self.retry_after = retry_after


# ---------------------------------------------------------------------------
# Provider failures
# ---------------------------------------------------------------------------


class ProviderError(AppError):
    status_code_default = 502
    kind: ProviderErrorKind | None = None

    @classmethod
    def for_result(cls, result: ProviderResult, *, stage: str | None = None) -> ProviderError:
        """Build the matching subclass for a failed ProviderResult."""
        error_cls = _BY_KIND.get(result.error_kind, ProviderError)
        if stage is not None:
            title = f"Chain stage '{stage}' failed"
            metadata = {"failedStage": stage}
        else:
            title = f"{result.provider} API call failed"
            metadata = {"provider": result.provider}
        metadata["errorKind"] = result.error_kind.value if result.error_kind else None
        if result.error_code:
            metadata["errorCode"] = result.error_code
        return error_cls(title, details=result.error_message, metadata=metadata)

    @classmethod
    def for_chain(cls, chain: ChainResult) -> ProviderError:
        failed = chain.failed_stage
        if failed is None:
            raise ValueError("Chain did not fail")
        error = cls.for_result(failed.result, stage=failed.name)
        error.metadata["stages"] = [s.result.to_dict() for s in chain.stages]
        error.metadata["deadlineExceeded"] = chain.deadline_exceeded
        return error


class ProviderNetworkError(ProviderError):
    status_code_default = 502
    kind = ProviderErrorKind.NETWORK


class ProviderTimeoutError(ProviderError):
    status_code_default = 504
    kind = ProviderErrorKind.TIMEOUT


class ProviderRejectedError(ProviderError):
    status_code_default = 502
    kind = ProviderErrorKind.VENDOR_REJECTED


class UpstreamEmptyResponseError(ProviderError):
    status_code_default = 502
    kind = ProviderErrorKind.VENDOR_EMPTY_RESPONSE


_BY_KIND: dict[ProviderErrorKind | None, type[ProviderError]] = {
    c.kind: c for c in (ProviderNetworkError, ProviderTimeoutError, ProviderRejectedError, UpstreamEmptyResponseError)
}
