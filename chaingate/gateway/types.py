"""Core types and DTOs for the inference pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ProviderErrorKind(str, Enum):
    """Why a provider call failed."""

    NETWORK = "network"
    TIMEOUT = "timeout"
    VENDOR_REJECTED = "vendor_rejected"
    VENDOR_EMPTY_RESPONSE = "vendor_empty_response"


RETRYABLE_ERROR_KINDS = frozenset({ProviderErrorKind.NETWORK, ProviderErrorKind.TIMEOUT})


# ---------------------------------------------------------------------------
# Provider config: injected into every adapter
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable connection settings for one provider."""

    name: str
    api_key: str
    model: str
    api_url: str = ""
    system_prompt: str = "You are a helpful assistant."
    extra_headers: tuple[tuple[str, str], ...] = ()
    generation_config: tuple[tuple[str, float | int], ...] = ()  # sampling knobs, vendor key names

    def __repr__(self) -> str:
        # never leak the key into logs
        return f"ProviderConfig(name={self.name!r}, model={self.model!r}, api_url={self.api_url!r})"


# ---------------------------------------------------------------------------
# Provider result: canonical output of one adapter call
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenUsage:
    prompt: int = 0
    completion: int = 0
    total: int = 0

    def to_dict(self) -> dict:
        return {"prompt": self.prompt, "completion": self.completion, "total": self.total}


@dataclass
class ProviderResult:
    """Outcome of a single provider invocation.

    Either ``output`` is set (success) or ``error_kind`` is set (failure);
    never both.
    """

    provider: str
    model: str = ""
    output: str = ""
    usage: TokenUsage | None = None
    elapsed_ms: int = 0

    # Error details (if error_kind is set)
    error_kind: ProviderErrorKind | None = None
    error_message: str = ""
    error_code: str = ""  # e.g. vendor HTTP status, "SAFETY"
    attempts: int = 1

    @property
    def ok(self) -> bool:
        return self.error_kind is None

    @classmethod
    def success(
        cls,
        provider: str,
        output: str,
        *,
        model: str = "",
        usage: TokenUsage | None = None,
        elapsed_ms: int = 0,
    ) -> ProviderResult:
        return cls(provider=provider, model=model, output=output, usage=usage, elapsed_ms=elapsed_ms)

    @classmethod
    def failure(
        cls,
        provider: str,
        kind: ProviderErrorKind,
        message: str,
        *,
        model: str = "",
        elapsed_ms: int = 0,
        error_code: str = "",
    ) -> ProviderResult:
        return cls(
            provider=provider,
            model=model,
            elapsed_ms=elapsed_ms,
            error_kind=kind,
            error_message=message,
            error_code=error_code,
        )

    def to_dict(self) -> dict:
        """Serialize to the camelCase shape used in response metadata."""
        data: dict = {
            "provider": self.provider,
            "model": self.model,
            "elapsedMs": self.elapsed_ms,
            "attempts": self.attempts,
        }
        if self.ok:
            data["usage"] = self.usage.to_dict() if self.usage else None
        else:
            data["errorKind"] = self.error_kind.value
            data["error"] = self.error_message
            if self.error_code:
                data["errorCode"] = self.error_code
        return data


# ---------------------------------------------------------------------------
# Chain result
# ---------------------------------------------------------------------------


@dataclass
class ChainStageResult:
    name: str
    result: ProviderResult


@dataclass
class ChainResult:
    """Ordered per-stage results of one chain run.

    Invariant: at most the last stage has failed; no stage follows a failure.
    """

    stages: list[ChainStageResult] = field(default_factory=list)
    deadline_exceeded: bool = False

    @property
    def ok(self) -> bool:
        return bool(self.stages) and all(s.result.ok for s in self.stages)

    @property
    def failed_stage(self) -> ChainStageResult | None:
        for stage in self.stages:
            if not stage.result.ok:
                return stage
        return None

    @property
    def final_output(self) -> str | None:
        """Output of the last stage, or None if the chain failed."""
        if not self.ok:
            return None
        return self.stages[-1].result.output

    def outputs(self) -> dict[str, str]:
        """Map stage name → output for every successful stage."""
        return {s.name: s.result.output for s in self.stages if s.result.ok}

    @property
    def elapsed_ms(self) -> int:
        return sum(s.result.elapsed_ms for s in self.stages)
