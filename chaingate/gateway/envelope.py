"""Response Envelope Builder: one JSON shape for every outcome.

Success:  {"output": ..., <extra fields>, "metadata": {...}}
Failure:  {"error": ..., "details"?: ..., "metadata": {...}}

Metadata always carries ``processingTime`` (ms since ``started``, a
``time.monotonic()`` reading) and an ISO-8601 ``timestamp``.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from chaingate.gateway.types import ChainResult, ProviderResult


def build_metadata(started: float | None, **extra: Any) -> dict[str, Any]:
    processing_ms = int((time.monotonic() - started) * 1000) if started is not None else 0
    return {
        "processingTime": processing_ms,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        **extra,
    }


def success_envelope(output: Any, started: float | None, *, fields: dict | None = None, **extra: Any) -> dict:
    return {"output": output, **(fields or {}), "metadata": build_metadata(started, **extra)}


def error_envelope(error: str, started: float | None, *, details: Any = None, **extra: Any) -> dict:
    envelope: dict[str, Any] = {"error": error}
    if details is not None:
        envelope["details"] = details
    envelope["metadata"] = build_metadata(started, **extra)
    return envelope


def provider_success(result: ProviderResult, started: float | None) -> dict:
    """Envelope for a single-provider call."""
    return success_envelope(
        result.output,
        started,
        provider=result.provider,
        model=result.model,
        usage=result.usage.to_dict() if result.usage else None,
    )


def chain_success(chain: ChainResult, started: float | None) -> dict:
    """Envelope for a completed chain: final output plus every stage's output."""
    return success_envelope(
        chain.final_output,
        started,
        fields={"chain": chain.outputs()},
        stages=[s.result.to_dict() for s in chain.stages],
    )
