"""Inference endpoints: the scira → deepseek chain and single-provider calls."""

import asyncio
import time
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, Depends, Request, Response

from chaingate.core.config import settings
from chaingate.core.dependencies import get_provider_registry, rate_limit, validated_body
from chaingate.core.exceptions import ProviderError
from chaingate.gateway.envelope import chain_success, provider_success
from chaingate.gateway.orchestrator import ChainOrchestrator, run_until_disconnected
from chaingate.gateway.providers import ProviderRegistry
from chaingate.gateway.rate_limiter import RateLimitTier
from chaingate.gateway.retry import RetryPolicy

router = APIRouter(tags=["inference"])

CHAIN_STAGES = ("scira", "deepseek")

# Status logged (never delivered) when the client hung up mid-call
CLIENT_CLOSED_REQUEST = 499


def build_orchestrator(registry: ProviderRegistry, stage_names: tuple[str, ...]) -> ChainOrchestrator:
    return ChainOrchestrator(
        [(name, registry.get(name)) for name in stage_names],
        stage_timeout=settings.provider_timeout_seconds,
        chain_timeout=settings.chain_timeout_seconds,
        retry_policy=RetryPolicy(
            max_retries=settings.provider_max_retries,
            base_delay=settings.provider_retry_base_delay,
            max_delay=settings.provider_retry_max_delay,
        ),
    )


def _started_at(request: Request) -> float:
    return getattr(request.state, "started_at", None) or time.monotonic()


@router.post("/chain", dependencies=[Depends(rate_limit(RateLimitTier.CHAIN))])
async def chain(
    request: Request,
    body: dict[str, Any] = Depends(validated_body("inference")),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    """Run the prompt through scira, then feed scira's answer to deepseek."""
    started = _started_at(request)
    orchestrator = build_orchestrator(registry, CHAIN_STAGES)

    result = await run_until_disconnected(request, orchestrator.run_chain(body["input"]))
    if result is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    if not result.ok:
        raise ProviderError.for_chain(result)
    return chain_success(result, started)


async def _single_provider(request: Request, registry: ProviderRegistry, name: str, prompt: str):
    started = _started_at(request)
    orchestrator = build_orchestrator(registry, (name,))

    result = await run_until_disconnected(request, orchestrator.run_chain(prompt))
    if result is None:
        return Response(status_code=CLIENT_CLOSED_REQUEST)

    stage = result.stages[0].result
    if not stage.ok:
        raise ProviderError.for_result(stage)
    return provider_success(stage, started)


@router.post("/scira", dependencies=[Depends(rate_limit(RateLimitTier.AI))])
async def scira(
    request: Request,
    body: dict[str, Any] = Depends(validated_body("inference")),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    return await _single_provider(request, registry, "scira", body["input"])


@router.post("/deepseek", dependencies=[Depends(rate_limit(RateLimitTier.AI))])
async def deepseek(
    request: Request,
    body: dict[str, Any] = Depends(validated_body("inference")),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    return await _single_provider(request, registry, "deepseek", body["input"])


@router.post("/gemini", dependencies=[Depends(rate_limit(RateLimitTier.AI))])
async def gemini(
    request: Request,
    body: dict[str, Any] = Depends(validated_body("inference")),
    registry: ProviderRegistry = Depends(get_provider_registry),
):
    return await _single_provider(request, registry, "gemini", body["input"])


@router.get("/health")
async def api_health():
    return {
        "status": "API is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "endpoints": {
            "chain": "POST /api/chain",
            "scira": "POST /api/scira",
            "deepseek": "POST /api/deepseek",
            "gemini": "POST /api/gemini",
            "providers": "GET /api/health/providers",
        },
    }


@router.get("/health/providers", dependencies=[Depends(rate_limit(RateLimitTier.GENERAL))])
async def providers_health(registry: ProviderRegistry = Depends(get_provider_registry)):
    """Live check of every configured provider, run concurrently."""
    names = registry.names()
    checks = await asyncio.gather(
        *(registry.get(name).health_check(settings.provider_timeout_seconds) for name in names)
    )
    providers = dict(zip(names, checks))
    healthy = all(check["status"] == "healthy" for check in checks)
    return {
        "status": "healthy" if healthy else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "providers": providers,
    }
