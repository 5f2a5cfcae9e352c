"""Chain Orchestrator: runs provider stages in sequence.

Pipeline for one call:
  1. Start the chain deadline clock
  2. For each configured stage, in order:
     a. Give the stage min(stage_timeout, remaining chain budget)
     b. Invoke the adapter with the current working prompt
     c. Retry transient failures if the RetryPolicy allows it
     d. Stop at the first failure (fail-fast)
  3. Feed each successful output into the next stage

Usage:
    orchestrator = ChainOrchestrator([("scira", scira), ("deepseek", deepseek)])
    result = await orchestrator.run_chain("hello")
    if result.ok:
        print(result.final_output)
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from starlette.requests import Request

from chaingate.core.sentry import record_provider_failure
from chaingate.gateway.providers import BaseProviderAdapter
from chaingate.gateway.retry import RetryPolicy
from chaingate.gateway.types import (
    ChainResult,
    ChainStageResult,
    ProviderErrorKind,
    ProviderResult,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

Stage = tuple[str, BaseProviderAdapter]


class ChainOrchestrator:
    """Sequential, fail-fast multi-provider pipeline."""

    def __init__(
        self,
        stages: Sequence[Stage],
        stage_timeout: float = 30.0,
        chain_timeout: float | None = 90.0,
        retry_policy: RetryPolicy | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if not stages:
            raise ValueError("A chain needs at least one stage")
        self.stages: tuple[Stage, ...] = tuple(stages)
        self.stage_timeout = stage_timeout
        self.chain_timeout = chain_timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self._clock = clock

    @property
    def stage_names(self) -> list[str]:
        return [name for name, _ in self.stages]

    async def run_chain(self, prompt: str) -> ChainResult:
        """Run every stage in order, feeding each output into the next."""
        chain = ChainResult()
        deadline = self._clock() + self.chain_timeout if self.chain_timeout is not None else None
        working_prompt = prompt

        logger.info(
            "Chain started",
            extra={"context": {"stages": self.stage_names, "inputLength": len(prompt)}},
        )

        try:
            for name, adapter in self.stages:
                result = await self._run_stage(name, adapter, working_prompt, deadline)
                chain.stages.append(ChainStageResult(name=name, result=result))

                if not result.ok:
                    chain.deadline_exceeded = result.error_code == "CHAIN_DEADLINE"
                    record_provider_failure(name, result)
                    logger.warning(
                        "Chain aborted at stage %s: %s",
                        name,
                        result.error_message,
                        extra={
                            "context": {
                                "failedStage": name,
                                "errorKind": result.error_kind.value,
                                "completedStages": len(chain.stages) - 1,
                            }
                        },
                    )
                    return chain

                working_prompt = result.output
        except asyncio.CancelledError:
            logger.info(
                "Chain cancelled after %d completed stage(s)",
                len(chain.stages),
                extra={"context": {"stages": self.stage_names}},
            )
            raise

        logger.info(
            "Chain completed",
            extra={"context": {"stages": self.stage_names, "elapsedMs": chain.elapsed_ms}},
        )
        return chain

    async def _run_stage(
        self,
        name: str,
        adapter: BaseProviderAdapter,
        prompt: str,
        deadline: float | None,
    ) -> ProviderResult:
        attempt = 0
        elapsed_total = 0
        while True:
            remaining = self._remaining(deadline)
            if remaining is not None and remaining <= 0:
                result = self._deadline_failure(name, adapter)
                result.elapsed_ms = elapsed_total
                result.attempts = attempt + 1
                return result

            timeout = self.stage_timeout if remaining is None else min(self.stage_timeout, remaining)
            clamped = remaining is not None and remaining < self.stage_timeout
            started = self._clock()
            try:
                if remaining is None:
                    result = await adapter.invoke(prompt, timeout)
                else:
                    result = await asyncio.wait_for(adapter.invoke(prompt, timeout), timeout=remaining)
            except asyncio.TimeoutError:
                result = self._deadline_failure(name, adapter)
                result.elapsed_ms = int((self._clock() - started) * 1000)

            # a vendor timeout under a budget-clamped timeout is the chain deadline
            if clamped and result.error_kind == ProviderErrorKind.TIMEOUT:
                elapsed_ms = result.elapsed_ms
                result = self._deadline_failure(name, adapter)
                result.elapsed_ms = elapsed_ms

            elapsed_total += result.elapsed_ms
            result.elapsed_ms = elapsed_total
            result.attempts = attempt + 1

            if result.ok or result.error_code == "CHAIN_DEADLINE":
                return result
            if not self.retry_policy.should_retry(result, attempt):
                return result

            delay = self.retry_policy.backoff(attempt)
            remaining = self._remaining(deadline)
            if remaining is not None and delay >= remaining:
                return result

            logger.info(
                "Retrying stage %s (attempt %d/%d) in %.1fs",
                name,
                attempt + 1,
                self.retry_policy.max_retries,
                delay,
            )
            await asyncio.sleep(delay)
            attempt += 1

    def _remaining(self, deadline: float | None) -> float | None:
        if deadline is None:
            return None
        return deadline - self._clock()

    def _deadline_failure(self, name: str, adapter: BaseProviderAdapter) -> ProviderResult:
        return ProviderResult.failure(
            name,
            ProviderErrorKind.TIMEOUT,
            f"Chain deadline of {self.chain_timeout}s exceeded at stage {name}",
            model=adapter.model,
            error_code="CHAIN_DEADLINE",
        )


async def run_until_disconnected(
    request: Request,
    work: Awaitable[T],
    poll_interval: float = 0.5,
) -> T | None:
    """Await ``work`` but cancel it if the HTTP client goes away.

    Returns None when the client disconnected before the work finished.
    """
    task = asyncio.ensure_future(work)
    try:
        while True:
            done, _ = await asyncio.wait({task}, timeout=poll_interval)
            if done:
                return task.result()
            if await request.is_disconnected():
                logger.info(
                    "Client disconnected, cancelling in-flight provider call",
                    extra={"context": {"path": request.url.path}},
                )
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                return None
    finally:
        if not task.done():
            task.cancel()
