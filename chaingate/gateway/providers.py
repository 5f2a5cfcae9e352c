"""Provider adapters: translate a prompt into one vendor call.

Each adapter sends exactly one request and returns a ProviderResult.
Vendor problems never raise; they come back as a failure result tagged with
a ProviderErrorKind. Cancellation (asyncio.CancelledError) propagates.

Vendor-specific behaviors:
  - Scira: OpenAI-compatible chat completions over plain HTTP
  - Gemini: Google AI generateContent, finishReason SAFETY → vendor_rejected
  - DeepSeek: routed through OpenRouter with the OpenAI SDK
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any

import httpx
import openai
from openai import AsyncOpenAI

from chaingate.core import metrics
from chaingate.core.config import Settings
from chaingate.gateway.types import (
    ProviderConfig,
    ProviderErrorKind,
    ProviderResult,
    TokenUsage,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0
HEALTH_CHECK_PROMPT = "Hello"


class BaseProviderAdapter(ABC):
    """Base class for all provider adapters."""

    def __init__(self, config: ProviderConfig, client: httpx.AsyncClient | None = None):
        self.config = config
        self._client = client

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def model(self) -> str:
        return self.config.model

    async def invoke(self, prompt: str, timeout: float = DEFAULT_TIMEOUT) -> ProviderResult:
        """Send ``prompt`` to the vendor once, bounded by ``timeout`` seconds."""
        start = time.monotonic()
        logger.info(
            "%s request started",
            self.name,
            extra={"context": {"provider": self.name, "model": self.model, "inputLength": len(prompt)}},
        )

        result = await self._call(prompt, timeout)
        result.elapsed_ms = int((time.monotonic() - start) * 1000)
        metrics.observe_provider_call(self.name, result)

        if result.ok:
            logger.info(
                "%s response successful",
                self.name,
                extra={
                    "context": {
                        "provider": self.name,
                        "elapsedMs": result.elapsed_ms,
                        "outputLength": len(result.output),
                        "totalTokens": result.usage.total if result.usage else None,
                    }
                },
            )
        else:
            logger.warning(
                "%s call failed: %s",
                self.name,
                result.error_message,
                extra={
                    "context": {
                        "provider": self.name,
                        "elapsedMs": result.elapsed_ms,
                        "errorKind": result.error_kind.value,
                        "errorCode": result.error_code,
                    }
                },
            )
        return result

    async def health_check(self, timeout: float = DEFAULT_TIMEOUT) -> dict[str, Any]:
        """Send a fixed greeting and report whether the vendor answered."""
        if not self.config.api_key:
            return {"status": "unhealthy", "model": self.model, "error": "API key not configured"}

        result = await self.invoke(HEALTH_CHECK_PROMPT, timeout)
        if not result.ok:
            return {"status": "unhealthy", "model": self.model, "error": result.error_message}
        return {"status": "healthy", "model": result.model or self.model, "response": result.output[:50] + "..."}

    @abstractmethod
    async def _call(self, prompt: str, timeout: float) -> ProviderResult:
        """Perform the vendor call; elapsed time is filled in by ``invoke``."""
        ...

    def _failure(self, kind: ProviderErrorKind, message: str, error_code: str = "") -> ProviderResult:
        return ProviderResult.failure(self.name, kind, message, model=self.model, error_code=error_code)

    def _empty(self, detail: str = "returned no content") -> ProviderResult:
        return self._failure(ProviderErrorKind.VENDOR_EMPTY_RESPONSE, f"{self.name} {detail}")


# ---------------------------------------------------------------------------
# Plain HTTP + JSON adapters
# ---------------------------------------------------------------------------


class HttpJsonAdapter(BaseProviderAdapter):
    """Shared transport/error handling for vendors reached with plain httpx."""

    def _request_url(self) -> str:
        return self.config.api_url

    def _request_params(self) -> dict[str, str] | None:
        return None

    def _request_headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", **dict(self.config.extra_headers)}

    @abstractmethod
    def _build_payload(self, prompt: str) -> dict[str, Any]: ...

    @abstractmethod
    def _parse(self, data: dict[str, Any]) -> ProviderResult: ...

    async def _post(self, payload: dict[str, Any], timeout: float) -> httpx.Response:
        kwargs: dict[str, Any] = {"json": payload, "headers": self._request_headers()}
        params = self._request_params()
        if params:
            kwargs["params"] = params

        if self._client is not None:
            return await self._client.post(self._request_url(), timeout=timeout, **kwargs)

        async with httpx.AsyncClient(timeout=timeout) as client:
            return await client.post(self._request_url(), **kwargs)

    async def _call(self, prompt: str, timeout: float) -> ProviderResult:
        try:
            resp = await self._post(self._build_payload(prompt), timeout)
        except httpx.TimeoutException:
            return self._failure(ProviderErrorKind.TIMEOUT, f"{self.name} timeout after {timeout}s")
        except httpx.DecodingError:
            return self._empty("returned an undecodable body")
        except httpx.RequestError as e:
            return self._failure(ProviderErrorKind.NETWORK, f"{self.name} network error: {e}")

        if not resp.is_success:
            return self._failure(
                ProviderErrorKind.VENDOR_REJECTED,
                f"{self.name} rejected the request (HTTP {resp.status_code}): {resp.text[:200]}",
                error_code=str(resp.status_code),
            )

        try:
            data = resp.json()
        except ValueError:
            return self._empty("returned a non-JSON body")
        if not isinstance(data, dict):
            return self._empty("returned an unexpected body")

        return self._parse(data)


class OpenAICompatibleAdapter(HttpJsonAdapter):
    """Any vendor speaking the OpenAI ``chat/completions`` protocol."""

    def _request_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.api_key}", **super()._request_headers()}

    def _build_payload(self, prompt: str) -> dict[str, Any]:
        messages = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.append({"role": "user", "content": prompt})
        return {"model": self.model, "messages": messages}

    def _parse(self, data: dict[str, Any]) -> ProviderResult:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return self._empty("returned no choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        text = message.get("content") if isinstance(message, dict) else None
        if not isinstance(text, str) or not text.strip():
            return self._empty()

        usage = data.get("usage") or {}
        prompt_tokens = usage.get("prompt_tokens", 0)
        completion_tokens = usage.get("completion_tokens", 0)
        return ProviderResult.success(
            self.name,
            text,
            model=data.get("model", self.model),
            usage=TokenUsage(
                prompt=prompt_tokens,
                completion=completion_tokens,
                total=usage.get("total_tokens", prompt_tokens + completion_tokens),
            )
            if usage
            else None,
        )


class GeminiAdapter(HttpJsonAdapter):
    """Google Gemini adapter with SAFETY filter detection."""

    api_url_template = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"

    def _request_url(self) -> str:
        return self.config.api_url or self.api_url_template.format(model=self.model)

    def _request_params(self) -> dict[str, str]:
        return {"key": self.config.api_key}

    def _build_payload(self, prompt: str) -> dict[str, Any]:
        payload: dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
        # System instruction (separate from contents in Gemini API)
        if self.config.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": self.config.system_prompt}]}
        if self.config.generation_config:
            payload["generationConfig"] = dict(self.config.generation_config)
        return payload

    def _parse(self, data: dict[str, Any]) -> ProviderResult:
        candidates = data.get("candidates")
        if not isinstance(candidates, list) or not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason", "")
            if block_reason:
                return self._failure(
                    ProviderErrorKind.VENDOR_REJECTED,
                    f"[CENSORED_BY_VENDOR] Prompt blocked: {block_reason}",
                    error_code=f"BLOCKED_{block_reason}",
                )
            return self._empty("returned no candidates")

        candidate = candidates[0] if isinstance(candidates[0], dict) else {}
        if candidate.get("finishReason") == "SAFETY":
            return self._failure(
                ProviderErrorKind.VENDOR_REJECTED,
                "[CENSORED_BY_VENDOR] Gemini safety filter triggered",
                error_code="SAFETY",
            )

        parts = (candidate.get("content") or {}).get("parts") or []
        text = "".join(p["text"] for p in parts if isinstance(p, dict) and isinstance(p.get("text"), str))
        if not text.strip():
            return self._empty()

        usage = data.get("usageMetadata") or {}
        return ProviderResult.success(
            self.name,
            text,
            model=data.get("modelVersion", self.model),
            usage=TokenUsage(
                prompt=usage.get("promptTokenCount", 0),
                completion=usage.get("candidatesTokenCount", 0),
                total=usage.get("totalTokenCount", 0),
            )
            if usage
            else None,
        )


# ---------------------------------------------------------------------------
# SDK adapter (OpenAI SDK pointed at OpenRouter)
# ---------------------------------------------------------------------------


class OpenRouterAdapter(BaseProviderAdapter):
    """OpenRouter chat completions through the official OpenAI SDK."""

    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
        sdk_client: AsyncOpenAI | None = None,
    ):
        super().__init__(config, client)
        self._sdk_client = sdk_client

    @property
    def sdk(self) -> AsyncOpenAI:
        if self._sdk_client is None:
            self._sdk_client = AsyncOpenAI(
                api_key=self.config.api_key,
                base_url=self.config.api_url,
                default_headers=dict(self.config.extra_headers),
                max_retries=0,  # retry policy belongs to the orchestrator
                http_client=self._client,
            )
        return self._sdk_client

    async def _call(self, prompt: str, timeout: float) -> ProviderResult:
        messages = []
        if self.config.system_prompt:
            messages.append({"role": "system", "content": self.config.system_prompt})
        messages.append({"role": "user", "content": prompt})

        try:
            completion = await self.sdk.chat.completions.create(
                model=self.model,
                messages=messages,
                timeout=timeout,
            )
        except openai.APITimeoutError:
            return self._failure(ProviderErrorKind.TIMEOUT, f"{self.name} timeout after {timeout}s")
        except openai.APIConnectionError as e:
            return self._failure(ProviderErrorKind.NETWORK, f"{self.name} network error: {e}")
        except openai.APIStatusError as e:
            return self._failure(
                ProviderErrorKind.VENDOR_REJECTED,
                f"{self.name} rejected the request (HTTP {e.status_code}): {e.message}",
                error_code=str(e.status_code),
            )

        if not completion.choices:
            return self._empty("returned no choices")

        text = completion.choices[0].message.content
        if not isinstance(text, str) or not text.strip():
            return self._empty()

        usage = None
        if completion.usage is not None:
            usage = TokenUsage(
                prompt=completion.usage.prompt_tokens or 0,
                completion=completion.usage.completion_tokens or 0,
                total=completion.usage.total_tokens or 0,
            )
        return ProviderResult.success(self.name, text, model=completion.model or self.model, usage=usage)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class ProviderRegistry:
    """Named adapters available to the HTTP layer."""

    def __init__(self, adapters: dict[str, BaseProviderAdapter] | None = None):
        self._adapters: dict[str, BaseProviderAdapter] = dict(adapters or {})

    def register(self, adapter: BaseProviderAdapter) -> None:
        self._adapters[adapter.name] = adapter

    def get(self, name: str) -> BaseProviderAdapter:
        adapter = self._adapters.get(name)
        if adapter is None:
            raise KeyError(f"No provider registered under name: {name}")
        return adapter

    def names(self) -> list[str]:
        return list(self._adapters)

    def __contains__(self, name: str) -> bool:
        return name in self._adapters


def build_provider_registry(settings: Settings, client: httpx.AsyncClient | None = None) -> ProviderRegistry:
    """Factory: construct every configured adapter from settings."""
    registry = ProviderRegistry()
    registry.register(
        OpenAICompatibleAdapter(
            ProviderConfig(
                name="scira",
                api_key=settings.scira_api_key,
                model=settings.scira_model,
                api_url=settings.scira_api_url,
                system_prompt=settings.system_prompt,
            ),
            client,
        )
    )
    registry.register(
        OpenRouterAdapter(
            ProviderConfig(
                name="deepseek",
                api_key=settings.openrouter_api_key,
                model=settings.deepseek_model,
                api_url=settings.openrouter_base_url,
                system_prompt=settings.system_prompt,
                extra_headers=(
                    ("HTTP-Referer", settings.openrouter_referer),
                    ("X-Title", settings.openrouter_title),
                ),
            ),
            client,
        )
    )
    registry.register(
        GeminiAdapter(
            ProviderConfig(
                name="gemini",
                api_key=settings.gemini_api_key,
                model=settings.gemini_model,
                system_prompt=settings.system_prompt,
                generation_config=(
                    ("temperature", settings.gemini_temperature),
                    ("topK", settings.gemini_top_k),
                    ("topP", settings.gemini_top_p),
                    ("maxOutputTokens", settings.gemini_max_output_tokens),
                ),
            ),
            client,
        )
    )
    return registry
