"""Tests for provider adapters."""

from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import openai
import pytest

from chaingate.core.config import Settings
from chaingate.gateway.providers import (
    GeminiAdapter,
    OpenAICompatibleAdapter,
    OpenRouterAdapter,
    ProviderRegistry,
    build_provider_registry,
)
from chaingate.gateway.types import ProviderConfig, ProviderErrorKind
from tests.stubs import StubAdapter

SCIRA_URL = "https://api.scira.test/v1/chat/completions"


@pytest.fixture
def scira():
    return OpenAICompatibleAdapter(
        ProviderConfig(name="scira", api_key="sk-test", model="scira-default", api_url=SCIRA_URL)
    )


@pytest.fixture
def gemini():
    return GeminiAdapter(ProviderConfig(name="gemini", api_key="g-test", model="gemini-2.0-flash"))


def _response(status: int, url: str = SCIRA_URL, **kwargs) -> httpx.Response:
    return httpx.Response(status, request=httpx.Request("POST", url), **kwargs)


def _patched_client(response=None, side_effect=None):
    mock_client = AsyncMock()
    if side_effect is not None:
        mock_client.post.side_effect = side_effect
    else:
        mock_client.post.return_value = response
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    return mock_client


class TestOpenAICompatibleAdapter:
    @pytest.mark.asyncio
    async def test_success(self, scira):
        data = {
            "choices": [{"message": {"content": "Paris is the capital."}, "finish_reason": "stop"}],
            "model": "scira-default",
            "usage": {"prompt_tokens": 12, "completion_tokens": 6, "total_tokens": 18},
        }
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            mock_client = _patched_client(_response(200, json=data))
            MockClient.return_value = mock_client

            result = await scira.invoke("Capital of France?")

        assert result.ok
        assert result.output == "Paris is the capital."
        assert result.usage.total == 18
        assert result.elapsed_ms >= 0

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["model"] == "scira-default"
        assert payload["messages"][-1] == {"role": "user", "content": "Capital of France?"}
        headers = mock_client.post.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_timeout_maps_to_timeout_kind(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(side_effect=httpx.ReadTimeout("slow"))
            result = await scira.invoke("hi", timeout=1.0)

        assert not result.ok
        assert result.error_kind == ProviderErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error_maps_to_network_kind(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(side_effect=httpx.ConnectError("refused"))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_http_error_maps_to_vendor_rejected(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(401, json={"error": "bad key"}))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_REJECTED
        assert result.error_code == "401"

    @pytest.mark.asyncio
    async def test_empty_content_is_reported_not_coerced(self, scira):
        data = {"choices": [{"message": {"content": "   "}}]}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json=data))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE
        assert result.output == ""

    @pytest.mark.asyncio
    async def test_no_choices_is_empty_response(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json={"choices": []}))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_non_json_body_is_empty_response(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, text="<html>oops</html>"))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_undecodable_body_is_empty_response(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(side_effect=httpx.DecodingError("bad gzip"))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_redirect_loop_maps_to_network_kind(self, scira):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(side_effect=httpx.TooManyRedirects("loop"))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.NETWORK

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data",
        [
            {"choices": [{"message": {"content": [{"type": "text", "text": "hi"}]}}]},
            {"choices": [{"message": {"content": 42}}]},
            {"choices": ["not an object"]},
            {"choices": {"0": {}}},
        ],
    )
    async def test_malformed_content_is_empty_response(self, scira, data):
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json=data))
            result = await scira.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_shared_client_is_used_when_given(self):
        data = {"choices": [{"message": {"content": "shared"}}]}
        shared = AsyncMock()
        shared.post.return_value = _response(200, json=data)
        adapter = OpenAICompatibleAdapter(
            ProviderConfig(name="scira", api_key="k", model="m", api_url=SCIRA_URL), client=shared
        )

        result = await adapter.invoke("hi", timeout=7.0)

        assert result.output == "shared"
        assert shared.post.call_args.kwargs["timeout"] == 7.0


class TestGeminiAdapter:
    @pytest.mark.asyncio
    async def test_success(self, gemini):
        data = {
            "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "there"}]}, "finishReason": "STOP"}],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2, "totalTokenCount": 6},
        }
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            mock_client = _patched_client(_response(200, json=data))
            MockClient.return_value = mock_client

            result = await gemini.invoke("hi")

        assert result.output == "Hello there"
        assert result.usage.total == 6
        call = mock_client.post.call_args
        assert call.args[0].endswith("/models/gemini-2.0-flash:generateContent")
        assert call.kwargs["params"] == {"key": "g-test"}

    @pytest.mark.asyncio
    async def test_generation_config_is_sent(self):
        config = ProviderConfig(
            name="gemini",
            api_key="g-test",
            model="gemini-2.0-flash",
            generation_config=(("temperature", 0.7), ("topK", 40)),
        )
        data = {"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            mock_client = _patched_client(_response(200, json=data))
            MockClient.return_value = mock_client

            await GeminiAdapter(config).invoke("hi")

        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["generationConfig"] == {"temperature": 0.7, "topK": 40}

    @pytest.mark.asyncio
    async def test_no_generation_config_by_default(self, gemini):
        data = {"candidates": [{"content": {"parts": [{"text": "ok"}]}}]}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            mock_client = _patched_client(_response(200, json=data))
            MockClient.return_value = mock_client

            await gemini.invoke("hi")

        assert "generationConfig" not in mock_client.post.call_args.kwargs["json"]

    @pytest.mark.asyncio
    async def test_null_text_parts_are_skipped(self, gemini):
        data = {"candidates": [{"content": {"parts": [{"text": None}, {"text": "kept"}, {"inlineData": {}}]}}]}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json=data))
            result = await gemini.invoke("hi")

        assert result.output == "kept"

    @pytest.mark.asyncio
    async def test_only_null_text_is_empty_response(self, gemini):
        data = {"candidates": [{"content": {"parts": [{"text": None}]}}]}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json=data))
            result = await gemini.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_safety_filter_is_vendor_rejected(self, gemini):
        data = {"candidates": [{"finishReason": "SAFETY", "content": {"parts": []}}]}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json=data))
            result = await gemini.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_REJECTED
        assert result.error_code == "SAFETY"

    @pytest.mark.asyncio
    async def test_blocked_prompt(self, gemini):
        data = {"promptFeedback": {"blockReason": "OTHER"}}
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            MockClient.return_value = _patched_client(_response(200, json=data))
            result = await gemini.invoke("hi")

        assert result.error_kind == ProviderErrorKind.VENDOR_REJECTED
        assert result.error_code == "BLOCKED_OTHER"


class TestOpenRouterAdapter:
    @pytest.fixture
    def sdk(self):
        sdk = MagicMock()
        sdk.chat.completions.create = AsyncMock()
        return sdk

    @pytest.fixture
    def deepseek(self, sdk):
        config = ProviderConfig(
            name="deepseek",
            api_key="or-test",
            model="deepseek/deepseek-r1:free",
            api_url="https://openrouter.ai/api/v1",
        )
        return OpenRouterAdapter(config, sdk_client=sdk)

    @pytest.mark.asyncio
    async def test_success(self, deepseek, sdk):
        completion = MagicMock()
        completion.choices = [MagicMock()]
        completion.choices[0].message.content = "Refined answer"
        completion.model = "deepseek/deepseek-r1:free"
        completion.usage.prompt_tokens = 10
        completion.usage.completion_tokens = 20
        completion.usage.total_tokens = 30
        sdk.chat.completions.create.return_value = completion

        result = await deepseek.invoke("draft", timeout=12.0)

        assert result.ok
        assert result.output == "Refined answer"
        assert result.usage.total == 30
        kwargs = sdk.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "deepseek/deepseek-r1:free"
        assert kwargs["timeout"] == 12.0
        assert kwargs["messages"][-1] == {"role": "user", "content": "draft"}

    @pytest.mark.asyncio
    async def test_timeout(self, deepseek, sdk):
        request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
        sdk.chat.completions.create.side_effect = openai.APITimeoutError(request=request)

        result = await deepseek.invoke("draft")

        assert result.error_kind == ProviderErrorKind.TIMEOUT

    @pytest.mark.asyncio
    async def test_connection_error(self, deepseek, sdk):
        request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
        sdk.chat.completions.create.side_effect = openai.APIConnectionError(request=request)

        result = await deepseek.invoke("draft")

        assert result.error_kind == ProviderErrorKind.NETWORK

    @pytest.mark.asyncio
    async def test_status_error(self, deepseek, sdk):
        request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
        response = httpx.Response(429, request=request, json={"error": {"message": "rate limited"}})
        sdk.chat.completions.create.side_effect = openai.RateLimitError(
            "rate limited", response=response, body=None
        )

        result = await deepseek.invoke("draft")

        assert result.error_kind == ProviderErrorKind.VENDOR_REJECTED
        assert result.error_code == "429"

    @pytest.mark.asyncio
    async def test_non_string_content_is_empty_response(self, deepseek, sdk):
        completion = MagicMock()
        completion.choices = [MagicMock()]
        completion.choices[0].message.content = None
        sdk.chat.completions.create.return_value = completion

        result = await deepseek.invoke("draft")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE

    @pytest.mark.asyncio
    async def test_empty_choices(self, deepseek, sdk):
        completion = MagicMock()
        completion.choices = []
        sdk.chat.completions.create.return_value = completion

        result = await deepseek.invoke("draft")

        assert result.error_kind == ProviderErrorKind.VENDOR_EMPTY_RESPONSE


class TestProviderRegistry:
    def test_build_from_settings(self):
        s = Settings(scira_api_key="a", openrouter_api_key="b", gemini_api_key="c")
        registry = build_provider_registry(s)

        assert registry.names() == ["scira", "deepseek", "gemini"]
        assert isinstance(registry.get("deepseek"), OpenRouterAdapter)
        headers = dict(registry.get("deepseek").config.extra_headers)
        assert headers["X-Title"] == s.openrouter_title
        assert "HTTP-Referer" in headers
        assert dict(registry.get("gemini").config.generation_config) == {
            "temperature": 0.7,
            "topK": 40,
            "topP": 0.95,
            "maxOutputTokens": 8192,
        }

    def test_unknown_provider(self):
        with pytest.raises(KeyError):
            ProviderRegistry().get("nope")

    def test_config_repr_hides_key(self):
        config = ProviderConfig(name="scira", api_key="sk-secret", model="m")
        assert "sk-secret" not in repr(config)


class TestHealthCheck:
    @pytest.mark.asyncio
    async def test_healthy_provider(self):
        adapter = StubAdapter("gemini", reply="Hello! How can I help you today?")

        status = await adapter.health_check(timeout=1.0)

        assert status["status"] == "healthy"
        assert status["model"] == "gemini-stub"
        assert status["response"] == "Hello! How can I help you today?..."
        assert adapter.prompts == ["Hello"]

    @pytest.mark.asyncio
    async def test_failing_provider(self):
        adapter = StubAdapter("scira", failure=ProviderErrorKind.NETWORK)

        status = await adapter.health_check(timeout=1.0)

        assert status == {"status": "unhealthy", "model": "scira-stub", "error": "scira stub failure"}

    @pytest.mark.asyncio
    async def test_missing_key_skips_the_call(self):
        adapter = OpenAICompatibleAdapter(ProviderConfig(name="scira", api_key="", model="m", api_url=SCIRA_URL))
        with patch("chaingate.gateway.providers.httpx.AsyncClient") as MockClient:
            status = await adapter.health_check()

        assert status["status"] == "unhealthy"
        assert status["error"] == "API key not configured"
        MockClient.assert_not_called()
