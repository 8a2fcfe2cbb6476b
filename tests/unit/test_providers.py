"""Unit tests for the OpenAI-compatible chat provider.

Covers:
- Request routing: base URL precedence, ``model`` injection, auth header,
  OpenRouter attribution headers.
- Error classification: retryable statuses, non-retryable 4xx, transport
  failures, non-JSON and non-object 2xx bodies.
- :meth:`ensure_credentials` fail-fast behaviour.

HTTP traffic goes through :class:`httpx.MockTransport`; nothing touches the
network.
"""

from __future__ import annotations

import json
from collections.abc import Callable

import httpx
import pytest

from researchflow.core.exceptions import ConfigError, ProviderRequestError, ProviderResponseError
from researchflow.core.settings import Settings
from researchflow.core.stage_config import MODEL_REGISTRY, ModelProfile
from researchflow.providers.openai_compat import OpenAICompatibleProvider

OPENAI_MODEL = MODEL_REGISTRY["4o-mini"]
ROUTED_MODEL = ModelProfile(
    slug="claude", provider="openrouter", model_name="vendor/model-x", price_in=1, price_out=2
)
BODY = {"messages": [{"role": "user", "content": "hi"}], "temperature": 0}
OK_COMPLETION = {"choices": [{"message": {"content": "{}"}}], "usage": {"prompt_tokens": 1}}


def _settings(**overrides: object) -> Settings:
    values: dict[str, object] = {"openai_api_key": "sk-test", "openai_base_url": ""}
    values.update(overrides)
    return Settings(**values)


def _provider(
    handler: Callable[[httpx.Request], httpx.Response], **overrides: object
) -> OpenAICompatibleProvider:
    return OpenAICompatibleProvider(_settings(**overrides), transport=httpx.MockTransport(handler))


@pytest.mark.usefixtures("clean_env")
class TestRequest:
    async def test_posts_body_with_model_and_auth(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=OK_COMPLETION)

        async with _provider(handler) as provider:
            result = await provider.complete(OPENAI_MODEL, BODY)

        assert result == OK_COMPLETION
        (request,) = seen
        assert str(request.url) == "https://api.openai.com/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert "HTTP-Referer" not in request.headers
        sent = json.loads(request.content)
        assert sent["model"] == "gpt-4o-mini"
        assert sent["messages"] == BODY["messages"]

    async def test_openai_base_url_override(self) -> None:
        urls: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, json=OK_COMPLETION)

        async with _provider(handler, openai_base_url="http://proxy.local/v1/") as provider:
            await provider.complete(OPENAI_MODEL, BODY)
        assert urls == ["http://proxy.local/v1/chat/completions"]

    async def test_openrouter_headers_and_key_fallback(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=OK_COMPLETION)

        async with _provider(handler, openai_base_url="http://ignored") as provider:
            await provider.complete(ROUTED_MODEL, BODY)

        (request,) = seen
        assert str(request.url).startswith("https://openrouter.ai/api/v1/")
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["HTTP-Referer"] == "https://researchflow.local"
        assert request.headers["X-Title"] == "researchflow"

    def test_profile_base_url_wins(self) -> None:
        model = OPENAI_MODEL.model_copy(update={"base_url": "http://gateway/v1/"})
        provider = OpenAICompatibleProvider(_settings(openai_base_url="http://other"))
        assert provider.base_url_for(model) == "http://gateway/v1"

    async def test_close_is_idempotent(self) -> None:
        provider = _provider(lambda _r: httpx.Response(200, json=OK_COMPLETION))
        await provider.complete(OPENAI_MODEL, BODY)
        await provider.close()
        await provider.close()


@pytest.mark.usefixtures("clean_env")
class TestErrors:
    @pytest.mark.parametrize("status", [408, 409, 429, 500, 502, 503, 504])
    async def test_retryable_statuses(self, status: int) -> None:
        provider = _provider(lambda _r: httpx.Response(status, text="slow down"))
        with pytest.raises(ProviderRequestError) as excinfo:
            await provider.complete(OPENAI_MODEL, BODY)
        assert excinfo.value.retryable is True
        assert excinfo.value.upstream_status == status
        assert "slow down" in str(excinfo.value)

    @pytest.mark.parametrize("status", [400, 401, 404, 422])
    async def test_other_client_errors_not_retryable(self, status: int) -> None:
        provider = _provider(lambda _r: httpx.Response(status, json={"error": "bad"}))
        with pytest.raises(ProviderRequestError) as excinfo:
            await provider.complete(OPENAI_MODEL, BODY)
        assert excinfo.value.retryable is False

    async def test_transport_error_is_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ProviderRequestError) as excinfo:
            await _provider(handler).complete(OPENAI_MODEL, BODY)
        assert excinfo.value.retryable is True
        assert excinfo.value.upstream_status is None
        assert "ConnectError" in str(excinfo.value)

    async def test_non_json_body(self) -> None:
        provider = _provider(lambda _r: httpx.Response(200, text="<html>oops</html>"))
        with pytest.raises(ProviderResponseError, match="not valid JSON"):
            await provider.complete(OPENAI_MODEL, BODY)

    async def test_non_object_body(self) -> None:
        provider = _provider(lambda _r: httpx.Response(200, json=[1, 2]))
        with pytest.raises(ProviderResponseError, match="not an object"):
            await provider.complete(OPENAI_MODEL, BODY)


@pytest.mark.usefixtures("clean_env")
class TestCredentials:
    def test_missing_openai_key(self) -> None:
        provider = OpenAICompatibleProvider(_settings(openai_api_key=""))
        with pytest.raises(ConfigError, match="API key missing"):
            provider.ensure_credentials(OPENAI_MODEL)

    def test_openrouter_key_preferred(self) -> None:
        provider = OpenAICompatibleProvider(
            _settings(openai_api_key="", openrouter_api_key="or-key")
        )
        provider.ensure_credentials(ROUTED_MODEL)
        with pytest.raises(ConfigError):
            provider.ensure_credentials(OPENAI_MODEL)

    def test_unknown_provider(self) -> None:
        model = ModelProfile(slug="x", provider="acme", model_name="x", price_in=0, price_out=0)
        with pytest.raises(ConfigError):
            OpenAICompatibleProvider(_settings()).ensure_credentials(model)

    async def test_complete_without_key_raises_before_request(self) -> None:
        def handler(_request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(ConfigError):
            await _provider(handler, openai_api_key="").complete(OPENAI_MODEL, BODY)
