"""OpenAI-compatible chat-completions client (OpenAI, OpenRouter).

Wraps :class:`httpx.AsyncClient` with:

* **Per-provider routing**: ``POST {base_url}/chat/completions`` where the
  base URL comes from the model profile, the ``OPENAI_BASE_URL`` override,
  or :data:`~researchflow.core.stage_config.DEFAULT_BASE_URLS`.
* **Credential resolution**: ``OPENAI_API_KEY`` for OpenAI;
  ``OPENROUTER_API_KEY`` then ``OPENAI_API_KEY`` for OpenRouter.  OpenRouter
  calls also carry ``HTTP-Referer`` / ``X-Title`` attribution headers.
* **Structured error mapping**: 408/409/429/5xx and transport failures raise
  a *retryable* :class:`~researchflow.core.exceptions.ProviderRequestError`;
  other 4xx raise a non-retryable one; a 2xx body that is not JSON raises
  :class:`~researchflow.core.exceptions.ProviderResponseError`.

Retrying is left to the caller (see
:class:`~researchflow.orchestrator.retry.RetryExecutor`).

Typical usage::

    from researchflow.providers.openai_compat import OpenAICompatibleProvider

    async with OpenAICompatibleProvider(settings) as provider:
        provider.ensure_credentials(model)
        completion = await provider.complete(model, body)
"""

from __future__ import annotations

import logging
from typing import Any, Final

import httpx

from researchflow.core.exceptions import (
    ConfigError,
    ProviderRequestError,
    ProviderResponseError,
)
from researchflow.core.settings import Settings
from researchflow.core.stage_config import DEFAULT_BASE_URLS, ModelProfile
from researchflow.providers.base import BaseChatProvider

__all__ = ["OpenAICompatibleProvider", "RETRYABLE_STATUS"]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Upstream statuses worth repeating the identical request for.
RETRYABLE_STATUS: Final[frozenset[int]] = frozenset({408, 409, 429, 500, 502, 503, 504})

_DEFAULT_CONNECT_TIMEOUT: Final[float] = 10.0
_DEFAULT_WRITE_TIMEOUT: Final[float] = 10.0

#: Characters of an error body kept in exception messages.
_ERROR_BODY_EXCERPT: Final[int] = 500


class OpenAICompatibleProvider(BaseChatProvider):
    """Single-shot chat-completions client.

    Args:
        settings: Application settings (keys, base URL override, timeout).
        transport: Optional :class:`httpx.AsyncBaseTransport`; tests pass an
            :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport
        self._timeout = httpx.Timeout(
            connect=_DEFAULT_CONNECT_TIMEOUT,
            read=settings.provider_timeout_seconds,
            write=_DEFAULT_WRITE_TIMEOUT,
            pool=5.0,
        )
        self._http: httpx.AsyncClient | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def __aenter__(self) -> OpenAICompatibleProvider:
        await self._ensure_client()
        return self

    async def close(self) -> None:
        """Close the pooled HTTP client.  Safe to call repeatedly."""
        if self._http is not None and not self._http.is_closed:
            await self._http.aclose()
            logger.debug("Provider HTTP session closed.")
        self._http = None

    async def _ensure_client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                timeout=self._timeout,
                transport=self._transport,
                headers={"Accept": "application/json", "Content-Type": "application/json"},
            )
        return self._http

    # ------------------------------------------------------------------
    # Routing / credentials
    # ------------------------------------------------------------------

    def base_url_for(self, model: ModelProfile) -> str:
        if model.base_url:
            return model.base_url.rstrip("/")
        if model.provider == "openai" and self._settings.openai_base_url:
            return self._settings.openai_base_url
        base = DEFAULT_BASE_URLS.get(model.provider)
        if base is None:
            raise ConfigError(f"No base URL known for provider {model.provider!r}")
        return base

    def ensure_credentials(self, model: ModelProfile) -> None:
        if not self._settings.api_key_for(model.provider):
            raise ConfigError(
                f"API key missing for provider {model.provider!r} (model {model.slug!r})"
            )
        self.base_url_for(model)

    def _headers_for(self, model: ModelProfile) -> dict[str, str]:
        api_key = self._settings.api_key_for(model.provider)
        if not api_key:
            raise ConfigError(f"API key missing for provider {model.provider!r}")
        headers = {"Authorization": f"Bearer {api_key}"}
        if model.provider == "openrouter":
            headers["HTTP-Referer"] = self._settings.openrouter_referer
            headers["X-Title"] = self._settings.openrouter_title
        return headers

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    async def complete(self, model: ModelProfile, body: dict[str, Any]) -> dict[str, Any]:
        url = f"{self.base_url_for(model)}/chat/completions"
        headers = self._headers_for(model)
        payload = {**body, "model": model.model_name}
        client = await self._ensure_client()

        logger.debug("POST %s (model=%s)", url, model.model_name)
        try:
            response = await client.post(url, json=payload, headers=headers)
        except httpx.TransportError as exc:
            raise ProviderRequestError(
                model.provider,
                f"Model request failed: {type(exc).__name__}: {exc}",
                retryable=True,
            ) from exc

        logger.debug(
            "POST %s → %d (%d bytes)", url, response.status_code, len(response.content)
        )

        if not response.is_success:
            status = response.status_code
            raise ProviderRequestError(
                model.provider,
                f"Model request failed ({status}): {response.text[:_ERROR_BODY_EXCERPT]}",
                status_code=status,
                retryable=status in RETRYABLE_STATUS,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderResponseError(
                model.provider, f"Response was not valid JSON: {response.text[:200]}"
            ) from exc
        if not isinstance(data, dict):
            raise ProviderResponseError(model.provider, "Response JSON was not an object")
        return data
