"""Chat-completion provider interface.

Every LLM backend subclasses :class:`BaseChatProvider` and implements
:meth:`~BaseChatProvider.complete`.  Providers do **not** retry: the stage
consumers wrap each call in a
:class:`~researchflow.orchestrator.retry.RetryExecutor` so that backoff
policy lives in one place.  A provider's job is to make exactly one call and
classify failures (``retryable`` on
:class:`~researchflow.core.exceptions.ProviderRequestError`).

Typical usage::

    async with OpenAICompatibleProvider(settings) as provider:
        completion = await provider.complete(model, {"messages": [...]})
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from types import TracebackType
from typing import Any

from researchflow.core.stage_config import ModelProfile

__all__ = ["BaseChatProvider"]

logger = logging.getLogger(__name__)


class BaseChatProvider(ABC):
    """Abstract base for chat-completion providers.

    The async context manager protocol is provided for free; override
    :meth:`close` to release resources.
    """

    async def close(self) -> None:  # noqa: B027
        """Release held resources.  No-op by default."""

    async def __aenter__(self) -> BaseChatProvider:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    def ensure_credentials(self, model: ModelProfile) -> None:  # noqa: B027
        """Raise :exc:`ConfigError` if *model* cannot be called.

        Consumers call this once per batch, before any item is claimed.
        The default accepts every model.
        """

    @abstractmethod
    async def complete(self, model: ModelProfile, body: dict[str, Any]) -> dict[str, Any]:
        """Send one chat-completion request and return the decoded response.

        Args:
            model: Resolved model profile (provider, model name, base URL).
            body: Request body without the ``model`` field.

        Returns:
            The provider's JSON response (``choices``, ``usage``…).

        Raises:
            ProviderRequestError: Transport or non-2xx failure.
            ProviderResponseError: 2xx response that is not valid JSON.
        """
