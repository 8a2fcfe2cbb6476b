"""Component wiring: open every runtime resource for one invocation.

:func:`open_services` is the single place that assembles the pipeline:

1. Opens the SQLite connection via
   :func:`~researchflow.storage.database.open_db` (schema is bootstrapped).
2. Creates the :class:`~researchflow.storage.repository.RunRepository` and
   :class:`~researchflow.storage.cache.CompletionCache` on that connection.
3. Enters the chat provider's async context manager.
4. Builds one consumer per stage, a
   :class:`~researchflow.orchestrator.invoker.LocalStageInvoker` over them
   and the :class:`~researchflow.orchestrator.cycle.CycleOrchestrator`.

Everything is torn down through :class:`contextlib.AsyncExitStack` on exit,
including on exceptions.

Typical usage::

    import asyncio
    from researchflow.core.settings import Settings
    from researchflow.orchestrator.runner import open_services

    async def main() -> None:
        async with open_services(Settings()) as services:
            outcome = await services.consumers[StageName.STAGE1].consume(
                capabilities=Capabilities.service()
            )

    asyncio.run(main())
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from researchflow.core.auth import Capabilities
from researchflow.core.models import StageName
from researchflow.core.settings import Settings
from researchflow.orchestrator.cycle import CycleOrchestrator
from researchflow.orchestrator.invoker import LocalStageInvoker
from researchflow.providers.base import BaseChatProvider
from researchflow.providers.openai_compat import OpenAICompatibleProvider
from researchflow.stages import (
    DeepConsumer,
    FocusConsumer,
    MediumConsumer,
    StageConsumer,
    TriageConsumer,
)
from researchflow.storage.cache import CompletionCache
from researchflow.storage.database import open_db
from researchflow.storage.repository import RunRepository

__all__ = ["Services", "open_services"]

logger = logging.getLogger(__name__)

_CONSUMER_TYPES: tuple[type[StageConsumer], ...] = (
    TriageConsumer,
    MediumConsumer,
    DeepConsumer,
    FocusConsumer,
)


@dataclass
class Services:
    """Live components for one invocation; valid inside :func:`open_services`."""

    settings: Settings
    repo: RunRepository
    cache: CompletionCache
    provider: BaseChatProvider
    consumers: dict[StageName, StageConsumer]
    invoker: LocalStageInvoker
    orchestrator: CycleOrchestrator


@asynccontextmanager
async def open_services(
    settings: Settings | None = None,
    *,
    provider: BaseChatProvider | None = None,
    db_path: Path | str | None = None,
) -> AsyncIterator[Services]:
    """Open the database and provider and build every consumer.

    Args:
        settings: Loaded settings; a fresh :class:`Settings` when ``None``.
        provider: Chat provider to use instead of
            :class:`~researchflow.providers.openai_compat.OpenAICompatibleProvider`.
        db_path: Database path overriding ``settings.database_path``.

    Yields:
        The assembled :class:`Services`.
    """
    if settings is None:
        settings = Settings()

    async with AsyncExitStack() as stack:
        conn = await open_db(db_path or settings.database_path_resolved)
        stack.push_async_callback(conn.close)

        repo = RunRepository(conn)
        cache = CompletionCache(conn)
        chat = await stack.enter_async_context(provider or OpenAICompatibleProvider(settings))

        consumers = {
            consumer_type.stage: consumer_type(
                repo,
                cache,
                chat,
                claim_timeout_seconds=settings.claim_timeout_seconds,
            )
            for consumer_type in _CONSUMER_TYPES
        }
        # Stage hops happen on behalf of an already-authorised caller.
        invoker = LocalStageInvoker(consumers, Capabilities.service())
        logger.debug("Services ready (%d consumers).", len(consumers))
        yield Services(
            settings=settings,
            repo=repo,
            cache=cache,
            provider=chat,
            consumers=consumers,
            invoker=invoker,
            orchestrator=CycleOrchestrator(
                repo, invoker, claim_timeout_seconds=settings.claim_timeout_seconds
            ),
        )
