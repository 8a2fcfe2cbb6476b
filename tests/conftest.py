"""Shared pytest fixtures and configuration for the Researchflow test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures: logging, a clean environment, an
in-memory database with a controllable clock, a scripted chat provider and
a fully wired set of consumers.
"""

from __future__ import annotations

import os
from collections.abc import AsyncGenerator
from typing import Any

import pytest
from fakes import FAST_RETRY, FakeClock, FakeProvider, no_sleep
from pydantic_settings import SettingsConfigDict

from researchflow.core import configure_logging
from researchflow.core.auth import Capabilities
from researchflow.core.models import StageName
from researchflow.core.settings import Settings
from researchflow.orchestrator.cycle import CycleOrchestrator
from researchflow.orchestrator.invoker import LocalStageInvoker
from researchflow.stages import DeepConsumer, FocusConsumer, MediumConsumer, TriageConsumer
from researchflow.stages.base import StageConsumer
from researchflow.storage.cache import CompletionCache
from researchflow.storage.database import MEMORY_DB, open_db
from researchflow.storage.repository import RunRepository

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test."""
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove Researchflow and provider env vars for the duration of a test.

    Also disables pydantic-settings `.env` file loading so that credentials
    present in a local `.env` file do not leak into Settings isolation tests.
    """
    sensitive_prefixes = (
        "OPENAI_",
        "OPENROUTER_",
        "AUTOMATION_",
        "DATABASE_",
        "PROVIDER_",
        "CLAIM_",
        "DISPATCH_",
        "LOG_LEVEL",
        "LOG_FORMAT",
        "AI_CACHE_",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in sensitive_prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Clock / database
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
async def db_conn() -> AsyncGenerator:
    """Open an in-memory SQLite database with the full schema."""
    conn = await open_db(MEMORY_DB)
    yield conn
    await conn.close()


@pytest.fixture()
def repo(db_conn, clock: FakeClock) -> RunRepository:
    return RunRepository(db_conn, clock=clock)


@pytest.fixture()
def cache(db_conn, clock: FakeClock) -> CompletionCache:
    return CompletionCache(db_conn, clock=clock)


# ---------------------------------------------------------------------------
# Provider / consumers
# ---------------------------------------------------------------------------


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture()
def caps() -> Capabilities:
    return Capabilities.service()


@pytest.fixture()
def consumers(
    repo: RunRepository, cache: CompletionCache, provider: FakeProvider
) -> dict[StageName, StageConsumer]:
    """One consumer per stage, sharing the fake provider, with instant retries."""
    kwargs: dict[str, Any] = {"retry": FAST_RETRY, "sleep": no_sleep, "environ": {}}
    return {
        StageName.STAGE1: TriageConsumer(repo, cache, provider, **kwargs),
        StageName.STAGE2: MediumConsumer(repo, cache, provider, **kwargs),
        StageName.STAGE3: DeepConsumer(repo, cache, provider, **kwargs),
        StageName.FOCUS: FocusConsumer(repo, cache, provider, **kwargs),
    }


@pytest.fixture()
def orchestrator(
    repo: RunRepository, consumers: dict[StageName, StageConsumer], caps: Capabilities
) -> CycleOrchestrator:
    return CycleOrchestrator(repo, LocalStageInvoker(consumers, caps))


@pytest.fixture()
def new_run(repo: RunRepository):
    """Factory: create a running run with the given tickers queued at stage 0."""
    counter = {"n": 0}

    async def _make(tickers: list[str], *, budget_usd: float | None = None, planner=None) -> str:
        counter["n"] += 1
        run_id = f"00000000-0000-4000-8000-{counter['n']:012d}"
        await repo.create_run(
            run_id, notes={"planner": planner or {}}, budget_usd=budget_usd
        )
        await repo.insert_items(run_id, tickers)
        return run_id

    return _make
