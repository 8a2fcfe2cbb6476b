"""Shared execution contract for every stage consumer.

A consumer invocation processes one batch for one run:

1. **Authorise**: admin and spend capabilities are required.
2. **Resolve** the run (explicit id, else the latest running/queued run).
3. **Halt** early, without touching any item, when the run is flagged to stop.
4. **Configure** the stage (model, request settings, retry policy) and check
   provider credentials.  Misconfiguration fails the whole invocation before
   anything is claimed.
5. **Recover** claims abandoned for longer than the claim timeout.
6. **Claim** each candidate with a conditional update; a lost race skips it.
7. **Process** claimed items sequentially.  A failure is recorded on the
   item and in the error log and never aborts the batch.
8. **Report** a :class:`StageOutcome` with fresh metrics and a message.

Subclasses supply candidate selection, per-item processing, failure
recording and messages; the cached, retried, validated completion call
(:meth:`StageConsumer.complete`) is shared.

Typical usage::

    consumer = TriageConsumer(repo, cache, provider)
    outcome = await consumer.consume(run_id, limit=8, capabilities=Capabilities.service())
    print(outcome.message, outcome.metrics)
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextvars import ContextVar
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, ClassVar, Final

import aiosqlite

from researchflow.core import events
from researchflow.core.answers import (
    EMPTY_SUMMARY,
    StageAnswer,
    extract_content,
    parse_completion,
)
from researchflow.core.auth import Capabilities
from researchflow.core.exceptions import AnswerValidationError, ProviderRequestError
from researchflow.core.logging_config import invocation_context
from researchflow.core.models import Run, StageMetrics, StageName
from researchflow.core.stage_config import (
    RetrySettings,
    StageConfig,
    compute_cost,
    resolve_stage_config,
)
from researchflow.orchestrator.retry import RetryExecutor
from researchflow.providers.base import BaseChatProvider
from researchflow.storage.cache import (
    CompletionCache,
    build_cache_key,
    fingerprint,
    resolve_cache_ttl_minutes,
)
from researchflow.storage.error_log import record_error_log
from researchflow.storage.repository import RunRepository

__all__ = [
    "HALT_STATUS",
    "HALT_MESSAGE",
    "ItemResult",
    "StageOutcome",
    "CompletionResult",
    "StageConsumer",
    "is_retryable",
]

logger = logging.getLogger(__name__)

#: Status reported when a run is flagged to stop.
HALT_STATUS: Final[int] = 409
HALT_MESSAGE: Final[str] = "Run flagged to stop"

#: Default age after which an ``in_progress`` claim is considered abandoned.
DEFAULT_CLAIM_TIMEOUT_SECONDS: Final[int] = 900


def is_retryable(exc: BaseException) -> bool:
    """Provider errors flagged retryable; everything else fails immediately."""
    return bool(getattr(exc, "retryable", False))


@dataclass
class _ItemTally:
    """Per-item bookkeeping for the item currently being processed."""

    spent: float = 0.0
    last_call_attempts: int = 0


#: Tally of the item in flight; scoped per task so concurrent batches on one
#: consumer never share it.
_ITEM_TALLY: ContextVar[_ItemTally | None] = ContextVar("item_tally", default=None)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class ItemResult:
    """Per-item outcome reported back to the caller.

    ``details`` carries stage-specific fields (``label``, ``go_deep``,
    ``verdict``, ``question``…).
    """

    ticker: str
    status: str
    summary: str = EMPTY_SUMMARY
    cache_hit: bool = False
    cost_usd: float = 0.0
    error: str | None = None
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        details = data.pop("details")
        if data["error"] is None:
            data.pop("error")
        return {**data, **details}


@dataclass
class StageOutcome:
    """Result of one consumer invocation.

    Attributes:
        halted: ``True`` when the run was flagged to stop and nothing ran;
            ``status_code`` is then :data:`HALT_STATUS`.
        cost: Provider spend incurred by this invocation (cache hits are
            free).
    """

    run_id: str
    stage: StageName
    processed: int = 0
    failed: int = 0
    results: list[ItemResult] = field(default_factory=list)
    metrics: StageMetrics | None = None
    model: str | None = None
    message: str = ""
    status_code: int = 200
    halted: bool = False
    cost: float = 0.0
    cache_hits: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "stage": str(self.stage),
            "processed": self.processed,
            "failed": self.failed,
            "results": [result.to_dict() for result in self.results],
            "metrics": self.metrics.model_dump() if self.metrics is not None else None,
            "model": self.model,
            "message": self.message,
            "status_code": self.status_code,
            "halted": self.halted,
            "cost": round(self.cost, 6),
            "cache_hits": self.cache_hits,
        }


@dataclass(frozen=True)
class CompletionResult:
    """A validated completion, from the cache or the provider."""

    answer: StageAnswer
    payload: dict[str, Any]
    content: str
    tokens_in: int
    tokens_out: int
    cost: float
    cache_hit: bool


# ---------------------------------------------------------------------------
# Consumer base
# ---------------------------------------------------------------------------


class StageConsumer(ABC):
    """Base class for the stage 1/2/3 and focus consumers.

    Args:
        repo: Run-state repository.
        cache: Completion cache sharing the repository's connection.
        provider: Chat-completion provider.
        claim_timeout_seconds: Age after which an ``in_progress`` claim is
            released back to its eligible status.
        retry: Retry policy overriding the stage default.
        sleep: Sleep used between retries (tests pass a no-op).
        environ: Environment mapping for cache TTL overrides.
    """

    #: Stage handled by the subclass.
    stage: ClassVar[StageName]

    def __init__(
        self,
        repo: RunRepository,
        cache: CompletionCache,
        provider: BaseChatProvider,
        *,
        claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
        retry: RetrySettings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._repo = repo
        self._cache = cache
        self._provider = provider
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)
        self._retry = retry
        self._sleep = sleep
        self._environ = os.environ if environ is None else environ

    @property
    def error_context(self) -> str:
        """Component name written to the error log."""
        return f"{self.stage}-consume"

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def consume(
        self,
        run_id: str | None = None,
        limit: Any = None,
        *,
        capabilities: Capabilities,
        client_meta: Mapping[str, Any] | None = None,
    ) -> StageOutcome:
        """Process one batch for a run.

        Args:
            run_id: Run to work on; the latest active run when omitted.
            limit: Requested batch size, clamped to the stage's bounds.
            capabilities: Caller permissions.
            client_meta: Free-form caller metadata, logged only.

        Returns:
            The batch outcome.  A stop-flagged run yields ``halted=True``
            with :data:`HALT_STATUS` rather than an exception.

        Raises:
            ForbiddenError: Missing admin or spend capability.
            RunNotFoundError: No matching run.
            ConfigError: No model or credential for the stage.
        """
        capabilities.require_admin()
        capabilities.require_spend()

        run = await self._repo.resolve_run(run_id)
        with invocation_context(run.id):
            if run.stop_requested:
                logger.info(
                    "%s: run flagged to stop; nothing processed.",
                    self.stage,
                    extra={"event": events.STAGE_HALTED},
                )
                return StageOutcome(
                    run_id=run.id,
                    stage=self.stage,
                    metrics=await self._repo.metrics_for(run.id, self.stage),
                    message=HALT_MESSAGE,
                    status_code=HALT_STATUS,
                    halted=True,
                )

            config = resolve_stage_config(self.stage, run.planner, retry=self._retry)
            self._provider.ensure_credentials(config.model)
            batch_size = config.clamp_limit(limit)

            released = await self._repo.release_stale_claims(
                run.id, self._repo.now() - self._claim_timeout
            )
            if released:
                logger.warning(
                    "%s: released %d abandoned claim(s).",
                    self.stage,
                    released,
                    extra={"event": events.CLAIMS_RECLAIMED},
                )

            logger.info(
                "%s: starting batch (limit=%d model=%s client=%s).",
                self.stage,
                batch_size,
                config.model.slug,
                dict(client_meta or {}),
                extra={"event": events.STAGE_START},
            )
            started = time.monotonic()
            outcome = StageOutcome(run_id=run.id, stage=self.stage, model=config.model.slug)

            for candidate in await self._candidates(run, batch_size):
                if not await self._claim(candidate):
                    logger.debug(
                        "%s: lost claim on %s; skipping.",
                        self.stage,
                        self._label(candidate),
                        extra={"event": events.ITEM_CLAIM_LOST},
                    )
                    continue
                result = await self._run_one(run, config, candidate)
                outcome.results.append(result)
                outcome.cost += result.cost_usd
                if result.ok:
                    outcome.processed += 1
                    outcome.cache_hits += int(result.cache_hit)
                else:
                    outcome.failed += 1

            outcome.metrics = await self._repo.metrics_for(run.id, self.stage)
            outcome.message = self._message(outcome)
            logger.info(
                "%s: batch finished in %.2f s (processed=%d failed=%d cost=%.4f).",
                self.stage,
                time.monotonic() - started,
                outcome.processed,
                outcome.failed,
                outcome.cost,
                extra={"event": events.STAGE_COMPLETE},
            )
            return outcome

    async def _run_one(self, run: Run, config: StageConfig, candidate: Any) -> ItemResult:
        tally = _ItemTally()
        token = _ITEM_TALLY.set(tally)
        try:
            return await self._run_claimed(run, config, candidate, tally)
        finally:
            _ITEM_TALLY.reset(token)

    async def _run_claimed(
        self, run: Run, config: StageConfig, candidate: Any, tally: _ItemTally
    ) -> ItemResult:
        try:
            result = await self._process(run, config, candidate)
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "%s: %s failed: %s",
                self.stage,
                self._label(candidate),
                exc,
                extra={"event": events.ITEM_FAILED},
            )
            try:
                await self._record_failure(run, candidate, exc, tally.spent)
            except Exception:  # noqa: BLE001
                logger.exception("%s: could not mark %s failed.", self.stage, self._label(candidate))
            await self._log_error(run, candidate, exc, tally)
            return ItemResult(
                ticker=candidate.ticker,
                status="failed",
                cost_usd=tally.spent,
                error=str(exc),
            )
        logger.debug(
            "%s: %s ok (cache_hit=%s).",
            self.stage,
            self._label(candidate),
            result.cache_hit,
            extra={"event": events.ITEM_OK},
        )
        return result

    async def _log_error(
        self, run: Run, candidate: Any, exc: Exception, tally: _ItemTally
    ) -> None:
        payload: Any = None
        status_code: int | None = None
        if isinstance(exc, AnswerValidationError):
            payload = {"errors": exc.errors, "raw_response": exc.raw}
        elif isinstance(exc, ProviderRequestError):
            status_code = exc.upstream_status
        await record_error_log(
            self._repo.conn,
            context=self.error_context,
            message=str(exc),
            run_id=run.id,
            ticker=candidate.ticker,
            stage=self.stage.number,
            prompt_id=self._prompt_id(candidate),
            retry_count=max(0, tally.last_call_attempts - 1),
            status_code=status_code,
            payload=payload,
            metadata={"error_type": type(exc).__name__},
            clock=self._repo.now,
        )

    # ------------------------------------------------------------------
    # Shared completion call
    # ------------------------------------------------------------------

    async def complete(
        self,
        config: StageConfig,
        body: dict[str, Any],
        *,
        ticker: str,
        scope: str,
        answer_model: type[StageAnswer],
        key_prefix: str | None = None,
        context: Mapping[str, Any] | None = None,
    ) -> CompletionResult:
        """Cached, retried and validated chat completion.

        The request is fingerprinted and looked up under
        ``[key_prefix or stage, ticker, scope, fingerprint]``.  On a miss the
        provider is called through a :class:`RetryExecutor`.  The response is
        stored in the cache only after it validates, so a malformed answer is
        never served again.

        Raises:
            ProviderError: The provider failed after retries.
            AnswerValidationError: The content is not valid JSON or does not
                match *answer_model*.
        """
        tally = _ITEM_TALLY.get()
        if tally is not None:
            tally.last_call_attempts = 0
        model = config.model
        digest = fingerprint(body)
        cache_key = build_cache_key([key_prefix or str(self.stage), ticker, scope, digest])

        completion: dict[str, Any] | None = None
        usage: Mapping[str, Any] | None = None
        cache_hit = False
        try:
            entry = await self._cache.lookup(model.slug, cache_key)
        except aiosqlite.Error:
            logger.warning("%s: cache lookup failed for %s.", self.stage, ticker, exc_info=True)
            entry = None
        if entry is not None:
            completion, usage, cache_hit = entry.response_body, entry.usage, True
            await self._cache.mark_hit(entry.id)
        else:
            completion = await self._call_provider(config, body)
            usage = completion.get("usage") if isinstance(completion.get("usage"), dict) else None

        payload = parse_completion(answer_model.stage_key, completion)
        answer = answer_model.validate_payload(payload)

        if not cache_hit:
            try:
                await self._cache.store(
                    model.slug,
                    cache_key,
                    digest,
                    body,
                    completion,
                    usage,
                    ttl_minutes=resolve_cache_ttl_minutes(scope, environ=self._environ),
                    context={"ticker": ticker, "scope": scope, **dict(context or {})},
                )
            except aiosqlite.Error:
                logger.warning("%s: cache write failed for %s.", self.stage, ticker, exc_info=True)

        tokens_in, tokens_out, cost = compute_cost(model, usage)
        return CompletionResult(
            answer=answer,
            payload=payload,
            content=extract_content(completion),
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=0.0 if cache_hit else cost,
            cache_hit=cache_hit,
        )

    async def _call_provider(self, config: StageConfig, body: dict[str, Any]) -> dict[str, Any]:
        executor = RetryExecutor.from_settings(
            config.retry, should_retry=is_retryable, sleep=self._sleep
        )

        attempts = 0

        async def attempt() -> dict[str, Any]:
            nonlocal attempts
            attempts += 1
            return await self._provider.complete(config.model, body)

        try:
            return await executor.run(attempt)
        except Exception:
            logger.error(
                "%s: provider call failed after %d attempt(s).",
                self.stage,
                attempts,
                extra={"event": events.PROVIDER_ERROR},
            )
            raise
        finally:
            tally = _ITEM_TALLY.get()
            if tally is not None:
                tally.last_call_attempts = attempts

    async def record_spend(
        self,
        run: Run,
        config: StageConfig,
        result: CompletionResult,
    ) -> None:
        """Append a ledger entry for a billable (non-cached, non-zero) call."""
        if result.cache_hit or result.cost <= 0:
            return
        await self._repo.append_ledger(
            run_id=run.id,
            stage=self.stage.number,
            model=config.model.slug,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            cost_usd=result.cost,
        )
        tally = _ITEM_TALLY.get()
        if tally is not None:
            tally.spent += result.cost

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _candidates(self, run: Run, limit: int) -> Sequence[Any]:
        """Eligible work items, oldest first."""

    @abstractmethod
    async def _claim(self, candidate: Any) -> bool:
        """Atomically claim *candidate*; ``False`` if the race was lost."""

    @abstractmethod
    async def _process(self, run: Run, config: StageConfig, candidate: Any) -> ItemResult:
        """Execute the stage for one claimed candidate."""

    @abstractmethod
    async def _record_failure(
        self, run: Run, candidate: Any, exc: Exception, spent: float
    ) -> None:
        """Persist the failed state for *candidate*.

        *spent* is what the item already billed to the ledger before failing.
        """

    @abstractmethod
    def _message(self, outcome: StageOutcome) -> str:
        """Human-readable batch summary."""

    def _label(self, candidate: Any) -> str:
        return str(candidate.ticker)

    def _prompt_id(self, candidate: Any) -> str | None:
        return str(self.stage)
