"""Cycle orchestrator: advance a run through every stage with pending work.

:meth:`CycleOrchestrator.continue_run` is the "auto continue" operation.
Each cycle visits stage 1 → stage 2 → stage 3 → focus and invokes a stage
only when its metrics show pending work.  After every invocation the
affected metrics and the run's spend are refreshed, and the budget is
re-checked, so a run never starts another stage once it has spent its
budget.

Halting rules
-------------
* The run is already flagged to stop → nothing runs (``stop_requested``).
* Spend has reached the budget (within :data:`BUDGET_EPSILON`) → the stop
  flag is set and nothing more runs (``budget_exhausted``).
* A stage answers 409 → the rest of the cycle is discarded
  (``stop_requested``).
* Any other non-2xx stage answer aborts the call with
  :class:`~researchflow.core.exceptions.StageInvocationError`, which carries
  the operations completed so far.
* A cycle in which no stage was invoked ends the loop early.

Typical usage::

    orchestrator = CycleOrchestrator(repo, LocalStageInvoker(consumers, caps))
    result = await orchestrator.continue_run(run_id, cycles=3, capabilities=caps)
    print(result.message)
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field
from datetime import timedelta
from typing import Any, Final

from researchflow.core import events
from researchflow.core.auth import Capabilities
from researchflow.core.exceptions import StageInvocationError
from researchflow.core.logging_config import invocation_context
from researchflow.core.models import CostSummary, Run, StageMetrics, StageName
from researchflow.core.stage_config import clamp_int
from researchflow.orchestrator.invoker import StageInvoker
from researchflow.stages.base import DEFAULT_CLAIM_TIMEOUT_SECONDS
from researchflow.storage.repository import RunRepository, to_iso

__all__ = [
    "BUDGET_EPSILON",
    "DEFAULT_STAGE_LIMITS",
    "MAX_CYCLES",
    "MAX_STAGE_LIMIT",
    "STAGE_ORDER",
    "StageOperation",
    "ContinueResult",
    "CycleOrchestrator",
    "normalize_stage_limits",
]

logger = logging.getLogger(__name__)

#: Spend within this many USD of the budget counts as exhausted.
BUDGET_EPSILON: Final[float] = 0.0005

#: Per-stage batch sizes used when the caller does not pass any.
DEFAULT_STAGE_LIMITS: Final[dict[str, int]] = {"stage1": 8, "stage2": 4, "stage3": 2, "focus": 3}

MAX_STAGE_LIMIT: Final[int] = 25
MAX_CYCLES: Final[int] = 10

STAGE_ORDER: Final[tuple[StageName, ...]] = (
    StageName.STAGE1,
    StageName.STAGE2,
    StageName.STAGE3,
    StageName.FOCUS,
)

HALT_BUDGET: Final[str] = "budget_exhausted"
HALT_STOP: Final[str] = "stop_requested"

_HALT_MESSAGES: Final[dict[str, str]] = {
    HALT_BUDGET: "Budget exhausted. Auto continue halted.",
    HALT_STOP: "Run flagged to stop. Auto continue halted.",
}


def normalize_stage_limits(limits: Mapping[str, Any] | None) -> dict[str, int]:
    """Fill in defaults and clamp every stage limit to ``[1, MAX_STAGE_LIMIT]``."""
    limits = limits or {}
    return {
        key: clamp_int(limits.get(key), default, 1, MAX_STAGE_LIMIT)
        for key, default in DEFAULT_STAGE_LIMITS.items()
    }


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class StageOperation:
    """One stage invocation inside a continue call."""

    stage: str
    status: str
    processed: int
    failed: int
    message: str
    metrics: dict[str, Any] | None
    http_status: int
    cycle_index: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class ContinueResult:
    """Outcome of :meth:`CycleOrchestrator.continue_run`."""

    run_id: str
    run_status: str
    stop_requested: bool
    cycles_requested: int
    cycles_completed: int
    operations: list[StageOperation] = field(default_factory=list)
    stage_status: dict[str, dict[str, Any]] = field(default_factory=dict)
    cost: dict[str, Any] = field(default_factory=dict)
    halted: dict[str, str] | None = None
    message: str = ""
    timestamp: str = ""

    @property
    def processed(self) -> int:
        return sum(op.processed for op in self.operations)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["operations"] = [op.to_dict() for op in self.operations]
        return data


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class CycleOrchestrator:
    """Run bounded stage cycles for one run.

    Args:
        repo: Run-state repository (metrics, spend, stop flag).
        invoker: Stage invocation seam.
        claim_timeout_seconds: Age after which an ``in_progress`` claim left
            by a crashed invocation is released before metrics are read.
    """

    def __init__(
        self,
        repo: RunRepository,
        invoker: StageInvoker,
        *,
        claim_timeout_seconds: int = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ) -> None:
        self._repo = repo
        self._invoker = invoker
        self._claim_timeout = timedelta(seconds=claim_timeout_seconds)

    async def continue_run(
        self,
        run_id: str | None = None,
        stage_limits: Mapping[str, Any] | None = None,
        cycles: Any = 1,
        *,
        capabilities: Capabilities,
        client_meta: Mapping[str, Any] | None = None,
    ) -> ContinueResult:
        """Advance *run_id* by up to *cycles* stage cycles.

        Args:
            run_id: Run to continue; the latest active run when omitted.
            stage_limits: Per-stage batch sizes (``stage1``…``focus``).
            cycles: Requested cycles, clamped to ``[1, MAX_CYCLES]``.
            capabilities: Caller permissions.
            client_meta: Forwarded to each stage invocation.

        Raises:
            ForbiddenError: Missing admin or spend capability.
            RunNotFoundError: No matching run.
            StageInvocationError: A stage failed with a non-409 status.
        """
        capabilities.require_admin()
        capabilities.require_spend()
        limits = normalize_stage_limits(stage_limits)
        cycles_requested = clamp_int(cycles, 1, 1, MAX_CYCLES)

        run = await self._repo.resolve_run(run_id)
        with invocation_context(run.id):
            return await self._continue(run, limits, cycles_requested, client_meta)

    async def _continue(
        self,
        run: Run,
        limits: dict[str, int],
        cycles_requested: int,
        client_meta: Mapping[str, Any] | None,
    ) -> ContinueResult:
        logger.info(
            "Continuing run (cycles=%d limits=%s).",
            cycles_requested,
            limits,
            extra={"event": events.CONTINUE_START},
        )
        stop_requested = run.stop_requested
        cost = await self._repo.cost_summary(run.id)
        exhausted_initially = self._budget_exhausted(run, cost)

        halted_reason: str | None = None
        if stop_requested:
            halted_reason = HALT_STOP
        elif exhausted_initially:
            halted_reason = HALT_BUDGET
            stop_requested = await self._flag_stop(run)
        else:
            await self._release_stale_claims(run)

        metrics: dict[StageName, StageMetrics] = {
            stage: await self._repo.metrics_for(run.id, stage) for stage in STAGE_ORDER
        }
        operations: list[StageOperation] = []
        cycles_completed = 0

        cycle = 0
        while halted_reason is None and cycle < cycles_requested:
            cycle_did_work = False
            for position, stage in enumerate(STAGE_ORDER):
                if metrics[stage].pending <= 0:
                    continue
                response = await self._invoker.invoke(
                    stage,
                    run.id,
                    limits[str(stage)],
                    client_meta={
                        **dict(client_meta or {}),
                        "orchestrator": "runs-continue",
                        "cycle_index": cycle,
                        "triggered_at": to_iso(self._repo.now()),
                    },
                )
                cycle_did_work = True

                if not response.ok and not response.halted:
                    raise StageInvocationError(
                        str(stage),
                        response.error or f"Stage {stage} responded with status {response.status_code}",
                        status_code=response.status_code,
                        details=response.error,
                        operations=[op.to_dict() for op in operations],
                        stage_status={str(s): m.model_dump() for s, m in metrics.items()},
                    )

                outcome = response.outcome
                operations.append(
                    StageOperation(
                        stage=str(stage),
                        status="halted" if response.halted else "invoked",
                        processed=outcome.processed if outcome else 0,
                        failed=outcome.failed if outcome else 0,
                        message=(outcome.message if outcome else None)
                        or response.error
                        or "Stage completed.",
                        metrics=outcome.metrics.model_dump()
                        if outcome and outcome.metrics is not None
                        else None,
                        http_status=response.status_code,
                        cycle_index=cycle,
                    )
                )

                for downstream in STAGE_ORDER[position:]:
                    metrics[downstream] = await self._repo.metrics_for(run.id, downstream)

                if response.halted:
                    halted_reason = HALT_STOP
                    stop_requested = True
                    break

                cost = await self._repo.cost_summary(run.id)
                if self._budget_exhausted(run, cost):
                    halted_reason = HALT_BUDGET
                    stop_requested = await self._flag_stop(run)
                    break

            if halted_reason is not None or not cycle_did_work:
                break
            cycles_completed += 1
            cycle += 1

        for stage in STAGE_ORDER:
            metrics[stage] = await self._repo.metrics_for(run.id, stage)
        cost = await self._repo.cost_summary(run.id)
        budget_exceeded = self._budget_exhausted(run, cost)
        if budget_exceeded and not stop_requested:
            stop_requested = await self._flag_stop(run)
        if halted_reason is None and stop_requested:
            halted_reason = HALT_BUDGET if budget_exceeded else HALT_STOP

        processed_total = sum(op.processed for op in operations)
        if halted_reason is not None:
            message = _HALT_MESSAGES[halted_reason]
        elif not operations:
            message = "No pending work for any stage."
        else:
            message = (
                f"Auto continue processed {processed_total} item(s) across "
                f"{cycles_completed or 1} cycle(s)."
            )

        latest = await self._repo.get_run(run.id) or run
        result = ContinueResult(
            run_id=run.id,
            run_status=str(latest.status),
            stop_requested=stop_requested,
            cycles_requested=cycles_requested,
            cycles_completed=cycles_completed,
            operations=operations,
            stage_status={str(stage): m.model_dump() for stage, m in metrics.items()},
            cost={
                "total_cost": cost.total_cost,
                "budget_usd": run.budget_usd if run.budget_configured else None,
                "budget_exhausted": budget_exceeded or exhausted_initially,
                "total_tokens_in": cost.total_tokens_in,
                "total_tokens_out": cost.total_tokens_out,
            },
            halted={"reason": halted_reason, "message": message} if halted_reason else None,
            message=message,
            timestamp=to_iso(self._repo.now()),
        )
        logger.info(
            "%s",
            message,
            extra={"event": events.CONTINUE_HALTED if halted_reason else events.CONTINUE_COMPLETE},
        )
        return result

    async def _release_stale_claims(self, run: Run) -> None:
        # Abandoned claims are invisible to the pending counts until released.
        released = await self._repo.release_stale_claims(
            run.id, self._repo.now() - self._claim_timeout
        )
        if released:
            logger.warning(
                "Released %d abandoned claim(s) before continuing.",
                released,
                extra={"event": events.CLAIMS_RECLAIMED},
            )

    @staticmethod
    def _budget_exhausted(run: Run, cost: CostSummary) -> bool:
        return bool(
            run.budget_configured
            and run.budget_usd is not None
            and cost.total_cost >= run.budget_usd - BUDGET_EPSILON
        )

    async def _flag_stop(self, run: Run) -> bool:
        logger.warning(
            "Budget %.4f USD exhausted; flagging run to stop.",
            run.budget_usd or 0.0,
            extra={"event": events.BUDGET_EXHAUSTED},
        )
        updated = await self._repo.set_stop_requested(run.id, True)
        return updated.stop_requested
