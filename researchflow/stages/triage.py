"""Stage 1: cheap triage of every pending ticker.

Each pending stage-0 item gets one small-model call classifying it as
``uninvestible``, ``borderline`` or ``consider``.  Survivors (``consider`` and
``borderline``) become stage 2 candidates.  A failed item keeps stage 0 with
status ``failed`` so it is visible in metrics but never re-triaged
automatically.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from researchflow.core.answers import Stage1Answer
from researchflow.core.models import ItemStatus, Run, RunItem, StageName
from researchflow.core.stage_config import StageConfig
from researchflow.stages.base import ItemResult, StageConsumer, StageOutcome
from researchflow.stages.prompts import STAGE1_SYSTEM_PROMPT, build_stage1_user_prompt, chat_body

__all__ = ["TriageConsumer"]

logger = logging.getLogger(__name__)


class TriageConsumer(StageConsumer):
    """Stage 1 consumer."""

    stage = StageName.STAGE1

    async def _candidates(self, run: Run, limit: int) -> Sequence[RunItem]:
        return await self._repo.list_stage_candidates(run.id, self.stage, limit)

    async def _claim(self, candidate: RunItem) -> bool:
        return await self._repo.claim_item(candidate, self.stage)

    async def _process(self, run: Run, config: StageConfig, candidate: RunItem) -> ItemResult:
        ticker = candidate.ticker
        meta = await self._repo.get_ticker(ticker)
        body = config.request.apply(
            chat_body(STAGE1_SYSTEM_PROMPT, build_stage1_user_prompt(ticker, meta))
        )
        result = await self.complete(
            config,
            body,
            ticker=ticker,
            scope=str(self.stage),
            answer_model=Stage1Answer,
            context={"run_id": run.id},
        )
        answer = result.answer
        assert isinstance(answer, Stage1Answer)
        summary = answer.summary_line()

        await self._repo.insert_answer(
            run_id=run.id,
            ticker=ticker,
            stage=1,
            question_group="triage",
            answer=answer.model_dump(mode="json"),
            answer_text=summary,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            cost_usd=result.cost,
            cache_hit=result.cache_hit,
        )
        await self._repo.update_item(
            run.id,
            ticker,
            stage=1,
            status=ItemStatus.OK,
            label=str(answer.label),
            add_spend=result.cost,
        )
        await self.record_spend(run, config, result)
        return ItemResult(
            ticker=ticker,
            status="ok",
            summary=summary,
            cache_hit=result.cache_hit,
            cost_usd=result.cost,
            details={"label": str(answer.label)},
        )

    async def _record_failure(
        self, run: Run, candidate: RunItem, exc: Exception, spent: float
    ) -> None:
        await self._repo.update_item(
            run.id, candidate.ticker, stage=0, status=ItemStatus.FAILED, add_spend=spent
        )

    def _message(self, outcome: StageOutcome) -> str:
        pending = getattr(outcome.metrics, "pending", 0)
        if outcome.processed:
            return f"Processed {outcome.processed} ticker(s). Pending: {pending}."
        if outcome.failed:
            return "No tickers processed."
        if pending == 0:
            return "Stage 1 complete for this run."
        return "No pending items available for Stage 1."
