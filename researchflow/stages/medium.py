"""Stage 2: medium-depth thematic scoring of triage survivors.

Survivors are stage-1 items labelled ``consider`` or ``borderline``.  The
prompt carries the stage 1 classification, reasons and risk flags plus the
sector's heuristics.  The verdict's ``go_deep`` flag selects stage 3
finalists.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

from researchflow.core.answers import Stage2Answer
from researchflow.core.models import ItemStatus, Run, RunItem, StageName
from researchflow.core.stage_config import StageConfig
from researchflow.stages.base import ItemResult, StageConsumer, StageOutcome
from researchflow.stages.prompts import STAGE2_SYSTEM_PROMPT, build_stage2_user_prompt, chat_body

__all__ = ["MediumConsumer"]

logger = logging.getLogger(__name__)


class MediumConsumer(StageConsumer):
    """Stage 2 consumer."""

    stage = StageName.STAGE2

    async def _candidates(self, run: Run, limit: int) -> Sequence[RunItem]:
        return await self._repo.list_stage_candidates(run.id, self.stage, limit)

    async def _claim(self, candidate: RunItem) -> bool:
        return await self._repo.claim_item(candidate, self.stage)

    async def _process(self, run: Run, config: StageConfig, candidate: RunItem) -> ItemResult:
        ticker = candidate.ticker
        meta = await self._repo.get_ticker(ticker)
        stage1 = await self._repo.latest_answer(run.id, ticker, 1)
        sector_notes = await self._repo.get_sector_notes(meta.sector if meta else None)

        user = build_stage2_user_prompt(
            ticker, meta, stage1.payload if stage1 else None, sector_notes
        )
        body = config.request.apply(chat_body(STAGE2_SYSTEM_PROMPT, user))
        result = await self.complete(
            config,
            body,
            ticker=ticker,
            scope=str(self.stage),
            answer_model=Stage2Answer,
            context={"run_id": run.id},
        )
        answer = result.answer
        assert isinstance(answer, Stage2Answer)
        summary = answer.summary_line()

        await self._repo.insert_answer(
            run_id=run.id,
            ticker=ticker,
            stage=2,
            question_group="medium",
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
            stage=2,
            status=ItemStatus.OK,
            go_deep=answer.go_deep,
            set_go_deep=True,
            add_spend=result.cost,
        )
        await self.record_spend(run, config, result)
        return ItemResult(
            ticker=ticker,
            status="ok",
            summary=summary,
            cache_hit=result.cache_hit,
            cost_usd=result.cost,
            details={"go_deep": answer.go_deep, "label": candidate.label},
        )

    async def _record_failure(
        self, run: Run, candidate: RunItem, exc: Exception, spent: float
    ) -> None:
        await self._repo.update_item(
            run.id,
            candidate.ticker,
            stage=2,
            status=ItemStatus.FAILED,
            add_spend=spent,
            go_deep=None,
            set_go_deep=True,
        )

    def _message(self, outcome: StageOutcome) -> str:
        pending = getattr(outcome.metrics, "pending", 0)
        if outcome.processed:
            return f"Processed {outcome.processed} ticker(s). Pending survivors: {pending}."
        if outcome.failed:
            return "No tickers processed."
        if pending == 0:
            return "Stage 2 complete or no survivors available."
        return "No eligible Stage 2 survivors pending."
