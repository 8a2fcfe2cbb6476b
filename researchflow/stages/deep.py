"""Stage 3: deep dive on go-deep finalists.

Every finalist gets three group calls (business, financials, risks) followed
by a summary memo built from the group answers.  Each call is cached,
validated and recorded as its own answer row and ledger entry, so a partial
failure still leaves the completed groups cached for the next attempt.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from researchflow.core.answers import STAGE3_GROUP_MODELS, Stage3Summary
from researchflow.core.models import ItemStatus, Run, RunItem, StageName
from researchflow.core.stage_config import StageConfig
from researchflow.stages.base import ItemResult, StageConsumer, StageOutcome
from researchflow.stages.prompts import (
    build_group_prompts,
    build_summary_prompt,
    chat_body,
    format_doc_snippets,
    format_stage1_summary,
    format_stage2_summary,
)

__all__ = ["DeepConsumer"]

logger = logging.getLogger(__name__)


class DeepConsumer(StageConsumer):
    """Stage 3 consumer."""

    stage = StageName.STAGE3

    async def _candidates(self, run: Run, limit: int) -> Sequence[RunItem]:
        return await self._repo.list_stage_candidates(run.id, self.stage, limit)

    async def _claim(self, candidate: RunItem) -> bool:
        return await self._repo.claim_item(candidate, self.stage)

    async def _process(self, run: Run, config: StageConfig, candidate: RunItem) -> ItemResult:
        ticker = candidate.ticker
        meta = await self._repo.get_ticker(ticker)
        stage1 = await self._repo.latest_answer(run.id, ticker, 1)
        stage2 = await self._repo.latest_answer(run.id, ticker, 2)
        chunks = await self._repo.latest_doc_chunks(ticker)

        stage1_summary = format_stage1_summary(stage1.payload if stage1 else None)
        stage2_summary = format_stage2_summary(stage2.payload if stage2 else None)
        docs = format_doc_snippets(chunks)

        group_outputs: list[dict[str, Any]] = []
        total_cost = 0.0
        cache_hits = 0
        for prompt in build_group_prompts(ticker, meta, stage1_summary, stage2_summary, docs):
            result = await self.complete(
                config,
                config.request.apply(chat_body(prompt.system, prompt.user)),
                ticker=ticker,
                scope=f"stage3-{prompt.key}",
                answer_model=STAGE3_GROUP_MODELS[prompt.key],
                context={"run_id": run.id, "group": prompt.key},
            )
            await self._repo.insert_answer(
                run_id=run.id,
                ticker=ticker,
                stage=3,
                question_group=prompt.key,
                answer=result.answer.model_dump(mode="json"),
                answer_text=result.answer.summary_line(),
                tokens_in=result.tokens_in,
                tokens_out=result.tokens_out,
                cost_usd=result.cost,
                cache_hit=result.cache_hit,
            )
            await self.record_spend(run, config, result)
            total_cost += result.cost
            cache_hits += int(result.cache_hit)
            group_outputs.append({"key": prompt.key, "data": result.payload})

        memo_prompt = build_summary_prompt(
            ticker, meta, stage1_summary, stage2_summary, group_outputs
        )
        memo = await self.complete(
            config,
            config.request.apply(chat_body(memo_prompt.system, memo_prompt.user)),
            ticker=ticker,
            scope="stage3-summary",
            answer_model=Stage3Summary,
            context={"run_id": run.id, "group": "summary"},
        )
        summary = memo.answer
        assert isinstance(summary, Stage3Summary)
        await self._repo.insert_answer(
            run_id=run.id,
            ticker=ticker,
            stage=3,
            question_group="summary",
            answer=summary.model_dump(mode="json"),
            answer_text=summary.thesis,
            tokens_in=memo.tokens_in,
            tokens_out=memo.tokens_out,
            cost_usd=memo.cost,
            cache_hit=memo.cache_hit,
        )
        await self.record_spend(run, config, memo)
        total_cost += memo.cost
        cache_hits += int(memo.cache_hit)

        await self._repo.update_item(
            run.id, ticker, stage=3, status=ItemStatus.OK, add_spend=total_cost
        )
        return ItemResult(
            ticker=ticker,
            status="ok",
            summary=summary.thesis,
            # The item counts as a cache hit only when no call reached the provider.
            cache_hit=cache_hits == len(group_outputs) + 1,
            cost_usd=total_cost,
            details={"verdict": summary.verdict, "confidence": summary.confidence},
        )

    async def _record_failure(
        self, run: Run, candidate: RunItem, exc: Exception, spent: float
    ) -> None:
        # Groups that finished before the failure were billed; keep them on the item.
        await self._repo.update_item(
            run.id, candidate.ticker, stage=3, status=ItemStatus.FAILED, add_spend=spent
        )

    def _message(self, outcome: StageOutcome) -> str:
        pending = getattr(outcome.metrics, "pending", 0)
        if outcome.processed:
            return f"Processed {outcome.processed} finalist(s). Pending deep dives: {pending}."
        if outcome.failed:
            return "No finalists processed."
        return "Stage 3 complete or no finalists marked go-deep."
