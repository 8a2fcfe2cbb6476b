"""Focus pass: answer free-form follow-up questions about a ticker.

Requests are enqueued by operators (see
:func:`researchflow.orchestrator.runs.enqueue_focus_questions`), optionally
from a stored template.  The prompt is rendered from the template's user
text (or :data:`~researchflow.stages.prompts.FOCUS_USER_TEMPLATE`) with the
ticker's stage 1/2/3 summaries and the latest document snippets.

Answers are persisted on the request row and appended to ``answers`` with
stage 4 and question group ``focus:<template slug>`` (``focus:<request id>``
for ad-hoc questions).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from researchflow.core.answers import FocusAnswer
from researchflow.core.models import FocusRequest, Run, StageName
from researchflow.core.stage_config import StageConfig, render_template
from researchflow.stages.base import ItemResult, StageConsumer, StageOutcome
from researchflow.stages.prompts import (
    FOCUS_SYSTEM_PROMPT,
    FOCUS_USER_TEMPLATE,
    chat_body,
    format_focus_snippets,
    format_focus_stage1,
    format_focus_stage2,
    format_stage3_summary,
)
from researchflow.storage.repository import to_iso

__all__ = ["FocusConsumer", "focus_scope", "focus_question_group"]

logger = logging.getLogger(__name__)

#: Characters of raw content used as the answer text when no summary is given.
_FALLBACK_ANSWER_CHARS = 600


def focus_scope(request: FocusRequest) -> str:
    """Cache scope: ``focus-<template slug>`` or ``focus-custom``."""
    return f"focus-{request.template_slug}" if request.template_slug else "focus-custom"


def focus_question_group(request: FocusRequest) -> str:
    return f"focus:{request.template_slug}" if request.template_slug else f"focus:{request.id}"


class FocusConsumer(StageConsumer):
    """Focus question consumer (persisted as stage 4)."""

    stage = StageName.FOCUS

    async def _candidates(self, run: Run, limit: int) -> Sequence[FocusRequest]:
        return await self._repo.list_focus_candidates(run.id, limit)

    async def _claim(self, candidate: FocusRequest) -> bool:
        return await self._repo.claim_focus_request(candidate)

    async def _process(self, run: Run, config: StageConfig, candidate: FocusRequest) -> ItemResult:
        ticker = candidate.ticker
        stage1 = await self._repo.latest_answer(run.id, ticker, 1)
        stage2 = await self._repo.latest_answer(run.id, ticker, 2)
        stage3 = await self._repo.latest_answer(run.id, ticker, 3, "summary")
        chunks = await self._repo.latest_doc_chunks(ticker)
        citations = [
            {"ref": ref, "source": source} for ref, (source, _) in enumerate(chunks, start=1)
        ]

        user = render_template(
            candidate.template_user_template or FOCUS_USER_TEMPLATE,
            {
                "ticker": ticker,
                "question": candidate.question,
                "stage1_summary": format_focus_stage1(stage1.payload if stage1 else None),
                "stage2_summary": format_focus_stage2(stage2.payload if stage2 else None),
                "stage3_summary": format_stage3_summary(
                    stage3.payload if stage3 else None, stage3.text if stage3 else None
                ),
                "retrieval_snippets": format_focus_snippets(chunks),
            },
        )
        body = config.request.apply(chat_body(FOCUS_SYSTEM_PROMPT, user))
        scope = focus_scope(candidate)
        result = await self.complete(
            config,
            body,
            ticker=ticker,
            scope=scope,
            answer_model=FocusAnswer,
            key_prefix="focus",
            context={"run_id": run.id, "question": candidate.question, "retrieval": citations},
        )
        answer = result.answer
        assert isinstance(answer, FocusAnswer)
        answer_text = (answer.summary or "").strip() or result.content[:_FALLBACK_ANSWER_CHARS]

        await self._repo.answer_focus_request(
            candidate.id,
            answer={**result.payload, "retrieval_citations": citations},
            answer_text=answer_text,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            cost_usd=result.cost,
            cache_hit=result.cache_hit,
        )
        await self._repo.insert_answer(
            run_id=run.id,
            ticker=ticker,
            stage=self.stage.number,
            question_group=focus_question_group(candidate),
            answer={**result.payload, "question": candidate.question, "retrieval": citations},
            answer_text=answer_text,
            tokens_in=result.tokens_in,
            tokens_out=result.tokens_out,
            cost_usd=result.cost,
            cache_hit=result.cache_hit,
        )
        await self.record_spend(run, config, result)
        return ItemResult(
            ticker=ticker,
            status="ok",
            summary=answer_text,
            cache_hit=result.cache_hit,
            cost_usd=result.cost,
            details={"id": candidate.id, "question": candidate.question, "answer": answer_text},
        )

    async def _record_failure(
        self, run: Run, candidate: FocusRequest, exc: Exception, spent: float
    ) -> None:
        metadata: dict[str, Any] = {
            **candidate.metadata,
            "error": str(exc),
            "failed_at": to_iso(self._repo.now()),
        }
        await self._repo.fail_focus_request(candidate.id, metadata)

    def _message(self, outcome: StageOutcome) -> str:
        pending = getattr(outcome.metrics, "pending", 0)
        if outcome.processed:
            return (
                f"Processed {outcome.processed} focus question(s) "
                f"(cache hits: {outcome.cache_hits}). Pending requests: {pending}."
            )
        if outcome.failed:
            return "All focus questions failed. See error log for details."
        if pending == 0:
            return "No focus questions pending."
        return "No focus questions processed."

    def _label(self, candidate: FocusRequest) -> str:
        return f"{candidate.ticker} (request {candidate.id})"

    def _prompt_id(self, candidate: FocusRequest) -> str | None:
        return candidate.template_slug or "focus-custom"
