"""Typed answer models for every stage's provider output.

Completions come back from the provider as loosely-typed JSON.  They are
validated exactly once, at the consumer boundary, into one of the frozen
models below and passed around as typed values from then on.  A completion
that does not validate raises
:class:`~researchflow.core.exceptions.AnswerValidationError`, which the
consumers treat as a per-item failure (never retried).

Typical usage::

    from researchflow.core.answers import parse_completion, Stage1Answer

    payload = parse_completion("stage1", completion)     # dict from JSON content
    answer = Stage1Answer.validate_payload(payload)
    print(answer.label, answer.summary_line())
"""

from __future__ import annotations

import json
import logging
from typing import Any, ClassVar, Final, Self

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    ValidationError,
    field_validator,
)

from researchflow.core.exceptions import AnswerValidationError
from researchflow.core.models import TriageLabel

__all__ = [
    "StageAnswer",
    "ScoreEntry",
    "Stage1Flags",
    "Stage1Answer",
    "Stage2Scores",
    "Stage2Verdict",
    "Stage2Answer",
    "BusinessAnswer",
    "FinancialsAnswer",
    "RisksAnswer",
    "Stage3Summary",
    "FocusAnswer",
    "STAGE3_GROUP_MODELS",
    "extract_content",
    "parse_completion",
    "EMPTY_SUMMARY",
]

logger = logging.getLogger(__name__)

#: Placeholder shown when an answer carries no usable summary text.
EMPTY_SUMMARY: Final[str] = "—"


def _format_errors(exc: ValidationError) -> list[str]:
    messages: list[str] = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error["loc"]) or "<root>"
        messages.append(f"{location}: {error['msg']}")
    return messages


def _clean_text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class StageAnswer(BaseModel):
    """Base for all stage answers.

    Unknown keys are kept (``extra="allow"``) so the stored answer mirrors
    what the model produced, but declared fields are always validated.
    """

    model_config = ConfigDict(frozen=True, extra="allow")

    #: Stage identifier used in validation errors.
    stage_key: ClassVar[str] = "answer"

    @classmethod
    def validate_payload(cls, payload: Any) -> Self:
        """Validate *payload* or raise :exc:`AnswerValidationError`."""
        if not isinstance(payload, dict):
            raise AnswerValidationError(cls.stage_key, ["response must be a JSON object"], payload)
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise AnswerValidationError(cls.stage_key, _format_errors(exc), payload) from exc

    def summary_line(self) -> str:
        """Short human-readable summary used in per-item results."""
        return EMPTY_SUMMARY


class ScoreEntry(BaseModel):
    """A 0–10 score with a short rationale."""

    model_config = ConfigDict(frozen=True, extra="allow")

    score: int = Field(..., ge=0, le=10)
    rationale: str = Field(..., min_length=1)

    @field_validator("rationale")
    @classmethod
    def _strip_rationale(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("rationale must not be blank")
        return v


# ---------------------------------------------------------------------------
# Stage 1: triage
# ---------------------------------------------------------------------------


class Stage1Flags(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    leverage: str = Field(..., min_length=1)
    governance: str = Field(..., min_length=1)
    dilution: str = Field(..., min_length=1)


class Stage1Answer(StageAnswer):
    """Triage classification.

    Attributes:
        label: One of ``uninvestible`` / ``borderline`` / ``consider``
            (accepted case-insensitively, stored lower-case).
        reasons: 1–10 short bullet strings, each at most 240 characters.
        flags: Leverage, governance and dilution notes.
    """

    stage_key: ClassVar[str] = "stage1"

    label: TriageLabel
    reasons: list[str] = Field(..., min_length=1, max_length=10)
    flags: Stage1Flags
    summary: str | None = None

    @field_validator("label", mode="before")
    @classmethod
    def _normalise_label(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("reasons")
    @classmethod
    def _check_reasons(cls, v: list[str]) -> list[str]:
        for index, reason in enumerate(v):
            if not reason.strip():
                raise ValueError(f"reason {index} must not be blank")
            if len(reason) > 240:
                raise ValueError(f"reason {index} exceeds 240 characters")
        return v

    def summary_line(self) -> str:
        return _clean_text(self.reasons[0]) or _clean_text(self.summary) or EMPTY_SUMMARY


# ---------------------------------------------------------------------------
# Stage 2: medium scoring
# ---------------------------------------------------------------------------


class Stage2Scores(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    profitability: ScoreEntry
    reinvestment: ScoreEntry
    leverage: ScoreEntry
    moat: ScoreEntry
    timing: ScoreEntry


class Stage2Verdict(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    go_deep: StrictBool
    summary: str = ""
    risks: list[str] = Field(default_factory=list)
    opportunities: list[str] = Field(default_factory=list)


class Stage2Answer(StageAnswer):
    """Thematic scoring pass; ``verdict.go_deep`` selects stage 3 finalists."""

    stage_key: ClassVar[str] = "stage2"

    scores: Stage2Scores
    verdict: Stage2Verdict
    next_steps: list[str] = Field(default_factory=list, max_length=10)

    @property
    def go_deep(self) -> bool:
        return self.verdict.go_deep

    def summary_line(self) -> str:
        if _clean_text(self.verdict.summary):
            return _clean_text(self.verdict.summary)
        if self.next_steps and _clean_text(self.next_steps[0]):
            return _clean_text(self.next_steps[0])
        return f"profitability: {self.scores.profitability.rationale}"


# ---------------------------------------------------------------------------
# Stage 3: deep dive groups and memo
# ---------------------------------------------------------------------------


class BusinessAnswer(StageAnswer):
    stage_key: ClassVar[str] = "stage3.business"

    business_model: str = Field(..., min_length=1)
    moat: ScoreEntry
    customer_lock_in: str = ""
    growth_drivers: list[str] = Field(default_factory=list)

    def summary_line(self) -> str:
        return self.business_model.strip() or EMPTY_SUMMARY


class FinancialsAnswer(StageAnswer):
    stage_key: ClassVar[str] = "stage3.financials"

    unit_economics: ScoreEntry
    capital_allocation: ScoreEntry
    balance_sheet: ScoreEntry
    kpis: list[str] = Field(default_factory=list)

    def summary_line(self) -> str:
        return self.unit_economics.rationale


class RisksAnswer(StageAnswer):
    stage_key: ClassVar[str] = "stage3.risks"

    principal_risks: list[str] = Field(..., min_length=1)
    catalysts: list[str] = Field(default_factory=list)
    timing_window: str = ""
    monitoring_flags: list[str] = Field(default_factory=list)

    def summary_line(self) -> str:
        return _clean_text(self.principal_risks[0]) or EMPTY_SUMMARY


class Stage3Summary(StageAnswer):
    """Final investment memo for a finalist."""

    stage_key: ClassVar[str] = "stage3.summary"

    verdict: str = Field(..., min_length=1)
    confidence: int = Field(..., ge=0, le=100)
    thesis: str = Field(..., min_length=1)
    watch_items: list[str] = Field(default_factory=list)
    next_actions: list[str] = Field(default_factory=list)

    def summary_line(self) -> str:
        return self.verdict.strip() or EMPTY_SUMMARY


#: Group key → answer model, in prompt order.
STAGE3_GROUP_MODELS: dict[str, type[StageAnswer]] = {
    "business": BusinessAnswer,
    "financials": FinancialsAnswer,
    "risks": RisksAnswer,
}


# ---------------------------------------------------------------------------
# Focus questions
# ---------------------------------------------------------------------------


class FocusAnswer(StageAnswer):
    """Answer to a free-form focus question.

    Only the object shape is enforced; ``summary`` is preferred for display
    and the consumer falls back to the raw content when it is absent.
    """

    stage_key: ClassVar[str] = "focus"

    summary: str | None = None
    answer: Any = None
    confidence: float | None = None
    citations: list[Any] = Field(default_factory=list)

    def summary_line(self) -> str:
        return _clean_text(self.summary) or EMPTY_SUMMARY


# ---------------------------------------------------------------------------
# Completion parsing
# ---------------------------------------------------------------------------


def extract_content(completion: dict[str, Any]) -> str:
    """Return ``choices[0].message.content`` of a chat completion.

    Raises:
        AnswerValidationError: When the completion carries no text content.
    """
    choices = completion.get("choices") if isinstance(completion, dict) else None
    content: Any = None
    if isinstance(choices, list) and choices:
        first = choices[0] if isinstance(choices[0], dict) else {}
        message = first.get("message") if isinstance(first.get("message"), dict) else {}
        content = message.get("content")
    if not isinstance(content, str) or not content.strip():
        raise AnswerValidationError("completion", ["Completion missing content"], completion)
    return content


def parse_completion(stage_key: str, completion: dict[str, Any]) -> dict[str, Any]:
    """Extract and JSON-decode the content of *completion*.

    Raises:
        AnswerValidationError: Missing content, invalid JSON, or a JSON value
            that is not an object.  ``raw`` carries the undecoded content.
    """
    content = extract_content(completion)
    try:
        payload = json.loads(content)
    except ValueError as exc:
        raise AnswerValidationError(stage_key, [f"invalid JSON: {exc}"], content) from exc
    if not isinstance(payload, dict):
        raise AnswerValidationError(stage_key, ["response must be a JSON object"], content)
    return payload
