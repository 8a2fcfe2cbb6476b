"""Researchflow core domain models.

Row-shaped :mod:`pydantic` models for every persisted entity (runs, run
items, focus requests, schedules, cached completions) plus the per-stage
metrics snapshots returned by consumers and the orchestrator.

Models are built straight from :class:`aiosqlite.Row` objects by the
repository (``Run.model_validate(dict(row))``); JSON text columns are decoded
by ``mode="before"`` validators so the rest of the pipeline only ever sees
typed values.

Typical usage::

    from researchflow.core.models import ItemStatus, RunItem

    item = RunItem(run_id="…", ticker="ACME", stage=0, status=ItemStatus.PENDING)
    assert item.is_survivor is False
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

__all__ = [
    # Enumerations
    "RunStatus",
    "ItemStatus",
    "FocusStatus",
    "StageName",
    "TriageLabel",
    "SURVIVOR_LABELS",
    "ACTIVE_RUN_STATUSES",
    "OPEN_FOCUS_STATUSES",
    # Rows
    "Run",
    "RunItem",
    "TickerProfile",
    "FocusTemplate",
    "FocusRequest",
    "RunSchedule",
    "CachedCompletion",
    "CostSummary",
    # Metrics
    "Stage1Metrics",
    "Stage2Metrics",
    "Stage3Metrics",
    "FocusMetrics",
    "StageMetrics",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RunStatus(StrEnum):
    """Lifecycle status of a research run."""

    QUEUED = "queued"
    RUNNING = "running"
    FAILED = "failed"
    COMPLETED = "completed"


class ItemStatus(StrEnum):
    """Status of a run item within its current stage.

    ``IN_PROGRESS`` is the transitional claim status: a consumer moves an
    item there with a conditional update before spending on it, and every
    terminal write moves it back out.
    """

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    OK = "ok"
    FAILED = "failed"


class FocusStatus(StrEnum):
    """Status of a focus question request."""

    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    ANSWERED = "answered"
    FAILED = "failed"


class StageName(StrEnum):
    """The four fixed processing passes, in execution order."""

    STAGE1 = "stage1"
    STAGE2 = "stage2"
    STAGE3 = "stage3"
    FOCUS = "focus"

    @property
    def number(self) -> int:
        """Numeric stage stored on answers and ledger rows (focus = 4)."""
        return {"stage1": 1, "stage2": 2, "stage3": 3, "focus": 4}[self.value]


class TriageLabel(StrEnum):
    """Stage 1 classification."""

    UNINVESTIBLE = "uninvestible"
    BORDERLINE = "borderline"
    CONSIDER = "consider"


#: Stage 1 labels that make an item eligible for stage 2.
SURVIVOR_LABELS: frozenset[str] = frozenset({TriageLabel.CONSIDER, TriageLabel.BORDERLINE})

#: Run statuses considered "active" for run resolution and scheduling.
ACTIVE_RUN_STATUSES: frozenset[str] = frozenset({RunStatus.RUNNING, RunStatus.QUEUED})

#: Focus request statuses that still await an answer.
OPEN_FOCUS_STATUSES: frozenset[str] = frozenset({FocusStatus.PENDING, FocusStatus.QUEUED})


def _decode_json(value: Any) -> Any:
    """Decode a JSON text column, leaving non-string values untouched."""
    if isinstance(value, str | bytes) and value:
        try:
            return json.loads(value)
        except ValueError:
            logger.warning("Could not decode JSON column value (%d bytes).", len(value))
            return None
    if value == "":
        return None
    return value


# ---------------------------------------------------------------------------
# Rows
# ---------------------------------------------------------------------------


class Run(BaseModel):
    """One batch research job.

    Attributes:
        id: UUID string.
        status: Lifecycle status.
        stop_requested: Cooperative cancellation flag honoured by every
            consumer and the orchestrator at entry.
        budget_usd: Spend cap; ``None`` or ``0`` means unlimited.
        notes: Planner configuration and creation metadata.
    """

    id: str
    status: RunStatus
    stop_requested: bool = False
    budget_usd: float | None = None
    notes: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("notes", mode="before")
    @classmethod
    def _parse_notes(cls, v: Any) -> Any:
        decoded = _decode_json(v)
        return decoded if isinstance(decoded, dict) else {}

    @property
    def planner(self) -> dict[str, Any]:
        """The planner block stored in ``notes`` (empty when absent)."""
        planner = self.notes.get("planner")
        return planner if isinstance(planner, dict) else {}

    @property
    def budget_configured(self) -> bool:
        """``True`` when a positive spend cap is set."""
        return self.budget_usd is not None and self.budget_usd > 0


class RunItem(BaseModel):
    """One ticker's per-stage progress record within a run."""

    run_id: str
    ticker: str
    stage: int = Field(default=0, ge=0, le=3)
    status: ItemStatus = ItemStatus.PENDING
    label: str | None = None
    stage2_go_deep: bool | None = None
    spend_est_usd: float = 0.0
    updated_at: datetime | None = None

    @property
    def is_survivor(self) -> bool:
        """``True`` when the stage 1 label qualifies the item for stage 2."""
        return (self.label or "").strip().lower() in SURVIVOR_LABELS


class TickerProfile(BaseModel):
    """Reference metadata for a ticker used to build prompts."""

    ticker: str
    name: str | None = None
    exchange: str | None = None
    country: str | None = None
    sector: str | None = None
    industry: str | None = None


class FocusTemplate(BaseModel):
    """Reusable focus question."""

    id: int
    slug: str
    label: str | None = None
    question: str
    user_template: str | None = None


class FocusRequest(BaseModel):
    """A follow-up question about one ticker within a run."""

    id: int
    run_id: str
    ticker: str
    question: str
    template_id: int | None = None
    status: FocusStatus = FocusStatus.PENDING
    answer: dict[str, Any] | None = None
    answer_text: str | None = None
    cache_hit: bool = False
    tokens_in: int = 0
    tokens_out: int = 0
    cost_usd: float = 0.0
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime | None = None
    answered_at: datetime | None = None
    # Joined from focus_question_templates when available.
    template_slug: str | None = None
    template_user_template: str | None = None

    @field_validator("answer", mode="before")
    @classmethod
    def _parse_answer(cls, v: Any) -> Any:
        decoded = _decode_json(v)
        return decoded if isinstance(decoded, dict) else None

    @field_validator("metadata", mode="before")
    @classmethod
    def _parse_metadata(cls, v: Any) -> Any:
        decoded = _decode_json(v)
        return decoded if isinstance(decoded, dict) else {}


class RunSchedule(BaseModel):
    """Cadence configuration for automatic continue invocations.

    ``run_status`` and ``run_stop_requested`` are joined from ``runs`` when
    the schedule is loaded for dispatch; ``None`` means the run row was not
    found.
    """

    id: int
    run_id: str
    cadence_seconds: int = 3600
    stage1_limit: int = 8
    stage2_limit: int = 4
    stage3_limit: int = 2
    max_cycles: int = 1
    active: bool = True
    label: str | None = None
    last_triggered_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    run_status: str | None = None
    run_stop_requested: bool | None = None

    @property
    def stage_limits(self) -> dict[str, int]:
        return {
            "stage1": self.stage1_limit,
            "stage2": self.stage2_limit,
            "stage3": self.stage3_limit,
        }


class CachedCompletion(BaseModel):
    """A stored provider response keyed by ``(model_slug, cache_key)``."""

    id: int
    model_slug: str
    cache_key: str
    prompt_hash: str
    request_body: dict[str, Any] = Field(default_factory=dict)
    response_body: dict[str, Any] = Field(default_factory=dict)
    usage: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] = Field(default_factory=dict)
    hit_count: int = 0
    last_hit_at: datetime | None = None
    created_at: datetime | None = None
    expires_at: datetime | None = None

    @field_validator("request_body", "response_body", "usage", "context", mode="before")
    @classmethod
    def _parse_json_columns(cls, v: Any) -> Any:
        decoded = _decode_json(v)
        return decoded if isinstance(decoded, dict) else {}


class CostSummary(BaseModel):
    """Aggregate spend and token usage for a run (from the cost ledger)."""

    total_cost: float = 0.0
    total_tokens_in: int = 0
    total_tokens_out: int = 0


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class Stage1Metrics(BaseModel):
    total: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


class Stage2Metrics(BaseModel):
    total_survivors: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0
    go_deep: int = 0


class Stage3Metrics(BaseModel):
    total_finalists: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0
    spend: float = 0.0


class FocusMetrics(BaseModel):
    total_requests: int = 0
    pending: int = 0
    completed: int = 0
    failed: int = 0


StageMetrics = Stage1Metrics | Stage2Metrics | Stage3Metrics | FocusMetrics
