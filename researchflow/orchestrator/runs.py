"""Operator operations: create runs, stop them, schedule them, ask follow-ups.

Every function takes the :class:`~researchflow.storage.repository.RunRepository`
and the caller's resolved :class:`~researchflow.core.auth.Capabilities`.
Input is sanitised here (clamped numbers, normalised tickers, trimmed
labels) so the repository only ever sees well-formed values.

Typical usage::

    caps = Capabilities.service()
    created = await create_run(repo, tickers=["aapl", "MSFT"], budget_usd=5,
                               capabilities=caps)
    await upsert_schedule(repo, created["run_id"], cadence_seconds=900,
                          capabilities=caps)
"""

from __future__ import annotations

import logging
import math
import re
import uuid
from collections.abc import Iterable, Mapping, Sequence
from typing import Any, Final

from researchflow.core import events
from researchflow.core.auth import Capabilities
from researchflow.core.exceptions import InvalidRequestError, NotFoundError, StorageError
from researchflow.core.models import RunSchedule, RunStatus, TickerProfile
from researchflow.core.stage_config import MODEL_REGISTRY, clamp_int
from researchflow.orchestrator.scheduler import compute_next_trigger
from researchflow.storage.repository import RunRepository, to_iso

__all__ = [
    "MAX_TICKERS",
    "PLANNER_DEFAULTS",
    "normalize_ticker",
    "sanitize_planner",
    "estimate_cost",
    "create_run",
    "set_stop_flag",
    "upsert_schedule",
    "get_schedule",
    "enqueue_focus_questions",
    "import_tickers",
]

logger = logging.getLogger(__name__)

MAX_TICKERS: Final[int] = 60_000
MAX_STAGE_TOKENS: Final[int] = 1_000_000

#: Planner used when the caller supplies nothing.
PLANNER_DEFAULTS: Final[dict[str, Any]] = {
    "universe": 40_000,
    "survive_stage2": 15.0,
    "survive_stage3": 12.0,
    "stage1": {"model": "4o-mini", "in_tokens": 3_000, "out_tokens": 600},
    "stage2": {"model": "5-mini", "in_tokens": 30_000, "out_tokens": 6_000},
    "stage3": {"model": "5", "in_tokens": 100_000, "out_tokens": 20_000},
}

DEFAULT_CADENCE_SECONDS: Final[int] = 3_600
MIN_CADENCE_SECONDS: Final[int] = 60
MAX_CADENCE_SECONDS: Final[int] = 21_600
MAX_SCHEDULE_LIMIT: Final[int] = 25
MAX_SCHEDULE_CYCLES: Final[int] = 10
MAX_LABEL_LENGTH: Final[int] = 120

_TICKER_RE = re.compile(r"^[A-Z0-9.\-]+$")


def normalize_ticker(value: Any) -> str | None:
    """Trim and upper-case *value*; ``None`` unless it matches ``[A-Z0-9.-]+``."""
    if not isinstance(value, str):
        return None
    ticker = value.strip().upper()
    return ticker if ticker and _TICKER_RE.match(ticker) else None


def _clamp_float(value: Any, default: float, minimum: float, maximum: float) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        number = default
    if not math.isfinite(number):
        number = default
    return min(max(number, minimum), maximum)


def _pick(raw: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in raw:
            return raw[key]
    return None


def _sanitize_stage(raw: Any, defaults: Mapping[str, Any]) -> dict[str, Any]:
    raw = raw if isinstance(raw, Mapping) else {}
    model = raw.get("model")
    return {
        "model": model.strip() if isinstance(model, str) and model.strip() else defaults["model"],
        "in_tokens": clamp_int(
            _pick(raw, "in_tokens", "inTokens"), defaults["in_tokens"], 0, MAX_STAGE_TOKENS
        ),
        "out_tokens": clamp_int(
            _pick(raw, "out_tokens", "outTokens"), defaults["out_tokens"], 0, MAX_STAGE_TOKENS
        ),
    }


def sanitize_planner(raw: Mapping[str, Any] | None) -> dict[str, Any]:
    """Clamp a caller-supplied planner onto :data:`PLANNER_DEFAULTS`.

    Accepts both ``snake_case`` and ``camelCase`` keys (``survive_stage2`` /
    ``surviveStage2``, ``in_tokens`` / ``inTokens``).
    """
    raw = raw if isinstance(raw, Mapping) else {}
    return {
        "universe": clamp_int(raw.get("universe"), PLANNER_DEFAULTS["universe"], 0, MAX_TICKERS),
        "survive_stage2": _clamp_float(
            _pick(raw, "survive_stage2", "surviveStage2"), PLANNER_DEFAULTS["survive_stage2"], 0, 100
        ),
        "survive_stage3": _clamp_float(
            _pick(raw, "survive_stage3", "surviveStage3"), PLANNER_DEFAULTS["survive_stage3"], 0, 100
        ),
        **{
            stage: _sanitize_stage(raw.get(stage), PLANNER_DEFAULTS[stage])
            for stage in ("stage1", "stage2", "stage3")
        },
    }


def _stage_cost(count: int, stage: Mapping[str, Any]) -> float:
    model = MODEL_REGISTRY.get(stage["model"])
    if model is None or not count:
        return 0.0
    return (count * stage["in_tokens"] / 1_000_000) * model.price_in + (
        count * stage["out_tokens"] / 1_000_000
    ) * model.price_out


def estimate_cost(planner: Mapping[str, Any]) -> dict[str, float]:
    """Projected spend per stage and in total for a sanitised planner.

    Stage 2 runs on ``universe × survive_stage2 %`` tickers and stage 3 on
    ``stage-2 survivors × survive_stage3 %``.  Unknown model slugs cost 0.
    """
    universe = planner["universe"]
    survivors2 = round(universe * planner["survive_stage2"] / 100)
    survivors3 = round(survivors2 * planner["survive_stage3"] / 100)
    stage1 = _stage_cost(universe, planner["stage1"])
    stage2 = _stage_cost(survivors2, planner["stage2"])
    stage3 = _stage_cost(survivors3, planner["stage3"])
    return {"stage1": stage1, "stage2": stage2, "stage3": stage3, "total": stage1 + stage2 + stage3}


def _require_run_id(run_id: str | None) -> str:
    cleaned = (run_id or "").strip()
    if not cleaned:
        raise InvalidRequestError("run_id is required")
    return cleaned


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


async def create_run(
    repo: RunRepository,
    *,
    capabilities: Capabilities,
    tickers: Sequence[Any] | None = None,
    planner: Mapping[str, Any] | None = None,
    budget_usd: float | None = None,
    client_meta: Mapping[str, Any] | None = None,
    created_by: str | None = None,
) -> dict[str, Any]:
    """Create a run and queue its items at stage 0.

    When *tickers* yields nothing usable, the most recently updated tickers
    are used, up to the planner's universe size.

    Returns:
        ``run_id``, ``total_items``, ``planner``, ``estimated_cost`` and
        ``budget_usd``.

    Raises:
        ForbiddenError: Caller is not an admin.
        InvalidRequestError: Negative or non-numeric budget.
        NotFoundError: No tickers available to enqueue.
        StorageError: Items could not be inserted (the run is marked failed).
    """
    capabilities.require_admin()
    clean_planner = sanitize_planner(planner)

    budget: float | None = None
    if budget_usd is not None:
        try:
            budget = float(budget_usd)
        except (TypeError, ValueError) as exc:
            raise InvalidRequestError(f"Invalid budget_usd: {budget_usd!r}") from exc
        if not math.isfinite(budget) or budget < 0:
            raise InvalidRequestError(f"Invalid budget_usd: {budget_usd!r}")

    requested = list(dict.fromkeys(t for t in map(normalize_ticker, tickers or []) if t))
    target = min(max(len(requested) or clean_planner["universe"], 1), MAX_TICKERS)
    if requested:
        resolved = requested[:target]
    else:
        recent = await repo.list_recent_tickers(target)
        resolved = list(dict.fromkeys(t for t in map(normalize_ticker, recent) if t))
    if not resolved:
        raise NotFoundError("No tickers available to enqueue")

    estimated = estimate_cost(clean_planner)
    run_id = str(uuid.uuid4())
    notes = {
        "planner": clean_planner,
        "estimated_cost": estimated,
        "requested_tickers": len(requested),
        "resolved_tickers": len(resolved),
        "created_at": to_iso(repo.now()),
        "created_by": created_by,
        "client_meta": dict(client_meta) if client_meta else None,
    }
    await repo.create_run(run_id, status=RunStatus.RUNNING, notes=notes, budget_usd=budget)
    try:
        total = await repo.insert_items(run_id, resolved)
    except StorageError as exc:
        logger.error("Failed to enqueue tickers for run %s: %s", run_id, exc)
        await repo.set_run_status(run_id, RunStatus.FAILED)
        raise StorageError(f"Failed to enqueue tickers for run {run_id}: {exc}") from exc

    logger.info(
        "Created run %s with %d item(s); estimated cost %.2f USD.",
        run_id,
        total,
        estimated["total"],
        extra={"event": events.RUN_CREATED},
    )
    return {
        "run_id": run_id,
        "total_items": total,
        "planner": clean_planner,
        "estimated_cost": estimated,
        "budget_usd": budget,
    }


async def set_stop_flag(
    repo: RunRepository,
    run_id: str,
    stop_requested: bool,
    *,
    capabilities: Capabilities,
) -> dict[str, Any]:
    """Set or clear the cooperative stop flag.

    Raises:
        RunNotFoundError: Unknown run.
    """
    capabilities.require_admin()
    run = await repo.resolve_run(_require_run_id(run_id))
    if run.stop_requested == stop_requested:
        return {"run_id": run.id, "stop_requested": run.stop_requested, "message": "No change"}

    updated = await repo.set_stop_requested(run.id, stop_requested)
    message = "Run flagged to stop" if stop_requested else "Stop request cleared"
    logger.info("%s: %s", message, run.id, extra={"event": events.RUN_STOP_TOGGLED})
    return {"run_id": updated.id, "stop_requested": updated.stop_requested, "message": message}


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


def _schedule_payload(repo: RunRepository, schedule: RunSchedule) -> dict[str, Any]:
    payload = schedule.model_dump(mode="json", exclude={"run_status", "run_stop_requested"})
    next_trigger = compute_next_trigger(schedule, repo.now())
    payload["next_trigger_at"] = to_iso(next_trigger) if next_trigger else None
    return payload


async def upsert_schedule(
    repo: RunRepository,
    run_id: str,
    *,
    capabilities: Capabilities,
    cadence_seconds: Any = None,
    stage1_limit: Any = None,
    stage2_limit: Any = None,
    stage3_limit: Any = None,
    max_cycles: Any = None,
    active: bool = True,
    label: str | None = None,
    reset_last_trigger: bool = False,
) -> dict[str, Any]:
    """Create or replace the schedule of *run_id*.

    Numbers are clamped (cadence ``60..21600`` s, stage limits ``1..25``,
    cycles ``1..10``) and the label is trimmed to 120 characters.

    Returns:
        The stored schedule plus ``next_trigger_at``.

    Raises:
        RunNotFoundError: Unknown run.
    """
    capabilities.require_admin()
    run = await repo.resolve_run(_require_run_id(run_id))
    clean_label = (label or "").strip()[:MAX_LABEL_LENGTH] or None
    schedule = await repo.upsert_schedule(
        run.id,
        cadence_seconds=clamp_int(
            cadence_seconds, DEFAULT_CADENCE_SECONDS, MIN_CADENCE_SECONDS, MAX_CADENCE_SECONDS
        ),
        stage1_limit=clamp_int(stage1_limit, 8, 1, MAX_SCHEDULE_LIMIT),
        stage2_limit=clamp_int(stage2_limit, 4, 1, MAX_SCHEDULE_LIMIT),
        stage3_limit=clamp_int(stage3_limit, 2, 1, MAX_SCHEDULE_LIMIT),
        max_cycles=clamp_int(max_cycles, 1, 1, MAX_SCHEDULE_CYCLES),
        active=bool(active),
        label=clean_label,
        reset_last_trigger=reset_last_trigger,
    )
    logger.info(
        "Saved schedule for run %s (cadence=%ds active=%s).",
        run.id,
        schedule.cadence_seconds,
        schedule.active,
        extra={"event": events.SCHEDULE_SAVED},
    )
    return _schedule_payload(repo, schedule)


async def get_schedule(
    repo: RunRepository, run_id: str, *, capabilities: Capabilities
) -> dict[str, Any] | None:
    """The schedule of *run_id* plus ``next_trigger_at``; ``None`` when unset."""
    capabilities.require_admin()
    run = await repo.resolve_run(_require_run_id(run_id))
    schedule = await repo.get_schedule(run.id)
    return _schedule_payload(repo, schedule) if schedule else None


# ---------------------------------------------------------------------------
# Focus questions
# ---------------------------------------------------------------------------


async def enqueue_focus_questions(
    repo: RunRepository,
    run_id: str,
    *,
    capabilities: Capabilities,
    tickers: Sequence[Any],
    questions: Sequence[str] | None = None,
    template_slugs: Sequence[str] | None = None,
) -> dict[str, Any]:
    """Queue focus questions for tickers of a run.

    Each ticker receives one request per template and one per custom
    question.  A request identical to one still open (same ticker, question
    and template) is skipped.

    Raises:
        InvalidRequestError: No ticker or question, a ticker outside the run,
            or unknown template slugs.
        RunNotFoundError: Unknown run.
    """
    capabilities.require_admin()
    run = await repo.resolve_run(_require_run_id(run_id))

    clean_tickers = list(dict.fromkeys(t for t in map(normalize_ticker, tickers) if t))
    if not clean_tickers:
        raise InvalidRequestError("Ticker required")
    custom = list(
        dict.fromkeys(q.strip() for q in questions or [] if isinstance(q, str) and q.strip())
    )
    slugs = list(dict.fromkeys(s.strip() for s in template_slugs or [] if s and s.strip()))
    if not custom and not slugs:
        raise InvalidRequestError("Provide at least one focus question or template slug")

    for ticker in clean_tickers:
        if await repo.get_item(run.id, ticker) is None:
            raise InvalidRequestError(f"Ticker not part of the requested run: {ticker}")

    templates = await repo.get_focus_templates(slugs)
    missing = [slug for slug in slugs if slug not in templates]
    if missing:
        raise InvalidRequestError(f"Unknown template slugs: {', '.join(missing)}")

    wanted: list[tuple[str, str, int | None]] = []
    for ticker in clean_tickers:
        wanted.extend((ticker, templates[slug].question, templates[slug].id) for slug in slugs)
        wanted.extend((ticker, question, None) for question in custom)

    open_keys = await repo.open_focus_keys(run.id)
    fresh = [key for key in dict.fromkeys(wanted) if key not in open_keys]
    inserted = await repo.insert_focus_requests(
        run.id, [(ticker, question, tid, {}) for ticker, question, tid in fresh]
    )
    logger.info(
        "Queued %d focus request(s) for run %s (%d duplicate(s) skipped).",
        inserted,
        run.id,
        len(wanted) - inserted,
        extra={"event": events.FOCUS_ENQUEUED},
    )
    return {
        "run_id": run.id,
        "tickers": clean_tickers,
        "inserted_count": inserted,
        "skipped_duplicates": len(wanted) - inserted,
    }


# ---------------------------------------------------------------------------
# Tickers
# ---------------------------------------------------------------------------


async def import_tickers(
    repo: RunRepository,
    rows: Iterable[Mapping[str, Any]],
    *,
    capabilities: Capabilities,
) -> int:
    """Upsert ticker reference rows; rows without a valid ticker are dropped."""
    capabilities.require_admin()
    profiles: dict[str, TickerProfile] = {}
    for row in rows:
        ticker = normalize_ticker(row.get("ticker"))
        if ticker is None:
            logger.debug("Skipping ticker row without a valid symbol: %r", row)
            continue
        fields = {
            key: (str(row[key]).strip() or None) if row.get(key) is not None else None
            for key in ("name", "exchange", "country", "sector", "industry")
        }
        profiles[ticker] = TickerProfile(ticker=ticker, **fields)
    count = await repo.upsert_tickers(profiles.values())
    logger.info("Imported %d ticker(s).", count)
    return count
