"""Schedule-due calculation and the automatic dispatcher.

A :class:`~researchflow.core.models.RunSchedule` asks for a run to be
continued every ``cadence_seconds``.  This module decides which schedules
are due and triggers one continue call per due schedule:

* :func:`compute_due_schedules` and :func:`compute_next_trigger` are pure
  functions of the schedule rows and "now";
* :func:`dispatch_due_schedules` is the service-authenticated operation that
  invokes the cycle orchestrator for due schedules and stamps
  ``last_triggered_at``;
* :func:`run_dispatch_loop` repeats the dispatch on a fixed interval until
  it receives ``SIGTERM`` (or is cancelled).

Dispatch is centralised: one dispatcher process per database.

Typical usage::

    import asyncio
    from researchflow.core.settings import Settings
    from researchflow.orchestrator.scheduler import run_dispatch_loop

    asyncio.run(run_dispatch_loop(Settings()))
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import signal
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Final

import aiosqlite

from researchflow.core import events
from researchflow.core.auth import SERVICE_SECRET_HEADER, require_service_auth
from researchflow.core.exceptions import ResearchflowError
from researchflow.core.models import ACTIVE_RUN_STATUSES, RunSchedule
from researchflow.core.settings import Settings
from researchflow.core.stage_config import clamp_int
from researchflow.storage.repository import RunRepository, to_iso

if TYPE_CHECKING:
    from researchflow.orchestrator.cycle import CycleOrchestrator

__all__ = [
    "HEARTBEAT_PATH",
    "DEFAULT_DISPATCH_LIMIT",
    "MAX_DISPATCH_LIMIT",
    "DispatchResult",
    "compute_due_schedules",
    "compute_next_trigger",
    "dispatch_due_schedules",
    "run_dispatch_loop",
]

logger = logging.getLogger(__name__)

#: Heartbeat file written after every dispatch iteration.
HEARTBEAT_PATH: str = os.environ.get("RESEARCHFLOW_HEARTBEAT_PATH", "/tmp/researchflow_heartbeat")

DEFAULT_DISPATCH_LIMIT: Final[int] = 5
MAX_DISPATCH_LIMIT: Final[int] = 20

_UUID_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.I)


def _write_heartbeat(path: str = HEARTBEAT_PATH) -> None:
    """Write the current epoch timestamp; failures are logged, never raised."""
    try:
        with open(path, "w", encoding="utf-8") as fh:
            fh.write(str(time.time()))
    except OSError:
        logger.warning("Failed to write heartbeat file '%s'.", path, exc_info=True)


# ---------------------------------------------------------------------------
# Due calculation (pure)
# ---------------------------------------------------------------------------


def _is_due(schedule: RunSchedule, now: datetime, run_ids: set[str] | None) -> bool:
    if not schedule.active or schedule.cadence_seconds <= 0:
        return False
    if run_ids is not None and schedule.run_id not in run_ids:
        return False
    if schedule.run_stop_requested:
        return False
    if schedule.run_status is not None and schedule.run_status not in ACTIVE_RUN_STATUSES:
        return False
    if schedule.last_triggered_at is None:
        return True
    return now - schedule.last_triggered_at >= timedelta(seconds=schedule.cadence_seconds)


def compute_due_schedules(
    schedules: Iterable[RunSchedule],
    now: datetime,
    run_ids: Iterable[str] | None = None,
) -> list[RunSchedule]:
    """Return the schedules due at *now*, oldest-eligible first.

    A schedule is due when it is active with a positive cadence, its run is
    running or queued (or was not found) and not flagged to stop, its run id
    passes the optional filter, and it has never been triggered or its
    cadence has elapsed since the last trigger.

    Never-triggered schedules come first, then ascending
    ``last_triggered_at + cadence``.
    """
    id_filter = set(run_ids) if run_ids is not None else None
    due = [s for s in schedules if _is_due(s, now, id_filter)]

    def _order(schedule: RunSchedule) -> tuple[int, datetime, int]:
        if schedule.last_triggered_at is None:
            return (0, now, schedule.id)
        eligible = schedule.last_triggered_at + timedelta(seconds=schedule.cadence_seconds)
        return (1, eligible, schedule.id)

    return sorted(due, key=_order)


def compute_next_trigger(schedule: RunSchedule, now: datetime) -> datetime | None:
    """Earliest time *schedule* becomes due; ``None`` when it never will."""
    if not schedule.active or schedule.cadence_seconds <= 0:
        return None
    base = schedule.last_triggered_at or now
    return base + timedelta(seconds=schedule.cadence_seconds)


def _valid_run_ids(run_ids: Sequence[Any] | None) -> set[str] | None:
    if not run_ids:
        return None
    valid = {str(r).strip() for r in run_ids if isinstance(r, str) and _UUID_RE.match(r.strip())}
    return valid or None


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


@dataclass
class DispatchResult:
    """Outcome of one dispatch pass."""

    triggered: list[dict[str, Any]] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    remaining_due: int = 0
    total_due: int = 0
    checked_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


async def dispatch_due_schedules(
    repo: RunRepository,
    orchestrator: CycleOrchestrator,
    *,
    secret: str | None,
    headers: Mapping[str, str] | None = None,
    query: Mapping[str, str] | None = None,
    limit: Any = DEFAULT_DISPATCH_LIMIT,
    run_ids: Sequence[Any] | None = None,
    dry_run: bool = False,
    client_meta: Mapping[str, Any] | None = None,
) -> DispatchResult:
    """Trigger one continue call per due schedule.

    Args:
        repo: Run-state repository.
        orchestrator: Cycle orchestrator used for the continue calls.
        secret: Configured automation secret.
        headers: Caller headers carrying the automation secret.
        query: Caller query parameters (fallback location of the secret).
        limit: Maximum schedules handled, clamped to ``[1, 20]``.
        run_ids: Optional run-id filter; entries that are not UUIDs are
            ignored.
        dry_run: List what would run without invoking or stamping anything.
        client_meta: Merged into each continue call's client metadata.

    Raises:
        AuthError: Missing or wrong automation secret.
        ConfigError: No automation secret configured.
    """
    capabilities = require_service_auth(headers, query, secret)
    now = repo.now()
    batch = clamp_int(limit, DEFAULT_DISPATCH_LIMIT, 1, MAX_DISPATCH_LIMIT)
    due = compute_due_schedules(await repo.list_active_schedules(), now, _valid_run_ids(run_ids))
    result = DispatchResult(total_due=len(due), checked_at=to_iso(now))
    logger.info(
        "Dispatch check: %d schedule(s) due (limit=%d dry_run=%s).",
        len(due),
        batch,
        dry_run,
        extra={"event": events.DISPATCH_START},
    )

    for schedule in due[:batch]:
        if dry_run:
            result.skipped.append(
                {
                    "schedule_id": schedule.id,
                    "run_id": schedule.run_id,
                    "reason": "dry_run",
                    "next_attempt_after": to_iso(
                        now + timedelta(seconds=schedule.cadence_seconds)
                    ),
                }
            )
            continue

        meta = {
            **dict(client_meta or {}),
            "orchestrator": "runs-dispatch",
            "schedule_id": schedule.id,
            "dispatched_at": to_iso(repo.now()),
        }
        try:
            continued = await orchestrator.continue_run(
                schedule.run_id,
                schedule.stage_limits,
                clamp_int(schedule.max_cycles, 1, 1, 10),
                capabilities=capabilities,
                client_meta=meta,
            )
            entry: dict[str, Any] = {
                "status": 200,
                "ok": True,
                "message": continued.message,
                "payload": continued.to_dict(),
            }
        except ResearchflowError as exc:
            entry = {
                "status": exc.status_code,
                "ok": False,
                "message": str(exc),
                "payload": {"error": str(exc)},
            }
        except Exception as exc:  # noqa: BLE001
            logger.exception("Continue invocation failed for schedule %d.", schedule.id)
            result.skipped.append(
                {
                    "schedule_id": schedule.id,
                    "run_id": schedule.run_id,
                    "reason": "invoke_failed",
                    "error": str(exc),
                }
            )
            logger.info(
                "Schedule %d skipped (invoke_failed).",
                schedule.id,
                extra={"event": events.DISPATCH_SKIPPED},
            )
            continue

        try:
            await repo.mark_schedule_triggered(schedule.id, repo.now())
        except aiosqlite.Error as exc:
            # The run was already advanced; an unstamped schedule is merely due again.
            logger.warning(
                "Failed to record trigger time for schedule %d: %s",
                schedule.id,
                exc,
                extra={"event": events.DISPATCH_STAMP_FAILED},
            )
        result.triggered.append({"schedule_id": schedule.id, "run_id": schedule.run_id, **entry})
        logger.info(
            "Schedule %d triggered run %s (status=%s).",
            schedule.id,
            schedule.run_id,
            entry["status"],
            extra={"event": events.DISPATCH_TRIGGERED},
        )

    result.remaining_due = max(0, len(due) - len(result.triggered) - len(result.skipped))
    logger.info(
        "Dispatch finished: triggered=%d skipped=%d remaining=%d.",
        len(result.triggered),
        len(result.skipped),
        result.remaining_due,
        extra={"event": events.DISPATCH_COMPLETE},
    )
    return result


# ---------------------------------------------------------------------------
# Continuous dispatcher
# ---------------------------------------------------------------------------


async def _dispatch_loop(settings: Settings, interval: float) -> None:
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    headers = {SERVICE_SECRET_HEADER: settings.automation_service_secret}
    while True:
        try:
            async with open_services(settings) as services:
                await dispatch_due_schedules(
                    services.repo,
                    services.orchestrator,
                    secret=settings.automation_service_secret,
                    headers=headers,
                )
        except Exception:
            logger.exception("Unhandled exception in dispatch cycle; will retry after interval.")

        _write_heartbeat()
        logger.debug("Next dispatch check in %.0f s.", interval)
        await asyncio.sleep(interval)


async def run_dispatch_loop(settings: Settings | None = None) -> None:
    """Dispatch due schedules every ``dispatch_interval_seconds`` until stopped.

    ``SIGTERM`` cancels the loop after the current ``await`` point; resource
    teardown happens in :func:`~researchflow.orchestrator.runner.open_services`.
    The signal handler is removed on exit.

    Raises:
        asyncio.CancelledError: On shutdown (SIGTERM or cancellation).
    """
    if settings is None:
        settings = Settings()

    interval = float(settings.dispatch_interval_seconds)
    logger.info("Dispatcher entering continuous mode (interval: %.0f s).", interval)
    task = asyncio.create_task(_dispatch_loop(settings, interval), name="researchflow-dispatch")

    loop = asyncio.get_running_loop()
    _shutdown_signal: list[str] = []

    def _request_graceful_shutdown(signame: str) -> None:
        if not _shutdown_signal:
            _shutdown_signal.append(signame)
            logger.info("Received %s; graceful shutdown requested.", signame)
        task.cancel()

    loop.add_signal_handler(signal.SIGTERM, lambda: _request_graceful_shutdown("SIGTERM"))

    try:
        await task
    except (asyncio.CancelledError, KeyboardInterrupt):
        if _shutdown_signal:
            logger.info("Graceful shutdown complete (signal: %s).", _shutdown_signal[0])
        else:
            logger.info("Dispatch loop cancelled; stopping.")
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise
    finally:
        with contextlib.suppress(Exception):
            loop.remove_signal_handler(signal.SIGTERM)
