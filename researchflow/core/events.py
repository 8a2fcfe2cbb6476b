"""Structured log event names for the research pipeline.

Key transitions emit a log record with an ``event`` field passed via
``extra={"event": events.X}``.  In ``LOG_FORMAT=json`` mode the value shows
up as ``extra.event``; in text mode the message is self-describing and the
event name is not interpolated.

Usage example::

    import logging
    from researchflow.core import events

    logger = logging.getLogger(__name__)
    logger.info("Stage 1 batch finished", extra={"event": events.STAGE_COMPLETE})
"""

from __future__ import annotations

__all__ = [
    # Stage consumers
    "STAGE_START",
    "STAGE_HALTED",
    "STAGE_COMPLETE",
    "ITEM_CLAIM_LOST",
    "ITEM_OK",
    "ITEM_FAILED",
    "CLAIMS_RECLAIMED",
    # Cache
    "CACHE_HIT",
    "CACHE_MISS",
    "CACHE_STORE",
    "CACHE_EXPIRED",
    # Provider
    "PROVIDER_RETRY",
    "PROVIDER_ERROR",
    # Orchestrator
    "CONTINUE_START",
    "CONTINUE_HALTED",
    "CONTINUE_COMPLETE",
    "BUDGET_EXHAUSTED",
    # Scheduling
    "DISPATCH_START",
    "DISPATCH_TRIGGERED",
    "DISPATCH_SKIPPED",
    "DISPATCH_COMPLETE",
    "DISPATCH_STAMP_FAILED",
    # Operator actions
    "RUN_CREATED",
    "RUN_STOP_TOGGLED",
    "SCHEDULE_SAVED",
    "FOCUS_ENQUEUED",
]

# ---------------------------------------------------------------------------
# Stage consumers
# ---------------------------------------------------------------------------

#: A stage consumer resolved its run and is about to claim items.
STAGE_START: str = "STAGE_START"

#: The run was flagged to stop; the consumer returned without touching items.
STAGE_HALTED: str = "STAGE_HALTED"

#: A stage batch finished (successfully or with per-item failures).
STAGE_COMPLETE: str = "STAGE_COMPLETE"

#: Another invocation claimed the item first; it was skipped.
ITEM_CLAIM_LOST: str = "ITEM_CLAIM_LOST"

#: One item (or focus request) was processed successfully.
ITEM_OK: str = "ITEM_OK"

#: One item failed; recorded in the error log and the batch continued.
ITEM_FAILED: str = "ITEM_FAILED"

#: Stale ``in_progress`` claims were returned to their eligible status.
CLAIMS_RECLAIMED: str = "CLAIMS_RECLAIMED"

# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

CACHE_HIT: str = "CACHE_HIT"
CACHE_MISS: str = "CACHE_MISS"
CACHE_STORE: str = "CACHE_STORE"

#: An expired cache row was found and purged during lookup.
CACHE_EXPIRED: str = "CACHE_EXPIRED"

# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

#: A provider call failed and will be retried after a backoff sleep.
PROVIDER_RETRY: str = "PROVIDER_RETRY"

#: A provider call failed for good (after retries or non-retryable).
PROVIDER_ERROR: str = "PROVIDER_ERROR"

# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------

CONTINUE_START: str = "CONTINUE_START"

#: Continue stopped early: stop flag set or budget exhausted.
CONTINUE_HALTED: str = "CONTINUE_HALTED"

CONTINUE_COMPLETE: str = "CONTINUE_COMPLETE"

#: Accrued spend reached the run budget; ``stop_requested`` was set.
BUDGET_EXHAUSTED: str = "BUDGET_EXHAUSTED"

# ---------------------------------------------------------------------------
# Scheduling
# ---------------------------------------------------------------------------

DISPATCH_START: str = "DISPATCH_START"
DISPATCH_TRIGGERED: str = "DISPATCH_TRIGGERED"
DISPATCH_SKIPPED: str = "DISPATCH_SKIPPED"
DISPATCH_COMPLETE: str = "DISPATCH_COMPLETE"
DISPATCH_STAMP_FAILED: str = "DISPATCH_STAMP_FAILED"

# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

RUN_CREATED: str = "RUN_CREATED"
RUN_STOP_TOGGLED: str = "RUN_STOP_TOGGLED"
SCHEDULE_SAVED: str = "SCHEDULE_SAVED"
FOCUS_ENQUEUED: str = "FOCUS_ENQUEUED"
