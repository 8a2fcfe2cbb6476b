"""Durable error log for per-item failures.

:func:`record_error_log` writes one ``error_logs`` row with enough context
(raw response, validation errors, run, ticker, stage, prompt) to diagnose a
failure without repeating the provider call.  It is called from inside
``except`` blocks, so it must never raise: any failure to write is logged at
WARNING and swallowed.
"""

from __future__ import annotations

import json
import logging
from typing import Any

import aiosqlite

from researchflow.storage.repository import Clock, dumps, to_iso, utc_now

__all__ = ["record_error_log", "sanitize_payload"]

logger = logging.getLogger(__name__)


def sanitize_payload(payload: Any) -> Any:
    """Round-trip *payload* through JSON so it is safe to store.

    Values that cannot be serialised are replaced by a note describing the
    failure instead of raising.
    """
    if payload is None:
        return None
    try:
        return json.loads(json.dumps(payload, default=str))
    except (TypeError, ValueError) as exc:
        return {"note": "Payload could not be serialised", "error": str(exc)}


async def record_error_log(
    conn: aiosqlite.Connection,
    *,
    context: str,
    message: str,
    run_id: str | None = None,
    ticker: str | None = None,
    stage: int | None = None,
    prompt_id: str | None = None,
    retry_count: int = 0,
    status_code: int | None = None,
    payload: Any = None,
    metadata: dict[str, Any] | None = None,
    clock: Clock | None = None,
) -> None:
    """Append an error-log row.  Never raises.

    Args:
        conn: Open database connection.
        context: Emitting component (``"stage1-consume"``, ``"focus-consume"``…).
        message: Error message.
        retry_count: Retries spent before giving up (clamped to ≥ 0).
        payload: Raw response / validation details; sanitised before storage.
    """
    now = (clock or utc_now)()
    try:
        await conn.execute(
            """
            INSERT INTO error_logs
                (context, message, run_id, ticker, stage, prompt_id, retry_count,
                 status_code, payload, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                context,
                message[:2000],
                run_id,
                ticker,
                stage,
                prompt_id,
                max(0, int(retry_count)),
                status_code,
                dumps(sanitize_payload(payload)),
                dumps(sanitize_payload(metadata)),
                to_iso(now),
            ),
        )
        await conn.commit()
    except Exception:  # noqa: BLE001
        logger.warning("Failed to record error log for %s (%s).", context, ticker, exc_info=True)
