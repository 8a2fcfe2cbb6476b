"""Run-state repository: runs, items, answers, ledger, focus and schedules.

Provides :class:`RunRepository`, the single data-access object for the
pipeline's mutable state.  It owns no connection lifecycle: the caller
supplies an open :class:`aiosqlite.Connection` from
:func:`~researchflow.storage.database.open_db` and closes it when done.

Concurrency discipline
----------------------
Items are claimed with a conditional update
(``UPDATE … SET status = 'in_progress' WHERE … AND status = <expected>``);
a claim that affects zero rows lost the race and the item is skipped.  A
claim older than the configured timeout is considered abandoned and
:meth:`RunRepository.release_stale_claims` returns it to its eligible status.
Every other write is either an append (answers, ledger) or an idempotent
flag/field update, and ``stage`` is only ever raised (``MAX(stage, ?)``).

Typical usage::

    from researchflow.storage.database import open_db
    from researchflow.storage.repository import RunRepository

    async def run() -> None:
        conn = await open_db()
        repo = RunRepository(conn)
        run = await repo.resolve_run(None)          # latest active run
        items = await repo.list_stage_candidates(run.id, StageName.STAGE1, 8)
        for item in items:
            if await repo.claim_item(item):
                ...
        await conn.close()
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Final

import aiosqlite

from researchflow.core.exceptions import RunNotFoundError, StorageError
from researchflow.core.models import (
    CostSummary,
    FocusMetrics,
    FocusRequest,
    FocusStatus,
    FocusTemplate,
    ItemStatus,
    Run,
    RunItem,
    RunSchedule,
    RunStatus,
    Stage1Metrics,
    Stage2Metrics,
    Stage3Metrics,
    StageMetrics,
    StageName,
    TickerProfile,
)

__all__ = [
    "Clock",
    "utc_now",
    "to_iso",
    "dumps",
    "StoredAnswer",
    "RunRepository",
    "ITEM_INSERT_CHUNK",
]

logger = logging.getLogger(__name__)

#: Callable returning the current UTC time; injected for tests.
Clock = Callable[[], datetime]

#: Run items are inserted in batches of this size.
ITEM_INSERT_CHUNK: Final[int] = 1000

_SURVIVOR_SQL = "lower(trim(coalesce(label, ''))) IN ('consider', 'borderline')"

#: Per stage: candidate predicate, and the status a claim expects.
_CANDIDATE_FILTERS: Final[dict[StageName, tuple[str, ItemStatus]]] = {
    StageName.STAGE1: ("status = 'pending' AND stage = 0", ItemStatus.PENDING),
    StageName.STAGE2: (f"status = 'ok' AND stage = 1 AND {_SURVIVOR_SQL}", ItemStatus.OK),
    StageName.STAGE3: ("status = 'ok' AND stage = 2 AND stage2_go_deep = 1", ItemStatus.OK),
}


def utc_now() -> datetime:
    """Default :data:`Clock`."""
    return datetime.now(UTC)


def to_iso(value: datetime) -> str:
    """Fixed-width ISO-8601 UTC string (lexicographically sortable)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def dumps(value: Any) -> str | None:
    """Serialise *value* for a JSON text column (``None`` stays NULL)."""
    if value is None:
        return None
    return json.dumps(value, default=str, ensure_ascii=False)


@dataclass(frozen=True)
class StoredAnswer:
    """Most recent answer row for a (run, ticker, stage[, group])."""

    payload: dict[str, Any] | None
    text: str | None
    question_group: str


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class RunRepository:
    """Data-access object for run state.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
        clock: Source of "now"; defaults to :func:`utc_now`.
    """

    def __init__(self, conn: aiosqlite.Connection, clock: Clock | None = None) -> None:
        self._conn = conn
        self._clock = clock or utc_now

    @property
    def conn(self) -> aiosqlite.Connection:
        return self._conn

    def now(self) -> datetime:
        return self._clock()

    def _now_iso(self) -> str:
        return to_iso(self._clock())

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        cursor = await self._conn.execute(sql, params)
        return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        cursor = await self._conn.execute(sql, params)
        return list(await cursor.fetchall())

    async def _scalar(self, sql: str, params: Sequence[Any] = ()) -> Any:
        row = await self._fetchone(sql, params)
        return row[0] if row is not None else None

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    async def create_run(
        self,
        run_id: str,
        *,
        status: RunStatus = RunStatus.RUNNING,
        notes: dict[str, Any] | None = None,
        budget_usd: float | None = None,
    ) -> Run:
        now = self._now_iso()
        await self._conn.execute(
            """
            INSERT INTO runs (id, status, stop_requested, budget_usd, notes, created_at, updated_at)
            VALUES (?, ?, 0, ?, ?, ?, ?)
            """,
            (run_id, str(status), budget_usd, dumps(notes or {}), now, now),
        )
        await self._conn.commit()
        logger.debug("Inserted run %s (status=%s budget=%s)", run_id, status, budget_usd)
        return await self.resolve_run(run_id)

    async def get_run(self, run_id: str) -> Run | None:
        row = await self._fetchone("SELECT * FROM runs WHERE id = ?", (run_id,))
        return Run.model_validate(dict(row)) if row is not None else None

    async def get_latest_active_run(self) -> Run | None:
        """Most recently created run whose status is running or queued."""
        row = await self._fetchone(
            """
            SELECT * FROM runs
            WHERE status IN ('running', 'queued')
            ORDER BY created_at DESC
            LIMIT 1
            """
        )
        return Run.model_validate(dict(row)) if row is not None else None

    async def resolve_run(self, run_id: str | None) -> Run:
        """Load *run_id*, or the latest active run when it is empty.

        Raises:
            RunNotFoundError: Nothing matched.
        """
        run = await self.get_run(run_id) if run_id else await self.get_latest_active_run()
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    async def set_run_status(self, run_id: str, status: RunStatus) -> None:
        await self._conn.execute(
            "UPDATE runs SET status = ?, updated_at = ? WHERE id = ?",
            (str(status), self._now_iso(), run_id),
        )
        await self._conn.commit()

    async def set_stop_requested(self, run_id: str, stop_requested: bool) -> Run:
        """Set the cooperative stop flag and return the updated run."""
        await self._conn.execute(
            "UPDATE runs SET stop_requested = ?, updated_at = ? WHERE id = ?",
            (1 if stop_requested else 0, self._now_iso(), run_id),
        )
        await self._conn.commit()
        return await self.resolve_run(run_id)

    async def insert_items(self, run_id: str, tickers: Sequence[str]) -> int:
        """Insert pending stage-0 items in chunks of :data:`ITEM_INSERT_CHUNK`.

        Raises:
            StorageError: Any chunk failed; earlier chunks stay committed.
        """
        now = self._now_iso()
        inserted = 0
        for offset in range(0, len(tickers), ITEM_INSERT_CHUNK):
            chunk = tickers[offset : offset + ITEM_INSERT_CHUNK]
            try:
                await self._conn.executemany(
                    """
                    INSERT INTO run_items (run_id, ticker, stage, status, spend_est_usd, updated_at)
                    VALUES (?, ?, 0, 'pending', 0, ?)
                    """,
                    [(run_id, ticker, now) for ticker in chunk],
                )
                await self._conn.commit()
            except aiosqlite.Error as exc:
                raise StorageError(f"Failed to queue run items: {exc}") from exc
            inserted += len(chunk)
        return inserted

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    async def get_item(self, run_id: str, ticker: str) -> RunItem | None:
        row = await self._fetchone(
            "SELECT * FROM run_items WHERE run_id = ? AND ticker = ?", (run_id, ticker)
        )
        return RunItem.model_validate(dict(row)) if row is not None else None

    async def list_items(self, run_id: str) -> list[RunItem]:
        rows = await self._fetchall(
            "SELECT * FROM run_items WHERE run_id = ? ORDER BY ticker", (run_id,)
        )
        return [RunItem.model_validate(dict(row)) for row in rows]

    async def list_stage_candidates(
        self, run_id: str, stage: StageName, limit: int
    ) -> list[RunItem]:
        """Eligible items for *stage*, oldest ``updated_at`` first."""
        predicate, _ = _CANDIDATE_FILTERS[stage]
        rows = await self._fetchall(
            f"""
            SELECT * FROM run_items
            WHERE run_id = ? AND {predicate}
            ORDER BY updated_at ASC, ticker ASC
            LIMIT ?
            """,
            (run_id, limit),
        )
        return [RunItem.model_validate(dict(row)) for row in rows]

    async def claim_item(self, item: RunItem, stage: StageName) -> bool:
        """Atomically move *item* to ``in_progress``.

        Returns:
            ``False`` when another invocation changed the row first.
        """
        _, expected = _CANDIDATE_FILTERS[stage]
        now = self._now_iso()
        cursor = await self._conn.execute(
            """
            UPDATE run_items
            SET status = 'in_progress', claimed_at = ?, updated_at = ?
            WHERE run_id = ? AND ticker = ? AND stage = ? AND status = ?
            """,
            (now, now, item.run_id, item.ticker, item.stage, str(expected)),
        )
        await self._conn.commit()
        return cursor.rowcount == 1

    async def update_item(
        self,
        run_id: str,
        ticker: str,
        *,
        stage: int,
        status: ItemStatus,
        label: str | None = None,
        go_deep: bool | None = None,
        set_go_deep: bool = False,
        add_spend: float = 0.0,
    ) -> None:
        """Record a terminal per-stage outcome for an item.

        ``stage`` never decreases.  ``label`` is only written when given;
        ``stage2_go_deep`` only when *set_go_deep* is true (so it can be
        cleared to NULL explicitly).
        """
        assignments = [
            "stage = MAX(stage, ?)",
            "status = ?",
            "spend_est_usd = spend_est_usd + ?",
            "claimed_at = NULL",
            "updated_at = ?",
        ]
        params: list[Any] = [stage, str(status), add_spend, self._now_iso()]
        if label is not None:
            assignments.append("label = ?")
            params.append(label)
        if set_go_deep:
            assignments.append("stage2_go_deep = ?")
            params.append(None if go_deep is None else int(go_deep))
        params.extend([run_id, ticker])
        await self._conn.execute(
            f"UPDATE run_items SET {', '.join(assignments)} WHERE run_id = ? AND ticker = ?",
            params,
        )
        await self._conn.commit()

    async def release_stale_claims(self, run_id: str, older_than: datetime) -> int:
        """Return abandoned ``in_progress`` claims to their eligible status.

        Items go back to ``pending`` at stage 0 and ``ok`` otherwise; focus
        requests go back to ``pending``.

        Returns:
            Number of rows released.
        """
        cutoff = to_iso(older_than)
        now = self._now_iso()
        items = await self._conn.execute(
            """
            UPDATE run_items
            SET status = CASE WHEN stage = 0 THEN 'pending' ELSE 'ok' END,
                claimed_at = NULL, updated_at = ?
            WHERE run_id = ? AND status = 'in_progress'
              AND (claimed_at IS NULL OR claimed_at < ?)
            """,
            (now, run_id, cutoff),
        )
        focus = await self._conn.execute(
            """
            UPDATE focus_question_requests
            SET status = 'pending', claimed_at = NULL
            WHERE run_id = ? AND status = 'in_progress'
              AND (claimed_at IS NULL OR claimed_at < ?)
            """,
            (run_id, cutoff),
        )
        await self._conn.commit()
        return max(items.rowcount, 0) + max(focus.rowcount, 0)

    # ------------------------------------------------------------------
    # Answers & ledger
    # ------------------------------------------------------------------

    async def insert_answer(
        self,
        *,
        run_id: str,
        ticker: str,
        stage: int,
        question_group: str,
        answer: dict[str, Any] | None,
        answer_text: str | None,
        tokens_in: int = 0,
        tokens_out: int = 0,
        cost_usd: float = 0.0,
        cache_hit: bool = False,
    ) -> None:
        await self._conn.execute(
            """
            INSERT INTO answers
                (run_id, ticker, stage, question_group, answer_json, answer_text,
                 tokens_in, tokens_out, cost_usd, cache_hit, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                run_id,
                ticker,
                stage,
                question_group,
                dumps(answer),
                answer_text,
                tokens_in,
                tokens_out,
                cost_usd,
                int(cache_hit),
                self._now_iso(),
            ),
        )
        await self._conn.commit()

    async def latest_answer(
        self,
        run_id: str,
        ticker: str,
        stage: int,
        question_group: str | None = None,
    ) -> StoredAnswer | None:
        sql = "SELECT * FROM answers WHERE run_id = ? AND ticker = ? AND stage = ?"
        params: list[Any] = [run_id, ticker, stage]
        if question_group is not None:
            sql += " AND question_group = ?"
            params.append(question_group)
        sql += " ORDER BY created_at DESC, id DESC LIMIT 1"
        row = await self._fetchone(sql, params)
        if row is None:
            return None
        payload = json.loads(row["answer_json"]) if row["answer_json"] else None
        return StoredAnswer(
            payload=payload if isinstance(payload, dict) else None,
            text=row["answer_text"],
            question_group=row["question_group"],
        )

    async def list_answers(self, run_id: str, ticker: str | None = None) -> list[dict[str, Any]]:
        sql = "SELECT * FROM answers WHERE run_id = ?"
        params: list[Any] = [run_id]
        if ticker is not None:
            sql += " AND ticker = ?"
            params.append(ticker)
        rows = await self._fetchall(sql + " ORDER BY id", params)
        return [dict(row) for row in rows]

    async def append_ledger(
        self,
        *,
        run_id: str,
        stage: int,
        model: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float,
    ) -> None:
        await self._conn.execute(
            """
            INSERT INTO cost_ledger (run_id, stage, model, tokens_in, tokens_out, cost_usd, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (run_id, stage, model, tokens_in, tokens_out, cost_usd, self._now_iso()),
        )
        await self._conn.commit()

    async def list_ledger(self, run_id: str) -> list[dict[str, Any]]:
        rows = await self._fetchall(
            "SELECT * FROM cost_ledger WHERE run_id = ? ORDER BY id", (run_id,)
        )
        return [dict(row) for row in rows]

    async def cost_summary(self, run_id: str) -> CostSummary:
        row = await self._fetchone(
            """
            SELECT COALESCE(SUM(cost_usd), 0)   AS total_cost,
                   COALESCE(SUM(tokens_in), 0)  AS total_tokens_in,
                   COALESCE(SUM(tokens_out), 0) AS total_tokens_out
            FROM cost_ledger WHERE run_id = ?
            """,
            (run_id,),
        )
        return CostSummary.model_validate(dict(row)) if row is not None else CostSummary()

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    async def stage1_metrics(self, run_id: str) -> Stage1Metrics:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(status = 'pending' AND stage = 0), 0) AS pending,
                   COALESCE(SUM(status = 'ok' AND stage >= 1), 0)     AS completed,
                   COALESCE(SUM(status = 'failed'), 0)                AS failed
            FROM run_items WHERE run_id = ?
            """,
            (run_id,),
        )
        return Stage1Metrics.model_validate(dict(row)) if row else Stage1Metrics()

    async def stage2_metrics(self, run_id: str) -> Stage2Metrics:
        row = await self._fetchone(
            f"""
            SELECT COALESCE(SUM(stage >= 1 AND {_SURVIVOR_SQL}), 0)                 AS total_survivors,
                   COALESCE(SUM(status = 'ok' AND stage = 1 AND {_SURVIVOR_SQL}), 0) AS pending,
                   COALESCE(SUM(status = 'ok' AND stage >= 2), 0)                   AS completed,
                   COALESCE(SUM(status = 'failed' AND stage = 2), 0)                AS failed,
                   COALESCE(SUM(stage >= 2 AND stage2_go_deep = 1), 0)              AS go_deep
            FROM run_items WHERE run_id = ?
            """,
            (run_id,),
        )
        return Stage2Metrics.model_validate(dict(row)) if row else Stage2Metrics()

    async def stage3_metrics(self, run_id: str) -> Stage3Metrics:
        row = await self._fetchone(
            """
            SELECT COALESCE(SUM(stage2_go_deep = 1), 0)                              AS total_finalists,
                   COALESCE(SUM(status = 'ok' AND stage = 2 AND stage2_go_deep = 1), 0) AS pending,
                   COALESCE(SUM(status = 'ok' AND stage = 3), 0)                     AS completed,
                   COALESCE(SUM(status = 'failed' AND stage = 3), 0)                 AS failed
            FROM run_items WHERE run_id = ?
            """,
            (run_id,),
        )
        spend = await self._scalar(
            "SELECT COALESCE(SUM(cost_usd), 0) FROM cost_ledger WHERE run_id = ? AND stage = 3",
            (run_id,),
        )
        data = dict(row) if row else {}
        data["spend"] = float(spend or 0.0)
        return Stage3Metrics.model_validate(data)

    async def focus_metrics(self, run_id: str) -> FocusMetrics:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS total_requests,
                   COALESCE(SUM(status IN ('pending', 'queued')), 0) AS pending,
                   COALESCE(SUM(status = 'answered'), 0)             AS completed,
                   COALESCE(SUM(status = 'failed'), 0)               AS failed
            FROM focus_question_requests WHERE run_id = ?
            """,
            (run_id,),
        )
        return FocusMetrics.model_validate(dict(row)) if row else FocusMetrics()

    async def metrics_for(self, run_id: str, stage: StageName) -> StageMetrics:
        if stage is StageName.STAGE1:
            return await self.stage1_metrics(run_id)
        if stage is StageName.STAGE2:
            return await self.stage2_metrics(run_id)
        if stage is StageName.STAGE3:
            return await self.stage3_metrics(run_id)
        return await self.focus_metrics(run_id)

    # ------------------------------------------------------------------
    # Reference data
    # ------------------------------------------------------------------

    async def get_ticker(self, ticker: str) -> TickerProfile | None:
        row = await self._fetchone("SELECT * FROM tickers WHERE ticker = ?", (ticker,))
        return TickerProfile.model_validate(dict(row)) if row is not None else None

    async def upsert_tickers(self, profiles: Iterable[TickerProfile]) -> int:
        now = self._now_iso()
        rows = [
            (p.ticker, p.name, p.exchange, p.country, p.sector, p.industry, now)
            for p in profiles
        ]
        if not rows:
            return 0
        await self._conn.executemany(
            """
            INSERT INTO tickers (ticker, name, exchange, country, sector, industry, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (ticker) DO UPDATE SET
                name = excluded.name, exchange = excluded.exchange,
                country = excluded.country, sector = excluded.sector,
                industry = excluded.industry, updated_at = excluded.updated_at
            """,
            rows,
        )
        await self._conn.commit()
        return len(rows)

    async def list_recent_tickers(self, limit: int) -> list[str]:
        rows = await self._fetchall(
            "SELECT ticker FROM tickers ORDER BY updated_at DESC, ticker ASC LIMIT ?",
            (limit,),
        )
        return [row["ticker"] for row in rows]

    async def get_sector_notes(self, sector: str | None) -> str | None:
        if not sector:
            return None
        notes = await self._scalar("SELECT notes FROM sector_prompts WHERE sector = ?", (sector,))
        return notes.strip() if isinstance(notes, str) and notes.strip() else None

    async def set_sector_notes(self, sector: str, notes: str) -> None:
        await self._conn.execute(
            """
            INSERT INTO sector_prompts (sector, notes) VALUES (?, ?)
            ON CONFLICT (sector) DO UPDATE SET notes = excluded.notes
            """,
            (sector, notes),
        )
        await self._conn.commit()

    async def add_doc_chunk(self, ticker: str, chunk: str, source: str | None = None) -> None:
        await self._conn.execute(
            "INSERT INTO doc_chunks (ticker, source, chunk) VALUES (?, ?, ?)",
            (ticker, source, chunk),
        )
        await self._conn.commit()

    async def latest_doc_chunks(self, ticker: str, limit: int = 6) -> list[tuple[str | None, str]]:
        rows = await self._fetchall(
            "SELECT source, chunk FROM doc_chunks WHERE ticker = ? ORDER BY id DESC LIMIT ?",
            (ticker, limit),
        )
        return [(row["source"], row["chunk"] or "") for row in rows]

    # ------------------------------------------------------------------
    # Focus questions
    # ------------------------------------------------------------------

    async def upsert_focus_template(
        self,
        slug: str,
        question: str,
        *,
        label: str | None = None,
        user_template: str | None = None,
    ) -> FocusTemplate:
        await self._conn.execute(
            """
            INSERT INTO focus_question_templates (slug, label, question, user_template)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (slug) DO UPDATE SET
                label = excluded.label, question = excluded.question,
                user_template = excluded.user_template
            """,
            (slug, label, question, user_template),
        )
        await self._conn.commit()
        templates = await self.get_focus_templates([slug])
        return templates[slug]

    async def get_focus_templates(self, slugs: Sequence[str]) -> dict[str, FocusTemplate]:
        if not slugs:
            return {}
        placeholders = ",".join("?" * len(slugs))
        rows = await self._fetchall(
            f"SELECT * FROM focus_question_templates WHERE slug IN ({placeholders})",
            list(slugs),
        )
        return {row["slug"]: FocusTemplate.model_validate(dict(row)) for row in rows}

    async def open_focus_keys(self, run_id: str) -> set[tuple[str, str, int | None]]:
        """``(ticker, question, template_id)`` of requests still awaiting work."""
        rows = await self._fetchall(
            """
            SELECT ticker, question, template_id FROM focus_question_requests
            WHERE run_id = ? AND status IN ('pending', 'queued', 'in_progress')
            """,
            (run_id,),
        )
        return {(row["ticker"], row["question"], row["template_id"]) for row in rows}

    async def insert_focus_requests(
        self,
        run_id: str,
        requests: Sequence[tuple[str, str, int | None, dict[str, Any]]],
    ) -> int:
        """Insert ``(ticker, question, template_id, metadata)`` rows as pending."""
        if not requests:
            return 0
        now = self._now_iso()
        await self._conn.executemany(
            """
            INSERT INTO focus_question_requests
                (run_id, ticker, question, template_id, status, metadata, created_at)
            VALUES (?, ?, ?, ?, 'pending', ?, ?)
            """,
            [(run_id, t, q, tid, dumps(meta), now) for t, q, tid, meta in requests],
        )
        await self._conn.commit()
        return len(requests)

    async def get_focus_request(self, request_id: int) -> FocusRequest | None:
        row = await self._fetchone(
            f"{_FOCUS_SELECT} WHERE r.id = ?",
            (request_id,),
        )
        return FocusRequest.model_validate(dict(row)) if row is not None else None

    async def list_focus_candidates(self, run_id: str, limit: int) -> list[FocusRequest]:
        rows = await self._fetchall(
            f"""
            {_FOCUS_SELECT}
            WHERE r.run_id = ? AND r.status IN ('pending', 'queued')
            ORDER BY r.created_at ASC, r.id ASC
            LIMIT ?
            """,
            (run_id, limit),
        )
        return [FocusRequest.model_validate(dict(row)) for row in rows]

    async def claim_focus_request(self, request: FocusRequest) -> bool:
        cursor = await self._conn.execute(
            """
            UPDATE focus_question_requests
            SET status = 'in_progress', claimed_at = ?
            WHERE id = ? AND status IN ('pending', 'queued')
            """,
            (self._now_iso(), request.id),
        )
        await self._conn.commit()
        return cursor.rowcount == 1

    async def answer_focus_request(
        self,
        request_id: int,
        *,
        answer: dict[str, Any],
        answer_text: str,
        tokens_in: int,
        tokens_out: int,
        cost_usd: float,
        cache_hit: bool,
    ) -> None:
        await self._conn.execute(
            """
            UPDATE focus_question_requests
            SET status = ?, answer = ?, answer_text = ?, tokens_in = ?, tokens_out = ?,
                cost_usd = ?, cache_hit = ?, claimed_at = NULL, answered_at = ?
            WHERE id = ?
            """,
            (
                str(FocusStatus.ANSWERED),
                dumps(answer),
                answer_text,
                tokens_in,
                tokens_out,
                cost_usd,
                int(cache_hit),
                self._now_iso(),
                request_id,
            ),
        )
        await self._conn.commit()

    async def fail_focus_request(self, request_id: int, metadata: dict[str, Any]) -> None:
        await self._conn.execute(
            """
            UPDATE focus_question_requests
            SET status = ?, metadata = ?, claimed_at = NULL
            WHERE id = ?
            """,
            (str(FocusStatus.FAILED), dumps(metadata), request_id),
        )
        await self._conn.commit()

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    async def upsert_schedule(
        self,
        run_id: str,
        *,
        cadence_seconds: int,
        stage1_limit: int,
        stage2_limit: int,
        stage3_limit: int,
        max_cycles: int,
        active: bool,
        label: str | None,
        reset_last_trigger: bool = False,
    ) -> RunSchedule:
        now = self._now_iso()
        reset_clause = ", last_triggered_at = NULL" if reset_last_trigger else ""
        await self._conn.execute(
            f"""
            INSERT INTO run_schedules
                (run_id, cadence_seconds, stage1_limit, stage2_limit, stage3_limit,
                 max_cycles, active, label, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (run_id) DO UPDATE SET
                cadence_seconds = excluded.cadence_seconds,
                stage1_limit = excluded.stage1_limit,
                stage2_limit = excluded.stage2_limit,
                stage3_limit = excluded.stage3_limit,
                max_cycles = excluded.max_cycles,
                active = excluded.active,
                label = excluded.label,
                updated_at = excluded.updated_at{reset_clause}
            """,
            (
                run_id,
                cadence_seconds,
                stage1_limit,
                stage2_limit,
                stage3_limit,
                max_cycles,
                int(active),
                label,
                now,
                now,
            ),
        )
        await self._conn.commit()
        schedule = await self.get_schedule(run_id)
        if schedule is None:  # pragma: no cover
            raise StorageError(f"Schedule for run {run_id!r} vanished after upsert")
        return schedule

    async def get_schedule(self, run_id: str) -> RunSchedule | None:
        row = await self._fetchone(f"{_SCHEDULE_SELECT} WHERE s.run_id = ?", (run_id,))
        return RunSchedule.model_validate(dict(row)) if row is not None else None

    async def list_active_schedules(self) -> list[RunSchedule]:
        rows = await self._fetchall(f"{_SCHEDULE_SELECT} WHERE s.active = 1 ORDER BY s.id")
        return [RunSchedule.model_validate(dict(row)) for row in rows]

    async def mark_schedule_triggered(self, schedule_id: int, when: datetime) -> None:
        await self._conn.execute(
            "UPDATE run_schedules SET last_triggered_at = ?, updated_at = ? WHERE id = ?",
            (to_iso(when), self._now_iso(), schedule_id),
        )
        await self._conn.commit()


_FOCUS_SELECT = """
SELECT r.*, t.slug AS template_slug, t.user_template AS template_user_template
FROM focus_question_requests AS r
LEFT JOIN focus_question_templates AS t ON t.id = r.template_id
"""

_SCHEDULE_SELECT = """
SELECT s.*, runs.status AS run_status, runs.stop_requested AS run_stop_requested
FROM run_schedules AS s
LEFT JOIN runs ON runs.id = s.run_id
"""
