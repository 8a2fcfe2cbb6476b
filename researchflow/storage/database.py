"""SQLite database initialisation for Researchflow.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring PRAGMA settings (WAL journal mode, foreign keys, busy timeout).
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS`` /
  ``CREATE INDEX IF NOT EXISTS``.  Safe to call on every startup.

Consumers call :func:`open_db` once per invocation and share the returned
connection with :class:`~researchflow.storage.repository.RunRepository`,
:class:`~researchflow.storage.cache.CompletionCache` and the error-log
writer.

Timestamps are stored as ISO-8601 UTC strings produced by the application
(never by SQLite defaults) so that tests can inject a clock.

Typical usage::

    from researchflow.storage.database import open_db

    async def main() -> None:
        conn = await open_db(Path("data/researchflow.db"))
        ...
        await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

__all__ = [
    "DEFAULT_DB_PATH",
    "MEMORY_DB",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("researchflow.db")

#: Sentinel path for an in-memory database (tests, dry runs).
MEMORY_DB: str = ":memory:"

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_DDL_RUNS = """\
CREATE TABLE IF NOT EXISTS runs (
    id              TEXT     NOT NULL PRIMARY KEY,
    status          TEXT     NOT NULL DEFAULT 'queued',
    stop_requested  INTEGER  NOT NULL DEFAULT 0,
    budget_usd      REAL,
    notes           TEXT,
    created_at      TEXT     NOT NULL,
    updated_at      TEXT     NOT NULL
)"""

#: ``stage`` only ever increases; ``status = 'in_progress'`` marks a claim.
_DDL_RUN_ITEMS = """\
CREATE TABLE IF NOT EXISTS run_items (
    run_id          TEXT     NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    ticker          TEXT     NOT NULL,
    stage           INTEGER  NOT NULL DEFAULT 0,
    status          TEXT     NOT NULL DEFAULT 'pending',
    label           TEXT,
    stage2_go_deep  INTEGER,
    spend_est_usd   REAL     NOT NULL DEFAULT 0,
    claimed_at      TEXT,
    updated_at      TEXT     NOT NULL,
    PRIMARY KEY (run_id, ticker)
)"""

_DDL_TICKERS = """\
CREATE TABLE IF NOT EXISTS tickers (
    ticker      TEXT  NOT NULL PRIMARY KEY,
    name        TEXT,
    exchange    TEXT,
    country     TEXT,
    sector      TEXT,
    industry    TEXT,
    updated_at  TEXT  NOT NULL
)"""

_DDL_SECTOR_PROMPTS = """\
CREATE TABLE IF NOT EXISTS sector_prompts (
    sector  TEXT  NOT NULL PRIMARY KEY,
    notes   TEXT
)"""

_DDL_DOC_CHUNKS = """\
CREATE TABLE IF NOT EXISTS doc_chunks (
    id      INTEGER  PRIMARY KEY AUTOINCREMENT,
    ticker  TEXT     NOT NULL,
    source  TEXT,
    chunk   TEXT     NOT NULL
)"""

_DDL_ANSWERS = """\
CREATE TABLE IF NOT EXISTS answers (
    id              INTEGER  PRIMARY KEY AUTOINCREMENT,
    run_id          TEXT     NOT NULL,
    ticker          TEXT     NOT NULL,
    stage           INTEGER  NOT NULL,
    question_group  TEXT     NOT NULL,
    answer_json     TEXT,
    answer_text     TEXT,
    tokens_in       INTEGER  NOT NULL DEFAULT 0,
    tokens_out      INTEGER  NOT NULL DEFAULT 0,
    cost_usd        REAL     NOT NULL DEFAULT 0,
    cache_hit       INTEGER  NOT NULL DEFAULT 0,
    created_at      TEXT     NOT NULL
)"""

_DDL_COST_LEDGER = """\
CREATE TABLE IF NOT EXISTS cost_ledger (
    id          INTEGER  PRIMARY KEY AUTOINCREMENT,
    run_id      TEXT     NOT NULL,
    stage       INTEGER  NOT NULL,
    model       TEXT     NOT NULL,
    tokens_in   INTEGER  NOT NULL DEFAULT 0,
    tokens_out  INTEGER  NOT NULL DEFAULT 0,
    cost_usd    REAL     NOT NULL DEFAULT 0,
    created_at  TEXT     NOT NULL
)"""

_DDL_CACHED_COMPLETIONS = """\
CREATE TABLE IF NOT EXISTS cached_completions (
    id             INTEGER  PRIMARY KEY AUTOINCREMENT,
    model_slug     TEXT     NOT NULL,
    cache_key      TEXT     NOT NULL,
    prompt_hash    TEXT     NOT NULL,
    request_body   TEXT,
    response_body  TEXT,
    usage          TEXT,
    context        TEXT,
    hit_count      INTEGER  NOT NULL DEFAULT 0,
    last_hit_at    TEXT,
    created_at     TEXT     NOT NULL,
    expires_at     TEXT,
    UNIQUE (model_slug, cache_key)
)"""

_DDL_FOCUS_TEMPLATES = """\
CREATE TABLE IF NOT EXISTS focus_question_templates (
    id             INTEGER  PRIMARY KEY AUTOINCREMENT,
    slug           TEXT     NOT NULL UNIQUE,
    label          TEXT,
    question       TEXT     NOT NULL,
    user_template  TEXT
)"""

_DDL_FOCUS_REQUESTS = """\
CREATE TABLE IF NOT EXISTS focus_question_requests (
    id           INTEGER  PRIMARY KEY AUTOINCREMENT,
    run_id       TEXT     NOT NULL REFERENCES runs(id) ON DELETE CASCADE,
    ticker       TEXT     NOT NULL,
    question     TEXT     NOT NULL,
    template_id  INTEGER  REFERENCES focus_question_templates(id),
    status       TEXT     NOT NULL DEFAULT 'pending',
    answer       TEXT,
    answer_text  TEXT,
    cache_hit    INTEGER  NOT NULL DEFAULT 0,
    tokens_in    INTEGER  NOT NULL DEFAULT 0,
    tokens_out   INTEGER  NOT NULL DEFAULT 0,
    cost_usd     REAL     NOT NULL DEFAULT 0,
    metadata     TEXT,
    claimed_at   TEXT,
    created_at   TEXT     NOT NULL,
    answered_at  TEXT
)"""

_DDL_RUN_SCHEDULES = """\
CREATE TABLE IF NOT EXISTS run_schedules (
    id                 INTEGER  PRIMARY KEY AUTOINCREMENT,
    run_id             TEXT     NOT NULL UNIQUE REFERENCES runs(id) ON DELETE CASCADE,
    cadence_seconds    INTEGER  NOT NULL DEFAULT 3600,
    stage1_limit       INTEGER  NOT NULL DEFAULT 8,
    stage2_limit       INTEGER  NOT NULL DEFAULT 4,
    stage3_limit       INTEGER  NOT NULL DEFAULT 2,
    max_cycles         INTEGER  NOT NULL DEFAULT 1,
    active             INTEGER  NOT NULL DEFAULT 1,
    label              TEXT,
    last_triggered_at  TEXT,
    created_at         TEXT     NOT NULL,
    updated_at         TEXT     NOT NULL
)"""

_DDL_ERROR_LOGS = """\
CREATE TABLE IF NOT EXISTS error_logs (
    id           INTEGER  PRIMARY KEY AUTOINCREMENT,
    context      TEXT     NOT NULL,
    message      TEXT     NOT NULL,
    run_id       TEXT,
    ticker       TEXT,
    stage        INTEGER,
    prompt_id    TEXT,
    retry_count  INTEGER  NOT NULL DEFAULT 0,
    status_code  INTEGER,
    payload      TEXT,
    metadata     TEXT,
    created_at   TEXT     NOT NULL
)"""

_DDL_INDEXES: tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_run_items_claim "
    "ON run_items (run_id, stage, status, updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_answers_lookup "
    "ON answers (run_id, ticker, stage, question_group, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_cost_ledger_run ON cost_ledger (run_id, stage)",
    "CREATE INDEX IF NOT EXISTS idx_focus_requests_run "
    "ON focus_question_requests (run_id, status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_doc_chunks_ticker ON doc_chunks (ticker, id)",
)

_ALL_TABLES: tuple[str, ...] = (
    _DDL_RUNS,
    _DDL_RUN_ITEMS,
    _DDL_TICKERS,
    _DDL_SECTOR_PROMPTS,
    _DDL_DOC_CHUNKS,
    _DDL_ANSWERS,
    _DDL_COST_LEDGER,
    _DDL_CACHED_COMPLETIONS,
    _DDL_FOCUS_TEMPLATES,
    _DDL_FOCUS_REQUESTS,
    _DDL_RUN_SCHEDULES,
    _DDL_ERROR_LOGS,
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and bootstrap the schema.

    Args:
        path: Filesystem path for the SQLite file, or :data:`MEMORY_DB`.
            Defaults to :data:`DEFAULT_DB_PATH`.

    Returns:
        An open :class:`aiosqlite.Connection` with ``row_factory`` set to
        :class:`aiosqlite.Row`.  The caller is responsible for closing it.

    Raises:
        aiosqlite.OperationalError: If the file cannot be opened or created.
    """
    target: Path | str = path or DEFAULT_DB_PATH
    if target != MEMORY_DB:
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", target)

    conn: aiosqlite.Connection = await aiosqlite.connect(target)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn, in_memory=target == MEMORY_DB)
    await create_schema(conn)

    logger.info("SQLite database ready at %s (schema verified)", target)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all tables and indexes if they do not already exist."""
    for ddl in _ALL_TABLES:
        await conn.execute(ddl)
    for ddl in _DDL_INDEXES:
        await conn.execute(ddl)
    await conn.commit()
    logger.debug("Schema bootstrap complete (%d tables verified)", len(_ALL_TABLES))


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection, *, in_memory: bool) -> None:
    """Apply PRAGMA settings that must be set right after opening.

    WAL is requested for file databases only; SQLite reports ``memory`` for
    in-memory connections regardless.
    """
    if not in_memory:
        cursor = await conn.execute("PRAGMA journal_mode=WAL")
        row = await cursor.fetchone()
        mode = row[0] if row else "unknown"
        if mode != "wal":
            logger.warning("Requested WAL journal mode but SQLite reported: %r.", mode)
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
