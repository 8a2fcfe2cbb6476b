"""Researchflow logging configuration.

Call ``configure_logging()`` once at process startup (the CLI does this
before anything else).  Every other module defines its own logger at module
scope:

    import logging
    logger = logging.getLogger(__name__)

Two async-safe correlation values are attached to every record:

* ``cycle_id``: short hex id of the current invocation (one stage consume,
  one continue call, one dispatch pass).
* ``run_id``: the research run being advanced, once it is resolved.

Environment fallbacks, read when the matching argument is omitted:
    LOG_LEVEL   DEBUG | INFO | WARNING | ERROR | CRITICAL   (default: INFO)
    LOG_FORMAT  text | json                                 (default: text)
"""

from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, Final
from uuid import uuid4

__all__ = [
    "configure_logging",
    "JsonFormatter",
    "CYCLE_ID_CTX",
    "RUN_ID_CTX",
    "CycleContextFilter",
    "invocation_context",
]

# ---------------------------------------------------------------------------
# Invocation-scoped context variables
# ---------------------------------------------------------------------------

#: Correlation id of the current invocation.  Set by
#: :func:`invocation_context`; ``"-"`` outside of any invocation.
CYCLE_ID_CTX: ContextVar[str] = ContextVar("cycle_id", default="-")

#: Run id being advanced by the current invocation, ``"-"`` when unknown.
RUN_ID_CTX: ContextVar[str] = ContextVar("run_id", default="-")

logger = logging.getLogger(__name__)

_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
_FORMATS: Final[tuple[str, ...]] = ("text", "json")

#: Third-party loggers held at WARNING unless the process runs at DEBUG.
_QUIET_LOGGERS: Final[tuple[str, ...]] = ("httpx", "httpcore", "asyncio", "aiosqlite")

_TEXT_FORMAT: Final[str] = (
    "%(asctime)s %(levelname)-8s [%(cycle_id)s run=%(run_id)s] %(name)s: %(message)s"
)
_TEXT_DATEFMT: Final[str] = "%Y-%m-%d %H:%M:%S"


@contextmanager
def invocation_context(run_id: str | None = None) -> Iterator[str]:
    """Bind a fresh invocation id (and optionally a run id) for a block.

    Nested invocations (the orchestrator calling stage consumers) keep the
    outer id so all records of one continue call group together.

    Args:
        run_id: Run id to bind, if already known.

    Yields:
        The active invocation id.
    """
    current = CYCLE_ID_CTX.get()
    cycle_token = None
    if current == "-":
        current = uuid4().hex[:8]
        cycle_token = CYCLE_ID_CTX.set(current)
    run_token = RUN_ID_CTX.set(run_id) if run_id else None
    try:
        yield current
    finally:
        if run_token is not None:
            RUN_ID_CTX.reset(run_token)
        if cycle_token is not None:
            CYCLE_ID_CTX.reset(cycle_token)


class CycleContextFilter(logging.Filter):
    """Stamp ``cycle_id`` and ``run_id`` onto each record.

    Attached to the handler rather than a logger, so records propagated from
    any ``researchflow.*`` logger are annotated just before formatting.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # noqa: A003
        record.cycle_id = CYCLE_ID_CTX.get("-")
        record.run_id = RUN_ID_CTX.get("-")
        return True


# ---------------------------------------------------------------------------
# Root configuration
# ---------------------------------------------------------------------------


def _choose(value: str | None, env_var: str, default: str, allowed: tuple[str, ...]) -> str:
    raw = value or os.environ.get(env_var) or default
    chosen = raw.upper() if raw.upper() in allowed else raw.lower()
    if chosen not in allowed:
        raise ValueError(f"Unknown {env_var} {chosen!r}. Must be one of: {', '.join(allowed)}")
    return chosen


def _build_handler(fmt: str, level: str) -> logging.Handler:
    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    handler.addFilter(CycleContextFilter())
    formatter = (
        JsonFormatter()
        if fmt == "json"
        else logging.Formatter(fmt=_TEXT_FORMAT, datefmt=_TEXT_DATEFMT)
    )
    handler.setFormatter(formatter)
    return handler


def configure_logging(
    level: str | None = None,
    fmt: str | None = None,
    *,
    force: bool = False,
) -> None:
    """Install the stderr handler on the root logger.

    When the root logger already has handlers and *force* is false only the
    level is adjusted, so embedding applications keep their own setup.

    Args:
        level: Level name.  Falls back to ``$LOG_LEVEL``, then ``"INFO"``.
        fmt: ``"text"`` or ``"json"``.  Falls back to ``$LOG_FORMAT``, then
            ``"text"``.
        force: Replace any handlers already installed.

    Raises:
        ValueError: Unrecognised level or format.
    """
    resolved_level = _choose(level, "LOG_LEVEL", "INFO", _LEVELS)
    resolved_fmt = _choose(fmt, "LOG_FORMAT", "text", _FORMATS)

    root = logging.getLogger()
    root.setLevel(resolved_level)
    if root.handlers and not force:
        return

    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(_build_handler(resolved_fmt, resolved_level))

    if resolved_level != "DEBUG":
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


# ---------------------------------------------------------------------------
# JSON formatter
# ---------------------------------------------------------------------------

#: Attributes every ``LogRecord`` carries; anything else came from ``extra``
#: or a filter and is reported under ``"extra"``.
_STANDARD_ATTRS: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON document per record, for log shippers.

    Shape::

        {"ts": "2026-03-02T09:30:00.123Z", "level": "INFO",
         "logger": "researchflow.stages.triage",
         "message": "stage1: processed 8 ticker(s)",
         "extra": {"event": "STAGE_COMPLETE", "cycle_id": "a3f2b1c0", "run_id": "..."}}

    ``exc_info`` and ``stack_info`` keys appear only when the record has them.
    Values that are not JSON-serialisable are rendered with ``str()``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: A003
        stamp = datetime.fromtimestamp(record.created, tz=UTC)
        payload: dict[str, Any] = {
            "ts": stamp.strftime("%Y-%m-%dT%H:%M:%S.") + f"{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "extra": {
                key: value
                for key, value in vars(record).items()
                if key not in _STANDARD_ATTRS
            },
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        elif record.exc_text:
            payload["exc_info"] = record.exc_text
        if record.stack_info:
            payload["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(payload, default=str)
