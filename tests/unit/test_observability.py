"""Unit tests for structured logging: event names and correlation ids.

Coverage
--------
* :func:`~researchflow.core.logging_config.configure_logging`: validation,
  handler installation, ``force`` semantics.
* :class:`~researchflow.core.logging_config.JsonFormatter`: output shape.
* :class:`~researchflow.core.logging_config.CycleContextFilter` and
  :func:`~researchflow.core.logging_config.invocation_context`: defaults,
  nesting, restoration, propagation into child tasks.
* Event annotations: a continue call tags its records with ``extra["event"]``
  and every record of the call shares one cycle id.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import sys

import pytest

from researchflow.core import configure_logging, events
from researchflow.core.auth import Capabilities
from researchflow.core.logging_config import (
    CYCLE_ID_CTX,
    RUN_ID_CTX,
    CycleContextFilter,
    JsonFormatter,
    invocation_context,
)
from researchflow.orchestrator.cycle import CycleOrchestrator


class _ListHandler(logging.Handler):
    """Collects records after the correlation filter has run."""

    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []
        self.addFilter(CycleContextFilter())

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


def _record(msg: str = "hello", **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("researchflow.test", logging.INFO, __file__, 1, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


# ---------------------------------------------------------------------------
# configure_logging
# ---------------------------------------------------------------------------


class TestConfigureLogging:
    @pytest.mark.parametrize(("level", "fmt"), [("LOUD", "text"), ("INFO", "yaml")])
    def test_rejects_unknown_values(self, level: str, fmt: str) -> None:
        with pytest.raises(ValueError, match="Unknown LOG_"):
            configure_logging(level=level, fmt=fmt, force=True)

    def test_json_handler_installed(self) -> None:
        configure_logging(level="warning", fmt="JSON", force=True)
        root = logging.getLogger()
        (handler,) = [h for h in root.handlers if isinstance(h.formatter, JsonFormatter)]
        assert any(isinstance(f, CycleContextFilter) for f in handler.filters)
        assert root.level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING

    def test_without_force_only_level_changes(self) -> None:
        root = logging.getLogger()
        before = list(root.handlers)
        configure_logging(level="ERROR", fmt="json")
        assert root.handlers == before
        assert root.level == logging.ERROR

    def test_env_fallback(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOG_LEVEL", "error")
        monkeypatch.setenv("LOG_FORMAT", "text")
        configure_logging(force=True)
        assert logging.getLogger().level == logging.ERROR


# ---------------------------------------------------------------------------
# JsonFormatter
# ---------------------------------------------------------------------------


class TestJsonFormatter:
    def test_shape(self) -> None:
        record = _record("Processed %d ticker(s)", event=events.STAGE_COMPLETE, cycle_id="abcd1234")
        record.args = (3,)

        payload = json.loads(JsonFormatter().format(record))

        assert set(payload) == {"ts", "level", "logger", "message", "extra"}
        assert re.fullmatch(r"\d{4}-\d\d-\d\dT\d\d:\d\d:\d\d\.\d{3}Z", payload["ts"])
        assert payload["level"] == "INFO"
        assert payload["logger"] == "researchflow.test"
        assert payload["message"] == "Processed 3 ticker(s)"
        assert payload["extra"] == {"event": "STAGE_COMPLETE", "cycle_id": "abcd1234"}

    def test_exception_included(self) -> None:
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        payload = json.loads(JsonFormatter().format(record))
        assert "RuntimeError: boom" in payload["exc_info"]

    def test_unserialisable_extra_stringified(self) -> None:
        payload = json.loads(JsonFormatter().format(_record(obj=object())))
        assert payload["extra"]["obj"].startswith("<object object")


# ---------------------------------------------------------------------------
# Correlation ids
# ---------------------------------------------------------------------------


class TestInvocationContext:
    def test_defaults_outside_invocation(self) -> None:
        record = _record()
        assert CycleContextFilter().filter(record) is True
        assert (record.cycle_id, record.run_id) == ("-", "-")

    def test_binds_and_restores(self) -> None:
        with invocation_context("run-1") as cycle_id:
            assert re.fullmatch(r"[0-9a-f]{8}", cycle_id)
            record = _record()
            CycleContextFilter().filter(record)
            assert (record.cycle_id, record.run_id) == (cycle_id, "run-1")
        assert CYCLE_ID_CTX.get() == "-"
        assert RUN_ID_CTX.get() == "-"

    def test_nested_keeps_outer_cycle_id(self) -> None:
        with invocation_context() as outer:
            with invocation_context("run-2") as inner:
                assert inner == outer
                assert RUN_ID_CTX.get() == "run-2"
            assert CYCLE_ID_CTX.get() == outer
            assert RUN_ID_CTX.get() == "-"

    def test_fresh_id_per_invocation(self) -> None:
        with invocation_context() as first:
            pass
        with invocation_context() as second:
            pass
        assert first != second

    async def test_propagates_into_child_tasks(self) -> None:
        async def _child() -> str:
            return CYCLE_ID_CTX.get()

        with invocation_context() as cycle_id:
            seen = await asyncio.gather(_child(), _child())
        assert seen == [cycle_id, cycle_id]


# ---------------------------------------------------------------------------
# Event annotations
# ---------------------------------------------------------------------------


class TestEventAnnotations:
    async def test_continue_call_is_correlated(
        self, orchestrator: CycleOrchestrator, caps: Capabilities, new_run
    ) -> None:
        run_id = await new_run(["AAA"])
        handler = _ListHandler()
        root = logging.getLogger("researchflow")
        root.addHandler(handler)
        try:
            await orchestrator.continue_run(run_id, capabilities=caps)
        finally:
            root.removeHandler(handler)

        tagged = [r for r in handler.records if getattr(r, "event", None)]
        seen_events = {r.event for r in tagged}
        assert {
            events.CONTINUE_START,
            events.STAGE_START,
            events.STAGE_COMPLETE,
            events.CONTINUE_COMPLETE,
        } <= seen_events
        assert len({r.cycle_id for r in tagged}) == 1
        assert {r.run_id for r in tagged} == {run_id}

    def test_event_names_match_constants(self) -> None:
        names = [name for name in dir(events) if name.isupper()]
        assert names
        for name in names:
            assert getattr(events, name) == name
