"""Unit tests for the ``researchflow`` command-line entry point.

Every command runs against a temporary SQLite file; the chat provider is
replaced with :class:`fakes.FakeProvider` so nothing touches the network.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import patch

import pytest
from fakes import FakeProvider

from researchflow.__main__ import build_parser, main

SECRET = "cli-secret"

Cli = Callable[..., dict[str, Any]]


@pytest.fixture()
def db_path(tmp_path: Path, clean_env: None, monkeypatch: pytest.MonkeyPatch) -> Path:
    path = tmp_path / "researchflow.db"
    monkeypatch.setenv("DATABASE_PATH", str(path))
    monkeypatch.setenv("AUTOMATION_SERVICE_SECRET", SECRET)
    return path


@pytest.fixture()
def cli(db_path: Path, capsys: pytest.CaptureFixture[str]) -> Cli:
    """Run ``main(argv)`` and return the JSON document it printed."""

    def _run(*argv: str, expect_exit: int | None = None) -> dict[str, Any]:
        with patch("researchflow.orchestrator.runner.OpenAICompatibleProvider") as factory:
            factory.side_effect = lambda _settings: FakeProvider()
            if expect_exit is None:
                main(list(argv))
            else:
                with pytest.raises(SystemExit) as excinfo:
                    main(list(argv))
                assert excinfo.value.code == expect_exit
        return json.loads(capsys.readouterr().out)

    return _run


class TestParser:
    def test_planner_must_be_json_object(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            build_parser().parse_args(["create-run", "--planner", "[1, 2]"])
        assert excinfo.value.code == 2
        assert "expected a JSON object" in capsys.readouterr().err

    def test_ticker_list_split(self) -> None:
        args = build_parser().parse_args(["create-run", "--tickers", "aaa, bbb,,"])
        assert args.tickers == ["aaa", "bbb"]

    def test_unknown_stage_rejected(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["consume", "stage9"])


class TestCommands:
    def test_init_db(self, cli: Cli, db_path: Path) -> None:
        out = cli("init-db")
        assert out["status"] == "ready"
        assert db_path.exists()

    def test_wrong_secret_rejected(self, cli: Cli) -> None:
        out = cli("--secret", "nope", "create-run", "--tickers", "AAA", expect_exit=1)
        assert out == {"error": "Invalid automation secret", "status": 401}

    def test_run_lifecycle(self, cli: Cli) -> None:
        created = cli("create-run", "--tickers", "aaa,bbb", "--budget", "2.5")
        run_id = created["run_id"]
        assert created["total_items"] == 2
        assert created["budget_usd"] == 2.5

        consumed = cli("consume", "stage1", "--run-id", run_id, "--limit", "1")
        assert consumed["processed"] == 1
        assert consumed["stage"] == "stage1"

        continued = cli("continue", "--run-id", run_id, "--cycles", "2")
        assert continued["cycles_completed"] == 1
        assert continued["stage_status"]["stage3"]["completed"] == 2

        stopped = cli("stop-run", run_id)
        assert stopped["stop_requested"] is True
        cleared = cli("stop-run", run_id, "--clear")
        assert cleared["message"] == "Stop request cleared"

    def test_schedule_and_dispatch(self, cli: Cli) -> None:
        run_id = cli("create-run", "--tickers", "AAA")["run_id"]

        assert cli("schedule", "get", run_id)["schedule"] is None
        saved = cli("schedule", "set", run_id, "--cadence", "900", "--stage1-limit", "3")
        assert saved["schedule"]["cadence_seconds"] == 900
        assert saved["schedule"]["stage1_limit"] == 3

        dry = cli("dispatch", "--dry-run")
        assert [entry["reason"] for entry in dry["skipped"]] == ["dry_run"]

        dispatched = cli("dispatch", "--run-id", run_id)
        assert [entry["run_id"] for entry in dispatched["triggered"]] == [run_id]

    def test_ask_queues_focus_questions(self, cli: Cli) -> None:
        run_id = cli("create-run", "--tickers", "AAA")["run_id"]
        out = cli("ask", run_id, "--ticker", "aaa", "--question", "Why now?")
        assert out["inserted_count"] == 1

        missing = cli("ask", run_id, "--ticker", "ZZZ", "--question", "Why?", expect_exit=1)
        assert missing["status"] == 400

    def test_import_tickers_then_default_universe(self, cli: Cli, tmp_path: Path) -> None:
        csv_path = tmp_path / "tickers.csv"
        csv_path.write_text("ticker,name,sector\naaa,Alpha,Tech\nbbb,Beta,\n", encoding="utf-8")

        imported = cli("import-tickers", str(csv_path))
        assert imported == {"imported": 2, "rows": 2}

        created = cli("create-run")
        assert created["total_items"] == 2

    def test_unknown_run(self, cli: Cli) -> None:
        out = cli("stop-run", "missing", expect_exit=1)
        assert out["status"] == 404


class TestLoggingOptions:
    def test_bad_log_level_exits(
        self, db_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["--log-level", "LOUD", "init-db"])
        assert excinfo.value.code == 1
        assert "configuration error" in capsys.readouterr().err
