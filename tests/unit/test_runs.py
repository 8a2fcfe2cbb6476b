"""Unit tests for the operator operations in researchflow.orchestrator.runs."""

from __future__ import annotations

import uuid
from unittest.mock import AsyncMock, patch

import pytest

from researchflow.core.auth import Capabilities
from researchflow.core.exceptions import (
    ForbiddenError,
    InvalidRequestError,
    NotFoundError,
    RunNotFoundError,
    StorageError,
)
from researchflow.core.models import RunStatus
from researchflow.orchestrator.runs import (
    PLANNER_DEFAULTS,
    create_run,
    enqueue_focus_questions,
    estimate_cost,
    get_schedule,
    import_tickers,
    normalize_ticker,
    sanitize_planner,
    set_stop_flag,
    upsert_schedule,
)
from researchflow.storage.repository import RunRepository

# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestNormalizeTicker:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(" aapl ", "AAPL"), ("brk.b", "BRK.B"), ("rds-a", "RDS-A"), ("", None), ("a b", None), (7, None)],
    )
    def test_normalize(self, raw: object, expected: str | None) -> None:
        assert normalize_ticker(raw) == expected


class TestPlanner:
    def test_defaults(self) -> None:
        assert sanitize_planner(None) == PLANNER_DEFAULTS

    def test_camel_case_and_clamping(self) -> None:
        planner = sanitize_planner(
            {
                "universe": 10**9,
                "surviveStage2": "50",
                "survive_stage3": 250,
                "stage1": {"model": " 5-mini ", "inTokens": -5, "out_tokens": "x"},
                "stage2": "not a mapping",
            }
        )
        assert planner["universe"] == 60_000
        assert planner["survive_stage2"] == 50.0
        assert planner["survive_stage3"] == 100.0
        assert planner["stage1"] == {"model": "5-mini", "in_tokens": 0, "out_tokens": 600}
        assert planner["stage2"] == PLANNER_DEFAULTS["stage2"]

    def test_non_finite_survival_falls_back(self) -> None:
        assert sanitize_planner({"survive_stage2": float("nan")})["survive_stage2"] == 15.0

    def test_estimate_cost(self) -> None:
        planner = sanitize_planner(
            {
                "universe": 1000,
                "survive_stage2": 10,
                "survive_stage3": 50,
                "stage1": {"model": "4o-mini", "in_tokens": 1_000_000, "out_tokens": 0},
                "stage2": {"model": "5-mini", "in_tokens": 0, "out_tokens": 1_000_000},
                "stage3": {"model": "unknown", "in_tokens": 10, "out_tokens": 10},
            }
        )
        cost = estimate_cost(planner)
        assert cost["stage1"] == pytest.approx(1000 * 0.15)
        assert cost["stage2"] == pytest.approx(100 * 2.0)
        assert cost["stage3"] == 0.0
        assert cost["total"] == pytest.approx(cost["stage1"] + cost["stage2"])


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class TestCreateRun:
    async def test_creates_run_with_normalised_tickers(
        self, repo: RunRepository, caps: Capabilities
    ) -> None:
        created = await create_run(
            repo, capabilities=caps, tickers=["aapl", "AAPL", " msft", "bad ticker"], budget_usd="5"
        )

        assert uuid.UUID(created["run_id"]).version == 4
        assert created["total_items"] == 2
        assert created["budget_usd"] == 5.0
        assert created["estimated_cost"]["total"] > 0
        run = await repo.resolve_run(created["run_id"])
        assert run.status == RunStatus.RUNNING
        assert run.budget_usd == 5.0
        assert run.notes["planner"] == PLANNER_DEFAULTS
        assert run.notes["requested_tickers"] == 2
        assert [item.ticker for item in await repo.list_items(run.id)] == ["AAPL", "MSFT"]

    async def test_falls_back_to_recent_tickers(
        self, repo: RunRepository, caps: Capabilities
    ) -> None:
        await import_tickers(
            repo, [{"ticker": "aaa"}, {"ticker": "bbb"}, {"ticker": "ccc"}], capabilities=caps
        )
        created = await create_run(repo, capabilities=caps, planner={"universe": 2})
        assert created["total_items"] == 2

    async def test_no_tickers_available(self, repo: RunRepository, caps: Capabilities) -> None:
        with pytest.raises(NotFoundError, match="No tickers"):
            await create_run(repo, capabilities=caps)

    @pytest.mark.parametrize("budget", [-1, "abc", float("inf")])
    async def test_invalid_budget(
        self, repo: RunRepository, caps: Capabilities, budget: object
    ) -> None:
        with pytest.raises(InvalidRequestError):
            await create_run(repo, capabilities=caps, tickers=["AAA"], budget_usd=budget)

    async def test_requires_admin(self, repo: RunRepository) -> None:
        with pytest.raises(ForbiddenError):
            await create_run(repo, capabilities=Capabilities(), tickers=["AAA"])

    async def test_insert_failure_marks_run_failed(
        self, repo: RunRepository, caps: Capabilities
    ) -> None:
        fixed = uuid.UUID("12345678-1234-4234-8234-123456789abc")
        with (
            patch.object(repo, "insert_items", AsyncMock(side_effect=StorageError("disk full"))),
            patch("researchflow.orchestrator.runs.uuid.uuid4", return_value=fixed),
            pytest.raises(StorageError, match="Failed to enqueue"),
        ):
            await create_run(repo, capabilities=caps, tickers=["AAA"])

        run = await repo.resolve_run(str(fixed))
        assert run.status == RunStatus.FAILED


class TestSetStopFlag:
    async def test_toggle(self, repo: RunRepository, caps: Capabilities, new_run) -> None:
        run_id = await new_run(["AAA"])

        flagged = await set_stop_flag(repo, run_id, True, capabilities=caps)
        assert flagged == {"run_id": run_id, "stop_requested": True, "message": "Run flagged to stop"}

        again = await set_stop_flag(repo, run_id, True, capabilities=caps)
        assert again["message"] == "No change"

        cleared = await set_stop_flag(repo, run_id, False, capabilities=caps)
        assert cleared["message"] == "Stop request cleared"
        assert (await repo.resolve_run(run_id)).stop_requested is False

    async def test_run_id_required(self, repo: RunRepository, caps: Capabilities) -> None:
        with pytest.raises(InvalidRequestError):
            await set_stop_flag(repo, "  ", True, capabilities=caps)

    async def test_unknown_run(self, repo: RunRepository, caps: Capabilities) -> None:
        with pytest.raises(RunNotFoundError):
            await set_stop_flag(repo, "missing", True, capabilities=caps)


# ---------------------------------------------------------------------------
# Schedules
# ---------------------------------------------------------------------------


class TestSchedules:
    async def test_upsert_clamps_and_reports_next_trigger(
        self, repo: RunRepository, caps: Capabilities, new_run
    ) -> None:
        run_id = await new_run(["AAA"])

        saved = await upsert_schedule(
            repo,
            run_id,
            capabilities=caps,
            cadence_seconds=5,
            stage1_limit=100,
            stage2_limit="x",
            stage3_limit=0,
            max_cycles=99,
            label="  nightly " + "x" * 200,
        )

        assert saved["cadence_seconds"] == 60
        assert (saved["stage1_limit"], saved["stage2_limit"], saved["stage3_limit"]) == (25, 4, 1)
        assert saved["max_cycles"] == 10
        assert len(saved["label"]) == 120
        assert saved["label"].startswith("nightly")
        assert saved["next_trigger_at"] == "2026-03-02T09:31:00.000000+00:00"
        assert "run_status" not in saved

    async def test_upsert_replaces_and_can_reset_trigger(
        self, repo: RunRepository, caps: Capabilities, new_run
    ) -> None:
        run_id = await new_run(["AAA"])
        first = await upsert_schedule(repo, run_id, capabilities=caps)
        await repo.mark_schedule_triggered(first["id"], repo.now())

        kept = await upsert_schedule(repo, run_id, capabilities=caps, active=False)
        assert kept["id"] == first["id"]
        assert kept["active"] is False
        assert kept["last_triggered_at"] is not None
        assert kept["next_trigger_at"] is None

        reset = await upsert_schedule(repo, run_id, capabilities=caps, reset_last_trigger=True)
        assert reset["last_triggered_at"] is None

    async def test_get_schedule(self, repo: RunRepository, caps: Capabilities, new_run) -> None:
        run_id = await new_run(["AAA"])
        assert await get_schedule(repo, run_id, capabilities=caps) is None
        await upsert_schedule(repo, run_id, capabilities=caps, cadence_seconds=900)
        fetched = await get_schedule(repo, run_id, capabilities=caps)
        assert fetched is not None and fetched["cadence_seconds"] == 900

    async def test_unknown_run(self, repo: RunRepository, caps: Capabilities) -> None:
        with pytest.raises(RunNotFoundError):
            await upsert_schedule(repo, "missing", capabilities=caps)


# ---------------------------------------------------------------------------
# Focus questions
# ---------------------------------------------------------------------------


class TestEnqueueFocusQuestions:
    async def test_templates_and_custom_questions(
        self, repo: RunRepository, caps: Capabilities, new_run
    ) -> None:
        template = await repo.upsert_focus_template("moat", "How durable is the moat?")
        run_id = await new_run(["AAA", "BBB"])

        queued = await enqueue_focus_questions(
            repo,
            run_id,
            capabilities=caps,
            tickers=["aaa", "BBB"],
            questions=["Is pricing power intact?", " ", "Is pricing power intact?"],
            template_slugs=["moat"],
        )

        assert queued == {
            "run_id": run_id,
            "tickers": ["AAA", "BBB"],
            "inserted_count": 4,
            "skipped_duplicates": 0,
        }
        keys = await repo.open_focus_keys(run_id)
        assert ("AAA", "How durable is the moat?", template.id) in keys
        assert ("BBB", "Is pricing power intact?", None) in keys

    async def test_open_duplicates_skipped(
        self, repo: RunRepository, caps: Capabilities, new_run
    ) -> None:
        run_id = await new_run(["AAA"])
        kwargs = {"capabilities": caps, "tickers": ["AAA"], "questions": ["Why now?"]}
        await enqueue_focus_questions(repo, run_id, **kwargs)

        again = await enqueue_focus_questions(repo, run_id, **kwargs)

        assert again["inserted_count"] == 0
        assert again["skipped_duplicates"] == 1

    async def test_validation(self, repo: RunRepository, caps: Capabilities, new_run) -> None:
        run_id = await new_run(["AAA"])
        with pytest.raises(InvalidRequestError, match="Ticker required"):
            await enqueue_focus_questions(
                repo, run_id, capabilities=caps, tickers=["??"], questions=["Q"]
            )
        with pytest.raises(InvalidRequestError, match="at least one"):
            await enqueue_focus_questions(repo, run_id, capabilities=caps, tickers=["AAA"])
        with pytest.raises(InvalidRequestError, match="not part of the requested run: ZZZ"):
            await enqueue_focus_questions(
                repo, run_id, capabilities=caps, tickers=["ZZZ"], questions=["Q"]
            )
        with pytest.raises(InvalidRequestError, match="Unknown template slugs: nope"):
            await enqueue_focus_questions(
                repo, run_id, capabilities=caps, tickers=["AAA"], template_slugs=["nope"]
            )


# ---------------------------------------------------------------------------
# Tickers
# ---------------------------------------------------------------------------


class TestImportTickers:
    async def test_upserts_valid_rows(self, repo: RunRepository, caps: Capabilities) -> None:
        count = await import_tickers(
            repo,
            [
                {"ticker": "aaa", "name": " Alpha Corp ", "sector": ""},
                {"ticker": "not valid"},
                {"name": "No symbol"},
            ],
            capabilities=caps,
        )

        assert count == 1
        profile = await repo.get_ticker("AAA")
        assert profile is not None
        assert profile.name == "Alpha Corp"
        assert profile.sector is None

    async def test_requires_admin(self, repo: RunRepository) -> None:
        with pytest.raises(ForbiddenError):
            await import_tickers(repo, [{"ticker": "AAA"}], capabilities=Capabilities())
