"""Researchflow process entry-point.

Usage:
    python -m researchflow [--secret S] [--log-level L] <command> [options]

Commands
--------
``init-db``                       create the database schema
``import-tickers CSV``            upsert ticker metadata from a CSV file
``create-run``                    create a run and queue its tickers
``stop-run RUN_ID [--clear]``     set or clear the stop flag
``consume STAGE``                 run one batch of stage1|stage2|stage3|focus
``continue``                      advance a run through bounded cycles
``schedule get|set RUN_ID``       read or write a run's dispatch schedule
``ask RUN_ID``                    queue focus questions for tickers of a run
``dispatch [--dry-run] [--loop]`` trigger due schedules (once or forever)

Every command prints one JSON document on stdout and exits with status 1 on
errors.  Operator commands require the automation secret (``--secret``,
defaulting to ``AUTOMATION_SERVICE_SECRET``).  The orchestration logic lives
in ``researchflow.orchestrator`` and ``researchflow.stages``; this module is
intentionally thin.
"""

from __future__ import annotations

import argparse
import asyncio
import csv
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from researchflow.core import configure_logging
from researchflow.core.auth import SERVICE_SECRET_HEADER, Capabilities, require_service_auth
from researchflow.core.exceptions import InvalidRequestError, ResearchflowError
from researchflow.core.models import StageName
from researchflow.core.settings import Settings

logger = logging.getLogger(__name__)

Handler = Callable[[argparse.Namespace, Settings, Capabilities], Awaitable[Any]]


def _csv_list(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def _json_object(value: str) -> dict[str, Any]:
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise argparse.ArgumentTypeError(f"invalid JSON: {exc}") from exc
    if not isinstance(parsed, dict):
        raise argparse.ArgumentTypeError("expected a JSON object")
    return parsed


def _stage_limits(args: argparse.Namespace) -> dict[str, int]:
    return {
        key: value
        for key, value in (
            ("stage1", args.stage1_limit),
            ("stage2", args.stage2_limit),
            ("stage3", args.stage3_limit),
            ("focus", getattr(args, "focus_limit", None)),
        )
        if value is not None
    }


def _add_limit_options(parser: argparse.ArgumentParser, *, focus: bool = True) -> None:
    parser.add_argument("--stage1-limit", type=int, default=None)
    parser.add_argument("--stage2-limit", type=int, default=None)
    parser.add_argument("--stage3-limit", type=int, default=None)
    if focus:
        parser.add_argument("--focus-limit", type=int, default=None)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


async def _cmd_init_db(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.storage.database import open_db  # noqa: PLC0415

    conn = await open_db(settings.database_path_resolved)
    await conn.close()
    return {"database": str(settings.database_path_resolved), "status": "ready"}


async def _cmd_import_tickers(
    args: argparse.Namespace, settings: Settings, caps: Capabilities
) -> Any:
    from researchflow.orchestrator.runs import import_tickers  # noqa: PLC0415
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    path = Path(args.csv)
    try:
        with path.open(newline="", encoding="utf-8") as fh:
            rows = list(csv.DictReader(fh))
    except OSError as exc:
        raise InvalidRequestError(f"Cannot read {path}: {exc}") from exc
    async with open_services(settings) as services:
        count = await import_tickers(services.repo, rows, capabilities=caps)
    return {"imported": count, "rows": len(rows)}


async def _cmd_create_run(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runs import create_run  # noqa: PLC0415
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    async with open_services(settings) as services:
        return await create_run(
            services.repo,
            capabilities=caps,
            tickers=args.tickers,
            planner=args.planner,
            budget_usd=args.budget,
            client_meta={"source": "cli"},
            created_by="cli",
        )


async def _cmd_stop_run(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runs import set_stop_flag  # noqa: PLC0415
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    async with open_services(settings) as services:
        return await set_stop_flag(services.repo, args.run_id, not args.clear, capabilities=caps)


async def _cmd_consume(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    async with open_services(settings) as services:
        consumer = services.consumers[StageName(args.stage)]
        outcome = await consumer.consume(
            args.run_id, args.limit, capabilities=caps, client_meta={"source": "cli"}
        )
    return outcome.to_dict()


async def _cmd_continue(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    async with open_services(settings) as services:
        result = await services.orchestrator.continue_run(
            args.run_id,
            _stage_limits(args),
            args.cycles,
            capabilities=caps,
            client_meta={"source": "cli"},
        )
    return result.to_dict()


async def _cmd_schedule(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runs import get_schedule, upsert_schedule  # noqa: PLC0415
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    async with open_services(settings) as services:
        if args.action == "get":
            schedule = await get_schedule(services.repo, args.run_id, capabilities=caps)
            return {"run_id": args.run_id, "schedule": schedule}
        limits = _stage_limits(args)
        schedule = await upsert_schedule(
            services.repo,
            args.run_id,
            capabilities=caps,
            cadence_seconds=args.cadence,
            stage1_limit=limits.get("stage1"),
            stage2_limit=limits.get("stage2"),
            stage3_limit=limits.get("stage3"),
            max_cycles=args.max_cycles,
            active=not args.inactive,
            label=args.label,
            reset_last_trigger=args.reset,
        )
        return {"run_id": args.run_id, "schedule": schedule}


async def _cmd_ask(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runs import enqueue_focus_questions  # noqa: PLC0415
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415

    async with open_services(settings) as services:
        return await enqueue_focus_questions(
            services.repo,
            args.run_id,
            capabilities=caps,
            tickers=args.ticker,
            questions=args.question,
            template_slugs=args.template,
        )


async def _cmd_dispatch(args: argparse.Namespace, settings: Settings, caps: Capabilities) -> Any:
    from researchflow.orchestrator.runner import open_services  # noqa: PLC0415
    from researchflow.orchestrator.scheduler import dispatch_due_schedules  # noqa: PLC0415

    async with open_services(settings) as services:
        result = await dispatch_due_schedules(
            services.repo,
            services.orchestrator,
            secret=settings.automation_service_secret,
            headers={SERVICE_SECRET_HEADER: args.secret or ""},
            limit=args.limit,
            run_ids=args.run_id,
            dry_run=args.dry_run,
            client_meta={"source": "cli"},
        )
    return result.to_dict()


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="researchflow",
        description="Staged LLM research pipeline over a ticker universe.",
    )
    parser.add_argument(
        "--secret",
        default=None,
        help="Automation secret (defaults to AUTOMATION_SERVICE_SECRET).",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        metavar="LEVEL",
        help="Override LOG_LEVEL env var (DEBUG|INFO|WARNING|ERROR).",
    )
    parser.add_argument(
        "--log-format",
        default=None,
        metavar="FORMAT",
        help="Override LOG_FORMAT env var (text|json).",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("init-db", help="Create the database schema.")
    p.set_defaults(handler=_cmd_init_db, needs_auth=False)

    p = sub.add_parser("import-tickers", help="Upsert tickers from a CSV file.")
    p.add_argument("csv", help="CSV with a 'ticker' column (name, sector, ... optional).")
    p.set_defaults(handler=_cmd_import_tickers)

    p = sub.add_parser("create-run", help="Create a run and queue its tickers.")
    p.add_argument("--tickers", type=_csv_list, default=None, help="Comma-separated tickers.")
    p.add_argument("--planner", type=_json_object, default=None, help="Planner JSON object.")
    p.add_argument("--budget", type=float, default=None, help="Spend cap in USD (0 = none).")
    p.set_defaults(handler=_cmd_create_run)

    p = sub.add_parser("stop-run", help="Flag a run to stop (or clear the flag).")
    p.add_argument("run_id")
    p.add_argument("--clear", action="store_true", help="Clear the stop request instead.")
    p.set_defaults(handler=_cmd_stop_run)

    p = sub.add_parser("consume", help="Run one batch of a stage.")
    p.add_argument("stage", choices=[str(stage) for stage in StageName])
    p.add_argument("--run-id", default=None, help="Defaults to the latest active run.")
    p.add_argument("--limit", type=int, default=None)
    p.set_defaults(handler=_cmd_consume)

    p = sub.add_parser("continue", help="Advance a run through bounded stage cycles.")
    p.add_argument("--run-id", default=None, help="Defaults to the latest active run.")
    p.add_argument("--cycles", type=int, default=1)
    _add_limit_options(p)
    p.set_defaults(handler=_cmd_continue)

    p = sub.add_parser("schedule", help="Read or write a run's dispatch schedule.")
    p.add_argument("action", choices=["get", "set"])
    p.add_argument("run_id")
    p.add_argument("--cadence", type=int, default=None, help="Seconds between dispatches.")
    p.add_argument("--max-cycles", type=int, default=None)
    p.add_argument("--label", default=None)
    p.add_argument("--inactive", action="store_true", help="Store the schedule as paused.")
    p.add_argument("--reset", action="store_true", help="Forget the last trigger time.")
    _add_limit_options(p, focus=False)
    p.set_defaults(handler=_cmd_schedule)

    p = sub.add_parser("ask", help="Queue focus questions for tickers of a run.")
    p.add_argument("run_id")
    p.add_argument("--ticker", action="append", required=True)
    p.add_argument("--question", action="append", default=None)
    p.add_argument("--template", action="append", default=None, help="Template slug.")
    p.set_defaults(handler=_cmd_ask)

    p = sub.add_parser("dispatch", help="Trigger continue calls for due schedules.")
    p.add_argument("--dry-run", action="store_true", help="List due schedules only.")
    p.add_argument("--loop", action="store_true", help="Repeat forever (SIGTERM to stop).")
    p.add_argument("--limit", type=int, default=None)
    p.add_argument("--run-id", action="append", default=None, help="Restrict to these runs.")
    p.set_defaults(handler=_cmd_dispatch, needs_auth=False)

    return parser


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))  # noqa: T201


def main(argv: list[str] | None = None) -> None:
    """CLI entry-point registered in ``pyproject.toml``."""
    args = build_parser().parse_args(argv)

    try:
        settings = Settings()
        configure_logging(
            level=args.log_level or settings.log_level,
            fmt=args.log_format or settings.log_format,
        )
    except ValueError as exc:
        print(f"researchflow: configuration error: {exc}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    if args.secret is None:
        args.secret = settings.automation_service_secret

    if args.command == "dispatch" and args.loop:
        from researchflow.orchestrator.scheduler import run_dispatch_loop  # noqa: PLC0415

        logger.info("Running dispatcher in continuous mode (SIGTERM to stop).")
        try:
            asyncio.run(run_dispatch_loop(settings))
        except KeyboardInterrupt:
            logger.info("Interrupted; exiting.")
        except asyncio.CancelledError:
            logger.info("Shutdown complete; exiting.")
        sys.exit(0)

    try:
        caps = Capabilities.service()
        if getattr(args, "needs_auth", True):
            caps = require_service_auth(
                {SERVICE_SECRET_HEADER: args.secret or ""},
                None,
                settings.automation_service_secret,
            )
        result = asyncio.run(args.handler(args, settings, caps))
    except ResearchflowError as exc:
        logger.error("%s failed: %s", args.command, exc)
        _emit({"error": str(exc), "status": exc.status_code})
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("Interrupted; exiting.")
        sys.exit(1)

    _emit(result)


if __name__ == "__main__":
    main()
