#!/usr/bin/env python3
"""
Meal Plan Orchestrator - Command Line Entry Point
=================================================

Drives the meal plan service from the terminal.

USAGE:
    python orchestrator.py create --user u1 --date-from 2026-01-05 --days 7
    python orchestrator.py regenerate --user u1 --plan-id <id> [--only-date 2026-01-07]
    python orchestrator.py show --user u1 --plan-id <id> [--translate]
    python orchestrator.py list --user u1
    python orchestrator.py runs --user u1
    python orchestrator.py delete --user u1 --plan-id <id>
    python orchestrator.py rate --user u1 --meal-id <history id> --rating 5

Exit codes: 0 success, 1 plan error, 2 configuration error, 130 cancelled.
"""

import sys
import time
import argparse
import asyncio
from datetime import date, timedelta
from pathlib import Path
from typing import Any, Dict, List

from rich.console import Console
from rich.table import Table

from config import load_planner_config
from meal_plans_service import CreatePlanInput, MealPlansService, RegeneratePlanInput, build_service
from plan_errors import ErrorCode, MealPlanError
from plan_types import MealPlanRecord
from tools.logging_utils import get_logger, set_console_level

logger = get_logger(__name__)

console = Console()


# =============================================================================
# PROGRESS DISPLAY UTILITIES
# =============================================================================

def print_header(title: str):
    console.print("\n" + "═" * 60)
    console.print(f"🍽️  {title}")
    console.print("═" * 60)


def print_success(message: str, total_time: float):
    console.print("\n" + "═" * 60)
    console.print(f"✅ {message} ({total_time:.1f}s)")
    console.print("═" * 60 + "\n")


def print_plan_error(error: MealPlanError):
    logger.error(f"❌ {error.code}: {error.message}")
    console.print("\n" + "═" * 60)
    console.print(f"❌ {error.code}")
    console.print("═" * 60)
    console.print(f"\n{error.message}")
    for key, value in error.details.items():
        console.print(f"   {key}: {value}")
    console.print()


def next_monday() -> str:
    today = date.today()
    days_ahead = 7 - today.weekday()
    return (today + timedelta(days=days_ahead)).isoformat()


# =============================================================================
# RENDERING
# =============================================================================

def render_plan(record: MealPlanRecord):
    plan = record.plan
    meta = plan.metadata
    slot_provenance = meta.get("slot_provenance") or {}
    tips = (record.enrichment or {}).get("meals") or {}

    table = Table(title=f"Plan {record.id} ({record.diet_key}, {record.days} days)")
    table.add_column("Date", style="cyan")
    table.add_column("Slot")
    table.add_column("Meal", style="bold")
    table.add_column("Servings", justify="right")
    table.add_column("Source")
    table.add_column("Tip", style="dim")

    for plan_day in plan.days:
        for meal in plan_day.meals:
            key = f"{meal.date}-{meal.slot}"
            provenance = slot_provenance.get(key) or {}
            source = provenance.get("source", "?")
            if provenance.get("reason"):
                source = f"{source} ({provenance['reason']})"
            meal_tips = (tips.get(key) or {}).get("tips") or []
            table.add_row(meal.date, meal.slot, meal.name, str(meal.servings), source,
                          meal_tips[0] if meal_tips else "")
    console.print(table)

    coverage = meta.get("db_coverage") or {}
    scorecard = meta.get("variety_scorecard") or {}
    generator = meta.get("generator") or {}
    console.print(
        f"📊 Coverage: db={coverage.get('db_slots', 0)} history={coverage.get('history_slots', 0)} "
        f"ai={coverage.get('ai_slots', 0)} / {coverage.get('total_slots', 0)} ({coverage.get('percent', 0)}% db)"
    )
    console.print(
        f"📊 Variety: {scorecard.get('status', '?')}"
        + (" (shortfall accepted)" if scorecard.get("shortfall") else "")
        + f", attempts={generator.get('attempts', '?')}, mode={generator.get('mode', '?')}"
    )
    if meta.get("db_coverage_below_target"):
        console.print("⚠️  Database coverage is below the configured target")


def render_rows(title: str, rows: List[Dict[str, Any]], columns: List[str]):
    table = Table(title=title)
    for column in columns:
        table.add_column(column)
    for row in rows:
        table.add_row(*["" if row.get(c) is None else str(row.get(c)) for c in columns])
    console.print(table)


# =============================================================================
# COMMANDS
# =============================================================================

async def cmd_create(service: MealPlansService, args) -> int:
    print_header("CREATE MEAL PLAN")
    plan_id = await service.create_plan_for_user(
        args.user,
        CreatePlanInput(date_from=args.date_from or next_monday(), days=args.days,
                        calorie_target=args.calorie_target),
    )
    record = await service.load_plan_for_user(args.user, plan_id)
    render_plan(record)
    return 0


async def cmd_regenerate(service: MealPlansService, args) -> int:
    print_header("REGENERATE MEAL PLAN")
    plan_id = await service.regenerate_plan_for_user(
        args.user, RegeneratePlanInput(plan_id=args.plan_id, only_date=args.only_date)
    )
    record = await service.load_plan_for_user(args.user, plan_id)
    render_plan(record)
    return 0


async def cmd_show(service: MealPlansService, args) -> int:
    record = await service.load_plan_for_user(args.user, args.plan_id, translate=args.translate)
    render_plan(record)
    return 0


async def cmd_list(service: MealPlansService, args) -> int:
    rows = service.list_plans_for_user(args.user, limit=args.limit)
    render_rows(f"Plans for {args.user}", rows, ["id", "diet_key", "date_from", "days", "status", "created_at"])
    return 0


async def cmd_runs(service: MealPlansService, args) -> int:
    runs = service.ledger.list_runs(args.user, limit=args.limit)
    rows = [
        {
            "id": r.id,
            "type": r.run_type,
            "status": r.status,
            "plan": r.meal_plan_id,
            "ms": r.duration_ms,
            "error": r.error_code,
            "created_at": r.created_at,
        }
        for r in runs
    ]
    render_rows(f"Runs for {args.user}", rows, ["id", "type", "status", "plan", "ms", "error", "created_at"])
    return 0


async def cmd_delete(service: MealPlansService, args) -> int:
    service.delete_plan_for_user(args.user, args.plan_id)
    console.print(f"✅ Deleted plan {args.plan_id}")
    return 0


async def cmd_rate(service: MealPlansService, args) -> int:
    score = service.rate_meal_for_user(args.user, args.meal_id, args.rating)
    console.print(f"✅ Rated {args.meal_id}: combined score {score:.1f}")
    return 0


COMMANDS = {
    "create": cmd_create,
    "regenerate": cmd_regenerate,
    "show": cmd_show,
    "list": cmd_list,
    "runs": cmd_runs,
    "delete": cmd_delete,
    "rate": cmd_rate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Multi-day meal plan generator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python orchestrator.py create --user u1 --days 7
  python orchestrator.py regenerate --user u1 --plan-id <id> --only-date 2026-01-07
  python orchestrator.py show --user u1 --plan-id <id> --translate
        """
    )
    parser.add_argument("--config", type=Path, help="Path to config.yaml (default: data/config.yaml)")
    verbosity = parser.add_mutually_exclusive_group()
    verbosity.add_argument("-v", "--verbose", action="store_true", help="Show debug logging on the console")
    verbosity.add_argument("-q", "--quiet", action="store_true", help="Only show warnings and errors on the console")

    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--user", required=True, help="User id")
        return sub

    create = add_command("create", "Generate a new plan")
    create.add_argument("--date-from", help="First day in YYYY-MM-DD format (default: next Monday)")
    create.add_argument("--days", type=int, default=7, help="Number of days (default: 7)")
    create.add_argument("--calorie-target", type=int, help="Override the profile's daily calorie target")

    regenerate = add_command("regenerate", "Regenerate a plan or one of its days")
    regenerate.add_argument("--plan-id", required=True)
    regenerate.add_argument("--only-date", help="Regenerate just this day (YYYY-MM-DD)")

    show = add_command("show", "Show a plan")
    show.add_argument("--plan-id", required=True)
    show.add_argument("--translate", action="store_true", help="Translate into the user's language")

    for name, help_text in (("list", "List plans"), ("runs", "List generation runs")):
        sub = add_command(name, help_text)
        sub.add_argument("--limit", type=int, default=20)

    delete = add_command("delete", "Delete a plan")
    delete.add_argument("--plan-id", required=True)

    rate = add_command("rate", "Rate a meal from history (1-5)")
    rate.add_argument("--meal-id", required=True)
    rate.add_argument("--rating", type=int, required=True, choices=range(1, 6))

    return parser


# =============================================================================
# MAIN
# =============================================================================

async def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    if args.verbose:
        set_console_level("DEBUG")
    elif args.quiet:
        set_console_level("WARNING")

    try:
        cfg = load_planner_config(args.config)
    except MealPlanError as e:
        print_plan_error(e)
        return 2

    service = build_service(cfg)
    start_time = time.time()
    try:
        exit_code = await COMMANDS[args.command](service, args)
    except MealPlanError as e:
        print_plan_error(e)
        if e.code == ErrorCode.RATE_LIMIT:
            console.print("⏳ Hourly generation quota reached, try again later\n")
        return 1

    if args.command in ("create", "regenerate"):
        print_success(f"{args.command.capitalize()} finished", time.time() - start_time)
    return exit_code


# =============================================================================
# ENTRY POINT
# =============================================================================

def cli():
    try:
        sys.exit(asyncio.run(main()))

    except KeyboardInterrupt:
        print("\n\n⚠️  Operation cancelled by user")
        sys.exit(130)


if __name__ == "__main__":
    cli()
