"""Entrypoint: render prompts or run the generation pipeline from the shell."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parent / "src"))

from docfill_agent.config import load_settings
from docfill_agent.orchestrator import DailyPlanRequest, WeeklyPlanRequest, build_pipeline, split_activities
from docfill_agent.prompts import TemplateStore
from docfill_agent.repair import stringify


def _parse_vars(pairs: List[str]) -> Dict[str, Any]:
    variables: Dict[str, Any] = {}
    for pair in pairs:
        if "=" not in pair:
            raise SystemExit(f"Invalid --var '{pair}', expected key=value")
        key, value = pair.split("=", 1)
        variables[key.strip()] = value
    return variables


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Structured document-fill generation")
    parser.add_argument("--settings", default="config/settings.yaml", help="Path to settings.yaml")

    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("list-templates", help="List prompt templates")

    render = subparsers.add_parser("render", help="Print a rendered prompt")
    render.add_argument("template")
    render.add_argument("--var", action="append", default=[], help="key=value (repeatable)")

    generate = subparsers.add_parser("generate", help="Generate a fill payload as JSON")
    generate.add_argument("template")
    generate.add_argument("--var", action="append", default=[], help="key=value (repeatable)")
    generate.add_argument("--stream", action="store_true", help="Use the streaming call")

    weekly = subparsers.add_parser("weekly-plan", help="Generate a complete weekly-plan payload")
    weekly.add_argument("--month-theme", required=True)
    weekly.add_argument("--monthly-plan", default="")
    weekly.add_argument("--class-info", default="")
    weekly.add_argument("--week-number", default="")
    weekly.add_argument("--teacher", default="")
    weekly.add_argument("--date-range", default="")
    weekly.add_argument("--age-group", default="medium", help="small, medium, large or an age range")
    weekly.add_argument("--last-week-file", help="Text file with last week's plan")
    weekly.add_argument("--name", action="append", default=[], help="Child to mention (repeatable)")
    weekly.add_argument("--daily-start", help="Also generate daily plans from this date (YYYY-MM-DD)")

    daily = subparsers.add_parser("daily-plans", help="Generate daily-plan payloads")
    daily.add_argument("--activity", action="append", required=True, help="Activity name (repeatable)")
    daily.add_argument("--start-date", required=True, help="YYYY-MM-DD")
    daily.add_argument("--class-info", default="")
    daily.add_argument("--teacher", default="")
    daily.add_argument("--week-number", default="")
    daily.add_argument("--age-group", default="medium")
    return parser


async def _generate(config: Dict[str, Any], template: str, variables: Dict[str, Any], stream: bool) -> None:
    pipeline = build_pipeline(config)
    try:
        payload = await pipeline.generate_fill_payload(template, variables, streamed=stream)
    finally:
        await pipeline.aclose()
    print(stringify(payload))


async def _weekly_plan(config: Dict[str, Any], args: argparse.Namespace) -> None:
    last_week_plan = None
    if args.last_week_file:
        last_week_plan = Path(args.last_week_file).read_text(encoding="utf-8")
    request = WeeklyPlanRequest(
        month_theme=args.month_theme,
        monthly_plan=args.monthly_plan,
        class_info=args.class_info,
        week_number=args.week_number,
        teacher=args.teacher,
        date_range=args.date_range,
        age_group=args.age_group,
        last_week_plan=last_week_plan,
        selected_names=args.name,
    )
    pipeline = build_pipeline(config)
    try:
        result: Dict[str, Any] = {"weekly": await pipeline.generate_weekly_plan(request)}
        if args.daily_start:
            result["daily"] = await pipeline.generate_daily_plans(
                DailyPlanRequest(
                    activities=split_activities(result["weekly"].get("集体活动")),
                    start_date=args.daily_start,
                    class_info=args.class_info,
                    teacher=args.teacher,
                    age_group=args.age_group,
                    week_number=args.week_number,
                )
            )
    finally:
        await pipeline.aclose()
    print(stringify(result))


async def _daily_plans(config: Dict[str, Any], args: argparse.Namespace) -> None:
    request = DailyPlanRequest(
        activities=args.activity,
        start_date=args.start_date,
        class_info=args.class_info,
        teacher=args.teacher,
        age_group=args.age_group,
        week_number=args.week_number,
    )
    pipeline = build_pipeline(config)
    try:
        plans = await pipeline.generate_daily_plans(request)
    finally:
        await pipeline.aclose()
    print(stringify(plans))


def main() -> None:
    load_dotenv()
    parser = _build_parser()
    args = parser.parse_args()
    command = args.command or "list-templates"

    config = load_settings(args.settings)
    logging.basicConfig(
        level=str(config["logging"].get("level", "INFO")).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    store = TemplateStore(config["paths"]["prompts_dir"])

    if command == "list-templates":
        for name in store.list_available():
            print(name)
        return

    if command == "weekly-plan":
        asyncio.run(_weekly_plan(config, args))
        return
    if command == "daily-plans":
        asyncio.run(_daily_plans(config, args))
        return

    variables = _parse_vars(args.var)
    if command == "render":
        prompt = store.get(args.template, variables)
        print("=== system ===")
        print(prompt.system_prompt)
        print("=== user ===")
        print(prompt.user_prompt)
        return

    asyncio.run(_generate(config, args.template, variables, args.stream))


if __name__ == "__main__":
    main()
