"""Trial activation — batch job runner.

Runs the same jobs the cron endpoints trigger, plus the meeting reconciliation
pass, against DATABASE_URL. Each command prints its summary as JSON.

Usage:
  # Kill stalled / no-show / over-rescheduled trials
  python cli.py auto-kill

  # Send 24h meeting reminders
  python cli.py reminders

  # Score the current week (or the week containing --week)
  python cli.py scoring --week 2026-03-02

  # Link meetings booked before their trial existed
  python cli.py reconcile --lead-id 6f1c...
"""
import argparse
import asyncio
import json
import logging
import sys
import uuid

from dateutil import parser as date_parser
from dateutil import tz

import config
from activation.auto_kill import run_auto_kill
from activation.reminders import run_meeting_reminders
from activation.scheduler import reconcile_links
from activation.scoring import run_weekly_scoring
from db import dispose_engine

logger = logging.getLogger(__name__)


async def _run(coro):
    try:
        return await coro
    finally:
        await dispose_engine()


def _dump(result) -> str:
    if hasattr(result, "model_dump"):
        result = result.model_dump(mode="json")
    else:
        result = {
            **result,
            "errors": [e.model_dump(mode="json") for e in result.get("errors", [])],
        }
    return json.dumps(result, indent=2, default=str)


def _build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Trial activation batch jobs")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("auto-kill", help="Apply the auto-kill rules once")
    sub.add_parser("reminders", help="Send 24h reminders for upcoming meetings")

    scoring = sub.add_parser("scoring", help="Write weekly performance snapshots")
    scoring.add_argument("--week", default=None, help="Any date inside the week to score (default: this week)")

    reconcile = sub.add_parser("reconcile", help="Link meetings to pipelines created after booking")
    reconcile.add_argument("--lead-id", default=None, help="Only reconcile this CRM lead")

    return parser


def main(argv=None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=config.log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "auto-kill":
        result = asyncio.run(_run(run_auto_kill()))

    elif args.command == "reminders":
        result = asyncio.run(_run(run_meeting_reminders()))

    elif args.command == "scoring":
        period_start = None
        if args.week:
            period_start = date_parser.isoparse(args.week)
            if period_start.tzinfo is None:
                period_start = period_start.replace(tzinfo=tz.UTC)
        result = asyncio.run(_run(run_weekly_scoring(period_start=period_start)))

    elif args.command == "reconcile":
        lead_id = uuid.UUID(args.lead_id) if args.lead_id else None
        result = asyncio.run(_run(reconcile_links(crm_lead_id=lead_id)))

    else:
        parser.print_help()
        return 1

    print(_dump(result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
