"""Run a cache engine job on demand, optionally scoped to one account."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from adcache.jobs.backfill import run_collect_daily, run_collect_history
from adcache.jobs.maintenance import run_archive, run_cleanup, run_status, run_transition
from adcache.jobs.refresh import run_refresh
from adcache.utils.dates import parse_iso_date

JOBS = ("refresh", "collect-history", "collect-daily", "transition", "archive", "cleanup", "status")


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("job", choices=JOBS)
    parser.add_argument("--account", action="append", dest="accounts", help="account id (repeatable)")
    parser.add_argument("--granularity", choices=("week", "month"), default="week")
    parser.add_argument("--periods", type=int, help="number of periods back from the current one")
    parser.add_argument("--period-id", action="append", dest="period_ids", help="explicit period id (repeatable)")
    parser.add_argument("--platform", action="append", dest="platforms", choices=("meta", "google"))
    parser.add_argument("--day", type=parse_iso_date, help="day for collect-daily (YYYY-MM-DD)")
    parser.add_argument("--no-warm", action="store_true", help="skip cache warm-up after a transition")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> dict:
    if args.job == "refresh":
        account = args.accounts[0] if args.accounts else None
        return (await run_refresh(account)).to_dict()
    if args.job == "collect-history":
        periods = args.period_ids or args.periods
        job = await run_collect_history(args.granularity, periods, args.accounts, args.platforms)
        return job.to_dict()
    if args.job == "collect-daily":
        return (await run_collect_daily(args.day, args.accounts, args.platforms)).to_dict()
    if args.job == "transition":
        return await run_transition(warm=not args.no_warm)
    if args.job == "archive":
        return await run_archive()
    if args.job == "cleanup":
        return await run_cleanup()
    return await run_status()


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    result = asyncio.run(run(parse_args(argv)))
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
