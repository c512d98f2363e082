"""Run the periodic job scheduler.

Usage:
    python scripts/run_scheduler.py                          # embedded beat
    python scripts/run_scheduler.py --once invitation-expiry-hourly
    python scripts/run_scheduler.py --list

Workers still need to run separately (``celery -A tenancy.tasks.celery_app worker``);
``--once`` executes the job in this process instead.
"""
import argparse
import json
import logging
import sys

from tenancy.tasks.celery_app import celery_app, scheduler


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--once", metavar="JOB", help="run one job now and exit")
    group.add_argument("--list", action="store_true", help="list scheduled jobs and exit")
    parser.add_argument("--loglevel", default="INFO")
    args = parser.parse_args(argv)

    logging.basicConfig(level=args.loglevel.upper())

    if args.list:
        for job in scheduler.jobs:
            print(f"{job.name:36} {job.schedule}  {job.description}")
        return 0

    if args.once:
        try:
            job = scheduler.get_job(args.once)
        except KeyError as e:
            print(e.args[0], file=sys.stderr)
            return 2
        result = scheduler.run_now(job.name)
        print(json.dumps(result, indent=2, default=str))
        return 0

    scheduler.start()
    try:
        celery_app.Beat(loglevel=args.loglevel.upper()).run()
    finally:
        scheduler.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(main())
