"""
Command-line trigger for the queue sweeps.

Each command runs one sweep against MongoDB and prints its JSON summary, so a
cron entry like `*/5 * * * * workqueue recover` is all the scheduling needed.
`--loop` keeps the process alive and repeats the sweep on an interval instead.
"""
import argparse
import asyncio
import json
import sys
from typing import Optional, Sequence

from loguru import logger

from workqueue.config import Settings, get_settings
from workqueue.core.engine import QueueEngine, mongo_engine
from workqueue.message_queue.base import QueueStoreError
from workqueue.message_queue.worker import PeriodicSweep
from workqueue.utils.observability import configure_logging

SWEEPS = {
    "run-jobs": "job_worker",
    "dispatch-events": "event_worker",
    "recover": "recovery",
    "recover-jobs": "job_recovery",
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="workqueue", description=__doc__.splitlines()[0])
    subcommands = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("run-jobs", "Execute one batch of pending internal jobs"),
        ("dispatch-events", "Dispatch one batch of due inbound events"),
        ("recover", "Re-dispatch or dead-letter stale inbound events"),
        ("recover-jobs", "Requeue or fail internal jobs stalled in processing"),
    ):
        sub = subcommands.add_parser(name, help=help_text)
        sub.add_argument("--loop", action="store_true", help="Repeat the sweep until interrupted")
        sub.add_argument("--interval", type=float, default=None, help="Seconds between runs with --loop")

    subcommands.add_parser("init-db", help="Create the queue collection indexes")
    return parser


async def run_command(args: argparse.Namespace, engine: QueueEngine) -> int:
    """Run one parsed command against an engine. Returns the process exit code."""
    if args.command == "init-db":
        return 0

    sweep = getattr(engine, SWEEPS[args.command])
    if sweep is None:
        logger.error(f"{args.command} requires PROCESSOR_URL to be configured")
        return 2

    if args.loop:
        interval = args.interval or engine.settings.sweep_interval_seconds
        await PeriodicSweep(sweep, interval=interval).start()
        return 0

    try:
        summary = await sweep.run_once()
    except QueueStoreError as e:
        logger.error(f"{args.command} aborted: {e}")
        return 1

    print(json.dumps(summary, default=str))
    return 0


async def _main(args: argparse.Namespace, settings: Settings) -> int:
    async with mongo_engine(settings, create_indexes=args.command == "init-db") as engine:
        return await run_command(args, engine)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    try:
        return asyncio.run(_main(args, settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
