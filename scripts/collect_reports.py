"""Entry point that polls a mailbox for DMARC and SMTP TLS reports."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
from pathlib import Path
import sys

from dotenv import load_dotenv

# Ensure project root is on sys.path when running as a script
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from dmarc_watch.aggregation import summarize
from dmarc_watch.config import Settings
from dmarc_watch.pipeline import IngestionPipeline
from dmarc_watch.scheduler import CycleScheduler
from dmarc_watch.state import SharedState

load_dotenv()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Collect DMARC aggregate and SMTP TLS reports from an IMAP mailbox."
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single ingestion cycle, print a JSON summary and exit",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


async def run_once(pipeline: IngestionPipeline, state: SharedState) -> dict:
    await pipeline.run_cycle()
    snapshot = await state.snapshot()
    summary = summarize(snapshot).to_dict()
    summary["health"] = await state.health()
    summary["last_error"] = snapshot.last_error
    return summary


async def run_forever(settings: Settings, pipeline: IngestionPipeline) -> None:
    scheduler = CycleScheduler(
        pipeline.run_cycle,
        interval=settings.imap_check_interval,
        schedule=settings.imap_check_schedule,
    )
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(signum, scheduler.stop)
        except NotImplementedError:
            logging.debug("Signal handlers are not supported on this platform")
    await scheduler.run()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()

    settings = Settings()
    configure_logging(settings.log_level)
    logging.info("Loaded configuration: %s", settings.describe())

    state = SharedState()
    pipeline = IngestionPipeline.from_settings(settings, state)

    if args.once:
        summary = asyncio.run(run_once(pipeline, state))
        print(json.dumps(summary, indent=2, default=str))
        return

    asyncio.run(run_forever(settings, pipeline))


if __name__ == "__main__":
    main()
