"""
ProductGuard Enforcement Core - Outbox Worker

Drains queued evidence, feedback and CRM jobs.

    python -m productguard.worker          # poll forever
    python -m productguard.worker --once   # one batch, then exit
"""
import argparse
import logging
import time

from . import config
from .database import SessionLocal, init_db
from .services.jobs import JobWorker, build_default_handlers

logger = logging.getLogger(__name__)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Drain the pipeline job outbox")
    parser.add_argument("--once", action="store_true", help="Run a single batch and exit")
    parser.add_argument("--batch-size", type=int, default=20)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=config.LOG_LEVEL,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()

    worker = JobWorker(SessionLocal, build_default_handlers())
    logger.info(f"Worker started ({worker.max_workers} threads, batch {args.batch_size})")

    while True:
        summary = worker.drain(args.batch_size)
        if args.once:
            return 0
        if summary["claimed"] == 0:
            time.sleep(config.WORKER_POLL_SECONDS)


if __name__ == "__main__":
    raise SystemExit(main())
