"""
Daemon that periodically deletes stories whose 24h window has passed.
"""

from __future__ import annotations

import argparse
import logging
import random
import sys
import time
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from glowchat.db import now_ms
from glowchat.dependencies import get_db_client

logger = logging.getLogger(__name__)


def purge_once() -> int:
    db = get_db_client()
    removed = db.purge_expired_stories(now_ms())
    logger.info("Purged %d expired stories", removed)
    return removed


def main() -> int:
    parser = argparse.ArgumentParser(description="Expired story purger")
    parser.add_argument(
        "--interval-seconds",
        type=int,
        default=600,
        help="Seconds between purge runs",
    )
    parser.add_argument(
        "--jitter-seconds",
        type=int,
        default=30,
        help="Max random jitter added to sleep",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single purge and exit",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(name)s %(levelname)s %(asctime)s %(message)s",
        datefmt="%m/%d/%Y %I:%M:%S %p",
    )

    while True:
        try:
            purge_once()
        except Exception as exc:
            logger.exception("Purge failed: %s", exc)
            if args.once:
                return 1

        if args.once:
            return 0

        sleep_for = args.interval_seconds + random.uniform(0, args.jitter_seconds)
        logger.info("Sleeping for %.1fs", sleep_for)
        time.sleep(sleep_for)


if __name__ == "__main__":
    sys.exit(main())
