import argparse
import logging
import os

from . import storage
from .logging_utils import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect the database or prune old snapshots")
    parser.add_argument(
        "--db-url",
        default=os.getenv("CHARGE_DB_URL"),
        help="MySQL connection URL (default: CHARGE_DB_URL)",
    )
    parser.add_argument(
        "--prune",
        action="store_true",
        help="Delete superseded pattern snapshots",
    )
    parser.add_argument(
        "--keep",
        type=int,
        default=storage.KEEP_SNAPSHOTS,
        help="Number of snapshots to keep when pruning",
    )
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    setup_logging(args.debug)

    if not args.db_url:
        raise SystemExit("--db-url or CHARGE_DB_URL must be provided")

    conn = storage.connect(args.db_url)
    stats = storage.db_stats(conn)
    logger.info(
        "sessions=%d readings=%d snapshots=%d size=%.1fMB",
        stats["sessions"],
        stats["readings"],
        stats["snapshots"],
        stats["size_bytes"] / (1024 * 1024),
    )
    if args.prune:
        deleted = storage.prune_snapshots(conn, args.keep)
        logger.info("pruned %d snapshots, kept %d", deleted, args.keep)
    conn.close()


if __name__ == "__main__":
    main()
