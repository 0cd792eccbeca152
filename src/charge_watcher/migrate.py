import argparse
import logging
from pathlib import Path
from typing import Iterable, Iterator, List

from . import storage
from .data import Session, fetch_sessions
from .logging_utils import setup_logging

logger = logging.getLogger(__name__)


def _batches(sessions: Iterable[Session], batch_size: int) -> Iterator[List[Session]]:
    batch: List[Session] = []
    for session in sessions:
        batch.append(session)
        if len(batch) >= batch_size:
            yield batch
            batch = []
    if batch:
        yield batch


def migrate(export: Path, db_url: str, truncate: bool, batch_size: int) -> int:
    """Import a JSON session export into MySQL."""
    logger.info("Starting import from %s to %s", export, db_url)
    sessions = fetch_sessions(export)
    conn = storage.connect(db_url)
    try:
        if truncate:
            with conn.cursor() as cur:
                cur.execute("TRUNCATE TABLE power_readings")
                cur.execute("TRUNCATE TABLE charging_sessions")
            conn.commit()
        else:
            with conn.cursor() as cur:
                cur.execute("SELECT COUNT(*) FROM charging_sessions")
                count = cur.fetchone()[0]
            if count:
                raise RuntimeError(
                    "Destination database already contains sessions. Use --truncate to overwrite."
                )

        migrated = 0
        for batch in _batches(sessions, batch_size):
            migrated += storage.save_sessions(conn, batch)
            logger.debug("Imported %d sessions so far", migrated)
        logger.info("Imported %d sessions", migrated)
        return migrated
    finally:
        conn.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Import a session export into MySQL")
    parser.add_argument("--file", type=Path, required=True, help="JSON session export")
    parser.add_argument("--db-url", required=True, help="Destination MySQL connection URL")
    parser.add_argument(
        "--truncate",
        action="store_true",
        help="Clear existing sessions before importing",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=500,
        help="Number of sessions per transaction batch",
    )
    parser.add_argument("--debug", action="store_true")
    args = parser.parse_args()

    setup_logging(args.debug)

    if not args.file.exists():
        raise SystemExit(f"Session export {args.file} not found")

    migrated = migrate(args.file, args.db_url, args.truncate, args.batch_size)
    logger.info("Import complete (%d sessions)", migrated)


if __name__ == "__main__":
    main()
