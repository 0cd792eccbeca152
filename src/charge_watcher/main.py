import argparse
import json
import logging
import time
from pathlib import Path

from .analyze import diagnose
from .data import fetch_sessions
from .recluster import recluster
from .snapshot import load_patterns, save_patterns
from .stats import from_patterns
from .logging_utils import setup_logging

logger = logging.getLogger(__name__)


def main() -> None:
    parser = argparse.ArgumentParser(description="Group charging sessions into devices")
    parser.add_argument("--file", type=Path, help="Local JSON session export to analyse")
    parser.add_argument(
        "--url",
        help="Remote session export (default: CHARGE_SESSIONS_URL)",
    )
    parser.add_argument(
        "--patterns",
        type=Path,
        default=Path("data/charging-patterns.json"),
        help="Pattern snapshot to read and update",
    )
    parser.add_argument(
        "--wipe",
        action="store_true",
        help="Ignore the existing snapshot and rebuild every pattern from scratch",
    )
    parser.add_argument(
        "--diagnostics",
        type=Path,
        help="Write a per-session profile and group report to this file",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    args = parser.parse_args()

    setup_logging(args.debug)

    start = time.monotonic()
    logger.info("Reading sessions")
    sessions = fetch_sessions(args.file, args.url)
    previous = [] if args.wipe else load_patterns(args.patterns).patterns
    store = recluster(sessions, previous)
    save_patterns(args.patterns, store)

    summary = from_patterns(store)
    logger.info(
        "%d patterns covering %d sessions (%d labelled) in %.2fs",
        summary["patterns"],
        summary["sessions"],
        summary["labelled_patterns"],
        time.monotonic() - start,
    )
    if args.diagnostics:
        report = diagnose(sessions, store)
        args.diagnostics.parent.mkdir(parents=True, exist_ok=True)
        args.diagnostics.write_text(json.dumps(report, indent=2), encoding="utf-8")
        logger.info("Wrote diagnostics to %s", args.diagnostics)


if __name__ == "__main__":
    main()
