#!/usr/bin/env python3
"""Run reconcile passes on the configured cron schedule."""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rostersync.config import LOG_FILE, LOG_LEVEL, RECONCILE_CRON, ensure_directories, validate_config


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Run scheduled roster reconciliation")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--run-now",
        action="store_true",
        help="Run one pass immediately before waiting for the schedule",
    )

    args = parser.parse_args()

    ensure_directories()

    log_level = logging.DEBUG if args.debug else getattr(logging, LOG_LEVEL)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(LOG_FILE),
        ],
    )
    logger = logging.getLogger(__name__)

    issues = validate_config()
    if issues:
        logger.warning("Configuration issues:")
        for issue in issues:
            logger.warning(f"  - {issue}")

    from rostersync.scheduler import run_scheduler

    logger.info(f"Starting scheduler ({RECONCILE_CRON})")
    logger.info(f"Log file: {LOG_FILE}")
    try:
        run_scheduler(run_now=args.run_now)
    except Exception as e:
        logger.error(f"Scheduler crashed: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
