#!/usr/bin/env python3
"""Run a single reconcile pass."""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rostersync.config import (
    ENABLED_PROVIDERS,
    LOG_FILE,
    LOG_LEVEL,
    RUN_DEADLINE_SECONDS,
    default_company,
    ensure_directories,
    validate_config,
)


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Reconcile the roster against identity providers")
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    parser.add_argument(
        "--validate-only",
        action="store_true",
        help="Only validate configuration and the roster, don't reconcile",
    )
    parser.add_argument(
        "--provider",
        action="append",
        dest="providers",
        help=f"Provider to reconcile (repeatable, default: {', '.join(ENABLED_PROVIDERS)})",
    )
    parser.add_argument(
        "--roster-dir",
        help="Read users.toml and groups.toml from this directory instead of the config repo",
    )
    parser.add_argument(
        "--deadline",
        type=int,
        default=RUN_DEADLINE_SECONDS,
        help="Seconds after which no new units start",
    )
    parser.add_argument(
        "--no-summary",
        action="store_true",
        help="Don't post the run summary to Slack",
    )

    args = parser.parse_args()

    # Ensure directories exist
    ensure_directories()

    # Configure logging
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

    from rostersync.errors import ReconcileInProgressError, RosterError
    from rostersync.reconcile import CancellationToken, default_roster_source, reconcile_company
    from rostersync.roster import FileRosterSource

    company = default_company()
    if args.roster_dir:
        roster_source = FileRosterSource(args.roster_dir, company)
    else:
        roster_source = default_roster_source(company)

    if args.validate_only:
        try:
            roster = roster_source.load()
        except RosterError as e:
            print(f"Roster is invalid: {e}")
            sys.exit(1)
        print(f"Roster is valid: {len(roster.users)} users, {len(roster.groups)} groups")
        sys.exit(1 if issues else 0)

    logger.info(f"Starting reconcile for {company.name}")
    try:
        report = reconcile_company(
            company=company,
            roster_source=roster_source,
            token=CancellationToken(args.deadline),
            provider_names=args.providers,
            post_summary=not args.no_summary,
        )
    except RosterError as e:
        logger.error(f"Roster is invalid, nothing was changed: {e}")
        sys.exit(1)
    except ReconcileInProgressError as e:
        logger.warning(str(e))
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Reconcile interrupted by user")
        sys.exit(130)

    print(report.summary())
    sys.exit(0 if report.ok else 1)


if __name__ == "__main__":
    main()
