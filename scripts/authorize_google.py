#!/usr/bin/env python3
"""Authorize the Google Workspace admin account for directory and Gmail access."""

import argparse
import logging
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from rostersync.config import GOOGLE_ADMIN_EMAIL, ensure_directories
from rostersync.integrations.google_auth import revoke_credentials, run_oauth_flow

logging.basicConfig(level=logging.INFO, format="%(levelname)s - %(message)s")


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Authorize the Google Workspace admin account")
    parser.add_argument(
        "--no-browser",
        action="store_true",
        help="Print the authorization URL instead of opening a browser",
    )
    parser.add_argument(
        "--revoke",
        action="store_true",
        help="Delete the stored credentials",
    )

    args = parser.parse_args()
    ensure_directories()

    if args.revoke:
        if revoke_credentials():
            print("Stored credentials deleted")
        else:
            print("No stored credentials")
        return

    try:
        run_oauth_flow(open_browser=not args.no_browser)
    except ValueError as e:
        print(f"Cannot authorize: {e}")
        sys.exit(1)

    print(f"\nAuthorized {GOOGLE_ADMIN_EMAIL or 'the admin account'}")


if __name__ == "__main__":
    main()
