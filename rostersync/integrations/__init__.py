"""Integration modules for external services."""

from .google_auth import build_service, fetch_admin_token, run_oauth_flow
from .gmail import GmailClient

__all__ = [
    "build_service",
    "fetch_admin_token",
    "run_oauth_flow",
    "GmailClient",
]
