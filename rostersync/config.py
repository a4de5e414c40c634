"""Configuration management for Roster Sync."""

import os
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Project root directory
PROJECT_ROOT = Path(__file__).parent.parent.resolve()

# Load environment variables from .env file
load_dotenv(PROJECT_ROOT / ".env")


def get_env(key: str, default: str | None = None, required: bool = False) -> str | None:
    """Get environment variable with optional default and required check."""
    value = os.getenv(key, default)
    if required and value is None:
        raise ValueError(f"Required environment variable {key} is not set")
    return value


def get_env_list(key: str, default: list[str] | None = None) -> list[str]:
    """Get environment variable as a list (comma-separated)."""
    value = os.getenv(key)
    if not value:
        return default or []
    return [item.strip() for item in value.split(",") if item.strip()]


def get_env_int(key: str, default: int) -> int:
    """Get environment variable as an integer."""
    value = os.getenv(key)
    if not value:
        return default
    return int(value)


def get_env_bool(key: str, default: bool = False) -> bool:
    """Get environment variable as a boolean."""
    value = os.getenv(key)
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes")


# Company Configuration
COMPANY_NAME = get_env("COMPANY_NAME", "default")
COMPANY_DOMAIN = get_env("COMPANY_DOMAIN", "example.com")

# Roster source
# ROSTER_REPO: owner/repo holding the company configuration files
# ROSTER_DIR: local directory with users.toml and groups.toml (takes precedence)
ROSTER_REPO = get_env("ROSTER_REPO")
ROSTER_BRANCH = get_env("ROSTER_BRANCH", "main")
ROSTER_USERS_PATH = get_env("ROSTER_USERS_PATH", "configs/users.toml")
ROSTER_GROUPS_PATH = get_env("ROSTER_GROUPS_PATH", "configs/groups.toml")
ROSTER_DIR = get_env("ROSTER_DIR")

# GitHub Configuration
GITHUB_TOKEN = get_env("GITHUB_TOKEN")
GITHUB_ORG = get_env("GITHUB_ORG")

# Google Workspace Configuration
GOOGLE_CLIENT_ID = get_env("GOOGLE_CLIENT_ID")
GOOGLE_CLIENT_SECRET = get_env("GOOGLE_CLIENT_SECRET")
GOOGLE_ADMIN_EMAIL = get_env("GOOGLE_ADMIN_EMAIL")
GOOGLE_CUSTOMER_ID = get_env("GOOGLE_CUSTOMER_ID", "my_customer")

# Google API scopes
GOOGLE_SCOPES = [
    "https://www.googleapis.com/auth/admin.directory.user",
    "https://www.googleapis.com/auth/admin.directory.user.alias",
    "https://www.googleapis.com/auth/admin.directory.group",
    "https://www.googleapis.com/auth/admin.directory.group.member",
    "https://www.googleapis.com/auth/gmail.send",  # Welcome emails
]


def get_google_token_path() -> Path:
    """Get the path to the OAuth token file for the Google admin account."""
    return PROJECT_ROOT / "credentials" / "google_admin_token.json"


def get_google_credentials_path() -> Path:
    """Get the path to the Google OAuth client credentials file."""
    return PROJECT_ROOT / "credentials" / "google_client_secret.json"


# Okta Configuration
OKTA_DOMAIN = get_env("OKTA_DOMAIN")
OKTA_API_TOKEN = get_env("OKTA_API_TOKEN")

# Zoom Configuration (server-to-server OAuth app)
ZOOM_ACCOUNT_ID = get_env("ZOOM_ACCOUNT_ID")
ZOOM_CLIENT_ID = get_env("ZOOM_CLIENT_ID")
ZOOM_CLIENT_SECRET = get_env("ZOOM_CLIENT_SECRET")

# Ramp Configuration (client credentials)
RAMP_CLIENT_ID = get_env("RAMP_CLIENT_ID")
RAMP_CLIENT_SECRET = get_env("RAMP_CLIENT_SECRET")

# Airtable Configuration (enterprise SCIM)
AIRTABLE_API_KEY = get_env("AIRTABLE_API_KEY")

# Slack Configuration
SLACK_BOT_TOKEN = get_env("SLACK_BOT_TOKEN")
SLACK_NOTIFY_CHANNEL = get_env("SLACK_NOTIFY_CHANNEL")

# Providers to reconcile, in order
ENABLED_PROVIDERS = get_env_list(
    "ENABLED_PROVIDERS",
    ["github", "google", "okta", "zoom", "ramp", "airtable"],
)

# Concurrency
WORKERS_PER_PROVIDER = get_env_int("WORKERS_PER_PROVIDER", 4)
PROVIDER_CONCURRENCY = get_env_int("PROVIDER_CONCURRENCY", 3)

# Scheduling
RECONCILE_CRON = get_env("RECONCILE_CRON", "0 * * * *")  # Top of every hour
RUN_DEADLINE_SECONDS = get_env_int("RUN_DEADLINE_SECONDS", 50 * 60)
RUN_LOCK_TTL_SECONDS = get_env_int("RUN_LOCK_TTL_SECONDS", 2 * 60 * 60)

# Retries (read operations only)
READ_RETRY_ATTEMPTS = get_env_int("READ_RETRY_ATTEMPTS", 4)
READ_RETRY_BACKOFF = float(get_env("READ_RETRY_BACKOFF", "1.0"))

# HTTP
HTTP_TIMEOUT = float(get_env("HTTP_TIMEOUT", "30.0"))

# Notifications
SEND_WELCOME_EMAILS = get_env_bool("SEND_WELCOME_EMAILS", True)

# Database paths
SYNC_DB = PROJECT_ROOT / get_env("SYNC_DB", "data/rostersync.db")

# Logging configuration
LOG_LEVEL = get_env("LOG_LEVEL", "INFO")
LOG_FILE = PROJECT_ROOT / get_env("LOG_FILE", "logs/rostersync.log")

# Ensure required directories exist
DATA_DIR = PROJECT_ROOT / "data"
LOGS_DIR = PROJECT_ROOT / "logs"
CREDENTIALS_DIR = PROJECT_ROOT / "credentials"


def ensure_directories() -> None:
    """Create required directories if they don't exist."""
    for directory in [DATA_DIR, LOGS_DIR, CREDENTIALS_DIR]:
        directory.mkdir(parents=True, exist_ok=True)


def default_company():
    """Build the company record from the environment."""
    from .models import Company

    return Company(
        name=COMPANY_NAME,
        domain=COMPANY_DOMAIN,
        github_org=GITHUB_ORG or "",
        google_customer_id=GOOGLE_CUSTOMER_ID,
        okta_domain=OKTA_DOMAIN or "",
    )


def get_config() -> dict[str, Any]:
    """Return all configuration as a dictionary (excluding secrets)."""
    return {
        "project_root": str(PROJECT_ROOT),
        "company_name": COMPANY_NAME,
        "company_domain": COMPANY_DOMAIN,
        "roster_repo": ROSTER_REPO,
        "roster_branch": ROSTER_BRANCH,
        "roster_dir": ROSTER_DIR,
        "github_org": GITHUB_ORG,
        "google_admin_email": GOOGLE_ADMIN_EMAIL,
        "google_customer_id": GOOGLE_CUSTOMER_ID,
        "okta_domain": OKTA_DOMAIN,
        "slack_notify_channel": SLACK_NOTIFY_CHANNEL,
        "enabled_providers": ENABLED_PROVIDERS,
        "workers_per_provider": WORKERS_PER_PROVIDER,
        "provider_concurrency": PROVIDER_CONCURRENCY,
        "reconcile_cron": RECONCILE_CRON,
        "run_deadline_seconds": RUN_DEADLINE_SECONDS,
        "read_retry_attempts": READ_RETRY_ATTEMPTS,
        "sync_db": str(SYNC_DB),
        "log_level": LOG_LEVEL,
    }


def validate_config() -> list[str]:
    """Validate configuration and return list of missing/invalid items."""
    issues = []

    # Roster source
    if not ROSTER_DIR and not ROSTER_REPO:
        issues.append("Neither ROSTER_DIR nor ROSTER_REPO is set (no roster to reconcile)")
    if ROSTER_REPO and not GITHUB_TOKEN:
        issues.append("ROSTER_REPO is set but GITHUB_TOKEN is not")

    # Per-provider credentials
    if "github" in ENABLED_PROVIDERS:
        if not GITHUB_TOKEN:
            issues.append("GITHUB_TOKEN not set")
        if not GITHUB_ORG:
            issues.append("GITHUB_ORG not set")
    if "google" in ENABLED_PROVIDERS:
        if not GOOGLE_CLIENT_ID:
            issues.append("GOOGLE_CLIENT_ID not set")
        if not GOOGLE_CLIENT_SECRET:
            issues.append("GOOGLE_CLIENT_SECRET not set")
    if "okta" in ENABLED_PROVIDERS:
        if not OKTA_DOMAIN:
            issues.append("OKTA_DOMAIN not set")
        if not OKTA_API_TOKEN:
            issues.append("OKTA_API_TOKEN not set")
    if "zoom" in ENABLED_PROVIDERS:
        if not (ZOOM_ACCOUNT_ID and ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET):
            issues.append("ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET must all be set")
    if "ramp" in ENABLED_PROVIDERS:
        if not (RAMP_CLIENT_ID and RAMP_CLIENT_SECRET):
            issues.append("RAMP_CLIENT_ID and RAMP_CLIENT_SECRET must both be set")
    if "airtable" in ENABLED_PROVIDERS:
        if not AIRTABLE_API_KEY:
            issues.append("AIRTABLE_API_KEY not set")

    unknown = set(ENABLED_PROVIDERS) - {"github", "google", "okta", "zoom", "ramp", "airtable"}
    for name in sorted(unknown):
        issues.append(f"Unknown provider in ENABLED_PROVIDERS: {name}")

    # Notifications
    if not SLACK_BOT_TOKEN:
        issues.append("SLACK_BOT_TOKEN not set (Slack notifications disabled)")

    return issues


# Initialize directories on import
ensure_directories()
