"""Google OAuth authentication for the Workspace admin account."""

import json
import logging
from datetime import timezone

from google.auth.exceptions import RefreshError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import InstalledAppFlow
from googleapiclient.discovery import build

from ..config import (
    GOOGLE_ADMIN_EMAIL,
    GOOGLE_CLIENT_ID,
    GOOGLE_CLIENT_SECRET,
    GOOGLE_SCOPES,
    get_google_credentials_path,
    get_google_token_path,
)
from ..errors import ConfigurationError
from ..token_store import Token

logger = logging.getLogger(__name__)

PROVIDER = "google"


def get_client_config() -> dict:
    """Get OAuth client configuration from environment or file."""
    # First try to load from file
    creds_path = get_google_credentials_path()
    if creds_path.exists():
        with open(creds_path) as f:
            return json.load(f)

    # Fall back to environment variables
    if not GOOGLE_CLIENT_ID or not GOOGLE_CLIENT_SECRET:
        raise ValueError(
            "Google OAuth credentials not found. Either set GOOGLE_CLIENT_ID and "
            "GOOGLE_CLIENT_SECRET environment variables, or create "
            f"{creds_path} with your OAuth client credentials."
        )

    return {
        "installed": {
            "client_id": GOOGLE_CLIENT_ID,
            "client_secret": GOOGLE_CLIENT_SECRET,
            "auth_uri": "https://accounts.google.com/o/oauth2/auth",
            "token_uri": "https://oauth2.googleapis.com/token",
            "redirect_uris": ["http://localhost"],
        }
    }


def load_credentials() -> Credentials | None:
    """Load the stored admin credentials without refreshing them."""
    token_path = get_google_token_path()
    if not token_path.exists():
        logger.warning("No Google admin token file. Run scripts/authorize_google.py first.")
        return None
    return Credentials.from_authorized_user_file(str(token_path), GOOGLE_SCOPES)


def fetch_admin_token() -> Token:
    """Produce a fresh access token for the admin account.

    Used as the ``fetch`` callback of the token store, so it runs at most once
    per expiry no matter how many workers are waiting.

    Raises:
        ConfigurationError: If there is no stored token or it cannot be refreshed.
    """
    creds = load_credentials()
    if creds is None:
        raise ConfigurationError(PROVIDER, "Google admin account is not authorized")

    if not creds.valid:
        if not creds.refresh_token:
            raise ConfigurationError(PROVIDER, "Google admin token expired and has no refresh token")
        try:
            creds.refresh(Request())
        except RefreshError as e:
            raise ConfigurationError(PROVIDER, f"Refreshing Google admin token failed: {e}") from e
        _save_credentials(creds)

    # google-auth reports expiry as a naive UTC datetime
    expiry = creds.expiry.replace(tzinfo=timezone.utc) if creds.expiry else None
    return Token(creds.token, expiry)


def build_service(api: str, version: str, access_token: str):
    """Build a Google API client authorized with a bare access token."""
    creds = Credentials(token=access_token)
    return build(api, version, credentials=creds, cache_discovery=False)


def run_oauth_flow(open_browser: bool = True) -> Credentials:
    """Run interactive OAuth flow for the Google admin account.

    Args:
        open_browser: Whether to automatically open browser.

    Returns:
        Authenticated credentials.
    """
    email = GOOGLE_ADMIN_EMAIL or ""
    print(f"\n{'='*60}")
    print("OAuth Authentication for the Google Workspace admin account")
    print(f"Expected email: {email}")
    print(f"{'='*60}")
    print(f"\nPlease sign in with: {email}")
    print("(The account needs user and group administration privileges)\n")

    client_config = get_client_config()

    flow = InstalledAppFlow.from_client_config(client_config, GOOGLE_SCOPES)

    creds = flow.run_local_server(
        port=8080,
        open_browser=open_browser,
        prompt="consent",
        authorization_prompt_message=f"Opening browser for {email}...",
    )

    _save_credentials(creds)
    logger.info("Successfully authenticated the Google admin account")

    return creds


def _save_credentials(creds: Credentials) -> None:
    """Save credentials to token file."""
    token_path = get_google_token_path()
    token_path.parent.mkdir(parents=True, exist_ok=True)

    with open(token_path, "w") as f:
        f.write(creds.to_json())

    try:
        token_path.chmod(0o600)
    except OSError:
        logger.warning(f"Failed to set permissions on {token_path}")

    logger.debug(f"Saved credentials to {token_path}")


def revoke_credentials() -> bool:
    """Delete the stored admin credentials.

    Returns:
        True if credentials were deleted.
    """
    token_path = get_google_token_path()
    if token_path.exists():
        token_path.unlink()
        logger.info("Revoked Google admin credentials")
        return True
    return False
