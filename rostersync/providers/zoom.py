"""Zoom licensed users via a Server-to-Server OAuth app."""

import logging
from typing import Any
from urllib.parse import quote

import httpx

from ..config import ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID, ZOOM_CLIENT_SECRET
from ..errors import ConfigurationError, ProviderError
from ..models import RemoteUser, ServiceTag, User
from ..notifications import Notifier
from ..retry import with_read_retry
from ..token_store import Token, TokenStore
from .base import Capabilities, Provider, Provisioned
from .http import RestClient, TokenAuth, fetch_client_credentials_token

logger = logging.getLogger(__name__)

API_URL = "https://api.zoom.us/v2"
TOKEN_URL = "https://zoom.us/oauth/token"

LICENSED = 2


class ZoomProvider(Provider):
    """Licensed Zoom seats for full-time employees."""

    tag = ServiceTag.ZOOM
    capabilities = Capabilities.FULL_TIME_ONLY

    # Zoom's per-second limits are low on the user endpoints
    max_workers = 2

    def __init__(
        self,
        company,
        notifier: Notifier | None = None,
        token_store: TokenStore | None = None,
        account_id: str | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(company, notifier)
        self.account_id = account_id or ZOOM_ACCOUNT_ID
        self.client_id = client_id or ZOOM_CLIENT_ID
        self.client_secret = client_secret or ZOOM_CLIENT_SECRET
        self._client = client
        self.api = RestClient(
            self.name,
            API_URL,
            TokenAuth(token_store or TokenStore(), company.name, self.name, self._fetch_token),
            client=client,
        )

    def check_configuration(self) -> None:
        if not (self.account_id and self.client_id and self.client_secret):
            raise ConfigurationError(
                self.name, "ZOOM_ACCOUNT_ID, ZOOM_CLIENT_ID and ZOOM_CLIENT_SECRET must be set"
            )

    def _fetch_token(self) -> Token:
        return fetch_client_credentials_token(
            self.name,
            TOKEN_URL,
            self.client_id,
            self.client_secret,
            data={"grant_type": "account_credentials", "account_id": self.account_id},
            client=self._client,
        )

    @with_read_retry
    def _get_user(self, key: str) -> dict[str, Any] | None:
        try:
            return self.api.request("GET", f"/users/{quote(key)}")
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    def _ensure_user(self, user: User) -> Provisioned:
        existing = self._get_user(user.external_ids.get(self.name) or user.email)

        if existing is None:
            created = self.api.request(
                "POST",
                "/users",
                json={
                    "action": "create",
                    "user_info": {
                        "email": user.email,
                        "type": LICENSED,
                        "first_name": user.first_name,
                        "last_name": user.last_name,
                    },
                },
            )
            return Provisioned(created["id"], created=True)

        if existing.get("first_name") != user.first_name or existing.get("last_name") != user.last_name:
            self.api.request(
                "PATCH",
                f"/users/{existing['id']}",
                json={"first_name": user.first_name, "last_name": user.last_name},
            )
            logger.info(f"[{self.name}] updated name for {user.email}")

        return Provisioned(existing["id"])

    def delete_user(self, user: User) -> None:
        key = user.external_ids.get(self.name) or user.email
        try:
            self.api.request("DELETE", f"/users/{quote(key)}", params={"action": "delete"})
            logger.info(f"[{self.name}] deleted user {user.email}")
        except ProviderError as e:
            self._ignore_missing(e, f"user {user.email}")

    @with_read_retry
    def list_remote_users(self) -> list[RemoteUser]:
        users: list[RemoteUser] = []
        params: dict[str, Any] = {"page_size": 300}
        while True:
            page = self.api.request("GET", "/users", params=params)
            users.extend(RemoteUser(key=u["email"], external_id=u["id"]) for u in page.get("users", []))
            next_token = page.get("next_page_token")
            if not next_token:
                return users
            params["next_page_token"] = next_token
