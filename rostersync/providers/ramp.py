"""Ramp cardholders via the Ramp developer API."""

import logging
import threading
from typing import Any, Iterator

import httpx

from ..config import RAMP_CLIENT_ID, RAMP_CLIENT_SECRET
from ..errors import ConfigurationError, ProviderError
from ..models import RemoteUser, ServiceTag, User
from ..notifications import Notifier
from ..retry import with_read_retry
from ..token_store import Token, TokenStore
from .base import Capabilities, Provider, Provisioned
from .http import RestClient, TokenAuth, fetch_client_credentials_token

logger = logging.getLogger(__name__)

API_URL = "https://api.ramp.com/developer/v1"
TOKEN_URL = f"{API_URL}/token"
SCOPES = "users:read users:write departments:read"


class RampProvider(Provider):
    """Ramp business users. Invites go out by email and text."""

    tag = ServiceTag.RAMP
    capabilities = Capabilities.FULL_TIME_ONLY

    def __init__(
        self,
        company,
        notifier: Notifier | None = None,
        token_store: TokenStore | None = None,
        client_id: str | None = None,
        client_secret: str | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(company, notifier)
        self.client_id = client_id or RAMP_CLIENT_ID
        self.client_secret = client_secret or RAMP_CLIENT_SECRET
        self._client = client
        self.api = RestClient(
            self.name,
            API_URL,
            TokenAuth(token_store or TokenStore(), company.name, self.name, self._fetch_token),
            client=client,
        )
        self._departments: dict[str, str] | None = None
        self._departments_lock = threading.Lock()

    def check_configuration(self) -> None:
        if not (self.client_id and self.client_secret):
            raise ConfigurationError(self.name, "RAMP_CLIENT_ID and RAMP_CLIENT_SECRET must be set")

    def _fetch_token(self) -> Token:
        return fetch_client_credentials_token(
            self.name,
            TOKEN_URL,
            self.client_id,
            self.client_secret,
            data={"grant_type": "client_credentials", "scope": SCOPES},
            client=self._client,
        )

    def missing_prerequisites(self, user: User) -> str | None:
        # Ramp invites require a phone number for the card
        if not user.recovery_phone:
            return "no recovery phone in the roster"
        return None

    def _paginate(self, path: str, params: dict | None = None) -> Iterator[dict[str, Any]]:
        url: str | None = path
        while url:
            page = self.api.request("GET", url, params=params)
            yield from page.get("data", [])
            url = (page.get("page") or {}).get("next")
            params = None

    @with_read_retry
    def _department_ids(self) -> dict[str, str]:
        """Department name -> ID, fetched once per provider instance."""
        with self._departments_lock:
            if self._departments is None:
                self._departments = {d["name"]: d["id"] for d in self._paginate("/departments")}
            return self._departments

    def _department_id(self, user: User) -> str:
        if not user.department:
            return ""
        department_id = self._department_ids().get(user.department, "")
        if not department_id:
            logger.warning(f"[{self.name}] no department named {user.department!r}")
        return department_id

    @with_read_retry
    def _find_user(self, user: User) -> dict[str, Any] | None:
        external_id = user.external_ids.get(self.name)
        if external_id:
            try:
                return self.api.request("GET", f"/users/{external_id}")
            except ProviderError as e:
                if not e.is_not_found:
                    raise
        for remote in self._paginate("/users", params={"page_size": 100}):
            if remote.get("email", "").lower() == user.email.lower():
                return remote
        return None

    def _ensure_user(self, user: User) -> Provisioned:
        existing = self._find_user(user)
        department_id = self._department_id(user)

        if existing is None:
            body = {
                "email": user.email,
                "first_name": user.first_name,
                "last_name": user.last_name,
                "phone": user.recovery_phone,
                "role": "BUSINESS_USER",
            }
            if department_id:
                body["department_id"] = department_id
            created = self.api.request("POST", "/users/deferred", json=body)
            return Provisioned(created["id"], created=True)

        if department_id and existing.get("department_id") != department_id:
            self.api.request(
                "PATCH", f"/users/{existing['id']}", json={"department_id": department_id}
            )
            logger.info(f"[{self.name}] moved {user.email} to {user.department}")

        return Provisioned(existing["id"])

    def delete_user(self, user: User) -> None:
        existing = self._find_user(user)
        if existing is None:
            logger.debug(f"[{self.name}] user {user.email} already absent")
            return
        try:
            self.api.request("PATCH", f"/users/{existing['id']}/deactivate")
            logger.info(f"[{self.name}] deactivated user {user.email}")
        except ProviderError as e:
            self._ignore_missing(e, f"user {user.email}")

    @with_read_retry
    def list_remote_users(self) -> list[RemoteUser]:
        return [
            RemoteUser(key=u["email"], external_id=u["id"])
            for u in self._paginate("/users", params={"page_size": 100})
        ]
