"""Airtable enterprise users via SCIM 2.0."""

import logging
from typing import Any

import httpx

from ..config import AIRTABLE_API_KEY
from ..errors import ConfigurationError, ProviderError
from ..models import RemoteUser, ServiceTag, User
from ..notifications import Notifier
from ..retry import with_read_retry
from .base import Provider, Provisioned
from .http import RestClient, StaticAuth

logger = logging.getLogger(__name__)

API_URL = "https://airtable.com/scim/v2"

USER_SCHEMA = "urn:ietf:params:scim:schemas:core:2.0:User"
PATCH_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:PatchOp"


class AirtableProvider(Provider):
    """Airtable seats. Groups are not managed."""

    tag = ServiceTag.AIRTABLE

    def __init__(
        self,
        company,
        notifier: Notifier | None = None,
        api_key: str | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(company, notifier)
        self.api_key = api_key or AIRTABLE_API_KEY
        self.api = RestClient(
            self.name,
            API_URL,
            StaticAuth(f"Bearer {self.api_key}"),
            client=client,
            extra_headers={"Content-Type": "application/scim+json"},
        )

    def check_configuration(self) -> None:
        if not self.api_key:
            raise ConfigurationError(self.name, "AIRTABLE_API_KEY is not set")

    def _patch(self, user_id: str, operations: list[dict[str, Any]]) -> None:
        self.api.request(
            "PATCH",
            f"/Users/{user_id}",
            json={"schemas": [PATCH_SCHEMA], "Operations": operations},
        )

    @with_read_retry
    def _find_user(self, user: User) -> dict[str, Any] | None:
        response = self.api.request(
            "GET", "/Users", params={"filter": f'userName eq "{user.email}"'}
        )
        resources = response.get("Resources", [])
        return resources[0] if resources else None

    def _ensure_user(self, user: User) -> Provisioned:
        existing = self._find_user(user)

        if existing is None:
            created = self.api.request(
                "POST",
                "/Users",
                json={
                    "schemas": [USER_SCHEMA],
                    "userName": user.email,
                    "name": {"givenName": user.first_name, "familyName": user.last_name},
                },
            )
            return Provisioned(created["id"], created=True)

        operations = []
        name = existing.get("name", {})
        if name.get("givenName") != user.first_name or name.get("familyName") != user.last_name:
            operations.append({
                "op": "replace",
                "path": "name",
                "value": {"givenName": user.first_name, "familyName": user.last_name},
            })
        if not existing.get("active", True):
            operations.append({"op": "replace", "path": "active", "value": True})

        if operations:
            self._patch(existing["id"], operations)
            logger.info(f"[{self.name}] updated user {user.email}")

        return Provisioned(existing["id"])

    def delete_user(self, user: User) -> None:
        existing = self._find_user(user)
        if existing is None or not existing.get("active", True):
            logger.debug(f"[{self.name}] user {user.email} already absent")
            return
        try:
            # SCIM seats are deactivated rather than deleted
            self._patch(existing["id"], [{"op": "replace", "path": "active", "value": False}])
            logger.info(f"[{self.name}] deactivated user {user.email}")
        except ProviderError as e:
            self._ignore_missing(e, f"user {user.email}")

    @with_read_retry
    def list_remote_users(self) -> list[RemoteUser]:
        users: list[RemoteUser] = []
        start = 1
        while True:
            response = self.api.request(
                "GET", "/Users", params={"startIndex": start, "count": 100}
            )
            resources = response.get("Resources", [])
            users.extend(
                RemoteUser(key=u["userName"], external_id=u["id"])
                for u in resources
                if u.get("active", True)
            )
            start += len(resources)
            if not resources or start > response.get("totalResults", 0):
                return users
