"""Okta users and groups via the Okta management API."""

import logging
import threading
from typing import Any
from urllib.parse import quote

import httpx

from ..config import OKTA_API_TOKEN
from ..errors import ConfigurationError, ProviderError
from ..models import Group, MembershipRole, RemoteGroup, RemoteUser, ServiceTag, User
from ..notifications import Notifier
from ..retry import with_read_retry
from .base import Capabilities, Provider, Provisioned
from .http import RestClient, StaticAuth

logger = logging.getLogger(__name__)


class OktaProvider(Provider):
    """Okta accounts and OKTA_GROUP groups. Memberships have no roles."""

    tag = ServiceTag.OKTA
    capabilities = Capabilities.GROUPS
    immutable_groups = frozenset({"Everyone"})

    def __init__(
        self,
        company,
        notifier: Notifier | None = None,
        api_token: str | None = None,
        client: httpx.Client | None = None,
    ):
        super().__init__(company, notifier)
        self.api_token = api_token or OKTA_API_TOKEN
        self._client = client
        self._api: RestClient | None = None
        self._group_ids: dict[str, str] = {}
        self._group_lock = threading.Lock()

    def check_configuration(self) -> None:
        if not self.company.okta_domain:
            raise ConfigurationError(self.name, "no Okta domain configured")
        if not self.api_token:
            raise ConfigurationError(self.name, "OKTA_API_TOKEN is not set")

    @property
    def api(self) -> RestClient:
        if self._api is None:
            self._api = RestClient(
                self.name,
                f"https://{self.company.okta_domain}",
                StaticAuth(f"SSWS {self.api_token}"),
                client=self._client,
            )
        return self._api

    # --- Users ---

    @with_read_retry
    def _get_user(self, key: str) -> dict[str, Any] | None:
        try:
            return self.api.request("GET", f"/api/v1/users/{quote(key)}")
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    def _user_id(self, user: User) -> str | None:
        if user.external_ids.get(self.name):
            return user.external_ids[self.name]
        remote = self._get_user(user.email)
        return remote["id"] if remote else None

    @staticmethod
    def _profile(user: User) -> dict[str, str]:
        return {
            "firstName": user.first_name,
            "lastName": user.last_name,
            "email": user.email,
            "login": user.email,
        }

    def _ensure_user(self, user: User) -> Provisioned:
        existing = self._get_user(user.external_ids.get(self.name) or user.email)
        profile = self._profile(user)

        if existing is None:
            created = self.api.request(
                "POST",
                "/api/v1/users",
                json={"profile": profile},
                params={"activate": "true"},
            )
            return Provisioned(created["id"], created=True)

        current = existing.get("profile", {})
        changed = {k: v for k, v in profile.items() if current.get(k) != v}
        if changed:
            # POST on a user is a partial profile update
            self.api.request("POST", f"/api/v1/users/{existing['id']}", json={"profile": changed})
            logger.info(f"[{self.name}] updated user {user.email}: {sorted(changed)}")

        return Provisioned(existing["id"])

    def delete_user(self, user: User) -> None:
        user_id = user.external_ids.get(self.name) or user.email
        try:
            # The first DELETE deactivates, the second removes the account
            self.api.request("DELETE", f"/api/v1/users/{quote(user_id)}")
            self.api.request("DELETE", f"/api/v1/users/{quote(user_id)}")
            logger.info(f"[{self.name}] deleted user {user.email}")
        except ProviderError as e:
            self._ignore_missing(e, f"user {user.email}")

    @with_read_retry
    def list_remote_users(self) -> list[RemoteUser]:
        return [
            RemoteUser(key=u["profile"]["login"], external_id=u["id"])
            for u in self.api.paginate_links("/api/v1/users", params={"limit": 200})
        ]

    # --- Groups ---

    @with_read_retry
    def _find_group(self, name: str) -> dict[str, Any] | None:
        # q= is a prefix search; only an exact name counts
        for group in self.api.request("GET", "/api/v1/groups", params={"q": name}):
            if group["profile"]["name"] == name:
                return group
        return None

    def _group_id(self, name: str) -> str | None:
        with self._group_lock:
            if name in self._group_ids:
                return self._group_ids[name]
        group = self._find_group(name)
        if group is None:
            return None
        with self._group_lock:
            self._group_ids[name] = group["id"]
        return group["id"]

    @with_read_retry
    def _user_group_names(self, user_id: str) -> set[str]:
        groups = self.api.request("GET", f"/api/v1/users/{user_id}/groups")
        return {g["profile"]["name"] for g in groups}

    def get_membership_role(self, user: User, group: str) -> MembershipRole | None:
        user_id = self._user_id(user)
        if user_id is None:
            return None
        if group in self._user_group_names(user_id):
            return MembershipRole.MEMBER
        return None

    def add_membership(self, user: User, group: str) -> None:
        group_id = self._group_id(group)
        if group_id is None:
            raise ProviderError.from_status(self.name, 404, f"group {group} does not exist")
        user_id = self._user_id(user)
        if user_id is None:
            raise ProviderError.from_status(self.name, 404, f"user {user.email} does not exist")

        self.api.request("PUT", f"/api/v1/groups/{group_id}/users/{user_id}")
        logger.info(f"[{self.name}] added {user.email} to {group}")

    def remove_membership(self, user: User, group: str) -> None:
        group_id = self._group_id(group)
        user_id = self._user_id(user)
        if group_id is None or user_id is None:
            return
        try:
            self.api.request("DELETE", f"/api/v1/groups/{group_id}/users/{user_id}")
            logger.info(f"[{self.name}] removed {user.email} from {group}")
        except ProviderError as e:
            self._ignore_missing(e, f"{user.email} in {group}")

    def ensure_group(self, group: Group) -> str:
        if self.is_immutable_group(group.name):
            return self._group_id(group.name) or ""

        existing = self._find_group(group.name)
        profile = {"name": group.name, "description": group.description}

        if existing is None:
            existing = self.api.request("POST", "/api/v1/groups", json={"profile": profile})
            logger.info(f"[{self.name}] created group {group.name}")
        elif (existing["profile"].get("description") or "") != group.description:
            self.api.request("PUT", f"/api/v1/groups/{existing['id']}", json={"profile": profile})
            logger.info(f"[{self.name}] updated group {group.name}")

        with self._group_lock:
            self._group_ids[group.name] = existing["id"]
        return existing["id"]

    def delete_group(self, group: Group) -> None:
        if self.is_immutable_group(group.name):
            return
        group_id = self._group_id(group.name)
        if group_id is None:
            return
        try:
            self.api.request("DELETE", f"/api/v1/groups/{group_id}")
            logger.info(f"[{self.name}] deleted group {group.name}")
        except ProviderError as e:
            self._ignore_missing(e, f"group {group.name}")
        with self._group_lock:
            self._group_ids.pop(group.name, None)

    @with_read_retry
    def list_remote_groups(self) -> list[RemoteGroup]:
        groups = self.api.paginate_links(
            "/api/v1/groups",
            params={"filter": 'type eq "OKTA_GROUP"', "limit": 200},
        )
        return [RemoteGroup(name=g["profile"]["name"], external_id=g["id"]) for g in groups]
