"""Google Workspace users and groups via the Admin Directory API."""

import logging
import secrets
import threading
from typing import Any, Callable

from googleapiclient.errors import HttpError

from ..errors import ProviderError
from ..integrations.google_auth import build_service, fetch_admin_token
from ..models import Group, MembershipRole, RemoteGroup, RemoteUser, ServiceTag, User
from ..notifications import Notifier
from ..retry import with_read_retry
from ..token_store import Token, TokenStore
from .base import Capabilities, Provider, Provisioned

logger = logging.getLogger(__name__)

GROUP_ROLES = {
    MembershipRole.MEMBER: "MEMBER",
    MembershipRole.ADMIN: "OWNER",
}


class GoogleWorkspaceProvider(Provider):
    """Directory accounts, aliases, groups and group members."""

    tag = ServiceTag.GOOGLE
    capabilities = Capabilities.GROUPS | Capabilities.GROUP_ROLES
    welcome_template = "welcome"

    def __init__(
        self,
        company,
        notifier: Notifier | None = None,
        token_store: TokenStore | None = None,
        fetch_token: Callable[[], Token] = fetch_admin_token,
        service=None,
    ):
        """Initialize Google Workspace provider.

        Args:
            company: Company whose Workspace domain is managed.
            notifier: Notification sink for new accounts.
            token_store: Shared token cache.
            fetch_token: Produces a fresh admin access token.
            service: Prebuilt directory service (tests).
        """
        super().__init__(company, notifier)
        self.token_store = token_store or TokenStore()
        self.fetch_token = fetch_token
        self._static_service = service
        self._service = None
        self._service_token: str | None = None
        self._service_lock = threading.Lock()

    def check_configuration(self) -> None:
        if self._static_service is None:
            # Raises ConfigurationError when the admin account is not authorized
            self.token_store.get(self.company.name, self.name, self.fetch_token)

    @property
    def service(self):
        """Directory service, rebuilt when the access token rotates."""
        if self._static_service is not None:
            return self._static_service
        token = self.token_store.get(self.company.name, self.name, self.fetch_token)
        with self._service_lock:
            if self._service is None or token != self._service_token:
                self._service = build_service("admin", "directory_v1", token)
                self._service_token = token
            return self._service

    def _execute(self, request) -> dict[str, Any]:
        try:
            return request.execute() or {}
        except HttpError as e:
            raise ProviderError.from_google_http_error(self.name, e) from e

    def group_email(self, name: str) -> str:
        return f"{name}@{self.company.domain}"

    def _domain_aliases(self, aliases: list[str]) -> list[str]:
        return [a if "@" in a else f"{a}@{self.company.domain}" for a in aliases]

    def welcome_template_for(self, user: User) -> str:
        return "consultant_welcome" if user.is_consultant else "welcome"

    # --- Users ---

    @with_read_retry
    def _get_user(self, key: str) -> dict[str, Any] | None:
        try:
            return self._execute(self.service.users().get(userKey=key))
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    def _user_patch(self, existing: dict[str, Any], user: User) -> dict[str, Any]:
        """Fields that differ between the remote account and the roster."""
        patch: dict[str, Any] = {}
        name = existing.get("name", {})
        if name.get("givenName") != user.first_name or name.get("familyName") != user.last_name:
            patch["name"] = {"givenName": user.first_name, "familyName": user.last_name}
        if user.recovery_email and existing.get("recoveryEmail") != user.recovery_email:
            patch["recoveryEmail"] = user.recovery_email
        if user.recovery_phone and existing.get("recoveryPhone") != user.recovery_phone:
            patch["recoveryPhone"] = user.recovery_phone
        return patch

    def _ensure_user(self, user: User) -> Provisioned:
        existing = self._get_user(user.external_ids.get(self.name) or user.email)

        if existing is None:
            password = secrets.token_urlsafe(16)
            body: dict[str, Any] = {
                "primaryEmail": user.email,
                "name": {"givenName": user.first_name, "familyName": user.last_name},
                "password": password,
                "changePasswordAtNextLogin": True,
            }
            if user.recovery_email:
                body["recoveryEmail"] = user.recovery_email
            if user.recovery_phone:
                body["recoveryPhone"] = user.recovery_phone

            created = self._execute(self.service.users().insert(body=body))
            self._ensure_user_aliases(created["id"], user, [])
            return Provisioned(created["id"], created=True, context={"password": password})

        patch = self._user_patch(existing, user)
        if patch:
            self._execute(self.service.users().patch(userKey=existing["id"], body=patch))
            logger.info(f"[{self.name}] updated user {user.email}: {sorted(patch)}")

        self._ensure_user_aliases(existing["id"], user, existing.get("aliases", []))
        return Provisioned(existing["id"])

    def _ensure_user_aliases(self, user_id: str, user: User, current: list[str]) -> None:
        for alias in self._domain_aliases(user.aliases):
            if alias in current or alias == user.email:
                continue
            try:
                self._execute(
                    self.service.users().aliases().insert(userKey=user_id, body={"alias": alias})
                )
                logger.info(f"[{self.name}] added alias {alias} to {user.email}")
            except ProviderError as e:
                if not e.is_conflict:
                    raise
                logger.debug(f"[{self.name}] alias {alias} already exists")

    def delete_user(self, user: User) -> None:
        key = user.external_ids.get(self.name) or user.email
        try:
            self._execute(self.service.users().delete(userKey=key))
            logger.info(f"[{self.name}] deleted user {user.email}")
        except ProviderError as e:
            self._ignore_missing(e, f"user {user.email}")

    @with_read_retry
    def list_remote_users(self) -> list[RemoteUser]:
        users = self._paginate(
            self.service.users().list,
            "users",
            customer=self.company.google_customer_id,
            maxResults=500,
        )
        return [RemoteUser(key=u["primaryEmail"], external_id=u["id"]) for u in users]

    def _paginate(self, method, items_key: str, **kwargs) -> list[dict[str, Any]]:
        items: list[dict[str, Any]] = []
        page_token = None
        while True:
            if page_token:
                kwargs["pageToken"] = page_token
            response = self._execute(method(**kwargs))
            items.extend(response.get(items_key, []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return items

    # --- Groups ---

    @with_read_retry
    def _get_group(self, name: str) -> dict[str, Any] | None:
        try:
            return self._execute(self.service.groups().get(groupKey=self.group_email(name)))
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    @with_read_retry
    def get_membership_role(self, user: User, group: str) -> MembershipRole | None:
        try:
            member = self._execute(
                self.service.members().get(groupKey=self.group_email(group), memberKey=user.email)
            )
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise
        return MembershipRole.ADMIN if member.get("role") in ("OWNER", "MANAGER") else MembershipRole.MEMBER

    def add_membership(self, user: User, group: str) -> None:
        group_key = self.group_email(group)
        role = GROUP_ROLES[self.required_role(user)]
        body = {"email": user.email, "role": role}

        if self.get_membership_role(user, group) is not None:
            self._update_member(group_key, user.email, body)
            logger.info(f"[{self.name}] updated {user.email} in {group} to {role}")
            return

        try:
            self._execute(self.service.members().insert(groupKey=group_key, body=body))
        except ProviderError as e:
            if not e.is_conflict:
                raise
            # Member already exists: set the role instead
            self._update_member(group_key, user.email, body)
        logger.info(f"[{self.name}] added {user.email} to {group} as {role}")

    def _update_member(self, group_key: str, email: str, body: dict[str, Any]) -> None:
        self._execute(self.service.members().update(groupKey=group_key, memberKey=email, body=body))

    def remove_membership(self, user: User, group: str) -> None:
        try:
            self._execute(
                self.service.members().delete(groupKey=self.group_email(group), memberKey=user.email)
            )
            logger.info(f"[{self.name}] removed {user.email} from {group}")
        except ProviderError as e:
            self._ignore_missing(e, f"{user.email} in {group}")

    def ensure_group(self, group: Group) -> str:
        existing = self._get_group(group.name)

        if existing is None:
            existing = self._execute(
                self.service.groups().insert(
                    body={
                        "email": self.group_email(group.name),
                        "name": group.name,
                        "description": group.description,
                    }
                )
            )
            logger.info(f"[{self.name}] created group {group.name}")
        elif existing.get("description", "") != group.description or existing.get("name") != group.name:
            self._execute(
                self.service.groups().patch(
                    groupKey=existing["id"],
                    body={"name": group.name, "description": group.description},
                )
            )
            logger.info(f"[{self.name}] updated group {group.name}")

        current_aliases = existing.get("aliases", [])
        for alias in self._domain_aliases(group.aliases):
            if alias in current_aliases:
                continue
            try:
                self._execute(
                    self.service.groups().aliases().insert(groupKey=existing["id"], body={"alias": alias})
                )
                logger.info(f"[{self.name}] added alias {alias} to group {group.name}")
            except ProviderError as e:
                if not e.is_conflict:
                    raise
                logger.debug(f"[{self.name}] alias {alias} already exists")

        return existing["id"]

    def delete_group(self, group: Group) -> None:
        try:
            self._execute(self.service.groups().delete(groupKey=self.group_email(group.name)))
            logger.info(f"[{self.name}] deleted group {group.name}")
        except ProviderError as e:
            self._ignore_missing(e, f"group {group.name}")

    @with_read_retry
    def list_remote_groups(self) -> list[RemoteGroup]:
        groups = self._paginate(
            self.service.groups().list,
            "groups",
            customer=self.company.google_customer_id,
            maxResults=200,
        )
        suffix = f"@{self.company.domain}"
        return [
            RemoteGroup(name=g["email"].removesuffix(suffix), external_id=g["id"])
            for g in groups
            if g["email"].endswith(suffix)
        ]
