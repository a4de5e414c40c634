"""Base class for identity provider adapters.

A provider drives one vendor's users and groups toward the roster. The
reconcile driver only talks to this interface; vendor JSON never leaves the
adapter.

Providers that have no concept of groups keep the default group methods,
which are no-ops that make no network calls. That lets the driver run the
same loop over every provider.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Flag, auto
from typing import Any

from ..errors import ProviderError
from ..models import Company, Group, MembershipRole, RemoteGroup, RemoteUser, ServiceTag, User
from ..notifications import Notifier

logger = logging.getLogger(__name__)


class Capabilities(Flag):
    """What a provider supports beyond user lifecycle."""
    NONE = 0
    GROUPS = auto()
    GROUP_ROLES = auto()  # group memberships carry an admin/member role
    FULL_TIME_ONLY = auto()  # only full-time employees get accounts


@dataclass
class Provisioned:
    """Outcome of provisioning a user on a provider."""

    external_id: str
    created: bool = False
    context: dict[str, Any] = field(default_factory=dict)  # extra notification values


class Provider(ABC):
    """An identity provider the roster is reconciled against."""

    tag: ServiceTag
    capabilities: Capabilities = Capabilities.NONE

    # Groups the provider manages itself, e.g. an implicit "everyone" group
    immutable_groups: frozenset[str] = frozenset()

    # Overrides WORKERS_PER_PROVIDER for vendors with tight rate limits
    max_workers: int | None = None

    welcome_template = "account_created"

    def __init__(self, company: Company, notifier: Notifier | None = None):
        self.company = company
        self.notifier = notifier

    @property
    def name(self) -> str:
        return self.tag.value

    @property
    def supports_groups(self) -> bool:
        return Capabilities.GROUPS in self.capabilities

    def check_configuration(self) -> None:
        """Raise ConfigurationError if the provider cannot be used this run."""

    # --- Eligibility ---

    def missing_prerequisites(self, user: User) -> str | None:
        """Vendor-specific reason a user cannot be provisioned, if any."""
        return None

    def eligibility(self, user: User) -> str | None:
        """Return why a user is skipped on this provider, or None if eligible."""
        if user.is_denied(self.tag):
            return f"{self.name} is in the user's denied services"
        if Capabilities.FULL_TIME_ONLY in self.capabilities and not user.is_full_time:
            return f"{self.name} accounts are for full-time employees only"
        return self.missing_prerequisites(user)

    # --- User lifecycle ---

    def ensure_user(self, user: User) -> str:
        """Create or update the user's remote account.

        Returns:
            The provider's ID for the user, or "" if the user was skipped.
        """
        reason = self.eligibility(user)
        if reason:
            logger.debug(f"[{self.name}] skipping {user.email}: {reason}")
            return ""

        result = self._ensure_user(user)
        if result.created:
            logger.info(f"[{self.name}] created user {user.email}")
            self._welcome(user, result)
        return result.external_id

    @abstractmethod
    def _ensure_user(self, user: User) -> Provisioned:
        """Vendor-specific create-or-update; must not write when nothing changed."""

    def welcome_template_for(self, user: User) -> str:
        return self.welcome_template

    def _welcome(self, user: User, result: Provisioned) -> None:
        if not self.notifier:
            return
        context = {"provider": self.name, **result.context}
        try:
            self.notifier.notify(user, self.welcome_template_for(user), context)
        except Exception:
            # The account already exists
            logger.exception(f"[{self.name}] welcome notification for {user.email} failed")

    @abstractmethod
    def delete_user(self, user: User) -> None:
        """Deprovision a user. A user that is already gone is not an error."""

    @abstractmethod
    def list_remote_users(self) -> list[RemoteUser]:
        """Enumerate every user the provider knows about."""

    # --- Groups (no-ops unless the provider supports them) ---

    def required_role(self, user: User) -> MembershipRole:
        if Capabilities.GROUP_ROLES in self.capabilities:
            return user.role
        return MembershipRole.MEMBER

    def is_immutable_group(self, group: str) -> bool:
        return group in self.immutable_groups

    def get_membership_role(self, user: User, group: str) -> MembershipRole | None:
        """Current role of the user in a group, or None if not a member."""
        return None

    def check_membership(self, user: User, group: str) -> bool:
        """Whether the user is a member of the group with the required role."""
        if not self.supports_groups:
            return False
        if self.is_immutable_group(group):
            return True
        role = self.get_membership_role(user, group)
        return role is not None and role == self.required_role(user)

    def add_membership(self, user: User, group: str) -> None:
        """Add the user to the group, or update their role in place."""

    def remove_membership(self, user: User, group: str) -> None:
        """Remove the user from the group. Absence is not an error."""

    def ensure_group(self, group: Group) -> str:
        """Create or update the remote group. Returns its ID, or ""."""
        return ""

    def delete_group(self, group: Group) -> None:
        """Delete the remote group. Absence is not an error."""

    def list_remote_groups(self) -> list[RemoteGroup]:
        return []

    # --- Helpers ---

    def _ignore_missing(self, error: ProviderError, what: str) -> None:
        """Swallow a not-found error (logging it), re-raise anything else."""
        if not error.is_not_found:
            raise error
        logger.debug(f"[{self.name}] {what} already absent")

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} {self.company.name}>"
