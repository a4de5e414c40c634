"""Vendor-agnostic roster model shared by the driver and every provider."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any


class ServiceTag(str, Enum):
    """Identity providers a roster can be reconciled against."""
    GITHUB = "github"
    GOOGLE = "google"
    OKTA = "okta"
    ZOOM = "zoom"
    RAMP = "ramp"
    AIRTABLE = "airtable"


class EmploymentType(str, Enum):
    """Employment status, derived from roster group membership."""
    FULL_TIME = "full-time"
    CONSULTANT = "consultant"
    SYSTEM_ACCOUNT = "system account"


class MembershipRole(str, Enum):
    """Vendor-neutral role of a user inside a group."""
    MEMBER = "member"
    ADMIN = "admin"


@dataclass
class Company:
    """The organization whose providers are being reconciled."""

    name: str
    domain: str
    github_org: str = ""
    google_customer_id: str = "my_customer"
    okta_domain: str = ""


@dataclass
class User:
    """A person (or system account) from the roster."""

    username: str
    first_name: str
    last_name: str
    email: str = ""
    recovery_email: str = ""
    recovery_phone: str = ""
    github: str = ""
    department: str = ""
    aliases: list[str] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    is_group_admin: bool = False
    denied_services: set[str] = field(default_factory=set)
    employment_type: EmploymentType = EmploymentType.FULL_TIME

    # Provider-assigned IDs, filled in after first provisioning
    external_ids: dict[str, str] = field(default_factory=dict)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}"

    @property
    def is_full_time(self) -> bool:
        return self.employment_type == EmploymentType.FULL_TIME

    @property
    def is_consultant(self) -> bool:
        return self.employment_type == EmploymentType.CONSULTANT

    @property
    def role(self) -> MembershipRole:
        """Role the user should hold in every group they belong to."""
        return MembershipRole.ADMIN if self.is_group_admin else MembershipRole.MEMBER

    def is_denied(self, tag: ServiceTag | str) -> bool:
        """Check whether the user is explicitly excluded from a provider."""
        value = tag.value if isinstance(tag, ServiceTag) else tag
        return value in self.denied_services

    def with_external_id(self, tag: ServiceTag | str, external_id: str) -> "User":
        """Return a copy of the user with one provider ID set."""
        value = tag.value if isinstance(tag, ServiceTag) else tag
        ids = dict(self.external_ids)
        if external_id:
            ids[value] = external_id
        return replace(self, external_ids=ids)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "recovery_email": self.recovery_email,
            "recovery_phone": self.recovery_phone,
            "github": self.github,
            "department": self.department,
            "aliases": list(self.aliases),
            "groups": list(self.groups),
            "is_group_admin": self.is_group_admin,
            "denied_services": sorted(self.denied_services),
            "employment_type": self.employment_type.value,
            "external_ids": dict(self.external_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "User":
        """Create from dictionary."""
        return cls(
            username=data["username"],
            first_name=data.get("first_name", ""),
            last_name=data.get("last_name", ""),
            email=data.get("email", ""),
            recovery_email=data.get("recovery_email", ""),
            recovery_phone=data.get("recovery_phone", ""),
            github=data.get("github", ""),
            department=data.get("department", ""),
            aliases=list(data.get("aliases", [])),
            groups=list(data.get("groups", [])),
            is_group_admin=data.get("is_group_admin", False),
            denied_services=set(data.get("denied_services", [])),
            employment_type=EmploymentType(data.get("employment_type", "full-time")),
            external_ids=dict(data.get("external_ids", {})),
        )


@dataclass
class Group:
    """A group from the roster (Google group, GitHub team, Okta group)."""

    name: str
    description: str = ""
    aliases: list[str] = field(default_factory=list)

    # GitHub team settings
    repos: list[str] = field(default_factory=list)
    repo_permission: str = "pull"

    external_ids: dict[str, str] = field(default_factory=dict)

    def with_external_id(self, tag: ServiceTag | str, external_id: str) -> "Group":
        value = tag.value if isinstance(tag, ServiceTag) else tag
        ids = dict(self.external_ids)
        if external_id:
            ids[value] = external_id
        return replace(self, external_ids=ids)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "aliases": list(self.aliases),
            "repos": list(self.repos),
            "repo_permission": self.repo_permission,
            "external_ids": dict(self.external_ids),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Group":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            aliases=list(data.get("aliases", [])),
            repos=list(data.get("repos", [])),
            repo_permission=data.get("repo_permission", "pull"),
            external_ids=dict(data.get("external_ids", {})),
        )


@dataclass
class Roster:
    """The desired state: users and groups keyed by username and name."""

    users: dict[str, User] = field(default_factory=dict)
    groups: dict[str, Group] = field(default_factory=dict)

    def user_emails(self) -> set[str]:
        return {u.email for u in self.users.values()}


@dataclass(frozen=True)
class RemoteUser:
    """A user as enumerated from a provider."""

    key: str  # email or login
    external_id: str = ""


@dataclass(frozen=True)
class RemoteGroup:
    """A group as enumerated from a provider."""

    name: str
    external_id: str = ""
