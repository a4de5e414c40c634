"""Loading the canonical roster from the company configuration files."""

import logging
import tomllib
from pathlib import Path
from typing import Any, Protocol

from github import Auth, Github
from github.GithubException import GithubException

from .config import (
    GITHUB_TOKEN,
    ROSTER_BRANCH,
    ROSTER_GROUPS_PATH,
    ROSTER_REPO,
    ROSTER_USERS_PATH,
)
from .errors import RosterError
from .models import Company, EmploymentType, Group, Roster, ServiceTag, User

logger = logging.getLogger(__name__)

CONSULTANTS_GROUP = "consultants"
SYSTEM_ACCOUNTS_GROUP = "system-accounts"

# Departments whose group name differs from the lowercased department
DEPARTMENT_GROUP_NAMES = {"engineering": "eng"}

KNOWN_SERVICES = {tag.value for tag in ServiceTag}


class RosterSource(Protocol):
    """Anything that can produce a roster snapshot."""

    def load(self) -> Roster:
        ...


def _load_toml(text: str, label: str) -> dict[str, Any]:
    try:
        return tomllib.loads(text)
    except tomllib.TOMLDecodeError as e:
        raise RosterError(f"Could not parse {label}: {e}") from e


def _department_group(department: str) -> str:
    group = department.lower().strip()
    return DEPARTMENT_GROUP_NAMES.get(group, group)


def _employment_type(groups: list[str]) -> EmploymentType:
    if CONSULTANTS_GROUP in groups:
        return EmploymentType.CONSULTANT
    if SYSTEM_ACCOUNTS_GROUP in groups:
        return EmploymentType.SYSTEM_ACCOUNT
    return EmploymentType.FULL_TIME


def _parse_group(name: str, data: dict[str, Any]) -> Group:
    return Group(
        name=data.get("name", name),
        description=data.get("description", ""),
        aliases=list(data.get("aliases", [])),
        repos=list(data.get("repos", [])),
        repo_permission=data.get("repo_permission", "pull"),
    )


def _parse_user(
    username: str,
    data: dict[str, Any],
    company: Company,
    group_names: set[str],
) -> User:
    first_name = data.get("first_name", "").strip()
    last_name = data.get("last_name", "").strip()
    if not first_name or not last_name:
        raise RosterError(f"User {username} must have a first_name and last_name")

    groups = list(dict.fromkeys(data.get("groups", [])))
    unknown = [g for g in groups if g not in group_names]
    if unknown:
        raise RosterError(f"User {username} references undefined groups: {', '.join(unknown)}")

    # Add the department group if the roster defines one
    department = data.get("department", "")
    department_group = _department_group(department)
    if department_group and department_group in group_names and department_group not in groups:
        groups.append(department_group)

    denied = set(data.get("denied_services", []))
    unknown_services = denied - KNOWN_SERVICES
    if unknown_services:
        raise RosterError(
            f"User {username} denies unknown services: {', '.join(sorted(unknown_services))}"
        )

    github = data.get("github", "")
    aliases = list(data.get("aliases", []))
    if github and github not in aliases:
        aliases.append(github)
    name_alias = f"{first_name.lower().replace(' ', '-')}.{last_name.lower().replace(' ', '-')}"
    if name_alias not in aliases and name_alias != username:
        aliases.append(name_alias)

    return User(
        username=username,
        first_name=first_name,
        last_name=last_name,
        email=f"{username}@{company.domain}",
        recovery_email=data.get("recovery_email", ""),
        recovery_phone=data.get("recovery_phone", ""),
        github=github,
        department=department,
        aliases=aliases,
        groups=groups,
        is_group_admin=data.get("is_group_admin", False),
        denied_services=denied,
        employment_type=_employment_type(groups),
    )


def parse_roster(users_toml: str, groups_toml: str, company: Company) -> Roster:
    """Parse and validate the users and groups configuration files.

    Args:
        users_toml: Contents of the users file (``[users.<username>]`` tables).
        groups_toml: Contents of the groups file (``[groups.<name>]`` tables).
        company: Company the roster belongs to (provides the email domain).

    Returns:
        The expanded roster.

    Raises:
        RosterError: If the files are malformed or inconsistent.
    """
    users_data = _load_toml(users_toml, "users file").get("users", {})
    groups_data = _load_toml(groups_toml, "groups file").get("groups", {})

    groups: dict[str, Group] = {}
    for name, data in groups_data.items():
        group = _parse_group(name, data)
        groups[group.name] = group

    users = {
        username: _parse_user(username, data, company, set(groups))
        for username, data in users_data.items()
    }
    roster = Roster(users=users, groups=groups)
    validate_roster(roster)

    logger.info(f"Parsed roster with {len(users)} users and {len(groups)} groups")
    return roster


def validate_roster(roster: Roster) -> None:
    """Check a roster is internally consistent.

    Raises:
        RosterError: On missing names or emails, duplicate emails, or
            memberships in undefined groups.
    """
    seen_emails: dict[str, str] = {}
    for username, user in roster.users.items():
        if not user.first_name or not user.last_name:
            raise RosterError(f"User {username} must have a first_name and last_name")
        if not user.email:
            raise RosterError(f"User {username} has no email")
        if user.email in seen_emails:
            raise RosterError(
                f"Users {seen_emails[user.email]} and {username} share the email {user.email}"
            )
        seen_emails[user.email] = username

        unknown = [g for g in user.groups if g not in roster.groups]
        if unknown:
            raise RosterError(f"User {username} references undefined groups: {', '.join(unknown)}")


class FileRosterSource:
    """Roster read from ``users.toml`` and ``groups.toml`` in a local directory."""

    def __init__(self, directory: Path | str, company: Company):
        self.directory = Path(directory)
        self.company = company

    def load(self) -> Roster:
        try:
            users_toml = (self.directory / "users.toml").read_text()
            groups_toml = (self.directory / "groups.toml").read_text()
        except OSError as e:
            raise RosterError(f"Could not read roster from {self.directory}: {e}") from e
        return parse_roster(users_toml, groups_toml, self.company)


class GitHubRosterSource:
    """Roster read from the company configuration repository."""

    def __init__(
        self,
        company: Company,
        repo: str | None = None,
        branch: str | None = None,
        users_path: str | None = None,
        groups_path: str | None = None,
        token: str | None = None,
        github: Github | None = None,
    ):
        self.company = company
        self.repo = repo or ROSTER_REPO
        self.branch = branch or ROSTER_BRANCH
        self.users_path = users_path or ROSTER_USERS_PATH
        self.groups_path = groups_path or ROSTER_GROUPS_PATH

        if not self.repo:
            raise ValueError("Roster repository is required")

        if github is None:
            token = token or GITHUB_TOKEN
            if not token:
                raise ValueError("GitHub token is required")
            github = Github(auth=Auth.Token(token))
        self._github = github

    def _read_file(self, path: str) -> str:
        try:
            repo = self._github.get_repo(self.repo)
            contents = repo.get_contents(path, ref=self.branch)
        except GithubException as e:
            raise RosterError(f"Could not read {path} from {self.repo}@{self.branch}: {e}") from e
        return contents.decoded_content.decode("utf-8")

    def load(self) -> Roster:
        logger.info(f"Loading roster from {self.repo}@{self.branch}")
        users_toml = self._read_file(self.users_path)
        groups_toml = self._read_file(self.groups_path)
        return parse_roster(users_toml, groups_toml, self.company)
