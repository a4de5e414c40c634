"""GitHub organization members and teams."""

import logging
import re
import threading
from typing import Any, Callable

from github import Auth, Github
from github.GithubException import GithubException

from ..config import GITHUB_TOKEN
from ..errors import ConfigurationError, ProviderError
from ..models import Group, MembershipRole, RemoteGroup, RemoteUser, ServiceTag, User
from ..notifications import Notifier
from ..retry import with_read_retry
from .base import Capabilities, Provider, Provisioned

logger = logging.getLogger(__name__)

TEAM_ROLES = {
    MembershipRole.MEMBER: "member",
    MembershipRole.ADMIN: "maintainer",
}


def team_slug(name: str) -> str:
    """GitHub's URL slug for a team name, e.g. "Eng Team" -> "eng-team"."""
    return re.sub(r"[^a-z0-9_]+", "-", name.lower()).strip("-")


class GitHubProvider(Provider):
    """Org membership for users, teams for groups."""

    tag = ServiceTag.GITHUB
    capabilities = Capabilities.GROUPS | Capabilities.GROUP_ROLES
    welcome_template = "github_invite"

    def __init__(
        self,
        company,
        notifier: Notifier | None = None,
        token: str | None = None,
        github: Github | None = None,
    ):
        """Initialize GitHub provider.

        Args:
            company: Company whose GitHub organization is managed.
            notifier: Notification sink for new members.
            token: GitHub token with admin:org scope.
            github: Preconfigured PyGithub client (tests).
        """
        super().__init__(company, notifier)
        self.token = token or GITHUB_TOKEN
        self._github = github
        self._org = None
        self._org_lock = threading.Lock()

    def check_configuration(self) -> None:
        if self._github is None and not self.token:
            raise ConfigurationError(self.name, "GITHUB_TOKEN is not set")
        if not self.company.github_org:
            raise ConfigurationError(self.name, "no GitHub organization configured")

    @property
    def github(self) -> Github:
        if self._github is None:
            self._github = Github(auth=Auth.Token(self.token))
        return self._github

    @property
    def organization(self):
        """Get organization."""
        if self._org is None:
            with self._org_lock:
                if self._org is None:
                    self._org = self._call(self.github.get_organization, self.company.github_org)
        return self._org

    def _call(self, fn: Callable[..., Any], *args, **kwargs) -> Any:
        try:
            return fn(*args, **kwargs)
        except GithubException as e:
            raise ProviderError.from_github_exception(self.name, e) from e

    def missing_prerequisites(self, user: User) -> str | None:
        if not user.github:
            return "no GitHub login in the roster"
        return None

    # --- Lookups ---

    @with_read_retry
    def _get_named_user(self, login: str):
        return self._call(self.github.get_user, login)

    @with_read_retry
    def _org_role(self, named_user) -> str | None:
        """The user's org role ("admin"/"member"), or None if not a member."""
        try:
            membership = self._call(
                named_user.get_organization_membership, self.company.github_org
            )
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise
        return membership.role

    @with_read_retry
    def _get_team(self, name: str):
        """Get a team by its roster name, or None if it does not exist."""
        try:
            return self._call(self.organization.get_team_by_slug, team_slug(name))
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise

    # --- Users ---

    def _ensure_user(self, user: User) -> Provisioned:
        named_user = self._get_named_user(user.github)
        wanted = "admin" if user.is_group_admin else "member"
        current = self._org_role(named_user)

        if current != wanted:
            # Adds the user to the org or updates their role
            self._call(self.organization.add_to_members, named_user, wanted)
            logger.info(f"[{self.name}] set {user.github} org role to {wanted}")

        return Provisioned(
            external_id=str(named_user.id),
            created=current is None,
            context={"org": self.company.github_org},
        )

    def delete_user(self, user: User) -> None:
        if not user.github:
            return
        try:
            named_user = self._get_named_user(user.github)
            # Removing org membership also removes them from every team
            self._call(self.organization.remove_from_membership, named_user)
            logger.info(f"[{self.name}] removed {user.github} from {self.company.github_org}")
        except ProviderError as e:
            self._ignore_missing(e, f"user {user.github}")

    @with_read_retry
    def list_remote_users(self) -> list[RemoteUser]:
        members = self._call(lambda: list(self.organization.get_members()))
        return [RemoteUser(key=m.login, external_id=str(m.id)) for m in members]

    # --- Teams ---

    def get_membership_role(self, user: User, group: str) -> MembershipRole | None:
        team = self._get_team(group)
        if team is None:
            return None
        return self._team_role(team, user)

    @with_read_retry
    def _team_role(self, team, user: User) -> MembershipRole | None:
        try:
            membership = self._call(team.get_team_membership, user.github)
        except ProviderError as e:
            if e.is_not_found:
                return None
            raise
        return MembershipRole.ADMIN if membership.role == "maintainer" else MembershipRole.MEMBER

    def add_membership(self, user: User, group: str) -> None:
        team = self._get_team(group)
        if team is None:
            raise ProviderError.from_status(self.name, 404, f"team {group} does not exist")
        named_user = self._get_named_user(user.github)
        role = TEAM_ROLES[self.required_role(user)]

        # Adds the user to the team or updates their role
        self._call(team.add_membership, named_user, role)
        logger.info(f"[{self.name}] added {user.github} to {group} as {role}")

    def remove_membership(self, user: User, group: str) -> None:
        team = self._get_team(group)
        if team is None:
            return
        try:
            named_user = self._get_named_user(user.github)
            self._call(team.remove_membership, named_user)
            logger.info(f"[{self.name}] removed {user.github} from {group}")
        except ProviderError as e:
            self._ignore_missing(e, f"{user.github} in {group}")

    def ensure_group(self, group: Group) -> str:
        team = self._get_team(group.name)

        if team is None:
            repos = [self._call(self.organization.get_repo, name) for name in group.repos]
            team = self._call(
                self.organization.create_team,
                group.name,
                repo_names=repos,
                privacy="closed",
                description=group.description,
            )
            logger.info(f"[{self.name}] created team {group.name}")
        elif (team.description or "") != group.description:
            self._call(team.edit, team.name, description=group.description)
            logger.info(f"[{self.name}] updated team {group.name}")

        self._ensure_team_repos(team, group)
        return str(team.id)

    def _ensure_team_repos(self, team, group: Group) -> None:
        if not group.repos:
            return
        permission = group.repo_permission
        current = {r.name: r for r in self._list_team_repos(team)}

        for name in group.repos:
            repo = current.get(name)
            if repo is not None and getattr(repo.permissions, permission, False):
                continue
            if repo is None:
                repo = self._call(self.organization.get_repo, name)
            self._call(team.update_team_repository, repo, permission)
            logger.info(f"[{self.name}] granted {group.name} {permission} on {name}")

    @with_read_retry
    def _list_team_repos(self, team) -> list:
        return self._call(lambda: list(team.get_repos()))

    def delete_group(self, group: Group) -> None:
        team = self._get_team(group.name)
        if team is None:
            return
        try:
            self._call(team.delete)
            logger.info(f"[{self.name}] deleted team {group.name}")
        except ProviderError as e:
            self._ignore_missing(e, f"team {group.name}")

    @with_read_retry
    def list_remote_groups(self) -> list[RemoteGroup]:
        teams = self._call(lambda: list(self.organization.get_teams()))
        # Team names, not slugs, so they compare equal to roster group names
        return [RemoteGroup(name=t.name, external_id=str(t.id)) for t in teams]
