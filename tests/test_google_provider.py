"""Tests for the Google Workspace provider."""

from unittest.mock import MagicMock, patch

import pytest
from googleapiclient.errors import HttpError

from rostersync.errors import ConfigurationError, ProviderError
from rostersync.models import Company, EmploymentType, Group, MembershipRole, User
from rostersync.providers.google_workspace import GoogleWorkspaceProvider
from rostersync.token_store import Token, TokenStore

COMPANY = Company(name="co", domain="co.com")


def http_error(status: int) -> HttpError:
    return HttpError(MagicMock(status=status, reason="error"), b"")


@pytest.fixture
def alice():
    return User(
        username="alice",
        first_name="Alice",
        last_name="Liddell",
        email="alice@co.com",
        recovery_email="alice@personal.example",
        aliases=["alice.liddell"],
        groups=["eng"],
    )


@pytest.fixture
def service():
    return MagicMock()


@pytest.fixture
def provider(service):
    return GoogleWorkspaceProvider(COMPANY, notifier=MagicMock(), service=service)


class TestUsers:
    """Directory accounts."""

    def test_new_user_gets_password_and_aliases(self, provider, service, alice):
        users = service.users.return_value
        users.get.return_value.execute.side_effect = http_error(404)
        users.insert.return_value.execute.return_value = {"id": "u1"}

        assert provider.ensure_user(alice) == "u1"

        body = users.insert.call_args.kwargs["body"]
        assert body["primaryEmail"] == "alice@co.com"
        assert body["changePasswordAtNextLogin"] is True
        assert body["recoveryEmail"] == "alice@personal.example"
        users.aliases.return_value.insert.assert_called_once_with(
            userKey="u1", body={"alias": "alice.liddell@co.com"}
        )

        _, template, context = provider.notifier.notify.call_args.args
        assert template == "welcome"
        assert context["password"] == body["password"]

    def test_consultant_gets_consultant_welcome(self, provider, service, alice):
        alice.employment_type = EmploymentType.CONSULTANT
        users = service.users.return_value
        users.get.return_value.execute.side_effect = http_error(404)
        users.insert.return_value.execute.return_value = {"id": "u1"}

        provider.ensure_user(alice)

        assert provider.notifier.notify.call_args.args[1] == "consultant_welcome"

    def test_unchanged_user_makes_no_writes(self, provider, service, alice):
        users = service.users.return_value
        users.get.return_value.execute.return_value = {
            "id": "u1",
            "name": {"givenName": "Alice", "familyName": "Liddell"},
            "recoveryEmail": "alice@personal.example",
            "aliases": ["alice.liddell@co.com"],
        }

        assert provider.ensure_user(alice) == "u1"

        users.insert.assert_not_called()
        users.patch.assert_not_called()
        users.aliases.return_value.insert.assert_not_called()
        provider.notifier.notify.assert_not_called()

    def test_changed_name_is_patched(self, provider, service, alice):
        users = service.users.return_value
        users.get.return_value.execute.return_value = {
            "id": "u1",
            "name": {"givenName": "Ally", "familyName": "Liddell"},
            "recoveryEmail": "alice@personal.example",
            "aliases": ["alice.liddell@co.com"],
        }

        provider.ensure_user(alice)

        users.patch.assert_called_once_with(
            userKey="u1", body={"name": {"givenName": "Alice", "familyName": "Liddell"}}
        )

    def test_existing_alias_conflict_is_ignored(self, provider, service, alice):
        users = service.users.return_value
        users.get.return_value.execute.return_value = {
            "id": "u1",
            "name": {"givenName": "Alice", "familyName": "Liddell"},
            "recoveryEmail": "alice@personal.example",
        }
        users.aliases.return_value.insert.return_value.execute.side_effect = http_error(409)

        assert provider.ensure_user(alice) == "u1"

    def test_lookup_error_is_raised(self, provider, service, alice):
        service.users.return_value.get.return_value.execute.side_effect = http_error(400)

        with pytest.raises(ProviderError):
            provider.ensure_user(alice)

    def test_delete_absent_user(self, provider, service, alice):
        service.users.return_value.delete.return_value.execute.side_effect = http_error(404)
        provider.delete_user(alice)

    def test_delete_uses_external_id(self, provider, service, alice):
        alice.external_ids["google"] = "u1"
        service.users.return_value.delete.return_value.execute.return_value = None

        provider.delete_user(alice)

        service.users.return_value.delete.assert_called_once_with(userKey="u1")

    def test_list_remote_users_paginates(self, provider, service):
        users = service.users.return_value
        users.list.return_value.execute.side_effect = [
            {"users": [{"primaryEmail": "alice@co.com", "id": "u1"}], "nextPageToken": "p2"},
            {"users": [{"primaryEmail": "bob@co.com", "id": "u2"}]},
        ]

        remote = provider.list_remote_users()

        assert [u.key for u in remote] == ["alice@co.com", "bob@co.com"]
        assert users.list.call_args.kwargs["pageToken"] == "p2"
        assert users.list.call_args.kwargs["customer"] == "my_customer"


class TestGroups:
    """Groups and members."""

    def test_membership_role(self, provider, service, alice):
        members = service.members.return_value
        members.get.return_value.execute.return_value = {"role": "OWNER"}

        assert provider.get_membership_role(alice, "eng") == MembershipRole.ADMIN
        members.get.assert_called_with(groupKey="eng@co.com", memberKey="alice@co.com")

    def test_not_a_member(self, provider, service, alice):
        service.members.return_value.get.return_value.execute.side_effect = http_error(404)
        assert provider.get_membership_role(alice, "eng") is None

    def test_add_new_member(self, provider, service, alice):
        members = service.members.return_value
        members.get.return_value.execute.side_effect = http_error(404)
        members.insert.return_value.execute.return_value = {}

        provider.add_membership(alice, "eng")

        members.insert.assert_called_once_with(
            groupKey="eng@co.com", body={"email": "alice@co.com", "role": "MEMBER"}
        )
        members.update.assert_not_called()

    def test_insert_conflict_falls_through_to_update(self, provider, service, alice):
        members = service.members.return_value
        members.get.return_value.execute.side_effect = http_error(404)
        members.insert.return_value.execute.side_effect = http_error(409)
        members.update.return_value.execute.return_value = {}

        provider.add_membership(alice, "eng")

        members.update.assert_called_once_with(
            groupKey="eng@co.com",
            memberKey="alice@co.com",
            body={"email": "alice@co.com", "role": "MEMBER"},
        )

    def test_wrong_role_is_updated_in_place(self, provider, service, alice):
        alice.is_group_admin = True
        members = service.members.return_value
        members.get.return_value.execute.return_value = {"role": "MEMBER"}
        members.update.return_value.execute.return_value = {}

        assert not provider.check_membership(alice, "eng")
        provider.add_membership(alice, "eng")

        members.insert.assert_not_called()
        members.delete.assert_not_called()
        assert members.update.call_args.kwargs["body"]["role"] == "OWNER"

    def test_remove_absent_member(self, provider, service, alice):
        service.members.return_value.delete.return_value.execute.side_effect = http_error(404)
        provider.remove_membership(alice, "eng")

    def test_create_group_with_aliases(self, provider, service):
        groups = service.groups.return_value
        groups.get.return_value.execute.side_effect = http_error(404)
        groups.insert.return_value.execute.return_value = {"id": "g1"}

        group = Group(name="eng", description="Engineering", aliases=["engineering"])

        assert provider.ensure_group(group) == "g1"
        groups.insert.assert_called_once_with(
            body={"email": "eng@co.com", "name": "eng", "description": "Engineering"}
        )
        groups.aliases.return_value.insert.assert_called_once_with(
            groupKey="g1", body={"alias": "engineering@co.com"}
        )

    def test_existing_group_is_left_alone(self, provider, service):
        groups = service.groups.return_value
        groups.get.return_value.execute.return_value = {
            "id": "g1",
            "name": "eng",
            "description": "Engineering",
            "aliases": ["engineering@co.com"],
        }

        provider.ensure_group(Group(name="eng", description="Engineering", aliases=["engineering"]))

        groups.insert.assert_not_called()
        groups.patch.assert_not_called()
        groups.aliases.return_value.insert.assert_not_called()

    def test_delete_absent_group(self, provider, service):
        service.groups.return_value.delete.return_value.execute.side_effect = http_error(404)
        provider.delete_group(Group(name="eng"))

    def test_list_remote_groups_only_company_domain(self, provider, service):
        service.groups.return_value.list.return_value.execute.return_value = {
            "groups": [
                {"email": "eng@co.com", "id": "g1"},
                {"email": "partners@other.com", "id": "g2"},
            ]
        }

        groups = provider.list_remote_groups()

        assert [(g.name, g.external_id) for g in groups] == [("eng", "g1")]


class TestAuthorization:
    """Token handling."""

    def test_service_built_from_token_store(self):
        store = TokenStore()
        fetch = MagicMock(return_value=Token("tok"))
        provider = GoogleWorkspaceProvider(COMPANY, token_store=store, fetch_token=fetch)

        with patch("rostersync.providers.google_workspace.build_service") as build:
            assert provider.service is build.return_value
            assert provider.service is build.return_value

        build.assert_called_once_with("admin", "directory_v1", "tok")
        fetch.assert_called_once()

    def test_unauthorized_admin_is_configuration_error(self):
        fetch = MagicMock(side_effect=ConfigurationError("google", "not authorized"))
        provider = GoogleWorkspaceProvider(COMPANY, token_store=TokenStore(), fetch_token=fetch)

        with pytest.raises(ConfigurationError):
            provider.check_configuration()
