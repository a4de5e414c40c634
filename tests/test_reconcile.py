"""Tests for the reconcile driver, against in-memory providers."""

from unittest.mock import MagicMock

import pytest
from google.auth.exceptions import TransportError

from rostersync.errors import (
    ConfigurationError,
    ProviderError,
    ReconcileInProgressError,
    RosterError,
)
from rostersync.models import (
    Company,
    EmploymentType,
    Group,
    MembershipRole,
    RemoteGroup,
    RemoteUser,
    Roster,
    ServiceTag,
    User,
)
from rostersync.providers.base import Capabilities, Provider, Provisioned
from rostersync.reconcile import (
    CancellationToken,
    Reconciler,
    UnitState,
    reconcile_company,
)
from rostersync.store import GROUP, USER, SyncStore

COMPANY = Company(name="co", domain="co.com")


class FakeUserProvider(Provider):
    """Users only; group methods are the inherited no-ops."""

    tag = ServiceTag.ZOOM

    def __init__(self, tag=None, notifier=None, **kwargs):
        super().__init__(COMPANY, notifier)
        self.users: dict[str, str] = {}
        self.writes: list[tuple] = []
        self.calls = 0
        self.seen: dict[str, User] = {}
        self.fail_on: dict[str, Exception] = {}
        self.fail_delete: Exception | None = None
        self.config_error: str | None = None
        if tag is not None:
            self.tag = tag
        for name, value in kwargs.items():
            setattr(self, name, value)

    def check_configuration(self):
        if self.config_error:
            raise ConfigurationError(self.name, self.config_error)

    def _ensure_user(self, user):
        self.calls += 1
        self.seen[user.email] = user
        if user.email in self.fail_on:
            raise self.fail_on[user.email]
        if user.email not in self.users:
            self.users[user.email] = f"id-{user.username}"
            self.writes.append(("create_user", user.email))
            return Provisioned(self.users[user.email], created=True)
        return Provisioned(self.users[user.email])

    def delete_user(self, user):
        self.calls += 1
        if self.fail_delete:
            raise self.fail_delete
        try:
            if user.email not in self.users:
                raise ProviderError.from_status(self.name, 404, "no such user")
            del self.users[user.email]
            self.writes.append(("delete_user", user.email))
        except ProviderError as e:
            self._ignore_missing(e, user.email)

    def list_remote_users(self):
        self.calls += 1
        return [RemoteUser(key=email, external_id=i) for email, i in self.users.items()]


class FakeGroupProvider(FakeUserProvider):
    """Users, groups and role-carrying memberships."""

    tag = ServiceTag.GITHUB
    capabilities = Capabilities.GROUPS | Capabilities.GROUP_ROLES

    def __init__(self, tag=None, notifier=None, **kwargs):
        super().__init__(tag, notifier, **kwargs)
        self.groups: set[str] = set()
        self.members: dict[str, dict[str, MembershipRole]] = {}

    def member_of(self, email: str) -> set[str]:
        return {g for g, members in self.members.items() if email in members}

    def get_membership_role(self, user, group):
        self.calls += 1
        return self.members.get(group, {}).get(user.email)

    def add_membership(self, user, group):
        self.calls += 1
        if group not in self.groups:
            raise ProviderError.from_status(self.name, 404, f"group {group} does not exist")
        self.members.setdefault(group, {})[user.email] = self.required_role(user)
        self.writes.append(("add", user.email, group))

    def remove_membership(self, user, group):
        self.calls += 1
        self.members.get(group, {}).pop(user.email, None)
        self.writes.append(("remove", user.email, group))

    def ensure_group(self, group):
        self.calls += 1
        if group.name not in self.groups:
            self.groups.add(group.name)
            self.writes.append(("create_group", group.name))
        return f"gid-{group.name}"

    def delete_group(self, group):
        self.calls += 1
        try:
            if group.name not in self.groups:
                raise ProviderError.from_status(self.name, 404, "no such group")
            self.groups.discard(group.name)
            self.members.pop(group.name, None)
            self.writes.append(("delete_group", group.name))
        except ProviderError as e:
            self._ignore_missing(e, group.name)

    def list_remote_groups(self):
        self.calls += 1
        return [RemoteGroup(name=g, external_id=f"gid-{g}") for g in sorted(self.groups)]


def make_user(username: str, groups=(), **overrides) -> User:
    return User(
        username=username,
        first_name=username.title(),
        last_name="Example",
        email=f"{username}@co.com",
        groups=list(groups),
        **overrides,
    )


def make_roster(*users: User, groups=("eng", "ops")) -> Roster:
    return Roster(
        users={u.username: u for u in users},
        groups={name: Group(name=name, description=name.title()) for name in groups},
    )


@pytest.fixture
def store(tmp_path):
    return SyncStore(tmp_path / "sync.db")


def reconcile(store, providers, roster, token=None, workers=2):
    return Reconciler(store, providers, COMPANY, workers=workers, provider_concurrency=2).run(roster, token)


class TestScenarios:
    """End-to-end scenarios on a GitHub-like provider."""

    def test_new_user_is_created_and_added(self, store):
        github = FakeGroupProvider()
        github.groups.add("eng")

        report = reconcile(store, [github], make_roster(make_user("alice", ["eng"])))

        assert ("create_user", "alice@co.com") in github.writes
        assert github.writes.count(("add", "alice@co.com", "eng")) == 1
        assert github.member_of("alice@co.com") == {"eng"}
        assert github.members["eng"]["alice@co.com"] == MembershipRole.MEMBER
        assert report.providers["github"].units[0].state == UnitState.DONE

    def test_moving_user_between_groups(self, store):
        github = FakeGroupProvider()
        reconcile(store, [github], make_roster(make_user("alice", ["eng"])))
        github.writes.clear()

        reconcile(store, [github], make_roster(make_user("alice", ["ops"])))

        assert ("remove", "alice@co.com", "eng") in github.writes
        assert ("add", "alice@co.com", "ops") in github.writes
        assert github.member_of("alice@co.com") == {"ops"}


class TestProperties:
    """Driver-level guarantees."""

    def test_second_run_is_idempotent(self, store):
        github = FakeGroupProvider()
        zoom = FakeUserProvider()
        roster = make_roster(
            make_user("alice", ["eng"]),
            make_user("bob", ["eng", "ops"], is_group_admin=True),
        )
        reconcile(store, [github, zoom], roster)
        github_writes, zoom_writes = list(github.writes), list(zoom.writes)

        report = reconcile(store, [github, zoom], roster)

        assert github.writes == github_writes
        assert zoom.writes == zoom_writes
        assert report.writes == 0

    def test_convergence(self, store):
        github = FakeGroupProvider()
        roster = make_roster(
            make_user("alice", ["eng", "ops"]),
            make_user("bob", ["ops"]),
        )

        reconcile(store, [github], roster)

        for user in roster.users.values():
            for group in user.groups:
                assert github.check_membership(user, group)

    def test_extra_membership_is_pruned(self, store):
        github = FakeGroupProvider()
        github.groups.update({"eng", "legacy"})
        github.members["legacy"] = {"alice@co.com": MembershipRole.MEMBER}
        alice = make_user("alice", ["eng"])

        reconcile(store, [github], make_roster(alice))

        assert not github.check_membership(alice, "legacy")
        assert github.member_of("alice@co.com") == {"eng"}

    def test_wrong_role_is_updated_in_place(self, store):
        github = FakeGroupProvider()
        github.groups.add("eng")
        github.members["eng"] = {"alice@co.com": MembershipRole.MEMBER}
        alice = make_user("alice", ["eng"], is_group_admin=True)

        reconcile(store, [github], make_roster(alice))

        assert github.members["eng"]["alice@co.com"] == MembershipRole.ADMIN
        assert not any(w[0] == "remove" for w in github.writes)

    def test_immutable_group_is_never_pruned(self, store):
        okta = FakeGroupProvider(tag=ServiceTag.OKTA, immutable_groups=frozenset({"Everyone"}))
        okta.groups.add("Everyone")
        okta.members["Everyone"] = {"alice@co.com": MembershipRole.MEMBER}

        reconcile(store, [okta], make_roster(make_user("alice", ["eng"])))

        assert "Everyone" in okta.member_of("alice@co.com")

    def test_denied_user_gets_no_writes(self, store):
        github = FakeGroupProvider()
        bob = make_user("bob", ["eng"], denied_services={"github"})

        report = reconcile(store, [github], make_roster(bob))

        assert github.ensure_user(bob) == ""
        assert github.seen == {}
        assert not any(w[0] in ("create_user", "add") for w in github.writes)
        unit = report.providers["github"].units[0]
        assert unit.state == UnitState.SKIP
        assert "denied" in unit.reason

    def test_full_time_only_provider_skips_consultants(self, store):
        zoom = FakeUserProvider(capabilities=Capabilities.FULL_TIME_ONLY)
        carol = make_user("carol", employment_type=EmploymentType.CONSULTANT)

        report = reconcile(store, [zoom], make_roster(carol))

        assert zoom.writes == []
        assert report.providers["zoom"].units[0].state == UnitState.SKIP

    def test_group_methods_are_noops_without_group_support(self):
        zoom = FakeUserProvider()
        alice = make_user("alice", ["eng"])

        assert zoom.ensure_group(Group(name="eng")) == ""
        assert zoom.add_membership(alice, "eng") is None
        assert zoom.remove_membership(alice, "eng") is None
        assert zoom.delete_group(Group(name="eng")) is None
        assert zoom.check_membership(alice, "eng") is False
        assert zoom.list_remote_groups() == []
        assert zoom.calls == 0

    def test_user_only_provider_reports_no_membership_writes(self, store):
        zoom = FakeUserProvider()

        report = reconcile(store, [zoom], make_roster(make_user("alice", ["eng"])))

        unit = report.providers["zoom"].units[0]
        assert unit.state == UnitState.DONE
        assert unit.added == []
        assert zoom.writes == [("create_user", "alice@co.com")]

    def test_delete_of_absent_user_succeeds(self):
        zoom = FakeUserProvider()
        zoom.delete_user(make_user("ghost"))
        assert zoom.writes == []


class TestDeletion:
    """Users and groups removed from the roster."""

    def test_removed_user_is_deleted_once(self, store):
        github = FakeGroupProvider()
        alice, bob = make_user("alice", ["eng"]), make_user("bob", ["eng"])
        reconcile(store, [github], make_roster(alice, bob))

        report = reconcile(store, [github], make_roster(alice))

        assert ("delete_user", "bob@co.com") in github.writes
        assert report.providers["github"].deleted_users == ["bob@co.com"]
        users, _ = store.load_snapshot()
        assert set(users) == {"alice"}

        github.writes.clear()
        reconcile(store, [github], make_roster(alice))
        assert github.writes == []

    def test_removed_group_is_deleted(self, store):
        github = FakeGroupProvider()
        alice = make_user("alice", ["eng"])
        reconcile(store, [github], make_roster(alice, groups=("eng", "ops")))

        reconcile(store, [github], make_roster(alice, groups=("eng",)))

        assert ("delete_group", "ops") in github.writes
        assert "ops" not in github.groups

    def test_failed_delete_is_retried_next_run(self, store):
        zoom = FakeUserProvider()
        alice, bob = make_user("alice"), make_user("bob")
        reconcile(store, [zoom], make_roster(alice, bob))

        zoom.fail_delete = ProviderError.from_status("zoom", 500, "boom")
        report = reconcile(store, [zoom], make_roster(alice))

        assert report.providers["zoom"].errors
        users, _ = store.load_snapshot()
        assert "bob" in users

        zoom.fail_delete = None
        reconcile(store, [zoom], make_roster(alice))

        assert ("delete_user", "bob@co.com") in zoom.writes
        users, _ = store.load_snapshot()
        assert "bob" not in users

    def test_delete_waits_for_skipped_provider(self, store):
        zoom = FakeUserProvider()
        github = FakeGroupProvider()
        alice, bob = make_user("alice"), make_user("bob")
        reconcile(store, [zoom, github], make_roster(alice, bob))

        github.config_error = "GITHUB_TOKEN is not set"
        reconcile(store, [zoom, github], make_roster(alice))

        users, _ = store.load_snapshot()
        assert "bob" in users
        assert "bob@co.com" not in zoom.users


class TestFailureIsolation:
    """Bulkheads between units and providers."""

    def test_failed_unit_does_not_block_siblings(self, store):
        github = FakeGroupProvider()
        zoom = FakeUserProvider()
        github.fail_on["alice@co.com"] = ProviderError.from_status("github", 422, "invalid")

        report = reconcile(store, [github, zoom], make_roster(make_user("alice"), make_user("bob")))

        states = {u.user: u.state for u in report.providers["github"].units}
        assert states == {"alice@co.com": UnitState.FAILED, "bob@co.com": UnitState.DONE}
        assert set(zoom.users) == {"alice@co.com", "bob@co.com"}
        failures = report.failures()
        assert len(failures) == 1
        assert failures[0].failed_in == UnitState.ENSURE_USER
        assert not report.ok

    def test_failure_during_memberships(self, store):
        github = FakeGroupProvider()
        alice = make_user("alice", ["eng"])
        roster = make_roster(alice)
        github.add_membership = MagicMock(side_effect=ProviderError.from_status("github", 500, "boom"))

        report = reconcile(store, [github], roster)

        unit = report.providers["github"].units[0]
        assert unit.state == UnitState.FAILED
        assert unit.failed_in == UnitState.ENSURE_MEMBERSHIPS

    def test_unexpected_exception_is_contained(self, store):
        github = FakeGroupProvider()
        github.fail_on["alice@co.com"] = KeyError("id")

        report = reconcile(store, [github], make_roster(make_user("alice"), make_user("bob")))

        states = {u.user: u.state for u in report.providers["github"].units}
        assert states["alice@co.com"] == UnitState.FAILED
        assert states["bob@co.com"] == UnitState.DONE

    def test_unauthorized_stops_new_units_on_that_provider(self, store):
        github = FakeGroupProvider()
        zoom = FakeUserProvider()
        github.fail_on["alice@co.com"] = ProviderError.from_status("github", 401, "bad credentials")
        roster = make_roster(make_user("alice"), make_user("bob"), make_user("carol"))

        report = reconcile(store, [github, zoom], roster, workers=1)

        github_report = report.providers["github"]
        assert github_report.halted
        assert [u.state for u in github_report.units] == [
            UnitState.FAILED,
            UnitState.SKIP,
            UnitState.SKIP,
        ]
        assert len(zoom.users) == 3

    @pytest.mark.parametrize("status", [403, 429])
    def test_forbidden_or_rate_limited_fails_only_that_unit(self, store, status):
        zoom = FakeUserProvider()
        zoom.fail_on["u0@co.com"] = ProviderError.from_status("zoom", status, "user is super admin")
        roster = make_roster(*(make_user(f"u{i}") for i in range(6)))

        report = reconcile(store, [zoom], roster, workers=1)

        zoom_report = report.providers["zoom"]
        assert not zoom_report.halted
        states = {u.user: u.state for u in zoom_report.units}
        assert states.pop("u0@co.com") == UnitState.FAILED
        assert set(states.values()) == {UnitState.DONE}
        assert len(zoom.users) == 5

    def test_forbidden_unit_does_not_skip_deletions(self, store):
        zoom = FakeUserProvider()
        reconcile(store, [zoom], make_roster(make_user("alice"), make_user("bob")))
        zoom.fail_on["alice@co.com"] = ProviderError.from_status("zoom", 403, "locked account")

        reconcile(store, [zoom], make_roster(make_user("alice")))

        assert "bob@co.com" not in zoom.users

    def test_configuration_error_skips_provider(self, store):
        github = FakeGroupProvider()
        zoom = FakeUserProvider()
        github.config_error = "GITHUB_TOKEN is not set"

        report = reconcile(store, [github, zoom], make_roster(make_user("alice", ["eng"])))

        assert report.providers["github"].skipped == "[github] GITHUB_TOKEN is not set"
        assert github.calls == 0
        assert "alice@co.com" in zoom.users

    def test_malformed_roster_touches_no_provider(self, store):
        github = FakeGroupProvider()
        roster = make_roster(make_user("alice", ["nope"]))

        with pytest.raises(RosterError):
            reconcile(store, [github], roster)

        assert github.calls == 0


class TestCancellation:
    """Deadline and cancellation handling."""

    def test_cancelled_before_start(self, store):
        github = FakeGroupProvider()
        token = CancellationToken()
        token.cancel()

        report = reconcile(store, [github], make_roster(make_user("alice", ["eng"])), token=token)

        assert report.cancelled
        assert all(u.state == UnitState.SKIP for u in report.providers["github"].units)
        assert github.writes == []

    def test_in_flight_unit_finishes(self, store):
        token = CancellationToken()

        class CancellingProvider(FakeUserProvider):
            def _ensure_user(self, user):
                token.cancel()
                return super()._ensure_user(user)

        zoom = CancellingProvider()
        roster = make_roster(make_user("alice"), make_user("bob"))

        report = reconcile(store, [zoom], roster, token=token, workers=1)

        states = [u.state for u in report.providers["zoom"].units]
        assert states == [UnitState.DONE, UnitState.SKIP]
        assert list(zoom.users) == ["alice@co.com"]

    def test_deadline_passed(self):
        token = CancellationToken(timeout=0.001)
        token.deadline -= 1
        assert token.cancelled

    def test_no_deadline(self):
        assert not CancellationToken().cancelled


class TestRunBookkeeping:
    """Locking, persistence and reporting."""

    def test_concurrent_run_is_refused(self, store):
        store.acquire_run_lock("co", "someone-else", ttl_seconds=60)

        with pytest.raises(ReconcileInProgressError):
            reconcile(store, [FakeUserProvider()], make_roster(make_user("alice")))

    def test_lock_released_after_run(self, store):
        reconcile(store, [FakeUserProvider()], make_roster(make_user("alice")))
        assert store.acquire_run_lock("co", "next", ttl_seconds=60)

    def test_lock_released_after_roster_error(self, store):
        with pytest.raises(RosterError):
            reconcile(store, [FakeUserProvider()], make_roster(make_user("alice", ["nope"])))
        assert store.acquire_run_lock("co", "next", ttl_seconds=60)

    def test_external_ids_are_persisted_and_reused(self, store):
        github = FakeGroupProvider()
        reconcile(store, [github], make_roster(make_user("alice", ["eng"])))

        assert store.get_external_ids(USER, "alice@co.com") == {"github": "id-alice"}
        assert store.get_external_ids(GROUP, "eng") == {"github": "gid-eng"}

        reconcile(store, [github], make_roster(make_user("alice", ["eng"])))
        assert github.seen["alice@co.com"].external_ids == {"github": "id-alice"}

    def test_welcome_sent_on_creation_only(self, store):
        notifier = MagicMock()
        zoom = FakeUserProvider(notifier=notifier)
        roster = make_roster(make_user("alice"))

        reconcile(store, [zoom], roster)
        reconcile(store, [zoom], roster)

        notifier.notify.assert_called_once()
        user, template, context = notifier.notify.call_args.args
        assert user.email == "alice@co.com"
        assert template == "account_created"
        assert context["provider"] == "zoom"

    def test_failing_notifier_does_not_fail_provisioning(self, store):
        notifier = MagicMock()
        notifier.notify.side_effect = TransportError("token endpoint unreachable")
        zoom = FakeUserProvider(notifier=notifier)

        report = reconcile(store, [zoom], make_roster(make_user("alice")))

        unit = report.providers["zoom"].units[0]
        assert unit.state == UnitState.DONE
        assert unit.external_id == "id-alice"
        assert store.get_external_ids(USER, "alice@co.com") == {"zoom": "id-alice"}

    def test_summary_mentions_each_provider(self, store):
        github = FakeGroupProvider()
        zoom = FakeUserProvider(config_error="ZOOM_ACCOUNT_ID is not set")

        report = reconcile(store, [github, zoom], make_roster(make_user("alice", ["eng"])))
        summary = report.summary()

        assert "github: 1 reconciled" in summary
        assert "zoom: skipped" in summary
        assert report.finished_at is not None


def test_reconcile_company_with_file_roster(tmp_path, monkeypatch):
    monkeypatch.setattr("rostersync.reconcile.SEND_WELCOME_EMAILS", False)
    monkeypatch.setattr("rostersync.reconcile.SLACK_BOT_TOKEN", None)
    roster_dir = tmp_path / "roster"
    roster_dir.mkdir()
    (roster_dir / "groups.toml").write_text('[groups.eng]\ndescription = "Engineering"\n')
    (roster_dir / "users.toml").write_text(
        '[users.alice]\nfirst_name = "Alice"\nlast_name = "Liddell"\ngroups = ["eng"]\n'
    )
    from rostersync.roster import FileRosterSource

    github = FakeGroupProvider()
    report = reconcile_company(
        company=COMPANY,
        roster_source=FileRosterSource(roster_dir, COMPANY),
        providers=[github],
        store=SyncStore(tmp_path / "sync.db"),
        post_summary=False,
    )

    assert report.ok
    assert github.member_of("alice@co.com") == {"eng"}
