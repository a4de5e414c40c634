"""Reconciliation driver.

Drives every configured provider toward the roster. Each (provider, user)
pair is an independent unit of work:

    START -> ENSURE_USER -> SKIP
                         -> ENSURE_MEMBERSHIPS -> PRUNE_MEMBERSHIPS -> DONE

Any state may end in FAILED. A failed unit is logged and recorded in the run
report; it never stops its siblings or other providers. There is no retry of
a failed unit within a run; the next scheduled run picks it up again.
"""

import logging
import os
import socket
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from slack_sdk import WebClient

from .config import (
    ENABLED_PROVIDERS,
    PROVIDER_CONCURRENCY,
    ROSTER_DIR,
    RUN_LOCK_TTL_SECONDS,
    SEND_WELCOME_EMAILS,
    SLACK_BOT_TOKEN,
    WORKERS_PER_PROVIDER,
    default_company,
    get_google_token_path,
)
from .errors import ConfigurationError, ErrorKind, ProviderError, ReconcileInProgressError
from .integrations.gmail import GmailClient
from .integrations.google_auth import fetch_admin_token
from .models import Company, Group, Roster, User
from .notifications import Notifier
from .providers import Provider, build_providers
from .roster import FileRosterSource, GitHubRosterSource, RosterSource, validate_roster
from .store import GROUP, USER, SyncStore
from .token_store import TokenStore

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative cancellation for a run, with an optional deadline.

    Cancelling lets in-flight units finish; no new units start.
    """

    def __init__(self, timeout: float | None = None):
        """
        Args:
            timeout: Seconds from now after which the token counts as cancelled.
        """
        self._event = threading.Event()
        self.deadline = time.monotonic() + timeout if timeout else None

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if not self._event.is_set() and self.deadline is not None and time.monotonic() >= self.deadline:
            logger.warning("Run deadline reached, no new units will start")
            self._event.set()
        return self._event.is_set()


class UnitState(str, Enum):
    """Where a (provider, user) unit is in the reconcile state machine."""
    START = "start"
    ENSURE_USER = "ensure_user"
    SKIP = "skip"
    ENSURE_MEMBERSHIPS = "ensure_memberships"
    PRUNE_MEMBERSHIPS = "prune_memberships"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UnitResult:
    """Outcome of reconciling one user on one provider."""

    provider: str
    user: str
    state: UnitState = UnitState.START
    external_id: str = ""
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    reason: str | None = None  # why the unit was skipped
    error: str | None = None
    failed_in: UnitState | None = None

    @property
    def failed(self) -> bool:
        return self.state == UnitState.FAILED


@dataclass
class ProviderReport:
    """Everything that happened on one provider during a run."""

    provider: str
    units: list[UnitResult] = field(default_factory=list)
    skipped: str | None = None  # configuration problem that skipped the provider
    halted: str | None = None  # unit error that stopped new units
    errors: list[str] = field(default_factory=list)
    deleted_users: list[str] = field(default_factory=list)
    deleted_groups: list[str] = field(default_factory=list)
    pending_users: set[str] = field(default_factory=set)  # removed but not yet deleted
    pending_groups: set[str] = field(default_factory=set)

    @property
    def failures(self) -> list[UnitResult]:
        return [u for u in self.units if u.failed]

    @property
    def writes(self) -> int:
        """Membership and deletion writes issued by the driver."""
        memberships = sum(len(u.added) + len(u.removed) for u in self.units)
        return memberships + len(self.deleted_users) + len(self.deleted_groups)


@dataclass
class RunReport:
    """Result of one reconcile pass for a company."""

    company: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None
    providers: dict[str, ProviderReport] = field(default_factory=dict)
    cancelled: bool = False

    def failures(self) -> list[UnitResult]:
        return [u for report in self.providers.values() for u in report.failures]

    @property
    def writes(self) -> int:
        return sum(report.writes for report in self.providers.values())

    @property
    def ok(self) -> bool:
        return not self.failures() and not any(
            r.skipped or r.halted or r.errors for r in self.providers.values()
        )

    def summary(self) -> str:
        """Human-readable run summary (used for logs and Slack)."""
        lines = [f"Reconcile {self.company}: {'ok' if self.ok else 'completed with problems'}"]
        if self.cancelled:
            lines.append("Run was cancelled before all units started")
        for name, report in sorted(self.providers.items()):
            if report.skipped:
                lines.append(f"• {name}: skipped ({report.skipped})")
                continue
            done = sum(1 for u in report.units if u.state == UnitState.DONE)
            skipped = sum(1 for u in report.units if u.state == UnitState.SKIP)
            line = (
                f"• {name}: {done} reconciled, {skipped} skipped, "
                f"{len(report.failures)} failed, {report.writes} writes"
            )
            if report.deleted_users or report.deleted_groups:
                line += (
                    f", deleted {len(report.deleted_users)} users"
                    f" and {len(report.deleted_groups)} groups"
                )
            lines.append(line)
            if report.halted:
                lines.append(f"  stopped early: {report.halted}")
            for error in report.errors[:5]:
                lines.append(f"  error: {error}")
            for unit in report.failures[:5]:
                lines.append(f"  {unit.user} failed in {unit.failed_in.value}: {unit.error}")
        return "\n".join(lines)


class Reconciler:
    """Reconciles a roster against a set of providers for one company."""

    def __init__(
        self,
        store: SyncStore,
        providers: list[Provider],
        company: Company,
        workers: int = WORKERS_PER_PROVIDER,
        provider_concurrency: int = PROVIDER_CONCURRENCY,
        lock_ttl: int = RUN_LOCK_TTL_SECONDS,
    ):
        """Initialize the reconciler.

        Args:
            store: State store for IDs, the roster snapshot and the run lock.
            providers: Adapters to reconcile.
            company: Company being reconciled.
            workers: Worker pool size per provider (unless the provider caps it).
            provider_concurrency: Providers reconciled at the same time.
            lock_ttl: Lease length of the run lock in seconds.
        """
        self.store = store
        self.providers = providers
        self.company = company
        self.workers = max(1, workers)
        self.provider_concurrency = max(1, provider_concurrency)
        self.lock_ttl = lock_ttl
        self.owner = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"

    def run(self, roster: Roster, token: CancellationToken | None = None) -> RunReport:
        """Run one reconcile pass.

        Raises:
            RosterError: If the roster is malformed. No provider is touched.
            ReconcileInProgressError: If another pass holds the run lock.
        """
        token = token or CancellationToken()
        validate_roster(roster)

        if not self.store.acquire_run_lock(self.company.name, self.owner, self.lock_ttl):
            raise ReconcileInProgressError(
                f"A reconcile pass for {self.company.name} is already running"
            )

        try:
            return self._run_locked(roster, token)
        finally:
            self.store.release_run_lock(self.company.name, self.owner)

    def _run_locked(self, roster: Roster, token: CancellationToken) -> RunReport:
        report = RunReport(company=self.company.name)

        users = [self._hydrate_user(u) for u in roster.users.values()]
        groups = [self._hydrate_group(g) for g in roster.groups.values()]

        previous_users, previous_groups = self.store.load_snapshot()
        removed_users = [u for name, u in previous_users.items() if name not in roster.users]
        removed_groups = [g for name, g in previous_groups.items() if name not in roster.groups]

        logger.info(
            f"Reconciling {self.company.name}: {len(users)} users, {len(groups)} groups, "
            f"{len(removed_users)} removed users, {len(removed_groups)} removed groups, "
            f"providers: {', '.join(p.name for p in self.providers) or 'none'}"
        )

        with ThreadPoolExecutor(max_workers=self.provider_concurrency) as executor:
            futures = {
                executor.submit(
                    self._reconcile_provider, provider, users, groups, removed_users, removed_groups, token
                ): provider
                for provider in self.providers
            }
            for future in as_completed(futures):
                provider = futures[future]
                try:
                    report.providers[provider.name] = future.result()
                except Exception as e:
                    logger.exception(f"[{provider.name}] reconcile aborted: {e}")
                    report.providers[provider.name] = ProviderReport(
                        provider=provider.name,
                        errors=[f"reconcile aborted: {e}"],
                        pending_users={u.username for u in removed_users},
                        pending_groups={g.name for g in removed_groups},
                    )

        report.cancelled = token.cancelled
        self._save_snapshot(roster, removed_users, removed_groups, report)

        report.finished_at = datetime.now(timezone.utc)
        logger.info(report.summary())
        return report

    # --- Persistence ---

    def _hydrate_user(self, user: User) -> User:
        ids = self.store.get_external_ids(USER, user.email)
        for provider, external_id in ids.items():
            if provider not in user.external_ids:
                user = user.with_external_id(provider, external_id)
        return user

    def _hydrate_group(self, group: Group) -> Group:
        ids = self.store.get_external_ids(GROUP, group.name)
        for provider, external_id in ids.items():
            if provider not in group.external_ids:
                group = group.with_external_id(provider, external_id)
        return group

    def _save_snapshot(
        self,
        roster: Roster,
        removed_users: list[User],
        removed_groups: list[Group],
        report: RunReport,
    ) -> None:
        """Save the roster, keeping removed entries some provider still has."""
        reports = list(report.providers.values())
        pending_users = [
            u for u in removed_users
            if not reports or any(u.username in r.pending_users for r in reports)
        ]
        pending_groups = [
            g for g in removed_groups
            if not reports or any(g.name in r.pending_groups for r in reports)
        ]
        if pending_users or pending_groups:
            logger.info(
                f"Keeping {len(pending_users)} users and {len(pending_groups)} groups "
                f"for deletion on the next run"
            )
        self.store.save_snapshot(
            list(roster.users.values()) + pending_users,
            list(roster.groups.values()) + pending_groups,
        )

    # --- Per provider ---

    def _reconcile_provider(
        self,
        provider: Provider,
        users: list[User],
        groups: list[Group],
        removed_users: list[User],
        removed_groups: list[Group],
        token: CancellationToken,
    ) -> ProviderReport:
        report = ProviderReport(
            provider=provider.name,
            pending_users={u.username for u in removed_users},
            pending_groups={g.name for g in removed_groups},
        )

        try:
            provider.check_configuration()
        except ConfigurationError as e:
            logger.warning(f"[{provider.name}] skipping provider for this run: {e}")
            report.skipped = str(e)
            return report

        halt = threading.Event()

        # Groups first so membership adds find them
        for group in groups:
            if token.cancelled or halt.is_set():
                break
            try:
                group_id = provider.ensure_group(group)
                if group_id and group.external_ids.get(provider.name) != group_id:
                    self.store.upsert_external_id(provider.name, GROUP, group.name, group_id)
            except (ProviderError, ConfigurationError) as e:
                logger.error(f"[{provider.name}] ensure group {group.name} failed: {e}")
                report.errors.append(f"group {group.name}: {e}")
                self._maybe_halt(provider, e, halt, report)

        remote_groups = self._remote_group_names(provider, groups, report)

        workers = min(self.workers, provider.max_workers or self.workers)
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=provider.name) as executor:
            futures = [
                executor.submit(self._run_unit, provider, user, remote_groups, halt, token, report)
                for user in users
            ]
            for future in futures:
                report.units.append(future.result())

        if token.cancelled or halt.is_set():
            logger.warning(f"[{provider.name}] not deleting removed users or groups this run")
            return report

        self._delete_removed(provider, removed_users, removed_groups, report, token)
        return report

    def _remote_group_names(
        self, provider: Provider, groups: list[Group], report: ProviderReport
    ) -> list[str]:
        """Groups to consider for pruning, listed once per provider per run."""
        if not provider.supports_groups:
            return []
        try:
            return [g.name for g in provider.list_remote_groups()]
        except ProviderError as e:
            # Fall back to the groups the roster knows about
            logger.error(f"[{provider.name}] could not list groups: {e}")
            report.errors.append(f"list groups: {e}")
            return [g.name for g in groups]

    def _maybe_halt(
        self,
        provider: Provider,
        error: Exception,
        halt: threading.Event,
        report: ProviderReport,
    ) -> None:
        """Stop new units on a provider whose credentials stopped working.

        Only a rejected credential (401 or ConfigurationError) halts the
        provider. A 403 on one account fails that unit alone.
        """
        if isinstance(error, ProviderError) and error.kind != ErrorKind.UNAUTHORIZED:
            return
        if not halt.is_set():
            halt.set()
            report.halted = str(error)
            logger.warning(f"[{provider.name}] credentials rejected, starting no new units: {error}")

    def _run_unit(
        self,
        provider: Provider,
        user: User,
        remote_groups: list[str],
        halt: threading.Event,
        token: CancellationToken,
        report: ProviderReport,
    ) -> UnitResult:
        unit = UnitResult(provider=provider.name, user=user.email)

        if token.cancelled:
            unit.state = UnitState.SKIP
            unit.reason = "run cancelled"
            return unit
        if halt.is_set():
            unit.state = UnitState.SKIP
            unit.reason = "provider halted"
            return unit

        try:
            unit.state = UnitState.ENSURE_USER
            external_id = provider.ensure_user(user)
            if not external_id:
                unit.state = UnitState.SKIP
                unit.reason = provider.eligibility(user) or "declined by provider"
                return unit

            unit.external_id = external_id
            if user.external_ids.get(provider.name) != external_id:
                self.store.upsert_external_id(provider.name, USER, user.email, external_id)
                user = user.with_external_id(provider.tag, external_id)

            unit.state = UnitState.ENSURE_MEMBERSHIPS
            for group in user.groups:
                if not provider.check_membership(user, group):
                    provider.add_membership(user, group)
                    if provider.supports_groups:
                        unit.added.append(group)

            unit.state = UnitState.PRUNE_MEMBERSHIPS
            targets = set(user.groups)
            for group in remote_groups:
                if group in targets or provider.is_immutable_group(group):
                    continue
                if provider.get_membership_role(user, group) is not None:
                    provider.remove_membership(user, group)
                    unit.removed.append(group)

            unit.state = UnitState.DONE
        except (ProviderError, ConfigurationError) as e:
            self._fail(unit, e)
            self._maybe_halt(provider, e, halt, report)
        except Exception as e:
            logger.exception(f"[{provider.name}] unexpected error reconciling {user.email}")
            self._fail(unit, e)
        return unit

    @staticmethod
    def _fail(unit: UnitResult, error: Exception) -> None:
        unit.failed_in = unit.state
        unit.state = UnitState.FAILED
        unit.error = str(error)
        logger.error(f"[{unit.provider}] {unit.user} failed in {unit.failed_in.value}: {error}")

    def _delete_removed(
        self,
        provider: Provider,
        removed_users: list[User],
        removed_groups: list[Group],
        report: ProviderReport,
        token: CancellationToken,
    ) -> None:
        for user in removed_users:
            if token.cancelled:
                return
            try:
                provider.delete_user(user)
            except (ProviderError, ConfigurationError) as e:
                logger.error(f"[{provider.name}] delete user {user.email} failed: {e}")
                report.errors.append(f"delete user {user.email}: {e}")
                continue
            report.deleted_users.append(user.email)
            report.pending_users.discard(user.username)
            self.store.delete_external_id(provider.name, USER, user.email)

        for group in removed_groups:
            if token.cancelled:
                return
            if provider.is_immutable_group(group.name):
                report.pending_groups.discard(group.name)
                continue
            try:
                provider.delete_group(group)
            except (ProviderError, ConfigurationError) as e:
                logger.error(f"[{provider.name}] delete group {group.name} failed: {e}")
                report.errors.append(f"delete group {group.name}: {e}")
                continue
            if provider.supports_groups:
                report.deleted_groups.append(group.name)
            report.pending_groups.discard(group.name)
            self.store.delete_external_id(provider.name, GROUP, group.name)


def default_roster_source(company: Company) -> RosterSource:
    """Local roster directory if configured, else the configuration repository."""
    if ROSTER_DIR:
        return FileRosterSource(ROSTER_DIR, company)
    return GitHubRosterSource(company)


def build_notifier(store: SyncStore, token_store: TokenStore, company: Company) -> Notifier:
    """Notifier wired to Gmail (when authorized) and Slack (when configured)."""
    gmail = None
    if SEND_WELCOME_EMAILS and get_google_token_path().exists():
        gmail = GmailClient(lambda: token_store.get(company.name, "google", fetch_admin_token))
    slack_client = WebClient(token=SLACK_BOT_TOKEN) if SLACK_BOT_TOKEN else None
    return Notifier(store, gmail=gmail, slack_client=slack_client)


def reconcile_company(
    company: Company | None = None,
    roster_source: RosterSource | None = None,
    providers: list[Provider] | None = None,
    store: SyncStore | None = None,
    token: CancellationToken | None = None,
    provider_names: list[str] | None = None,
    post_summary: bool = True,
) -> RunReport:
    """Load the roster and reconcile it against the enabled providers.

    Args:
        company: Company to reconcile. Defaults to the configured company.
        roster_source: Where the roster comes from.
        providers: Adapters to use. Built from ``provider_names`` if omitted.
        store: State store. Defaults to the configured SQLite database.
        token: Cancellation token for the run.
        provider_names: Provider tags to enable. Defaults to ENABLED_PROVIDERS.
        post_summary: Post the run summary to Slack.

    Raises:
        RosterError: If the roster cannot be loaded or is malformed.
        ReconcileInProgressError: If another pass is running.
    """
    company = company or default_company()
    store = store or SyncStore()
    token_store = TokenStore()
    notifier = build_notifier(store, token_store, company)

    roster = (roster_source or default_roster_source(company)).load()

    if providers is None:
        providers = build_providers(
            company, provider_names or ENABLED_PROVIDERS, token_store, notifier
        )

    report = Reconciler(store, providers, company).run(roster, token)
    if post_summary:
        notifier.post_run_summary(report)
    return report
