"""Outbound notifications: welcome emails and Slack updates."""

import logging
from typing import TYPE_CHECKING, Any

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from .config import COMPANY_DOMAIN, SEND_WELCOME_EMAILS, SLACK_NOTIFY_CHANNEL
from .integrations.gmail import GmailClient
from .models import User
from .store import SyncStore

if TYPE_CHECKING:
    from .reconcile import RunReport

logger = logging.getLogger(__name__)

TEMPLATES: dict[str, tuple[str, str]] = {
    "welcome": (
        "Your {domain} account is ready",
        "Hi {first_name},\n\n"
        "Your account {email} has been created.\n"
        "Temporary password: {password}\n\n"
        "You will be asked to choose a new password when you first sign in.\n",
    ),
    "consultant_welcome": (
        "Your {domain} consultant account is ready",
        "Hi {first_name},\n\n"
        "A consultant account {email} has been created for you.\n"
        "Temporary password: {password}\n\n"
        "Access is limited to the groups you were added to.\n",
    ),
    "github_invite": (
        "You have been invited to the {org} GitHub organization",
        "Hi {first_name},\n\n"
        "Your GitHub account {github} has been invited to {org}.\n"
        "Accept the invitation at https://github.com/orgs/{org}/invitation\n",
    ),
    "account_created": (
        "Your {provider} account is ready",
        "Hi {first_name},\n\n"
        "An account for {email} has been set up in {provider}.\n"
        "Look for an activation email from {provider} to finish setting it up.\n",
    ),
}


def render(template: str, user: User, context: dict[str, Any] | None = None) -> tuple[str, str]:
    """Render a template for a user.

    Returns:
        Tuple of (subject, body).
    """
    subject, body = TEMPLATES.get(template, TEMPLATES["account_created"])
    values = {
        "first_name": user.first_name,
        "email": user.email,
        "github": user.github,
        "domain": COMPANY_DOMAIN,
        "provider": "",
        "org": "",
        "password": "",
    }
    values.update(context or {})
    return subject.format(**values), body.format(**values)


class Notifier:
    """Fire-and-forget notification sink.

    Each (recipient, template, provider) is delivered at most once: the key is
    claimed in the store before sending and released again if delivery fails.
    """

    def __init__(
        self,
        store: SyncStore,
        gmail: GmailClient | None = None,
        slack_client: WebClient | None = None,
        slack_channel: str | None = None,
        send_emails: bool = SEND_WELCOME_EMAILS,
    ):
        self.store = store
        self.gmail = gmail
        self.slack_client = slack_client
        self.slack_channel = slack_channel or SLACK_NOTIFY_CHANNEL
        self.send_emails = send_emails

    def notify(self, user: User, template: str, context: dict[str, Any] | None = None) -> bool:
        """Deliver a notification about a user.

        Never raises; failures are logged.

        Returns:
            True if the notification was delivered by this call.
        """
        context = context or {}
        provider = context.get("provider", "")
        key = f"{provider}:{template}" if provider else template

        if not self.store.claim_notification(user.email, key):
            logger.debug(f"Notification {key} already sent to {user.email}")
            return False

        try:
            subject, body = render(template, user, context)
            if self.send_emails and self.gmail:
                recipient = user.recovery_email or user.email
                self.gmail.send_message(to=recipient, subject=subject, body=body)
        except Exception as e:
            # Any send failure frees the claim so the next run retries
            logger.error(f"Failed to send {key} email for {user.email}: {e}")
            self.store.release_notification(user.email, key)
            return False

        # The email is the notification of record; Slack is best effort
        if self.slack_client and self.slack_channel:
            provider = context.get("provider") or "the directory"
            try:
                self.slack_client.chat_postMessage(
                    channel=self.slack_channel,
                    text=f":wave: Provisioned *{user.email}* in {provider}",
                )
            except (SlackApiError, OSError) as e:
                logger.warning(f"Failed to post {key} Slack message for {user.email}: {e}")

        logger.info(f"Sent {key} notification for {user.email}")
        return True

    def post_run_summary(self, report: "RunReport") -> None:
        """Post a reconcile run summary to Slack."""
        if not self.slack_client or not self.slack_channel:
            return
        try:
            self.slack_client.chat_postMessage(
                channel=self.slack_channel,
                text=report.summary(),
            )
        except SlackApiError as e:
            logger.error(f"Failed to post run summary: {e}")
