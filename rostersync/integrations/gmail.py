"""Gmail API client for outbound notifications."""

import base64
import logging
from email.mime.text import MIMEText
from typing import Any, Callable

from googleapiclient.errors import HttpError

from .google_auth import build_service

logger = logging.getLogger(__name__)


class GmailClient:
    """Client for sending mail as the Workspace admin account."""

    def __init__(self, token_provider: Callable[[], str]):
        """Initialize Gmail client.

        Args:
            token_provider: Returns a valid access token for the admin account.
        """
        self._token_provider = token_provider
        self._service = None
        self._service_token: str | None = None

    @property
    def service(self):
        """Lazily initialize the Gmail service, rebuilding it when the token rotates."""
        token = self._token_provider()
        if self._service is None or token != self._service_token:
            self._service = build_service("gmail", "v1", token)
            self._service_token = token
        return self._service

    def _build_message(self, to: str, subject: str, body: str) -> str:
        """Build an email message and return base64-encoded raw format.

        Args:
            to: Recipient email address.
            subject: Email subject.
            body: Email body (plain text).

        Returns:
            Base64 URL-safe encoded message string.
        """
        message = MIMEText(body)
        message["to"] = to
        message["subject"] = subject

        return base64.urlsafe_b64encode(message.as_bytes()).decode()

    def send_message(self, to: str, subject: str, body: str) -> dict[str, Any]:
        """Send an email.

        Args:
            to: Recipient email address.
            subject: Email subject.
            body: Email body (plain text).

        Returns:
            Sent message data including id and threadId.
        """
        raw = self._build_message(to, subject, body)

        try:
            return (
                self.service.users()
                .messages()
                .send(userId="me", body={"raw": raw})
                .execute()
            )
        except HttpError as e:
            logger.error(f"Error sending message to {to}: {e}")
            raise
