"""Error taxonomy for reconciliation.

Every adapter converts its HTTP layer's exceptions into a ``ProviderError``
with a typed ``ErrorKind`` so callers branch on the kind instead of matching
on message text.
"""

import json
from enum import Enum
from typing import Mapping

import httpx
from github.GithubException import GithubException, RateLimitExceededException
from googleapiclient.errors import HttpError

# Google reports quota exhaustion as a 403 with one of these reasons
GOOGLE_RATE_LIMIT_REASONS = frozenset({"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded"})


class ErrorKind(str, Enum):
    """Classification of a failed provider call."""
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    UNAUTHORIZED = "unauthorized"  # credentials rejected
    FORBIDDEN = "forbidden"  # credentials fine, this resource is off limits
    OTHER = "other"


def kind_for_status(status: int | None) -> ErrorKind:
    """Map an HTTP status code onto an error kind."""
    if status is None:
        return ErrorKind.TRANSIENT
    if status == 404:
        return ErrorKind.NOT_FOUND
    if status == 409:
        return ErrorKind.CONFLICT
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status == 401:
        return ErrorKind.UNAUTHORIZED
    if status == 403:
        return ErrorKind.FORBIDDEN
    if status >= 500:
        return ErrorKind.TRANSIENT
    return ErrorKind.OTHER


def _rate_limit_headers(headers: Mapping[str, str] | None) -> bool:
    """Whether response headers say the rate limit is exhausted."""
    if not headers:
        return False
    lowered = {k.lower(): v for k, v in headers.items()}
    remaining = lowered.get("x-ratelimit-remaining", lowered.get("x-rate-limit-remaining"))
    return str(remaining) == "0" or "retry-after" in lowered


def _google_reasons(error: HttpError) -> set[str]:
    """The ``reason`` fields of a Google JSON error body."""
    try:
        data = json.loads(error.content.decode("utf-8"))
        details = data["error"].get("errors", [])
    except (ValueError, KeyError, TypeError, AttributeError):
        return set()
    return {d.get("reason", "") for d in details if isinstance(d, dict)}


class ProviderError(Exception):
    """A provider call failed."""

    def __init__(
        self,
        provider: str,
        kind: ErrorKind,
        message: str,
        status: int | None = None,
    ):
        super().__init__(f"[{provider}] {kind.value}: {message}")
        self.provider = provider
        self.kind = kind
        self.message = message
        self.status = status

    @property
    def is_not_found(self) -> bool:
        return self.kind == ErrorKind.NOT_FOUND

    @property
    def is_conflict(self) -> bool:
        return self.kind == ErrorKind.CONFLICT

    @property
    def is_transient(self) -> bool:
        return self.kind in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT)

    @classmethod
    def from_status(
        cls,
        provider: str,
        status: int,
        message: str,
        headers: Mapping[str, str] | None = None,
    ) -> "ProviderError":
        """Build an error from a status code, spotting rate limits sent as 403."""
        kind = kind_for_status(status)
        if kind == ErrorKind.FORBIDDEN and _rate_limit_headers(headers):
            kind = ErrorKind.RATE_LIMITED
        return cls(provider, kind, message, status)

    @classmethod
    def from_response(cls, provider: str, response: httpx.Response) -> "ProviderError":
        return cls.from_status(provider, response.status_code, response.text[:500], response.headers)

    @classmethod
    def from_httpx_error(cls, provider: str, error: httpx.HTTPError) -> "ProviderError":
        """Convert an httpx transport or status error."""
        if isinstance(error, httpx.HTTPStatusError):
            return cls.from_response(provider, error.response)
        # Timeouts, connection resets, DNS failures
        return cls(provider, ErrorKind.TRANSIENT, str(error))

    @classmethod
    def from_github_exception(cls, provider: str, error: GithubException) -> "ProviderError":
        """Convert a PyGithub exception."""
        message = str(error.data) if error.data else str(error)
        kind = kind_for_status(error.status)
        # Secondary rate limits arrive as a plain 403
        if isinstance(error, RateLimitExceededException) or (
            kind == ErrorKind.FORBIDDEN
            and (_rate_limit_headers(error.headers) or "rate limit" in message.lower())
        ):
            kind = ErrorKind.RATE_LIMITED
        return cls(provider, kind, message, error.status)

    @classmethod
    def from_google_http_error(cls, provider: str, error: HttpError) -> "ProviderError":
        """Convert a googleapiclient HttpError."""
        status = error.resp.status
        if status == 403 and _google_reasons(error) & GOOGLE_RATE_LIMIT_REASONS:
            return cls(provider, ErrorKind.RATE_LIMITED, str(error), status)
        return cls.from_status(provider, status, str(error))


class ConfigurationError(Exception):
    """A provider is missing credentials or its credentials were rejected."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"[{provider}] {message}")
        self.provider = provider
        self.message = message


class RosterError(Exception):
    """The roster is malformed; no provider may be touched."""


class ReconcileInProgressError(Exception):
    """Another reconcile pass for the same company holds the run lock."""
