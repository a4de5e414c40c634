"""Shared HTTP layer for the REST-based providers."""

import base64
import logging
from typing import Any, Callable, Iterator

import httpx

from ..config import HTTP_TIMEOUT
from ..errors import ConfigurationError, ErrorKind, ProviderError
from ..token_store import Token, TokenStore

logger = logging.getLogger(__name__)


def basic_auth_header(username: str, password: str) -> str:
    encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {encoded}"


class StaticAuth:
    """A fixed Authorization header (API keys)."""

    def __init__(self, authorization: str):
        self._authorization = authorization

    def headers(self) -> dict[str, str]:
        return {"Authorization": self._authorization}

    def invalidate(self, headers: dict[str, str]) -> bool:
        """Static credentials cannot be refreshed."""
        return False


class TokenAuth:
    """Bearer tokens obtained through the token store."""

    def __init__(
        self,
        token_store: TokenStore,
        company: str,
        provider: str,
        fetch: Callable[[], Token],
    ):
        self.token_store = token_store
        self.company = company
        self.provider = provider
        self.fetch = fetch

    def headers(self) -> dict[str, str]:
        token = self.token_store.get(self.company, self.provider, self.fetch)
        return {"Authorization": f"Bearer {token}"}

    def invalidate(self, headers: dict[str, str]) -> bool:
        token = headers.get("Authorization", "").removeprefix("Bearer ")
        self.token_store.invalidate(self.company, self.provider, token)
        return True


class RestClient:
    """JSON-over-HTTPS client for one vendor API.

    Non-2xx responses become ``ProviderError``s. A 401 with refreshable
    credentials drops the cached token and replays the request once.
    """

    def __init__(
        self,
        provider: str,
        base_url: str,
        auth: StaticAuth | TokenAuth,
        client: httpx.Client | None = None,
        extra_headers: dict[str, str] | None = None,
    ):
        self.provider = provider
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self._client = client or httpx.Client(timeout=HTTP_TIMEOUT)
        self._extra_headers = extra_headers or {}

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def request_raw(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict | None = None,
    ) -> httpx.Response:
        """Make a request and return the successful response.

        Raises:
            ProviderError: If the request fails or returns an error status.
        """
        url = self._url(path)

        for attempt in range(2):
            headers = {
                "Accept": "application/json",
                "Content-Type": "application/json",
                **self._extra_headers,
                **self.auth.headers(),
            }
            try:
                response = self._client.request(
                    method=method,
                    url=url,
                    headers=headers,
                    json=json,
                    params=params,
                )
            except httpx.HTTPError as e:
                raise ProviderError.from_httpx_error(self.provider, e) from e

            if response.status_code == 401 and attempt == 0 and self.auth.invalidate(headers):
                logger.info(f"[{self.provider}] access token rejected, refreshing")
                continue

            if response.is_error:
                logger.debug(
                    f"[{self.provider}] {method} {url} -> {response.status_code}: {response.text[:500]}"
                )
                raise ProviderError.from_response(self.provider, response)
            return response

        # Unreachable: the loop either returns or raises
        raise ProviderError(self.provider, ErrorKind.UNAUTHORIZED, f"{method} {url} rejected")

    def request(
        self,
        method: str,
        path: str,
        json: Any = None,
        params: dict | None = None,
    ) -> Any:
        """Make a request and return the decoded JSON body ({} when empty)."""
        response = self.request_raw(method, path, json=json, params=params)

        # Some endpoints return empty response (e.g., DELETE)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def paginate_links(self, path: str, params: dict | None = None) -> Iterator[dict[str, Any]]:
        """Iterate a list endpoint paginated with ``Link: <...>; rel="next"`` headers."""
        url: str | None = path
        while url:
            response = self.request_raw("GET", url, params=params)
            yield from response.json()
            url = response.links.get("next", {}).get("url")
            params = None  # the next link carries the query


def fetch_client_credentials_token(
    provider: str,
    token_url: str,
    client_id: str,
    client_secret: str,
    data: dict[str, str],
    client: httpx.Client | None = None,
) -> Token:
    """Run an OAuth client-credentials style token request.

    Raises:
        ConfigurationError: If the vendor rejects the credentials.
        ProviderError: For transport failures and server errors.
    """
    http = client or httpx.Client(timeout=HTTP_TIMEOUT)
    try:
        response = http.post(
            token_url,
            data=data,
            headers={"Authorization": basic_auth_header(client_id, client_secret)},
        )
    except httpx.HTTPError as e:
        raise ProviderError.from_httpx_error(provider, e) from e

    if response.status_code in (400, 401, 403):
        raise ConfigurationError(provider, f"token request rejected: {response.text[:200]}")
    if response.is_error:
        raise ProviderError.from_response(provider, response)

    body = response.json()
    return Token.expiring_in(body["access_token"], body.get("expires_in", 3600))
