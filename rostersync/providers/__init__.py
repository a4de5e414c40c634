"""Identity provider adapters."""

import logging

from ..models import Company
from ..notifications import Notifier
from ..token_store import TokenStore
from .airtable import AirtableProvider
from .base import Capabilities, Provider, Provisioned
from .github import GitHubProvider
from .google_workspace import GoogleWorkspaceProvider
from .okta import OktaProvider
from .ramp import RampProvider
from .zoom import ZoomProvider

logger = logging.getLogger(__name__)

PROVIDERS: dict[str, type[Provider]] = {
    "github": GitHubProvider,
    "google": GoogleWorkspaceProvider,
    "okta": OktaProvider,
    "zoom": ZoomProvider,
    "ramp": RampProvider,
    "airtable": AirtableProvider,
}

# Adapters whose access tokens come from the shared token store
_TOKEN_STORE_PROVIDERS = {"google", "zoom", "ramp"}


def build_providers(
    company: Company,
    names: list[str],
    token_store: TokenStore | None = None,
    notifier: Notifier | None = None,
) -> list[Provider]:
    """Instantiate the enabled adapters for a company.

    Unknown names are logged and ignored.
    """
    token_store = token_store or TokenStore()
    providers = []
    for name in names:
        provider_class = PROVIDERS.get(name.strip().lower())
        if provider_class is None:
            logger.warning(f"Unknown provider {name!r}, ignoring")
            continue
        if provider_class.tag.value in _TOKEN_STORE_PROVIDERS:
            providers.append(provider_class(company, notifier, token_store=token_store))
        else:
            providers.append(provider_class(company, notifier))
    return providers


__all__ = [
    "AirtableProvider",
    "Capabilities",
    "GitHubProvider",
    "GoogleWorkspaceProvider",
    "OktaProvider",
    "PROVIDERS",
    "Provider",
    "Provisioned",
    "RampProvider",
    "ZoomProvider",
    "build_providers",
]
