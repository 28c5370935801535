"""Scoped GitHub credentials via the Octo STS token exchange."""

from src.ghbots.sts.broker import CredentialBroker
from src.ghbots.sts.exchange import (
    CredentialError,
    TokenExchangeClient,
    TokenExchangeError,
    TokenRevocationError,
    identity_source_from_settings,
    scope_for,
)

__all__ = [
    "CredentialBroker",
    "CredentialError",
    "TokenExchangeClient",
    "TokenExchangeError",
    "TokenRevocationError",
    "identity_source_from_settings",
    "scope_for",
]
