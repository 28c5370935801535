"""Octo STS token exchange and GitHub token revocation.

The exchange trades an identity token for a short-lived GitHub token
scoped to an org (or org/repo) under a named trust policy. Tokens are
revoked with a DELETE against the installation token endpoint.
"""

import logging
from typing import Optional, Protocol, Union

import httpx

from src.ghbots.config import TokenExchangeSettings
from src.ghbots.gcp import (
    EnvIdentityTokenSource,
    IdentityTokenSource,
    MetadataError,
)
from src.ghbots.transport import TransportConfig


logger = logging.getLogger(__name__)


class CredentialError(Exception):
    """Base class for credential lifecycle failures.

    Attributes:
        scope: The "org" or "org/repo" scope the credential belongs to.
        policy_name: The trust policy name.
        status_code: HTTP status code, when a response was received.
    """

    def __init__(
        self,
        message: str,
        scope: str,
        policy_name: str,
        status_code: Optional[int] = None,
    ):
        self.scope = scope
        self.policy_name = policy_name
        self.status_code = status_code
        super().__init__(message)


class TokenExchangeError(CredentialError):
    """Raised when a token cannot be obtained from the exchange."""


class TokenRevocationError(CredentialError):
    """Raised when a token cannot be revoked."""


class IdentitySource(Protocol):
    async def token(self) -> str:
        ...


def scope_for(org: str, repo: str = "") -> str:
    """Return the exchange scope for an org, or an org/repo pair."""
    return f"{org}/{repo}" if repo else org


def identity_source_from_settings(
    settings: TokenExchangeSettings,
    transport_config: TransportConfig,
) -> Union[IdentityTokenSource, EnvIdentityTokenSource]:
    """Select the identity token source named by the settings."""
    if settings.identity_source == "env":
        return EnvIdentityTokenSource(settings.identity_env_var)
    return IdentityTokenSource(settings.identity_audience, transport_config)


class TokenExchangeClient:
    """Client for the Octo STS exchange and token revocation endpoints.

    Attributes:
        endpoint: Base URL of the exchange service.
        revoke_url: URL of the token revocation endpoint.
    """

    def __init__(
        self,
        identity: IdentitySource,
        transport_config: TransportConfig,
        endpoint: str = "https://octo-sts.dev",
        revoke_url: str = "https://api.github.com/installation/token",
    ):
        self.endpoint = endpoint.rstrip("/")
        self.revoke_url = revoke_url
        self._identity = identity
        self._transport_config = transport_config

    @classmethod
    def from_settings(
        cls,
        settings: TokenExchangeSettings,
        transport_config: TransportConfig,
    ) -> "TokenExchangeClient":
        return cls(
            identity=identity_source_from_settings(settings, transport_config),
            transport_config=transport_config,
            endpoint=settings.endpoint,
            revoke_url=settings.revoke_url,
        )

    async def exchange(self, policy_name: str, org: str, repo: str = "") -> str:
        """Mint a token for the given policy and scope.

        Args:
            policy_name: Name of the trust policy (also used as identity).
            org: GitHub organization.
            repo: Optional repository; scopes the token to org/repo.

        Returns:
            The GitHub token.

        Raises:
            TokenExchangeError: On identity, transport or exchange failure.
        """
        scope = scope_for(org, repo)

        try:
            identity_token = await self._identity.token()
        except MetadataError as e:
            raise TokenExchangeError(
                f"obtaining identity token: {e}", scope, policy_name
            ) from e

        try:
            async with self._transport_config.client() as client:
                response = await client.post(
                    f"{self.endpoint}/sts/exchange",
                    params={"scope": scope, "identity": policy_name},
                    headers={"Authorization": f"Bearer {identity_token}"},
                )
        except httpx.HTTPError as e:
            raise TokenExchangeError(
                f"exchanging token: {e}", scope, policy_name
            ) from e

        if response.status_code != 200:
            raise TokenExchangeError(
                f"exchanging token: unexpected status code {response.status_code}: "
                f"{response.text[:200]}",
                scope,
                policy_name,
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise TokenExchangeError(
                f"exchanging token: invalid response body: {e}", scope, policy_name
            ) from e
        if not isinstance(body, dict):
            raise TokenExchangeError(
                f"exchanging token: expected a JSON object, got {type(body).__name__}",
                scope,
                policy_name,
            )
        token = body.get("token")
        if not token or not isinstance(token, str):
            raise TokenExchangeError(
                "exchanging token: response contained no token", scope, policy_name
            )
        return token

    async def revoke(self, token: str, scope: str = "", policy_name: str = "") -> None:
        """Revoke a GitHub token.

        Raises:
            TokenRevocationError: On transport failure or any status other
                than 204 No Content.
        """
        try:
            async with self._transport_config.client() as client:
                response = await client.delete(
                    self.revoke_url,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            raise TokenRevocationError(
                f"making request: {e}", scope, policy_name
            ) from e

        if response.status_code != 204:
            raise TokenRevocationError(
                f"unexpected status code: {response.status_code}",
                scope,
                policy_name,
                status_code=response.status_code,
            )
