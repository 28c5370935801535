"""GCP metadata server helpers.

Provides the instance's internal IP (used as the CloudEvent source of
published events) and identity tokens bound to an audience (used to
authenticate to the event ingress and, optionally, the token exchange).
"""

import logging
import os
import time
from typing import AsyncGenerator, Optional

import httpx

from src.ghbots.transport import TransportConfig


logger = logging.getLogger(__name__)


METADATA_URL = "http://metadata.google.internal/computeMetadata/v1"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}

UNKNOWN_SOURCE = "unknown"

# Google identity tokens are valid for one hour.
IDENTITY_TOKEN_TTL_SECONDS = 55 * 60


class MetadataError(Exception):
    """Raised when the metadata server cannot answer a query."""


async def metadata_get(
    path: str,
    transport_config: TransportConfig,
    params: Optional[dict] = None,
) -> str:
    """Read a value from the metadata server.

    Args:
        path: Path below ``/computeMetadata/v1``.
        transport_config: Outbound HTTP configuration.
        params: Optional query parameters.

    Returns:
        The response body, stripped.

    Raises:
        MetadataError: On transport errors or a non-200 response.
    """
    url = f"{METADATA_URL}/{path.lstrip('/')}"
    try:
        async with transport_config.client(headers=METADATA_HEADERS, timeout=5.0) as client:
            response = await client.get(url, params=params)
    except httpx.HTTPError as e:
        raise MetadataError(f"metadata request failed: {e}") from e

    if response.status_code != 200:
        raise MetadataError(
            f"metadata request for {path} returned {response.status_code}"
        )
    return response.text.strip()


async def internal_ip(transport_config: TransportConfig) -> str:
    """Return the instance's internal IP address."""
    return await metadata_get(
        "instance/network-interfaces/0/ip",
        transport_config,
    )


async def resolve_source(transport_config: TransportConfig) -> str:
    """Return the event source URI for this host.

    Never raises: if the internal IP cannot be determined, the source
    falls back to ``"unknown"``.
    """
    try:
        ip = await internal_ip(transport_config)
    except MetadataError as e:
        logger.warning(
            "Failed to get internal IP, falling back to unknown source: %s",
            e,
        )
        return UNKNOWN_SOURCE
    if not ip:
        logger.warning("Metadata server returned an empty IP, using unknown source")
        return UNKNOWN_SOURCE
    return f"https://{ip}"


async def fetch_identity_token(
    audience: str,
    transport_config: TransportConfig,
) -> str:
    """Mint an identity token for the default service account."""
    return await metadata_get(
        "instance/service-accounts/default/identity",
        transport_config,
        params={"audience": audience, "format": "full"},
    )


class IdentityTokenSource:
    """Caching source of identity tokens for one audience.

    Tokens are fetched lazily and reused until they are close to expiry.
    """

    def __init__(
        self,
        audience: str,
        transport_config: TransportConfig,
        ttl_seconds: float = IDENTITY_TOKEN_TTL_SECONDS,
    ):
        self.audience = audience
        self._transport_config = transport_config
        self._ttl = ttl_seconds
        self._token: Optional[str] = None
        self._fetched_at = 0.0

    async def token(self) -> str:
        now = time.monotonic()
        if self._token is None or now - self._fetched_at >= self._ttl:
            logger.debug("Fetching identity token for audience %s", self.audience)
            self._token = await fetch_identity_token(
                self.audience, self._transport_config
            )
            self._fetched_at = now
        return self._token


class EnvIdentityTokenSource:
    """Identity token supplied through an environment variable."""

    def __init__(self, env_var: str):
        self.env_var = env_var

    async def token(self) -> str:
        value = os.environ.get(self.env_var, "")
        if not value:
            raise MetadataError(f"environment variable {self.env_var} is not set")
        return value


class IdentityTokenAuth(httpx.Auth):
    """httpx auth flow that sends a bearer identity token."""

    def __init__(self, source: IdentityTokenSource):
        self._source = source

    def sync_auth_flow(self, request):
        raise RuntimeError("IdentityTokenAuth only supports async clients")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._source.token()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request
