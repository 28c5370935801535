"""Shared outbound HTTP configuration.

A single TransportConfig is built at process start and handed to every
collaborator that talks HTTP (GitHub client, token exchange, publisher,
metadata lookups). It is the only place where outbound client behaviour is
configured; nothing patches module-level transports.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from src.ghbots.metrics import BotMetrics


logger = logging.getLogger(__name__)


DEFAULT_BUCKETS: Dict[str, str] = {
    "api.github.com": "github",
    "octo-sts.dev": "octosts",
}

DEFAULT_USER_AGENT = "ghbots/1.0"


@dataclass
class TransportConfig:
    """Outbound HTTP client configuration.

    Attributes:
        timeout: Request timeout in seconds.
        user_agent: User-Agent header sent on every request.
        buckets: Mapping of destination host to metrics bucket name.
            Hosts not in the map are recorded under "other".
        metrics: Metrics sink for request counts. None disables recording.
        transport: Optional httpx transport. Tests pass an
            ``httpx.MockTransport`` here.
    """

    timeout: float = 30.0
    user_agent: str = DEFAULT_USER_AGENT
    buckets: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BUCKETS))
    metrics: Optional[BotMetrics] = None
    transport: Optional[httpx.AsyncBaseTransport] = None

    def bucket_for(self, host: str) -> str:
        """Return the metrics bucket for a destination host."""
        return self.buckets.get(host, "other")

    async def _record_response(self, response: httpx.Response) -> None:
        if self.metrics is None:
            return
        request = response.request
        self.metrics.record_http_request(
            bucket=self.bucket_for(request.url.host),
            method=request.method,
            code=response.status_code,
        )

    def client(self, **kwargs: Any) -> httpx.AsyncClient:
        """Build an AsyncClient wired with this configuration.

        Keyword arguments are passed through to ``httpx.AsyncClient``;
        headers are merged over the default User-Agent.
        """
        headers = {"User-Agent": self.user_agent}
        headers.update(kwargs.pop("headers", None) or {})
        hooks = kwargs.pop("event_hooks", None) or {}
        response_hooks = list(hooks.get("response", []))
        response_hooks.append(self._record_response)

        return httpx.AsyncClient(
            timeout=kwargs.pop("timeout", self.timeout),
            headers=headers,
            transport=kwargs.pop("transport", self.transport),
            event_hooks={
                "request": list(hooks.get("request", [])),
                "response": response_hooks,
            },
            **kwargs,
        )
