"""Reliable publication of CloudEvents to the event ingress.

The Publisher wraps a payload in a CloudEvent, then delivers it through an
EventTransport with bounded exponential backoff. Delivery runs in a
detached scope, so it completes even if the request that triggered the
publish is cancelled.

Every delivery attempt ends in one of three results:

- ACK: the ingress accepted the event (2xx).
- NACK: the ingress rejected the event (non-2xx response).
- UNDELIVERED: the event never reached the ingress (transport error).

Callers only see success or a single PublishError; the distinction
between NACK and UNDELIVERED is kept for logs and metrics.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

import httpx

from src.ghbots.config import PublishSettings
from src.ghbots.detached import run_detached
from src.ghbots.events.envelope import CloudEvent, JSON_CONTENT_TYPE
from src.ghbots.gcp import IdentityTokenAuth, IdentityTokenSource, resolve_source
from src.ghbots.metrics import BotMetrics
from src.ghbots.transport import TransportConfig


logger = logging.getLogger(__name__)


DEFAULT_RETRY_DELAY = 0.01
DEFAULT_MAX_ATTEMPTS = 3

# Statuses worth another attempt; any other non-2xx is a final rejection.
RETRYABLE_STATUS_CODES = {404, 413, 425, 429, 502, 503, 504}


def _reject_constant(name: str) -> None:
    raise ValueError(f"{name} is not valid JSON")


class DeliveryStatus(str, Enum):
    """Outcome of a single delivery attempt."""

    ACK = "ack"
    NACK = "nack"
    UNDELIVERED = "undelivered"


@dataclass(frozen=True)
class DeliveryResult:
    """Result of a single delivery attempt.

    Attributes:
        status: ACK, NACK or UNDELIVERED.
        status_code: HTTP status code, when a response was received.
        retryable: Whether another attempt may succeed.
        error: Description of the failure, if any.
    """

    status: DeliveryStatus
    status_code: Optional[int] = None
    retryable: bool = False
    error: Optional[str] = None

    @property
    def delivered(self) -> bool:
        return self.status == DeliveryStatus.ACK


class PublishError(Exception):
    """Raised when an event could not be delivered.

    Attributes:
        event_id: Id of the event that failed.
        attempts: Number of delivery attempts made.
        last_result: The final attempt's result.
    """

    def __init__(self, event_id: str, attempts: int, last_result: DeliveryResult):
        self.event_id = event_id
        self.attempts = attempts
        self.last_result = last_result
        detail = last_result.error or last_result.status.value
        if last_result.status_code is not None:
            detail = f"{detail} (status {last_result.status_code})"
        super().__init__(
            f"failed to deliver event {event_id} after {attempts} attempt(s): {detail}"
        )

    @property
    def undelivered(self) -> bool:
        return self.last_result.status == DeliveryStatus.UNDELIVERED


@runtime_checkable
class EventTransport(Protocol):
    """Sends a single CloudEvent and reports the attempt's result."""

    async def send(self, event: CloudEvent) -> DeliveryResult:
        ...


class HttpEventTransport:
    """Binary-mode CloudEvents over HTTP POST.

    Attributes:
        target: The ingress URI events are POSTed to.
    """

    def __init__(
        self,
        target: str,
        transport_config: TransportConfig,
        auth: Optional[httpx.Auth] = None,
    ):
        self.target = target
        self._client = transport_config.client(auth=auth)

    async def send(self, event: CloudEvent) -> DeliveryResult:
        headers, body = event.to_binary_http()
        try:
            response = await self._client.post(self.target, headers=headers, content=body)
        except httpx.HTTPError as e:
            return DeliveryResult(
                status=DeliveryStatus.UNDELIVERED,
                retryable=True,
                error=str(e) or type(e).__name__,
            )

        if 200 <= response.status_code < 300:
            return DeliveryResult(
                status=DeliveryStatus.ACK,
                status_code=response.status_code,
            )
        return DeliveryResult(
            status=DeliveryStatus.NACK,
            status_code=response.status_code,
            retryable=response.status_code in RETRYABLE_STATUS_CODES,
            error=response.text[:500] or response.reason_phrase,
        )

    async def close(self) -> None:
        await self._client.aclose()


class Publisher:
    """Publishes payloads as CloudEvents with retry.

    Attributes:
        source: The CloudEvent source attached to every event.
        retry_delay: Delay before the first retry, in seconds. Each later
            retry doubles the delay.
        max_attempts: Total number of delivery attempts per event.

    Example:
        >>> publisher = await Publisher.create(get_publish_settings(), TransportConfig())
        >>> await publisher.publish(b'{"hello":"world"}', "dev.example.hello", "repo/1")
    """

    def __init__(
        self,
        transport: EventTransport,
        source: str,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        metrics: Optional[BotMetrics] = None,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._transport = transport
        self.source = source
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts
        self._metrics = metrics

    @classmethod
    async def create(
        cls,
        settings: PublishSettings,
        transport_config: TransportConfig,
        **kwargs: Any,
    ) -> "Publisher":
        """Build a publisher for the configured ingress.

        Requests are authenticated with an identity token whose audience is
        the ingress URI. The event source is resolved from the host's
        internal IP, falling back to "unknown".
        """
        logger.info("GCP_PROJECT_ID %s", settings.gcp_project_id)
        logger.info("EVENT_INGRESS_URI %s", settings.event_ingress_uri)

        auth = IdentityTokenAuth(
            IdentityTokenSource(settings.event_ingress_uri, transport_config)
        )
        transport = HttpEventTransport(
            settings.event_ingress_uri,
            transport_config,
            auth=auth,
        )
        source = await resolve_source(transport_config)
        kwargs.setdefault("metrics", transport_config.metrics)
        return cls(transport, source, **kwargs)

    def build_event(
        self,
        data: bytes,
        event_type: str,
        subject: str,
        extensions: Optional[Mapping[str, Any]] = None,
    ) -> CloudEvent:
        """Wrap a raw JSON payload in a new CloudEvent.

        The payload is embedded verbatim as ``body`` next to a ``when``
        timestamp, matching the wrapper the event consumers decode.
        """
        try:
            json.loads(data, parse_constant=_reject_constant)
        except ValueError as e:
            raise ValueError(f"publish payload is not valid JSON: {e}") from e

        when = json.dumps(datetime.now(timezone.utc).isoformat()).encode("utf-8")
        wrapped = b'{"when":' + when + b',"body":' + data.strip() + b"}"

        return CloudEvent.new(
            type=event_type,
            source=self.source,
            subject=subject,
            data=wrapped,
            extensions=extensions,
            datacontenttype=JSON_CONTENT_TYPE,
        )

    async def publish(
        self,
        data: bytes,
        event_type: str,
        subject: str,
        extensions: Optional[Dict[str, Any]] = None,
    ) -> CloudEvent:
        """Publish a payload as a CloudEvent.

        Args:
            data: JSON payload bytes.
            event_type: CloudEvent type.
            subject: CloudEvent subject.
            extensions: Extension attributes, sent as transport attributes.

        Returns:
            The delivered event.

        Raises:
            ValueError: If the payload is not valid JSON.
            PublishError: If the event was rejected or could not be
                delivered within max_attempts.
        """
        event = self.build_event(data, event_type, subject, extensions)

        logger.info(
            "Publishing event %s",
            event_type,
            extra={
                "event_id": event.id,
                "event_type": event_type,
                "subject": subject,
                "extensions": dict(event.extensions),
            },
        )
        logger.debug("Event data: %s", data.decode("utf-8", errors="replace"))

        await run_detached(self._deliver(event), name=f"publish-{event.id}")
        return event

    async def _deliver(self, event: CloudEvent) -> None:
        delay = self.retry_delay
        attempt = 1

        while True:
            result = await self._transport.send(event)
            self._record(event, result)

            if result.delivered:
                logger.debug(
                    "Event delivered",
                    extra={"event_id": event.id, "attempt": attempt},
                )
                return

            if not result.retryable or attempt == self.max_attempts:
                break

            logger.warning(
                "Delivery attempt failed, retrying",
                extra={
                    "event_id": event.id,
                    "event_type": event.type,
                    "attempt": attempt,
                    "max_attempts": self.max_attempts,
                    "delay": delay,
                    "result": result.status.value,
                    "status_code": result.status_code,
                },
            )
            await asyncio.sleep(delay)
            delay *= 2
            attempt += 1

        if result.status == DeliveryStatus.UNDELIVERED:
            logger.error(
                "Failed to deliver event, undelivered: %s",
                result.error,
                extra={"event_id": event.id, "event_type": event.type},
            )
        else:
            logger.error(
                "Failed to deliver event, rejected with status %s",
                result.status_code,
                extra={"event_id": event.id, "event_type": event.type},
            )
        raise PublishError(event.id, attempt, result)

    def _record(self, event: CloudEvent, result: DeliveryResult) -> None:
        if self._metrics is not None:
            self._metrics.record_publish_attempt(event.type, result.status.value)

    async def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            await close()
