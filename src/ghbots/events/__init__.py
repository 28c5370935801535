"""CloudEvents envelopes, GitHub event schemas, publication and framing.

Envelope:
- CloudEvent: Immutable CloudEvents 1.0 envelope with HTTP codecs

Schemas:
- Wrapper: ``{when, body}`` data wrapper
- PullRequestEvent, WorkflowRunEvent, CheckRunEvent: webhook payloads

Publication:
- Publisher: Publishes payloads with bounded exponential backoff
- EventTransport / HttpEventTransport: Single-attempt delivery
- PublishError: Raised when delivery fails

Framing:
- to_ndjson: Newline-delimited JSON for bulk ingestion
"""

from src.ghbots.events.envelope import CloudEvent, EnvelopeError
from src.ghbots.events.framing import FramingError, to_ndjson
from src.ghbots.events.publisher import (
    DeliveryResult,
    DeliveryStatus,
    EventTransport,
    HttpEventTransport,
    PublishError,
    Publisher,
)
from src.ghbots.events.schemas import (
    CheckRunEvent,
    PullRequestEvent,
    WorkflowRunEvent,
    Wrapper,
)

__all__ = [
    # Envelope
    "CloudEvent",
    "EnvelopeError",
    # Schemas
    "CheckRunEvent",
    "PullRequestEvent",
    "WorkflowRunEvent",
    "Wrapper",
    # Publication
    "DeliveryResult",
    "DeliveryStatus",
    "EventTransport",
    "HttpEventTransport",
    "PublishError",
    "Publisher",
    # Framing
    "FramingError",
    "to_ndjson",
]
