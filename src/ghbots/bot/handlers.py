"""Handler variants for the GitHub event types a bot can subscribe to.

The set of variants is closed: each one binds an event type to the wire
schema its data decodes into, the nested field holding the event's
subject, and the domain model that subject is re-derived into. Because the
decode shape travels with the variant, the router never inspects handler
types at dispatch time.

Handlers are async callables taking ``(ctx, body, subject)``:

    async def on_pr(ctx: EventContext, pre: PullRequestEvent, pr: PullRequest) -> None:
        ...

    bot.register_handler(PullRequestHandler(on_pr))
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    ClassVar,
    Generic,
    Mapping,
    Optional,
    Tuple,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel, ValidationError

from src.ghbots.events import schemas
from src.ghbots.events.envelope import CloudEvent
from src.ghbots.github import models
from src.ghbots.transport import TransportConfig


B = TypeVar("B", bound=BaseModel)
S = TypeVar("S", bound=BaseModel)


class EventType(str, Enum):
    """CloudEvent types published by the GitHub event ingester."""

    PULL_REQUEST = "dev.chainguard.github.pull_request"
    WORKFLOW_RUN = "dev.chainguard.github.workflow_run"
    CHECK_RUN = "dev.chainguard.github.check_run"


class EventDecodeError(Exception):
    """Raised when event data does not decode into the handler's shape.

    Covers both the payload decode and the re-derivation of the subject
    entity; ``stage`` records which one failed, for logging only.

    Attributes:
        event_id: The CloudEvent id.
        event_type: The CloudEvent type.
        stage: "payload" or "subject".
    """

    def __init__(self, event_id: str, event_type: str, stage: str, message: str):
        self.event_id = event_id
        self.event_type = event_type
        self.stage = stage
        super().__init__(f"decoding {stage} of event {event_id} ({event_type}): {message}")


@dataclass(frozen=True)
class EventContext:
    """Envelope attributes made available to handlers.

    Attributes:
        bot_name: Name of the bot handling the event.
        id: CloudEvent id.
        type: CloudEvent type.
        source: CloudEvent source.
        subject: CloudEvent subject, if any.
        time: CloudEvent time, if any.
        extensions: Read-only view of the extension attributes.
        transport_config: Outbound HTTP configuration for clients the
            handler creates, e.g. with ``new_github_client``.
    """

    bot_name: str
    id: str
    type: str
    source: str
    subject: Optional[str] = None
    time: Optional[datetime] = None
    extensions: Mapping[str, Any] = field(default_factory=dict)
    transport_config: TransportConfig = field(default_factory=TransportConfig)

    @classmethod
    def from_event(
        cls,
        event: CloudEvent,
        bot_name: str,
        transport_config: Optional[TransportConfig] = None,
    ) -> "EventContext":
        return cls(
            bot_name=bot_name,
            id=event.id,
            type=event.type,
            source=event.source,
            subject=event.subject,
            time=event.time,
            extensions=MappingProxyType(dict(event.extensions)),
            transport_config=transport_config or TransportConfig(),
        )


@dataclass(frozen=True)
class _TypedHandler(Generic[B, S]):
    """Common decode and invoke behaviour of the handler variants."""

    fn: Callable[[EventContext, B, S], Awaitable[None]]

    event_type: ClassVar[EventType]
    body_model: ClassVar[Type[BaseModel]]
    subject_field: ClassVar[str]
    subject_model: ClassVar[Type[BaseModel]]

    def decode(self, event: CloudEvent) -> Tuple[B, S]:
        """Decode event data into (body, subject).

        The subject is re-derived from the body's nested field by a JSON
        round-trip into the richer domain model; the two are structurally
        compatible but not identical.

        Raises:
            EventDecodeError: If either step fails.
        """
        try:
            wrapper = schemas.Wrapper[self.body_model].model_validate_json(event.data)
        except ValidationError as e:
            raise EventDecodeError(event.id, event.type, "payload", str(e)) from e
        body = wrapper.body

        raw = getattr(body, self.subject_field, None)
        if raw is None:
            raise EventDecodeError(
                event.id,
                event.type,
                "subject",
                f"payload has no {self.subject_field}",
            )
        try:
            subject = self.subject_model.model_validate_json(raw.model_dump_json())
        except ValidationError as e:
            raise EventDecodeError(event.id, event.type, "subject", str(e)) from e

        return body, subject

    async def __call__(self, ctx: EventContext, body: B, subject: S) -> None:
        await self.fn(ctx, body, subject)


@dataclass(frozen=True)
class PullRequestHandler(_TypedHandler[schemas.PullRequestEvent, models.PullRequest]):
    event_type: ClassVar[EventType] = EventType.PULL_REQUEST
    body_model: ClassVar[Type[BaseModel]] = schemas.PullRequestEvent
    subject_field: ClassVar[str] = "pull_request"
    subject_model: ClassVar[Type[BaseModel]] = models.PullRequest


@dataclass(frozen=True)
class WorkflowRunHandler(_TypedHandler[schemas.WorkflowRunEvent, models.WorkflowRun]):
    event_type: ClassVar[EventType] = EventType.WORKFLOW_RUN
    body_model: ClassVar[Type[BaseModel]] = schemas.WorkflowRunEvent
    subject_field: ClassVar[str] = "workflow_run"
    subject_model: ClassVar[Type[BaseModel]] = models.WorkflowRun


@dataclass(frozen=True)
class CheckRunHandler(_TypedHandler[schemas.CheckRunEvent, models.CheckRun]):
    event_type: ClassVar[EventType] = EventType.CHECK_RUN
    body_model: ClassVar[Type[BaseModel]] = schemas.CheckRunEvent
    subject_field: ClassVar[str] = "check_run"
    subject_model: ClassVar[Type[BaseModel]] = models.CheckRun


EventHandler = Union[PullRequestHandler, WorkflowRunHandler, CheckRunHandler]
