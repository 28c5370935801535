"""Event router: maps CloudEvent types to typed handlers.

A Bot owns a table of at most one handler per event type. The table is
built at startup and frozen before the first dispatch; afterwards it is
read-only, so concurrent dispatches need no locking.
"""

import logging
import time
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

from src.ghbots.bot.handlers import EventContext, EventDecodeError, EventHandler
from src.ghbots.events.envelope import CloudEvent
from src.ghbots.metrics import BotMetrics
from src.ghbots.transport import TransportConfig


logger = logging.getLogger(__name__)


class DuplicateHandlerError(ValueError):
    """Raised when a second handler is registered for an event type."""

    def __init__(self, event_type: str):
        self.event_type = event_type
        super().__init__(f"handler for event type {event_type} already registered")


class Bot:
    """A named set of event handlers.

    Attributes:
        name: Bot name, passed to handlers and used in comment markers.
        metrics: Optional metrics sink for dispatch outcomes.
        transport_config: Outbound HTTP configuration handed to handlers.

    Example:
        >>> bot = Bot("labeler", handlers=[PullRequestHandler(on_pr)])
        >>> handled = await bot.dispatch(event)
    """

    def __init__(
        self,
        name: str,
        handlers: Iterable[EventHandler] = (),
        metrics: Optional[BotMetrics] = None,
        transport_config: Optional[TransportConfig] = None,
    ):
        self.name = name
        self.metrics = metrics
        self.transport_config = transport_config or TransportConfig(metrics=metrics)
        self._handlers: Dict[str, EventHandler] = {}
        self._frozen: Optional[Mapping[str, EventHandler]] = None
        for handler in handlers:
            self.register_handler(handler)

    def register_handler(self, handler: EventHandler) -> None:
        """Register a handler for its event type.

        Raises:
            DuplicateHandlerError: If the event type already has a handler.
            RuntimeError: If the bot has been frozen.
        """
        if self._frozen is not None:
            raise RuntimeError("cannot register handlers after the bot is frozen")
        event_type = handler.event_type.value
        if event_type in self._handlers:
            raise DuplicateHandlerError(event_type)
        self._handlers[event_type] = handler

    def freeze(self) -> Mapping[str, EventHandler]:
        """Make the handler table read-only and return it."""
        if self._frozen is None:
            self._frozen = MappingProxyType(self._handlers)
        return self._frozen

    @property
    def handlers(self) -> Mapping[str, EventHandler]:
        return self.freeze()

    async def dispatch(self, event: CloudEvent) -> bool:
        """Decode an event and invoke the handler registered for its type.

        Returns:
            True if a handler ran, False if no handler is registered for the
            event's type (the event is acknowledged and ignored).

        Raises:
            EventDecodeError: If the data does not decode into the handler's
                shape. The handler is not called.
            Exception: Whatever the handler raises, unchanged.
        """
        handler = self.handlers.get(event.type)
        if handler is None:
            logger.info(
                "No handler for event type %s, ignoring",
                event.type,
                extra={"bot": self.name, "event_id": event.id, "event_type": event.type},
            )
            self._record(event.type, "ignored")
            return False

        start = time.monotonic()
        try:
            body, subject = handler.decode(event)
        except EventDecodeError as e:
            logger.error(
                "Failed to decode event: %s",
                e,
                extra={
                    "bot": self.name,
                    "event_id": event.id,
                    "event_type": event.type,
                    "stage": e.stage,
                },
            )
            self._record(event.type, "decode_error")
            raise

        ctx = EventContext.from_event(event, self.name, self.transport_config)
        try:
            await handler(ctx, body, subject)
        except Exception:
            self._record(event.type, "handler_error", time.monotonic() - start)
            raise

        self._record(event.type, "handled", time.monotonic() - start)
        return True

    def _record(
        self,
        event_type: str,
        outcome: str,
        duration_seconds: Optional[float] = None,
    ) -> None:
        if self.metrics is not None:
            self.metrics.record_dispatch(event_type, outcome, duration_seconds)
