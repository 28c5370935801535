"""FastAPI receiver that delivers inbound CloudEvents to a Bot.

Endpoints:
- POST /: CloudEvent receiver (binary or structured mode)
- GET /health: Liveness probe
- GET /metrics: Prometheus metrics

Response codes for POST /:
- 200: a handler ran and succeeded
- 202: no handler is registered for the event type; acknowledged
- 400: the request is not a valid CloudEvent
- 500: the event data could not be decoded, or the handler failed
"""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST

from src.ghbots.bot.bot import Bot
from src.ghbots.bot.handlers import EventDecodeError
from src.ghbots.detached import drain_detached
from src.ghbots.events.envelope import CloudEvent, EnvelopeError
from src.ghbots.metrics import BotMetrics, generate_metrics_output


logger = logging.getLogger(__name__)


def create_bot_app(
    bot: Bot,
    metrics: Optional[BotMetrics] = None,
    drain_timeout: float = 10.0,
) -> FastAPI:
    """Build the HTTP app for a bot.

    Args:
        bot: The bot to dispatch events to. Frozen on startup.
        metrics: Metrics sink; also served at /metrics. Defaults to the
            bot's own metrics, if any.
        drain_timeout: Seconds to wait on shutdown for detached work
            (token revocations, publishes) to finish.
    """
    metrics = metrics or bot.metrics
    if bot.metrics is None:
        bot.metrics = metrics
    if bot.transport_config.metrics is None:
        bot.transport_config.metrics = metrics

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        handlers = bot.freeze()
        logger.info(
            "Bot %s starting with handlers for: %s",
            bot.name,
            ", ".join(sorted(handlers)) or "(none)",
        )
        yield
        logger.info("Bot %s shutting down...", bot.name)
        await drain_detached(drain_timeout)
        logger.info("Bot %s shutdown complete", bot.name)

    app = FastAPI(
        title=f"ghbots: {bot.name}",
        description="CloudEvents receiver for GitHub automation",
        version="1.0.0",
        lifespan=lifespan,
    )

    @app.post("/")
    async def receive(request: Request):
        """Receive one CloudEvent and dispatch it."""
        body = await request.body()
        try:
            event = CloudEvent.from_http(request.headers, body)
        except EnvelopeError as e:
            logger.warning("Rejected invalid CloudEvent: %s", e)
            return JSONResponse(
                status_code=400,
                content={"status": "rejected", "message": str(e)},
            )

        logger.info(
            "Received event %s (%s)",
            event.id,
            event.type,
            extra={"bot": bot.name, **{f"ce_{k}": v for k, v in event.attributes().items()}},
        )
        if metrics is not None:
            metrics.record_received(event.type)

        try:
            handled = await bot.dispatch(event)
        except EventDecodeError as e:
            return JSONResponse(
                status_code=500,
                content={"status": "error", "id": event.id, "message": str(e)},
            )
        except Exception as e:
            logger.exception(
                "Handler failed for event %s",
                event.id,
                extra={"bot": bot.name, "event_id": event.id, "event_type": event.type},
            )
            return JSONResponse(
                status_code=500,
                content={"status": "error", "id": event.id, "message": str(e)},
            )

        if not handled:
            return JSONResponse(
                status_code=202,
                content={"status": "ignored", "id": event.id},
            )
        return {"status": "handled", "id": event.id}

    @app.get("/health")
    async def health():
        """Liveness probe endpoint."""
        return {"status": "healthy", "bot": bot.name}

    @app.get("/metrics")
    async def metrics_endpoint():
        """Prometheus metrics endpoint."""
        registry = metrics.registry if metrics is not None else None
        return Response(
            content=generate_metrics_output(registry),
            media_type=CONTENT_TYPE_LATEST,
        )

    return app
