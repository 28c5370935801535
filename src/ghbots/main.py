"""Process entry points for bots and the event recorder.

A bot's own module builds its Bot and hands it to ``serve``:

    bot = Bot("labeler", handlers=[PullRequestHandler(on_pr)])

    if __name__ == "__main__":
        serve(bot)

The recorder runs with ``python -m src.ghbots.main``.
"""

import logging
from typing import Optional

import uvicorn

from src.ghbots.bot.bot import Bot
from src.ghbots.bot.server import create_bot_app
from src.ghbots.config import (
    BotSettings,
    RecorderSettings,
    get_bot_settings,
    get_recorder_settings,
    get_token_exchange_settings,
)
from src.ghbots.metrics import get_metrics
from src.ghbots.recorder import EventRecorder, create_recorder_app


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT)


def _log_configuration(settings: BotSettings, bot: Bot) -> None:
    """Log configuration values on startup.

    The exchange settings carry no secrets; the identity token itself is
    never read here.
    """
    exchange = get_token_exchange_settings()
    logger.info("Bot configuration:")
    logger.info(f"  Bot Name: {bot.name}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")
    logger.info(f"  Log Level: {settings.log_level}")
    logger.info(f"  Metrics Enabled: {settings.metrics_enabled}")
    logger.info(f"  Token Exchange Endpoint: {exchange.endpoint}")
    logger.info(f"  Identity Source: {exchange.identity_source}")


def serve(bot: Bot, settings: Optional[BotSettings] = None) -> None:
    """Run a bot's CloudEvents receiver until the process is stopped."""
    settings = settings or get_bot_settings()
    configure_logging(settings.log_level)
    _log_configuration(settings, bot)

    metrics = get_metrics() if settings.metrics_enabled else None
    app = create_bot_app(bot, metrics=metrics)
    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


def recorder_main(settings: Optional[RecorderSettings] = None) -> None:
    """Run the event recorder service."""
    settings = settings or get_recorder_settings()
    configure_logging()
    logger.info("Recorder configuration:")
    logger.info(f"  Log Path: {settings.log_path}")
    logger.info(f"  Host: {settings.host}")
    logger.info(f"  Port: {settings.port}")

    app = create_recorder_app(EventRecorder(settings.log_path))
    uvicorn.run(app, host=settings.host, port=settings.port)


if __name__ == "__main__":
    recorder_main()
