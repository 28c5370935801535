"""Bot runtime: typed handlers, the event router, and its HTTP receiver."""

from src.ghbots.bot.bot import Bot, DuplicateHandlerError
from src.ghbots.bot.handlers import (
    CheckRunHandler,
    EventContext,
    EventDecodeError,
    EventHandler,
    EventType,
    PullRequestHandler,
    WorkflowRunHandler,
)
from src.ghbots.bot.server import create_bot_app

__all__ = [
    "Bot",
    "CheckRunHandler",
    "DuplicateHandlerError",
    "EventContext",
    "EventDecodeError",
    "EventHandler",
    "EventType",
    "PullRequestHandler",
    "WorkflowRunHandler",
    "create_bot_app",
]
