"""Detached execution scope for cleanup and delivery work.

Credential revocation and event delivery must finish even when the request
that triggered them is cancelled or times out. ``run_detached`` runs a
coroutine in its own task and awaits it through ``asyncio.shield``: if the
caller is cancelled, the caller sees ``CancelledError`` but the task keeps
running to completion on the loop.
"""

import asyncio
import logging
from typing import Awaitable, Set, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Strong references to in-flight detached tasks; the loop only keeps weak ones.
_inflight: Set["asyncio.Task[object]"] = set()


def _on_done(task: "asyncio.Task[object]") -> None:
    _inflight.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug(
            "Detached task finished with error: %s",
            exc,
            extra={"task": task.get_name(), "error": str(exc)},
        )


async def run_detached(aw: Awaitable[T], name: str = "detached") -> T:
    """Run an awaitable so that cancelling the caller does not cancel it.

    Args:
        aw: Coroutine or awaitable to run.
        name: Task name, used in logs.

    Returns:
        The awaitable's result.

    Raises:
        Whatever the awaitable raises, or CancelledError if the caller
        itself was cancelled while waiting.
    """
    task = asyncio.ensure_future(aw)
    task.set_name(name)
    _inflight.add(task)
    task.add_done_callback(_on_done)
    return await asyncio.shield(task)


async def drain_detached(timeout: float = 10.0) -> None:
    """Wait for in-flight detached tasks, used on graceful shutdown."""
    loop = asyncio.get_running_loop()
    pending = [t for t in _inflight if not t.done() and t.get_loop() is loop]
    if not pending:
        return
    logger.info("Waiting for %d detached task(s) to finish", len(pending))
    _, still_pending = await asyncio.wait(pending, timeout=timeout)
    if still_pending:
        logger.warning(
            "%d detached task(s) still running after %.1fs",
            len(still_pending),
            timeout,
        )
