"""Unit tests for the Bot event router and handler variants."""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest

from factories import (
    REPOSITORY,
    event_body,
    make_event,
    pull_request_payload,
    wrap,
)
from src.ghbots.bot.bot import Bot, DuplicateHandlerError
from src.ghbots.bot.handlers import (
    CheckRunHandler,
    EventContext,
    EventDecodeError,
    EventType,
    PullRequestHandler,
    WorkflowRunHandler,
)
from src.ghbots.events import schemas
from src.ghbots.github import models


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegistration:
    """Tests for building the handler table."""

    def test_handlers_keyed_by_event_type(self):
        pr = PullRequestHandler(AsyncMock())
        wr = WorkflowRunHandler(AsyncMock())
        bot = Bot("test", handlers=[pr, wr])

        assert dict(bot.handlers) == {
            EventType.PULL_REQUEST.value: pr,
            EventType.WORKFLOW_RUN.value: wr,
        }

    def test_duplicate_registration_fails_at_construction(self):
        with pytest.raises(DuplicateHandlerError) as exc_info:
            Bot(
                "test",
                handlers=[PullRequestHandler(AsyncMock()), PullRequestHandler(AsyncMock())],
            )
        assert exc_info.value.event_type == EventType.PULL_REQUEST.value

    def test_duplicate_register_handler_keeps_first(self):
        first = CheckRunHandler(AsyncMock())
        bot = Bot("test", handlers=[first])

        with pytest.raises(DuplicateHandlerError):
            bot.register_handler(CheckRunHandler(AsyncMock()))
        assert bot.handlers[EventType.CHECK_RUN.value] is first

    def test_register_after_freeze_fails(self):
        bot = Bot("test")
        bot.freeze()

        with pytest.raises(RuntimeError):
            bot.register_handler(PullRequestHandler(AsyncMock()))

    def test_frozen_table_is_read_only(self):
        bot = Bot("test", handlers=[PullRequestHandler(AsyncMock())])
        table = bot.freeze()

        with pytest.raises(TypeError):
            table["dev.example.other"] = PullRequestHandler(AsyncMock())


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------


class TestDispatch:
    """Tests for Bot.dispatch."""

    def test_pull_request_handler_receives_decoded_arguments(self):
        fn = AsyncMock()
        bot = Bot("labeler", handlers=[PullRequestHandler(fn)])
        event = make_event(
            EventType.PULL_REQUEST.value,
            subject="acme/widgets#7",
            extensions={"action": "opened"},
        )

        assert run_async(bot.dispatch(event)) is True

        fn.assert_awaited_once()
        ctx, body, pr = fn.await_args.args
        assert isinstance(ctx, EventContext)
        assert ctx.bot_name == "labeler"
        assert ctx.id == event.id
        assert ctx.subject == "acme/widgets#7"
        assert ctx.extensions["action"] == "opened"
        assert isinstance(body, schemas.PullRequestEvent)
        assert body.action == "opened"
        assert isinstance(pr, models.PullRequest)
        assert pr.number == 7
        assert pr.base.repo.owner_login == "acme"

    def test_workflow_run_handler_receives_decoded_arguments(self):
        fn = AsyncMock()
        bot = Bot("test", handlers=[WorkflowRunHandler(fn)])

        run_async(bot.dispatch(make_event(EventType.WORKFLOW_RUN.value)))

        _, body, run = fn.await_args.args
        assert isinstance(body, schemas.WorkflowRunEvent)
        assert isinstance(run, models.WorkflowRun)
        assert run.id == 99
        assert run.head_branch == "feature"

    def test_check_run_null_pull_requests_decode_as_empty(self):
        fn = AsyncMock()
        bot = Bot("test", handlers=[CheckRunHandler(fn)])

        run_async(bot.dispatch(make_event(EventType.CHECK_RUN.value)))

        _, body, check = fn.await_args.args
        assert isinstance(check, models.CheckRun)
        assert check.pull_requests == []
        assert body.check_run.pull_requests == []

    def test_only_matching_handler_invoked(self):
        pr_fn = AsyncMock()
        wr_fn = AsyncMock()
        bot = Bot("test", handlers=[PullRequestHandler(pr_fn), WorkflowRunHandler(wr_fn)])

        run_async(bot.dispatch(make_event(EventType.WORKFLOW_RUN.value)))

        pr_fn.assert_not_awaited()
        wr_fn.assert_awaited_once()

    def test_unknown_type_is_ignored(self):
        fn = AsyncMock()
        bot = Bot("test", handlers=[PullRequestHandler(fn)])
        event = make_event("dev.chainguard.github.issues", data=b"{}")

        assert run_async(bot.dispatch(event)) is False
        fn.assert_not_awaited()

    def test_uppercase_wrapper_keys_accepted(self):
        fn = AsyncMock()
        bot = Bot("test", handlers=[PullRequestHandler(fn)])
        data = json.dumps({
            "When": "2024-05-01T12:00:00Z",
            "Body": event_body(EventType.PULL_REQUEST.value),
        }).encode("utf-8")

        run_async(bot.dispatch(make_event(EventType.PULL_REQUEST.value, data=data)))

        fn.assert_awaited_once()

    def test_unknown_fields_tolerated(self):
        fn = AsyncMock()
        bot = Bot("test", handlers=[PullRequestHandler(fn)])
        pr = pull_request_payload()
        pr["auto_merge"] = {"enabled_by": {"login": "someone"}}
        data = wrap({"action": "opened", "repository": REPOSITORY, "pull_request": pr})

        run_async(bot.dispatch(make_event(EventType.PULL_REQUEST.value, data=data)))

        fn.assert_awaited_once()

    def test_handler_error_propagates_unchanged(self):
        error = RuntimeError("github is down")
        fn = AsyncMock(side_effect=error)
        bot = Bot("test", handlers=[PullRequestHandler(fn)])

        with pytest.raises(RuntimeError) as exc_info:
            run_async(bot.dispatch(make_event(EventType.PULL_REQUEST.value)))
        assert exc_info.value is error


# ---------------------------------------------------------------------------
# Decode failures
# ---------------------------------------------------------------------------


class TestDecodeErrors:
    """Tests for payload and subject decode failures."""

    def _dispatch(self, data: bytes):
        fn = AsyncMock()
        bot = Bot("test", handlers=[PullRequestHandler(fn)])
        with pytest.raises(EventDecodeError) as exc_info:
            run_async(bot.dispatch(make_event(EventType.PULL_REQUEST.value, data=data)))
        fn.assert_not_awaited()
        return exc_info.value

    def test_invalid_json(self):
        error = self._dispatch(b"not json")
        assert error.stage == "payload"
        assert error.event_id == "evt-1"

    def test_missing_body(self):
        error = self._dispatch(b'{"when": "2024-05-01T12:00:00Z"}')
        assert error.stage == "payload"

    def test_wrong_field_type(self):
        pr = pull_request_payload()
        pr["number"] = "seven"
        error = self._dispatch(wrap({"action": "opened", "pull_request": pr}))
        assert error.stage == "payload"

    def test_missing_subject(self):
        error = self._dispatch(wrap({"action": "opened", "repository": REPOSITORY}))
        assert error.stage == "subject"
        assert "pull_request" in str(error)


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------


class TestDispatchMetrics:
    """Tests for dispatch outcome metrics."""

    def _count(self, registry, event_type, outcome):
        return registry.get_sample_value(
            "ghbots_events_handled_total",
            {"type": event_type, "outcome": outcome},
        )

    def test_outcomes_recorded(self, registry, metrics):
        pr_type = EventType.PULL_REQUEST.value
        bot = Bot("test", handlers=[PullRequestHandler(AsyncMock())], metrics=metrics)

        run_async(bot.dispatch(make_event(pr_type)))
        run_async(bot.dispatch(make_event("dev.example.unknown", data=b"")))
        with pytest.raises(EventDecodeError):
            run_async(bot.dispatch(make_event(pr_type, data=b"[]")))

        assert self._count(registry, pr_type, "handled") == 1.0
        assert self._count(registry, "dev.example.unknown", "ignored") == 1.0
        assert self._count(registry, pr_type, "decode_error") == 1.0

    def test_handler_error_recorded(self, registry, metrics):
        pr_type = EventType.PULL_REQUEST.value
        fn = AsyncMock(side_effect=ValueError("boom"))
        bot = Bot("test", handlers=[PullRequestHandler(fn)], metrics=metrics)

        with pytest.raises(ValueError):
            run_async(bot.dispatch(make_event(pr_type)))

        assert self._count(registry, pr_type, "handler_error") == 1.0
        assert registry.get_sample_value(
            "ghbots_dispatch_duration_seconds_count", {"type": pr_type}
        ) == 1.0
