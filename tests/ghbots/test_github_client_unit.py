"""Unit tests for the credential-scoped GitHubClient.

GitHub is simulated with an ``httpx.MockTransport`` backed by a small
in-memory model of one pull request's labels and comments.
"""

import asyncio
import json
from typing import Dict, List, Optional
from unittest.mock import AsyncMock, patch
from urllib.parse import unquote

import httpx
import pytest

from factories import pull_request_payload, workflow_run_payload
from src.ghbots.github.client import (
    GitHubAPIError,
    GitHubClient,
    LogsExpiredError,
    PullRequestNotFoundError,
    RateLimitError,
    comment_marker,
)
from src.ghbots.github.models import PullRequest, WorkflowRun
from src.ghbots.sts.broker import CredentialBroker
from src.ghbots.transport import TransportConfig


def run_async(coro):
    return asyncio.run(coro)


LOGS_URL = "https://pipelines.actions.githubusercontent.com/logs/99.zip"


class FakeExchange:
    def __init__(self):
        self.exchange_calls = 0
        self.revoked: List[str] = []

    async def exchange(self, policy_name, org, repo=""):
        self.exchange_calls += 1
        return "ghs_scoped"

    async def revoke(self, token, scope="", policy_name=""):
        self.revoked.append(token)


class FakeGitHub:
    """In-memory GitHub serving one repository's PR #7."""

    def __init__(self, labels: Optional[List[str]] = None):
        self.labels: List[str] = list(labels or [])
        self.comments: List[Dict] = []
        self.pulls: List[List[Dict]] = [[]]
        self.logs_status = 200
        self.requests: List[httpx.Request] = []
        self.next_comment_id = 1000

    @property
    def mutations(self) -> List[httpx.Request]:
        return [r for r in self.requests if r.method != "GET"]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        method = request.method
        prefix = "/repos/acme/widgets"

        if request.url.host != "api.github.com":
            if str(request.url) == LOGS_URL:
                if self.logs_status == 200:
                    return httpx.Response(200, content=b"PK\x03\x04logs")
                return httpx.Response(self.logs_status, text="gone")
            return httpx.Response(404)

        if path == f"{prefix}/issues/7/labels":
            if method == "GET":
                return httpx.Response(200, json=[{"name": n} for n in self.labels])
            if method == "POST":
                for name in json.loads(request.content)["labels"]:
                    if name not in self.labels:
                        self.labels.append(name)
                return httpx.Response(200, json=[{"name": n} for n in self.labels])

        if path.startswith(f"{prefix}/issues/7/labels/") and method == "DELETE":
            name = unquote(path.rsplit("/", 1)[1])
            self.labels.remove(name)
            return httpx.Response(200, json=[{"name": n} for n in self.labels])

        if path == f"{prefix}/issues/7/comments":
            if method == "GET":
                return httpx.Response(200, json=self.comments)
            if method == "POST":
                comment = {"id": self.next_comment_id, "body": json.loads(request.content)["body"]}
                self.next_comment_id += 1
                self.comments.append(comment)
                return httpx.Response(201, json=comment)

        if path.startswith(f"{prefix}/issues/comments/") and method == "PATCH":
            comment_id = int(path.rsplit("/", 1)[1])
            for comment in self.comments:
                if comment["id"] == comment_id:
                    comment["body"] = json.loads(request.content)["body"]
                    return httpx.Response(200, json=comment)
            return httpx.Response(404)

        if path == f"{prefix}/actions/runs/99/logs":
            return httpx.Response(302, headers={"Location": LOGS_URL})

        if path == f"{prefix}/pulls":
            page = int(request.url.params.get("page", "1"))
            headers = {}
            if page < len(self.pulls):
                headers["Link"] = (
                    f'<https://api.github.com{prefix}/pulls?page={page + 1}>; rel="next"'
                )
            return httpx.Response(200, json=self.pulls[page - 1], headers=headers)

        return httpx.Response(404, json={"message": "Not Found"})


def _client(github: FakeGitHub, exchange: Optional[FakeExchange] = None) -> GitHubClient:
    broker = CredentialBroker(exchange or FakeExchange(), "acme", "widgets", "labeler")
    config = TransportConfig(transport=httpx.MockTransport(github.handle))
    return GitHubClient(broker, transport_config=config)


def _pr() -> PullRequest:
    return PullRequest.model_validate(pull_request_payload())


def _run() -> WorkflowRun:
    return WorkflowRun.model_validate(workflow_run_payload())


# ---------------------------------------------------------------------------
# Labels
# ---------------------------------------------------------------------------


class TestLabels:
    """Tests for add_label / remove_label."""

    def test_add_label_twice_mutates_once(self):
        github = FakeGitHub()

        async def scenario():
            async with _client(github) as gh:
                await gh.add_label(_pr(), "needs-review")
                await gh.add_label(_pr(), "needs-review")

        run_async(scenario())

        assert github.labels == ["needs-review"]
        assert [r.method for r in github.mutations] == ["POST"]

    def test_add_existing_label_is_noop(self):
        github = FakeGitHub(labels=["needs-review"])

        async def scenario():
            async with _client(github) as gh:
                await gh.add_label(_pr(), "needs-review")

        run_async(scenario())
        assert github.mutations == []

    def test_remove_label(self):
        github = FakeGitHub(labels=["needs-review", "lgtm"])

        async def scenario():
            async with _client(github) as gh:
                await gh.remove_label(_pr(), "needs-review")
                await gh.remove_label(_pr(), "needs-review")

        run_async(scenario())

        assert github.labels == ["lgtm"]
        assert [r.method for r in github.mutations] == ["DELETE"]

    def test_requests_carry_scoped_token(self):
        github = FakeGitHub()

        async def scenario():
            async with _client(github) as gh:
                await gh.add_label(_pr(), "x")

        run_async(scenario())

        for request in github.requests:
            assert request.headers["Authorization"] == "Bearer ghs_scoped"
            assert request.headers["Accept"] == "application/vnd.github+json"

    def test_missing_coordinates_rejected(self):
        github = FakeGitHub()
        pr = PullRequest.model_validate({"number": 7})

        async def scenario():
            async with _client(github) as gh:
                await gh.add_label(pr, "x")

        with pytest.raises(ValueError):
            run_async(scenario())
        assert github.requests == []


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------


class TestSetComment:
    """Tests for set_comment upsert semantics."""

    def test_creates_then_edits(self):
        github = FakeGitHub()

        async def scenario():
            async with _client(github) as gh:
                first = await gh.set_comment(_pr(), "labeler", "first")
                second = await gh.set_comment(_pr(), "labeler", "second")
            return first, second

        first, second = run_async(scenario())

        assert len(github.comments) == 1
        assert github.comments[0]["body"] == f"{comment_marker('labeler')}\n\nsecond"
        assert first.id == second.id
        assert [r.method for r in github.mutations] == ["POST", "PATCH"]

    def test_other_bots_comments_untouched(self):
        github = FakeGitHub()
        github.comments.append({"id": 1, "body": f"{comment_marker('other')}\n\nhello"})
        github.comments.append({"id": 2, "body": "a human comment"})

        async def scenario():
            async with _client(github) as gh:
                await gh.set_comment(_pr(), "labeler", "mine")

        run_async(scenario())

        assert len(github.comments) == 3
        assert github.comments[0]["body"].endswith("hello")
        assert github.comments[2]["body"] == f"{comment_marker('labeler')}\n\nmine"

    def test_marker_format(self):
        assert comment_marker("labeler") == "<!-- bot:labeler -->"


# ---------------------------------------------------------------------------
# Workflow runs
# ---------------------------------------------------------------------------


class TestWorkflowRunLogs:
    """Tests for get_workflow_run_logs."""

    def test_follows_redirect_without_credentials(self):
        github = FakeGitHub()

        async def scenario():
            async with _client(github) as gh:
                return await gh.get_workflow_run_logs(_run())

        assert run_async(scenario()) == b"PK\x03\x04logs"

        download = github.requests[-1]
        assert str(download.url) == LOGS_URL
        assert "Authorization" not in download.headers

    @pytest.mark.parametrize("status", [404, 410])
    def test_expired_logs(self, status):
        github = FakeGitHub()
        github.logs_status = status

        async def scenario():
            async with _client(github) as gh:
                await gh.get_workflow_run_logs(_run())

        with pytest.raises(LogsExpiredError) as exc_info:
            run_async(scenario())
        assert exc_info.value.run_id == 99
        assert exc_info.value.status_code == status

    def test_other_download_failure_is_api_error(self):
        github = FakeGitHub()
        github.logs_status = 500

        async def scenario():
            async with _client(github) as gh:
                await gh.get_workflow_run_logs(_run())

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(scenario())
        assert not isinstance(exc_info.value, LogsExpiredError)
        assert exc_info.value.status_code == 500


class TestWorkflowRunPullRequest:
    """Tests for get_workflow_run_pull_request_number."""

    def test_paginates_until_match(self):
        github = FakeGitHub()
        github.pulls = [
            [pull_request_payload(number=1, head_sha="aaa")],
            [pull_request_payload(number=2, head_sha="bbb")],
            [pull_request_payload(number=3, head_sha="abc123")],
        ]

        async def scenario():
            async with _client(github) as gh:
                return await gh.get_workflow_run_pull_request_number(_run())

        assert run_async(scenario()) == 3

        listed = [r for r in github.requests if r.url.path.endswith("/pulls")]
        assert [r.url.params["page"] for r in listed] == ["1", "2", "3"]
        assert listed[0].url.params["head"] == "acme:feature"
        assert listed[0].url.params["state"] == "open"
        assert listed[0].url.params["per_page"] == "10"

    def test_not_found_after_last_page(self):
        github = FakeGitHub()
        github.pulls = [
            [pull_request_payload(number=1, head_sha="aaa")],
            [pull_request_payload(number=2, head_sha="bbb")],
        ]

        async def scenario():
            async with _client(github) as gh:
                await gh.get_workflow_run_pull_request_number(_run())

        with pytest.raises(PullRequestNotFoundError):
            run_async(scenario())
        assert len([r for r in github.requests if r.url.path.endswith("/pulls")]) == 2


# ---------------------------------------------------------------------------
# Errors and credential lifecycle
# ---------------------------------------------------------------------------


class TestErrorsAndLifecycle:
    """Tests for error mapping and credential release."""

    def test_api_error_propagates(self):
        def handler(request):
            return httpx.Response(422, json={"message": "Validation Failed"})

        broker = CredentialBroker(FakeExchange(), "acme", "widgets", "labeler")
        gh = GitHubClient(broker, TransportConfig(transport=httpx.MockTransport(handler)))

        with pytest.raises(GitHubAPIError) as exc_info:
            run_async(gh.request("POST", "/repos/acme/widgets/issues/7/labels"))
        assert exc_info.value.status_code == 422

    def test_rate_limit(self):
        def handler(request):
            return httpx.Response(
                403,
                headers={"x-ratelimit-remaining": "0", "retry-after": "30"},
            )

        broker = CredentialBroker(FakeExchange(), "acme", "widgets", "labeler")
        gh = GitHubClient(broker, TransportConfig(transport=httpx.MockTransport(handler)))

        with pytest.raises(RateLimitError) as exc_info:
            run_async(gh.request("GET", "/rate_limit"))
        assert exc_info.value.retry_after == 30

    def test_context_exit_revokes_on_success(self):
        exchange = FakeExchange()
        github = FakeGitHub()

        async def scenario():
            async with _client(github, exchange) as gh:
                await gh.add_label(_pr(), "x")

        run_async(scenario())
        assert exchange.revoked == ["ghs_scoped"]

    def test_context_exit_revokes_on_failure(self):
        exchange = FakeExchange()
        github = FakeGitHub()

        async def scenario():
            async with _client(github, exchange) as gh:
                await gh.add_label(_pr(), "x")
                raise RuntimeError("handler failed")

        with pytest.raises(RuntimeError):
            run_async(scenario())
        assert exchange.revoked == ["ghs_scoped"]

    def test_unused_client_never_exchanges(self):
        exchange = FakeExchange()

        async def scenario():
            async with _client(FakeGitHub(), exchange):
                pass

        run_async(scenario())
        assert exchange.exchange_calls == 0
        assert exchange.revoked == []


# ---------------------------------------------------------------------------
# Retries
# ---------------------------------------------------------------------------


def _retrying_client(handler, max_retries: int) -> GitHubClient:
    broker = CredentialBroker(FakeExchange(), "acme", "widgets", "labeler")
    config = TransportConfig(transport=httpx.MockTransport(handler))
    return GitHubClient(broker, transport_config=config, max_retries=max_retries)


def _request(gh: GitHubClient):
    async def scenario():
        try:
            return await gh.request("GET", "/repos/acme/widgets")
        finally:
            await gh.close()

    return run_async(scenario())


class TestRetries:
    """Tests for opt-in retries of transient failures."""

    @patch("src.ghbots.github.client.asyncio.sleep", new_callable=AsyncMock)
    def test_retryable_status_retried(self, mock_sleep):
        statuses = [503, 200]
        calls: List[httpx.Request] = []

        def handler(request):
            calls.append(request)
            return httpx.Response(statuses[len(calls) - 1], json={})

        gh = _retrying_client(handler, max_retries=2)

        assert _request(gh).status_code == 200
        assert len(calls) == 2
        assert mock_sleep.await_count == 1
        assert 0 <= mock_sleep.await_args.args[0] <= gh.base_delay

    @patch("src.ghbots.github.client.asyncio.sleep", new_callable=AsyncMock)
    def test_transport_error_retried(self, mock_sleep):
        calls: List[httpx.Request] = []

        def handler(request):
            calls.append(request)
            if len(calls) == 1:
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(200, json={})

        assert _request(_retrying_client(handler, max_retries=1)).status_code == 200
        assert len(calls) == 2
        assert mock_sleep.await_count == 1

    @patch("src.ghbots.github.client.asyncio.sleep", new_callable=AsyncMock)
    def test_retryable_status_exhausted(self, mock_sleep):
        calls: List[httpx.Request] = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        with pytest.raises(GitHubAPIError) as exc_info:
            _request(_retrying_client(handler, max_retries=2))

        assert exc_info.value.status_code == 503
        assert len(calls) == 3
        assert mock_sleep.await_count == 2

    @patch("src.ghbots.github.client.asyncio.sleep", new_callable=AsyncMock)
    def test_transport_error_exhausted(self, mock_sleep):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(GitHubAPIError) as exc_info:
            _request(_retrying_client(handler, max_retries=1))

        assert exc_info.value.status_code is None
        assert "2 attempt(s)" in str(exc_info.value)
        assert mock_sleep.await_count == 1

    @patch("src.ghbots.github.client.asyncio.sleep", new_callable=AsyncMock)
    def test_no_retries_by_default(self, mock_sleep):
        calls: List[httpx.Request] = []

        def handler(request):
            calls.append(request)
            return httpx.Response(503)

        broker = CredentialBroker(FakeExchange(), "acme", "widgets", "labeler")
        gh = GitHubClient(broker, TransportConfig(transport=httpx.MockTransport(handler)))

        with pytest.raises(GitHubAPIError):
            _request(gh)

        assert len(calls) == 1
        mock_sleep.assert_not_awaited()
