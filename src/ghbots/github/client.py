"""Credential-scoped GitHub API client for bot handlers.

Wraps the GitHub REST API with idempotent, high-level operations:
- Adding and removing PR labels (no-op when already in the desired state)
- Upserting a single bot-authored comment per PR
- Fetching workflow run logs
- Resolving the pull request behind a workflow run

Every request authenticates with a token from a CredentialBroker, fetched
lazily on the first request. Closing the client (or leaving its ``async
with`` block) revokes that token on every exit path.
"""

import asyncio
import logging
import random
import time
from typing import Any, AsyncGenerator, Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx

from src.ghbots.config import TokenExchangeSettings
from src.ghbots.github.models import IssueComment, Label, PullRequest, WorkflowRun
from src.ghbots.sts.broker import CredentialBroker
from src.ghbots.sts.exchange import TokenExchangeClient, TokenRevocationError
from src.ghbots.transport import TransportConfig


logger = logging.getLogger(__name__)


GITHUB_API_URL = "https://api.github.com"


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class LogsExpiredError(Exception):
    """Raised when a workflow run's logs are no longer available.

    This is an expected terminal condition and is never retried.
    """

    def __init__(self, run_id: Optional[int], status_code: int):
        self.run_id = run_id
        self.status_code = status_code
        super().__init__(f"logs expired for workflow run {run_id} ({status_code})")


class PullRequestNotFoundError(Exception):
    """Raised when no open pull request matches a workflow run."""

    def __init__(self, head: str, head_sha: Optional[str]):
        self.head = head
        self.head_sha = head_sha
        super().__init__(f"no matching pull request found for {head} at {head_sha}")


class BrokerAuth(httpx.Auth):
    """httpx auth flow that presents the broker's token."""

    def __init__(self, broker: CredentialBroker):
        self._broker = broker

    def sync_auth_flow(self, request):
        raise RuntimeError("BrokerAuth only supports async clients")

    async def async_auth_flow(
        self, request: httpx.Request
    ) -> AsyncGenerator[httpx.Request, httpx.Response]:
        token = await self._broker.acquire()
        request.headers["Authorization"] = f"Bearer {token}"
        yield request


def comment_marker(bot_name: str) -> str:
    """Return the hidden marker identifying a bot's comment."""
    return f"<!-- bot:{bot_name} -->"


def _pr_coordinates(pr: PullRequest) -> Tuple[str, str, int]:
    repo = pr.base.repo if pr.base else None
    owner = repo.owner_login if repo else None
    if not owner or not repo or not repo.name or pr.number is None:
        raise ValueError("pull request is missing base repository or number")
    return owner, repo.name, pr.number


def _run_coordinates(wr: WorkflowRun) -> Tuple[str, str]:
    repo = wr.repository
    owner = repo.owner_login if repo else None
    if not owner or not repo or not repo.name:
        raise ValueError("workflow run is missing its repository")
    return owner, repo.name


class GitHubClient:
    """Async GitHub API client scoped to one credential.

    Attributes:
        base_url: Base URL for GitHub API (default: https://api.github.com).
        max_retries: Retry attempts for transient failures. Bots default to
            0 and leave retries to the caller.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.

    Example:
        >>> async with new_github_client("acme", "widgets", "labeler") as gh:
        ...     await gh.add_label(pr, "needs-review")
    """

    # HTTP status codes that should trigger a retry
    RETRYABLE_STATUS_CODES = {408, 429, 500, 502, 503, 504}

    def __init__(
        self,
        broker: CredentialBroker,
        transport_config: Optional[TransportConfig] = None,
        base_url: str = GITHUB_API_URL,
        max_retries: int = 0,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
    ):
        self.broker = broker
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._transport_config = transport_config or TransportConfig()
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get the authenticated HTTP client, creating it if necessary."""
        if self._client is None or self._client.is_closed:
            self._client = self._transport_config.client(
                base_url=self.base_url,
                headers={
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                },
                auth=BrokerAuth(self.broker),
            )
        return self._client

    async def close(self) -> None:
        """Revoke the credential and release the HTTP client.

        Raises:
            TokenRevocationError: If the token could not be revoked. The HTTP
                client is released regardless.
        """
        try:
            await self.broker.revoke()
        finally:
            if self._client is not None and not self._client.is_closed:
                await self._client.aclose()
                self._client = None

    async def __aenter__(self) -> "GitHubClient":
        """Async context manager entry."""
        return self

    async def __aexit__(
        self,
        exc_type: Any,
        exc_val: Any,
        exc_tb: Any,
    ) -> None:
        """Async context manager exit - revoke and close.

        A revocation failure is raised only when the block itself succeeded,
        so it never masks the block's own exception.
        """
        try:
            await self.close()
        except TokenRevocationError:
            if exc_type is None:
                raise

    def _calculate_backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter."""
        exponential_delay = self.base_delay * (2 ** attempt)
        capped_delay = min(exponential_delay, self.max_delay)
        return random.uniform(0, capped_delay)

    def _parse_int_header(
        self,
        headers: httpx.Headers,
        name: str,
    ) -> Optional[int]:
        value = headers.get(name)
        if value is not None:
            try:
                return int(value)
            except ValueError:
                pass
        return None

    def _rate_limit_error(self, response: httpx.Response) -> RateLimitError:
        reset_at = self._parse_int_header(response.headers, "x-ratelimit-reset")

        retry_after = None
        if reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        retry_after_header = self._parse_int_header(response.headers, "retry-after")
        if retry_after_header is not None:
            retry_after = retry_after_header

        logger.warning(
            "GitHub API rate limit exceeded",
            extra={
                "reset_at": reset_at,
                "retry_after": retry_after,
                "limit": self._parse_int_header(response.headers, "x-ratelimit-limit"),
                "used": self._parse_int_header(response.headers, "x-ratelimit-used"),
            },
        )

        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.url),
        )

    async def request(
        self,
        method: str,
        path: str,
        json_data: Optional[Any] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an authenticated request to the GitHub API.

        Responses below 400 are returned as-is (redirects are not
        followed). Transient failures are retried up to ``max_retries``
        times with jittered exponential backoff.

        Raises:
            GitHubAPIError: If the request fails.
            RateLimitError: If rate limit is exceeded.
            TokenExchangeError: If no token could be obtained.
        """
        last_exception: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                response = await self.client.request(
                    method=method,
                    url=path,
                    json=json_data,
                    params=params,
                )
            except httpx.TransportError as e:
                last_exception = e
                if attempt < self.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(
                        "Request error, retrying",
                        extra={
                            "error": str(e),
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay": delay,
                            "path": path,
                        },
                    )
                    await asyncio.sleep(delay)
                    continue
                break

            if response.status_code == 403:
                remaining = self._parse_int_header(
                    response.headers,
                    "x-ratelimit-remaining",
                )
                if remaining == 0:
                    raise self._rate_limit_error(response)

            if response.status_code == 429:
                raise self._rate_limit_error(response)

            if (
                response.status_code in self.RETRYABLE_STATUS_CODES
                and attempt < self.max_retries
            ):
                delay = self._calculate_backoff(attempt)
                logger.warning(
                    "Retryable error from GitHub API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                error_body = response.text
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": error_body[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=error_body,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": str(last_exception),
            },
        )
        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries + 1} attempt(s): {last_exception}",
            request_url=f"{self.base_url}{path}",
        )

    async def _paginate(
        self,
        path: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> AsyncGenerator[List[Dict[str, Any]], None]:
        """Yield successive pages of a list endpoint until no next page."""
        page_params: Dict[str, Any] = dict(params or {})
        page_params.setdefault("per_page", 100)
        page = 1
        while True:
            page_params["page"] = page
            response = await self.request("GET", path, params=page_params)
            yield response.json()
            if "next" not in response.links:
                return
            page += 1

    async def list_labels(self, owner: str, repo: str, number: int) -> List[Label]:
        """List the labels currently on an issue or pull request."""
        path = f"/repos/{owner}/{repo}/issues/{number}/labels"
        labels: List[Label] = []
        async for page in self._paginate(path):
            labels.extend(Label.model_validate(item) for item in page)
        return labels

    async def _has_label(self, owner: str, repo: str, number: int, label: str) -> bool:
        return any(
            existing.name == label
            for existing in await self.list_labels(owner, repo, number)
        )

    async def add_label(self, pr: PullRequest, label: str) -> None:
        """Add a label to a pull request, unless it is already there.

        Raises:
            GitHubAPIError: If the label could not be added.
        """
        owner, repo, number = _pr_coordinates(pr)

        if await self._has_label(owner, repo, number, label):
            logger.debug("PR %d has label %s, nothing to do", number, label)
            return

        logger.info(
            "Adding label %r to PR %d",
            label,
            number,
            extra={"owner": owner, "repo": repo, "pr_number": number, "label": label},
        )
        path = f"/repos/{owner}/{repo}/issues/{number}/labels"
        response = await self.request("POST", path, json_data={"labels": [label]})
        if response.status_code != 200:
            raise GitHubAPIError(
                message=f"failed to add label to pull request: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )

    async def remove_label(self, pr: PullRequest, label: str) -> None:
        """Remove a label from a pull request, if it is there.

        Raises:
            GitHubAPIError: If the label could not be removed.
        """
        owner, repo, number = _pr_coordinates(pr)

        if not await self._has_label(owner, repo, number, label):
            logger.debug("PR %d doesn't have label %s, nothing to do", number, label)
            return

        logger.info(
            "Removing label %r from PR %d",
            label,
            number,
            extra={"owner": owner, "repo": repo, "pr_number": number, "label": label},
        )
        path = f"/repos/{owner}/{repo}/issues/{number}/labels/{quote(label, safe='')}"
        response = await self.request("DELETE", path)
        if response.status_code != 200:
            raise GitHubAPIError(
                message=f"failed to remove label from pull request: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )

    async def list_comments(self, owner: str, repo: str, number: int) -> List[IssueComment]:
        """List all comments on an issue or pull request."""
        path = f"/repos/{owner}/{repo}/issues/{number}/comments"
        comments: List[IssueComment] = []
        async for page in self._paginate(path):
            comments.extend(IssueComment.model_validate(item) for item in page)
        return comments

    async def set_comment(self, pr: PullRequest, bot_name: str, content: str) -> IssueComment:
        """Create or update this bot's comment on a pull request.

        The comment body starts with a hidden marker for ``bot_name``. If a
        comment carrying the marker exists it is edited in place, otherwise
        a new comment is created, so a PR holds at most one comment per bot.

        Returns:
            The created or edited comment.

        Raises:
            GitHubAPIError: If listing, editing or creating fails.
        """
        owner, repo, number = _pr_coordinates(pr)
        marker = comment_marker(bot_name)
        body = f"{marker}\n\n{content}"

        for existing in await self.list_comments(owner, repo, number):
            if existing.body and marker in existing.body:
                logger.info(
                    "Editing comment %s on PR %d",
                    existing.id,
                    number,
                    extra={"owner": owner, "repo": repo, "bot": bot_name},
                )
                response = await self.request(
                    "PATCH",
                    f"/repos/{owner}/{repo}/issues/comments/{existing.id}",
                    json_data={"body": body},
                )
                if response.status_code != 200:
                    raise GitHubAPIError(
                        message=f"editing comment: {response.status_code}",
                        status_code=response.status_code,
                        response_body=response.text,
                        request_url=str(response.url),
                    )
                return IssueComment.model_validate(response.json())

        logger.info(
            "Creating comment on PR %d",
            number,
            extra={"owner": owner, "repo": repo, "bot": bot_name},
        )
        response = await self.request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{number}/comments",
            json_data={"body": body},
        )
        if response.status_code != 201:
            raise GitHubAPIError(
                message=f"creating comment: {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )
        return IssueComment.model_validate(response.json())

    async def get_workflow_run_logs(self, wr: WorkflowRun) -> bytes:
        """Download the log archive of a workflow run.

        GitHub answers with a redirect to a short-lived download URL; the
        archive is fetched from there without GitHub credentials.

        Raises:
            LogsExpiredError: If the download location answers 404 or 410.
            GitHubAPIError: On any other failure.
        """
        owner, repo = _run_coordinates(wr)
        path = f"/repos/{owner}/{repo}/actions/runs/{wr.id}/logs"

        response = await self.request("GET", path)
        location = response.headers.get("location")
        if response.status_code != 302 or not location:
            raise GitHubAPIError(
                message=f"failed to get logs, {response.status_code}",
                status_code=response.status_code,
                response_body=response.text,
                request_url=str(response.url),
            )

        try:
            async with self._transport_config.client(follow_redirects=True) as plain:
                logs_response = await plain.get(location)
        except httpx.HTTPError as e:
            raise GitHubAPIError(
                message=f"failed to get logs: {e}",
                request_url=location,
            ) from e

        if logs_response.status_code in (404, 410):
            raise LogsExpiredError(wr.id, logs_response.status_code)
        if logs_response.status_code != 200:
            raise GitHubAPIError(
                message=f"failed to get logs, {logs_response.text[:500]}",
                status_code=logs_response.status_code,
                response_body=logs_response.text,
                request_url=location,
            )
        return logs_response.content

    async def get_workflow_run_pull_request_number(self, wr: WorkflowRun) -> int:
        """Find the open pull request a workflow run was triggered by.

        Lists open pull requests whose head is the run's branch, page by
        page, and matches on the head commit SHA.

        Raises:
            PullRequestNotFoundError: If no open pull request matches.
            GitHubAPIError: If listing pull requests fails.
        """
        owner, repo = _run_coordinates(wr)
        head = f"{owner}:{wr.head_branch}"
        path = f"/repos/{owner}/{repo}/pulls"

        async for page in self._paginate(path, {"state": "open", "head": head, "per_page": 10}):
            for item in page:
                pr = PullRequest.model_validate(item)
                if pr.head is not None and pr.head.sha == wr.head_sha:
                    return pr.number

        raise PullRequestNotFoundError(head, wr.head_sha)


def new_github_client(
    org: str,
    repo: str,
    policy_name: str,
    transport_config: Optional[TransportConfig] = None,
    settings: Optional[TokenExchangeSettings] = None,
    **kwargs: Any,
) -> GitHubClient:
    """Create a GitHub client with a fresh, single-use Octo STS credential.

    The token is exchanged on the first request and never refreshed.
    Use the client as an async context manager (or call ``close``) to
    revoke it.
    """
    transport_config = transport_config or TransportConfig()
    settings = settings or TokenExchangeSettings()
    exchange = TokenExchangeClient.from_settings(settings, transport_config)
    broker = CredentialBroker(exchange, org, repo, policy_name)
    return GitHubClient(broker, transport_config=transport_config, **kwargs)
