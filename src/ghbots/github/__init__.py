"""GitHub API access for bot handlers.

Provides the credential-scoped GitHubClient, its error types, and the
GitHub domain models handlers receive.
"""

from src.ghbots.github.client import (
    BrokerAuth,
    GitHubAPIError,
    GitHubClient,
    LogsExpiredError,
    PullRequestNotFoundError,
    RateLimitError,
    comment_marker,
    new_github_client,
)
from src.ghbots.github.models import (
    CheckRun,
    IssueComment,
    Label,
    PullRequest,
    Repository,
    User,
    WorkflowRun,
)

__all__ = [
    "BrokerAuth",
    "CheckRun",
    "GitHubAPIError",
    "GitHubClient",
    "IssueComment",
    "Label",
    "LogsExpiredError",
    "PullRequest",
    "PullRequestNotFoundError",
    "RateLimitError",
    "Repository",
    "User",
    "WorkflowRun",
    "comment_marker",
    "new_github_client",
]
