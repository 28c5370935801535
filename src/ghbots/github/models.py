"""GitHub domain models used by handlers and the GitHub client.

These mirror the GitHub REST API representations. They are deliberately
loose: every field is optional and unknown fields are ignored, so they
can be populated both from REST responses and from the event wire
schemas (which carry a structurally compatible subset).
"""

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class GitHubModel(BaseModel):
    """Base for GitHub domain models."""

    model_config = ConfigDict(extra="ignore")


def _none_to_list(v):
    return [] if v is None else v


class User(GitHubModel):
    id: Optional[int] = None
    login: Optional[str] = None
    type: Optional[str] = None


class Repository(GitHubModel):
    id: Optional[int] = None
    owner: Optional[User] = None
    name: Optional[str] = None
    full_name: Optional[str] = None
    url: Optional[str] = None
    html_url: Optional[str] = None
    default_branch: Optional[str] = None

    @property
    def owner_login(self) -> Optional[str]:
        return self.owner.login if self.owner else None


class Label(GitHubModel):
    id: Optional[int] = None
    name: Optional[str] = None
    color: Optional[str] = None


class PullRequestBranch(GitHubModel):
    label: Optional[str] = None
    ref: Optional[str] = None
    sha: Optional[str] = None
    repo: Optional[Repository] = None
    user: Optional[User] = None


class PullRequest(GitHubModel):
    id: Optional[int] = None
    number: Optional[int] = None
    state: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    html_url: Optional[str] = None
    user: Optional[User] = None

    base: Optional[PullRequestBranch] = None
    head: Optional[PullRequestBranch] = None
    labels: List[Label] = Field(default_factory=list)

    draft: Optional[bool] = None
    merged: Optional[bool] = None
    mergeable: Optional[bool] = None
    mergeable_state: Optional[str] = None
    merged_by: Optional[User] = None
    merge_commit_sha: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None

    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None

    @field_validator("labels", mode="before")
    @classmethod
    def labels_none_to_list(cls, v):
        return _none_to_list(v)

    def has_label(self, name: str) -> bool:
        """Check whether the PR carries a label (case-sensitive)."""
        return any(label.name == name for label in self.labels)


class WorkflowRun(GitHubModel):
    id: Optional[int] = None
    name: Optional[str] = None
    node_id: Optional[str] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    run_number: Optional[int] = None
    run_attempt: Optional[int] = None
    event: Optional[str] = None
    display_title: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    workflow_id: Optional[int] = None
    check_suite_id: Optional[int] = None
    url: Optional[str] = None
    html_url: Optional[str] = None
    logs_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    run_started_at: Optional[datetime] = None
    repository: Optional[Repository] = None
    head_repository: Optional[Repository] = None
    pull_requests: List[PullRequest] = Field(default_factory=list)

    @field_validator("pull_requests", mode="before")
    @classmethod
    def pull_requests_none_to_list(cls, v):
        return _none_to_list(v)


class CheckSuite(GitHubModel):
    id: Optional[int] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None


class CheckRun(GitHubModel):
    id: Optional[int] = None
    name: Optional[str] = None
    node_id: Optional[str] = None
    head_sha: Optional[str] = None
    external_id: Optional[str] = None
    url: Optional[str] = None
    html_url: Optional[str] = None
    details_url: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    check_suite: Optional[CheckSuite] = None
    pull_requests: List[PullRequest] = Field(default_factory=list)

    @field_validator("pull_requests", mode="before")
    @classmethod
    def pull_requests_none_to_list(cls, v):
        return _none_to_list(v)


class IssueComment(GitHubModel):
    id: Optional[int] = None
    body: Optional[str] = None
    user: Optional[User] = None
    html_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
