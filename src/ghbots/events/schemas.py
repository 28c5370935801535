"""Wire schemas for GitHub events carried in CloudEvent data.

Events published by the GitHub webhook ingester wrap the webhook payload
as ``{"when": <timestamp>, "body": <payload>}``. The models here describe
the subset of each payload that the ingestion tables track. Every field is
optional and unknown fields are preserved, so the richer domain types in
``src.ghbots.github.models`` can be re-derived from them without loss.
"""

from datetime import datetime
from typing import Generic, List, Optional, TypeVar

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


T = TypeVar("T")


class WireModel(BaseModel):
    """Base for wire schemas: tolerant of missing and additional fields."""

    model_config = ConfigDict(extra="allow")


def _null_as_empty(v):
    # Producers serialize empty lists as null.
    return [] if v is None else v


class Wrapper(BaseModel, Generic[T]):
    """Envelope data wrapper: when the event was seen, and its body.

    Producers have used both ``when``/``body`` and ``When``/``Body`` keys,
    so both spellings are accepted.
    """

    when: Optional[datetime] = Field(
        default=None,
        validation_alias=AliasChoices("when", "When"),
    )
    body: T = Field(..., validation_alias=AliasChoices("body", "Body"))


class User(WireModel):
    login: Optional[str] = None
    type: Optional[str] = None


class Organization(WireModel):
    login: Optional[str] = None


class Repository(WireModel):
    owner: Optional[User] = None
    name: Optional[str] = None
    url: Optional[str] = None
    full_name: Optional[str] = None


class PullRequestBranch(WireModel):
    ref: Optional[str] = None
    sha: Optional[str] = None
    repo: Optional[Repository] = None
    user: Optional[User] = None


class Label(WireModel):
    name: Optional[str] = None


class PullRequest(WireModel):
    number: Optional[int] = None
    state: Optional[str] = None
    title: Optional[str] = None

    base: Optional[PullRequestBranch] = None
    head: Optional[PullRequestBranch] = None

    labels: List[Label] = Field(default_factory=list)

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    merged_at: Optional[datetime] = None

    mergeable: Optional[bool] = None
    mergeable_state: Optional[str] = None
    merged_by: Optional[User] = None
    merge_commit_sha: Optional[str] = None

    additions: Optional[int] = None
    deletions: Optional[int] = None
    changed_files: Optional[int] = None

    @field_validator("labels", mode="before")
    @classmethod
    def labels_null_as_empty(cls, v):
        return _null_as_empty(v)


class PullRequestEvent(WireModel):
    """pull_request webhook payload."""

    # assigned, opened, synchronize, etc.
    action: Optional[str] = None
    sender: Optional[User] = None
    assignee: Optional[User] = None
    repository: Optional[Repository] = None

    pull_request: Optional[PullRequest] = None

    # Populated when action is synchronize
    before: Optional[str] = None
    after: Optional[str] = None


class Workflow(WireModel):
    id: Optional[int] = None
    name: Optional[str] = None
    path: Optional[str] = None
    state: Optional[str] = None

    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowRun(WireModel):
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
    # success, failure, cancelled, etc.
    conclusion: Optional[str] = None
    workflow_id: Optional[int] = None
    check_suite_id: Optional[int] = None
    url: Optional[str] = None
    html_url: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    run_started_at: Optional[datetime] = None
    jobs_url: Optional[str] = None
    logs_url: Optional[str] = None
    artifacts_url: Optional[str] = None
    cancel_url: Optional[str] = None
    rerun_url: Optional[str] = None
    workflow_url: Optional[str] = None
    repository: Optional[Repository] = None


class WorkflowRunEvent(WireModel):
    """workflow_run webhook payload."""

    # requested, in_progress, completed
    action: Optional[str] = None
    workflow: Optional[Workflow] = None
    workflow_run: Optional[WorkflowRun] = None
    organization: Optional[Organization] = None
    repository: Optional[Repository] = None
    sender: Optional[User] = None


class CheckSuite(WireModel):
    id: Optional[int] = None
    head_branch: Optional[str] = None
    head_sha: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None


class CheckRun(WireModel):
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
    def pull_requests_null_as_empty(cls, v):
        return _null_as_empty(v)


class CheckRunEvent(WireModel):
    """check_run webhook payload."""

    # created, completed, rerequested, requested_action
    action: Optional[str] = None
    check_run: Optional[CheckRun] = None
    organization: Optional[Organization] = None
    repository: Optional[Repository] = None
    sender: Optional[User] = None
