from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional


class VcsProvider(Enum):
    GITHUB = "GitHub"
    GITLAB = "GitLab"
    BITBUCKET_SERVER = "Bitbucket Server"
    BITBUCKET_CLOUD = "Bitbucket Cloud"
    AZURE_REPOS = "Azure Repos"

    def __str__(self) -> str:
        return self.value


class CommitStatus(Enum):
    PASS = "Pass"
    FAIL = "Fail"
    ERROR = "Error"
    IN_PROGRESS = "InProgress"


class WebhookEvent(Enum):
    """Event types a webhook can be registered for."""
    PR_REJECTED = "PrRejected"
    PR_EDITED = "PrEdited"
    PR_MERGED = "PrMerged"
    PR_OPENED = "PrOpened"
    PUSH = "Push"
    TAG_PUSHED = "TagPushed"
    TAG_REMOVED = "TagRemoved"


class PullRequestState(Enum):
    OPEN = "open"
    CLOSED = "closed"


class Permission(Enum):
    READ = "Read"
    READ_WRITE = "ReadWrite"


class RepositoryVisibility(Enum):
    PUBLIC = "Public"
    INTERNAL = "Internal"
    PRIVATE = "Private"


_PASS_STATES = {"success", "succeeded", "successful"}
_FAIL_STATES = {"failure", "failed"}
_IN_PROGRESS_STATES = {"pending", "running", "inprogress", "in_progress", "created", "notset", "notapplicable"}


def commit_status_from_string(state: str) -> CommitStatus:
    """Translate a provider commit state (e.g. 'success', 'FAILED', 'Pending') to a CommitStatus."""
    state = (state or "").lower()
    if state in _PASS_STATES:
        return CommitStatus.PASS
    if state in _FAIL_STATES:
        return CommitStatus.FAIL
    if state in _IN_PROGRESS_STATES:
        return CommitStatus.IN_PROGRESS
    return CommitStatus.ERROR


@dataclass(frozen=True)
class CommitInfo:
    hash: str = ""
    author_name: str = ""
    committer_name: str = ""
    url: str = ""
    # Unix seconds, UTC
    timestamp: int = 0
    message: str = ""
    parent_hashes: List[str] = field(default_factory=list)
    author_email: str = ""


@dataclass(frozen=True)
class BranchInfo:
    name: str = ""
    repository: str = ""
    owner: str = ""


@dataclass(frozen=True)
class PullRequestInfo:
    id: int
    title: str = ""
    body: str = ""
    url: str = ""
    author: str = ""
    source: BranchInfo = field(default_factory=BranchInfo)
    target: BranchInfo = field(default_factory=BranchInfo)
    status: str = ""


@dataclass(frozen=True)
class CommentInfo:
    id: int
    thread_id: str = ""
    content: str = ""
    created: Optional[datetime] = None


@dataclass(frozen=True)
class PullRequestComment:
    """A review comment anchored on a line range of a file in the pull request diff."""
    content: str
    new_file_path: str
    new_start_line: int = 0
    new_end_line: int = 0
    original_file_path: str = ""
    original_start_line: int = 0
    original_end_line: int = 0


@dataclass(frozen=True)
class CloneInfo:
    http: str = ""
    ssh: str = ""


@dataclass(frozen=True)
class RepositoryInfo:
    visibility: RepositoryVisibility
    clone_info: CloneInfo = field(default_factory=CloneInfo)


@dataclass(frozen=True)
class RepositoryEnvironmentInfo:
    name: str
    url: str = ""
    reviewers: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LabelInfo:
    name: str
    description: str = ""
    # Hex color without the leading '#'
    color: str = ""


@dataclass(frozen=True)
class CommitStatusInfo:
    state: CommitStatus
    description: str = ""
    details_url: str = ""
    creator: str = ""
    created_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class CommitsQueryOptions:
    """Selects commits made after `since`, one page at a time (pages start at 1)."""
    since: datetime
    page: int = 1
    per_page: int = 50


@dataclass(frozen=True)
class PullRequestReviewDetails:
    id: int
    reviewer: str = ""
    body: str = ""
    state: str = ""
    submitted_at: Optional[datetime] = None
    commit_id: str = ""


class WebhookBranchStatus(Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


@dataclass(frozen=True)
class WebhookRepoDetails:
    name: str = ""
    owner: str = ""


@dataclass(frozen=True)
class WebhookCommit:
    hash: str = ""
    message: str = ""
    url: str = ""


@dataclass(frozen=True)
class WebhookUser:
    login: str = ""
    display_name: str = ""
    email: str = ""
    avatar_url: str = ""


@dataclass(frozen=True)
class WebhookPullRequest:
    id: int
    title: str = ""
    url: str = ""
    # Unix seconds, UTC
    timestamp: int = 0
    author: WebhookUser = field(default_factory=WebhookUser)
    triggered_by: WebhookUser = field(default_factory=WebhookUser)
    skip_decryption: bool = False
    target_repository: WebhookRepoDetails = field(default_factory=WebhookRepoDetails)
    target_branch: str = ""
    target_hash: str = ""
    source_repository: WebhookRepoDetails = field(default_factory=WebhookRepoDetails)
    source_branch: str = ""
    source_hash: str = ""


@dataclass(frozen=True)
class WebhookTag:
    name: str = ""
    hash: str = ""
    # SHA of the commit the tag points to
    target_hash: str = ""
    message: str = ""
    repository: WebhookRepoDetails = field(default_factory=WebhookRepoDetails)
    author: WebhookUser = field(default_factory=WebhookUser)


@dataclass(frozen=True)
class WebhookInfo:
    """
    Details of an incoming webhook request.

    Push events fill the commit, before_commit, branch_status, triggered_by,
    committer, author and compare_url fields.
    """
    event: Optional[WebhookEvent] = None
    target_repository_details: WebhookRepoDetails = field(default_factory=WebhookRepoDetails)
    target_branch: str = ""
    pull_request_id: int = 0
    source_repository_details: WebhookRepoDetails = field(default_factory=WebhookRepoDetails)
    source_branch: str = ""
    # Unix seconds, UTC
    timestamp: int = 0
    commit: WebhookCommit = field(default_factory=WebhookCommit)
    before_commit: WebhookCommit = field(default_factory=WebhookCommit)
    branch_status: Optional[WebhookBranchStatus] = None
    triggered_by: WebhookUser = field(default_factory=WebhookUser)
    committer: WebhookUser = field(default_factory=WebhookUser)
    author: WebhookUser = field(default_factory=WebhookUser)
    compare_url: str = ""
    pull_request: Optional[WebhookPullRequest] = None
    tag: Optional[WebhookTag] = None


@dataclass(frozen=True)
class WebhookOrigin:
    provider: VcsProvider
    # Web URL of the server; used to build commit and compare links
    origin_url: str = ""
    # Secret returned by create_webhook
    token: str = ""
