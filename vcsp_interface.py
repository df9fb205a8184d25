# vcsp_interface.py
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from models import (
    CommentInfo,
    CommitInfo,
    CommitsQueryOptions,
    CommitStatus,
    CommitStatusInfo,
    LabelInfo,
    Permission,
    PullRequestComment,
    PullRequestInfo,
    PullRequestState,
    PullRequestReviewDetails,
    RepositoryEnvironmentInfo,
    RepositoryInfo,
    WebhookEvent,
)

DEFAULT_SIZE_LIMIT = 65536


class VcsError(Exception):
    """Base class for errors raised by the provider clients."""


class ParameterValidationError(VcsError, ValueError):
    def __init__(self, missing: List[str]):
        self.missing = missing
        super().__init__("; ".join(f"required parameter '{name}' is missing" for name in missing))


class UnsupportedOperationError(VcsError, NotImplementedError):
    def __init__(self, operation: str, provider):
        self.operation = operation
        self.provider = provider
        super().__init__(f"{operation} is currently not supported for {provider}")


class VcsHttpError(VcsError):
    """A provider answered with an unexpected HTTP status."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(message)


class VCSPInterface(ABC):
    """Abstract base class for version control system providers."""

    @abstractmethod
    def test_connection(self) -> None:
        """Check that the endpoint is reachable and the credentials are accepted."""
        pass

    @abstractmethod
    def list_repositories(self) -> Dict[str, List[str]]:
        """
        List all repositories the authenticated user can access.

        Returns:
            dict: owner (user, workspace, group or project key) -> list of repository names.
        """
        pass

    @abstractmethod
    def list_branches(self, owner: str, repository: str) -> List[str]:
        """List branch names of a repository."""
        pass

    @abstractmethod
    def create_branch(self, owner: str, repository: str, source_branch: str, new_branch: str) -> None:
        """Create new_branch pointing at the head commit of source_branch."""
        pass

    @abstractmethod
    def add_ssh_key_to_repository(self, owner: str, repository: str, key_name: str, public_key: str,
                                  permission: Permission) -> None:
        """Add a public ssh deploy key to a repository."""
        pass

    @abstractmethod
    def create_webhook(self, owner: str, repository: str, branch: str, payload_url: str,
                       *events: WebhookEvent) -> Tuple[str, str]:
        """
        Register a webhook on a repository.

        Args:
            owner (str): The user or organization that owns the repository.
            repository (str): The repository name.
            branch (str): Branch to filter push events by, where the provider supports it.
            payload_url (str): URL the provider posts events to.
            events (WebhookEvent): Events to subscribe to.

        Returns:
            tuple: (webhook id, secret token). The token lets the receiver verify payloads.
        """
        pass

    @abstractmethod
    def update_webhook(self, owner: str, repository: str, branch: str, payload_url: str, token: str,
                       webhook_id: str, *events: WebhookEvent) -> None:
        """Update an existing webhook."""
        pass

    @abstractmethod
    def delete_webhook(self, owner: str, repository: str, webhook_id: str) -> None:
        """Delete a webhook."""
        pass

    @abstractmethod
    def set_commit_status(self, status: CommitStatus, owner: str, repository: str, ref: str, title: str,
                          description: str, details_url: str) -> None:
        """Set a status check on a commit."""
        pass

    @abstractmethod
    def get_commit_statuses(self, owner: str, repository: str, ref: str) -> List[CommitStatusInfo]:
        """Fetch all status checks of a commit."""
        pass

    @abstractmethod
    def download_repository(self, owner: str, repository: str, branch: str, local_path: str) -> None:
        """
        Download the content of a branch into local_path and create a .git folder
        whose 'origin' remote points at the repository.
        """
        pass

    @abstractmethod
    def create_pull_request(self, owner: str, repository: str, source_branch: str, target_branch: str,
                            title: str, description: str) -> None:
        """Open a pull request from source_branch into target_branch."""
        pass

    @abstractmethod
    def update_pull_request(self, owner: str, repository: str, title: str, body: str, target_branch: str,
                            pull_request_id: int, state: Optional[PullRequestState]) -> None:
        """Update title, body, target branch and state of a pull request. Empty values are left untouched."""
        pass

    @abstractmethod
    def add_pull_request_comment(self, owner: str, repository: str, content: str, pull_request_id: int) -> None:
        """Add a general comment to a pull request."""
        pass

    @abstractmethod
    def add_pull_request_review_comments(self, owner: str, repository: str, pull_request_id: int,
                                         *comments: PullRequestComment) -> None:
        """Add review comments anchored on lines of the pull request diff."""
        pass

    @abstractmethod
    def list_pull_request_comments(self, owner: str, repository: str, pull_request_id: int) -> List[CommentInfo]:
        """List the general comments of a pull request."""
        pass

    @abstractmethod
    def list_pull_request_review_comments(self, owner: str, repository: str,
                                          pull_request_id: int) -> List[CommentInfo]:
        """List the review comments of a pull request."""
        pass

    @abstractmethod
    def delete_pull_request_comment(self, owner: str, repository: str, pull_request_id: int,
                                    comment_id: int) -> None:
        """Delete a general comment of a pull request."""
        pass

    @abstractmethod
    def delete_pull_request_review_comments(self, owner: str, repository: str, pull_request_id: int,
                                            *comments: CommentInfo) -> None:
        """Delete review comments of a pull request."""
        pass

    @abstractmethod
    def list_open_pull_requests(self, owner: str, repository: str) -> List[PullRequestInfo]:
        """List open pull requests, without their body."""
        pass

    @abstractmethod
    def list_open_pull_requests_with_body(self, owner: str, repository: str) -> List[PullRequestInfo]:
        """List open pull requests including their body."""
        pass

    @abstractmethod
    def get_pull_request_by_id(self, owner: str, repository: str, pull_request_id: int) -> PullRequestInfo:
        """Fetch a single pull request."""
        pass

    @abstractmethod
    def list_pull_request_reviews(self, owner: str, repository: str,
                                  pull_request_id: int) -> List[PullRequestReviewDetails]:
        pass

    @abstractmethod
    def list_pull_requests_associated_with_commit(self, owner: str, repository: str,
                                                  commit_sha: str) -> List[PullRequestInfo]:
        """List the pull requests that contain a commit. Bodies are not included."""
        pass

    @abstractmethod
    def get_latest_commit(self, owner: str, repository: str, branch: str) -> CommitInfo:
        """Fetch the head commit of a branch. An empty CommitInfo is returned for an empty branch."""
        pass

    @abstractmethod
    def get_commits(self, owner: str, repository: str, branch: str) -> List[CommitInfo]:
        """Fetch the most recent commits of a branch, newest first."""
        pass

    @abstractmethod
    def get_commits_with_query_options(self, owner: str, repository: str,
                                       options: CommitsQueryOptions) -> List[CommitInfo]:
        """Fetch one page of the commits made between options.since and now."""
        pass

    @abstractmethod
    def get_commit_by_sha(self, owner: str, repository: str, sha: str) -> CommitInfo:
        """Retrieve a commit by its SHA."""
        pass

    @abstractmethod
    def get_repository_info(self, owner: str, repository: str) -> RepositoryInfo:
        """Fetch visibility and clone URLs of a repository."""
        pass

    @abstractmethod
    def get_repository_environment_info(self, owner: str, repository: str,
                                        name: str) -> RepositoryEnvironmentInfo:
        """Fetch a deployment environment of a repository."""
        pass

    @abstractmethod
    def create_label(self, owner: str, repository: str, label_info: LabelInfo) -> None:
        pass

    @abstractmethod
    def get_label(self, owner: str, repository: str, name: str) -> Optional[LabelInfo]:
        """Return the label, or None if the repository has no label with that name."""
        pass

    @abstractmethod
    def list_pull_request_labels(self, owner: str, repository: str, pull_request_id: int) -> List[str]:
        pass

    @abstractmethod
    def unlabel_pull_request(self, owner: str, repository: str, name: str, pull_request_id: int) -> None:
        pass

    @abstractmethod
    def upload_code_scanning(self, owner: str, repository: str, branch: str, scan_results: str) -> str:
        """Upload a SARIF report and return the provider's upload id."""
        pass

    @abstractmethod
    def download_file_from_repo(self, owner: str, repository: str, branch: str,
                                path: str) -> Tuple[bytes, int]:
        """
        Download a single file.

        Returns:
            tuple: (file content, HTTP status code). A missing file is reported
            through the status code rather than an exception where the provider allows it.
        """
        pass

    @abstractmethod
    def get_modified_files(self, owner: str, repository: str, ref_before: str, ref_after: str) -> List[str]:
        """
        List the paths changed between two refs.

        Both the old and the new path of renamed files are included. The result
        is sorted and contains no duplicates.
        """
        pass

    def get_pull_request_comment_size_limit(self) -> int:
        return DEFAULT_SIZE_LIMIT

    def get_pull_request_details_size_limit(self) -> int:
        return DEFAULT_SIZE_LIMIT
