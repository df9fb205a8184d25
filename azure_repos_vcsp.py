# azure_repos_vcsp.py
"""
Azure Repos implementation of the VCSPInterface built on the azure-devops SDK.

The Azure DevOps project comes from configuration, so the owner argument of
most operations is ignored.
"""
import logging

import requests
from azure.devops.connection import Connection
from azure.devops.exceptions import AzureDevOpsServiceError
from azure.devops.v7_1.git.models import (
    Comment,
    GitBaseVersionDescriptor,
    GitPullRequest,
    GitPullRequestCommentThread,
    GitPullRequestSearchCriteria,
    GitQueryCommitsCriteria,
    GitStatus,
    GitStatusContext,
    GitTargetVersionDescriptor,
    GitVersionDescriptor,
)
from msrest.authentication import BasicAuthentication

from config import HTTP_TIMEOUT, VcsInfo
from models import (
    BranchInfo,
    CommentInfo,
    CommitInfo,
    CommitStatus,
    CommitStatusInfo,
    PullRequestInfo,
    PullRequestState,
    VcsProvider,
    commit_status_from_string,
)
from vcsp_interface import UnsupportedOperationError, VCSPInterface
from vcsp_utils import (
    NUMBER_OF_COMMITS_TO_FETCH,
    REMOTE_NAME,
    add_branch_prefix,
    check_response_status,
    create_dot_git_folder_with_remote,
    sorted_paths,
    truncate_for_log,
    unzip,
    validate_parameters_not_blank,
)

logger = logging.getLogger(__name__)

AZURE_DEVOPS_BASE_URL = "https://dev.azure.com/"
COMMIT_DIFFS_PAGE_SIZE = 100
# error type keys of a missing item or repository
_NOT_FOUND_TYPE_KEYS = {
    "GitItemNotFoundException",
    "GitRepositoryNotFoundException",
    "GitUnresolvableToCommitException",
}

_COMMIT_STATES = {
    CommitStatus.PASS: "succeeded",
    CommitStatus.FAIL: "failed",
    CommitStatus.ERROR: "error",
    CommitStatus.IN_PROGRESS: "pending",
}

_PULL_REQUEST_STATES = {
    PullRequestState.OPEN: "active",
    PullRequestState.CLOSED: "abandoned",
}


def short_branch_name(ref_name: str) -> str:
    """'refs/heads/feature/x' -> 'x'. Azure keeps only the last segment for pull request branches."""
    return (ref_name or "").rsplit("/", 1)[-1]


def extract_owner_from_fork_url(fork_source) -> str:
    """Return the organization of a fork source repository, or '' if the URL is not a dev.azure.com one."""
    repository = getattr(fork_source, "repository", None)
    url = getattr(repository, "url", None) or ""
    if AZURE_DEVOPS_BASE_URL not in url:
        return ""
    return url.split(AZURE_DEVOPS_BASE_URL, 1)[1].split("/")[0]


def map_azure_commit(commit) -> CommitInfo:
    author = commit.author
    committer = commit.committer
    committed = committer.date if committer else None
    return CommitInfo(
        hash=commit.commit_id,
        author_name=author.name if author else "",
        committer_name=committer.name if committer else "",
        url=commit.remote_url or commit.url or "",
        timestamp=int(committed.timestamp()) if committed else 0,
        message=commit.comment or "",
        parent_hashes=list(commit.parents or []),
        author_email=author.email if author else "",
    )


def _change_value(change, key):
    if isinstance(change, dict):
        return change.get(key)
    return getattr(change, key, None)


def modified_blob_paths(changes):
    """Paths of blob items among the changes of a commit diff page, without their leading '/'."""
    paths = []
    for change in changes or []:
        item = _change_value(change, "item") or {}
        object_type = _change_value(item, "gitObjectType") or _change_value(item, "git_object_type")
        if object_type != "blob":
            continue
        path = _change_value(item, "path") or ""
        paths.append(path.lstrip("/"))
    return paths


class AzureReposVCSP(VCSPInterface):
    def __init__(self, vcs_info: VcsInfo = None):
        vcs_info = vcs_info or VcsInfo.from_env(VcsProvider.AZURE_REPOS)
        if not vcs_info.api_endpoint or not vcs_info.token:
            logger.error("Azure DevOps organization url or personal access token not set.")
            raise ValueError("VCS_API_ENDPOINT and AZURE_DEVOPS_TOKEN are required for Azure Repos operations")

        self.vcs_info = vcs_info
        self.project = vcs_info.project
        self.base_url = vcs_info.api_endpoint.rstrip("/")
        self.connection = Connection(base_url=self.base_url, creds=BasicAuthentication("", vcs_info.token))
        self.git_client = self.connection.clients.get_git_client()

    def test_connection(self):
        self.connection.clients.get_core_client().get_projects()

    def list_repositories(self):
        repositories = self.git_client.get_repositories(self.project)
        return {self.project: [repo.name for repo in repositories]}

    def list_branches(self, owner, repository):
        validate_parameters_not_blank({"repository": repository})
        branches = self.git_client.get_branches(repository, project=self.project)
        return [branch.name for branch in branches]

    def add_ssh_key_to_repository(self, owner, repository, key_name, public_key, permission):
        raise UnsupportedOperationError("add ssh key to repository", VcsProvider.AZURE_REPOS)

    def create_webhook(self, owner, repository, branch, payload_url, *events):
        raise UnsupportedOperationError("create webhook", VcsProvider.AZURE_REPOS)

    def update_webhook(self, owner, repository, branch, payload_url, token, webhook_id, *events):
        raise UnsupportedOperationError("update webhook", VcsProvider.AZURE_REPOS)

    def delete_webhook(self, owner, repository, webhook_id):
        raise UnsupportedOperationError("delete webhook", VcsProvider.AZURE_REPOS)

    def set_commit_status(self, status, owner, repository, ref, title, description, details_url):
        validate_parameters_not_blank({"repository": repository, "ref": ref})
        commit_status = GitStatus(
            state=_COMMIT_STATES[status],
            description=description,
            target_url=details_url,
            context=GitStatusContext(name=owner, genre=title),
        )
        self.git_client.create_commit_status(commit_status, ref, repository, project=self.project)

    def get_commit_statuses(self, owner, repository, ref):
        validate_parameters_not_blank({"repository": repository, "ref": ref})
        statuses = self.git_client.get_statuses(ref, repository, project=self.project)
        return [
            CommitStatusInfo(
                state=commit_status_from_string(status.state),
                description=status.description or "",
                details_url=status.target_url or "",
                creator=status.created_by.display_name if status.created_by else "",
                created_at=status.creation_date,
                last_updated_at=status.updated_date,
            )
            for status in statuses or []
        ]

    def download_repository(self, owner, repository, branch, local_path):
        validate_parameters_not_blank({"repository": repository})
        download_url = f"{self.base_url}/{self.project}/_apis/git/repositories/{repository}/items/items"
        params = {"path": "/", "versionDescriptor[version]": branch, "$format": "zip"}
        logger.debug("Downloading %s archive from %s", repository, download_url)
        response = requests.get(download_url, params=params, auth=("", self.vcs_info.token), timeout=HTTP_TIMEOUT)
        check_response_status(response, 200)
        logger.info("%s downloaded successfully, starting with repository extraction", repository)

        unzip(response.content, local_path)
        logger.info("Extracted repository successfully")
        host = self.base_url.split("://", 1)[-1]
        remote_url = f"https://{owner}@{host}/{self.project}/_git/{repository}"
        create_dot_git_folder_with_remote(local_path, REMOTE_NAME, remote_url)

    def create_pull_request(self, owner, repository, source_branch, target_branch, title, description):
        validate_parameters_not_blank({"repository": repository})
        logger.debug("Creating new pull request: %s", title)
        pull_request = GitPullRequest(
            source_ref_name=add_branch_prefix(source_branch),
            target_ref_name=add_branch_prefix(target_branch),
            title=title,
            description=description,
        )
        self.git_client.create_pull_request(pull_request, repository, project=self.project)

    def update_pull_request(self, owner, repository, title, body, target_branch, pull_request_id, state):
        validate_parameters_not_blank({"repository": repository})
        logger.debug("Updating details of pull request ID: %s", pull_request_id)
        # an empty target branch leaves the current one in place
        pull_request = GitPullRequest(
            title=title,
            description=body,
            status=_PULL_REQUEST_STATES.get(state),
            target_ref_name=add_branch_prefix(target_branch) if target_branch else None,
        )
        self.git_client.update_pull_request(pull_request, repository, pull_request_id, project=self.project)

    def add_pull_request_comment(self, owner, repository, content, pull_request_id):
        validate_parameters_not_blank({"repository": repository, "content": content})
        logger.debug("Commenting on pull request %s: %s", pull_request_id, truncate_for_log(content))
        # every top level comment lives in its own thread
        thread = GitPullRequestCommentThread(comments=[Comment(content=content)], status="active")
        self.git_client.create_thread(thread, repository, pull_request_id, project=self.project)

    def add_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        raise UnsupportedOperationError("add pull request review comments", VcsProvider.AZURE_REPOS)

    def list_pull_request_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"repository": repository})
        threads = self.git_client.get_threads(repository, pull_request_id, project=self.project)
        results = []
        for thread in threads or []:
            if thread.is_deleted:
                continue
            content = ""
            for comment in thread.comments or []:
                if comment.is_deleted:
                    continue
                author = comment.author.display_name if comment.author else ""
                content += f"Author: {author}, Id: {comment.id}, Content:{comment.content}\n"
            results.append(CommentInfo(id=thread.id, content=content, created=thread.published_date))
        return results

    def list_pull_request_review_comments(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request review comments", VcsProvider.AZURE_REPOS)

    def delete_pull_request_comment(self, owner, repository, pull_request_id, comment_id):
        validate_parameters_not_blank({"repository": repository})
        # comment_id is the thread id, its opening comment is always number 1
        self.git_client.delete_comment(repository, pull_request_id, comment_id, 1, project=self.project)

    def delete_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        raise UnsupportedOperationError("delete pull request review comments", VcsProvider.AZURE_REPOS)

    def list_open_pull_requests(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=False)

    def list_open_pull_requests_with_body(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=True)

    def _get_open_pull_requests(self, owner, repository, with_body):
        validate_parameters_not_blank({"repository": repository})
        logger.debug("Fetching open pull requests in %s", repository)
        pull_requests = self.git_client.get_pull_requests(
            repository, GitPullRequestSearchCriteria(status="active"), project=self.project)
        return [self._map_pull_request(pr, owner, repository, with_body) for pr in pull_requests or []]

    def get_pull_request_by_id(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"repository": repository})
        logger.debug("Fetching pull request %s in %s", pull_request_id, repository)
        pull_request = self.git_client.get_pull_request_by_id(pull_request_id, project=self.project)
        return self._map_pull_request(pull_request, owner, repository, False)

    def _map_pull_request(self, pull_request, owner, repository, with_body) -> PullRequestInfo:
        source_owner = owner
        if pull_request.fork_source is not None:
            source_owner = extract_owner_from_fork_url(pull_request.fork_source)
            if not source_owner:
                logger.warning("Failed to extract the forked repository owner of pull request %s",
                               pull_request.pull_request_id)
        return PullRequestInfo(
            id=pull_request.pull_request_id,
            title=pull_request.title or "",
            body=(pull_request.description or "") if with_body else "",
            url=pull_request.url or "",
            author=pull_request.created_by.display_name if pull_request.created_by else "",
            source=BranchInfo(name=short_branch_name(pull_request.source_ref_name), repository=repository,
                              owner=source_owner),
            target=BranchInfo(name=short_branch_name(pull_request.target_ref_name), repository=repository,
                              owner=owner),
            status=pull_request.status or "",
        )

    def _list_commits(self, repository, branch, top):
        criteria = GitQueryCommitsCriteria(
            item_version=GitVersionDescriptor(version=branch, version_type="branch"),
            top=top,
        )
        commits = self.git_client.get_commits(repository, criteria, project=self.project)
        return [map_azure_commit(commit) for commit in commits or []]

    def get_latest_commit(self, owner, repository, branch):
        validate_parameters_not_blank({"repository": repository, "branch": branch})
        commits = self._list_commits(repository, branch, 1)
        return commits[0] if commits else CommitInfo()

    def get_commits(self, owner, repository, branch):
        validate_parameters_not_blank({"repository": repository, "branch": branch})
        return self._list_commits(repository, branch, NUMBER_OF_COMMITS_TO_FETCH)

    def get_commit_by_sha(self, owner, repository, sha):
        raise UnsupportedOperationError("get commit by sha", VcsProvider.AZURE_REPOS)

    def get_repository_info(self, owner, repository):
        raise UnsupportedOperationError("get repository info", VcsProvider.AZURE_REPOS)

    def get_repository_environment_info(self, owner, repository, name):
        raise UnsupportedOperationError("get repository environment info", VcsProvider.AZURE_REPOS)

    def create_branch(self, owner, repository, source_branch, new_branch):
        raise UnsupportedOperationError("create branch", VcsProvider.AZURE_REPOS)

    def list_pull_request_reviews(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request reviews", VcsProvider.AZURE_REPOS)

    def list_pull_requests_associated_with_commit(self, owner, repository, commit_sha):
        raise UnsupportedOperationError("list pull requests associated with commit", VcsProvider.AZURE_REPOS)

    def get_commits_with_query_options(self, owner, repository, options):
        raise UnsupportedOperationError("get commits with query options", VcsProvider.AZURE_REPOS)

    def create_label(self, owner, repository, label_info):
        raise UnsupportedOperationError("create label", VcsProvider.AZURE_REPOS)

    def get_label(self, owner, repository, name):
        raise UnsupportedOperationError("get label", VcsProvider.AZURE_REPOS)

    def list_pull_request_labels(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request labels", VcsProvider.AZURE_REPOS)

    def unlabel_pull_request(self, owner, repository, name, pull_request_id):
        raise UnsupportedOperationError("unlabel pull request", VcsProvider.AZURE_REPOS)

    def upload_code_scanning(self, owner, repository, branch, scan_results):
        raise UnsupportedOperationError("upload code scanning", VcsProvider.AZURE_REPOS)

    def download_file_from_repo(self, owner, repository, branch, path):
        validate_parameters_not_blank({"repository": repository, "path": path})
        try:
            chunks = self.git_client.get_item_content(
                repository,
                path,
                project=self.project,
                version_descriptor=GitVersionDescriptor(version=branch, version_type="branch"),
                include_content=True,
            )
            content = b"".join(chunks)
        except AzureDevOpsServiceError as e:
            if e.type_key not in _NOT_FOUND_TYPE_KEYS:
                raise
            logger.debug("File %s not found in %s: %s", path, repository, e)
            return b"", 404
        return content, 200

    def get_modified_files(self, owner, repository, ref_before, ref_after):
        validate_parameters_not_blank({
            "repository": repository,
            "refBefore": ref_before,
            "refAfter": ref_after,
        })
        paths = []
        skip = 0
        while True:
            commit_diffs = self.git_client.get_commit_diffs(
                repository,
                project=self.project,
                diff_common_commit=True,
                top=COMMIT_DIFFS_PAGE_SIZE,
                skip=skip,
                base_version_descriptor=GitBaseVersionDescriptor(base_version=ref_before),
                target_version_descriptor=GitTargetVersionDescriptor(target_version=ref_after),
            )
            changes = commit_diffs.changes or []
            paths.extend(modified_blob_paths(changes))
            if len(changes) < COMMIT_DIFFS_PAGE_SIZE:
                break
            skip += COMMIT_DIFFS_PAGE_SIZE
        return sorted_paths(paths)
