import base64
import gzip
import io
import itertools
import logging
from datetime import datetime, timezone

import requests
from github import Auth, Github, GithubException, GithubRetry

from config import HTTP_TIMEOUT, VcsInfo
from models import (
    BranchInfo,
    CloneInfo,
    CommentInfo,
    CommitInfo,
    CommitStatus,
    CommitStatusInfo,
    LabelInfo,
    Permission,
    PullRequestInfo,
    PullRequestReviewDetails,
    RepositoryEnvironmentInfo,
    RepositoryInfo,
    RepositoryVisibility,
    VcsProvider,
    WebhookEvent,
    commit_status_from_string,
)
from vcsp_interface import VCSPInterface, VcsError
from vcsp_utils import (
    NUMBER_OF_COMMITS_TO_FETCH,
    REMOTE_NAME,
    add_branch_prefix,
    check_response_status,
    create_dot_git_folder_with_remote,
    create_token,
    sorted_paths,
    truncate_for_log,
    untar,
    validate_parameters_not_blank,
)

logger = logging.getLogger(__name__)

GITHUB_API_ENDPOINT = "https://api.github.com"
MAX_RETRIES = 5
RETRIES_INTERVAL_SECONDS = 60
GITHUB_PR_CONTENT_SIZE_LIMIT = 65536

_COMMIT_STATES = {
    CommitStatus.PASS: "success",
    CommitStatus.FAIL: "failure",
    CommitStatus.ERROR: "error",
    CommitStatus.IN_PROGRESS: "pending",
}

_VISIBILITIES = {
    "public": RepositoryVisibility.PUBLIC,
    "internal": RepositoryVisibility.INTERNAL,
}


def get_github_webhook_events(*events: WebhookEvent):
    hook_events = set()
    for event in events:
        if event in (WebhookEvent.PR_OPENED, WebhookEvent.PR_EDITED, WebhookEvent.PR_MERGED, WebhookEvent.PR_REJECTED):
            hook_events.add("pull_request")
        elif event in (WebhookEvent.PUSH, WebhookEvent.TAG_PUSHED, WebhookEvent.TAG_REMOVED):
            hook_events.add("push")
    return sorted(hook_events)


def extract_branch_from_label(label: str) -> str:
    """GitHub labels pull request refs as 'owner:branch'."""
    parts = (label or "").split(":")
    if len(parts) <= 1:
        raise VcsError(f"bad label format {label}")
    return parts[1]


def encode_scanning_result(sarif_content: str) -> str:
    return base64.b64encode(gzip.compress(sarif_content.encode("utf-8"), compresslevel=6)).decode("ascii")


def map_github_commit(commit) -> CommitInfo:
    details = commit.commit
    committed = details.committer.date
    if committed.tzinfo is None:
        committed = committed.replace(tzinfo=timezone.utc)
    return CommitInfo(
        hash=commit.sha,
        author_name=details.author.name,
        committer_name=details.committer.name,
        url=commit.url,
        timestamp=int(committed.timestamp()),
        message=details.message,
        parent_hashes=[parent.sha for parent in commit.parents],
        author_email=details.author.email,
    )


def map_github_pull_request(github_pr, with_body: bool) -> PullRequestInfo:
    source_branch = extract_branch_from_label(github_pr.head.label)
    target_branch = extract_branch_from_label(github_pr.base.label)
    if github_pr.head.repo is None:
        raise VcsError("the source repository information is missing when fetching the pull request details")
    if github_pr.head.repo.owner is None:
        raise VcsError("the source repository owner name is missing when fetching the pull request details")
    if github_pr.base.repo is None:
        raise VcsError("the target repository information is missing when fetching the pull request details")
    if github_pr.base.repo.owner is None:
        raise VcsError("the target repository owner name is missing when fetching the pull request details")
    return PullRequestInfo(
        id=github_pr.number,
        title=github_pr.title or "",
        body=(github_pr.body or "") if with_body else "",
        url=github_pr.html_url,
        author=github_pr.user.login,
        source=BranchInfo(name=source_branch, repository=github_pr.head.repo.name,
                          owner=github_pr.head.repo.owner.login),
        target=BranchInfo(name=target_branch, repository=github_pr.base.repo.name,
                          owner=github_pr.base.repo.owner.login),
        status=github_pr.state,
    )


class GithubVCSP(VCSPInterface):
    def __init__(self, vcs_info: VcsInfo = None):
        vcs_info = vcs_info or VcsInfo.from_env(VcsProvider.GITHUB)
        if not vcs_info.token:
            raise ValueError("GITHUB_TOKEN environment variable is required")

        self.vcs_info = vcs_info
        base_url = (vcs_info.api_endpoint or GITHUB_API_ENDPOINT).rstrip("/")
        if vcs_info.api_endpoint:
            logger.info("Using API endpoint: %s", base_url)
        # GithubRetry waits out primary and secondary rate limits before failing
        self.client = Github(
            auth=Auth.Token(vcs_info.token),
            base_url=base_url,
            retry=GithubRetry(total=MAX_RETRIES, secondary_rate_wait=RETRIES_INTERVAL_SECONDS),
        )

    def get_repository(self, owner: str, repository: str):
        return self.client.get_repo(f"{owner}/{repository}")

    def test_connection(self):
        self.client.get_rate_limit()

    def list_repositories(self):
        results = {}
        for repo in self.client.get_user().get_repos():
            results.setdefault(repo.owner.login, []).append(repo.name)
        return results

    def list_branches(self, owner, repository):
        return [branch.name for branch in self.get_repository(owner, repository).get_branches()]

    def create_branch(self, owner, repository, source_branch, new_branch):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "sourceBranch": source_branch,
            "newBranch": new_branch,
        })
        repo = self.get_repository(owner, repository)
        head_sha = repo.get_branch(source_branch).commit.sha
        logger.debug("Creating branch %s from %s at %s", new_branch, source_branch, head_sha)
        repo.create_git_ref(ref=add_branch_prefix(new_branch), sha=head_sha)

    def add_ssh_key_to_repository(self, owner, repository, key_name, public_key, permission):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "key name": key_name,
            "public key": public_key,
        })
        read_only = permission != Permission.READ_WRITE
        self.get_repository(owner, repository).create_key(title=key_name, key=public_key, read_only=read_only)

    def _hook_config(self, payload_url: str, token: str):
        return {"content_type": "json", "url": payload_url, "secret": token}

    def create_webhook(self, owner, repository, branch, payload_url, *events):
        token = create_token()
        hook = self.get_repository(owner, repository).create_hook(
            name="web",
            config=self._hook_config(payload_url, token),
            events=get_github_webhook_events(*events),
            active=True,
        )
        return str(hook.id), token

    def update_webhook(self, owner, repository, branch, payload_url, token, webhook_id, *events):
        hook = self.get_repository(owner, repository).get_hook(int(webhook_id))
        hook.edit(
            name="web",
            config=self._hook_config(payload_url, token),
            events=get_github_webhook_events(*events),
        )

    def delete_webhook(self, owner, repository, webhook_id):
        self.get_repository(owner, repository).get_hook(int(webhook_id)).delete()

    def set_commit_status(self, status, owner, repository, ref, title, description, details_url):
        commit = self.get_repository(owner, repository).get_commit(ref)
        commit.create_status(
            state=_COMMIT_STATES[status],
            target_url=details_url,
            description=description,
            context=title,
        )

    def get_commit_statuses(self, owner, repository, ref):
        combined = self.get_repository(owner, repository).get_commit(ref).get_combined_status()
        return [
            CommitStatusInfo(
                state=commit_status_from_string(status.state),
                description=status.description or "",
                details_url=status.target_url or "",
                creator=status.creator.login if status.creator else "",
                created_at=status.created_at,
                last_updated_at=status.updated_at,
            )
            for status in combined.statuses
        ]

    def download_repository(self, owner, repository, branch, local_path):
        logger.debug("Getting GitHub archive link to download")
        repo = self.get_repository(owner, repository)
        archive_url = repo.get_archive_link("tarball", ref=branch)
        response = requests.get(archive_url, timeout=HTTP_TIMEOUT)
        check_response_status(response, 200)
        logger.info("%s downloaded successfully, starting with repository extraction", repository)

        untar(local_path, io.BytesIO(response.content), True)
        logger.info("Extracted repository successfully")

        clone_url = self.get_repository_info(owner, repository).clone_info.http
        create_dot_git_folder_with_remote(local_path, REMOTE_NAME, clone_url)

    def get_pull_request_comment_size_limit(self):
        return GITHUB_PR_CONTENT_SIZE_LIMIT

    def get_pull_request_details_size_limit(self):
        return GITHUB_PR_CONTENT_SIZE_LIMIT

    def create_pull_request(self, owner, repository, source_branch, target_branch, title, description):
        logger.debug("Creating new pull request: %s", title)
        self.get_repository(owner, repository).create_pull(
            base=target_branch,
            head=f"{owner}:{source_branch}",
            title=title,
            body=description,
        )

    def update_pull_request(self, owner, repository, title, body, target_branch, pull_request_id, state):
        logger.debug("Updating details of pull request ID: %s", pull_request_id)
        changes = {"title": title, "body": body}
        if target_branch:
            changes["base"] = target_branch
        if state is not None:
            changes["state"] = state.value
        self.get_repository(owner, repository).get_pull(pull_request_id).edit(**changes)

    def add_pull_request_comment(self, owner, repository, content, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "content": content})
        logger.debug("Commenting on pull request %s: %s", pull_request_id, truncate_for_log(content))
        self.get_repository(owner, repository).get_issue(pull_request_id).create_comment(content)

    def add_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "pullRequestID": str(pull_request_id or ""),
        })
        if not comments:
            raise VcsError("could not add a pull request review comment, no comments were provided")

        github_pr = self.get_repository(owner, repository).get_pull(pull_request_id)
        commits = list(github_pr.get_commits())
        if not commits:
            raise VcsError(f"could not fetch the commits list for pull request {pull_request_id}")
        latest_commit = commits[-1]

        for comment in comments:
            anchor = {"line": comment.new_end_line}
            if comment.new_start_line != comment.new_end_line:
                anchor["start_line"] = comment.new_start_line
            try:
                github_pr.create_review_comment(comment.content, latest_commit, comment.new_file_path, **anchor)
            except GithubException as e:
                logger.error("Could not create a code review comment for %s/%s in pull request %s: %s",
                             owner, repository, pull_request_id, e)
                raise

    def list_pull_request_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        issue = self.get_repository(owner, repository).get_issue(pull_request_id)
        return [CommentInfo(id=comment.id, content=comment.body, created=comment.created_at)
                for comment in issue.get_comments()]

    def list_pull_request_review_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        github_pr = self.get_repository(owner, repository).get_pull(pull_request_id)
        return [CommentInfo(id=comment.id, content=comment.body, created=comment.created_at)
                for comment in github_pr.get_review_comments()]

    def delete_pull_request_comment(self, owner, repository, pull_request_id, comment_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        self.get_repository(owner, repository).get_issue(pull_request_id).get_comment(comment_id).delete()

    def delete_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        github_pr = self.get_repository(owner, repository).get_pull(pull_request_id)
        for comment in comments:
            github_pr.get_review_comment(comment.id).delete()

    def list_open_pull_requests(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=False)

    def list_open_pull_requests_with_body(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=True)

    def _get_open_pull_requests(self, owner, repository, with_body):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching open pull requests in %s", repository)
        pulls = self.get_repository(owner, repository).get_pulls(state="open")
        return [map_github_pull_request(pull, with_body) for pull in pulls]

    def get_pull_request_by_id(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching pull request %s in %s", pull_request_id, repository)
        github_pr = self.get_repository(owner, repository).get_pull(pull_request_id)
        return map_github_pull_request(github_pr, False)

    def list_pull_request_reviews(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        reviews = self.get_repository(owner, repository).get_pull(pull_request_id).get_reviews()
        return [
            PullRequestReviewDetails(
                id=review.id,
                reviewer=review.user.login if review.user else "",
                body=review.body or "",
                state=review.state or "",
                submitted_at=review.submitted_at,
                commit_id=review.commit_id or "",
            )
            for review in reviews
        ]

    def list_pull_requests_associated_with_commit(self, owner, repository, commit_sha):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        pulls = self.get_repository(owner, repository).get_commit(commit_sha).get_pulls()
        return [map_github_pull_request(pull, False) for pull in pulls]

    def get_latest_commit(self, owner, repository, branch):
        commits = self.get_commits(owner, repository, branch)
        return commits[0] if commits else CommitInfo()

    def get_commits(self, owner, repository, branch):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "branch": branch})
        commits = self.get_repository(owner, repository).get_commits(sha=branch)
        return [map_github_commit(commit) for commit in itertools.islice(commits, NUMBER_OF_COMMITS_TO_FETCH)]

    def get_commits_with_query_options(self, owner, repository, options):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        until = datetime.now(timezone.utc)
        commits = self.get_repository(owner, repository).get_commits(since=options.since, until=until)
        start = (max(options.page, 1) - 1) * options.per_page
        return [map_github_commit(commit) for commit in itertools.islice(commits, start, start + options.per_page)]

    def get_commit_by_sha(self, owner, repository, sha):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "sha": sha})
        return map_github_commit(self.get_repository(owner, repository).get_commit(sha))

    def get_repository_info(self, owner, repository):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        repo = self.get_repository(owner, repository)
        return RepositoryInfo(
            visibility=_VISIBILITIES.get(repo.visibility, RepositoryVisibility.PRIVATE),
            clone_info=CloneInfo(http=repo.clone_url, ssh=repo.ssh_url),
        )

    def get_repository_environment_info(self, owner, repository, name):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "name": name})
        environment = self.get_repository(owner, repository).get_environment(name)
        reviewers = []
        for rule in environment.protection_rules or []:
            for reviewer in rule.reviewers or []:
                login = getattr(reviewer.reviewer, "login", None)
                if login:
                    reviewers.append(login)
        return RepositoryEnvironmentInfo(name=environment.name, url=environment.url, reviewers=reviewers)

    def create_label(self, owner, repository, label_info):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "LabelInfo.name": label_info.name})
        self.get_repository(owner, repository).create_label(
            name=label_info.name,
            color=label_info.color,
            description=label_info.description,
        )

    def get_label(self, owner, repository, name):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "name": name})
        try:
            label = self.get_repository(owner, repository).get_label(name)
        except GithubException as e:
            if e.status == 404:
                return None
            raise
        return LabelInfo(name=label.name, description=label.description or "", color=label.color)

    def list_pull_request_labels(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        issue = self.get_repository(owner, repository).get_issue(pull_request_id)
        return [label.name for label in issue.get_labels()]

    def unlabel_pull_request(self, owner, repository, name, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        self.get_repository(owner, repository).get_issue(pull_request_id).remove_from_labels(name)

    def upload_code_scanning(self, owner, repository, branch, scan_results):
        commit = self.get_latest_commit(owner, repository, branch)
        ref = add_branch_prefix(branch)
        logger.debug("Uploading code scanning for %s/%s", repository, ref)
        repo = self.get_repository(owner, repository)
        _, data = self.client.requester.requestJsonAndCheck(
            "POST",
            f"{repo.url}/code-scanning/sarifs",
            input={"commit_sha": commit.hash, "ref": ref, "sarif": encode_scanning_result(scan_results)},
        )
        return data.get("id", "")

    def download_file_from_repo(self, owner, repository, branch, path):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "path": path})
        try:
            content = self.get_repository(owner, repository).get_contents(path, ref=branch)
        except GithubException as e:
            if e.status == 404:
                return b"", 404
            raise
        return content.decoded_content, 200

    def get_modified_files(self, owner, repository, ref_before, ref_after):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "refBefore": ref_before,
            "refAfter": ref_after,
        })
        comparison = self.get_repository(owner, repository).compare(ref_before, ref_after)
        paths = []
        for changed in comparison.files:
            paths.append(changed.filename)
            paths.append(changed.previous_filename)
        return sorted_paths(paths)
