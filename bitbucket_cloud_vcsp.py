# bitbucket_cloud_vcsp.py
"""
Bitbucket Cloud implementation of the VCSPInterface, talking to the 2.0 REST API
with basic auth (username + app password or API token).
"""
import io
import logging
import re
from urllib.parse import quote

import requests

from config import HTTP_TIMEOUT, VcsInfo
from models import (
    BranchInfo,
    CloneInfo,
    CommentInfo,
    CommitInfo,
    CommitStatus,
    CommitStatusInfo,
    PullRequestInfo,
    PullRequestState,
    RepositoryInfo,
    RepositoryVisibility,
    VcsProvider,
    WebhookEvent,
    commit_status_from_string,
)
from vcsp_interface import UnsupportedOperationError, VCSPInterface, VcsHttpError
from vcsp_utils import (
    NUMBER_OF_COMMITS_TO_FETCH,
    REMOTE_NAME,
    check_response_status,
    create_dot_git_folder_with_remote,
    create_token,
    parse_iso_time,
    sorted_paths,
    truncate_for_log,
    untar,
    validate_parameters_not_blank,
)

logger = logging.getLogger(__name__)

BITBUCKET_CLOUD_API_ENDPOINT = "https://api.bitbucket.org/2.0"

_COMMIT_STATES = {
    CommitStatus.PASS: "SUCCESSFUL",
    CommitStatus.FAIL: "FAILED",
    CommitStatus.ERROR: "FAILED",
    CommitStatus.IN_PROGRESS: "INPROGRESS",
}

_WEBHOOK_EVENTS = {
    WebhookEvent.PR_OPENED: "pullrequest:created",
    WebhookEvent.PR_EDITED: "pullrequest:updated",
    WebhookEvent.PR_REJECTED: "pullrequest:rejected",
    WebhookEvent.PR_MERGED: "pullrequest:fulfilled",
    WebhookEvent.PUSH: "repo:push",
    WebhookEvent.TAG_PUSHED: "repo:push",
    WebhookEvent.TAG_REMOVED: "repo:push",
}

_RAW_AUTHOR = re.compile(r"^(?P<name>.*?)\s*<(?P<email>[^>]*)>\s*$")


def get_bitbucket_cloud_webhook_events(*events: WebhookEvent):
    return sorted({_WEBHOOK_EVENTS[event] for event in events if event in _WEBHOOK_EVENTS})


def split_repository_full_name(full_name: str):
    """'workspace/slug' -> ('workspace', 'slug'); anything else -> ('', '')."""
    parts = (full_name or "").split("/")
    if len(parts) < 2:
        return "", ""
    return parts[0], parts[1]


def map_bitbucket_cloud_commit(commit: dict) -> CommitInfo:
    author = commit.get("author", {})
    author_name = author.get("user", {}).get("display_name", "")
    author_email = ""
    match = _RAW_AUTHOR.match(author.get("raw", ""))
    if match:
        author_email = match.group("email")
        author_name = author_name or match.group("name")
    committed = parse_iso_time(commit.get("date"))
    return CommitInfo(
        hash=commit["hash"],
        author_name=author_name,
        url=commit.get("links", {}).get("self", {}).get("href", ""),
        timestamp=int(committed.timestamp()) if committed else 0,
        message=commit.get("message", ""),
        parent_hashes=[parent["hash"] for parent in commit.get("parents", [])],
        author_email=author_email,
    )


def map_bitbucket_cloud_pull_request(pull_request: dict, with_body: bool) -> PullRequestInfo:
    source = pull_request.get("source", {})
    destination = pull_request.get("destination", {})
    source_owner, source_repository = split_repository_full_name(source.get("repository", {}).get("full_name"))
    target_owner, target_repository = split_repository_full_name(destination.get("repository", {}).get("full_name"))
    return PullRequestInfo(
        id=pull_request["id"],
        title=pull_request.get("title", ""),
        body=pull_request.get("description", "") if with_body else "",
        url=pull_request.get("links", {}).get("html", {}).get("href", ""),
        author=pull_request.get("author", {}).get("display_name", ""),
        source=BranchInfo(name=source.get("branch", {}).get("name", ""), repository=source_repository,
                          owner=source_owner),
        target=BranchInfo(name=destination.get("branch", {}).get("name", ""), repository=target_repository,
                          owner=target_owner),
        status=pull_request.get("state", ""),
    )


class BitbucketCloudVCSP(VCSPInterface):
    def __init__(self, vcs_info: VcsInfo = None):
        vcs_info = vcs_info or VcsInfo.from_env(VcsProvider.BITBUCKET_CLOUD)
        if not vcs_info.username or not vcs_info.token:
            logger.error("Bitbucket Cloud username or app password not set.")
            raise ValueError("BITBUCKET_USERNAME and BITBUCKET_APP_PASSWORD are required for Bitbucket operations")

        self.vcs_info = vcs_info
        self.api_endpoint = (vcs_info.api_endpoint or BITBUCKET_CLOUD_API_ENDPOINT).rstrip("/")
        self.session = requests.Session()
        self.session.auth = (vcs_info.username, vcs_info.token)

    def _repository_url(self, owner, repository, *path):
        return "/".join([f"{self.api_endpoint}/repositories/{owner}/{repository}", *path]).rstrip("/")

    def _request(self, method, url, expected=(200,), **kwargs):
        response = self.session.request(method, url, timeout=HTTP_TIMEOUT, **kwargs)
        try:
            check_response_status(response, *expected)
        except VcsHttpError as e:
            logger.error("Bitbucket Cloud %s %s failed: %s", method, url, e)
            raise
        return response

    def _get_json(self, url, params=None):
        return self._request("GET", url, params=params).json()

    def _get_paged_values(self, url, params=None):
        """Follow the 'next' links of a paged response and return all 'values'."""
        values = []
        while url:
            data = self._get_json(url, params)
            values.extend(data.get("values", []))
            url = data.get("next")
            # the next link already carries the query
            params = None
        return values

    def test_connection(self):
        self._get_json(f"{self.api_endpoint}/user")

    def list_repositories(self):
        results = {}
        permissions = self._get_paged_values(f"{self.api_endpoint}/user/permissions/workspaces")
        for permission in permissions:
            workspace = permission["workspace"]["slug"]
            repositories = self._get_paged_values(f"{self.api_endpoint}/repositories/{workspace}")
            results[workspace] = [repo["slug"] for repo in repositories]
        return results

    def list_branches(self, owner, repository):
        branches = self._get_paged_values(self._repository_url(owner, repository, "refs", "branches"))
        return [branch["name"] for branch in branches]

    def add_ssh_key_to_repository(self, owner, repository, key_name, public_key, permission):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "key name": key_name,
            "public key": public_key,
        })
        # Bitbucket Cloud deploy keys are always read only
        self._request("POST", self._repository_url(owner, repository, "deploy-keys"),
                      expected=(200, 201), json={"key": public_key, "label": key_name})

    def _hook_body(self, payload_url, token, events):
        return {
            "description": "VCS provider webhook",
            "url": f"{payload_url}?token={quote(token, safe='')}",
            "active": True,
            "events": get_bitbucket_cloud_webhook_events(*events),
        }

    def create_webhook(self, owner, repository, branch, payload_url, *events):
        token = create_token()
        response = self._request("POST", self._repository_url(owner, repository, "hooks"), expected=(200, 201),
                                 json=self._hook_body(payload_url, token, events))
        return response.json()["uuid"].strip("{}"), token

    def update_webhook(self, owner, repository, branch, payload_url, token, webhook_id, *events):
        self._request("PUT", self._repository_url(owner, repository, "hooks", webhook_id),
                      json=self._hook_body(payload_url, token, events))

    def delete_webhook(self, owner, repository, webhook_id):
        self._request("DELETE", self._repository_url(owner, repository, "hooks", webhook_id), expected=(200, 204))

    def set_commit_status(self, status, owner, repository, ref, title, description, details_url):
        self._request("POST", self._repository_url(owner, repository, "commit", ref, "statuses", "build"),
                      expected=(200, 201),
                      json={"state": _COMMIT_STATES[status], "key": title, "description": description,
                            "url": details_url})

    def get_commit_statuses(self, owner, repository, ref):
        statuses = self._get_paged_values(self._repository_url(owner, repository, "commit", ref, "statuses"))
        return [
            CommitStatusInfo(
                state=commit_status_from_string(status.get("state")),
                description=status.get("description", ""),
                details_url=status.get("url", ""),
                creator=status.get("name", ""),
                created_at=parse_iso_time(status.get("created_on")),
                last_updated_at=parse_iso_time(status.get("updated_on")),
            )
            for status in statuses
        ]

    def download_repository(self, owner, repository, branch, local_path):
        logger.debug("Getting Bitbucket Cloud archive link to download")
        repo = self._get_json(self._repository_url(owner, repository))
        html_link = repo.get("links", {}).get("html", {}).get("href")
        if not html_link:
            raise ValueError(f"couldn't find repository HTML link: {repo.get('links', {}).get('html')}")
        download_link = f"{html_link}/get/{branch}.tar.gz"
        logger.debug("Received archive url: %s", download_link)
        response = self._request("GET", download_link)
        logger.info("%s downloaded successfully, starting with repository extraction", repository)

        untar(local_path, io.BytesIO(response.content), True)
        logger.info("Extracted repository successfully")
        create_dot_git_folder_with_remote(local_path, REMOTE_NAME,
                                          self._map_repository_info(repo).clone_info.http)

    def create_pull_request(self, owner, repository, source_branch, target_branch, title, description):
        logger.debug("Creating new pull request: %s", title)
        self._request("POST", self._repository_url(owner, repository, "pullrequests"), expected=(200, 201), json={
            "title": title,
            "description": description,
            "source": {"branch": {"name": source_branch}, "repository": {"full_name": f"{owner}/{repository}"}},
            "destination": {"branch": {"name": target_branch}},
        })

    def update_pull_request(self, owner, repository, title, body, target_branch, pull_request_id, state):
        logger.debug("Updating details of pull request ID: %s", pull_request_id)
        changes = {"title": title, "description": body}
        if target_branch:
            changes["destination"] = {"branch": {"name": target_branch}}
        pull_request_url = self._repository_url(owner, repository, "pullrequests", str(pull_request_id))
        self._request("PUT", pull_request_url, json=changes)
        if state == PullRequestState.CLOSED:
            self._request("POST", f"{pull_request_url}/decline")

    def add_pull_request_comment(self, owner, repository, content, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "content": content})
        logger.debug("Commenting on pull request %s: %s", pull_request_id, truncate_for_log(content))
        self._request("POST", self._repository_url(owner, repository, "pullrequests", str(pull_request_id), "comments"),
                      expected=(200, 201), json={"content": {"raw": content}})

    def add_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        raise UnsupportedOperationError("add pull request review comments", VcsProvider.BITBUCKET_CLOUD)

    def list_pull_request_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        comments = self._get_paged_values(
            self._repository_url(owner, repository, "pullrequests", str(pull_request_id), "comments"))
        return [
            CommentInfo(id=comment["id"], content=comment.get("content", {}).get("raw", ""),
                        created=parse_iso_time(comment.get("created_on")))
            for comment in comments
            if not comment.get("deleted")
        ]

    def list_pull_request_review_comments(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request review comments", VcsProvider.BITBUCKET_CLOUD)

    def delete_pull_request_comment(self, owner, repository, pull_request_id, comment_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        self._request("DELETE", self._repository_url(owner, repository, "pullrequests", str(pull_request_id),
                                                      "comments", str(comment_id)), expected=(200, 204))

    def delete_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        raise UnsupportedOperationError("delete pull request review comments", VcsProvider.BITBUCKET_CLOUD)

    def list_open_pull_requests(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=False)

    def list_open_pull_requests_with_body(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=True)

    def _get_open_pull_requests(self, owner, repository, with_body):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching open pull requests in %s", repository)
        pull_requests = self._get_paged_values(self._repository_url(owner, repository, "pullrequests"),
                                               params={"state": "OPEN"})
        return [map_bitbucket_cloud_pull_request(pr, with_body) for pr in pull_requests]

    def get_pull_request_by_id(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching pull request %s in %s", pull_request_id, repository)
        pull_request = self._get_json(self._repository_url(owner, repository, "pullrequests", str(pull_request_id)))
        return map_bitbucket_cloud_pull_request(pull_request, False)

    def _list_commits(self, owner, repository, branch, page_length):
        data = self._get_json(self._repository_url(owner, repository, "commits", branch),
                              params={"pagelen": page_length})
        return [map_bitbucket_cloud_commit(commit) for commit in data.get("values", [])]

    def get_latest_commit(self, owner, repository, branch):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "branch": branch})
        commits = self._list_commits(owner, repository, branch, 1)
        return commits[0] if commits else CommitInfo()

    def get_commits(self, owner, repository, branch):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "branch": branch})
        return self._list_commits(owner, repository, branch, NUMBER_OF_COMMITS_TO_FETCH)

    def get_commit_by_sha(self, owner, repository, sha):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "sha": sha})
        return map_bitbucket_cloud_commit(self._get_json(self._repository_url(owner, repository, "commit", sha)))

    def _map_repository_info(self, repo: dict) -> RepositoryInfo:
        clone_info = {}
        for link in repo.get("links", {}).get("clone", []):
            clone_info[link.get("name", "").lower()] = link.get("href", "")
        return RepositoryInfo(
            visibility=RepositoryVisibility.PRIVATE if repo.get("is_private") else RepositoryVisibility.PUBLIC,
            clone_info=CloneInfo(http=clone_info.get("https", ""), ssh=clone_info.get("ssh", "")),
        )

    def get_repository_info(self, owner, repository):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        return self._map_repository_info(self._get_json(self._repository_url(owner, repository)))

    def get_repository_environment_info(self, owner, repository, name):
        raise UnsupportedOperationError("get repository environment info", VcsProvider.BITBUCKET_CLOUD)

    def create_branch(self, owner, repository, source_branch, new_branch):
        raise UnsupportedOperationError("create branch", VcsProvider.BITBUCKET_CLOUD)

    def list_pull_request_reviews(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request reviews", VcsProvider.BITBUCKET_CLOUD)

    def list_pull_requests_associated_with_commit(self, owner, repository, commit_sha):
        raise UnsupportedOperationError("list pull requests associated with commit", VcsProvider.BITBUCKET_CLOUD)

    def get_commits_with_query_options(self, owner, repository, options):
        raise UnsupportedOperationError("get commits with query options", VcsProvider.BITBUCKET_CLOUD)

    def create_label(self, owner, repository, label_info):
        raise UnsupportedOperationError("create label", VcsProvider.BITBUCKET_CLOUD)

    def get_label(self, owner, repository, name):
        raise UnsupportedOperationError("get label", VcsProvider.BITBUCKET_CLOUD)

    def list_pull_request_labels(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request labels", VcsProvider.BITBUCKET_CLOUD)

    def unlabel_pull_request(self, owner, repository, name, pull_request_id):
        raise UnsupportedOperationError("unlabel pull request", VcsProvider.BITBUCKET_CLOUD)

    def upload_code_scanning(self, owner, repository, branch, scan_results):
        raise UnsupportedOperationError("upload code scanning", VcsProvider.BITBUCKET_CLOUD)

    def download_file_from_repo(self, owner, repository, branch, path):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "path": path})
        url = self._repository_url(owner, repository, "src", branch, path.lstrip("/"))
        response = self.session.request("GET", url, timeout=HTTP_TIMEOUT)
        if response.status_code == 404:
            return b"", 404
        check_response_status(response, 200)
        return response.content, response.status_code

    def get_modified_files(self, owner, repository, ref_before, ref_after):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "refBefore": ref_before,
            "refAfter": ref_after,
        })
        url = self._repository_url(owner, repository, "diffstat", f"{ref_after}..{ref_before}")
        paths = []
        for diff_stat in self._get_paged_values(url, params={"renames": "true", "merge": "true"}):
            paths.append((diff_stat.get("new") or {}).get("path"))
            paths.append((diff_stat.get("old") or {}).get("path"))
        return sorted_paths(paths)
