# bitbucket_server_vcsp.py
"""
Bitbucket Server (Data Center) implementation of the VCSPInterface.
Requires: pip install atlassian-python-api
"""
import io
import logging
from datetime import datetime, timezone

from atlassian import Bitbucket

from config import VcsInfo
from models import (
    BranchInfo,
    CloneInfo,
    CommentInfo,
    CommitInfo,
    CommitStatus,
    CommitStatusInfo,
    Permission,
    PullRequestInfo,
    PullRequestState,
    RepositoryInfo,
    RepositoryVisibility,
    VcsProvider,
    WebhookEvent,
    commit_status_from_string,
)
from vcsp_interface import UnsupportedOperationError, VCSPInterface, VcsError
from vcsp_utils import (
    NUMBER_OF_COMMITS_TO_FETCH,
    REMOTE_NAME,
    add_branch_prefix,
    check_response_status,
    create_dot_git_folder_with_remote,
    create_token,
    get_generic_git_remote_url,
    sorted_paths,
    truncate_for_log,
    untar,
    validate_parameters_not_blank,
)

logger = logging.getLogger(__name__)

_COMMIT_STATES = {
    CommitStatus.PASS: "SUCCESSFUL",
    CommitStatus.FAIL: "FAILED",
    CommitStatus.ERROR: "FAILED",
    CommitStatus.IN_PROGRESS: "INPROGRESS",
}

_WEBHOOK_EVENTS = {
    WebhookEvent.PR_OPENED: ["pr:opened"],
    WebhookEvent.PR_EDITED: ["pr:from_ref_updated"],
    WebhookEvent.PR_MERGED: ["pr:merged"],
    WebhookEvent.PR_REJECTED: ["pr:declined", "pr:deleted"],
    WebhookEvent.PUSH: ["repo:refs_changed"],
}


def get_bitbucket_server_webhook_events(*events: WebhookEvent):
    hook_events = []
    for event in events:
        hook_events.extend(_WEBHOOK_EVENTS.get(event, []))
    return hook_events


def _from_millis(millis):
    if not millis:
        return None
    return datetime.fromtimestamp(millis / 1000, tz=timezone.utc)


def map_bitbucket_server_pull_request(pull_request: dict, with_body: bool) -> PullRequestInfo:
    from_ref = pull_request.get("fromRef", {})
    to_ref = pull_request.get("toRef", {})
    links = pull_request.get("links", {}).get("self", [])
    return PullRequestInfo(
        id=pull_request["id"],
        title=pull_request.get("title", ""),
        body=pull_request.get("description", "") if with_body else "",
        url=links[0].get("href", "") if links else "",
        author=pull_request.get("author", {}).get("user", {}).get("name", ""),
        source=BranchInfo(
            name=from_ref.get("displayId", ""),
            repository=from_ref.get("repository", {}).get("slug", ""),
            owner=from_ref.get("repository", {}).get("project", {}).get("key", ""),
        ),
        target=BranchInfo(
            name=to_ref.get("displayId", ""),
            repository=to_ref.get("repository", {}).get("slug", ""),
            owner=to_ref.get("repository", {}).get("project", {}).get("key", ""),
        ),
        status=pull_request.get("state", ""),
    )


class BitbucketServerVCSP(VCSPInterface):
    def __init__(self, vcs_info: VcsInfo = None):
        vcs_info = vcs_info or VcsInfo.from_env(VcsProvider.BITBUCKET_SERVER)
        if not vcs_info.api_endpoint or not vcs_info.token:
            logger.error("Bitbucket Server endpoint or token not set.")
            raise ValueError("VCS_API_ENDPOINT and BITBUCKET_TOKEN are required for Bitbucket Server operations")

        self.vcs_info = vcs_info
        base_url = vcs_info.api_endpoint.rstrip("/")
        if base_url.endswith("/rest"):
            base_url = base_url[:-len("/rest")]
        self.base_url = base_url
        self.rest_endpoint = base_url + "/rest"
        try:
            self.client = Bitbucket(url=base_url, token=vcs_info.token)
        except Exception as e:
            logger.error("Failed to initialize Bitbucket client: %s", e)
            raise

    def _repository_path(self, owner, repository, *path):
        return "/".join([f"rest/api/1.0/projects/{owner}/repos/{repository}", *path]).rstrip("/")

    def _get_paged(self, path, params=None):
        """
        Collect 'values' of every page of a paged resource.

        Returns:
            tuple: (values, last HTTP response).
        """
        values = []
        start = 0
        while True:
            response = self.client.get(path, params={**(params or {}), "start": start}, advanced_mode=True)
            check_response_status(response, 200)
            data = response.json()
            values.extend(data.get("values", []))
            if data.get("isLastPage", True):
                return values, response
            start = data["nextPageStart"]

    def test_connection(self):
        response = self.client.get("rest/api/1.0/users", params={"limit": 1}, advanced_mode=True)
        check_response_status(response, 200)

    def _list_projects(self):
        projects, response = self._get_paged("rest/api/1.0/projects")
        keys = [project["key"] for project in projects]
        username = response.headers.get("X-Ausername")
        if not username:
            raise VcsError("X-Ausername header is missing")
        keys.append("~" + username.upper())
        return keys

    def list_repositories(self):
        results = {}
        for project in self._list_projects():
            repositories, _ = self._get_paged(f"rest/api/1.0/projects/{project}/repos")
            results[project] = [repo["slug"] for repo in repositories]
        return results

    def list_branches(self, owner, repository):
        branches, _ = self._get_paged(self._repository_path(owner, repository, "branches"))
        return [branch["displayId"] for branch in branches]

    def add_ssh_key_to_repository(self, owner, repository, key_name, public_key, permission):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "key name": key_name,
            "public key": public_key,
        })
        access_permission = "REPO_WRITE" if permission == Permission.READ_WRITE else "REPO_READ"
        self.client.post(f"rest/keys/1.0/projects/{owner}/repos/{repository}/ssh", data={
            "key": {"text": public_key, "label": key_name},
            "permission": access_permission,
        })

    def _hook_body(self, payload_url, token, events):
        return {
            "url": payload_url,
            "configuration": {"secret": token},
            "events": get_bitbucket_server_webhook_events(*events),
        }

    def create_webhook(self, owner, repository, branch, payload_url, *events):
        token = create_token()
        hook = self.client.post(self._repository_path(owner, repository, "webhooks"),
                                data=self._hook_body(payload_url, token, events))
        return str(hook["id"]), token

    def update_webhook(self, owner, repository, branch, payload_url, token, webhook_id, *events):
        self.client.put(self._repository_path(owner, repository, "webhooks", str(int(webhook_id))),
                        data=self._hook_body(payload_url, token, events))

    def delete_webhook(self, owner, repository, webhook_id):
        self.client.delete(self._repository_path(owner, repository, "webhooks", str(int(webhook_id))))

    def set_commit_status(self, status, owner, repository, ref, title, description, details_url):
        self.client.post(f"rest/build-status/1.0/commits/{ref}", data={
            "state": _COMMIT_STATES[status],
            "key": title,
            "description": description,
            "url": details_url,
        })

    def get_commit_statuses(self, owner, repository, ref):
        statuses, _ = self._get_paged(f"rest/build-status/1.0/commits/{ref}")
        return [
            CommitStatusInfo(
                state=commit_status_from_string(status.get("state")),
                description=status.get("description", ""),
                details_url=status.get("url", ""),
                creator=status.get("name", ""),
                created_at=_from_millis(status.get("dateAdded")),
                last_updated_at=_from_millis(status.get("dateAdded")),
            )
            for status in statuses
        ]

    def download_repository(self, owner, repository, branch, local_path):
        params = {"format": "tgz"}
        branch = (branch or "").strip()
        if branch:
            params["at"] = branch
        archive = self.client.get(self._repository_path(owner, repository, "archive"), params=params,
                                  not_json_response=True)
        logger.info("%s downloaded successfully, starting with repository extraction", repository)
        untar(local_path, io.BytesIO(archive), False)
        logger.info("Extracted repository successfully")
        create_dot_git_folder_with_remote(local_path, REMOTE_NAME,
                                          get_generic_git_remote_url(f"{self.base_url}/scm", owner, repository))

    def create_pull_request(self, owner, repository, source_branch, target_branch, title, description):
        logger.debug("Creating new pull request: %s", title)
        bitbucket_repo = {"slug": repository, "project": {"key": owner}}
        self.client.post(self._repository_path(owner, repository, "pull-requests"), data={
            "title": title,
            "description": description,
            "fromRef": {"id": add_branch_prefix(source_branch), "repository": bitbucket_repo},
            "toRef": {"id": add_branch_prefix(target_branch), "repository": bitbucket_repo},
        })

    def update_pull_request(self, owner, repository, title, body, target_branch, pull_request_id, state):
        logger.debug("Updating details of pull request ID: %s", pull_request_id)
        path = self._repository_path(owner, repository, "pull-requests", str(pull_request_id))
        current = self.client.get(path)
        version = current["version"]
        changes = {"version": version, "title": title, "description": body}
        if target_branch:
            changes["toRef"] = {"id": add_branch_prefix(target_branch)}
        version = self.client.put(path, data=changes).get("version", version)
        if state == PullRequestState.CLOSED and current.get("state") == "OPEN":
            self.client.post(f"{path}/decline", params={"version": version})
        elif state == PullRequestState.OPEN and current.get("state") == "DECLINED":
            self.client.post(f"{path}/reopen", params={"version": version})

    def add_pull_request_comment(self, owner, repository, content, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "content": content})
        logger.debug("Commenting on pull request %s: %s", pull_request_id, truncate_for_log(content))
        self.client.post(self._repository_path(owner, repository, "pull-requests", str(pull_request_id), "comments"),
                         data={"text": content})

    def add_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        raise UnsupportedOperationError("add pull request review comments", VcsProvider.BITBUCKET_SERVER)

    def list_pull_request_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        activities, _ = self._get_paged(
            self._repository_path(owner, repository, "pull-requests", str(pull_request_id), "activities"))
        return [
            CommentInfo(
                id=activity["comment"]["id"],
                content=activity["comment"].get("text", ""),
                created=_from_millis(activity["comment"].get("createdDate")),
            )
            for activity in activities
            if activity.get("action") == "COMMENTED" and activity.get("commentAction") == "ADDED"
        ]

    def list_pull_request_review_comments(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request review comments", VcsProvider.BITBUCKET_SERVER)

    def delete_pull_request_comment(self, owner, repository, pull_request_id, comment_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        path = self._repository_path(owner, repository, "pull-requests", str(pull_request_id),
                                     "comments", str(comment_id))
        version = self.client.get(path)["version"]
        self.client.delete(path, params={"version": version})

    def delete_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        raise UnsupportedOperationError("delete pull request review comments", VcsProvider.BITBUCKET_SERVER)

    def list_open_pull_requests(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=False)

    def list_open_pull_requests_with_body(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=True)

    def _get_open_pull_requests(self, owner, repository, with_body):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching open pull requests in %s", repository)
        pull_requests, _ = self._get_paged(self._repository_path(owner, repository, "pull-requests"),
                                           params={"state": "OPEN"})
        return [map_bitbucket_server_pull_request(pr, with_body) for pr in pull_requests if pr.get("open")]

    def get_pull_request_by_id(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching pull request %s in %s", pull_request_id, repository)
        pull_request = self.client.get(self._repository_path(owner, repository, "pull-requests", str(pull_request_id)))
        return map_bitbucket_server_pull_request(pull_request, False)

    def _map_commit(self, commit: dict, owner, repository) -> CommitInfo:
        return CommitInfo(
            hash=commit["id"],
            author_name=commit.get("author", {}).get("name", ""),
            committer_name=commit.get("committer", {}).get("name", ""),
            url=f"{self.rest_endpoint}/api/1.0/projects/{owner}/repos/{repository}/commits/{commit['id']}",
            # Bitbucket Server timestamps are milliseconds
            timestamp=int(commit.get("committerTimestamp", 0)) // 1000,
            message=commit.get("message", ""),
            parent_hashes=[parent["id"] for parent in commit.get("parents", [])],
            author_email=commit.get("author", {}).get("emailAddress", ""),
        )

    def _list_commits(self, owner, repository, branch, limit):
        data = self.client.get(self._repository_path(owner, repository, "commits"),
                               params={"limit": limit, "until": branch})
        return [self._map_commit(commit, owner, repository) for commit in data.get("values", [])]

    def get_latest_commit(self, owner, repository, branch):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "branch": branch})
        commits = self._list_commits(owner, repository, branch, 1)
        return commits[0] if commits else CommitInfo()

    def get_commits(self, owner, repository, branch):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "branch": branch})
        return self._list_commits(owner, repository, branch, NUMBER_OF_COMMITS_TO_FETCH)

    def get_commit_by_sha(self, owner, repository, sha):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "sha": sha})
        commit = self.client.get(self._repository_path(owner, repository, "commits", sha))
        return self._map_commit(commit, owner, repository)

    def get_repository_info(self, owner, repository):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        repo = self.client.get(self._repository_path(owner, repository))
        clone_info = {link.get("name"): link.get("href", "") for link in repo.get("links", {}).get("clone", [])}
        return RepositoryInfo(
            visibility=RepositoryVisibility.PUBLIC if repo.get("public") else RepositoryVisibility.PRIVATE,
            clone_info=CloneInfo(http=clone_info.get("http", ""), ssh=clone_info.get("ssh", "")),
        )

    def get_repository_environment_info(self, owner, repository, name):
        raise UnsupportedOperationError("get repository environment info", VcsProvider.BITBUCKET_SERVER)

    def create_branch(self, owner, repository, source_branch, new_branch):
        raise UnsupportedOperationError("create branch", VcsProvider.BITBUCKET_SERVER)

    def list_pull_request_reviews(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request reviews", VcsProvider.BITBUCKET_SERVER)

    def list_pull_requests_associated_with_commit(self, owner, repository, commit_sha):
        raise UnsupportedOperationError("list pull requests associated with commit", VcsProvider.BITBUCKET_SERVER)

    def get_commits_with_query_options(self, owner, repository, options):
        raise UnsupportedOperationError("get commits with query options", VcsProvider.BITBUCKET_SERVER)

    def create_label(self, owner, repository, label_info):
        raise UnsupportedOperationError("create label", VcsProvider.BITBUCKET_SERVER)

    def get_label(self, owner, repository, name):
        raise UnsupportedOperationError("get label", VcsProvider.BITBUCKET_SERVER)

    def list_pull_request_labels(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request labels", VcsProvider.BITBUCKET_SERVER)

    def unlabel_pull_request(self, owner, repository, name, pull_request_id):
        raise UnsupportedOperationError("unlabel pull request", VcsProvider.BITBUCKET_SERVER)

    def upload_code_scanning(self, owner, repository, branch, scan_results):
        raise UnsupportedOperationError("upload code scanning", VcsProvider.BITBUCKET_SERVER)

    def download_file_from_repo(self, owner, repository, branch, path):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "path": path})
        response = self.client.get(self._repository_path(owner, repository, "raw", path.lstrip("/")),
                                   params={"at": branch}, advanced_mode=True)
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
        diff = self.client.get(self._repository_path(owner, repository, "compare", "diff"),
                               params={"contextLines": 0, "from": ref_after, "to": ref_before})
        paths = []
        for file_diff in diff.get("diffs", []):
            paths.append((file_diff.get("source") or {}).get("toString"))
            paths.append((file_diff.get("destination") or {}).get("toString"))
        return sorted_paths(paths)
