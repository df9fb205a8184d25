# gitlab_vcsp.py
import io
import logging
from datetime import datetime, timezone

import gitlab
from gitlab.exceptions import GitlabCreateError, GitlabGetError

from config import VcsInfo
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
    create_dot_git_folder_with_remote,
    create_token,
    parse_iso_time,
    sorted_paths,
    truncate_for_log,
    untar,
    validate_parameters_not_blank,
)

logger = logging.getLogger(__name__)

GITLAB_API_ENDPOINT = "https://gitlab.com"
# https://docs.gitlab.com/ee/api/notes.html
GITLAB_MR_COMMENT_SIZE_LIMIT = 1000000
GITLAB_MR_DETAILS_SIZE_LIMIT = 1048576

_COMMIT_STATES = {
    CommitStatus.PASS: "success",
    CommitStatus.FAIL: "failed",
    CommitStatus.ERROR: "failed",
    CommitStatus.IN_PROGRESS: "running",
}

_STATE_EVENTS = {
    PullRequestState.OPEN: "reopen",
    PullRequestState.CLOSED: "close",
}

_VISIBILITIES = {
    "public": RepositoryVisibility.PUBLIC,
    "internal": RepositoryVisibility.INTERNAL,
}


def get_project_id(owner: str, repository: str) -> str:
    return f"{owner}/{repository}"


def create_project_hook(branch: str, payload_url: str, token: str, *events: WebhookEvent) -> dict:
    hook = {
        "url": payload_url,
        "token": token,
        "merge_requests_events": False,
        "push_events": False,
        "tag_push_events": False,
    }
    for event in events:
        if event in (WebhookEvent.PR_OPENED, WebhookEvent.PR_EDITED, WebhookEvent.PR_REJECTED, WebhookEvent.PR_MERGED):
            hook["merge_requests_events"] = True
        elif event == WebhookEvent.PUSH:
            hook["push_events"] = True
            hook["push_events_branch_filter"] = branch
        elif event in (WebhookEvent.TAG_PUSHED, WebhookEvent.TAG_REMOVED):
            hook["tag_push_events"] = True
    return hook


def map_gitlab_commit(commit) -> CommitInfo:
    committed = parse_iso_time(commit.committed_date)
    return CommitInfo(
        hash=commit.id,
        author_name=commit.author_name,
        committer_name=commit.committer_name,
        url=commit.web_url,
        timestamp=int(committed.astimezone(timezone.utc).timestamp()) if committed else 0,
        message=commit.message,
        parent_hashes=list(commit.parent_ids or []),
        author_email=commit.author_email,
    )


def map_gitlab_notes(notes, discussion_id: str = ""):
    """Notes come back as objects from the notes API and as dicts inside discussions."""
    comments = []
    for note in notes:
        if isinstance(note, dict):
            note_id, body, created = note.get("id"), note.get("body", ""), note.get("created_at")
        else:
            note_id, body, created = note.id, note.body, note.created_at
        comments.append(CommentInfo(id=note_id, thread_id=discussion_id, content=body,
                                    created=parse_iso_time(created)))
    return comments


class GitlabVCSP(VCSPInterface):
    def __init__(self, vcs_info: VcsInfo = None):
        vcs_info = vcs_info or VcsInfo.from_env(VcsProvider.GITLAB)
        if not vcs_info.token:
            raise ValueError("GITLAB_TOKEN environment variable is required")

        self.vcs_info = vcs_info
        self.client = gitlab.Gitlab(vcs_info.api_endpoint or GITLAB_API_ENDPOINT, private_token=vcs_info.token)

    def get_repository(self, owner: str, repository: str, lazy: bool = True):
        return self.client.projects.get(get_project_id(owner, repository), lazy=lazy)

    def test_connection(self):
        self.client.projects.list(per_page=1, get_all=False)

    def list_repositories(self):
        results = {}
        for project in self.client.projects.list(membership=True, simple=True, iterator=True):
            results.setdefault(project.namespace["path"], []).append(project.path)
        return results

    def list_branches(self, owner, repository):
        branches = self.get_repository(owner, repository).branches.list(get_all=True)
        return [branch.name for branch in branches]

    def add_ssh_key_to_repository(self, owner, repository, key_name, public_key, permission):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "key name": key_name,
            "public key": public_key,
        })
        self.get_repository(owner, repository).keys.create({
            "title": key_name,
            "key": public_key,
            "can_push": permission == Permission.READ_WRITE,
        })

    def create_webhook(self, owner, repository, branch, payload_url, *events):
        token = create_token()
        hook = self.get_repository(owner, repository).hooks.create(
            create_project_hook(branch, payload_url, token, *events))
        return str(hook.id), token

    def update_webhook(self, owner, repository, branch, payload_url, token, webhook_id, *events):
        self.get_repository(owner, repository).hooks.update(
            int(webhook_id), create_project_hook(branch, payload_url, token, *events))

    def delete_webhook(self, owner, repository, webhook_id):
        self.get_repository(owner, repository).hooks.delete(int(webhook_id))

    def set_commit_status(self, status, owner, repository, ref, title, description, details_url):
        commit = self.get_repository(owner, repository).commits.get(ref, lazy=True)
        commit.statuses.create({
            "state": _COMMIT_STATES[status],
            "ref": ref,
            "name": title,
            "description": description,
            "target_url": details_url,
        })

    def get_commit_statuses(self, owner, repository, ref):
        commit = self.get_repository(owner, repository).commits.get(ref, lazy=True)
        results = []
        for status in commit.statuses.list(get_all=True):
            created_at = parse_iso_time(status.created_at)
            finished_at = parse_iso_time(getattr(status, "finished_at", None))
            results.append(CommitStatusInfo(
                state=commit_status_from_string(status.status),
                description=status.description or "",
                details_url=status.target_url or "",
                creator=(status.author or {}).get("name", ""),
                created_at=created_at,
                last_updated_at=finished_at or created_at,
            ))
        return results

    def download_repository(self, owner, repository, branch, local_path):
        archive = self.get_repository(owner, repository).repository_archive(sha=branch, format="tar.gz")
        logger.info("%s downloaded successfully, starting with repository extraction", repository)
        untar(local_path, io.BytesIO(archive), True)

        repository_info = self.get_repository_info(owner, repository)
        logger.info("Extracted repository successfully")
        create_dot_git_folder_with_remote(local_path, REMOTE_NAME, repository_info.clone_info.http)

    def get_pull_request_comment_size_limit(self):
        return GITLAB_MR_COMMENT_SIZE_LIMIT

    def get_pull_request_details_size_limit(self):
        return GITLAB_MR_DETAILS_SIZE_LIMIT

    def create_pull_request(self, owner, repository, source_branch, target_branch, title, description):
        logger.debug("Creating new merge request: %s", title)
        self.get_repository(owner, repository).mergerequests.create({
            "source_branch": source_branch,
            "target_branch": target_branch,
            "title": title,
            "description": description,
        })

    def update_pull_request(self, owner, repository, title, body, target_branch, pull_request_id, state):
        logger.debug("Updating details of merge request ID: %s", pull_request_id)
        changes = {"title": title, "description": body}
        if target_branch:
            changes["target_branch"] = target_branch
        if state in _STATE_EVENTS:
            changes["state_event"] = _STATE_EVENTS[state]
        self.get_repository(owner, repository).mergerequests.update(pull_request_id, changes)

    def _get_merge_request(self, owner, repository, pull_request_id, lazy=True):
        return self.get_repository(owner, repository).mergerequests.get(pull_request_id, lazy=lazy)

    def add_pull_request_comment(self, owner, repository, content, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "content": content})
        logger.debug("Commenting on merge request %s: %s", pull_request_id, truncate_for_log(content))
        self._get_merge_request(owner, repository, pull_request_id).notes.create({"body": content})

    def add_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        if not comments:
            raise VcsError("could not add merge request review comments, no comments provided")

        mr = self._get_merge_request(owner, repository, pull_request_id)
        versions = mr.diffs.list(get_all=True)
        if not versions:
            raise VcsError(f"could not get merge request diff versions of merge request {pull_request_id}")
        # the version detail carries the per-file diffs of the latest push
        latest_version = mr.diffs.get(versions[0].id)
        for comment in comments:
            self._add_review_comment(mr, comment, latest_version, latest_version.diffs)

    def _add_review_comment(self, mr, comment, latest_version, changes):
        change = next((c for c in changes if c["new_path"] == comment.new_file_path), None)
        if change is None:
            raise VcsError(f"could not find changes to {comment.new_file_path} in the current merge request")

        position = {
            "base_sha": latest_version.base_commit_sha,
            "start_sha": latest_version.start_commit_sha,
            "head_sha": latest_version.head_commit_sha,
            "position_type": "text",
            "new_path": change["new_path"],
            "new_line": comment.new_start_line,
            "old_path": "" if change.get("new_file") else change["old_path"],
            "old_line": comment.new_start_line,
        }
        logger.debug("Creating merge request discussion on %s line %s", position["new_path"], position["new_line"])
        try:
            mr.discussions.create({"body": comment.content, "position": position})
            return
        except GitlabCreateError as e:
            # Lines that only exist on the new side are rejected when old_* is set
            logger.debug("Retrying merge request discussion without the old position: %s", e)
        new_side = {key: value for key, value in position.items() if key not in ("old_path", "old_line")}
        mr.discussions.create({"body": comment.content, "position": new_side})

    def list_pull_request_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "pullRequestID": str(pull_request_id or ""),
        })
        notes = self._get_merge_request(owner, repository, pull_request_id).notes.list(get_all=True)
        return map_gitlab_notes(notes)

    def list_pull_request_review_comments(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "pullRequestID": str(pull_request_id or ""),
        })
        discussions = self._get_merge_request(owner, repository, pull_request_id).discussions.list(get_all=True)
        comments = []
        for discussion in discussions:
            comments.extend(map_gitlab_notes(discussion.attributes.get("notes", []), discussion.id))
        return comments

    def delete_pull_request_comment(self, owner, repository, pull_request_id, comment_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        self._get_merge_request(owner, repository, pull_request_id).notes.delete(comment_id)

    def delete_pull_request_review_comments(self, owner, repository, pull_request_id, *comments):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "pullRequestID": str(pull_request_id or ""),
        })
        mr = self._get_merge_request(owner, repository, pull_request_id)
        for comment in comments:
            validate_parameters_not_blank({"commentID": str(comment.id or ""), "discussionID": comment.thread_id})
            mr.discussions.get(comment.thread_id, lazy=True).notes.delete(comment.id)

    def list_open_pull_requests(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=False)

    def list_open_pull_requests_with_body(self, owner, repository):
        return self._get_open_pull_requests(owner, repository, with_body=True)

    def _get_open_pull_requests(self, owner, repository, with_body):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching open merge requests in %s", repository)
        merge_requests = self.get_repository(owner, repository).mergerequests.list(
            state="opened", scope="all", get_all=True)
        return [self._map_merge_request(mr, with_body, owner, repository) for mr in merge_requests]

    def get_pull_request_by_id(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        logger.debug("Fetching merge request %s in %s", pull_request_id, repository)
        mr = self._get_merge_request(owner, repository, pull_request_id, lazy=False)
        return self._map_merge_request(mr, False, owner, repository)

    def _map_merge_request(self, mr, with_body, owner, repository) -> PullRequestInfo:
        source_owner = owner
        if mr.source_project_id != mr.target_project_id:
            source_owner = self._get_project_owner_by_id(mr.source_project_id)
        return PullRequestInfo(
            id=mr.iid,
            title=mr.title,
            body=(mr.description or "") if with_body else "",
            url=mr.web_url,
            author=mr.author["username"],
            source=BranchInfo(name=mr.source_branch, repository=repository, owner=source_owner),
            target=BranchInfo(name=mr.target_branch, repository=repository, owner=owner),
            status=mr.state,
        )

    def _get_project_owner_by_id(self, project_id) -> str:
        project = self.client.projects.get(project_id)
        if not project.namespace:
            raise VcsError(f"could not fetch the name of the project owner. Project ID: {project_id}")
        return project.namespace["name"]

    def get_latest_commit(self, owner, repository, branch):
        commits = self.get_commits(owner, repository, branch)
        if not commits:
            raise VcsError(f"no commits were returned for <{owner}/{repository}/{branch}>")
        return commits[0]

    def get_commits(self, owner, repository, branch):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "branch": branch})
        commits = self.get_repository(owner, repository).commits.list(
            ref_name=branch, page=1, per_page=NUMBER_OF_COMMITS_TO_FETCH, get_all=False)
        return [map_gitlab_commit(commit) for commit in commits]

    def get_commits_with_query_options(self, owner, repository, options):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        commits = self.get_repository(owner, repository).commits.list(
            since=options.since.isoformat(),
            until=datetime.now(timezone.utc).isoformat(),
            page=options.page,
            per_page=options.per_page,
            get_all=False,
        )
        return [map_gitlab_commit(commit) for commit in commits]

    def get_commit_by_sha(self, owner, repository, sha):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "sha": sha})
        return map_gitlab_commit(self.get_repository(owner, repository).commits.get(sha))

    def get_repository_info(self, owner, repository):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        project = self.get_repository(owner, repository, lazy=False)
        return RepositoryInfo(
            visibility=_VISIBILITIES.get(project.visibility, RepositoryVisibility.PRIVATE),
            clone_info=CloneInfo(http=project.http_url_to_repo, ssh=project.ssh_url_to_repo),
        )

    def get_repository_environment_info(self, owner, repository, name):
        raise UnsupportedOperationError("get repository environment info", VcsProvider.GITLAB)

    def create_branch(self, owner, repository, source_branch, new_branch):
        raise UnsupportedOperationError("create branch", VcsProvider.GITLAB)

    def list_pull_request_reviews(self, owner, repository, pull_request_id):
        raise UnsupportedOperationError("list pull request reviews", VcsProvider.GITLAB)

    def list_pull_requests_associated_with_commit(self, owner, repository, commit_sha):
        raise UnsupportedOperationError("list pull requests associated with commit", VcsProvider.GITLAB)

    def create_label(self, owner, repository, label_info):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "LabelInfo.name": label_info.name,
            "LabelInfo.color": label_info.color,
        })
        self.get_repository(owner, repository).labels.create({
            "name": label_info.name,
            "description": label_info.description,
            "color": label_info.color if label_info.color.startswith("#") else f"#{label_info.color}",
        })

    def get_label(self, owner, repository, name):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "name": name})
        for label in self.get_repository(owner, repository).labels.list(get_all=True):
            if label.name == name:
                return LabelInfo(name=label.name, description=label.description or "",
                                 color=label.color.lstrip("#"))
        return None

    def list_pull_request_labels(self, owner, repository, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        return list(self._get_merge_request(owner, repository, pull_request_id, lazy=False).labels)

    def unlabel_pull_request(self, owner, repository, name, pull_request_id):
        validate_parameters_not_blank({"owner": owner, "repository": repository})
        self.get_repository(owner, repository).mergerequests.update(pull_request_id, {"remove_labels": name})

    def upload_code_scanning(self, owner, repository, branch, scan_results):
        raise UnsupportedOperationError("upload code scanning", VcsProvider.GITLAB)

    def download_file_from_repo(self, owner, repository, branch, path):
        validate_parameters_not_blank({"owner": owner, "repository": repository, "path": path})
        try:
            project_file = self.get_repository(owner, repository).files.get(file_path=path, ref=branch)
        except GitlabGetError as e:
            if e.response_code == 404:
                return b"", 404
            raise
        return project_file.decode(), 200

    def get_modified_files(self, owner, repository, ref_before, ref_after):
        validate_parameters_not_blank({
            "owner": owner,
            "repository": repository,
            "refBefore": ref_before,
            "refAfter": ref_after,
        })
        comparison = self.get_repository(owner, repository).repository_compare(ref_before, ref_after)
        paths = []
        for diff in comparison["diffs"]:
            paths.append(diff["new_path"])
            paths.append(diff["old_path"])
        return sorted_paths(paths)
