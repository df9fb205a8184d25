import io
import json
import tarfile
from unittest.mock import Mock

import pytest

from bitbucket_server_vcsp import BitbucketServerVCSP, get_bitbucket_server_webhook_events
from models import BranchInfo, CommitInfo, CommitStatus, Permission, PullRequestInfo, PullRequestState, WebhookEvent
from vcsp_interface import UnsupportedOperationError, VcsError, VcsHttpError

REPO_PATH = "rest/api/1.0/projects/PRJ/repos/repo"


def response(data=None, status_code=200, headers=None, content=b""):
    mock_response = Mock()
    mock_response.status_code = status_code
    mock_response.reason = "OK" if status_code < 400 else "Error"
    mock_response.text = json.dumps(data) if data is not None else ""
    mock_response.json.return_value = data
    mock_response.headers = headers or {}
    mock_response.content = content
    return mock_response


@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.delenv("VCS_TOKEN", raising=False)
    monkeypatch.setenv("VCS_API_ENDPOINT", "https://bitbucket.example.com/rest")
    monkeypatch.setenv("BITBUCKET_TOKEN", "fake_token")


@pytest.fixture
def mock_bitbucket(mocker):
    mock_client = Mock()
    mocker.patch("bitbucket_server_vcsp.Bitbucket", return_value=mock_client)
    return mock_client


def test_endpoint_rest_suffix_is_stripped(mocker):
    bitbucket = mocker.patch("bitbucket_server_vcsp.Bitbucket")
    vcsp = BitbucketServerVCSP()
    bitbucket.assert_called_once_with(url="https://bitbucket.example.com", token="fake_token")
    assert vcsp.rest_endpoint == "https://bitbucket.example.com/rest"


def test_missing_endpoint(monkeypatch):
    monkeypatch.delenv("VCS_API_ENDPOINT")
    with pytest.raises(ValueError, match="VCS_API_ENDPOINT"):
        BitbucketServerVCSP()


def test_list_branches_over_pages(mock_bitbucket):
    mock_bitbucket.get.side_effect = [
        response({"values": [{"displayId": "main"}, {"displayId": "dev"}], "isLastPage": False,
                  "nextPageStart": 2}),
        response({"values": [{"displayId": "feature"}], "isLastPage": True}),
    ]

    assert BitbucketServerVCSP().list_branches("PRJ", "repo") == ["main", "dev", "feature"]
    starts = [call.kwargs["params"]["start"] for call in mock_bitbucket.get.call_args_list]
    assert starts == [0, 2]
    assert mock_bitbucket.get.call_args.args[0] == f"{REPO_PATH}/branches"


def test_list_repositories_includes_personal_project(mock_bitbucket):
    mock_bitbucket.get.side_effect = [
        response({"values": [{"key": "PRJ"}], "isLastPage": True}, headers={"X-Ausername": "jdoe"}),
        response({"values": [{"slug": "repo"}], "isLastPage": True}),
        response({"values": [{"slug": "personal"}], "isLastPage": True}),
    ]

    assert BitbucketServerVCSP().list_repositories() == {"PRJ": ["repo"], "~JDOE": ["personal"]}
    assert mock_bitbucket.get.call_args.args[0] == "rest/api/1.0/projects/~JDOE/repos"


def test_list_repositories_without_username_header(mock_bitbucket):
    mock_bitbucket.get.return_value = response({"values": [], "isLastPage": True})
    with pytest.raises(VcsError, match="X-Ausername"):
        BitbucketServerVCSP().list_repositories()


def test_add_ssh_key(mock_bitbucket):
    BitbucketServerVCSP().add_ssh_key_to_repository("PRJ", "repo", "deploy", "ssh-rsa AAA", Permission.READ)
    mock_bitbucket.post.assert_called_once_with("rest/keys/1.0/projects/PRJ/repos/repo/ssh", data={
        "key": {"text": "ssh-rsa AAA", "label": "deploy"},
        "permission": "REPO_READ",
    })


def test_webhook_events():
    assert get_bitbucket_server_webhook_events(WebhookEvent.PR_REJECTED, WebhookEvent.PUSH) == [
        "pr:declined", "pr:deleted", "repo:refs_changed"]


def test_create_webhook(mock_bitbucket):
    mock_bitbucket.post.return_value = {"id": 12}

    webhook_id, token = BitbucketServerVCSP().create_webhook("PRJ", "repo", "main", "https://hooks.example.com",
                                                             WebhookEvent.PR_OPENED)

    assert webhook_id == "12"
    path = mock_bitbucket.post.call_args.args[0]
    assert path == f"{REPO_PATH}/webhooks"
    assert mock_bitbucket.post.call_args.kwargs["data"]["configuration"] == {"secret": token}


def test_set_commit_status(mock_bitbucket):
    BitbucketServerVCSP().set_commit_status(CommitStatus.PASS, "PRJ", "repo", "abc", "scan", "ok", "https://ci")
    mock_bitbucket.post.assert_called_once_with("rest/build-status/1.0/commits/abc", data={
        "state": "SUCCESSFUL", "key": "scan", "description": "ok", "url": "https://ci"})


def test_get_commit_statuses_millis(mock_bitbucket):
    mock_bitbucket.get.return_value = response({"values": [
        {"state": "FAILED", "key": "scan", "name": "Scanner", "description": "bad", "url": "https://ci",
         "dateAdded": 1704164645000},
    ], "isLastPage": True})

    statuses = BitbucketServerVCSP().get_commit_statuses("PRJ", "repo", "abc")

    assert statuses[0].state == CommitStatus.FAIL
    assert int(statuses[0].created_at.timestamp()) == 1704164645


def test_download_repository(mocker, mock_bitbucket, tmp_path):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        data = b"hello"
        info = tarfile.TarInfo("README.md")
        info.size = len(data)
        archive.addfile(info, io.BytesIO(data))
    mock_bitbucket.get.return_value = buffer.getvalue()
    create_git = mocker.patch("bitbucket_server_vcsp.create_dot_git_folder_with_remote")

    BitbucketServerVCSP().download_repository("PRJ", "repo", "main", str(tmp_path))

    assert (tmp_path / "README.md").read_bytes() == b"hello"
    mock_bitbucket.get.assert_called_once_with(f"{REPO_PATH}/archive", params={"format": "tgz", "at": "main"},
                                               not_json_response=True)
    create_git.assert_called_once_with(str(tmp_path), "origin", "https://bitbucket.example.com/scm/PRJ/repo.git")


def test_create_pull_request_prefixes_branches(mock_bitbucket):
    BitbucketServerVCSP().create_pull_request("PRJ", "repo", "feature", "main", "title", "desc")
    body = mock_bitbucket.post.call_args.kwargs["data"]
    assert body["fromRef"]["id"] == "refs/heads/feature"
    assert body["toRef"]["id"] == "refs/heads/main"


def test_update_pull_request_declines(mock_bitbucket):
    mock_bitbucket.get.return_value = {"version": 3, "state": "OPEN", "open": True}
    mock_bitbucket.put.return_value = {"version": 4}

    BitbucketServerVCSP().update_pull_request("PRJ", "repo", "t", "b", "develop", 7, PullRequestState.CLOSED)

    path = f"{REPO_PATH}/pull-requests/7"
    mock_bitbucket.put.assert_called_once_with(path, data={
        "version": 3, "title": "t", "description": "b", "toRef": {"id": "refs/heads/develop"}})
    mock_bitbucket.post.assert_called_once_with(f"{path}/decline", params={"version": 4})


def test_update_open_pull_request_does_not_reopen(mock_bitbucket):
    mock_bitbucket.get.return_value = {"version": 3, "state": "OPEN", "open": True}
    mock_bitbucket.put.return_value = {"version": 4}

    BitbucketServerVCSP().update_pull_request("PRJ", "repo", "t", "b", "", 7, PullRequestState.OPEN)

    mock_bitbucket.put.assert_called_once_with(f"{REPO_PATH}/pull-requests/7", data={
        "version": 3, "title": "t", "description": "b"})
    mock_bitbucket.post.assert_not_called()


def test_update_declined_pull_request_reopens(mock_bitbucket):
    mock_bitbucket.get.return_value = {"version": 3, "state": "DECLINED", "open": False}
    mock_bitbucket.put.return_value = {"version": 4}

    BitbucketServerVCSP().update_pull_request("PRJ", "repo", "t", "b", "", 7, PullRequestState.OPEN)

    mock_bitbucket.post.assert_called_once_with(f"{REPO_PATH}/pull-requests/7/reopen", params={"version": 4})


def test_list_pull_request_comments_from_activities(mock_bitbucket):
    mock_bitbucket.get.return_value = response({"values": [
        {"action": "COMMENTED", "commentAction": "ADDED",
         "comment": {"id": 1, "text": "hello", "createdDate": 1704164645000}},
        {"action": "COMMENTED", "commentAction": "EDITED", "comment": {"id": 2, "text": "edited"}},
        {"action": "APPROVED"},
    ], "isLastPage": True})

    comments = BitbucketServerVCSP().list_pull_request_comments("PRJ", "repo", 7)

    assert [(c.id, c.content) for c in comments] == [(1, "hello")]


def test_delete_pull_request_comment_uses_version(mock_bitbucket):
    mock_bitbucket.get.return_value = {"version": 2}
    BitbucketServerVCSP().delete_pull_request_comment("PRJ", "repo", 7, 1)
    mock_bitbucket.delete.assert_called_once_with(f"{REPO_PATH}/pull-requests/7/comments/1", params={"version": 2})


def test_list_open_pull_requests(mock_bitbucket):
    repository = {"slug": "repo", "project": {"key": "PRJ"}}
    mock_bitbucket.get.return_value = response({"values": [
        {"id": 7, "title": "t", "description": "d", "open": True, "state": "OPEN",
         "author": {"user": {"name": "jdoe"}},
         "links": {"self": [{"href": "https://bitbucket.example.com/projects/PRJ/repos/repo/pull-requests/7"}]},
         "fromRef": {"displayId": "feature", "repository": repository},
         "toRef": {"displayId": "main", "repository": repository}},
        {"id": 8, "open": False},
    ], "isLastPage": True})

    pull_requests = BitbucketServerVCSP().list_open_pull_requests_with_body("PRJ", "repo")

    assert pull_requests == [PullRequestInfo(
        id=7,
        title="t",
        body="d",
        url="https://bitbucket.example.com/projects/PRJ/repos/repo/pull-requests/7",
        author="jdoe",
        source=BranchInfo(name="feature", repository="repo", owner="PRJ"),
        target=BranchInfo(name="main", repository="repo", owner="PRJ"),
        status="OPEN",
    )]


def test_get_commit_by_sha(mock_bitbucket):
    mock_bitbucket.get.return_value = {
        "id": "abc",
        "author": {"name": "jdoe", "emailAddress": "jdoe@example.com"},
        "committer": {"name": "jdoe"},
        "committerTimestamp": 1704164645123,
        "message": "msg",
        "parents": [{"id": "p1"}],
    }

    commit = BitbucketServerVCSP().get_commit_by_sha("PRJ", "repo", "abc")

    assert commit == CommitInfo(
        hash="abc",
        author_name="jdoe",
        committer_name="jdoe",
        url="https://bitbucket.example.com/rest/api/1.0/projects/PRJ/repos/repo/commits/abc",
        timestamp=1704164645,
        message="msg",
        parent_hashes=["p1"],
        author_email="jdoe@example.com",
    )


def test_get_latest_commit_empty(mock_bitbucket):
    mock_bitbucket.get.return_value = {"values": []}
    assert BitbucketServerVCSP().get_latest_commit("PRJ", "repo", "main") == CommitInfo()
    mock_bitbucket.get.assert_called_once_with(f"{REPO_PATH}/commits", params={"limit": 1, "until": "main"})


def test_download_file_from_repo(mock_bitbucket):
    mock_bitbucket.get.side_effect = [response(content=b"data"), response(status_code=404)]

    vcsp = BitbucketServerVCSP()
    assert vcsp.download_file_from_repo("PRJ", "repo", "main", "README.md") == (b"data", 200)
    assert vcsp.download_file_from_repo("PRJ", "repo", "main", "missing") == (b"", 404)


def test_download_file_from_repo_server_error(mock_bitbucket):
    mock_bitbucket.get.return_value = response({"errors": [{"message": "boom"}]}, status_code=500)
    with pytest.raises(VcsHttpError) as e:
        BitbucketServerVCSP().download_file_from_repo("PRJ", "repo", "main", "README.md")
    assert e.value.status_code == 500


def test_get_modified_files(mock_bitbucket):
    mock_bitbucket.get.return_value = {"diffs": [
        {"source": None, "destination": {"toString": "new.txt"}},
        {"source": {"toString": "old/a.txt"}, "destination": {"toString": "a.txt"}},
        {"source": {"toString": "new.txt"}, "destination": None},
    ]}

    assert BitbucketServerVCSP().get_modified_files("PRJ", "repo", "sha-1", "sha-2") == [
        "a.txt", "new.txt", "old/a.txt"]
    mock_bitbucket.get.assert_called_once_with(f"{REPO_PATH}/compare/diff",
                                               params={"contextLines": 0, "from": "sha-2", "to": "sha-1"})


def test_unsupported_operations(mock_bitbucket):
    vcsp = BitbucketServerVCSP()
    with pytest.raises(UnsupportedOperationError, match="not supported for Bitbucket Server"):
        vcsp.create_label("PRJ", "repo", None)
    with pytest.raises(UnsupportedOperationError):
        vcsp.add_pull_request_review_comments("PRJ", "repo", 1)
    assert vcsp.get_pull_request_comment_size_limit() == 65536
