import io
import tarfile
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest
from github.GithubException import GithubException

from github_vcsp import GithubVCSP, encode_scanning_result, extract_branch_from_label, get_github_webhook_events
from models import (
    BranchInfo,
    CommitInfo,
    CommitsQueryOptions,
    CommitStatus,
    LabelInfo,
    Permission,
    PullRequestComment,
    PullRequestInfo,
    PullRequestReviewDetails,
    PullRequestState,
    RepositoryVisibility,
    WebhookEvent,
)
from vcsp_interface import VcsError


# Mock environment variable
@pytest.fixture(autouse=True)
def set_env(monkeypatch):
    monkeypatch.delenv("VCS_TOKEN", raising=False)
    monkeypatch.setenv("GITHUB_TOKEN", "fake_token")


# Fixture for mocked Github client
@pytest.fixture
def mock_github(mocker):
    mock_client = Mock()
    mocker.patch("github_vcsp.Github", return_value=mock_client)
    return mock_client


@pytest.fixture
def mock_repo(mock_github):
    repo = Mock()
    mock_github.get_repo.return_value = repo
    return repo


def make_pull(number=1, head_label="forker:feature", base_label="owner:main", body="Description"):
    pull = Mock()
    pull.number = number
    pull.title = "Test PR"
    pull.body = body
    pull.html_url = f"https://github.com/owner/repo/pull/{number}"
    pull.user.login = "octocat"
    pull.state = "open"
    pull.head.label = head_label
    pull.head.repo.name = "repo"
    pull.head.repo.owner.login = "forker"
    pull.base.label = base_label
    pull.base.repo.name = "repo"
    pull.base.repo.owner.login = "owner"
    return pull


def make_commit(sha="abc123"):
    commit = Mock()
    commit.sha = sha
    commit.url = f"https://api.github.com/repos/owner/repo/commits/{sha}"
    commit.commit.author.name = "Jane"
    commit.commit.author.email = "jane@example.com"
    commit.commit.committer.name = "GitHub"
    commit.commit.committer.date = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    commit.commit.message = "Fix bug"
    parent = Mock()
    parent.sha = "parent1"
    commit.parents = [parent]
    return commit


def test_missing_token_raises(monkeypatch):
    monkeypatch.delenv("GITHUB_TOKEN")
    with pytest.raises(ValueError, match="GITHUB_TOKEN"):
        GithubVCSP()


def test_list_repositories_groups_by_owner(mock_github):
    repos = []
    for owner, name in [("owner", "repo1"), ("owner", "repo2"), ("org", "repo3")]:
        repo = Mock()
        repo.owner.login = owner
        repo.name = name
        repos.append(repo)
    mock_github.get_user.return_value.get_repos.return_value = repos

    assert GithubVCSP().list_repositories() == {"owner": ["repo1", "repo2"], "org": ["repo3"]}


def test_list_branches(mock_github, mock_repo):
    main, dev = Mock(), Mock()
    main.name = "main"
    dev.name = "dev"
    mock_repo.get_branches.return_value = [main, dev]

    assert GithubVCSP().list_branches("owner", "repo") == ["main", "dev"]
    mock_github.get_repo.assert_called_once_with("owner/repo")


def test_add_ssh_key_read_only(mock_repo):
    GithubVCSP().add_ssh_key_to_repository("owner", "repo", "deploy", "ssh-rsa AAA", Permission.READ)
    mock_repo.create_key.assert_called_once_with(title="deploy", key="ssh-rsa AAA", read_only=True)


def test_create_webhook_returns_id_and_token(mock_repo):
    mock_repo.create_hook.return_value.id = 42

    webhook_id, token = GithubVCSP().create_webhook(
        "owner", "repo", "main", "https://hooks.example.com",
        WebhookEvent.PR_OPENED, WebhookEvent.PR_MERGED, WebhookEvent.PUSH)

    assert webhook_id == "42"
    assert token
    kwargs = mock_repo.create_hook.call_args.kwargs
    assert kwargs["events"] == ["pull_request", "push"]
    assert kwargs["config"] == {"content_type": "json", "url": "https://hooks.example.com", "secret": token}


def test_update_and_delete_webhook(mock_repo):
    vcsp = GithubVCSP()
    vcsp.update_webhook("owner", "repo", "main", "https://hooks.example.com", "secret", "42", WebhookEvent.TAG_PUSHED)
    mock_repo.get_hook.assert_called_with(42)
    mock_repo.get_hook.return_value.edit.assert_called_once_with(
        name="web",
        config={"content_type": "json", "url": "https://hooks.example.com", "secret": "secret"},
        events=["push"],
    )

    vcsp.delete_webhook("owner", "repo", "42")
    mock_repo.get_hook.return_value.delete.assert_called_once()


def test_set_commit_status(mock_repo):
    GithubVCSP().set_commit_status(CommitStatus.FAIL, "owner", "repo", "abc123", "scan", "found issues",
                                   "https://ci.example.com")
    mock_repo.get_commit.assert_called_once_with("abc123")
    mock_repo.get_commit.return_value.create_status.assert_called_once_with(
        state="failure", target_url="https://ci.example.com", description="found issues", context="scan")


def test_get_commit_statuses(mock_repo):
    created = datetime(2024, 1, 1, tzinfo=timezone.utc)
    status = Mock()
    status.state = "success"
    status.description = "all good"
    status.target_url = "https://ci.example.com/1"
    status.creator = Mock(spec=["login"], login="ci-bot")
    status.created_at = created
    status.updated_at = created
    mock_repo.get_commit.return_value.get_combined_status.return_value.statuses = [status]

    statuses = GithubVCSP().get_commit_statuses("owner", "repo", "abc123")

    assert len(statuses) == 1
    assert statuses[0].state == CommitStatus.PASS
    assert statuses[0].creator == "ci-bot"
    assert statuses[0].details_url == "https://ci.example.com/1"


def test_download_repository_strips_base_dir(mocker, mock_repo, tmp_path):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        data = b"print('hello')\n"
        info = tarfile.TarInfo("owner-repo-abc123/src/main.py")
        info.size = len(data)
        info.mode = 0o644
        archive.addfile(info, io.BytesIO(data))
    response = Mock(status_code=200, content=buffer.getvalue())
    mocker.patch("github_vcsp.requests.get", return_value=response)
    create_git = mocker.patch("github_vcsp.create_dot_git_folder_with_remote")
    mock_repo.get_archive_link.return_value = "https://codeload.github.com/owner/repo/tar.gz/main"
    mock_repo.visibility = "public"
    mock_repo.clone_url = "https://github.com/owner/repo.git"
    mock_repo.ssh_url = "git@github.com:owner/repo.git"

    GithubVCSP().download_repository("owner", "repo", "main", str(tmp_path))

    assert (tmp_path / "src" / "main.py").read_bytes() == b"print('hello')\n"
    mock_repo.get_archive_link.assert_called_once_with("tarball", ref="main")
    create_git.assert_called_once_with(str(tmp_path), "origin", "https://github.com/owner/repo.git")


def test_create_pull_request(mock_repo):
    GithubVCSP().create_pull_request("owner", "repo", "feature", "main", "Add feature", "body")
    mock_repo.create_pull.assert_called_once_with(base="main", head="owner:feature", title="Add feature",
                                                  body="body")


def test_update_pull_request_closes(mock_repo):
    GithubVCSP().update_pull_request("owner", "repo", "title", "body", "", 7, PullRequestState.CLOSED)
    mock_repo.get_pull.assert_called_once_with(7)
    mock_repo.get_pull.return_value.edit.assert_called_once_with(title="title", body="body", state="closed")


def test_list_open_pull_requests_with_body(mock_repo):
    mock_repo.get_pulls.return_value = [make_pull()]

    pull_requests = GithubVCSP().list_open_pull_requests_with_body("owner", "repo")

    assert pull_requests == [PullRequestInfo(
        id=1,
        title="Test PR",
        body="Description",
        url="https://github.com/owner/repo/pull/1",
        author="octocat",
        source=BranchInfo(name="feature", repository="repo", owner="forker"),
        target=BranchInfo(name="main", repository="repo", owner="owner"),
        status="open",
    )]
    mock_repo.get_pulls.assert_called_once_with(state="open")


def test_list_open_pull_requests_omits_body(mock_repo):
    mock_repo.get_pulls.return_value = [make_pull()]
    assert GithubVCSP().list_open_pull_requests("owner", "repo")[0].body == ""


def test_get_pull_request_by_id_bad_label(mock_repo):
    mock_repo.get_pull.return_value = make_pull(head_label="feature")
    with pytest.raises(VcsError, match="bad label format feature"):
        GithubVCSP().get_pull_request_by_id("owner", "repo", 1)


def test_get_pull_request_by_id_missing_source_repo(mock_repo):
    pull = make_pull()
    pull.head.repo = None
    mock_repo.get_pull.return_value = pull
    with pytest.raises(VcsError, match="source repository information is missing"):
        GithubVCSP().get_pull_request_by_id("owner", "repo", 1)


def test_get_pull_request_failure_propagates(mock_repo):
    mock_repo.get_pull.side_effect = GithubException(status=404, data={"message": "Not Found"})
    with pytest.raises(GithubException) as e:
        GithubVCSP().get_pull_request_by_id("owner", "repo", 1)
    assert e.value.status == 404


def test_add_review_comments_anchors_on_latest_commit(mock_repo):
    pull = mock_repo.get_pull.return_value
    first, latest = Mock(), Mock()
    pull.get_commits.return_value = [first, latest]

    GithubVCSP().add_pull_request_review_comments(
        "owner", "repo", 3,
        PullRequestComment(content="single", new_file_path="a.py", new_start_line=4, new_end_line=4),
        PullRequestComment(content="range", new_file_path="b.py", new_start_line=2, new_end_line=6),
    )

    calls = pull.create_review_comment.call_args_list
    assert calls[0].args == ("single", latest, "a.py")
    assert calls[0].kwargs == {"line": 4}
    assert calls[1].args == ("range", latest, "b.py")
    assert calls[1].kwargs == {"line": 6, "start_line": 2}


def test_add_review_comments_requires_comments(mock_repo):
    with pytest.raises(VcsError, match="no comments were provided"):
        GithubVCSP().add_pull_request_review_comments("owner", "repo", 3)


def test_list_pull_request_comments(mock_repo):
    created = datetime(2024, 5, 1, tzinfo=timezone.utc)
    comment = Mock(id=11, body="looks good", created_at=created)
    mock_repo.get_issue.return_value.get_comments.return_value = [comment]

    comments = GithubVCSP().list_pull_request_comments("owner", "repo", 3)

    assert [(c.id, c.content, c.created) for c in comments] == [(11, "looks good", created)]
    mock_repo.get_issue.assert_called_once_with(3)


def test_delete_pull_request_comment(mock_repo):
    GithubVCSP().delete_pull_request_comment("owner", "repo", 3, 11)
    mock_repo.get_issue.return_value.get_comment.assert_called_once_with(11)
    mock_repo.get_issue.return_value.get_comment.return_value.delete.assert_called_once()


def test_get_commits_maps_fields(mock_repo):
    mock_repo.get_commits.return_value = iter([make_commit("abc123"), make_commit("def456")])

    commits = GithubVCSP().get_commits("owner", "repo", "main")

    assert commits[0] == CommitInfo(
        hash="abc123",
        author_name="Jane",
        committer_name="GitHub",
        url="https://api.github.com/repos/owner/repo/commits/abc123",
        timestamp=int(datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc).timestamp()),
        message="Fix bug",
        parent_hashes=["parent1"],
        author_email="jane@example.com",
    )
    assert [c.hash for c in commits] == ["abc123", "def456"]
    mock_repo.get_commits.assert_called_once_with(sha="main")


def test_get_latest_commit_empty_branch(mock_repo):
    mock_repo.get_commits.return_value = iter([])
    assert GithubVCSP().get_latest_commit("owner", "repo", "main") == CommitInfo()


def test_get_repository_info(mock_repo):
    mock_repo.visibility = "internal"
    mock_repo.clone_url = "https://github.com/owner/repo.git"
    mock_repo.ssh_url = "git@github.com:owner/repo.git"

    info = GithubVCSP().get_repository_info("owner", "repo")

    assert info.visibility == RepositoryVisibility.INTERNAL
    assert info.clone_info.ssh == "git@github.com:owner/repo.git"


def test_get_repository_environment_info(mock_repo):
    reviewer = Mock()
    reviewer.reviewer.login = "alice"
    rule = Mock(reviewers=[reviewer])
    environment = mock_repo.get_environment.return_value
    environment.name = "production"
    environment.url = "https://api.github.com/repos/owner/repo/environments/production"
    environment.protection_rules = [rule]

    info = GithubVCSP().get_repository_environment_info("owner", "repo", "production")

    assert info.name == "production"
    assert info.reviewers == ["alice"]


def test_get_label_not_found_returns_none(mock_repo):
    mock_repo.get_label.side_effect = GithubException(status=404, data={"message": "Not Found"})
    assert GithubVCSP().get_label("owner", "repo", "bug") is None


def test_get_label_server_error_propagates(mock_repo):
    mock_repo.get_label.side_effect = GithubException(status=500, data={"message": "boom"})
    with pytest.raises(GithubException):
        GithubVCSP().get_label("owner", "repo", "bug")


def test_create_and_get_label(mock_repo):
    vcsp = GithubVCSP()
    vcsp.create_label("owner", "repo", LabelInfo(name="bug", description="Something broke", color="ff0000"))
    mock_repo.create_label.assert_called_once_with(name="bug", color="ff0000", description="Something broke")

    label = mock_repo.get_label.return_value
    label.name = "bug"
    label.description = "Something broke"
    label.color = "ff0000"
    assert vcsp.get_label("owner", "repo", "bug") == LabelInfo(name="bug", description="Something broke",
                                                               color="ff0000")


def test_list_and_remove_pull_request_labels(mock_repo):
    bug = Mock()
    bug.name = "bug"
    issue = mock_repo.get_issue.return_value
    issue.get_labels.return_value = [bug]

    vcsp = GithubVCSP()
    assert vcsp.list_pull_request_labels("owner", "repo", 3) == ["bug"]
    vcsp.unlabel_pull_request("owner", "repo", "bug", 3)
    issue.remove_from_labels.assert_called_once_with("bug")


def test_upload_code_scanning(mock_github, mock_repo):
    mock_repo.get_commits.return_value = iter([make_commit("abc123")])
    mock_repo.url = "https://api.github.com/repos/owner/repo"
    mock_github.requester.requestJsonAndCheck.return_value = ({}, {"id": "sarif-1"})

    sarif_id = GithubVCSP().upload_code_scanning("owner", "repo", "main", '{"runs": []}')

    assert sarif_id == "sarif-1"
    method, url = mock_github.requester.requestJsonAndCheck.call_args.args
    assert (method, url) == ("POST", "https://api.github.com/repos/owner/repo/code-scanning/sarifs")
    payload = mock_github.requester.requestJsonAndCheck.call_args.kwargs["input"]
    assert payload["commit_sha"] == "abc123"
    assert payload["ref"] == "refs/heads/main"
    assert payload["sarif"] == encode_scanning_result('{"runs": []}')


def test_download_file_from_repo(mock_repo):
    mock_repo.get_contents.return_value.decoded_content = b"content"
    assert GithubVCSP().download_file_from_repo("owner", "repo", "main", "README.md") == (b"content", 200)
    mock_repo.get_contents.assert_called_once_with("README.md", ref="main")


def test_download_file_from_repo_not_found(mock_repo):
    mock_repo.get_contents.side_effect = GithubException(status=404, data={"message": "Not Found"})
    assert GithubVCSP().download_file_from_repo("owner", "repo", "main", "missing.md") == (b"", 404)


def test_get_modified_files_includes_renames(mock_repo):
    files = []
    for filename, previous in [("b.py", None), ("a.py", "old/a.py"), ("b.py", None)]:
        changed = Mock()
        changed.filename = filename
        changed.previous_filename = previous
        files.append(changed)
    mock_repo.compare.return_value.files = files

    assert GithubVCSP().get_modified_files("owner", "repo", "sha-1", "sha-2") == ["a.py", "b.py", "old/a.py"]
    mock_repo.compare.assert_called_once_with("sha-1", "sha-2")


def test_size_limits(mock_github):
    vcsp = GithubVCSP()
    assert vcsp.get_pull_request_comment_size_limit() == 65536
    assert vcsp.get_pull_request_details_size_limit() == 65536


def test_webhook_events_and_label_helpers():
    assert get_github_webhook_events(WebhookEvent.TAG_REMOVED, WebhookEvent.PUSH) == ["push"]
    assert extract_branch_from_label("owner:main") == "main"
    with pytest.raises(VcsError):
        extract_branch_from_label("")


def test_get_commits_with_query_options_pages(mock_repo):
    since = datetime(2024, 1, 1, tzinfo=timezone.utc)
    mock_repo.get_commits.return_value = iter([make_commit(f"sha{i}") for i in range(5)])

    commits = GithubVCSP().get_commits_with_query_options(
        "owner", "repo", CommitsQueryOptions(since=since, page=2, per_page=2))

    assert [c.hash for c in commits] == ["sha2", "sha3"]
    kwargs = mock_repo.get_commits.call_args.kwargs
    assert kwargs["since"] == since
    assert kwargs["until"] > since


def test_create_branch_from_source_head(mock_repo):
    mock_repo.get_branch.return_value.commit.sha = "abc123"

    GithubVCSP().create_branch("owner", "repo", "main", "feature")

    mock_repo.get_branch.assert_called_once_with("main")
    mock_repo.create_git_ref.assert_called_once_with(ref="refs/heads/feature", sha="abc123")


def test_list_pull_request_reviews(mock_repo):
    submitted = datetime(2024, 1, 2, tzinfo=timezone.utc)
    review = Mock(id=5, body="LGTM", state="APPROVED", submitted_at=submitted, commit_id="abc123")
    review.user.login = "reviewer"
    mock_repo.get_pull.return_value.get_reviews.return_value = [review]

    reviews = GithubVCSP().list_pull_request_reviews("owner", "repo", 1)

    assert reviews == [PullRequestReviewDetails(id=5, reviewer="reviewer", body="LGTM", state="APPROVED",
                                                submitted_at=submitted, commit_id="abc123")]
    mock_repo.get_pull.assert_called_once_with(1)


def test_list_pull_requests_associated_with_commit(mock_repo):
    mock_repo.get_commit.return_value.get_pulls.return_value = [make_pull(number=3)]

    pulls = GithubVCSP().list_pull_requests_associated_with_commit("owner", "repo", "abc123")

    assert [(p.id, p.body, p.source.name) for p in pulls] == [(3, "", "feature")]
    mock_repo.get_commit.assert_called_once_with("abc123")
