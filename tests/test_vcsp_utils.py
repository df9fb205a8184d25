import io
import tarfile
import zipfile
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from models import CommitStatus, commit_status_from_string
from vcsp_interface import ParameterValidationError, VcsHttpError
from vcsp_utils import (
    add_branch_prefix,
    check_response_status,
    create_dot_git_folder_with_remote,
    create_token,
    generate_error_string,
    get_generic_git_remote_url,
    parse_iso_time,
    sorted_paths,
    untar,
    unzip,
    validate_parameters_not_blank,
)


def tar_gz(entries):
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for name, data in entries:
            info = tarfile.TarInfo(name)
            info.size = len(data)
            info.mode = 0o644
            archive.addfile(info, io.BytesIO(data))
    buffer.seek(0)
    return buffer


def test_validate_parameters_lists_every_blank_parameter():
    with pytest.raises(ParameterValidationError) as e:
        validate_parameters_not_blank({"owner": "", "repository": "repo", "branch": "   "})
    assert e.value.missing == ["owner", "branch"]
    assert str(e.value) == "required parameter 'owner' is missing; required parameter 'branch' is missing"


def test_validate_parameters_accepts_filled_values():
    validate_parameters_not_blank({"owner": "owner", "repository": "repo"})


def test_validation_error_is_a_value_error():
    with pytest.raises(ValueError):
        validate_parameters_not_blank({"path": ""})


def test_add_branch_prefix():
    assert add_branch_prefix("main") == "refs/heads/main"
    assert add_branch_prefix("refs/heads/main") == "refs/heads/main"
    assert add_branch_prefix("") == ""


def test_create_token_is_unique():
    assert create_token() != create_token()
    assert len(create_token()) == 36


def test_get_generic_git_remote_url():
    assert get_generic_git_remote_url("https://git.example.com/scm/", "PRJ", "repo") == \
        "https://git.example.com/scm/PRJ/repo.git"


def test_sorted_paths_dedupes_and_drops_empty():
    assert sorted_paths(["b", None, "a", "", "b"]) == ["a", "b"]


def test_untar_removes_base_dir(tmp_path):
    untar(str(tmp_path), tar_gz([("repo-abc/README.md", b"readme"), ("repo-abc/src/app.py", b"app")]), True)
    assert (tmp_path / "README.md").read_bytes() == b"readme"
    assert (tmp_path / "src" / "app.py").read_bytes() == b"app"


def test_untar_keeps_paths(tmp_path):
    untar(str(tmp_path), tar_gz([("README.md", b"readme")]), False)
    assert (tmp_path / "README.md").read_bytes() == b"readme"


def test_untar_rejects_path_traversal(tmp_path):
    with pytest.raises(ValueError, match="illegal file path"):
        untar(str(tmp_path / "dest"), tar_gz([("../evil.sh", b"rm -rf /")]), False)
    assert not (tmp_path / "evil.sh").exists()


def test_unzip(tmp_path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("dir/", "")
        archive.writestr("dir/file.txt", "content")
    unzip(buffer.getvalue(), str(tmp_path))
    assert (tmp_path / "dir" / "file.txt").read_text() == "content"


def test_unzip_rejects_path_traversal(tmp_path):
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("../../evil.txt", "x")
    with pytest.raises(ValueError, match="illegal file path"):
        unzip(buffer.getvalue(), str(tmp_path / "dest"))


def test_create_dot_git_folder_skips_existing(mocker, tmp_path):
    (tmp_path / ".git").mkdir()
    run = mocker.patch("vcsp_utils.subprocess.run")
    create_dot_git_folder_with_remote(str(tmp_path), "origin", "https://example.com/repo.git")
    run.assert_not_called()


def test_create_dot_git_folder_adds_remote(mocker, tmp_path):
    run = mocker.patch("vcsp_utils.subprocess.run")
    create_dot_git_folder_with_remote(str(tmp_path), "origin", "https://example.com/repo.git")
    commands = [call.args[0] for call in run.call_args_list]
    assert commands == [
        ["git", "init", "--quiet", str(tmp_path)],
        ["git", "-C", str(tmp_path), "remote", "add", "origin", "https://example.com/repo.git"],
    ]


def test_check_response_status_accepts_expected():
    check_response_status(Mock(status_code=201), 200, 201)


@pytest.mark.parametrize("status_code", [404, 500])
def test_check_response_status_keeps_status_code(status_code):
    response = Mock(status_code=status_code, reason="Error", text='{"message": "nope"}')
    with pytest.raises(VcsHttpError) as e:
        check_response_status(response, 200)
    assert e.value.status_code == status_code
    assert str(e.value).startswith(f"server response: {status_code} Error")
    assert '"message": "nope"' in str(e.value)


def test_check_response_status_empty_response():
    with pytest.raises(VcsHttpError, match="empty response"):
        check_response_status(None, 200)


def test_generate_error_string_plain_text():
    assert generate_error_string("Bad Gateway") == "Bad Gateway"
    assert generate_error_string("") == ""


def test_parse_iso_time():
    assert parse_iso_time("2024-01-02T03:04:05Z") == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    assert parse_iso_time("2024-01-02T03:04:05").tzinfo == timezone.utc
    assert parse_iso_time("") is None


@pytest.mark.parametrize("state, expected", [
    ("success", CommitStatus.PASS),
    ("SUCCESSFUL", CommitStatus.PASS),
    ("failed", CommitStatus.FAIL),
    ("INPROGRESS", CommitStatus.IN_PROGRESS),
    ("pending", CommitStatus.IN_PROGRESS),
    ("error", CommitStatus.ERROR),
    ("", CommitStatus.ERROR),
])
def test_commit_status_from_string(state, expected):
    assert commit_status_from_string(state) == expected
