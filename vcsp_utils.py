# vcsp_utils.py
"""
Helpers shared by the provider clients: parameter validation, archive
extraction, webhook tokens and HTTP response checks.
"""
import io
import json
import logging
import os
import subprocess
import tarfile
import uuid
import zipfile
from datetime import datetime, timezone
from typing import Dict, Iterable, List

import requests

from config import LOG_CHAR_LIMIT
from vcsp_interface import ParameterValidationError, VcsHttpError

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "refs/heads/"
REMOTE_NAME = "origin"
NUMBER_OF_COMMITS_TO_FETCH = 50


def validate_parameters_not_blank(parameters: Dict[str, str]) -> None:
    """
    Raise ParameterValidationError naming every blank entry of parameters.

    Args:
        parameters (dict): parameter name -> value, in the order they should be reported.
    """
    missing = [name for name, value in parameters.items() if not value or not str(value).strip()]
    if missing:
        raise ParameterValidationError(missing)


def create_token() -> str:
    return str(uuid.uuid4())


def add_branch_prefix(branch: str) -> str:
    if branch and not branch.startswith(BRANCH_PREFIX):
        branch = BRANCH_PREFIX + branch
    return branch


def get_generic_git_remote_url(api_endpoint: str, owner: str, repository: str) -> str:
    return f"{api_endpoint.rstrip('/')}/{owner}/{repository}.git"


def truncate_for_log(text: str) -> str:
    if text and len(text) > LOG_CHAR_LIMIT:
        return text[:LOG_CHAR_LIMIT] + "..."
    return text


def sorted_paths(paths: Iterable[str]) -> List[str]:
    """Deduplicate paths, drop empty entries and sort."""
    return sorted({path for path in paths if path})


def _sanitize_extraction_path(file_path: str, destination: str) -> str:
    destination = os.path.abspath(destination)
    target = os.path.abspath(os.path.join(destination, os.path.normpath(file_path)))
    if not target.startswith(destination + os.sep):
        raise ValueError(f"{file_path}: illegal file path")
    return target


def _remove_base_dir(relative_path: str) -> str:
    parts = os.path.normpath(relative_path).split(os.sep)
    if len(parts) < 2:
        return ""
    return os.path.join(*parts[1:])


def untar(dest_dir: str, stream, remove_base_dir: bool) -> None:
    """
    Extract a tar.gz stream into dest_dir.

    Args:
        dest_dir (str): Destination folder, created if missing.
        stream: A binary file-like object holding the gzipped tarball.
        remove_base_dir (bool): Drop the top-level folder providers wrap archives in.

    Raises:
        ValueError: If an entry would be written outside dest_dir.
    """
    os.makedirs(dest_dir, mode=0o700, exist_ok=True)
    with tarfile.open(fileobj=stream, mode="r|gz") as archive:
        for member in archive:
            file_path = member.name
            if remove_base_dir:
                file_path = _remove_base_dir(file_path)
            if not file_path or file_path == ".":
                continue
            target = _sanitize_extraction_path(file_path, dest_dir)
            if member.isdir():
                os.makedirs(target, mode=0o700, exist_ok=True)
            elif member.isfile():
                os.makedirs(os.path.dirname(target), mode=0o700, exist_ok=True)
                source = archive.extractfile(member)
                with open(target, "wb") as target_file:
                    target_file.write(source.read())
                os.chmod(target, member.mode & 0o777 or 0o600)
            # links and devices are skipped


def unzip(content: bytes, dest_dir: str) -> None:
    """Extract zip content into dest_dir, refusing entries that escape it."""
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        for info in archive.infolist():
            target = _sanitize_extraction_path(info.filename, dest_dir)
            if info.is_dir():
                os.makedirs(target, mode=0o700, exist_ok=True)
                continue
            os.makedirs(os.path.dirname(target), mode=0o700, exist_ok=True)
            with archive.open(info) as source, open(target, "wb") as target_file:
                target_file.write(source.read())


def create_dot_git_folder_with_remote(path: str, remote_name: str, remote_url: str) -> None:
    """Initialise a git repository in path with a single remote. Does nothing if path already has .git."""
    if os.path.exists(os.path.join(path, ".git")):
        logger.debug("%s already contains a .git folder", path)
        return
    subprocess.run(["git", "init", "--quiet", path], check=True, capture_output=True, text=True)
    subprocess.run(["git", "-C", path, "remote", "add", remote_name, remote_url],
                   check=True, capture_output=True, text=True)


def generate_error_string(body: str) -> str:
    if not body:
        return ""
    try:
        return json.dumps(json.loads(body), indent=2)
    except ValueError:
        return body


def check_response_status(response: requests.Response, *expected_status_codes: int) -> None:
    """Raise VcsHttpError unless the response status is one of expected_status_codes."""
    if response is None:
        raise VcsHttpError(0, "received an empty response")
    if response.status_code in expected_status_codes:
        return
    message = f"server response: {response.status_code} {response.reason}"
    body = generate_error_string(response.text)
    if body:
        message += "\n" + body
    raise VcsHttpError(response.status_code, message)


def parse_iso_time(value):
    """Parse an ISO-8601 timestamp as returned by the REST APIs. None and '' map to None."""
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    value = value.replace("Z", "+00:00")
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
