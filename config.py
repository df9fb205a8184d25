import os
from dataclasses import dataclass
from typing import Optional

from models import VcsProvider

LOG_CHAR_LIMIT = int(os.getenv("LOG_CHAR_LIMIT", "200"))
HTTP_TIMEOUT = float(os.getenv("VCS_HTTP_TIMEOUT", "60"))

# Provider specific variables consulted when the generic VCS_* ones are unset
_TOKEN_VARIABLES = {
    VcsProvider.GITHUB: "GITHUB_TOKEN",
    VcsProvider.GITLAB: "GITLAB_TOKEN",
    VcsProvider.BITBUCKET_CLOUD: "BITBUCKET_APP_PASSWORD",
    VcsProvider.BITBUCKET_SERVER: "BITBUCKET_TOKEN",
    VcsProvider.AZURE_REPOS: "AZURE_DEVOPS_TOKEN",
}
_USERNAME_VARIABLES = {
    VcsProvider.BITBUCKET_CLOUD: "BITBUCKET_USERNAME",
    VcsProvider.BITBUCKET_SERVER: "BITBUCKET_USERNAME",
}
_PROJECT_VARIABLES = {
    VcsProvider.AZURE_REPOS: "AZURE_DEVOPS_PROJECT",
}


@dataclass(frozen=True)
class VcsInfo:
    """Connection details shared by all provider clients."""
    api_endpoint: str = ""
    username: str = ""
    token: str = ""
    project: str = ""

    @classmethod
    def from_env(cls, provider: VcsProvider) -> "VcsInfo":
        token = _getenv("VCS_TOKEN", _TOKEN_VARIABLES.get(provider))
        if not token:
            raise ValueError(f"VCS_TOKEN or {_TOKEN_VARIABLES[provider]} environment variable is required")
        return cls(
            api_endpoint=os.getenv("VCS_API_ENDPOINT", ""),
            username=_getenv("VCS_USERNAME", _USERNAME_VARIABLES.get(provider)),
            token=token,
            project=_getenv("VCS_PROJECT", _PROJECT_VARIABLES.get(provider)),
        )


def _getenv(name: str, fallback: Optional[str]) -> str:
    value = os.getenv(name)
    if not value and fallback:
        value = os.getenv(fallback)
    return value or ""
