# vcsp_factory.py
import logging

from azure_repos_vcsp import AzureReposVCSP
from bitbucket_cloud_vcsp import BitbucketCloudVCSP
from bitbucket_server_vcsp import BitbucketServerVCSP
from config import VcsInfo
from github_vcsp import GithubVCSP
from gitlab_vcsp import GitlabVCSP
from models import VcsProvider
from vcsp_interface import VCSPInterface

logger = logging.getLogger(__name__)

version_control_system_map = {
    VcsProvider.GITHUB: GithubVCSP,
    VcsProvider.GITLAB: GitlabVCSP,
    VcsProvider.BITBUCKET_SERVER: BitbucketServerVCSP,
    VcsProvider.BITBUCKET_CLOUD: BitbucketCloudVCSP,
    VcsProvider.AZURE_REPOS: AzureReposVCSP,
}


def _client_class(provider):
    try:
        return version_control_system_map[provider]
    except KeyError:
        raise ValueError(f"unsupported vcs provider: {provider}") from None


class ClientBuilder:
    """
    Collects connection details and builds the client for one provider.

    Usage:
        client = ClientBuilder(VcsProvider.GITLAB).api_endpoint(url).token(token).build()
    """

    def __init__(self, provider: VcsProvider):
        self.provider = provider
        self._api_endpoint = ""
        self._username = ""
        self._token = ""
        self._project = ""
        self._logger = logger

    def api_endpoint(self, api_endpoint: str) -> "ClientBuilder":
        self._api_endpoint = api_endpoint
        return self

    def username(self, username: str) -> "ClientBuilder":
        self._username = username
        return self

    def token(self, token: str) -> "ClientBuilder":
        self._token = token
        return self

    def project(self, project: str) -> "ClientBuilder":
        self._project = project
        return self

    def logger(self, client_logger: logging.Logger) -> "ClientBuilder":
        self._logger = client_logger
        return self

    def build(self) -> VCSPInterface:
        client_class = _client_class(self.provider)
        vcs_info = VcsInfo(
            api_endpoint=self._api_endpoint,
            username=self._username,
            token=self._token,
            project=self._project,
        )
        client = client_class(vcs_info)
        self._logger.debug("Created %s client", self.provider)
        return client


def create_vcsp(provider: VcsProvider) -> VCSPInterface:
    """Build the client for provider from the VCS_* environment variables."""
    client_class = _client_class(provider)
    return client_class(VcsInfo.from_env(provider))
