# webhook_parser.py
"""
Parsing of incoming webhook requests sent by the providers.

The caller hands over the request headers, the raw body and, for Bitbucket
Cloud, the query parameters of the payload URL. The payload is first checked
against the token returned by create_webhook and then mapped to a WebhookInfo.
Events the parser does not handle map to None.
"""
import hashlib
import hmac
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from email.utils import parseaddr
from typing import Mapping, Optional

from requests.structures import CaseInsensitiveDict

from models import (
    VcsProvider,
    WebhookBranchStatus,
    WebhookCommit,
    WebhookEvent,
    WebhookInfo,
    WebhookOrigin,
    WebhookPullRequest,
    WebhookRepoDetails,
    WebhookTag,
    WebhookUser,
)
from vcsp_interface import UnsupportedOperationError, VcsError
from vcsp_utils import BRANCH_PREFIX, parse_iso_time

logger = logging.getLogger(__name__)

EVENT_HEADER_KEY = "X-Event-Key"
GITHUB_EVENT_HEADER = "X-GitHub-Event"
GITHUB_SIGNATURE_HEADER = "X-Hub-Signature-256"
GITLAB_EVENT_HEADER = "X-Gitlab-Event"
GITLAB_TOKEN_HEADER = "X-Gitlab-Token"
BITBUCKET_SERVER_SIGNATURE_HEADER = "X-Hub-Signature"
TAG_PREFIX = "refs/tags/"
# Git reports a missing commit with the all-zero hash
GIT_NIL_HASH = "0" * 40
GITHUB_WEB_URL = "https://github.com"
BITBUCKET_CLOUD_WEB_URL = "https://bitbucket.org"


class WebhookValidationError(VcsError):
    """The request does not carry the expected token or signature."""


def branch_status(existed_before: bool, exists_after: bool) -> WebhookBranchStatus:
    if exists_after and not existed_before:
        return WebhookBranchStatus.CREATED
    if existed_before and not exists_after:
        return WebhookBranchStatus.DELETED
    return WebhookBranchStatus.UPDATED


def payload_signature(payload: bytes, token: str) -> str:
    """Hex HMAC-SHA256 of the payload keyed with the webhook token."""
    return hmac.new(token.encode(), payload, hashlib.sha256).hexdigest()


def split_full_name(full_name: str) -> WebhookRepoDetails:
    """'owner/name' to repository details. GitLab subgroups stay part of the owner."""
    owner, _, name = (full_name or "").rpartition("/")
    return WebhookRepoDetails(name=name, owner=owner)


def _timestamp(value) -> int:
    parsed = parse_iso_time(value)
    return int(parsed.timestamp()) if parsed else 0


def _matches(actual: str, expected: str) -> bool:
    return hmac.compare_digest(actual.encode(), expected.encode())


def _trim_prefix(value: str, prefix: str) -> str:
    value = value or ""
    return value[len(prefix):] if value.startswith(prefix) else value


class WebhookParser(ABC):
    def __init__(self, origin_url: str = ""):
        self.origin_url = origin_url

    @abstractmethod
    def validate_payload(self, headers: Mapping[str, str], query: Mapping[str, str], payload: bytes,
                         token: str) -> bytes:
        """Check the request against the webhook token and return the payload to parse."""
        pass

    @abstractmethod
    def parse_incoming_webhook(self, headers: Mapping[str, str], payload: bytes) -> Optional[WebhookInfo]:
        pass

    def parse(self, headers, payload, token: str = "", query=None) -> Optional[WebhookInfo]:
        headers = CaseInsensitiveDict(headers or {})
        if isinstance(payload, str):
            payload = payload.encode()
        payload = self.validate_payload(headers, query or {}, payload or b"", token or "")
        return self.parse_incoming_webhook(headers, payload)


class GithubWebhookParser(WebhookParser):
    def __init__(self, origin_url: str = ""):
        # The API lives on api.<host> while links point at <host>
        web_url = origin_url.replace("://api.", "://", 1) if origin_url else GITHUB_WEB_URL
        super().__init__(web_url.rstrip("/"))

    def validate_payload(self, headers, query, payload, token):
        if not token:
            return payload
        signature = headers.get(GITHUB_SIGNATURE_HEADER, "")
        if not signature:
            raise WebhookValidationError(f"{GITHUB_SIGNATURE_HEADER} header is missing")
        if not _matches(signature, "sha256=" + payload_signature(payload, token)):
            raise WebhookValidationError("payload signature mismatch")
        return payload

    def parse_incoming_webhook(self, headers, payload):
        event_type = headers.get(GITHUB_EVENT_HEADER, "")
        event = json.loads(payload)
        if event_type == "push":
            return self._parse_push_event(event)
        if event_type == "pull_request":
            return self._parse_pull_request_event(event)
        logger.debug("Ignoring GitHub %s event", event_type)
        return None

    def _parse_push_event(self, event):
        repository = event.get("repository") or {}
        repo_details = WebhookRepoDetails(
            name=repository.get("name", ""),
            owner=(repository.get("owner") or {}).get("login", ""),
        )
        head_commit = event.get("head_commit") or {}
        before, after = event.get("before", ""), event.get("after", "")
        pusher = event.get("pusher") or {}
        return WebhookInfo(
            event=WebhookEvent.PUSH,
            target_repository_details=repo_details,
            target_branch=_trim_prefix(event.get("ref"), BRANCH_PREFIX),
            timestamp=_timestamp(head_commit.get("timestamp")),
            commit=WebhookCommit(hash=after, message=head_commit.get("message", ""), url=head_commit.get("url", "")),
            before_commit=WebhookCommit(hash=before),
            branch_status=branch_status(before != GIT_NIL_HASH, after != GIT_NIL_HASH),
            triggered_by=WebhookUser(login=pusher.get("login", ""), display_name=pusher.get("name", ""),
                                     email=pusher.get("email", "")),
            committer=self._commit_user(head_commit.get("committer")),
            author=self._commit_user(head_commit.get("author")),
            compare_url=f"{self.origin_url}/{repo_details.owner}/{repo_details.name}/compare/{before}...{after}",
        )

    @staticmethod
    def _commit_user(user) -> WebhookUser:
        if not user:
            return WebhookUser()
        return WebhookUser(login=user.get("username", ""), display_name=user.get("name", ""),
                           email=user.get("email", ""))

    def _parse_pull_request_event(self, event):
        action = event.get("action")
        pull_request = event.get("pull_request") or {}
        if action in ("opened", "reopened"):
            webhook_event = WebhookEvent.PR_OPENED
        elif action in ("synchronize", "edited"):
            webhook_event = WebhookEvent.PR_EDITED
        elif action == "closed":
            webhook_event = WebhookEvent.PR_MERGED if pull_request.get("merged") else WebhookEvent.PR_REJECTED
        else:
            logger.debug("Ignoring GitHub pull request action %s", action)
            return None
        base, head = pull_request["base"], pull_request["head"]
        return WebhookInfo(
            event=webhook_event,
            pull_request_id=pull_request.get("number", 0),
            target_repository_details=WebhookRepoDetails(name=base["repo"]["name"],
                                                         owner=base["repo"]["owner"]["login"]),
            target_branch=base.get("ref", ""),
            source_repository_details=WebhookRepoDetails(name=head["repo"]["name"],
                                                         owner=head["repo"]["owner"]["login"]),
            source_branch=head.get("ref", ""),
            timestamp=_timestamp(pull_request.get("updated_at")),
        )


class GitlabWebhookParser(WebhookParser):
    def validate_payload(self, headers, query, payload, token):
        actual_token = headers.get(GITLAB_TOKEN_HEADER, "")
        if (token or actual_token) and not _matches(actual_token, token):
            raise WebhookValidationError("token mismatch")
        return payload

    def parse_incoming_webhook(self, headers, payload):
        event_type = headers.get(GITLAB_EVENT_HEADER, "")
        event = json.loads(payload)
        if event_type == "Push Hook":
            return self._parse_push_event(event)
        if event_type == "Merge Request Hook":
            return self._parse_merge_request_event(event)
        if event_type == "Tag Push Hook":
            return self._parse_tag_event(event)
        logger.debug("Ignoring GitLab %s event", event_type)
        return None

    @staticmethod
    def _event_user(event) -> WebhookUser:
        return WebhookUser(
            login=event.get("user_username", ""),
            display_name=event.get("user_name", ""),
            email=event.get("user_email", ""),
            avatar_url=event.get("user_avatar") or "",
        )

    def _parse_push_event(self, event):
        commits = event.get("commits") or []
        last_commit = commits[-1] if commits else {}
        commit_author = last_commit.get("author") or {}
        before, after = event.get("before", ""), event.get("after", "")
        author = WebhookUser(display_name=commit_author.get("name", ""), email=commit_author.get("email", ""))
        return WebhookInfo(
            event=WebhookEvent.PUSH,
            target_repository_details=split_full_name((event.get("project") or {}).get("path_with_namespace")),
            target_branch=_trim_prefix(event.get("ref"), BRANCH_PREFIX),
            timestamp=_timestamp(commits[0].get("timestamp")) if commits else 0,
            commit=WebhookCommit(hash=after, message=last_commit.get("message", ""), url=last_commit.get("url", "")),
            before_commit=WebhookCommit(hash=before),
            branch_status=branch_status(before != GIT_NIL_HASH, after != GIT_NIL_HASH),
            triggered_by=self._event_user(event),
            committer=author,
            author=author,
        )

    @staticmethod
    def _merge_request_time(value) -> Optional[datetime]:
        # Older GitLab versions send '2021-01-02 03:04:05 UTC'
        try:
            return datetime.strptime(value, "%Y-%m-%d %H:%M:%S %Z").replace(tzinfo=timezone.utc)
        except (TypeError, ValueError):
            return parse_iso_time(value)

    def _parse_merge_request_event(self, event):
        attributes = event.get("object_attributes") or {}
        action = attributes.get("action")
        webhook_event = {
            "open": WebhookEvent.PR_OPENED,
            "reopen": WebhookEvent.PR_OPENED,
            "update": WebhookEvent.PR_EDITED,
            "merge": WebhookEvent.PR_MERGED,
            "close": WebhookEvent.PR_REJECTED,
        }.get(action)
        if webhook_event is None:
            logger.debug("Ignoring GitLab merge request action %s", action)
            return None

        updated_at = self._merge_request_time(attributes.get("updated_at"))
        timestamp = int(updated_at.timestamp()) if updated_at else 0
        source = split_full_name((attributes.get("source") or {}).get("path_with_namespace"))
        target = split_full_name((attributes.get("target") or {}).get("path_with_namespace"))
        user = event.get("user") or {}
        last_commit = attributes.get("last_commit") or {}
        return WebhookInfo(
            event=webhook_event,
            pull_request_id=attributes.get("iid", 0),
            source_repository_details=source,
            source_branch=attributes.get("source_branch", ""),
            target_repository_details=target,
            target_branch=attributes.get("target_branch", ""),
            timestamp=timestamp,
            pull_request=WebhookPullRequest(
                id=attributes.get("iid", 0),
                title=attributes.get("title", ""),
                url=attributes.get("url", ""),
                timestamp=timestamp,
                author=WebhookUser(
                    login=user.get("username", ""),
                    display_name=user.get("name", ""),
                    email=user.get("email", ""),
                    avatar_url=user.get("avatar_url") or "",
                ),
                triggered_by=WebhookUser(login=user.get("username", ""),
                                         email=(last_commit.get("author") or {}).get("email", "")),
                skip_decryption=True,
                target_repository=target,
                target_branch=attributes.get("target_branch", ""),
                source_repository=source,
                source_branch=attributes.get("source_branch", ""),
                source_hash=last_commit.get("id", ""),
            ),
        )

    def _parse_tag_event(self, event):
        checkout_sha = event.get("checkout_sha") or ""
        tag = WebhookTag(
            name=_trim_prefix(event.get("ref"), TAG_PREFIX),
            # A removed tag only has the hash it pointed at before
            hash=event.get("after", "") if checkout_sha else event.get("before", ""),
            target_hash=checkout_sha,
            message=event.get("message") or "",
            repository=split_full_name((event.get("project") or {}).get("path_with_namespace")),
            author=self._event_user(event),
        )
        return WebhookInfo(event=WebhookEvent.TAG_PUSHED if checkout_sha else WebhookEvent.TAG_REMOVED, tag=tag)


class BitbucketCloudWebhookParser(WebhookParser):
    _PULL_REQUEST_EVENTS = {
        "pullrequest:created": WebhookEvent.PR_OPENED,
        "pullrequest:updated": WebhookEvent.PR_EDITED,
        "pullrequest:fulfilled": WebhookEvent.PR_MERGED,
        "pullrequest:rejected": WebhookEvent.PR_REJECTED,
    }

    def validate_payload(self, headers, query, payload, token):
        # create_webhook puts the token in the payload URL query
        if (token or "token" in query) and not _matches(query.get("token", ""), token):
            raise WebhookValidationError("token mismatch")
        return payload

    def parse_incoming_webhook(self, headers, payload):
        event_type = headers.get(EVENT_HEADER_KEY, "")
        event = json.loads(payload)
        if event_type == "repo:push":
            return self._parse_push_event(event)
        if event_type in self._PULL_REQUEST_EVENTS:
            return self._parse_pull_request_event(event, self._PULL_REQUEST_EVENTS[event_type])
        logger.debug("Ignoring Bitbucket Cloud %s event", event_type)
        return None

    def _parse_push_event(self, event):
        # Only the first change of a push is reported
        change = event["push"]["changes"][0]
        new, old = change.get("new") or {}, change.get("old") or {}
        last_commit = new.get("target") or {}
        parents = last_commit.get("parents") or []
        before = parents[0].get("hash", "") if parents else ""
        after = last_commit.get("hash", "")
        full_name = (event.get("repository") or {}).get("full_name", "")
        actor = (event.get("actor") or {}).get("nickname", "")
        commit_author = last_commit.get("author") or {}
        login = (commit_author.get("user") or {}).get("nickname") or actor
        raw_author = commit_author.get("raw", "")
        email = parseaddr(raw_author)[1] or raw_author
        compare_url = ""
        if after and before:
            compare_url = f"{BITBUCKET_CLOUD_WEB_URL}/{full_name}/branches/compare/{after}..{before}#diff"
        return WebhookInfo(
            event=WebhookEvent.PUSH,
            target_repository_details=split_full_name(full_name),
            target_branch=new.get("name") or old.get("name", ""),
            timestamp=_timestamp(last_commit.get("date")),
            commit=WebhookCommit(
                hash=after,
                message=last_commit.get("message", ""),
                url=((last_commit.get("links") or {}).get("html") or {}).get("href", ""),
            ),
            before_commit=WebhookCommit(hash=before),
            branch_status=branch_status(bool(old.get("name")), bool(new.get("name"))),
            triggered_by=WebhookUser(login=actor),
            committer=WebhookUser(login=login),
            author=WebhookUser(login=login, email=email),
            compare_url=compare_url,
        )

    @staticmethod
    def _parse_pull_request_event(event, webhook_event):
        pull_request = event.get("pullrequest") or {}
        source, destination = pull_request.get("source") or {}, pull_request.get("destination") or {}
        return WebhookInfo(
            event=webhook_event,
            pull_request_id=pull_request.get("id", 0),
            target_repository_details=split_full_name((destination.get("repository") or {}).get("full_name")),
            target_branch=(destination.get("branch") or {}).get("name", ""),
            source_repository_details=split_full_name((source.get("repository") or {}).get("full_name")),
            source_branch=(source.get("branch") or {}).get("name", ""),
            timestamp=_timestamp(pull_request.get("updated_on")),
        )


class BitbucketServerWebhookParser(WebhookParser):
    _PULL_REQUEST_EVENTS = {
        "pr:opened": WebhookEvent.PR_OPENED,
        "pr:from_ref_updated": WebhookEvent.PR_EDITED,
        "pr:merged": WebhookEvent.PR_MERGED,
        "pr:declined": WebhookEvent.PR_REJECTED,
        "pr:deleted": WebhookEvent.PR_REJECTED,
    }

    def __init__(self, origin_url: str = ""):
        super().__init__(origin_url.rstrip("/"))

    def validate_payload(self, headers, query, payload, token):
        expected = headers.get(BITBUCKET_SERVER_SIGNATURE_HEADER, "")
        if (token or expected) and not _matches(expected, "sha256=" + payload_signature(payload, token)):
            raise WebhookValidationError("payload signature mismatch")
        return payload

    def parse_incoming_webhook(self, headers, payload):
        event_type = headers.get(EVENT_HEADER_KEY, "")
        event = json.loads(payload)
        if event_type == "repo:refs_changed":
            return self._parse_push_event(event)
        if event_type in self._PULL_REQUEST_EVENTS:
            return self._parse_pull_request_event(event, self._PULL_REQUEST_EVENTS[event_type])
        logger.debug("Ignoring Bitbucket Server %s event", event_type)
        return None

    @staticmethod
    def _event_time(event) -> int:
        return int(datetime.strptime(event["date"], "%Y-%m-%dT%H:%M:%S%z").timestamp())

    @staticmethod
    def _repository_details(repository) -> WebhookRepoDetails:
        repository = repository or {}
        return WebhookRepoDetails(name=repository.get("slug", ""),
                                  owner=(repository.get("project") or {}).get("key", ""))

    def _parse_push_event(self, event):
        change = event["changes"][0]
        repo_details = self._repository_details(event.get("repository"))
        to_hash, from_hash = change.get("toHash", ""), change.get("fromHash", "")
        commit_url = ""
        if self.origin_url:
            commit_url = (f"{self.origin_url}/projects/{repo_details.owner}/repos/{repo_details.name}"
                          f"/commits/{to_hash}")
        actor = event.get("actor") or {}
        actor_user = WebhookUser(display_name=actor.get("displayName", ""), email=actor.get("emailAddress", ""))
        return WebhookInfo(
            event=WebhookEvent.PUSH,
            target_repository_details=repo_details,
            target_branch=_trim_prefix(change.get("refId"), BRANCH_PREFIX),
            timestamp=self._event_time(event),
            commit=WebhookCommit(hash=to_hash, url=commit_url),
            before_commit=WebhookCommit(hash=from_hash),
            branch_status=branch_status(from_hash != GIT_NIL_HASH, to_hash != GIT_NIL_HASH),
            triggered_by=WebhookUser(login=actor.get("name", ""), display_name=actor.get("displayName", "")),
            committer=actor_user,
            author=actor_user,
        )

    def _parse_pull_request_event(self, event, webhook_event):
        pull_request = event.get("pullRequest") or {}
        to_ref, from_ref = pull_request.get("toRef") or {}, pull_request.get("fromRef") or {}
        return WebhookInfo(
            event=webhook_event,
            pull_request_id=pull_request.get("id", 0),
            target_repository_details=self._repository_details(to_ref.get("repository")),
            target_branch=_trim_prefix(to_ref.get("id"), BRANCH_PREFIX),
            source_repository_details=self._repository_details(from_ref.get("repository")),
            source_branch=_trim_prefix(from_ref.get("id"), BRANCH_PREFIX),
            timestamp=self._event_time(event),
        )


webhook_parser_map = {
    VcsProvider.GITHUB: GithubWebhookParser,
    VcsProvider.GITLAB: GitlabWebhookParser,
    VcsProvider.BITBUCKET_CLOUD: BitbucketCloudWebhookParser,
    VcsProvider.BITBUCKET_SERVER: BitbucketServerWebhookParser,
}


def create_webhook_parser(origin: WebhookOrigin) -> WebhookParser:
    if origin.provider == VcsProvider.AZURE_REPOS:
        raise UnsupportedOperationError("parse incoming webhook", origin.provider)
    parser_class = webhook_parser_map.get(origin.provider)
    if parser_class is None:
        raise ValueError(f"unsupported vcs provider: {origin.provider}")
    return parser_class(origin.origin_url)


def parse_incoming_webhook(origin: WebhookOrigin, headers: Mapping[str, str], payload: bytes,
                           query: Optional[Mapping[str, str]] = None) -> Optional[WebhookInfo]:
    """
    Validate and parse a webhook request.

    Args:
        origin: provider, server URL and the token returned by create_webhook.
        headers: request headers; names are matched case-insensitively.
        payload: raw request body.
        query: query parameters of the request URL.

    Returns:
        WebhookInfo, or None for events and actions that are not handled.

    Raises:
        WebhookValidationError: the token or signature does not match.
    """
    logger.debug("Parsing %s webhook", origin.provider)
    return create_webhook_parser(origin).parse(headers, payload, origin.token, query)
