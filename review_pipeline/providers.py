"""Provider strategies for GitHub and GitLab.

Every provider-specific decision lives here: webhook authentication, event id
derivation, pull/merge request extraction and comment request shaping. The
rest of the pipeline selects a strategy once with ``get_provider`` and never
branches on the provider name again.
"""

import hashlib
import hmac
import json
import logging
import uuid
from abc import ABC, abstractmethod

from .errors import ConfigurationError, UnsupportedProviderError
from .models import MergeRequestRef, PullRequestRef, ReviewComment, ReviewTask


logger = logging.getLogger(__name__)


def get_header(headers, name: str) -> str | None:
    """Case-insensitive header lookup that works for dicts and Flask headers."""
    if not headers:
        return None
    value = headers.get(name)
    if value is not None:
        return value
    lowered = name.lower()
    for key, val in headers.items():
        if key.lower() == lowered:
            return val
    return None


def as_dict(value) -> dict:
    """Return value if it is a JSON object, else an empty dict."""
    return value if isinstance(value, dict) else {}


def _preview(payload) -> str:
    try:
        return json.dumps(payload)[:200]
    except (TypeError, ValueError):
        return repr(payload)[:200]


class Provider(ABC):
    """Capabilities every VCS provider must implement."""

    name: str = ""
    auth_header: str = ""

    @abstractmethod
    def verify(self, headers, raw_body: bytes, secret: str | None) -> bool:
        """Return True if the request was sent by this provider. Never raises."""

    @abstractmethod
    def _derive_event_id(self, payload, headers) -> str:
        """Derive the dedup key; may raise on unexpected payload shapes."""

    @abstractmethod
    def extract_change(self, payload, gitlab_api_url: str) -> tuple[PullRequestRef | None, MergeRequestRef | None]:
        """Return the (pull_request, merge_request) pair for a payload."""

    @abstractmethod
    def comment_target(self, task: ReviewTask, config) -> tuple[str, str]:
        """Return (url, token) for posting comments on the task's PR/MR."""

    @abstractmethod
    def shape_comment(self, task: ReviewTask, comment: ReviewComment) -> dict:
        """Build the JSON body for one comment."""

    def identify(self, payload, headers) -> str:
        """Derive a deduplication key for an event.

        Never raises: unexpected failures produce an ``error_event_id_`` key,
        which will not deduplicate against anything.
        """
        try:
            return self._derive_event_id(payload, headers)
        except Exception as e:
            logger.error(f"[EVENT_ID] Error generating event ID for {self.name}: {e} | Payload: {_preview(payload)}")
            return f"error_event_id_{uuid.uuid4()}"


# =============================================================================
# GitHub
# =============================================================================

class GitHubProvider(Provider):
    name = "github"
    auth_header = "X-Hub-Signature-256"
    delivery_header = "X-GitHub-Delivery"
    SIGNATURE_ALGORITHM = "sha256"

    def verify(self, headers, raw_body: bytes, secret: str | None) -> bool:
        signature_header = get_header(headers, self.auth_header)
        if not signature_header:
            logger.warning(f"[AUTH] GitHub webhook missing {self.auth_header} header")
            return False
        if not secret:
            logger.error("[AUTH] GITHUB_WEBHOOK_SECRET is not set - cannot verify GitHub signature")
            return False

        algorithm, _, signature_hex = signature_header.partition("=")
        if algorithm != self.SIGNATURE_ALGORITHM:
            logger.warning(f"[AUTH] Unsupported GitHub signature algorithm: {algorithm}")
            return False

        if isinstance(raw_body, str):
            raw_body = raw_body.encode("utf-8")
        computed = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
        valid = hmac.compare_digest(computed.encode("utf-8"), signature_hex.encode("utf-8"))
        if not valid:
            logger.warning("[AUTH] GitHub signature mismatch")
        return valid

    def _derive_event_id(self, payload, headers) -> str:
        pull_request = payload.get("pull_request")
        if pull_request and pull_request.get("node_id") and payload.get("action"):
            head_sha = (pull_request.get("head") or {}).get("sha") or payload.get("after") or "unknown_sha"
            return f"gh_pr_{pull_request['node_id']}_{payload['action']}_{head_sha}"

        repository = payload.get("repository") or {}
        if payload.get("ref") and payload.get("after") and repository.get("node_id"):
            return f"gh_push_{repository['node_id']}_{payload['ref']}_{payload['after']}"

        comment = payload.get("comment") or {}
        issue = payload.get("issue") or {}
        if comment.get("node_id") and issue.get("node_id"):
            return f"gh_comment_{comment['node_id']}_on_issue_{issue['node_id']}"

        delivery_id = get_header(headers, self.delivery_header)
        if delivery_id:
            return f"gh_delivery_{delivery_id}"

        logger.warning(f"[EVENT_ID] Could not determine a stable event ID for GitHub payload: {_preview(payload)}")
        return f"gh_unknown_{uuid.uuid4()}"

    def extract_change(self, payload, gitlab_api_url: str):
        pull_request = as_dict(payload.get("pull_request"))
        if not pull_request:
            return None, None
        head = as_dict(pull_request.get("head"))
        return PullRequestRef(
            id=pull_request.get("id"),
            number=pull_request.get("number"),
            head_sha=head.get("sha") or pull_request.get("diff_head_sha"),
            diff_url=pull_request.get("diff_url"),
            comments_url=pull_request.get("comments_url"),
        ), None

    def comment_target(self, task: ReviewTask, config) -> tuple[str, str]:
        if task.pull_request is None or not task.pull_request.comments_url:
            raise UnsupportedProviderError(f"GitHub task {task.event_id} has no pull request comments URL")
        if not config.github_token:
            raise ConfigurationError("GITHUB_TOKEN is not set - cannot post GitHub comments")
        return task.pull_request.comments_url, config.github_token

    def shape_comment(self, task: ReviewTask, comment: ReviewComment) -> dict:
        body = {
            "body": comment.comment,
            "commit_id": task.pull_request.head_sha,
            "path": comment.file_path,
            "line": comment.line_number,
            "position": comment.position,
        }
        return {key: value for key, value in body.items() if value is not None}


# =============================================================================
# GitLab
# =============================================================================

class GitLabProvider(Provider):
    name = "gitlab"
    auth_header = "X-Gitlab-Token"
    delivery_header = "X-Gitlab-Event-UUID"

    def verify(self, headers, raw_body: bytes, secret: str | None) -> bool:
        token = get_header(headers, self.auth_header)
        if not token:
            logger.warning(f"[AUTH] GitLab webhook missing {self.auth_header} header")
            return False
        if not secret:
            logger.error("[AUTH] GITLAB_WEBHOOK_SECRET is not set - cannot verify GitLab token")
            return False

        valid = hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8"))
        if not valid:
            logger.warning("[AUTH] GitLab token mismatch")
        return valid

    def _derive_event_id(self, payload, headers) -> str:
        # The delivery UUID identifies the delivery itself, so it wins over payload fields
        delivery_id = get_header(headers, self.delivery_header)
        if delivery_id:
            return f"gl_delivery_{delivery_id}"

        object_kind = payload.get("object_kind")
        project = payload.get("project") or {}
        attributes = payload.get("object_attributes") or {}

        if object_kind == "merge_request":
            last_commit = attributes.get("last_commit") or {}
            if project.get("id") and attributes.get("iid") and last_commit.get("id"):
                return f"gl_mr_{project['id']}_{attributes['iid']}_{last_commit['id']}"

        if object_kind == "push" and payload.get("project_id") and payload.get("ref") and payload.get("after"):
            return f"gl_push_{payload['project_id']}_{payload['ref']}_{payload['after']}"

        if object_kind == "note" and project.get("id") and attributes.get("id"):
            return f"gl_note_{project['id']}_{attributes['id']}"

        logger.warning(f"[EVENT_ID] Could not determine a stable event ID for GitLab payload: {_preview(payload)}")
        return f"gl_unknown_{uuid.uuid4()}"

    def extract_change(self, payload, gitlab_api_url: str):
        attributes = as_dict(payload.get("object_attributes"))
        if payload.get("object_kind") != "merge_request" or not attributes:
            return None, None

        project = as_dict(payload.get("project"))
        project_id = project.get("id")
        iid = attributes.get("iid")
        web_url = project.get("web_url")
        return None, MergeRequestRef(
            id=attributes.get("id"),
            iid=iid,
            project_id=project_id,
            head_sha=as_dict(attributes.get("last_commit")).get("id") or attributes.get("diff_head_sha"),
            diff_url=f"{web_url}/-/merge_requests/{iid}/diffs.json" if web_url else None,
            notes_url=f"{gitlab_api_url}/projects/{project_id}/merge_requests/{iid}/notes",
        )

    def comment_target(self, task: ReviewTask, config) -> tuple[str, str]:
        if task.merge_request is None or not task.merge_request.notes_url:
            raise UnsupportedProviderError(f"GitLab task {task.event_id} has no merge request notes URL")
        if not config.gitlab_token:
            raise ConfigurationError("GITLAB_TOKEN is not set - cannot post GitLab notes")
        return task.merge_request.notes_url, config.gitlab_token

    def shape_comment(self, task: ReviewTask, comment: ReviewComment) -> dict:
        body = {"body": comment.comment}
        new_line = comment.line_number or comment.position
        if comment.file_path and new_line:
            head_sha = task.merge_request.head_sha
            body["position"] = {
                "position_type": "text",
                "base_sha": head_sha,
                "start_sha": head_sha,
                "head_sha": head_sha,
                "new_line": new_line,
                "old_path": comment.file_path,
                "new_path": comment.file_path,
            }
        return body


PROVIDERS: dict[str, Provider] = {
    GitHubProvider.name: GitHubProvider(),
    GitLabProvider.name: GitLabProvider(),
}


def get_provider(name: str) -> Provider | None:
    """Return the strategy for a provider name, or None if unsupported."""
    return PROVIDERS.get(name)


def verify_signature(provider_name: str, headers, raw_body: bytes, secret: str | None) -> bool:
    """Authenticate a webhook for the named provider. Unknown providers fail."""
    provider = get_provider(provider_name)
    if provider is None:
        logger.warning(f"[AUTH] Unsupported provider: {provider_name}")
        return False
    return provider.verify(headers, raw_body, secret)


def identify_event(provider_name: str, payload, headers) -> str | None:
    """Derive the dedup key for an event, or None for an unknown provider."""
    provider = get_provider(provider_name)
    if provider is None:
        return None
    return provider.identify(payload, headers)
