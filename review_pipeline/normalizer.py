"""Map queued webhook payloads onto provider-agnostic review tasks."""

import logging

from .models import DEFAULT_REVIEW_TYPE, REVIEW_TYPES, FileToReview, Repository, ReviewTask
from .providers import as_dict, get_provider


logger = logging.getLogger(__name__)

UNKNOWN_REPOSITORY = "unknown/repo"


def extract_repository(payload) -> Repository:
    """Read repository identity from a GitHub or GitLab payload.

    GitHub carries ``repository``, GitLab carries ``project``. Missing fields
    fall back to defaults instead of raising.
    """
    if not isinstance(payload, dict):
        return Repository(full_name=UNKNOWN_REPOSITORY, id=0, default_branch="main")
    repository = as_dict(payload.get("repository"))
    project = as_dict(payload.get("project"))
    return Repository(
        full_name=repository.get("full_name") or project.get("path_with_namespace") or UNKNOWN_REPOSITORY,
        id=repository.get("id") or project.get("id") or 0,
        default_branch=repository.get("default_branch") or project.get("default_branch") or "main",
    )


def _review_type(message: dict, payload: dict) -> str:
    review_type = message.get("reviewType") or payload.get("reviewType") or DEFAULT_REVIEW_TYPE
    if review_type not in REVIEW_TYPES:
        logger.warning(f"[NORMALIZE] Unknown review type {review_type!r}, using {DEFAULT_REVIEW_TYPE}")
        return DEFAULT_REVIEW_TYPE
    return review_type


def _files_to_review(message: dict, payload: dict) -> list[FileToReview]:
    files = message.get("filesToReview") or payload.get("filesToReview") or []
    if not isinstance(files, list):
        logger.warning(f"[NORMALIZE] Ignoring filesToReview of type {type(files).__name__}")
        return []
    return [FileToReview.from_dict(f) for f in files if isinstance(f, dict) and f.get("path")]


def build_review_task(message: dict, config) -> ReviewTask:
    """Build a ReviewTask from a queued task message.

    Args:
        message: Queue message body ({provider, eventId, originalPayload, ...})
        config: ReviewerConfig (GitLab API base for notes URLs)

    Returns:
        ReviewTask with exactly one of pull_request / merge_request populated
        when the payload describes a PR/MR.

    Raises:
        ValueError: If the provider is unknown or the payload is not an object.
    """
    provider = get_provider(message.get("provider"))
    if provider is None:
        raise ValueError(f"Unsupported provider: {message.get('provider')!r}")

    payload = message.get("originalPayload")
    if not isinstance(payload, dict):
        raise ValueError(f"originalPayload must be an object, got {type(payload).__name__}")

    pull_request, merge_request = provider.extract_change(payload, config.gitlab_api_url)

    task = ReviewTask(
        provider=provider.name,
        event_id=message.get("eventId"),
        repository=extract_repository(payload),
        review_type=_review_type(message, payload),
        pull_request=pull_request,
        merge_request=merge_request,
        files_to_review=_files_to_review(message, payload),
    )

    if not task.files_to_review:
        logger.warning(f"[NORMALIZE] Task {task.event_id} ({task.repository.full_name}) has no filesToReview - requesting a general review")

    return task
