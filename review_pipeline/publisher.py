"""Post review comments back to the originating pull/merge request."""

import json
import logging
import time

import requests

from .errors import UnsupportedProviderError
from .models import ReviewComment, ReviewTask
from .providers import get_provider
from .timing import timed_operation


logger = logging.getLogger(__name__)

USER_AGENT = "vcs-review-pipeline"


def publish_comments(task: ReviewTask, comments: list[ReviewComment], config, sleep=time.sleep) -> int:
    """Post comments one at a time, tolerating individual failures.

    Comments are posted sequentially with a short pause after each one to
    stay under the provider's rate limits. A failed post is logged and the
    remaining comments are still attempted.

    Args:
        task: Review task identifying the PR/MR
        comments: Comments produced by the review service
        config: ReviewerConfig (tokens, delay)
        sleep: Delay function (replaced in tests)

    Returns:
        Number of comments that could not be posted

    Raises:
        UnsupportedProviderError: Provider unknown or task lacks the PR/MR
            reference. Raised before any comment is posted.
        ConfigurationError: The provider's token is not configured.
    """
    if not comments:
        logger.info(f"[VCS] No comments to post for task {task.event_id}")
        return 0

    provider = get_provider(task.provider)
    if provider is None:
        logger.error(f"[VCS] Unsupported VCS for task {task.event_id}: {task.provider}")
        raise UnsupportedProviderError(f"Unsupported VCS: {task.provider}")

    url, token = provider.comment_target(task, config)
    headers = {
        "Authorization": f"Bearer {token}",
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
    }

    logger.info(f"[VCS] Posting {len(comments)} comments for task {task.event_id} to {task.provider}")

    failures = 0
    for comment in comments:
        body = provider.shape_comment(task, comment)
        logger.debug(f"[VCS] POST {url} for {comment.file_path}: {json.dumps(body)[:100]}")

        with timed_operation() as elapsed:
            try:
                response = requests.post(url, headers=headers, json=body)
                if response.ok:
                    logger.info(f"[VCS] Posted comment to {task.provider} for {task.event_id}, file {comment.file_path} | {elapsed():.0f}ms")
                else:
                    failures += 1
                    logger.error(
                        f"[VCS] Failed to post comment to {task.provider} for {task.event_id}, file {comment.file_path} "
                        f"| Status: {response.status_code} | {response.text[:100]}"
                    )
            except requests.RequestException as e:
                failures += 1
                logger.error(f"[VCS] Error during post for {task.event_id}, file {comment.file_path}: {e} | {elapsed():.0f}ms")

        sleep(config.comment_delay_seconds)

    if failures:
        logger.warning(f"[VCS] {failures}/{len(comments)} comments failed to post for task {task.event_id}")
    return failures
