"""Build and persist review outcomes."""

import json
import logging

from .models import OutcomeStatus, ReviewInvocationResult, ReviewOutcome, ReviewTask
from .normalizer import extract_repository
from .providers import get_provider


logger = logging.getLogger(__name__)


def build_outcome(result: ReviewInvocationResult, task: ReviewTask) -> ReviewOutcome:
    """Convert an invocation result into an outcome record.

    ok -> completed, terminal -> error_calling_llm, retryable -> failed.
    """
    base = dict(
        task_id=task.event_id,
        repository=task.repository.full_name,
        review_type=task.review_type,
        pull_request=task.pull_request,
        merge_request=task.merge_request,
        raw=result.raw,
    )
    if result.success:
        return ReviewOutcome(
            status=OutcomeStatus.COMPLETED,
            comments=result.comments,
            summary=result.summary,
            **base,
        )

    logger.error(f"[OUTCOME] Review failed for task {task.event_id} ({task.repository.full_name}): {result.error}")
    status = OutcomeStatus.FAILED if result.retryable else OutcomeStatus.ERROR_CALLING_LLM
    return ReviewOutcome(status=status, error=result.error or "LLM processing failed.", **base)


def build_fallback_outcome(message, error: Exception, config) -> tuple[ReviewOutcome, str]:
    """Build a failure outcome when no ReviewTask could be formed.

    Extraction from the raw message is best effort: whatever cannot be read
    falls back to placeholders.

    Returns:
        tuple: (outcome, storage key)
    """
    message = message if isinstance(message, dict) else {}
    payload = message.get("originalPayload")
    event_id = message.get("eventId") or "unknown_event"
    provider = get_provider(message.get("provider"))

    pull_request = merge_request = None
    if provider is not None and isinstance(payload, dict):
        try:
            pull_request, merge_request = provider.extract_change(payload, config.gitlab_api_url)
        except Exception as e:
            logger.warning(f"[OUTCOME] Could not extract PR/MR from payload of {event_id}: {e}")

    outcome = ReviewOutcome(
        task_id=event_id,
        status=OutcomeStatus.FAILED,
        repository=extract_repository(payload).full_name,
        review_type=message.get("reviewType") or "general",
        pull_request=pull_request,
        merge_request=merge_request,
        error=f"Critical processing error before task formation: {error}",
    )
    number = pull_request.number if pull_request else (merge_request.iid if merge_request else None)
    key = outcome_key(message.get("provider") or "unknown", outcome.repository, number, event_id)
    return outcome, key


def outcome_key(provider: str, repository: str, number, event_id: str) -> str:
    """Composite key for an outcome; retries of a message reuse the same key."""
    change = number if number is not None else "unknown_pr_mr"
    return f"review:{provider}:{repository}:{change}:{event_id}"


def task_outcome_key(task: ReviewTask) -> str:
    return outcome_key(task.provider, task.repository.full_name, task.change_number, task.event_id)


def store_outcome(store, key: str, outcome: ReviewOutcome) -> bool:
    """Persist an outcome. Failures are logged and never raised.

    Returns:
        True if the outcome was written
    """
    try:
        store.put(
            key,
            json.dumps(outcome.to_dict(), default=str),
            metadata={"status": outcome.status.value, "timestamp": outcome.timestamp},
        )
        logger.info(f"[OUTCOME] Stored {outcome.status.value} outcome for {outcome.task_id} at {key}")
        return True
    except Exception as e:
        logger.error(f"[OUTCOME] Failed to store outcome for {outcome.task_id} ({outcome.repository}) at {key}: {e}")
        return False
