"""Queue consumer: drives one task message through normalize -> review ->
publish -> persist, and decides acknowledge vs. retry.

Per-message states:

    Received -> Normalized -> Invoked -> (Published) -> OutcomeStored -> Acked
                                                                      \\-> Retried

Only a retryable review-service failure leads to a retry. Everything else,
including terminal review errors, publish problems and unexpected exceptions,
is acknowledged since redelivery would fail the same way.
"""

import logging

from .errors import RetryableReviewError
from .models import OutcomeStatus, ResultKind, ReviewOutcome
from .normalizer import build_review_task
from .outcomes import build_fallback_outcome, build_outcome, store_outcome, task_outcome_key
from .publisher import publish_comments
from .reviewer import invoke_review
from .timing import timed_operation


logger = logging.getLogger(__name__)


def process_task_message(
    message: dict,
    config,
    results_store,
    message_id: str | None = None,
    invoke=invoke_review,
    publish=publish_comments,
) -> ReviewOutcome:
    """Process one queued task message.

    Args:
        message: Queue message body ({provider, eventId, originalPayload, ...})
        config: ReviewerConfig
        results_store: Store receiving outcome records
        message_id: Queue message id, for logging
        invoke: Review invoker (replaced in tests)
        publish: Comment publisher (replaced in tests)

    Returns:
        The persisted outcome when the message should be acknowledged

    Raises:
        RetryableReviewError: The message should be redelivered. The outcome
            has already been persisted.
    """
    event_id = message.get("eventId") if isinstance(message, dict) else None
    logger.info(f"[CONSUMER] Processing message {message_id} (Event: {event_id})")

    try:
        task = build_review_task(message, config)
    except Exception as e:
        logger.error(f"[CONSUMER] Could not build task for message {message_id} (Event: {event_id}): {e}", exc_info=True)
        outcome, key = build_fallback_outcome(message, e, config)
        store_outcome(results_store, key, outcome)
        logger.warning(f"[CONSUMER] Message {message_id} (Event: {outcome.task_id}) acknowledged after non-retryable error")
        return outcome

    key = task_outcome_key(task)
    context = f"{task.provider} {task.repository.full_name} #{task.change_number} (Event: {task.event_id})"

    outcome = None
    with timed_operation() as elapsed:
        try:
            result = invoke(task, config)
            outcome = build_outcome(result, task)

            if result.kind is ResultKind.RETRYABLE:
                store_outcome(results_store, key, outcome)
                logger.warning(f"[CONSUMER] Task {context} will be retried: {result.error} | {elapsed():.0f}ms")
                raise RetryableReviewError(result.error or "Retryable review service error")

            if outcome.status is OutcomeStatus.COMPLETED and outcome.comments:
                try:
                    outcome.publish_failures = publish(task, outcome.comments, config)
                except Exception as e:
                    logger.error(f"[CONSUMER] Publishing comments failed for {context}: {e}")
                    outcome.add_error(f"Error posting comments: {e}")
            elif outcome.status is not OutcomeStatus.COMPLETED:
                logger.error(f"[CONSUMER] Review failed for {context}: {outcome.error}")
            else:
                logger.info(f"[CONSUMER] Review for {context} produced no comments")

        except RetryableReviewError:
            raise
        except Exception as e:
            logger.error(f"[CONSUMER] Critical error processing {context} | Type: {type(e).__name__}: {e}", exc_info=True)
            if outcome is None:
                outcome = ReviewOutcome(
                    task_id=task.event_id,
                    status=OutcomeStatus.FAILED,
                    repository=task.repository.full_name,
                    review_type=task.review_type,
                    pull_request=task.pull_request,
                    merge_request=task.merge_request,
                    error=f"Initial processing error: {e}",
                )
            else:
                outcome.add_error(f"Outer catch: {e}")

        store_outcome(results_store, key, outcome)
        logger.info(f"[COMPLETE] Task {context} finished with status {outcome.status.value} | {elapsed():.0f}ms")

    return outcome


def process_batch(messages, config, results_store) -> None:
    """Process a batch of queue messages in order, one at a time.

    Each message exposes ``id``, ``body``, ``ack()`` and ``retry()``.
    """
    logger.info(f"[CONSUMER] Received batch of {len(messages)} messages")
    for message in messages:
        try:
            process_task_message(message.body, config, results_store, message_id=message.id)
        except RetryableReviewError as e:
            logger.warning(f"[CONSUMER] Message {message.id} returned to queue: {e}")
            message.retry()
            continue
        except Exception as e:
            # Redelivery would fail the same way
            logger.error(f"[CONSUMER] Unhandled error for message {message.id}, acknowledging | Type: {type(e).__name__}: {e}", exc_info=True)
        message.ack()
        logger.info(f"[CONSUMER] Message {message.id} acknowledged")
