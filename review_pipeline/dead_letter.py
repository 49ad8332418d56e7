"""Replay of task messages parked in the dead-letter subscription.

Messages land there when retryable review failures exhaust Pub/Sub's delivery
attempts. Once the cause is resolved (e.g. the review service is back), they
can be republished to the task topic unchanged.
"""

import json
import logging
from datetime import datetime, timezone

from .timing import timed_operation


logger = logging.getLogger(__name__)

PULL_TIMEOUT_SECONDS = 30
PUBLISH_TIMEOUT_SECONDS = 10


def replay_dead_letters(subscriber, publisher, config, max_messages: int, dry_run: bool = False) -> dict:
    """Pull dead-lettered task messages and republish them to the task topic.

    Messages that are not task messages (no eventId/provider) are acknowledged
    to clear them. Messages that fail to republish stay in the subscription.
    In dry-run mode nothing is republished or acknowledged.

    Args:
        subscriber: pubsub_v1.SubscriberClient
        publisher: pubsub_v1.PublisherClient
        config: DeadLetterConfig
        max_messages: Maximum number of messages to pull
        dry_run: Only report what would be done

    Returns:
        Summary dict with counts and per-message details
    """
    subscription_path = subscriber.subscription_path(config.gcp_project, config.dlq_subscription)

    with timed_operation() as pull_elapsed:
        response = subscriber.pull(
            request={"subscription": subscription_path, "max_messages": max_messages},
            timeout=PULL_TIMEOUT_SECONDS,
        )
    messages_pulled = len(response.received_messages)
    logger.info(f"[DLQ] Pulled {messages_pulled} messages from {config.dlq_subscription} | {pull_elapsed():.0f}ms")

    topic_path = publisher.topic_path(config.gcp_project, config.pubsub_topic)

    messages_republished = 0
    messages_failed = 0
    details = []
    ack_ids = []

    for received_message in response.received_messages:
        event_id = None
        try:
            body = json.loads(received_message.message.data.decode("utf-8"))
            event_id = body.get("eventId")

            if not event_id or not body.get("provider"):
                logger.warning("[DLQ] Skipping message without eventId/provider (will acknowledge to clear from DLQ)")
                details.append({"eventId": event_id, "status": "skipped", "reason": "not a review task"})
                messages_failed += 1
                ack_ids.append(received_message.ack_id)
                continue

            if dry_run:
                logger.info(f"[DLQ] DRY RUN: Would republish event {event_id}")
                details.append({"eventId": event_id, "status": "dry_run", "action": "would republish"})
                messages_republished += 1
                continue

            body["replayedFrom"] = {
                "messageId": received_message.message.message_id,
                "replayedAt": datetime.now(timezone.utc).isoformat(),
            }
            with timed_operation() as pub_elapsed:
                future = publisher.publish(topic_path, json.dumps(body).encode("utf-8"))
                new_message_id = future.result(timeout=PUBLISH_TIMEOUT_SECONDS)

            logger.info(f"[DLQ] Republished event {event_id} | new message_id={new_message_id} | {pub_elapsed():.0f}ms")
            details.append({"eventId": event_id, "status": "republished", "new_message_id": new_message_id})
            messages_republished += 1
            ack_ids.append(received_message.ack_id)

        except Exception as e:
            logger.error(f"[DLQ] Failed to process message (event {event_id}): {e}")
            details.append({"eventId": event_id, "status": "failed", "error": str(e)})
            messages_failed += 1

    if ack_ids and not dry_run:
        try:
            subscriber.acknowledge(request={"subscription": subscription_path, "ack_ids": ack_ids})
            logger.info(f"[DLQ] Acknowledged {len(ack_ids)} messages")
        except Exception as e:
            logger.error(f"[DLQ] Failed to acknowledge messages: {e}")

    return {
        "status": "completed",
        "messages_pulled": messages_pulled,
        "messages_republished": messages_republished,
        "messages_failed": messages_failed,
        "dry_run": dry_run,
        "details": details,
    }
