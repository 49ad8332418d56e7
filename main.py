#!/usr/bin/env python3
"""
VCS Review Pipeline - Cloud Function entry points

Receives GitHub/GitLab webhooks, deduplicates them and queues review tasks on
Pub/Sub. A Pub/Sub-triggered worker requests an AI code review for each task,
posts the resulting comments back to the pull/merge request and stores an
outcome record in Cloud Storage.

Entry Points:
    receive_webhook            - HTTP webhook receiver (POST /webhook/{github|gitlab})
    review_task_pubsub         - Pub/Sub triggered review worker
    process_dead_letter_queue  - HTTP endpoint replaying dead-lettered tasks

See review_pipeline/config.py for environment variables.
"""

import base64
import hmac
import json
import logging

import functions_framework
from cloudevents.http import CloudEvent
from google.cloud import pubsub_v1

from review_pipeline.config import load_dlq_config, load_reviewer_config, load_webhook_config
from review_pipeline.consumer import process_batch
from review_pipeline.dead_letter import replay_dead_letters
from review_pipeline.errors import RetryableReviewError
from review_pipeline.ingestion import handle_webhook
from review_pipeline.kv_store import GcsKeyValueStore
from review_pipeline.task_queue import PubSubTaskQueue
from review_pipeline.timing import timed_operation


# =============================================================================
# Logging Configuration
# =============================================================================

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def make_response(data: dict, status: int = 200) -> tuple:
    """Create a JSON response tuple."""
    return (json.dumps(data), status, {"Content-Type": "application/json"})


# =============================================================================
# Webhook Receiver Entry Point
# =============================================================================

@functions_framework.http
def receive_webhook(request):
    """
    HTTP webhook receiver for GitHub and GitLab.

    Authenticates the delivery, derives its event id, skips events already
    seen within the dedup window and publishes new ones to Pub/Sub.

    Request Format:
        POST /webhook/github   (X-Hub-Signature-256: sha256=<hmac>)
        POST /webhook/gitlab   (X-Gitlab-Token: <secret>)
        Content-Type: application/json

    Responses:
        200 - enqueued                     {"message", "eventId"}
        202 - already processed            {"message", "eventId"}
        400 - bad provider/content/JSON/id {"error"}
        401 - signature or token invalid   {"error"}
        404 - unknown path, 405 - not POST, 500 - processing error
    """
    with timed_operation() as elapsed:
        logger.info("=" * 60)
        logger.info(f"[WEBHOOK] {request.method} {request.path}")

        config, missing = load_webhook_config()
        if missing:
            logger.error(f"[CONFIG] Missing required environment variables: {missing}")
            return {"error": f"Server configuration error: missing {missing}"}, 500

        store = GcsKeyValueStore(config.gcs_bucket, prefix=config.dedup_prefix)
        queue = PubSubTaskQueue(config.gcp_project, config.pubsub_topic)

        body, status = handle_webhook(
            request.method,
            request.path,
            request.headers,
            request.get_data(),
            config,
            store,
            queue,
        )

        logger.info(f"[COMPLETE] Webhook answered {status} | {elapsed():.0f}ms")
        logger.info("=" * 60)
        return body, status


# =============================================================================
# Pub/Sub Review Worker Entry Point
# =============================================================================

class PubSubDelivery:
    """Adapts one Pub/Sub delivery to the consumer's message interface.

    Pub/Sub acknowledges a CloudEvent when the function returns and redelivers
    it when the function raises, so ``retry()`` only records the request and
    the entry point raises afterwards.
    """

    def __init__(self, message_id: str, body: dict):
        self.id = message_id
        self.body = body
        self.acked = False
        self.retry_requested = False

    def ack(self) -> None:
        self.acked = True

    def retry(self) -> None:
        self.retry_requested = True


@functions_framework.cloud_event
def review_task_pubsub(cloud_event: CloudEvent) -> None:
    """
    Pub/Sub triggered review worker.

    Pub/Sub Message Format:
        {
            "provider": "github" | "gitlab",
            "eventId": "gh_pr_...",
            "originalPayload": {...},       // webhook body
            "reviewType": "detailed",       // optional
            "filesToReview": [...]          // optional
        }

    Returns normally to acknowledge. Raises RetryableReviewError so Pub/Sub
    redelivers the message (and eventually dead-letters it).
    """
    with timed_operation() as elapsed:
        logger.info("=" * 60)
        logger.info("[PUBSUB] Review worker invoked via Pub/Sub")

        config, missing = load_reviewer_config()
        if missing:
            logger.error(f"[CONFIG] Missing required environment variables: {missing}")
            # Don't raise - acknowledge message to prevent infinite retries on config errors
            return

        try:
            pubsub_message = cloud_event.data.get("message", {})
            message_data = pubsub_message.get("data", "")
            if not message_data:
                logger.error("[PUBSUB] Empty message data")
                return
            body = json.loads(base64.b64decode(message_data).decode("utf-8"))
            message_id = pubsub_message.get("messageId") or pubsub_message.get("message_id")
        except (ValueError, TypeError, AttributeError) as e:
            logger.error(f"[PUBSUB] Failed to parse message: {e}")
            return  # Acknowledge to prevent retries on malformed messages

        results_store = GcsKeyValueStore(config.gcs_bucket, prefix=config.results_prefix)
        delivery = PubSubDelivery(message_id, body)
        process_batch([delivery], config, results_store)

        if delivery.retry_requested:
            logger.warning(f"[PUBSUB] Message {message_id} will be redelivered | {elapsed():.0f}ms")
            logger.info("=" * 60)
            raise RetryableReviewError(f"Message {message_id} requested retry")

        logger.info(f"[COMPLETE] Message {message_id} processed | {elapsed():.0f}ms")
        logger.info("=" * 60)


# =============================================================================
# Dead Letter Replay Entry Point
# =============================================================================

@functions_framework.http
def process_dead_letter_queue(request):
    """
    HTTP-triggered function to replay messages from the Dead Letter Queue.

    Call it manually after resolving whatever made the review worker keep
    failing (e.g. a review service outage).

    Request Format:
        POST /
        Content-Type: application/json
        X-API-Key: <api-key>

        {
            "max_messages": 10,  // Optional: max messages to process (default: 100)
            "dry_run": false     // Optional: if true, only report what would be done
        }

    Response (200 OK):
        {
            "status": "completed",
            "messages_pulled": 5,
            "messages_republished": 5,
            "messages_failed": 0,
            "dry_run": false,
            "details": [...]
        }
    """
    with timed_operation() as elapsed:
        logger.info("=" * 60)
        logger.info("[DLQ] Dead Letter Queue replay function invoked")

        config, missing = load_dlq_config()
        if missing:
            logger.error(f"[CONFIG] Missing required environment variables: {missing}")
            return make_response({"error": f"Missing config: {', '.join(missing)}"}, 500)

        api_key = request.headers.get("X-API-Key")
        if not api_key or not hmac.compare_digest(api_key.encode("utf-8"), config.api_key.encode("utf-8")):
            logger.warning("[AUTH] Invalid or missing API key")
            return make_response({"error": "Invalid or missing API key"}, 401)
        logger.info("[AUTH] API key validated")

        request_json = request.get_json(silent=True) or {}
        max_messages = request_json.get("max_messages", 100)
        dry_run = bool(request_json.get("dry_run", False))

        try:
            max_messages = int(max_messages)
            if max_messages < 1 or max_messages > 1000:
                return make_response({"error": "max_messages must be between 1 and 1000"}, 400)
        except (ValueError, TypeError):
            return make_response({"error": "max_messages must be an integer"}, 400)

        logger.info(f"[DLQ] Processing parameters: max_messages={max_messages}, dry_run={dry_run}")

        try:
            result = replay_dead_letters(
                pubsub_v1.SubscriberClient(),
                pubsub_v1.PublisherClient(),
                config,
                max_messages,
                dry_run=dry_run,
            )
        except Exception as e:
            logger.error(f"[DLQ] Replay failed: {e}", exc_info=True)
            return make_response({"error": f"Failed to replay DLQ: {str(e)}"}, 500)

        logger.info(
            f"[COMPLETE] DLQ replay finished | Pulled: {result['messages_pulled']} | "
            f"Republished: {result['messages_republished']} | Failed: {result['messages_failed']} | {elapsed():.0f}ms"
        )
        logger.info("=" * 60)
        return make_response(result)
