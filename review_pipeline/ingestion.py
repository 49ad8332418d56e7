"""Webhook ingestion: parse, verify, identify, deduplicate, record, enqueue.

The pipeline is linear. Every failure exits early with a typed response and
nothing to its right runs:

    Received -> Verified -> Identified -> DedupChecked -> Recorded -> Enqueued

Responses are ``(body, status)`` tuples, the shape Cloud Functions returns.
"""

import json
import logging
import time

from .models import InboundEvent, QueuedTask
from .providers import Provider, get_header, get_provider
from .timing import timed_operation


logger = logging.getLogger(__name__)

WEBHOOK_PATH_PREFIX = "/webhook/"


def _is_json_content_type(headers) -> bool:
    content_type = get_header(headers, "Content-Type") or ""
    return content_type.split(";")[0].strip().lower() == "application/json"


def handle_webhook(method: str, path: str, headers, raw_body: bytes, config, store, queue) -> tuple[dict, int]:
    """Run one webhook delivery through the ingestion pipeline.

    Args:
        method: HTTP method
        path: Request path, expected to be /webhook/{provider}
        headers: Request headers (dict-like)
        raw_body: Unparsed request body, exactly as received
        config: WebhookConfig
        store: Dedup store with get/put/delete
        queue: Task queue with send

    Returns:
        tuple: (response body, HTTP status)
    """
    if method != "POST":
        logger.warning(f"[WEBHOOK] Rejected method {method} on {path}")
        return {"error": "Method Not Allowed"}, 405

    if not path.startswith(WEBHOOK_PATH_PREFIX):
        logger.warning(f"[WEBHOOK] Unknown path: {path}")
        return {"error": "Not found."}, 404

    provider_name = path[len(WEBHOOK_PATH_PREFIX):].split("/")[0]
    provider = get_provider(provider_name)
    if provider is None:
        logger.warning(f"[WEBHOOK] Invalid provider in path: {provider_name!r}")
        return {"error": 'Invalid provider. Must be "github" or "gitlab".'}, 400

    if not _is_json_content_type(headers):
        logger.warning(f"[WEBHOOK] Invalid content type: {get_header(headers, 'Content-Type')!r}")
        return {"error": "Invalid content type. Must be application/json."}, 400

    try:
        payload = json.loads(raw_body)
    except ValueError as e:
        logger.error(f"[PARSE] Invalid JSON body from {provider.name}: {e}")
        return {"error": f"Invalid JSON payload. {e}"}, 400

    event = InboundEvent(provider=provider.name, raw_body=raw_body, headers=headers, parsed_payload=payload)

    try:
        return _process_event(event, provider, config, store, queue)
    except Exception as e:
        logger.error(f"[ERROR] Unhandled error processing {provider.name} webhook | Type: {type(e).__name__}")
        logger.error(f"[ERROR] Details: {str(e)}", exc_info=True)
        return {"error": f"Error processing webhook: {e}"}, 500


def _process_event(event: InboundEvent, provider: Provider, config, store, queue) -> tuple[dict, int]:
    logger.info(f"[AUTH] Received webhook from {provider.name}. Validating signature...")
    if not provider.verify(event.headers, event.raw_body, config.secret_for(provider.name)):
        return {"error": "Invalid signature."}, 401
    logger.info(f"[AUTH] Signature for {provider.name} webhook is valid")

    event_id = provider.identify(event.parsed_payload, event.headers)
    if not event_id:
        logger.error(f"[EVENT_ID] Could not generate event ID for {provider.name} payload")
        return {"error": "Could not determine event ID for deduplication."}, 400

    with timed_operation() as elapsed:
        existing = store.get(event_id)
    if existing is not None:
        logger.info(f"[DEDUP] Event {event_id} already processed | {elapsed():.0f}ms")
        return {"message": "Event already processed.", "eventId": event_id}, 202

    record = json.dumps({"timestamp": int(time.time() * 1000), "status": "received"})
    store.put(event_id, record, expiration_ttl=config.dedup_ttl_seconds)
    logger.info(f"[DEDUP] Event {event_id} recorded (ttl={config.dedup_ttl_seconds}s)")

    task = QueuedTask(provider=provider.name, event_id=event_id, original_payload=event.parsed_payload)
    try:
        message_id = queue.send(task.to_message())
    except Exception:
        logger.error(f"[PUBSUB] Failed to enqueue event {event_id} - releasing dedup record")
        _release_dedup_record(store, event_id)
        raise

    logger.info(f"[COMPLETE] Event {event_id} from {provider.name} enqueued as message {message_id}")
    return {
        "message": f"Webhook from {provider.name} (Event ID: {event_id}) received, validated, and enqueued successfully.",
        "eventId": event_id,
    }, 200


def _release_dedup_record(store, event_id: str) -> None:
    """Best-effort removal so the provider's redelivery is not treated as a duplicate."""
    try:
        store.delete(event_id)
    except Exception as e:
        logger.error(f"[DEDUP] Failed to release dedup record {event_id}: {e}")
