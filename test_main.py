"""Unit tests for main.py - Cloud Function entry points.

Run with: pytest test_main.py -v
"""

import base64
import hashlib
import hmac
import json

import pytest
from unittest.mock import MagicMock

from main import PubSubDelivery, process_dead_letter_queue, receive_webhook, review_task_pubsub
from review_pipeline.errors import RetryableReviewError


WEBHOOK_ENV = {
    "GCS_BUCKET": "test-bucket",
    "GCP_PROJECT": "test-project",
    "GITHUB_WEBHOOK_SECRET": "gh-secret",
    "GITLAB_WEBHOOK_SECRET": "gl-secret",
}

REVIEWER_ENV = {
    "GCS_BUCKET": "test-bucket",
    "LLM_ENDPOINT": "https://llm.example.com/v1/chat/completions",
    "LLM_API_KEY": "llm-key",
    "GITHUB_TOKEN": "gh-token",
}

DLQ_ENV = {
    "API_KEY": "test-key",
    "GCP_PROJECT": "test-project",
}


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def github_pr_payload():
    return {
        "action": "synchronize",
        "pull_request": {
            "id": 555,
            "node_id": "PR_node",
            "number": 7,
            "head": {"sha": "abc123"},
            "comments_url": "https://api.github.com/repos/octo/repo/issues/7/comments",
        },
        "repository": {"full_name": "octo/repo", "id": 1},
    }


@pytest.fixture
def webhook_request(github_pr_payload):
    """Mock Flask request carrying a correctly signed GitHub delivery."""
    body = json.dumps(github_pr_payload).encode("utf-8")
    signature = "sha256=" + hmac.new(b"gh-secret", body, hashlib.sha256).hexdigest()
    request = MagicMock()
    request.method = "POST"
    request.path = "/webhook/github"
    request.headers = {"Content-Type": "application/json", "X-Hub-Signature-256": signature}
    request.get_data.return_value = body
    return request


def make_cloud_event(body, message_id: str = "msg-1"):
    """Mock CloudEvent wrapping a Pub/Sub push message."""
    cloud_event = MagicMock()
    data = base64.b64encode(json.dumps(body).encode("utf-8")).decode("ascii")
    cloud_event.data = {"message": {"data": data, "messageId": message_id}}
    return cloud_event


def llm_response(status_code: int = 200, content: str | None = None):
    response = MagicMock()
    response.status_code = status_code
    response.ok = status_code < 400
    if content is None:
        response.text = "Service Unavailable"
        response.json.side_effect = ValueError("no json")
    else:
        envelope = {"choices": [{"message": {"content": content}}]}
        response.text = json.dumps(envelope)
        response.json.return_value = envelope
    return response


# =============================================================================
# receive_webhook
# =============================================================================

class TestReceiveWebhook:
    """Tests for the webhook receiver entry point."""

    def test_missing_config_returns_500(self, webhook_request, mocker):
        mocker.patch.dict("os.environ", {}, clear=True)

        response, status = receive_webhook(webhook_request)

        assert status == 500
        assert "GCS_BUCKET" in response["error"]
        assert "GCP_PROJECT" in response["error"]

    def test_signed_event_is_enqueued(self, webhook_request, github_pr_payload, mocker):
        """Valid delivery is recorded in GCS and published to Pub/Sub."""
        mocker.patch.dict("os.environ", WEBHOOK_ENV, clear=True)

        mock_blob = MagicMock()
        mock_bucket = MagicMock()
        mock_bucket.get_blob.return_value = None
        mock_bucket.blob.return_value = mock_blob
        mock_storage = MagicMock()
        mock_storage.bucket.return_value = mock_bucket
        mocker.patch("review_pipeline.kv_store.storage.Client", return_value=mock_storage)

        mock_publisher = MagicMock()
        mock_publisher.topic_path.return_value = "projects/test-project/topics/review-tasks"
        mock_publisher.publish.return_value.result.return_value = "msg-1"
        mocker.patch("review_pipeline.task_queue.pubsub_v1.PublisherClient", return_value=mock_publisher)

        response, status = receive_webhook(webhook_request)

        assert status == 200
        assert response["eventId"] == "gh_pr_PR_node_synchronize_abc123"
        mock_storage.bucket.assert_called_with("test-bucket")
        mock_bucket.blob.assert_called_once_with("dedup/gh_pr_PR_node_synchronize_abc123")
        mock_blob.upload_from_string.assert_called_once()

        mock_publisher.topic_path.assert_called_once_with("test-project", "review-tasks")
        published = json.loads(mock_publisher.publish.call_args[0][1].decode("utf-8"))
        assert published == {
            "provider": "github",
            "eventId": "gh_pr_PR_node_synchronize_abc123",
            "originalPayload": github_pr_payload,
        }

    def test_uses_configured_prefix_and_topic(self, webhook_request, mocker):
        mocker.patch.dict("os.environ", {**WEBHOOK_ENV, "PUBSUB_TOPIC": "custom-topic", "DEDUP_PREFIX": "seen/"}, clear=True)
        mock_store_cls = mocker.patch("main.GcsKeyValueStore")
        mock_queue_cls = mocker.patch("main.PubSubTaskQueue")
        mock_store_cls.return_value.get.return_value = None

        _, status = receive_webhook(webhook_request)

        assert status == 200
        mock_store_cls.assert_called_once_with("test-bucket", prefix="seen/")
        mock_queue_cls.assert_called_once_with("test-project", "custom-topic")
        mock_queue_cls.return_value.send.assert_called_once()

    def test_bad_signature_returns_401(self, webhook_request, mocker):
        mocker.patch.dict("os.environ", {**WEBHOOK_ENV, "GITHUB_WEBHOOK_SECRET": "rotated"}, clear=True)
        mocker.patch("main.GcsKeyValueStore")
        mock_queue_cls = mocker.patch("main.PubSubTaskQueue")

        response, status = receive_webhook(webhook_request)

        assert status == 401
        assert response["error"] == "Invalid signature."
        mock_queue_cls.return_value.send.assert_not_called()

    def test_get_request_returns_405(self, webhook_request, mocker):
        mocker.patch.dict("os.environ", WEBHOOK_ENV, clear=True)
        mocker.patch("main.GcsKeyValueStore")
        mocker.patch("main.PubSubTaskQueue")
        webhook_request.method = "GET"

        _, status = receive_webhook(webhook_request)

        assert status == 405


# =============================================================================
# review_task_pubsub
# =============================================================================

class TestReviewTaskPubSub:
    """Tests for the Pub/Sub triggered review worker."""

    @pytest.fixture
    def task_message(self, github_pr_payload):
        return {
            "provider": "github",
            "eventId": "gh_pr_PR_node_synchronize_abc123",
            "originalPayload": github_pr_payload,
            "filesToReview": [{"path": "app.py", "diff": "+print('hi')"}],
        }

    def test_completed_review_is_acknowledged(self, task_message, mocker):
        mocker.patch.dict("os.environ", REVIEWER_ENV, clear=True)
        mock_store_cls = mocker.patch("main.GcsKeyValueStore")
        mocker.patch(
            "review_pipeline.reviewer.requests.post",
            return_value=llm_response(200, json.dumps({"success": True, "comments": [], "summary": "LGTM"})),
        )

        assert review_task_pubsub(make_cloud_event(task_message)) is None

        mock_store_cls.assert_called_once_with("test-bucket", prefix="reviews/")
        store = mock_store_cls.return_value
        key, value = store.put.call_args[0]
        assert key == "review:github:octo/repo:7:gh_pr_PR_node_synchronize_abc123"
        assert json.loads(value)["status"] == "completed"

    def test_retryable_failure_raises_for_redelivery(self, task_message, mocker):
        mocker.patch.dict("os.environ", REVIEWER_ENV, clear=True)
        mock_store_cls = mocker.patch("main.GcsKeyValueStore")
        mocker.patch("review_pipeline.reviewer.requests.post", return_value=llm_response(503))

        with pytest.raises(RetryableReviewError):
            review_task_pubsub(make_cloud_event(task_message))

        stored = json.loads(mock_store_cls.return_value.put.call_args[0][1])
        assert stored["status"] == "failed"

    def test_terminal_failure_is_acknowledged(self, task_message, mocker):
        mocker.patch.dict("os.environ", REVIEWER_ENV, clear=True)
        mock_store_cls = mocker.patch("main.GcsKeyValueStore")
        response = llm_response(400)
        response.text = "Bad Request"
        mocker.patch("review_pipeline.reviewer.requests.post", return_value=response)

        review_task_pubsub(make_cloud_event(task_message))

        stored = json.loads(mock_store_cls.return_value.put.call_args[0][1])
        assert stored["status"] == "error_calling_llm"

    def test_missing_config_acknowledges(self, task_message, mocker):
        mocker.patch.dict("os.environ", {}, clear=True)
        mock_batch = mocker.patch("main.process_batch")

        review_task_pubsub(make_cloud_event(task_message))

        mock_batch.assert_not_called()

    def test_empty_message_acknowledges(self, mocker):
        mocker.patch.dict("os.environ", REVIEWER_ENV, clear=True)
        mock_batch = mocker.patch("main.process_batch")
        cloud_event = MagicMock()
        cloud_event.data = {"message": {}}

        review_task_pubsub(cloud_event)

        mock_batch.assert_not_called()

    def test_malformed_message_acknowledges(self, mocker):
        mocker.patch.dict("os.environ", REVIEWER_ENV, clear=True)
        mock_batch = mocker.patch("main.process_batch")
        cloud_event = MagicMock()
        cloud_event.data = {"message": {"data": base64.b64encode(b"not json").decode("ascii")}}

        review_task_pubsub(cloud_event)

        mock_batch.assert_not_called()

    def test_delivery_adapter(self):
        delivery = PubSubDelivery("m1", {"eventId": "e"})
        delivery.retry()
        assert delivery.retry_requested is True
        assert delivery.acked is False


# =============================================================================
# process_dead_letter_queue
# =============================================================================

class TestProcessDeadLetterQueue:
    """Tests for the DLQ replay entry point."""

    @pytest.fixture
    def dlq_request(self):
        request = MagicMock()
        request.headers = {"X-API-Key": "test-key"}
        request.get_json.return_value = {}
        return request

    @pytest.fixture
    def pubsub_clients(self, mocker):
        """Patch subscriber/publisher clients with one dead-lettered task."""
        received = MagicMock()
        received.ack_id = "ack-1"
        received.message.message_id = "old-1"
        received.message.data = json.dumps({"provider": "github", "eventId": "gh_pr_1", "originalPayload": {}}).encode("utf-8")

        mock_subscriber = MagicMock()
        mock_subscriber.subscription_path.return_value = "projects/test-project/subscriptions/review-tasks-dlq-sub"
        mock_subscriber.pull.return_value.received_messages = [received]

        mock_publisher = MagicMock()
        mock_publisher.topic_path.return_value = "projects/test-project/topics/review-tasks"
        mock_publisher.publish.return_value.result.return_value = "new-1"

        mocker.patch("main.pubsub_v1.SubscriberClient", return_value=mock_subscriber)
        mocker.patch("main.pubsub_v1.PublisherClient", return_value=mock_publisher)
        return mock_subscriber, mock_publisher

    def test_missing_api_key_returns_401(self, dlq_request, mocker):
        mocker.patch.dict("os.environ", DLQ_ENV, clear=True)
        dlq_request.headers = {}

        body, status, _ = process_dead_letter_queue(dlq_request)

        assert status == 401
        assert "API key" in json.loads(body)["error"]

    def test_wrong_api_key_returns_401(self, dlq_request, mocker):
        mocker.patch.dict("os.environ", DLQ_ENV, clear=True)
        dlq_request.headers = {"X-API-Key": "wrong-key"}

        _, status, _ = process_dead_letter_queue(dlq_request)

        assert status == 401

    def test_missing_config_returns_500(self, dlq_request, mocker):
        mocker.patch.dict("os.environ", {}, clear=True)

        body, status, _ = process_dead_letter_queue(dlq_request)

        assert status == 500
        assert "API_KEY" in json.loads(body)["error"]

    @pytest.mark.parametrize("max_messages", [0, 1001, "lots"])
    def test_invalid_max_messages_returns_400(self, dlq_request, max_messages, mocker):
        mocker.patch.dict("os.environ", DLQ_ENV, clear=True)
        dlq_request.get_json.return_value = {"max_messages": max_messages}

        _, status, _ = process_dead_letter_queue(dlq_request)

        assert status == 400

    def test_replays_messages(self, dlq_request, pubsub_clients, mocker):
        mocker.patch.dict("os.environ", DLQ_ENV, clear=True)
        mock_subscriber, mock_publisher = pubsub_clients
        dlq_request.get_json.return_value = {"max_messages": 5}

        body, status, headers = process_dead_letter_queue(dlq_request)

        assert status == 200
        assert headers["Content-Type"] == "application/json"
        result = json.loads(body)
        assert result["messages_pulled"] == 1
        assert result["messages_republished"] == 1
        assert result["dry_run"] is False

        pull_request = mock_subscriber.pull.call_args[1]["request"]
        assert pull_request["max_messages"] == 5
        mock_publisher.publish.assert_called_once()
        mock_subscriber.acknowledge.assert_called_once()

    def test_dry_run_does_not_publish(self, dlq_request, pubsub_clients, mocker):
        mocker.patch.dict("os.environ", DLQ_ENV, clear=True)
        mock_subscriber, mock_publisher = pubsub_clients
        dlq_request.get_json.return_value = {"dry_run": True}

        body, status, _ = process_dead_letter_queue(dlq_request)

        assert status == 200
        assert json.loads(body)["dry_run"] is True
        mock_publisher.publish.assert_not_called()
        mock_subscriber.acknowledge.assert_not_called()

    def test_pull_failure_returns_500(self, dlq_request, pubsub_clients, mocker):
        mocker.patch.dict("os.environ", DLQ_ENV, clear=True)
        mock_subscriber, _ = pubsub_clients
        mock_subscriber.pull.side_effect = Exception("Subscription not found")

        body, status, _ = process_dead_letter_queue(dlq_request)

        assert status == 500
        assert "Subscription not found" in json.loads(body)["error"]
