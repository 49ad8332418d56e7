"""Pub/Sub adapter for the review task queue."""

import json
import logging

from google.cloud import pubsub_v1

from .timing import timed_operation


logger = logging.getLogger(__name__)

PUBLISH_TIMEOUT_SECONDS = 30


class PubSubTaskQueue:
    """Publishes queued tasks to a Pub/Sub topic."""

    def __init__(self, project: str, topic: str, publisher=None):
        self.project = project
        self.topic = topic
        self._publisher = publisher

    @property
    def publisher(self):
        if self._publisher is None:
            self._publisher = pubsub_v1.PublisherClient()
        return self._publisher

    def send(self, message: dict) -> str:
        """Publish one task message and wait for the server's message id."""
        topic_path = self.publisher.topic_path(self.project, self.topic)
        data = json.dumps(message).encode("utf-8")

        with timed_operation() as elapsed:
            future = self.publisher.publish(topic_path, data)
            message_id = future.result(timeout=PUBLISH_TIMEOUT_SECONDS)

        logger.info(f"[PUBSUB] Published message {message_id} to {self.topic} | {len(data)} bytes | {elapsed():.0f}ms")
        return message_id
