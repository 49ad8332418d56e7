"""Configuration loading.

Each entry point loads its configuration once per invocation and passes the
resulting frozen dataclass into the components, which never read the
environment themselves.

Environment Variables (webhook receiver):
    GCS_BUCKET             - Bucket holding dedup records
    GCP_PROJECT            - GCP project owning the Pub/Sub topic
    GITHUB_WEBHOOK_SECRET  - Secret configured on the GitHub webhook
    GITLAB_WEBHOOK_SECRET  - Secret token configured on the GitLab webhook
    PUBSUB_TOPIC           - Task topic (default: review-tasks)

Environment Variables (reviewer):
    GCS_BUCKET             - Bucket holding review outcomes
    LLM_ENDPOINT           - Chat-completions endpoint of the review service
    LLM_API_KEY            - Bearer token for the review service
    LLM_MODEL_NAME         - Model name (default: gpt-3.5-turbo)
    GITHUB_TOKEN           - Token used to post PR comments
    GITLAB_TOKEN           - Token used to post MR notes
    GITLAB_API_URL         - GitLab API base (default: https://gitlab.com/api/v4)
    COMMENT_DELAY_SECONDS  - Pause after each posted comment (default: 0.2)
"""

import logging
import os
from dataclasses import dataclass

from dotenv import load_dotenv


logger = logging.getLogger(__name__)

DEFAULT_PUBSUB_TOPIC = "review-tasks"
DEFAULT_DLQ_SUBSCRIPTION = "review-tasks-dlq-sub"
DEFAULT_LLM_MODEL = "gpt-3.5-turbo"
DEFAULT_GITLAB_API_URL = "https://gitlab.com/api/v4"
DEFAULT_COMMENT_DELAY_SECONDS = 0.2
DEDUP_TTL_SECONDS = 3600


@dataclass(frozen=True)
class WebhookConfig:
    gcs_bucket: str
    gcp_project: str
    github_webhook_secret: str | None = None
    gitlab_webhook_secret: str | None = None
    pubsub_topic: str = DEFAULT_PUBSUB_TOPIC
    dedup_prefix: str = "dedup/"
    dedup_ttl_seconds: int = DEDUP_TTL_SECONDS

    def secret_for(self, provider: str) -> str | None:
        return {
            "github": self.github_webhook_secret,
            "gitlab": self.gitlab_webhook_secret,
        }.get(provider)


@dataclass(frozen=True)
class ReviewerConfig:
    gcs_bucket: str
    llm_endpoint: str
    llm_api_key: str
    llm_model: str = DEFAULT_LLM_MODEL
    github_token: str | None = None
    gitlab_token: str | None = None
    gitlab_api_url: str = DEFAULT_GITLAB_API_URL
    results_prefix: str = "reviews/"
    comment_delay_seconds: float = DEFAULT_COMMENT_DELAY_SECONDS


@dataclass(frozen=True)
class DeadLetterConfig:
    api_key: str
    gcp_project: str
    pubsub_topic: str = DEFAULT_PUBSUB_TOPIC
    dlq_subscription: str = DEFAULT_DLQ_SUBSCRIPTION


def _read_required(names: list[str]) -> tuple[dict, list]:
    load_dotenv()
    values = {}
    missing = []
    for var in names:
        value = os.environ.get(var)
        if not value:
            missing.append(var)
        values[var] = value
    return values, missing


def load_webhook_config() -> tuple[WebhookConfig, list]:
    """Load configuration for the webhook receiver.

    Webhook secrets are optional here: a provider without a secret fails
    verification for every request, which is logged once at load time.

    Returns:
        tuple: (WebhookConfig, list of missing required vars)
    """
    values, missing = _read_required(["GCS_BUCKET", "GCP_PROJECT"])

    config = WebhookConfig(
        gcs_bucket=values["GCS_BUCKET"],
        gcp_project=values["GCP_PROJECT"],
        github_webhook_secret=os.environ.get("GITHUB_WEBHOOK_SECRET") or None,
        gitlab_webhook_secret=os.environ.get("GITLAB_WEBHOOK_SECRET") or None,
        pubsub_topic=os.environ.get("PUBSUB_TOPIC", DEFAULT_PUBSUB_TOPIC),
        dedup_prefix=os.environ.get("DEDUP_PREFIX", "dedup/"),
    )

    for provider in ("github", "gitlab"):
        if not config.secret_for(provider):
            logger.error(f"[CONFIG] {provider.upper()}_WEBHOOK_SECRET is not set - {provider} webhooks will be rejected")

    return config, missing


def load_reviewer_config() -> tuple[ReviewerConfig, list]:
    """Load configuration for the review worker.

    Returns:
        tuple: (ReviewerConfig, list of missing required vars)
    """
    values, missing = _read_required(["GCS_BUCKET", "LLM_ENDPOINT", "LLM_API_KEY"])

    delay = os.environ.get("COMMENT_DELAY_SECONDS")
    try:
        comment_delay = float(delay) if delay else DEFAULT_COMMENT_DELAY_SECONDS
    except ValueError:
        logger.warning(f"[CONFIG] Invalid COMMENT_DELAY_SECONDS={delay!r}, using {DEFAULT_COMMENT_DELAY_SECONDS}")
        comment_delay = DEFAULT_COMMENT_DELAY_SECONDS

    config = ReviewerConfig(
        gcs_bucket=values["GCS_BUCKET"],
        llm_endpoint=values["LLM_ENDPOINT"],
        llm_api_key=values["LLM_API_KEY"],
        llm_model=os.environ.get("LLM_MODEL_NAME") or DEFAULT_LLM_MODEL,
        github_token=os.environ.get("GITHUB_TOKEN") or None,
        gitlab_token=os.environ.get("GITLAB_TOKEN") or None,
        gitlab_api_url=(os.environ.get("GITLAB_API_URL") or DEFAULT_GITLAB_API_URL).rstrip("/"),
        results_prefix=os.environ.get("RESULTS_PREFIX", "reviews/"),
        comment_delay_seconds=comment_delay,
    )
    return config, missing


def load_dlq_config() -> tuple[DeadLetterConfig, list]:
    """Load configuration for the dead-letter replay function.

    Returns:
        tuple: (DeadLetterConfig, list of missing required vars)
    """
    values, missing = _read_required(["API_KEY", "GCP_PROJECT"])

    config = DeadLetterConfig(
        api_key=values["API_KEY"],
        gcp_project=values["GCP_PROJECT"],
        pubsub_topic=os.environ.get("PUBSUB_TOPIC", DEFAULT_PUBSUB_TOPIC),
        dlq_subscription=os.environ.get("DLQ_SUBSCRIPTION", DEFAULT_DLQ_SUBSCRIPTION),
    )
    return config, missing
