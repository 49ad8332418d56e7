"""Exception types shared across the pipeline."""


class ReviewPipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(ReviewPipelineError):
    """Required configuration is missing or invalid."""


class RetryableReviewError(ReviewPipelineError):
    """Raised when a message should be redelivered by the queue.

    The consumer persists the outcome before raising, so the failure is
    recorded even though the message is not acknowledged.
    """


class UnsupportedProviderError(ReviewPipelineError):
    """The task's provider cannot receive comments (unknown provider or
    missing pull/merge request reference)."""
