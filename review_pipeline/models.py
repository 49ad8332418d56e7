"""Data model for queued tasks, normalized review tasks, results and outcomes."""

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


REVIEW_TYPES = ("detailed", "general")
DEFAULT_REVIEW_TYPE = "general"


# =============================================================================
# Ingestion
# =============================================================================

@dataclass
class InboundEvent:
    """A webhook delivery as seen by the ingestion pipeline."""
    provider: str
    raw_body: bytes
    headers: Any
    parsed_payload: Any


@dataclass(frozen=True)
class QueuedTask:
    """Message placed on the task queue.

    Serialized with camelCase keys since the wire format is shared with
    any other consumer of the topic.
    """
    provider: str
    event_id: str
    original_payload: Any
    review_type: str | None = None
    files_to_review: list | None = None

    def to_message(self) -> dict:
        message = {
            "provider": self.provider,
            "eventId": self.event_id,
            "originalPayload": self.original_payload,
        }
        if self.review_type is not None:
            message["reviewType"] = self.review_type
        if self.files_to_review is not None:
            message["filesToReview"] = self.files_to_review
        return message


# =============================================================================
# Normalized review task
# =============================================================================

@dataclass
class Repository:
    full_name: str
    id: int | str
    default_branch: str


@dataclass
class PullRequestRef:
    """GitHub pull request coordinates."""
    id: int | None
    number: int | None
    head_sha: str | None
    diff_url: str | None
    comments_url: str | None


@dataclass
class MergeRequestRef:
    """GitLab merge request coordinates."""
    id: int | None
    iid: int | None
    project_id: int | None
    head_sha: str | None
    diff_url: str | None
    notes_url: str | None


@dataclass
class FileToReview:
    path: str
    content: str | None = None
    diff: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "FileToReview":
        return cls(path=data.get("path", ""), content=data.get("content"), diff=data.get("diff"))


@dataclass
class ReviewTask:
    """Provider-agnostic description of a change set to review.

    Exactly one of pull_request / merge_request is set, depending on provider.
    """
    provider: str
    event_id: str
    repository: Repository
    review_type: str = DEFAULT_REVIEW_TYPE
    pull_request: PullRequestRef | None = None
    merge_request: MergeRequestRef | None = None
    files_to_review: list[FileToReview] = field(default_factory=list)

    @property
    def change_number(self) -> int | None:
        """PR number or MR iid."""
        if self.pull_request is not None:
            return self.pull_request.number
        if self.merge_request is not None:
            return self.merge_request.iid
        return None


# =============================================================================
# Review invocation
# =============================================================================

@dataclass
class ReviewComment:
    file_path: str | None
    comment: str
    line_number: int | None = None
    position: int | None = None

    @classmethod
    def from_llm(cls, data: dict) -> "ReviewComment":
        """Build from the model's camelCase comment object."""
        return cls(
            file_path=data.get("filePath"),
            comment=data["comment"],
            line_number=data.get("lineNumber"),
            position=data.get("position"),
        )


class ResultKind(str, Enum):
    OK = "ok"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass
class ReviewInvocationResult:
    """Tagged result of calling the review service.

    The consumer decides ack vs. retry from ``kind`` alone.
    """
    kind: ResultKind
    comments: list[ReviewComment] = field(default_factory=list)
    summary: str | None = None
    error: str | None = None
    raw: Any = None

    @property
    def success(self) -> bool:
        return self.kind is ResultKind.OK

    @property
    def retryable(self) -> bool:
        return self.kind is ResultKind.RETRYABLE

    @classmethod
    def ok(cls, comments: list[ReviewComment], summary: str | None = None, raw: Any = None):
        return cls(ResultKind.OK, comments=comments, summary=summary, raw=raw)

    @classmethod
    def retryable_error(cls, error: str, raw: Any = None):
        return cls(ResultKind.RETRYABLE, error=error, raw=raw)

    @classmethod
    def terminal_error(cls, error: str, raw: Any = None):
        return cls(ResultKind.TERMINAL, error=error, raw=raw)


# =============================================================================
# Outcome
# =============================================================================

class OutcomeStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    ERROR_CALLING_LLM = "error_calling_llm"
    ERROR_POSTING_COMMENT = "error_posting_comment"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ReviewOutcome:
    """Persisted record of one processing attempt."""
    task_id: str
    status: OutcomeStatus
    repository: str
    review_type: str
    pull_request: PullRequestRef | None = None
    merge_request: MergeRequestRef | None = None
    comments: list[ReviewComment] | None = None
    summary: str | None = None
    error: str | None = None
    raw: Any = None
    publish_failures: int = 0
    timestamp: str = field(default_factory=utc_now_iso)

    def add_error(self, message: str) -> None:
        """Append to the error field, skipping messages already recorded."""
        if not self.error:
            self.error = message
        elif message not in self.error:
            self.error = f"{self.error}; {message}"

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        return data
