"""Review service client: prompt construction, the HTTP call, and result
classification.

The service speaks the chat-completions protocol. Its reply envelope carries
``choices[0].message.content``, which must itself be a JSON document of the
form ``{"success": bool, "comments": [...], "summary": "..."}``.

Failures are classified, never raised:

    network error / HTTP >= 500 / unparsable envelope  -> retryable
    HTTP 4xx / malformed content / success:false       -> terminal
"""

import json
import logging

import requests

from .models import ReviewComment, ReviewInvocationResult, ReviewTask
from .timing import timed_operation


logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are an expert code reviewer."
TEMPERATURE = 0.5

FORMAT_INSTRUCTIONS = (
    "\nFormat your response as a JSON object with 'success' (boolean), 'comments' "
    "(array of objects with 'filePath', 'lineNumber' or 'position', and 'comment'), "
    "and 'summary' (string)."
)
REVIEW_FOCUS = {
    "detailed": " Focus on detailed, line-by-line feedback.",
    "general": " Focus on a general overview and high-level suggestions.",
}


def build_review_prompt(task: ReviewTask) -> str:
    """Build the user prompt with repository context and file changes."""
    prompt_parts = [
        f"Please review the following code changes for the repository {task.repository.full_name}.",
        f"Source: {task.provider}",
    ]
    if task.pull_request is not None:
        prompt_parts.append(f"Pull Request: #{task.pull_request.number}")
    elif task.merge_request is not None:
        prompt_parts.append(f"Merge Request: !{task.merge_request.iid}")

    if task.files_to_review:
        for file in task.files_to_review:
            prompt_parts.append(f"\nFile: {file.path}")
            if file.diff:
                prompt_parts.append(f"Diff:\n{file.diff}")
            elif file.content:
                prompt_parts.append(f"Content:\n{file.content}")
    else:
        prompt_parts.append("No specific file diffs provided. Please provide a general review.")

    prompt = "\n".join(prompt_parts) + "\n" + FORMAT_INSTRUCTIONS
    return prompt + REVIEW_FOCUS.get(task.review_type, REVIEW_FOCUS["general"])


def build_request_body(prompt: str, model: str) -> dict:
    return {
        "model": model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": prompt},
        ],
        "temperature": TEMPERATURE,
        "response_format": {"type": "json_object"},
    }


def _parse_comments(raw_comments, event_id: str) -> list[ReviewComment]:
    comments = []
    for item in raw_comments or []:
        if not isinstance(item, dict) or not item.get("comment"):
            logger.warning(f"[LLM] Skipping malformed comment for task {event_id}: {str(item)[:100]}")
            continue
        comments.append(ReviewComment.from_llm(item))
    return comments


def parse_review_content(envelope, event_id: str) -> ReviewInvocationResult:
    """Classify a parsed 2xx envelope from the review service."""
    try:
        content = envelope["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        content = None
    if not isinstance(content, str):
        logger.error(f"[LLM] Response structure unexpected (no content string) for task {event_id}")
        return ReviewInvocationResult.terminal_error("LLM response structure error.", raw=envelope)

    try:
        review = json.loads(content)
    except ValueError as e:
        logger.error(f"[LLM] Content string was not valid JSON for task {event_id}: {content[:100]}")
        return ReviewInvocationResult.terminal_error(f"LLM content not valid JSON: {e}", raw=envelope)

    if not isinstance(review, dict) or not isinstance(review.get("success"), bool):
        logger.error(f"[LLM] Output JSON missing 'success' field for task {event_id}")
        return ReviewInvocationResult.terminal_error("LLM output format error: missing 'success'.", raw=envelope)

    if not review["success"]:
        error = review.get("error") or "LLM reported an unsuccessful review."
        logger.error(f"[LLM] Review service reported failure for task {event_id}: {error}")
        return ReviewInvocationResult.terminal_error(error, raw=envelope)

    raw_comments = review.get("comments")
    if raw_comments is not None and not isinstance(raw_comments, list):
        logger.error(f"[LLM] 'comments' is not a list for task {event_id}: {type(raw_comments).__name__}")
        return ReviewInvocationResult.terminal_error("LLM output format error: 'comments' must be a list.", raw=envelope)

    summary = review.get("summary")
    return ReviewInvocationResult.ok(
        comments=_parse_comments(review.get("comments"), event_id),
        summary=summary if isinstance(summary, str) else None,
        raw=envelope,
    )


def invoke_review(task: ReviewTask, config, session=None) -> ReviewInvocationResult:
    """Request a review for a task.

    Args:
        task: Normalized review task
        config: ReviewerConfig (endpoint, API key, model)
        session: Optional requests session (defaults to the requests module)

    Returns:
        ReviewInvocationResult tagged ok, retryable or terminal
    """
    http = session or requests
    prompt = build_review_prompt(task)
    body = build_request_body(prompt, config.llm_model)
    headers = {
        "Authorization": f"Bearer {config.llm_api_key}",
        "Content-Type": "application/json",
    }

    logger.info(f"[LLM] Calling review service for task {task.event_id} | Type: {task.review_type} | Model: {config.llm_model}")
    logger.info(f"[LLM] Prompt size: {len(prompt)} chars | Files: {len(task.files_to_review)}")

    with timed_operation() as elapsed:
        try:
            response = http.post(config.llm_endpoint, headers=headers, json=body)
        except requests.RequestException as e:
            logger.error(f"[LLM] Network error | {elapsed():.0f}ms | Error type: {type(e).__name__}")
            logger.error(f"[LLM] Error details: {str(e)}")
            return ReviewInvocationResult.retryable_error(f"Network error calling LLM: {e}")

        logger.info(f"[LLM] Response received | Status: {response.status_code} | {len(response.text)} chars | {elapsed():.0f}ms")

    if not response.ok:
        retryable = response.status_code >= 500
        error = f"LLM API error {response.status_code}: {response.text[:100]}"
        logger.error(f"[LLM] Request FAILED for task {task.event_id} | {error} | retryable={retryable}")
        if retryable:
            return ReviewInvocationResult.retryable_error(error, raw=response.text)
        return ReviewInvocationResult.terminal_error(error, raw=response.text)

    try:
        envelope = response.json()
    except ValueError as e:
        # Transport succeeded but the envelope is garbage; treat as transient
        logger.error(f"[LLM] Failed to parse outer JSON response: {e} | {response.text[:100]}")
        return ReviewInvocationResult.retryable_error(f"LLM API response not JSON: {e}", raw=response.text)

    try:
        result = parse_review_content(envelope, task.event_id)
    except Exception as e:
        logger.error(f"[LLM] Unexpected error parsing review for task {task.event_id} | Type: {type(e).__name__}: {e}", exc_info=True)
        return ReviewInvocationResult.terminal_error(f"LLM response processing error: {e}", raw=envelope)

    if result.success:
        logger.info(f"[LLM] Review for task {task.event_id} produced {len(result.comments)} comments")
    return result
