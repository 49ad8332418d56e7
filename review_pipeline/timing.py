"""Timing helpers for external operations."""

import time
from contextlib import contextmanager


@contextmanager
def timed_operation():
    """Context manager that tracks operation timing.

    Yields a callable that returns elapsed milliseconds since context entry.
    Use for external API calls and storage operations only.

    Example:
        with timed_operation() as elapsed:
            response = requests.post(url, json=body)
            logger.info(f"Request completed in {elapsed():.0f}ms")
    """
    start_time = time.time()
    yield lambda: (time.time() - start_time) * 1000
