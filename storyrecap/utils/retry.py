"""Retry policy for persistence writes."""

import logging

from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

# LLM calls are never retried; only local writes hitting a transient OSError are.
persist_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    retry=retry_if_exception_type(OSError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)
