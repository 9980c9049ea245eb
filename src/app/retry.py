"""Retry utilities with exponential backoff."""

import logging

import structlog
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from prompts.errors import TransientIOError

from .config_models import RetryConfig

logger = structlog.stdlib.get_logger(__name__)


def async_retrying(config: RetryConfig | None = None) -> AsyncRetrying:
    """AsyncRetrying controller for ``async for attempt in ...`` loops.

    Only ``TransientIOError`` is retried; the last error is re-raised
    once attempts run out.
    """
    config = config or RetryConfig()
    return AsyncRetrying(
        stop=stop_after_attempt(config.max_attempts),
        wait=wait_exponential(multiplier=1, min=config.min_wait, max=config.max_wait),
        retry=retry_if_exception_type(TransientIOError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
