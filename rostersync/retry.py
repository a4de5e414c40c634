"""Retry with exponential backoff for read operations against providers."""

import logging
from functools import wraps

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from .config import READ_RETRY_ATTEMPTS, READ_RETRY_BACKOFF
from .errors import ProviderError

logger = logging.getLogger(__name__)


def _is_transient(error: BaseException) -> bool:
    return isinstance(error, ProviderError) and error.is_transient


def with_read_retry(func):
    """
    Decorator for provider reads (lookups and listings).

    Retries on rate limits, 5xx responses and transport errors only.
    Writes must not use this: a failed write is left for the next run.
    """

    @wraps(func)
    def wrapper(*args, **kwargs):
        for attempt in Retrying(
            retry=retry_if_exception(_is_transient),
            stop=stop_after_attempt(READ_RETRY_ATTEMPTS),
            wait=wait_exponential(multiplier=READ_RETRY_BACKOFF, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                return func(*args, **kwargs)

    return wrapper
