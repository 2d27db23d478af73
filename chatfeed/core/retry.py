from __future__ import annotations

import logging
from typing import Callable, Optional, TypeVar

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from chatfeed.core.errors import TransientError
from chatfeed.core.settings import S
from chatfeed.metrics import STORE_RETRIES

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _count_retry(retry_state) -> None:
    STORE_RETRIES.inc()
    before_sleep_log(logger, logging.WARNING)(retry_state)


def store_retrying(attempts: Optional[int] = None, wait_seconds: Optional[float] = None) -> Retrying:
    attempts = S.store_retry_attempts if attempts is None else attempts
    wait_seconds = S.store_retry_wait_seconds if wait_seconds is None else wait_seconds
    return Retrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=wait_seconds, max=max(wait_seconds * 8, wait_seconds)),
        retry=retry_if_exception_type(TransientError),
        before_sleep=_count_retry,
        reraise=True,
    )


def run_with_retry(
    op: Callable[[int], T],
    attempts: Optional[int] = None,
    wait_seconds: Optional[float] = None,
) -> T:
    """Run ``op(attempt_number)`` until it stops raising TransientError."""
    for attempt in store_retrying(attempts, wait_seconds):
        with attempt:
            result = op(attempt.retry_state.attempt_number)
    return result
