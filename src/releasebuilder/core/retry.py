"""
Bounded retry on tenacity. Each attempt ends one of three ways: it returns
(done), it raises one of `retry_on` (try again), or it raises anything else
(abort, the exception propagates untouched).
"""

import logging
from typing import Callable, Optional, Tuple, Type, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed, wait_none

logger = logging.getLogger("releasebuilder.retry")

T = TypeVar("T")


def _log_attempt(what: str, attempts: int) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        err = state.outcome.exception() if state.outcome else None
        logger.warning(f"{what} attempt {state.attempt_number}/{attempts} failed, retrying: {err}")

    return before_sleep


def retry(
    fn: Callable[[], T],
    attempts: int,
    retry_on: Tuple[Type[BaseException], ...],
    what: str = "operation",
    delay: float = 0.0,
    exhausted: Optional[Callable[[BaseException], BaseException]] = None,
) -> T:
    """
    Call fn until it succeeds, at most `attempts` times.

    When every attempt hits a retryable error the last one is re-raised, or
    `exhausted(last)` is raised instead if given.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")
    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        retry=retry_if_exception_type(retry_on),
        wait=wait_fixed(delay) if delay else wait_none(),
        before_sleep=_log_attempt(what, attempts),
        reraise=True,
    )
    try:
        return retrying(fn)
    except retry_on as err:
        if exhausted is None:
            raise
        raise exhausted(err) from err
