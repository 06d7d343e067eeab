# Bounded, fixed-delay retry for calls that hit the database or the mail relay.
from __future__ import annotations
import logging
import smtplib
from typing import Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_fixed

import config

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OperationalError, smtplib.SMTPException, OSError)


def _log_retry(retry_state) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    logger.warning(
        "Retrying %s after attempt %s failed: %s",
        getattr(retry_state.fn, "__name__", "call"), retry_state.attempt_number, exc,
    )


def with_retry(
    fn: Callable[..., T],
    *args,
    attempts: int | None = None,
    delay: float | None = None,
    retry_on: tuple[type[BaseException], ...] = TRANSIENT_ERRORS,
    on_retry: Optional[Callable[[], None]] = None,
    **kwargs,
) -> T:
    """Call ``fn`` retrying transient failures a bounded number of times.

    Args:
        fn: Callable to invoke.
        attempts: Total attempts (defaults to RETRY_ATTEMPTS).
        delay: Fixed wait between attempts in seconds (defaults to RETRY_DELAY_SECONDS).
        retry_on: Exception types considered transient.
        on_retry: Called after a failed attempt, before waiting, e.g. ``session.rollback``.

    Returns:
        Whatever ``fn`` returns.

    Raises:
        The last exception once attempts are exhausted, or any non-transient one immediately.
    """
    def before_sleep(retry_state) -> None:
        _log_retry(retry_state)
        if on_retry is not None:
            on_retry()

    retrying = Retrying(
        stop=stop_after_attempt(attempts or config.RETRY_ATTEMPTS),
        wait=wait_fixed(config.RETRY_DELAY_SECONDS if delay is None else delay),
        retry=retry_if_exception_type(retry_on),
        before_sleep=before_sleep,
        reraise=True,
    )
    return retrying(fn, *args, **kwargs)
