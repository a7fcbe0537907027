"""
Serialization, backoff and cancellation helpers for ACME exchanges.

An ACME client holds a single "next nonce", so two concurrent requests from the
same client race on which nonce each consumes. RequestGate allows one logical
exchange at a time; backoff() retries transient server failures inside it.
"""

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from typing import TypeVar

import requests

from acme_dns_gateway.exceptions import (
    AcmeProblemError,
    OperationCancelledError,
    RateLimitedError,
    ServiceBusyError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_BACKOFF_ATTEMPTS = 5
BASE_DELAY = 1.0

TRANSIENT_TRANSPORT_ERRORS = (requests.ConnectionError, requests.Timeout)


def check_cancelled(cancel: threading.Event | None) -> None:
    """Raise OperationCancelledError if cancellation was requested."""
    if cancel is not None and cancel.is_set():
        raise OperationCancelledError()


def sleep(seconds: float, cancel: threading.Event | None = None) -> None:
    """
    Sleep for a fixed delay, waking early if cancelled.

    Raises:
        OperationCancelledError: If the cancel event is set before or during the wait.
    """
    check_cancelled(cancel)
    if seconds <= 0:
        return
    if cancel is None:
        time.sleep(seconds)
    elif cancel.wait(seconds):
        raise OperationCancelledError()


class RequestGate:
    """Single-slot mutual exclusion held for one logical ACME operation."""

    def __init__(self):
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self, cancel: threading.Event | None = None) -> Iterator[None]:
        """Hold the gate for the duration of the block."""
        check_cancelled(cancel)
        self._lock.acquire()
        try:
            yield
        finally:
            self._lock.release()


def is_transient(error: Exception) -> bool:
    """Whether an error should be retried by backoff()."""
    if isinstance(error, RateLimitedError):
        return False
    if isinstance(error, AcmeProblemError):
        return error.is_transient
    return isinstance(error, TRANSIENT_TRANSPORT_ERRORS)


def backoff(
    operation: Callable[[], T],
    attempts: int = MAX_BACKOFF_ATTEMPTS,
    base_delay: float = BASE_DELAY,
    cancel: threading.Event | None = None,
) -> T:
    """
    Run an operation, retrying transient failures with a linearly increasing delay.

    Args:
        operation: Callable performing one attempt.
        attempts: Maximum number of attempts.
        base_delay: Delay unit in seconds; attempt N waits base_delay * N.
        cancel: Optional cancellation event.

    Returns:
        The operation's result.

    Raises:
        RateLimitedError: Immediately, without retrying.
        ServiceBusyError: When every attempt failed transiently.
    """
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        check_cancelled(cancel)
        try:
            return operation()
        except RateLimitedError as e:
            logger.warning(f"Rate limit exceeded: {e.detail or e}")
            raise
        except (AcmeProblemError, *TRANSIENT_TRANSPORT_ERRORS) as e:
            if not is_transient(e):
                raise
            last_error = e
            if attempt == attempts:
                break
            delay = base_delay * attempt
            logger.warning(f"Transient ACME error on attempt {attempt}, retrying in {delay:.1f}s: {e}")
            sleep(delay, cancel)

    logger.error(f"Maximum retry attempts ({attempts}) exceeded")
    raise ServiceBusyError(attempts, last_error) from last_error
