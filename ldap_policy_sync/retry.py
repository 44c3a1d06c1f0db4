"""
Retry utilities for establishing the directory connection.

This module provides a fixed-interval retry loop that can be cancelled
between attempts.
"""

import time
import logging
import threading
from typing import Callable, Any, Tuple, Type, Optional

logger = logging.getLogger(__name__)


class RetryCancelled(Exception):
    """Raised when a retry loop is stopped through its cancellation event."""

    def __init__(self, attempts: int, last_exception: Optional[Exception] = None):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Retry cancelled after {attempts} attempts")


class MaxRetriesExceeded(Exception):
    """Raised when maximum retry attempts are exceeded."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def retry_call(
    func: Callable,
    args: tuple = (),
    kwargs: dict = None,
    max_attempts: Optional[int] = 3,
    delay: float = 1.0,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    on_retry: Optional[Callable[[int, Exception], None]] = None,
    cancel_event: Optional[threading.Event] = None
) -> Any:
    """
    Call a function until it succeeds, waiting a fixed delay between attempts.

    Args:
        func: Function to call
        args: Positional arguments for function
        kwargs: Keyword arguments for function
        max_attempts: Maximum number of attempts, or None for no limit
        delay: Seconds to wait between attempts (no backoff growth)
        exceptions: Exception types to catch and retry on
        on_retry: Optional callback for retry events, called before waiting
        cancel_event: Optional event; once set, no further attempt is made

    Returns:
        Function result

    Raises:
        MaxRetriesExceeded: If all retry attempts fail
        RetryCancelled: If cancel_event is set between attempts
    """
    if kwargs is None:
        kwargs = {}
    if max_attempts is not None and max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    last_exception = None
    attempt = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise RetryCancelled(attempt, last_exception)

        attempt += 1
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                logger.info(f"Operation succeeded on attempt {attempt}")
            return result

        except exceptions as e:
            last_exception = e

            if max_attempts is not None and attempt >= max_attempts:
                break

            logger.debug(f"Attempt {attempt} failed with {type(e).__name__}: {e}")

            if on_retry:
                try:
                    on_retry(attempt, e)
                except Exception as callback_error:
                    logger.warning(f"Retry callback failed: {callback_error}")

            # Event.wait returns True as soon as the event is set
            if cancel_event is not None:
                if cancel_event.wait(delay):
                    raise RetryCancelled(attempt, last_exception)
            else:
                time.sleep(delay)

    raise MaxRetriesExceeded(attempt, last_exception)


def create_retry_callback(operation_name: str, delay: float) -> Callable[[int, Exception], None]:
    """
    Create a standard retry callback for logging retry attempts.

    Args:
        operation_name: Name of the operation being retried
        delay: Seconds until the next attempt, included in the message

    Returns:
        Callback function for retry events
    """
    def on_retry(attempt: int, exception: Exception):
        logger.warning(f"{operation_name} failed on attempt {attempt}, "
                      f"retrying in {delay:g} seconds: {exception}")

    return on_retry


def retry_until_connected(
    connect: Callable[[], Any],
    interval: float = 5.0,
    max_attempts: Optional[int] = None,
    exceptions: Tuple[Type[Exception], ...] = (Exception,),
    cancel_event: Optional[threading.Event] = None
) -> Any:
    """
    Call connect at a fixed interval until it returns.

    Each failure is logged with its cause before waiting. With the defaults
    the loop only ends on success or when cancel_event is set.

    Raises:
        RetryCancelled: If cancel_event is set
        MaxRetriesExceeded: If max_attempts is given and every attempt failed
    """
    return retry_call(
        connect,
        max_attempts=max_attempts,
        delay=interval,
        exceptions=exceptions,
        on_retry=create_retry_callback("LDAP connection", interval),
        cancel_event=cancel_event
    )
