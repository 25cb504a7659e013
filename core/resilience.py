"""
Bounded calls to external collaborators.

Provider reads run on a small worker pool so a hung call surfaces as
``OperationTimeoutError`` instead of blocking the caller. Retries use
exponential backoff with jitter and only retry dependency failures.
"""

import logging
import random
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, TypeVar

from .errors import DependencyUnavailableError, OperationTimeoutError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="verdict-io")


def call_with_timeout(func: Callable[[], T], timeout: float, operation: str) -> T:
    future = _executor.submit(func)
    try:
        return future.result(timeout=timeout)
    except FutureTimeout:
        future.cancel()
        raise OperationTimeoutError(
            f"{operation} timed out after {timeout}s",
            {"operation": operation, "timeout_seconds": timeout},
        )


def retry_with_backoff(
    func: Callable[[], T],
    operation: str,
    max_attempts: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 10.0,
    exceptions: tuple = (DependencyUnavailableError,),
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    attempt = 0
    delay = initial_delay

    while True:
        try:
            return func()
        except exceptions as e:
            attempt += 1
            if attempt >= max_attempts:
                logger.error(f"Max retry attempts ({max_attempts}) reached for {operation}: {e}")
                raise

            actual_delay = min(delay * (0.5 + random.random()), max_delay)
            logger.warning(
                f"{operation} failed (attempt {attempt}/{max_attempts}), "
                f"retrying in {actual_delay:.2f}s: {e}"
            )
            sleep(actual_delay)
            delay = min(delay * 2, max_delay)
