"""
Timing helpers for long-running enrollment steps.
"""

import logging
import time
from contextlib import contextmanager

logger = logging.getLogger(__name__)


@contextmanager
def timer(operation_name: str, level: int = logging.INFO):
    """
    Log how long a block took, whether or not it raised.

    Usage:
        with timer("Enrollment for example.com"):
            ...
    """
    start = time.monotonic()
    logger.debug(f"Starting: {operation_name}")

    try:
        yield
    finally:
        elapsed = time.monotonic() - start
        logger.log(level, f"{operation_name} finished in {elapsed:.2f}s")
