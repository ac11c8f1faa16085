from __future__ import annotations

import logging
import random
import threading
import time
from typing import Callable, TypeVar

from eoty_library.core.errors import LibraryError, UpstreamTimeout


logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_seconds: float, *, jitter: bool = True) -> float:
    delay = base_seconds * (2 ** max(0, attempt - 1))
    if jitter:
        delay = random.uniform(delay / 2, delay)
    return delay


def call_with_retry(
    func: Callable[[], T],
    *,
    max_retries: int,
    base_seconds: float,
    label: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` and retry retryable ``LibraryError`` failures.

    At most ``max_retries`` extra attempts are made, separated by jittered
    exponential backoff. Non-retryable errors propagate on first failure.
    """
    attempt = 0
    while True:
        try:
            return func()
        except LibraryError as error:
            if not error.retryable or attempt >= max_retries:
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_seconds)
            logger.warning(
                "%s failed (%s), retry %d/%d in %.2fs",
                label,
                error.code,
                attempt,
                max_retries,
                delay,
            )
            sleep(delay)


def run_with_deadline(func: Callable[[], T], timeout_seconds: float, *, label: str) -> T:
    """Run ``func`` on its own daemon thread and wait at most ``timeout_seconds``.

    A call that overruns is abandoned, not killed. Its thread keeps running
    until ``func`` returns but holds nothing that later calls wait on.
    """
    if timeout_seconds <= 0:
        raise UpstreamTimeout(f"{label} exceeded its deadline")
    outcome: dict = {}

    def target() -> None:
        try:
            outcome["value"] = func()
        except BaseException as error:  # noqa: BLE001
            outcome["error"] = error

    worker = threading.Thread(target=target, name=f"deadline-{label[:40]}", daemon=True)
    worker.start()
    worker.join(timeout_seconds)
    if worker.is_alive():
        logger.warning("%s still running after %.2fs, abandoning it", label, timeout_seconds)
        raise UpstreamTimeout(f"{label} exceeded its deadline")
    if "error" in outcome:
        raise outcome["error"]
    return outcome["value"]
