"""Time-budgeted retry loop for connection probing."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any, TypeVar

import structlog

from k8s_metrics_agent.errors import ConnectionExhaustedError

log = structlog.get_logger()

T = TypeVar("T")


def retry_with_budget(
    attempt: Callable[[], T],
    init_timeout: float,
    init_backoff: float,
    *,
    retry_on: tuple[type[Exception], ...] = (Exception,),
    target: str = "endpoint",
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    logger: Any = None,
) -> T:
    """Call ``attempt`` until it succeeds or ``init_timeout`` seconds have elapsed.

    The first attempt happens immediately and a success is returned without further waiting.
    Between failures the loop waits ``init_backoff`` seconds, shrinking the last wait to whatever
    remains of the budget, so roughly ``init_timeout // init_backoff + 1`` attempts are made.
    An ``init_timeout`` of zero disables retries: the first failure is raised as is.

    ``target`` names what is being connected to in the exhaustion error.

    Raises:
        ConnectionExhaustedError: When the budget is consumed without a success.
    """
    logger = logger or log
    if init_timeout <= 0:
        return attempt()

    if init_backoff <= 0:
        msg = "init_backoff must be positive when retries are enabled"
        raise ValueError(msg)

    start = clock()
    attempts = 0
    while True:
        attempts += 1
        try:
            return attempt()
        except retry_on as err:
            elapsed = clock() - start
            remaining = init_timeout - elapsed
            if remaining <= 0:
                logger.warning("connection_retries_exhausted", target=target, attempts=attempts, timeout=init_timeout)
                raise ConnectionExhaustedError(attempts, init_timeout, err, target=target) from err

            wait = min(init_backoff, remaining)
            logger.info("connection_attempt_failed", attempt=attempts, retry_in=round(wait, 3), error=str(err))
            sleep(wait)
