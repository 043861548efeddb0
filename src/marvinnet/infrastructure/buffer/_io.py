"""
File access helpers with transient-failure retry.

Datasets, weights and snapshots are frequently produced by another process
while training runs (a file not yet copied, a full disk being cleaned up).
Opening such a file is therefore never an error: the open is retried forever
with a fixed delay, and every failed attempt is logged.
"""

from __future__ import annotations

import logging
import os
import time
from typing import IO, Callable

logger = logging.getLogger(__name__)

RETRY_DELAY_SECONDS = 5.0


def open_with_retry(
    path: str | os.PathLike,
    mode: str = "rb",
    *,
    delay: float = RETRY_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> IO[bytes]:
    """
    Open `path`, retrying indefinitely while the operating system refuses.

    Parameters
    ----------
    path : str or PathLike
        File to open.
    mode : str, optional
        Binary open mode. Defaults to "rb".
    delay : float, optional
        Seconds to wait between attempts.
    sleep : callable, optional
        Sleep function, replaceable in tests.

    Returns
    -------
    IO[bytes]
        The opened file object. The caller owns it.
    """
    while True:
        try:
            return open(path, mode)
        except OSError as e:
            logger.error(
                "fail to open file %s (%s). Will retry after %g seconds.",
                path,
                e.strerror or e,
                delay,
            )
            sleep(delay)


def wait_until_absent(
    path: str | os.PathLike,
    *,
    delay: float = RETRY_DELAY_SECONDS,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """
    Block while `path` exists, logging each check.

    Used before streaming features to a file so an existing result is never
    silently overwritten.
    """
    while os.path.exists(path):
        logger.error(
            "file %s exists. Please delete it first. Will retry after %g seconds.",
            path,
            delay,
        )
        sleep(delay)
