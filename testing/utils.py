"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket
import time
from typing import Callable


def open_port() -> int:
    """Return open port.

    Source: https://stackoverflow.com/questions/2838244
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    s.bind(('', 0))
    s.listen(1)
    port = s.getsockname()[1]
    s.close()
    return port


async def wait_until(
    predicate: Callable[[], bool],
    max_time_s: float = 5,
) -> None:
    """Wait for a predicate to become true.

    Raises:
        TimeoutError: If the predicate is still false after `max_time_s`.
    """
    start = time.monotonic()
    while not predicate():
        if time.monotonic() - start > max_time_s:  # pragma: no cover
            raise TimeoutError(
                f'Condition not met within {max_time_s} seconds.',
            )
        await asyncio.sleep(0.005)
