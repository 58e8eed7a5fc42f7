"""Fixtures and utilities for testing."""
from __future__ import annotations

import asyncio
import socket


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


async def settle(iterations: int = 25) -> None:
    """Yield control of the event loop so scheduled handlers can run."""
    for _ in range(iterations):
        await asyncio.sleep(0)
