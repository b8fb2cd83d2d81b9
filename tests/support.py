from __future__ import annotations

from typing import Callable

import anyio


async def wait_until(predicate: Callable[[], bool], *, timeout: float = 2.0) -> None:
    """Yield to the event loop until ``predicate`` holds."""

    with anyio.fail_after(timeout):
        while not predicate():
            await anyio.sleep(0.01)
