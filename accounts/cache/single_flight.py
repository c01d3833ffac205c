"""
Single-flight coordination for cache refreshes.

When a cache record goes stale, N simultaneous requests for it would all
call the upstream service. This module ensures only the first request
starts the refresh; the rest await the same in-flight task and receive
the identical result or exception.
"""

import asyncio
from typing import Any, Awaitable, Callable, Optional, TypeVar

from accounts.utils.logging import get_logger

logger = get_logger(__name__)

R = TypeVar("R")


class SingleFlight:
    """Process-local registry of in-flight computations keyed by string.

    Entries remove themselves when their computation settles, before any
    waiter sees the outcome, so the next call after settlement always
    starts a fresh computation. Keys are not validated or namespaced.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return len(self._inflight)

    def is_in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, compute: Callable[[], Awaitable[R]]) -> R:
        """Run ``compute`` under ``key`` unless a run is already in flight.

        Registration and lookup happen without suspending, so no two
        callers can both see an empty slot for the same key.
        """
        task: Optional[asyncio.Task] = self._inflight.get(key)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._execute(key, compute))
            self._inflight[key] = task
        else:
            logger.debug("Joining in-flight refresh", key=key)

        # A cancelled waiter must not cancel the shared computation
        return await asyncio.shield(task)

    async def _execute(self, key: str, compute: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await compute()
        finally:
            if self._inflight.get(key) is asyncio.current_task():
                del self._inflight[key]


# Module-level singleton
single_flight = SingleFlight()


async def with_single_flight(key: str, compute: Callable[[], Awaitable[R]]) -> R:
    """Collapse concurrent calls for ``key`` into one ``compute()``."""
    return await single_flight.run(key, compute)
