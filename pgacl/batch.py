"""
Deferred write batches.

A batch is a work queue, not a database transaction: ``end()`` dispatches
every queued unit at once and waits for them. Units may race with each
other and partial effects survive a failure.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterator

logger = logging.getLogger(__name__)

Unit = Callable[[], Awaitable[None]]


class Batch:
    """Ordered queue of zero-argument coroutine functions."""

    def __init__(self):
        self._units: list[Unit] = []

    def append(self, unit: Unit) -> None:
        self._units.append(unit)

    def __len__(self) -> int:
        return len(self._units)

    def __iter__(self) -> Iterator[Unit]:
        return iter(self._units)

    def __repr__(self) -> str:
        return f"<Batch units={len(self._units)}>"


async def run_batch(batch: Batch) -> None:
    """
    Run every unit of ``batch`` concurrently.

    The first failure is raised as soon as it happens. Units that are
    already running are left to finish on their own.
    """
    if not len(batch):
        return
    logger.debug("Dispatching batch of %d units", len(batch))
    try:
        await asyncio.gather(*(unit() for unit in batch))
    except Exception as e:
        logger.warning("Batch of %d units failed: %s", len(batch), e)
        raise
