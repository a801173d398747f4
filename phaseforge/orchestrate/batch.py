"""Concurrent execution of independent conversation units."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

logger = logging.getLogger("phaseforge.orchestrate.batch")

T = TypeVar("T")

Task = Callable[[str], Awaitable[T]]


def batch_concurrency(ctx: Any) -> int:
    """Admission limit: the vendor's own semaphore, else the orchestrator default."""
    limit = getattr(ctx.vendor, "semaphore", None)
    if not limit:
        limit = ctx.config.orchestrator.semaphore
    return max(1, int(limit))


def unit_cache_key(batch_key: str, index: int) -> str:
    return f"{batch_key}-{index}"


async def execute_cached_batch(
    ctx: Any,
    tasks: Sequence[Task[T]],
    prompt_cache_key: Optional[str] = None,
) -> list[Optional[T]]:
    """Run ``tasks`` concurrently, returning results in input order.

    Each task is called with its own prompt cache key. A task that raises
    yields None in its slot; siblings keep running and the batch itself
    never raises for a unit failure.
    """
    if not tasks:
        return []

    batch_key = prompt_cache_key or str(uuid.uuid4())
    semaphore = asyncio.Semaphore(batch_concurrency(ctx))

    async def run(index: int, task: Task[T]) -> Optional[T]:
        async with semaphore:
            try:
                return await task(unit_cache_key(batch_key, index))
            except Exception as e:
                logger.warning("Batch unit %d/%d failed: %s: %s", index + 1, len(tasks), type(e).__name__, e)
                return None

    results = await asyncio.gather(*(run(index, task) for index, task in enumerate(tasks)))
    failed = sum(1 for result in results if result is None)
    if failed:
        logger.info("Batch %s finished: %d/%d units failed", batch_key, failed, len(tasks))
    return list(results)
