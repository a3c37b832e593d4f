import asyncio
from collections import defaultdict
from typing import Awaitable, Callable, Dict, List, Sequence

import structlog

from .models import PerformanceMetric, TenantAppKey


logger = structlog.get_logger(__name__)


FlushFunction = Callable[[List[PerformanceMetric]], Awaitable[None]]


class MetricsBuffer:
    """Per-key metric buffers with swap-on-flush semantics.

    The append lock for a key only guards in-memory work. The flush lock is
    held across the store write so at most one batch per key is in flight and
    batches leave in arrival order. A failed batch goes back to the front of
    its buffer.
    """

    def __init__(self, flush_fn: FlushFunction, flush_threshold: int = 50):
        self.flush_fn = flush_fn
        self.flush_threshold = flush_threshold

        self._buffers: Dict[TenantAppKey, List[PerformanceMetric]] = defaultdict(list)
        self._locks: Dict[TenantAppKey, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._flush_locks: Dict[TenantAppKey, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def add(self, key: TenantAppKey, metrics: Sequence[PerformanceMetric]) -> int:
        """Buffer metrics for a key, flushing inline once the threshold is reached.

        Returns the number of metrics flushed by this call.
        """
        if not metrics:
            return 0

        async with self._locks[key]:
            self._buffers[key].extend(metrics)
            should_flush = len(self._buffers[key]) >= self.flush_threshold

        if should_flush:
            return await self.flush(key)
        return 0

    async def flush(self, key: TenantAppKey) -> int:
        """Write the key's buffered metrics. Never raises; returns the count written."""
        async with self._flush_locks[key]:
            async with self._locks[key]:
                batch = self._buffers[key]
                self._buffers[key] = []

            if not batch:
                return 0

            try:
                await self.flush_fn(batch)
            except Exception as e:
                async with self._locks[key]:
                    self._buffers[key] = batch + self._buffers[key]
                logger.error("Failed to flush metrics, batch re-queued",
                             tenant_id=key[0],
                             app_id=key[1],
                             batch_size=len(batch),
                             error=str(e))
                return 0

            logger.debug("Metrics flushed", tenant_id=key[0], app_id=key[1], count=len(batch))
            return len(batch)

    async def flush_all(self) -> int:
        total = 0
        for key in list(self._buffers.keys()):
            total += await self.flush(key)
        return total

    def pending(self, key: TenantAppKey) -> int:
        return len(self._buffers.get(key, []))

    def pending_total(self) -> int:
        return sum(len(buffer) for buffer in self._buffers.values())

    def keys(self) -> List[TenantAppKey]:
        return [key for key, buffer in self._buffers.items() if buffer]
