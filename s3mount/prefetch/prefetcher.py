"""Prefetching reads of whole objects through increasingly large ranged requests.

Sequential reads grow the size of each new GetObject request up to a maximum, so
the client can fan out across many connections without holding a lot of unread
data in memory. A read that is not sequential drops the inflight requests and
starts again from the smallest request size.
"""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque, Optional

from ..metrics.sink import counter
from .part_queue import PrefetchReadError
from .request import ObjectClient, PrefetcherConfig, RequestTask, spawn_request

logger = logging.getLogger(__name__)

OUT_OF_ORDER_METRIC = "prefetch.out_of_order"


def _count_out_of_order() -> None:
    try:
        counter(OUT_OF_ORDER_METRIC, 1)
    except RuntimeError:
        # No metrics sink installed: metrics are simply not collected.
        pass


class Prefetcher:
    """Creates prefetching GetObject requests against one client."""

    def __init__(self, client: ObjectClient, config: Optional[PrefetcherConfig] = None) -> None:
        self.client = client
        self.config = config if config is not None else PrefetcherConfig()

    def get(self, bucket: str, key: str, size: int) -> "PrefetchGetObject":
        """Start a new prefetching read of an object of ``size`` bytes."""
        return PrefetchGetObject(self.client, self.config, bucket, key, size)

    def __repr__(self) -> str:
        return f"Prefetcher(config={self.config!r})"


class PrefetchGetObject:
    """A read of one object, split into ranged requests that are fetched ahead of the reader."""

    def __init__(
        self,
        client: ObjectClient,
        config: PrefetcherConfig,
        bucket: str,
        key: str,
        size: int,
    ) -> None:
        self._client = client
        self._config = config
        self.bucket = bucket
        self.key = key
        self.size = size
        self._current_task: Optional[RequestTask] = None
        # At most one future task is spawned at a time (see _prepare_requests).
        self._future_tasks: Deque[RequestTask] = deque()
        self._next_sequential_read_offset = 0
        self._next_request_size = config.first_request_size
        self._next_request_offset = 0

    async def read(self, offset: int, length: int) -> bytes:
        """Read ``length`` bytes at ``offset``.

        Returns exactly ``length`` bytes except at the end of the object, where it
        returns whatever is left, possibly nothing.
        """
        logger.debug(
            "read offset=%d length=%d next_seq_offset=%d",
            offset,
            length,
            self._next_sequential_read_offset,
        )

        remaining = max(0, self.size - offset)
        if remaining == 0:
            return b""
        to_read = min(length, remaining)

        if self._next_sequential_read_offset != offset:
            logger.debug(
                "out-of-order read, resetting prefetch: expected=%d actual=%d",
                self._next_sequential_read_offset,
                offset,
            )
            _count_out_of_order()
            self._drop_tasks()
            self._next_request_size = self._config.first_request_size
            self._next_sequential_read_offset = offset
            self._next_request_offset = offset

        self._prepare_requests()

        # No request was spawned, so the read starts beyond the end of the object.
        if self._current_task is None:
            return b""

        chunks: list[bytes] = []
        while to_read > 0:
            task = self._current_task
            try:
                part = await task.read(to_read)
            except PrefetchReadError:
                self._drop_tasks()
                raise
            data = part.into_bytes(self.key, self._next_sequential_read_offset)
            self._next_sequential_read_offset += len(data)

            # A read served by a single part needs no copy.
            if not chunks and len(data) == to_read:
                return data

            chunks.append(data)
            to_read -= len(data)
            if task.remaining == 0:
                self._prepare_requests()
                if self._current_task is None:
                    break

        return b"".join(chunks)

    def close(self) -> None:
        """Cancel every inflight request."""
        self._drop_tasks()

    def _drop_tasks(self) -> None:
        if self._current_task is not None:
            self._current_task.cancel()
            self._current_task = None
        while self._future_tasks:
            self._future_tasks.popleft().cancel()

    def _prepare_requests(self) -> None:
        current = self._current_task
        if current is None or current.remaining == 0:
            if self._future_tasks:
                self._current_task = self._future_tasks.popleft()
                return
            self._current_task = self._spawn_next_request()
        elif current.remaining < current.total_size // 2 and not self._future_tasks:
            # The current request is nearly done: start the next one ahead of time.
            task = self._spawn_next_request()
            if task is not None:
                self._future_tasks.append(task)

    def _spawn_next_request(self) -> Optional[RequestTask]:
        start = self._next_request_offset
        if start >= self.size:
            return None
        end = min(start + self._next_request_size, self.size)
        logger.debug("spawning request for range %d..%d", start, end)

        task = spawn_request(self._client, self.bucket, self.key, start, end)

        self._next_request_offset += end - start
        self._next_request_size = min(
            self._next_request_size * self._config.sequential_prefetch_multiplier,
            self._config.max_request_size,
        )
        return task

    def __repr__(self) -> str:
        return (
            f"PrefetchGetObject(bucket={self.bucket!r}, key={self.key!r}, size={self.size}, "
            f"next_offset={self._next_sequential_read_offset})"
        )