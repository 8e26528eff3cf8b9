"""Single ranged GetObject requests that feed a part queue in the background."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Optional, Protocol, Tuple, Union

from .part import Part
from .part_queue import PartQueue

logger = logging.getLogger(__name__)

ByteRange = Tuple[int, int]
BodyStream = AsyncIterator[Tuple[int, bytes]]


class ObjectClient(Protocol):
    """Anything that can stream the body of an object.

    ``get_object`` returns an async iterator of ``(offset, body)`` chunks, or an
    awaitable that resolves to one. ``byte_range`` is a half-open ``(start, end)``
    pair, or ``None`` for the whole object. Failures are raised either when the
    request is made or while the body is being streamed.
    """

    def get_object(
        self, bucket: str, key: str, byte_range: Optional[ByteRange]
    ) -> Union[BodyStream, Awaitable[BodyStream]]:
        ...


@dataclass(frozen=True)
class PrefetcherConfig:
    """Tuning knobs for the prefetcher."""

    first_request_size: int = 256 * 1024
    """Size of the first request in a prefetch run."""
    max_request_size: int = 2 * 1024 * 1024 * 1024
    """Maximum size of a single prefetch request."""
    sequential_prefetch_multiplier: int = 8
    """Factor to grow the request size by while reads stay sequential."""
    read_timeout: float = 60.0
    """Seconds to wait for a part to become available."""


class RequestTask:
    """One GetObject request whose body arrives through a :class:`PartQueue`."""

    def __init__(self, total_size: int, part_queue: PartQueue) -> None:
        self.total_size = total_size
        self.remaining = total_size
        self.part_queue = part_queue
        self._task: Optional[asyncio.Task] = None

    async def read(self, length: int) -> Part:
        """Read up to ``length`` bytes of the request's body."""
        part = await self.part_queue.read(length)
        if len(part) > self.remaining:
            raise RuntimeError(
                f"request returned {len(part)} bytes but only {self.remaining} were outstanding"
            )
        self.remaining -= len(part)
        return part

    def cancel(self) -> None:
        """Stop the background request if it is still running."""
        if self._task is not None and not self._task.done():
            self._task.cancel()

    def __repr__(self) -> str:
        return f"RequestTask(total_size={self.total_size}, remaining={self.remaining})"


async def _fetch_into(
    client: ObjectClient, bucket: str, key: str, byte_range: ByteRange, queue: PartQueue
) -> None:
    try:
        stream = client.get_object(bucket, key, byte_range)
        if inspect.isawaitable(stream):
            stream = await stream
    except Exception as exc:
        logger.error("get object request for %r %s failed: %r", key, byte_range, exc)
        queue.push(exc)
        return

    try:
        async for offset, body in stream:
            if len(body) == 0:
                continue
            queue.push(Part(key, offset, bytes(body)))
    except Exception as exc:
        logger.error("body part for %r %s failed: %r", key, byte_range, exc)
        queue.push(exc)
        return
    logger.debug("request for %r %s finished", key, byte_range)


def spawn_request(client: ObjectClient, bucket: str, key: str, start: int, end: int) -> RequestTask:
    """Start fetching bytes ``[start, end)`` of an object in the background.

    Must be called with an event loop running.
    """
    if start < 0 or end <= start:
        raise ValueError(f"invalid byte range {start}..{end}")
    queue = PartQueue()
    request = RequestTask(end - start, queue)
    loop = asyncio.get_running_loop()
    request._task = loop.create_task(_fetch_into(client, bucket, key, (start, end), queue))
    return request