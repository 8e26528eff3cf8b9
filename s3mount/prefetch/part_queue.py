"""An async queue of object parts whose head may be read in pieces."""

from __future__ import annotations

import asyncio
from typing import Union

from .part import Part

QueueItem = Union[Part, BaseException]


class PrefetchReadError(Exception):
    """A get request feeding the prefetcher failed."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__("get request failed")
        self.cause = cause


class PartQueue:
    """A queue of :class:`Part` objects where the first part can be partially read.

    Producers push parts or exceptions; a single reader consumes them in order.
    Once a read has raised, the queue must not be used again.
    """

    def __init__(self) -> None:
        self._current: Part | None = None
        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue[QueueItem] = asyncio.Queue()
        self._failed = False

    async def read(self, length: int) -> Part:
        """Read up to ``length`` bytes from the front of the queue.

        Always returns one contiguous part, so it may return fewer than ``length``
        bytes. Waits only if the queue is empty.
        """
        async with self._lock:
            if self._failed:
                raise RuntimeError("cannot use a PartQueue after failure")

            if self._current is not None:
                item: QueueItem = self._current
                self._current = None
            else:
                item = await self._queue.get()

            if isinstance(item, BaseException):
                self._failed = True
                raise PrefetchReadError(item) from item

            if length < len(item):
                self._current = item.split_off(length)
            return item

    def push(self, part: QueueItem) -> None:
        """Append a part, or an exception that ends the stream, to the queue."""
        if isinstance(part, Part):
            if len(part) == 0:
                raise ValueError("parts must not be empty")
        elif not isinstance(part, BaseException):
            raise TypeError(f"expected a Part or an exception, got {type(part).__name__}")
        self._queue.put_nowait(part)