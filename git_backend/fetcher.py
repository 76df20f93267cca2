"""Bounded concurrency fetching of many files.

This module fetches batches of files with a hard ceiling on the number of
requests in flight. A failure fetching one file is logged and that file is
left out of the result; it never aborts the batch.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, Optional, TypeVar

from .models import FileRef, LoadedFile
from .semaphore import CountingSemaphore

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

MAX_CONCURRENT_DOWNLOADS = 10


class BoundedFetcher:
    """Runs units of work with at most `max_concurrency` in flight.

    One fetcher is shared by every operation of a backend instance, so the
    ceiling holds across concurrent operations too.
    """

    def __init__(self, max_concurrency: int = MAX_CONCURRENT_DOWNLOADS):
        """Initialize the fetcher.

        Args:
            max_concurrency: Maximum number of concurrent units of work
        """
        self.semaphore = CountingSemaphore(max_concurrency)

    @property
    def max_concurrency(self) -> int:
        return self.semaphore.capacity

    async def run(self, fn: Callable[..., Awaitable[R]], *args: Any) -> R:
        """Run one unit of work while holding a slot.

        The slot is released on every exit path, including errors.
        """
        async with self.semaphore:
            return await fn(*args)

    async def map(
        self,
        items: Iterable[T],
        fn: Callable[[T], Awaitable[Optional[R]]],
        describe: Callable[[T], str] = str,
    ) -> list[R]:
        """Apply `fn` to every item, dropping failures and empty results.

        Args:
            items: Items to process
            fn: Coroutine function producing a result for one item
            describe: Renders an item for log messages

        Returns:
            Successful non-None results. Order is not guaranteed to match
            the input order.
        """

        async def isolated(item: T) -> Optional[R]:
            try:
                return await self.run(fn, item)
            except Exception as e:
                logger.error(f"Failed to load {describe(item)}: {e}")
                return None

        results = await asyncio.gather(*(isolated(item) for item in items))
        return [result for result in results if result is not None]

    async def fetch_files(
        self,
        files: Iterable[FileRef],
        read: Callable[[FileRef], Awaitable[Any]],
    ) -> list[LoadedFile]:
        """Fetch the content of every file reference.

        Args:
            files: File references to fetch
            read: Coroutine function returning the content of one file

        Returns:
            One LoadedFile per successfully fetched reference
        """

        async def load(file: FileRef) -> LoadedFile:
            return LoadedFile(file=file, data=await read(file))

        return await self.map(files, load, describe=lambda file: file.path)
