"""Bounded pool of upload URLs, keyed by bucket id or large file id."""

import asyncio
import logging
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, Optional

from b2session.core.exceptions import CapabilityInvalidError, TransientError
from b2session.models.upload import ReleaseOutcome, UploadUrl, UploadUrlStatus

logger = logging.getLogger(__name__)

UploadUrlFetcher = Callable[[str], Awaitable[UploadUrl]]


@dataclass
class _KeySlots:
    """Idle URLs and outstanding leases for one key."""

    limit: Optional[asyncio.Semaphore]
    idle: deque = field(default_factory=deque)
    leased: set = field(default_factory=set)


class UploadUrlPool:
    """Hands out upload URLs, each to at most one caller at a time.

    With pooling enabled, at most ``max_per_key`` URLs are outstanding per key;
    further ``acquire`` calls wait until one is released. Released URLs that
    are still good go back to the idle queue. Invalid ones are dropped and
    replaced lazily by the next ``acquire``.

    With pooling disabled every ``acquire`` fetches a fresh one-shot URL and
    nothing is retained or capped.
    """

    def __init__(
        self,
        fetcher: UploadUrlFetcher,
        *,
        max_per_key: int = 4,
        pooling: bool = True,
    ):
        """Initialize the pool.

        Args:
            fetcher: Coroutine function obtaining a new URL for a key
            max_per_key: Cap on outstanding URLs per key
            pooling: Whether to reuse URLs at all
        """
        if max_per_key < 1:
            raise ValueError("max_per_key must be at least 1")
        self._fetcher = fetcher
        self._max_per_key = max_per_key
        self._pooling = pooling
        self._slots: dict[str, _KeySlots] = {}

    @property
    def max_per_key(self) -> int:
        return self._max_per_key

    @property
    def pooling(self) -> bool:
        return self._pooling

    def _slots_for(self, key: str) -> _KeySlots:
        slots = self._slots.get(key)
        if slots is None:
            limit = asyncio.Semaphore(self._max_per_key) if self._pooling else None
            slots = _KeySlots(limit=limit)
            self._slots[key] = slots
        return slots

    async def acquire(self, key: str) -> UploadUrl:
        """Lease an upload URL for ``key``, waiting if the cap is reached.

        Raises:
            B2SessionError: If a new URL was needed and fetching it failed
        """
        slots = self._slots_for(key)
        if slots.limit is not None:
            await slots.limit.acquire()

        try:
            url = None
            while slots.idle:
                candidate = slots.idle.popleft()
                if candidate.status is UploadUrlStatus.IDLE:
                    url = candidate
                    break
            if url is None:
                url = await self._fetcher(key)
                logger.debug(
                    "Fetched new upload URL",
                    extra={"key": key, "capability_id": url.capability_id},
                )
        except BaseException:
            if slots.limit is not None:
                slots.limit.release()
            raise

        url.status = UploadUrlStatus.LEASED
        slots.leased.add(url.capability_id)
        return url

    def release(self, url: UploadUrl, outcome: ReleaseOutcome) -> None:
        """Give a leased URL back.

        Args:
            url: URL obtained from ``acquire``
            outcome: ``REUSABLE`` to return it to the pool, ``INVALID`` to drop it

        Raises:
            ValueError: If the URL is not currently leased from this pool
        """
        slots = self._slots.get(url.key)
        if slots is None or url.capability_id not in slots.leased:
            raise ValueError("Upload URL is not leased from this pool")
        slots.leased.discard(url.capability_id)

        if outcome is ReleaseOutcome.REUSABLE and self._pooling:
            url.status = UploadUrlStatus.IDLE
            slots.idle.append(url)
        else:
            url.status = UploadUrlStatus.DEAD
            if outcome is ReleaseOutcome.INVALID:
                logger.info(
                    "Evicted upload URL",
                    extra={"key": url.key, "capability_id": url.capability_id, "uses": url.uses},
                )

        if slots.limit is not None:
            slots.limit.release()

    def evict(self, url: UploadUrl) -> None:
        """Release ``url`` as invalid."""
        self.release(url, ReleaseOutcome.INVALID)

    @asynccontextmanager
    async def lease(self, key: str) -> AsyncIterator[UploadUrl]:
        """Acquire a URL for the duration of a block.

        The URL is returned to the pool when the block succeeds or fails with
        an error unrelated to the URL. It is evicted when the block fails with
        ``CapabilityInvalidError``, ``TransientError`` or is cancelled, since
        the service recommends a fresh URL after any failed upload.
        """
        url = await self.acquire(key)
        outcome = ReleaseOutcome.REUSABLE
        try:
            yield url
        except (CapabilityInvalidError, TransientError, asyncio.CancelledError):
            outcome = ReleaseOutcome.INVALID
            raise
        else:
            url.uses += 1
        finally:
            self.release(url, outcome)

    def increase_capacity(self, extra: int) -> None:
        """Raise the per-key cap by ``extra`` for existing and future keys."""
        if extra < 0:
            raise ValueError("Pool capacity can only grow")
        self._max_per_key += extra
        for slots in self._slots.values():
            if slots.limit is not None:
                for _ in range(extra):
                    slots.limit.release()
        logger.info("Upload URL pool capacity increased", extra={"max_per_key": self._max_per_key})

    def idle_count(self, key: str) -> int:
        slots = self._slots.get(key)
        return len(slots.idle) if slots else 0

    def leased_count(self, key: str) -> int:
        slots = self._slots.get(key)
        return len(slots.leased) if slots else 0

    def discard(self, key: str) -> None:
        """Forget every idle URL for ``key``, for example after a large file ends."""
        slots = self._slots.get(key)
        if slots is None:
            return
        for url in slots.idle:
            url.status = UploadUrlStatus.DEAD
        slots.idle.clear()
        if not slots.leased:
            del self._slots[key]
