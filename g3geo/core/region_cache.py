"""
g3geo Regional Cache

Buckets cached reports into coarse spatial cells and evicts them by TTL.

Cell key: ``f"{floor(lat * 10)},{floor(lon * 10)}"``, a 0.1 degree grid
(~11 km). Each cell holds a plain list that is scanned linearly; the number
of live entries per cell is small in practice because everything cached
here expires within hours.

Entries must expose `id`, `location` and `expires_at` (epoch ms). Hazards
additionally carry `verification_count`, which corroboration mutates in
place.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Callable, Dict, Generic, Iterable, Iterator, List, Optional, Tuple, TypeVar

from ..models import GeoLocation, now_ms
from .proximity import distance_meters


logger = logging.getLogger(__name__)


CORROBORATION_BONUS_MS = 10 * 60 * 1000

T = TypeVar("T")


def region_key(location: GeoLocation) -> str:
    """Grid cell key for a location."""
    return f"{math.floor(location.latitude * 10)},{math.floor(location.longitude * 10)}"


class GeoRegionCache(Generic[T]):
    """
    Region-bucketed, TTL-evicting cache of geo entries.

    Example:
        cache: GeoRegionCache[StoredHazard] = GeoRegionCache()
        cache.insert(hazard)
        for hazard, distance in cache.query(center, 1000):
            ...
    """

    def __init__(
        self,
        name: str = "geo",
        clock: Callable[[], int] = now_ms,
        sweep_interval_seconds: float = 3600.0,
    ):
        """
        Args:
            name: Label used in log messages
            clock: Millisecond clock, injectable for tests
            sweep_interval_seconds: Period of the background sweep
        """
        self._name = name
        self._clock = clock
        self._sweep_interval = sweep_interval_seconds
        self._buckets: Dict[str, List[T]] = {}
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return sum(len(bucket) for bucket in self._buckets.values())

    def __iter__(self) -> Iterator[T]:
        return iter(self.entries())

    @property
    def bucket_count(self) -> int:
        return len(self._buckets)

    def bucket(self, key: str) -> List[T]:
        """Copy of one bucket's entries (expired ones included until swept)."""
        return list(self._buckets.get(key, []))

    def entries(self) -> List[T]:
        return [entry for bucket in self._buckets.values() for entry in bucket]

    def _alive(self, entry: T, now: int) -> bool:
        return entry.expires_at > now

    def insert(self, entry: T) -> None:
        """
        Insert or replace an entry.

        An entry with the same id in the same cell is replaced in place,
        otherwise the entry is appended. The cell is then filtered of
        expired entries.
        """
        key = region_key(entry.location)
        bucket = self._buckets.setdefault(key, [])

        for index, existing in enumerate(bucket):
            if existing.id == entry.id:
                bucket[index] = entry
                break
        else:
            bucket.append(entry)

        now = self._clock()
        bucket[:] = [e for e in bucket if self._alive(e, now)]
        if not bucket:
            del self._buckets[key]

    def load(self, entries: Iterable[T]) -> int:
        """Bulk insert, skipping already expired entries. Returns count loaded."""
        now = self._clock()
        loaded = 0
        for entry in entries:
            if self._alive(entry, now):
                self.insert(entry)
                loaded += 1
        return loaded

    def find(self, entry_id: str) -> Optional[T]:
        for bucket in self._buckets.values():
            for entry in bucket:
                if entry.id == entry_id:
                    return entry
        return None

    def query(self, center: GeoLocation, radius_meters: float) -> List[Tuple[T, float]]:
        """
        All unexpired entries within `radius_meters` of `center`.

        Returns:
            (entry, distance_meters) pairs sorted by ascending distance
        """
        now = self._clock()
        results: List[Tuple[T, float]] = []

        for bucket in self._buckets.values():
            for entry in bucket:
                if not self._alive(entry, now):
                    continue
                distance = distance_meters(entry.location, center)
                if distance <= radius_meters:
                    results.append((entry, distance))

        results.sort(key=lambda pair: pair[1])
        return results

    def extend_on_corroboration(
        self,
        entry_id: str,
        bonus_ms: int = CORROBORATION_BONUS_MS,
        count: Optional[int] = None,
    ) -> Optional[T]:
        """
        Record a corroboration of an entry.

        Increments `verification_count` by one (or sets it to `count` when a
        peer supplied its own tally) and pushes `expires_at` out by
        `bonus_ms`.

        Returns:
            The mutated entry, or None if no entry has that id
        """
        entry = self.find(entry_id)
        if entry is None:
            return None

        if count is None:
            entry.verification_count += 1
        else:
            entry.verification_count = count
        entry.expires_at += bonus_ms
        return entry

    def sweep(self) -> int:
        """Purge expired entries from every cell. Returns how many were removed."""
        now = self._clock()
        removed = 0
        for key in list(self._buckets):
            bucket = self._buckets[key]
            alive = [e for e in bucket if self._alive(e, now)]
            removed += len(bucket) - len(alive)
            if alive:
                self._buckets[key] = alive
            else:
                del self._buckets[key]

        if removed:
            logger.debug(f"{self._name} cache swept {removed} expired entries")
        return removed

    def clear(self) -> None:
        self._buckets.clear()

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            self.sweep()

    def start(self) -> None:
        """Start the periodic sweep. Requires a running event loop."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.get_running_loop().create_task(self._sweep_loop())

    async def close(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
