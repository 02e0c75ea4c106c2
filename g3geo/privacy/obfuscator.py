"""
g3geo Privacy Obfuscator

Deterministic, session-salted coordinate fuzzing applied before any
location leaves the device.

The offset for a coordinate is drawn from a PCG64DXSM generator seeded by
a hash of (longitude, latitude, session salt). The same coordinate always
maps to the same fuzzed position for the lifetime of a session, so repeated
reports from a parked car do not "jitter" around its true position and
leak it by averaging. Clearing the session rotates the salt.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.random import Generator, PCG64DXSM

from ..models import GeoLocation, PrivacyLevel


logger = logging.getLogger(__name__)


OFFSETS: Dict[PrivacyLevel, float] = {
    PrivacyLevel.LOW: 0.0001,
    PrivacyLevel.MEDIUM: 0.0005,
    PrivacyLevel.HIGH: 0.001,
    PrivacyLevel.MAXIMUM: 0.005,
}

CacheKey = Tuple[str, str, PrivacyLevel]


class PrivacyObfuscator:
    """
    Session-scoped coordinate fuzzer with a bounded memo cache.

    Example:
        obfuscator = PrivacyObfuscator(default_level=PrivacyLevel.MEDIUM)
        fuzzed = obfuscator.obfuscate(location, PrivacyLevel.HIGH)
    """

    def __init__(
        self,
        default_level: PrivacyLevel = PrivacyLevel.MEDIUM,
        enabled: bool = True,
        cache_max_entries: int = 1000,
        cache_evict_count: int = 500,
        session_salt: Optional[str] = None,
    ):
        """
        Args:
            default_level: Level used when `obfuscate` is called without one
            enabled: When False, calls without an explicit level pass through
            cache_max_entries: Cache size that triggers eviction
            cache_evict_count: How many of the oldest entries to drop
            session_salt: Fixed salt (tests); random when omitted
        """
        self._level = PrivacyLevel(default_level)
        self._enabled = enabled
        self._cache_max = cache_max_entries
        self._cache_evict = cache_evict_count
        self._salt = session_salt or self._new_salt()
        self._cache: Dict[CacheKey, Tuple[float, float]] = {}

    @staticmethod
    def _new_salt() -> str:
        return secrets.token_hex(8)

    @property
    def level(self) -> PrivacyLevel:
        return self._level

    @property
    def session_salt(self) -> str:
        return self._salt

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def set_level(self, level: PrivacyLevel) -> None:
        self._level = PrivacyLevel(level)
        self._cache.clear()

    def set_enabled(self, enabled: bool) -> None:
        self._enabled = enabled
        self._cache.clear()

    @staticmethod
    def offset_for(level: PrivacyLevel) -> float:
        return OFFSETS[PrivacyLevel(level)]

    def clear_session(self) -> None:
        """Rotate the salt; earlier fuzzed positions become unreproducible."""
        self._salt = self._new_salt()
        self._cache.clear()
        logger.debug("Obfuscation session rotated")

    def _generator(self, longitude: float, latitude: float) -> Generator:
        digest = hashlib.blake2b(
            f"{longitude!r}|{latitude!r}|{self._salt}".encode("utf-8"),
            digest_size=16,
        ).digest()
        return Generator(PCG64DXSM(int.from_bytes(digest, "big")))

    def _offsets(self, longitude: float, latitude: float, max_offset: float) -> Tuple[float, float]:
        u_lon, u_lat = self._generator(longitude, latitude).random(2)
        return (
            float((u_lon - 0.5) * max_offset * 2),
            float((u_lat - 0.5) * max_offset * 2),
        )

    @staticmethod
    def _apply(location: GeoLocation, d_lon: float, d_lat: float) -> GeoLocation:
        latitude = min(90.0, max(-90.0, location.latitude + d_lat))
        longitude = location.longitude + d_lon
        if longitude > 180.0:
            longitude -= 360.0
        elif longitude < -180.0:
            longitude += 360.0
        return location.model_copy(update={"latitude": latitude, "longitude": longitude})

    def obfuscate(
        self,
        location: GeoLocation,
        level: Optional[PrivacyLevel] = None,
    ) -> GeoLocation:
        """
        Return a fuzzed copy of `location`.

        Offsets are bounded per axis by the level's maximum (degrees). The
        memo cache is keyed on 4-decimal coordinates plus level; once it
        grows past the limit the oldest inserted entries are dropped.
        """
        if not self._enabled and level is None:
            return location

        effective = PrivacyLevel(level) if level is not None else self._level
        key: CacheKey = (
            f"{location.longitude:.4f}",
            f"{location.latitude:.4f}",
            effective,
        )

        cached = self._cache.get(key)
        if cached is None:
            cached = self._offsets(location.longitude, location.latitude, OFFSETS[effective])
            self._cache[key] = cached
            if len(self._cache) > self._cache_max:
                for stale in list(self._cache)[:self._cache_evict]:
                    del self._cache[stale]

        return self._apply(location, *cached)

    def obfuscate_route(
        self,
        points: Sequence[GeoLocation],
        level: Optional[PrivacyLevel] = None,
    ) -> List[GeoLocation]:
        """
        Fuzz a whole polyline.

        All points share one base offset derived from the first point, plus
        a small random jitter (10% of the level maximum) so the shape of the
        route is preserved.
        """
        if not points:
            return []

        effective = PrivacyLevel(level) if level is not None else self._level
        max_offset = OFFSETS[effective]
        first = points[0]
        base_lon, base_lat = self._offsets(first.longitude, first.latitude, max_offset / 2)

        jitter = np.random.default_rng().uniform(
            -max_offset * 0.05, max_offset * 0.05, size=(len(points), 2)
        )
        return [
            self._apply(point, base_lon + float(j_lon), base_lat + float(j_lat))
            for point, (j_lon, j_lat) in zip(points, jitter)
        ]
