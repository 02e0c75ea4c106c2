"""
g3geo Replay Guard

Tracks consumed single-use proofs (business QR codes) so each can back at
most one review.

Each entry is kept for `max_age_ms` (one hour) after use, or until the proof
it guards expires if that is later. A swept key can therefore never be
presented again successfully.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Optional

from ..models import now_ms


logger = logging.getLogger(__name__)


def qr_key(business_id: str, signed_timestamp: str) -> str:
    """Composite single-use key for a business QR code."""
    return f"{business_id}_{signed_timestamp}"


class ReplayGuard:
    """
    First-use registry for single-use proofs.

    Example:
        guard = ReplayGuard()
        if not guard.consume(qr_key(business_id, signed_timestamp)):
            raise ProofAlreadyUsed(...)
    """

    def __init__(
        self,
        max_age_ms: int = 60 * 60 * 1000,
        sweep_interval_seconds: float = 3600.0,
        clock: Callable[[], int] = now_ms,
    ):
        self._max_age_ms = max_age_ms
        self._sweep_interval = sweep_interval_seconds
        self._clock = clock
        self._consumed: Dict[str, int] = {}  # key -> retain until (epoch ms)
        self._sweep_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._consumed)

    def __contains__(self, key: str) -> bool:
        return key in self._consumed

    def is_consumed(self, key: str) -> bool:
        return key in self._consumed

    def consume(self, key: str, valid_until: Optional[int] = None) -> bool:
        """
        Record first use of `key`.

        Args:
            key: Single-use proof key
            valid_until: Expiry of the proof (epoch ms); the entry outlives it

        Returns:
            True on first use, False if `key` was already consumed
        """
        if key in self._consumed:
            return False
        retain_until = self._clock() + self._max_age_ms
        if valid_until is not None:
            retain_until = max(retain_until, valid_until)
        self._consumed[key] = retain_until
        return True

    def sweep(self) -> int:
        """Drop entries past their retention time. Returns how many were removed."""
        now = self._clock()
        stale = [key for key, retain_until in self._consumed.items() if retain_until < now]
        for key in stale:
            del self._consumed[key]
        if stale:
            logger.debug(f"Replay guard swept {len(stale)} entries")
        return len(stale)

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
