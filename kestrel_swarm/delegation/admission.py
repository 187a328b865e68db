"""Admission control for concurrently active delegations.

A single system-wide counter of non-terminal delegations guarded by an
asyncio.Lock. Unlike a semaphore-backed bulkhead this never waits for a
slot: when the cap is reached the caller gets an Err immediately and must
retry later or serialise its own work.
"""

from __future__ import annotations

import asyncio
import logging

from kestrel_swarm.core.errors import AdmissionRejectedError
from kestrel_swarm.core.result import Err, Ok, Result


logger = logging.getLogger(__name__)


class AdmissionController:
    """Hard cap on concurrently active delegations.

    Example:
        admission = AdmissionController(limit=5)
        slot = await admission.try_acquire()
        if slot.is_err():
            raise AdmissionRejectedError(slot.error)
        try:
            ...
        finally:
            await admission.release()
    """

    def __init__(self, limit: int):
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        self._limit = limit
        self._active = 0
        self._lock = asyncio.Lock()

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def active(self) -> int:
        return self._active

    def set_limit(self, limit: int) -> None:
        """Change the cap. Already admitted work is never evicted."""
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        self._limit = limit

    async def try_acquire(self) -> Result[int]:
        """Take a slot if one is free.

        Returns:
            Result[int]: Ok(active count after admission), or Err with code
            ADMISSION_REJECTED when the cap is reached.
        """
        async with self._lock:
            if self._active >= self._limit:
                logger.debug(f"Admission rejected: {self._active}/{self._limit} active")
                return Err(
                    f"Maximum concurrent delegations ({self._limit}) reached",
                    code=AdmissionRejectedError.code,
                    retryable=True,
                )
            self._active += 1
            return Ok(self._active)

    async def release(self) -> Result[None]:
        """Give a slot back on a terminal transition."""
        async with self._lock:
            if self._active <= 0:
                logger.error("Admission slot released without a matching acquire")
                return Err("Release without matching acquire", code="ADMISSION_ERROR")
            self._active -= 1
            return Ok(None)
