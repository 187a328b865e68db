"""Token budget shared by concurrent swarm members.

The one piece of mutable state that concurrent members touch. Every
read-then-write happens under a single asyncio.Lock: a member reserves a
grant before it starts, and settles the grant against its actual usage
once that usage is reported. When nothing is left to grant, members that
have not started yet are refused.
"""

from __future__ import annotations

import asyncio
import logging

from kestrel_swarm.core.errors import BudgetExceededError
from kestrel_swarm.core.result import Err, Ok, Result


logger = logging.getLogger(__name__)


class SharedTokenBudget:
    def __init__(self, total: int):
        if total <= 0:
            raise ValueError(f"total must be > 0, got {total}")
        self.total = total
        self._used = 0
        self._reserved = 0
        self._lock = asyncio.Lock()

    @property
    def used(self) -> int:
        return self._used

    @property
    def reserved(self) -> int:
        return self._reserved

    @property
    def remaining(self) -> int:
        return max(0, self.total - self._used - self._reserved)

    async def reserve(self, amount: int) -> Result[int]:
        """Reserve up to ``amount`` tokens.

        Returns:
            Result[int]: Ok(granted tokens, possibly less than asked), or Err
            with code BUDGET_EXCEEDED when the budget is exhausted.
        """
        if amount <= 0:
            return Err(f"amount must be > 0, got {amount}", code="INVALID_INPUT")

        async with self._lock:
            available = self.total - self._used - self._reserved
            if available <= 0:
                return Err(
                    f"Shared token budget exhausted ({self._used}/{self.total} used)",
                    code=BudgetExceededError.code,
                    retryable=False,
                )
            granted = min(amount, available)
            self._reserved += granted
            return Ok(granted)

    async def settle(self, granted: int, used: int) -> int:
        """Release a reservation and charge the actual usage.

        Returns the remaining budget after settlement.
        """
        async with self._lock:
            self._reserved = max(0, self._reserved - granted)
            self._used += max(0, used)
            if used > granted:
                logger.warning(f"Member used {used} tokens against a grant of {granted}")
            return max(0, self.total - self._used - self._reserved)
