"""
Per-client request budget for the chat endpoint.

Each client gets `limit` chat requests per fixed window. A limit of 0 turns
the budget off, which is how CHAT_RATE_LIMIT=0 disables throttling.
"""

from __future__ import annotations

import asyncio
import time
from typing import Callable, Dict, Tuple

DEFAULT_WINDOW_SECONDS = 60


class ChatRateLimiter:
    """Fixed-window counter keyed by client id."""

    def __init__(
        self,
        limit: int,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.limit = limit
        self.window_seconds = window_seconds
        self._clock = clock
        # client id -> (requests left, window end)
        self._budgets: Dict[str, Tuple[int, float]] = {}
        self._lock = asyncio.Lock()

    @property
    def enabled(self) -> bool:
        return self.limit > 0

    async def allow(self, client_id: str) -> bool:
        """Spend one request from the client's budget; False once it is used up."""
        if not self.enabled:
            return True
        now = self._clock()
        async with self._lock:
            left, window_end = self._budgets.get(client_id, (self.limit, now + self.window_seconds))
            if now >= window_end:
                left, window_end = self.limit, now + self.window_seconds
            if left <= 0:
                self._budgets[client_id] = (0, window_end)
                return False
            self._budgets[client_id] = (left - 1, window_end)
            return True
