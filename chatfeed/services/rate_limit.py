from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

from chatfeed.core.errors import RateLimited
from chatfeed.core.settings import S
from chatfeed.core.time import now_ts
from chatfeed.metrics import RATE_LIMITED

logger = logging.getLogger(__name__)


class RateLimiter(ABC):
    """
    Fixed-window request counter per (user, action).

    ``hit`` records one request and returns False once the user has used up
    ``max_requests`` in the current window. ``max_requests <= 0`` disables it.
    """

    def __init__(self, max_requests: Optional[int] = None, window_seconds: Optional[int] = None) -> None:
        self.max_requests = S.rate_limit_max_requests if max_requests is None else max_requests
        self.window_seconds = max(1, window_seconds or S.rate_limit_window_seconds)

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def window_of(self, ts: int) -> int:
        return ts // self.window_seconds

    @abstractmethod
    def hit(self, user_id: str, action: str) -> bool:
        raise NotImplementedError


class InMemoryRateLimiter(RateLimiter):
    def __init__(
        self,
        max_requests: Optional[int] = None,
        window_seconds: Optional[int] = None,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        super().__init__(max_requests, window_seconds)
        self.clock = clock
        self._lock = threading.Lock()
        self._counts: Dict[Tuple[str, str], Tuple[int, int]] = {}

    def hit(self, user_id: str, action: str) -> bool:
        if not self.enabled:
            return True
        window = self.window_of(self.clock())
        key = (user_id, action)
        with self._lock:
            seen_window, count = self._counts.get(key, (window, 0))
            if seen_window != window:
                count = 0
            if count >= self.max_requests:
                return False
            self._counts[key] = (window, count + 1)
            return True


def rate_limit_or_429(limiter: RateLimiter, user_id: str, action: str) -> None:
    if limiter.hit(user_id, action):
        return
    RATE_LIMITED.labels(action=action).inc()
    logger.info("user %s over the %s limit", user_id, action)
    raise RateLimited(user_id=user_id, action=action)
