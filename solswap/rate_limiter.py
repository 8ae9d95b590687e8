"""
Rate limiting for the chat transport.
Limits requests per (user id, client IP) within a sliding window.
"""

import threading
import time
from typing import Callable, Dict, List, Optional, Tuple


class RateLimiter:
    """Simple in-memory sliding-window rate limiter"""

    def __init__(
        self,
        max_requests: int = 10,
        window_seconds: int = 60,
        clock: Callable[[], float] = time.time,
    ):
        self._max_requests = max_requests
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._requests: Dict[str, List[float]] = {}  # "user:ip" -> [timestamp, ...]
        self._last_sweep = clock()

    def check_rate_limit(self, user_id: str, client_ip: str) -> Tuple[bool, Optional[int]]:
        """
        Record a request and report whether it is allowed

        Args:
            user_id: External user identity
            client_ip: Caller address as seen by the transport

        Returns:
            Tuple of (allowed, seconds_until_reset)
        """
        now = self._clock()
        cutoff = now - self._window_seconds
        key = f"{user_id}:{client_ip}"

        with self._lock:
            if now - self._last_sweep >= self._window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now

            # Remove expired requests
            recent = [t for t in self._requests.get(key, []) if t > cutoff]

            if len(recent) >= self._max_requests:
                self._requests[key] = recent
                reset_time = int(min(recent) + self._window_seconds - now)
                return False, max(1, reset_time)

            recent.append(now)
            self._requests[key] = recent
            return True, None

    def _sweep(self, cutoff: float) -> None:
        # Drop pairs with no request inside the window; caller holds the lock.
        for key in [k for k, stamps in self._requests.items() if not stamps or stamps[-1] <= cutoff]:
            del self._requests[key]

    def tracked_keys(self) -> int:
        """Number of user/IP pairs currently held in memory"""
        with self._lock:
            return len(self._requests)

    def reset(self, user_id: str, client_ip: str) -> None:
        """Reset the window for one user/IP pair (admin function)"""
        with self._lock:
            self._requests.pop(f"{user_id}:{client_ip}", None)
