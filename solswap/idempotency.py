from __future__ import annotations

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .models import TurnResult

DEFAULT_WINDOW_SEC = 5 * 60
DEFAULT_MAX_ENTRIES = 1000


@dataclass(frozen=True)
class IdempotencyRecord:
    key: str
    timestamp: float
    result: TurnResult


class IdempotencyCache:
    """
    Process-local cache of turn results keyed by caller-supplied idempotency key.

    - Entries expire after ``window_sec``.
    - Once more than ``max_entries`` are held, the oldest are evicted first.
    - Results are deep-copied in and out so a replay is byte-identical to the
      original response.
    """

    def __init__(
        self,
        window_sec: float = DEFAULT_WINDOW_SEC,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._lock = threading.Lock()
        self._window_sec = window_sec
        self._max_entries = max_entries
        self._clock = clock
        self._records: "OrderedDict[str, IdempotencyRecord]" = OrderedDict()

    def check(self, key: str) -> Optional[TurnResult]:
        """
        Return the cached result for ``key`` if present and unexpired.
        """
        if not key:
            return None
        with self._lock:
            self._sweep()
            record = self._records.get(key)
            if record is None:
                return None
            return record.result.model_copy(deep=True)

    def store(self, key: str, result: TurnResult) -> None:
        if not key:
            return
        with self._lock:
            # Re-storing a key refreshes its position in eviction order.
            self._records.pop(key, None)
            self._records[key] = IdempotencyRecord(
                key=key,
                timestamp=self._clock(),
                result=result.model_copy(deep=True),
            )
            self._sweep()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _sweep(self) -> None:
        # Records are kept in insertion order, so expiry and eviction both pop from the front.
        cutoff = self._clock() - self._window_sec
        while self._records:
            oldest = next(iter(self._records.values()))
            if oldest.timestamp >= cutoff:
                break
            self._records.popitem(last=False)
        while len(self._records) > self._max_entries:
            self._records.popitem(last=False)
