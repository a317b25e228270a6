"""Transaction deduplication for inbound payment notifications.

Two registries back the guard:

- in-flight: short TTL, marks work that has been accepted but not finished so a
  concurrent duplicate delivery of the same callback is rejected;
- processed: long TTL, rejects resubmits of completed work.

All methods are synchronous. Handlers must call ``try_acquire`` (or
``is_duplicate`` + ``mark_inflight``) without awaiting in between, otherwise two
interleaved requests for the same transaction can both pass the check.
"""

import time
from typing import Callable, Dict, Optional

from ..utils.logger import logger


class TTLRegistry:
    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, float] = {}

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        self.prune()
        return len(self._entries)

    def get(self, key: str) -> Optional[float]:
        self.prune()
        return self._entries.get(key)

    def set(self, key: str) -> float:
        self.prune()
        marked_at = self._clock()
        self._entries[key] = marked_at
        return marked_at

    def discard(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def prune(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, marked_at in self._entries.items() if marked_at <= cutoff]
        for key in expired:
            del self._entries[key]
        return len(expired)


class IdempotencyGuard:
    def __init__(
        self,
        inflight: Optional[TTLRegistry] = None,
        processed: Optional[TTLRegistry] = None,
        inflight_ttl: float = 300.0,
        processed_ttl: float = 86400.0,
    ):
        self.inflight = inflight if inflight is not None else TTLRegistry(inflight_ttl)
        self.processed = processed if processed is not None else TTLRegistry(processed_ttl)

    def is_duplicate(self, txn_id: str) -> bool:
        return txn_id in self.inflight or txn_id in self.processed

    def mark_inflight(self, txn_id: str) -> None:
        self.inflight.set(txn_id)

    def try_acquire(self, txn_id: str) -> bool:
        if self.is_duplicate(txn_id):
            logger.info(f"Duplicate transaction rejected: {txn_id}")
            return False
        self.mark_inflight(txn_id)
        return True

    def mark_processed(self, txn_id: str) -> None:
        self.processed.set(txn_id)
        self.inflight.discard(txn_id)

    def release(self, txn_id: str) -> None:
        if self.inflight.discard(txn_id):
            logger.info(f"Released in-flight mark for {txn_id}")
