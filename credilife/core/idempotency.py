import asyncio
import logging
import time
from datetime import date
from typing import Dict, Optional

import redis.asyncio as redis_async

from credilife.core.config import settings

logger = logging.getLogger(__name__)

# Markers outlive the day they cover so a restart the same day still sees them
DEFAULT_MARKER_TTL_SECONDS = 3 * 24 * 3600


def reminder_key(loan_id: str, installment_number: int, rule_id: str, day: date) -> str:
    return f"reminder:{loan_id}:{installment_number}:{rule_id}:{day.isoformat()}"


class ReminderMarkerStore:
    """Records which reminders already went out on a given day.

    Uses Redis when REDIS_URL is configured, otherwise an in-memory store
    with TTL expiry. The in-memory store only dedupes within one process.
    """

    def __init__(self, redis_url: Optional[str] = None, client=None, timer=time.monotonic):
        redis_url = redis_url if redis_url is not None else settings.REDIS_URL
        self._client = client
        if self._client is None and redis_url:
            self._client = redis_async.from_url(redis_url)
        self._use_redis = self._client is not None

        # in-memory store: key -> expire_at (monotonic seconds)
        self._store: Dict[str, Optional[float]] = {}
        self._lock = asyncio.Lock()
        self._timer = timer

        logger.info(f"Reminder markers stored in {'redis' if self._use_redis else 'memory'}")

    @property
    def backend(self) -> str:
        return "redis" if self._use_redis else "memory"

    async def is_marked(self, key: str) -> bool:
        if self._use_redis:
            return bool(await self._client.exists(key))

        async with self._lock:
            if key not in self._store:
                return False
            expire_at = self._store[key]
            if expire_at is not None and expire_at < self._timer():
                del self._store[key]
                return False
            return True

    async def mark(self, key: str, ttl_seconds: int = DEFAULT_MARKER_TTL_SECONDS) -> None:
        if self._use_redis:
            await self._client.set(key, "1", ex=ttl_seconds)
            return

        async with self._lock:
            self._store[key] = self._timer() + ttl_seconds if ttl_seconds else None
            self._purge_expired()

    def _purge_expired(self) -> None:
        now = self._timer()
        expired = [k for k, exp in self._store.items() if exp is not None and exp < now]
        for k in expired:
            del self._store[k]

    async def close(self) -> None:
        if self._use_redis:
            await self._client.aclose()
