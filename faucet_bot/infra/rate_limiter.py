# faucet_bot/infra/rate_limiter.py
from __future__ import annotations
import time
from collections import defaultdict
from threading import Lock
from typing import Optional
from faucet_bot.infra.logging_config import get_logger

logger = get_logger(__name__)


class InMemoryRateLimiter:
    """
    Sliding-window limiter for chat spam (messages per chat per window).

    Independent from the faucet cooldown: this only protects the bot from
    being flooded, it never touches the quota ledger.
    """

    def __init__(self, max_requests: int, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._requests: dict[str, list[float]] = defaultdict(list)
        self._lock = Lock()

    def is_allowed(self, key: str) -> tuple[bool, Optional[int]]:
        """
        Check if request is allowed for the given key.

        Returns:
            (allowed, retry_after_seconds)
        """
        now = time.time()
        cutoff = now - self.window_seconds

        with self._lock:
            self._requests[key] = [
                ts for ts in self._requests[key] if ts > cutoff
            ]

            request_count = len(self._requests[key])

            if request_count >= self.max_requests:
                oldest = min(self._requests[key])
                retry_after = int(oldest + self.window_seconds - now) + 1

                logger.warning(
                    "Rate limit exceeded for chat=%s", key,
                    extra={"chat_id": key},
                )
                return False, retry_after

            self._requests[key].append(now)
            return True, None

    def cleanup(self, max_age_seconds: int = 3600) -> int:
        """
        Remove keys that haven't been used recently.
        Returns number of keys removed.
        """
        now = time.time()
        cutoff = now - max_age_seconds

        with self._lock:
            to_remove = [
                key for key, timestamps in self._requests.items()
                if not timestamps or max(timestamps) < cutoff
            ]
            for key in to_remove:
                del self._requests[key]

            if to_remove:
                logger.info(f"Rate limiter cleanup: removed {len(to_remove)} keys")

            return len(to_remove)
