"""
Client-side duplicate scan suppression

A decoded string that was just submitted is held for a short window so the
same QR code held in front of the camera, or scanned twice by a hand
scanner, is not submitted again. This is best effort: the backend's own
duplicate detection is authoritative.
"""

import hashlib
import logging
import threading
import time
from typing import Callable, Dict

import redis

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_MS = 5000
SUPPRESSION_PREFIX = "bmm:recent_scan"


class ScanSuppressor:
    """
    In-process set of recently seen decoded strings

    Each entry expires exactly ``window_ms`` after it was marked.
    """

    def __init__(self, window_ms: int = DEFAULT_WINDOW_MS, clock: Callable[[], float] = time.monotonic):
        self.window_ms = window_ms
        self._clock = clock
        self._expiry: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _evict(self, now: float) -> None:
        expired = [text for text, expires_at in self._expiry.items() if expires_at <= now]
        for text in expired:
            del self._expiry[text]

    def should_suppress(self, decoded_text: str) -> bool:
        """True if ``decoded_text`` was marked less than the window ago"""
        with self._lock:
            now = self._clock()
            self._evict(now)
            return decoded_text in self._expiry

    def mark_seen(self, decoded_text: str) -> None:
        with self._lock:
            self._expiry[decoded_text] = self._clock() + self.window_ms / 1000.0

    def clear(self) -> None:
        """Drop every pending entry"""
        with self._lock:
            self._expiry.clear()

    def __len__(self) -> int:
        with self._lock:
            self._evict(self._clock())
            return len(self._expiry)


class RedisScanSuppressor:
    """
    Suppression window shared by every worker through Redis

    Keys are ``<prefix>:<sha1 of the decoded text>`` set with a PX expiry,
    so Redis removes them on its own after the window. Each desk gets its own
    prefix, and ``clear`` only removes keys under it.
    """

    def __init__(self, client: redis.Redis, window_ms: int = DEFAULT_WINDOW_MS, prefix: str = SUPPRESSION_PREFIX):
        self.client = client
        self.window_ms = window_ms
        self.prefix = prefix

    def _key(self, decoded_text: str) -> str:
        digest = hashlib.sha1(decoded_text.encode("utf-8")).hexdigest()
        return f"{self.prefix}:{digest}"

    def should_suppress(self, decoded_text: str) -> bool:
        try:
            return bool(self.client.exists(self._key(decoded_text)))
        except redis.RedisError as e:
            # The backend still deduplicates, so an unreachable Redis only loses the fast path
            logger.warning("Scan suppression lookup failed: %s", e)
            return False

    def mark_seen(self, decoded_text: str) -> None:
        try:
            self.client.set(self._key(decoded_text), "1", px=self.window_ms)
        except redis.RedisError as e:
            logger.warning("Scan suppression update failed: %s", e)

    def clear(self) -> None:
        try:
            keys = list(self.client.scan_iter(match=f"{self.prefix}:*"))
            if keys:
                self.client.delete(*keys)
        except redis.RedisError as e:
            logger.warning("Scan suppression clear failed: %s", e)
