"""
GM Pipeline Correlation Cache
Short-lived store joining early sentiment results to persisted messages
"""

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from cachetools import TTLCache

from ..utils.config import get_settings
from ..utils.logger import get_logger
from ..utils.metrics import record_correlation_lookup

logger = get_logger(__name__)


def new_correlation_token() -> str:
    """Random token for joining an early result to its row"""
    return str(uuid.uuid4())


@dataclass(frozen=True)
class SentimentResult:
    sentiment: int
    confidence: Optional[float]
    created_at: float


class CorrelationCache:
    """
    Thread-safe, TTL-bounded sentiment cache keyed by correlation token.

    Entries live in a ``cachetools.TTLCache``; expired entries are
    invisible to lookups and evicted lazily on access. When the cache is
    full the least recently used entry is evicted first.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = get_settings()
        self.ttl_seconds = (
            ttl_seconds if ttl_seconds is not None else settings.correlation_ttl_seconds
        )
        self.max_entries = max_entries or settings.correlation_max_entries
        self._clock = clock
        # TTLCache is not thread-safe on its own
        self._lock = threading.Lock()
        self._entries: TTLCache = TTLCache(
            maxsize=self.max_entries, ttl=self.ttl_seconds, timer=clock
        )

    def store(self, token: str, sentiment: int, confidence: Optional[float] = None) -> None:
        if not token:
            raise ValueError("Correlation token is required")

        entry = SentimentResult(
            sentiment=int(sentiment), confidence=confidence, created_at=self._clock()
        )
        with self._lock:
            self._entries[token] = entry
        logger.debug(f"Stored sentiment {sentiment} for correlation token {token}")

    def try_get(self, token: str) -> Tuple[bool, Optional[SentimentResult]]:
        """Look up a token; unknown and expired tokens are not found"""
        if not token:
            return False, None

        with self._lock:
            entry = self._entries.get(token)

        record_correlation_lookup("hit" if entry is not None else "miss")
        return entry is not None, entry

    def remove(self, token: str) -> bool:
        with self._lock:
            return self._entries.pop(token, None) is not None

    def claim(self, token: Optional[str]) -> Optional[SentimentResult]:
        """Look up and remove a token in one step"""
        if not token:
            return None

        with self._lock:
            entry = self._entries.pop(token, None)

        record_correlation_lookup("hit" if entry is not None else "miss")
        return entry

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
