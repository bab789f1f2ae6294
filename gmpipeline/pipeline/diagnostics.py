"""
GM Pipeline Retrieval Diagnostics
Fire-and-forget capture of search queries and their results

Search code calls ``enqueue_search_results`` on the request path; a
background thread drains the bounded queue into a diagnostics store.
When the drain falls behind the oldest entries are dropped so callers
never block.
"""

import json
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, Optional, Protocol, Tuple

import redis

from ..utils.config import get_settings
from ..utils.logger import get_logger
from ..utils.metrics import record_diagnostics_event

logger = get_logger(__name__)


@dataclass(frozen=True)
class SearchResult:
    chunk_id: str
    document_id: str
    document_name: Optional[str] = None
    embedding_id: Optional[str] = None
    ruleset_id: Optional[str] = None
    relevancy: float = 0.0


@dataclass(frozen=True)
class SearchDiagnostics:
    query: str
    index_name: str
    ruleset_id: Optional[str] = None
    filter_json: Optional[str] = None
    results: Tuple[SearchResult, ...] = ()
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_record(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "query": self.query,
            "rulesetId": self.ruleset_id,
            "indexName": self.index_name,
            "filterJson": self.filter_json,
            "createdAt": self.created_at.isoformat(),
            "results": [
                {
                    "chunkId": r.chunk_id,
                    "documentId": r.document_id,
                    "documentName": r.document_name,
                    "embeddingId": r.embedding_id,
                    "rulesetId": r.ruleset_id,
                    "relevancy": r.relevancy,
                }
                for r in self.results
            ],
        }


class DiagnosticsStore(Protocol):
    def store(self, diagnostics: SearchDiagnostics) -> None:
        ...


class RedisDiagnosticsStore:
    """Appends diagnostics records to a capped Redis list"""

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        key: Optional[str] = None,
        max_entries: Optional[int] = None,
    ):
        settings = get_settings()
        self.client = client or redis.Redis.from_url(settings.redis_url)
        self.key = key or settings.diagnostics_redis_key
        self.max_entries = max_entries or settings.diagnostics_max_entries

    def store(self, diagnostics: SearchDiagnostics) -> None:
        pipe = self.client.pipeline()
        pipe.rpush(self.key, json.dumps(diagnostics.to_record()))
        pipe.ltrim(self.key, -self.max_entries, -1)
        pipe.execute()


class RetrievalDiagnosticsQueue:
    """Bounded drop-oldest queue drained by a background thread"""

    def __init__(self, store: DiagnosticsStore, capacity: Optional[int] = None):
        settings = get_settings()
        self.store = store
        self.capacity = capacity or settings.diagnostics_queue_capacity
        self._items: Deque[SearchDiagnostics] = deque(maxlen=self.capacity)
        self._cond = threading.Condition()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0
        self.stored = 0
        self.failed = 0

    def enqueue_search_results(
        self,
        query: str,
        ruleset_id: Optional[str],
        index_name: str,
        filter_json: Optional[str],
        results: Iterable[SearchResult],
    ) -> bool:
        """
        Queue a search for asynchronous storage

        Never blocks on storage and never raises.

        Returns:
            True if the entry was queued
        """
        try:
            item = SearchDiagnostics(
                query=query,
                index_name=index_name,
                ruleset_id=ruleset_id,
                filter_json=filter_json,
                results=tuple(results or ()),
            )
            with self._cond:
                if len(self._items) == self.capacity:
                    # deque(maxlen) evicts the oldest entry on append
                    self.dropped += 1
                    record_diagnostics_event("dropped")
                self._items.append(item)
                self._cond.notify()
            record_diagnostics_event("enqueued")
            return True
        except Exception as e:
            logger.warning(f"Failed to enqueue search diagnostics for '{query}': {e}")
            return False

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._drain_loop, name="search-diagnostics", daemon=True
        )
        self._thread.start()
        logger.info("Search diagnostics drain started")

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the drain thread after it flushes what is already queued"""
        self._stop.set()
        with self._cond:
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Search diagnostics drain stopped")

    def drain_once(self) -> int:
        """Store everything currently queued on the calling thread"""
        count = 0
        while True:
            with self._cond:
                if not self._items:
                    return count
                item = self._items.popleft()
            self._store_item(item)
            count += 1

    def _drain_loop(self) -> None:
        while True:
            with self._cond:
                while not self._items and not self._stop.is_set():
                    self._cond.wait(timeout=1.0)
                if not self._items:
                    break
                item = self._items.popleft()
            self._store_item(item)

    def _store_item(self, item: SearchDiagnostics) -> None:
        try:
            self.store.store(item)
        except Exception as e:
            self.failed += 1
            record_diagnostics_event("failed")
            logger.error(
                f"Error storing search results for query '{item.query}': {e}",
                exc_info=e,
            )
            return
        self.stored += 1
        record_diagnostics_event("stored")
        logger.debug(
            f"Stored search diagnostics {item.id} with {len(item.results)} result chunks"
        )
