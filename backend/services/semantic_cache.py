"""Semantic cache for search results, keyed by query-embedding similarity."""
import logging
import time
from typing import Callable, Dict, List, Optional

import numpy as np

from config import CACHE_MAX_AGE_SECONDS, CACHE_MAX_ENTRIES_PER_DOC, CACHE_SIMILARITY_THRESHOLD
from models.cache import CacheEntry, CacheStats
from models.chunk import SearchResult
from services.similarity import cosine_similarity

logger = logging.getLogger(__name__)


class SemanticCache:
    """
    Per-document, in-memory cache of search results.

    A lookup is a hit when a cached query embedding for the same document is at least
    `similarity_threshold` similar to the new one. Entries expire lazily after
    `max_age_seconds` and the oldest entry is evicted once a document holds more than
    `max_entries_per_doc` entries.

    All operations are synchronous, so callers on a single event loop need no locking.
    """

    # Storing a query this similar to an existing one updates it in place
    DUPLICATE_THRESHOLD = 0.99

    def __init__(
        self,
        max_entries_per_doc: int = CACHE_MAX_ENTRIES_PER_DOC,
        similarity_threshold: float = CACHE_SIMILARITY_THRESHOLD,
        max_age_seconds: float = CACHE_MAX_AGE_SECONDS,
        clock: Callable[[], float] = time.time
    ):
        self.max_entries_per_doc = max_entries_per_doc
        self.similarity_threshold = similarity_threshold
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._cache: Dict[str, List[CacheEntry]] = {}
        self._hits = 0
        self._misses = 0

    def find_similar(self, query_embedding, document_id: str) -> Optional[dict]:
        """
        Find cached results for a near-duplicate query.

        Args:
            query_embedding: Embedding of the new query
            document_id: Document the search is scoped to

        Returns:
            Dict with "results", "similarity" and "query" on a hit, None on a miss
        """
        doc_cache = self._cache.get(document_id)
        if not doc_cache:
            self._misses += 1
            return None

        now = self._clock()
        best_match: Optional[CacheEntry] = None
        best_similarity = 0.0

        for entry in doc_cache:
            if self._is_expired(entry, now):
                continue

            similarity = cosine_similarity(query_embedding, entry.embedding)
            if similarity > best_similarity:
                best_similarity = similarity
                best_match = entry

        if best_match is not None and best_similarity >= self.similarity_threshold:
            self._hits += 1
            best_match.hits += 1
            logger.info(
                f"Semantic cache HIT ({best_similarity:.1%}) for document {document_id}: "
                f"'{best_match.query[:50]}' (hits={best_match.hits})"
            )
            return {
                "results": best_match.results,
                "similarity": best_similarity,
                "query": best_match.query,
            }

        self._misses += 1
        logger.debug(f"Semantic cache MISS for document {document_id} (best {best_similarity:.1%})")
        return None

    def store(
        self,
        query: str,
        query_embedding,
        document_id: str,
        results: List[SearchResult]
    ) -> None:
        """
        Store search results for a query.

        A near-identical cached query (similarity > 0.99) is overwritten in place,
        keeping its hit count. Otherwise a new entry is appended and, if the document is
        over capacity, the entry with the oldest timestamp is evicted.
        """
        embedding = np.asarray(query_embedding, dtype=float)
        doc_cache = self._cache.setdefault(document_id, [])
        now = self._clock()

        for index, entry in enumerate(doc_cache):
            if cosine_similarity(embedding, entry.embedding) > self.DUPLICATE_THRESHOLD:
                doc_cache[index] = CacheEntry(
                    query=query,
                    embedding=embedding,
                    document_id=document_id,
                    results=results,
                    timestamp=now,
                    hits=entry.hits,
                )
                logger.debug(f"Updated existing cache entry for document {document_id}")
                return

        doc_cache.append(CacheEntry(
            query=query,
            embedding=embedding,
            document_id=document_id,
            results=results,
            timestamp=now,
        ))

        if len(doc_cache) > self.max_entries_per_doc:
            oldest = min(doc_cache, key=lambda entry: entry.timestamp)
            doc_cache.remove(oldest)
            logger.debug(f"Evicted oldest cache entry ('{oldest.query[:50]}')")

        logger.debug(
            f"Cached query results for document {document_id} "
            f"({len(doc_cache)}/{self.max_entries_per_doc})"
        )

    def clear_document(self, document_id: str) -> None:
        if self._cache.pop(document_id, None) is not None:
            logger.info(f"Cleared cache for document: {document_id}")

    def clear_all(self) -> None:
        """Drop every entry and reset hit/miss counters."""
        self._cache.clear()
        self._hits = 0
        self._misses = 0
        logger.info("Cleared all semantic cache")

    def get_stats(self) -> CacheStats:
        total_queries = self._hits + self._misses
        return CacheStats(
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total_queries if total_queries > 0 else 0.0,
            total_entries=sum(len(entries) for entries in self._cache.values()),
        )

    def get_document_cache(self, document_id: str) -> Optional[List[CacheEntry]]:
        return self._cache.get(document_id)

    def clean_expired(self) -> int:
        """
        Remove expired entries from every document.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        removed = 0
        for document_id, entries in self._cache.items():
            kept = [entry for entry in entries if not self._is_expired(entry, now)]
            removed += len(entries) - len(kept)
            self._cache[document_id] = kept

        if removed:
            logger.info(f"Cleaned {removed} expired cache entries")
        return removed

    def _is_expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.timestamp > self.max_age_seconds
