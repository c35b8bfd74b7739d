"""Semantic search over document chunks with caching, re-ranking and MMR diversification."""
import asyncio
import logging
import time
from dataclasses import replace
from typing import List, Optional

from models.cache import CacheStats
from models.chunk import Chunk, SearchContext, SearchQuery, SearchResult
from services.chunk_store import ChunkStore
from services.embedding_model import EmbeddingModel
from services.semantic_cache import SemanticCache
from services.similarity import cosine_similarity

logger = logging.getLogger(__name__)


class SearchFailedError(RuntimeError):
    """Raised when a search cannot complete. No partial results are returned."""


class SemanticSearchEngine:
    """Embed a query, score chunks against it and pick a relevant yet diverse top-K."""

    EXACT_PHRASE_BOOST = 0.2
    ALL_WORDS_BOOST = 0.1

    def __init__(
        self,
        embedding_model: EmbeddingModel,
        chunk_store: ChunkStore,
        cache: Optional[SemanticCache] = None
    ):
        """
        Initialize the search engine.

        Args:
            embedding_model: EmbeddingModel instance for query embedding
            chunk_store: ChunkStore holding ingested chunks with embeddings
            cache: SemanticCache shared across searches (a private one is created if omitted)
        """
        self.embedding_model = embedding_model
        self.chunk_store = chunk_store
        self.cache = cache if cache is not None else SemanticCache()
        logger.info("Initialized SemanticSearchEngine")

    async def search(self, query: SearchQuery) -> SearchContext:
        """
        Run a semantic search.

        Steps:
        1. Embed the query text
        2. With a document scope and use_cache, return cached results for a near-duplicate query
        3. Fetch candidate chunks (one document, or all chunks)
        4. Score chunks that have embeddings by cosine similarity
        5. Drop results below min_similarity and sort descending
        6. Optionally boost exact-phrase and all-words matches, then re-sort
        7. Pick top_k with Maximal Marginal Relevance
        8. Cache the final results for the document

        Args:
            query: SearchQuery with text, scope and thresholds

        Returns:
            SearchContext with the selected results and timing

        Raises:
            SearchFailedError: If embedding, chunk fetching or scoring fails
        """
        start_time = time.perf_counter()
        model_name = self.embedding_model.model_name

        try:
            query_embedding = await self.embedding_model.embed_text(query.text)

            if query.document_id and query.use_cache:
                cached = self.cache.find_similar(query_embedding, query.document_id)
                if cached:
                    search_time = (time.perf_counter() - start_time) * 1000
                    logger.info(f"Returning cached results in {search_time:.0f}ms (skipped vector search)")
                    return SearchContext(
                        query=query.text,
                        results=cached["results"],
                        total_results=len(cached["results"]),
                        search_time=search_time,
                        model=f"{model_name} (cached)",
                    )

            if query.document_id:
                chunks = await asyncio.to_thread(self.chunk_store.get_chunks_for_document, query.document_id)
            else:
                chunks = await asyncio.to_thread(self.chunk_store.get_all_chunks)
            logger.debug(f"Scoring {len(chunks)} candidate chunks")

            scored = self._score_chunks(chunks, query_embedding, query.min_similarity)
            scored.sort(key=lambda result: result.similarity, reverse=True)

            ranked = self.rerank_results(scored, query.text) if query.rerank else scored
            results = self.apply_mmr(ranked, query.top_k, query.mmr_lambda)

            search_time = (time.perf_counter() - start_time) * 1000

            if query.document_id and results:
                self.cache.store(query.text, query_embedding, query.document_id, results)

            logger.info(
                f"Search returned {len(results)} of {len(scored)} matching chunks "
                f"(min_similarity {query.min_similarity}) in {search_time:.0f}ms"
            )

            return SearchContext(
                query=query.text,
                results=results,
                total_results=len(scored),
                search_time=search_time,
                model=model_name,
            )

        except Exception as e:
            error_msg = f"Search failed: {str(e)}"
            logger.error(error_msg)
            raise SearchFailedError(error_msg) from e

    def _score_chunks(self, chunks: List[Chunk], query_embedding, min_similarity: float) -> List[SearchResult]:
        results = []
        for chunk in chunks:
            if not chunk.has_embedding():
                logger.debug(f"Chunk has no embedding: {chunk.chunk_id}")
                continue

            similarity = cosine_similarity(query_embedding, chunk.embedding)
            if similarity < min_similarity:
                continue

            results.append(SearchResult(
                chunk=chunk,
                similarity=similarity,
                page_number=chunk.page_number,
                snippet=chunk.text,
                highlights=self.extract_highlights(chunk.text),
            ))
        return results

    @staticmethod
    def extract_highlights(text: str) -> List[str]:
        """The whole chunk is the highlight; the UI narrows it down."""
        return [text]

    def rerank_results(self, results: List[SearchResult], query: str) -> List[SearchResult]:
        """
        Boost keyword matches on top of vector similarity.

        +0.2 if the chunk contains the whole query phrase, +0.1 if it contains every
        query word as a substring. Scores are capped at 1.0.
        """
        query_lower = query.lower()
        query_words = query_lower.split()

        reranked = []
        for result in results:
            chunk_text = result.chunk.text.lower()
            boost = 0.0

            if query_lower in chunk_text:
                boost += self.EXACT_PHRASE_BOOST

            if all(word in chunk_text for word in query_words):
                boost += self.ALL_WORDS_BOOST

            reranked.append(replace(result, similarity=min(1.0, result.similarity + boost)))

        reranked.sort(key=lambda result: result.similarity, reverse=True)
        return reranked

    @staticmethod
    def apply_mmr(results: List[SearchResult], top_k: int, mmr_lambda: float = 0.5) -> List[SearchResult]:
        """
        Select top_k results with Maximal Marginal Relevance.

        The most relevant result is always taken first. Each next pick maximizes
        lambda * relevance - (1 - lambda) * max similarity to anything already picked,
        which keeps overlapping chunk windows from crowding out other passages.

        Args:
            results: Results sorted by relevance, descending
            top_k: Number of results to return
            mmr_lambda: 1.0 favors pure relevance, 0.0 pure diversity
        """
        if len(results) <= top_k:
            return list(results)

        remaining = list(results)
        selected = [remaining.pop(0)]

        while len(selected) < top_k and remaining:
            best_index = 0
            best_score = float("-inf")

            for index, candidate in enumerate(remaining):
                max_sim_to_selected = max(
                    cosine_similarity(candidate.chunk.embedding, chosen.chunk.embedding)
                    for chosen in selected
                )
                mmr_score = mmr_lambda * candidate.similarity - (1 - mmr_lambda) * max_sim_to_selected

                if mmr_score > best_score:
                    best_score = mmr_score
                    best_index = index

            selected.append(remaining.pop(best_index))

        logger.debug(f"MMR selected {len(selected)} diverse chunks from {len(results)} candidates")
        return selected

    def get_cache_stats(self) -> CacheStats:
        return self.cache.get_stats()

    def clear_document_cache(self, document_id: str) -> None:
        self.cache.clear_document(document_id)

    def clear_all_cache(self) -> None:
        self.cache.clear_all()

    def clean_expired_cache(self) -> int:
        return self.cache.clean_expired()


def build_rag_context(results: List[SearchResult]) -> str:
    """
    Join results into a numbered excerpt block for the prompt.

    Each block is "[n] Page p:" (or "[n] Chunk <id>:" when the page is unknown)
    followed by the chunk text; blocks are separated by "---" lines.
    """
    if not results:
        return ""

    parts = []
    for index, result in enumerate(results, start=1):
        source = f"Page {result.page_number}" if result.page_number else f"Chunk {result.chunk.chunk_id}"
        parts.append(f"[{index}] {source}:\n{result.chunk.text}")

    return "\n\n---\n\n".join(parts)
