"""
Query Classifier for the Adaptive RAG pipeline.

This module implements deterministic, rule-based query classification that decides
whether a user query needs document retrieval and how aggressive that retrieval
should be. No LLM call is involved.
"""

import logging
import re
from typing import List, Sequence, Tuple

from models.chunk import SearchResult
from models.query import (
    QueryClassification,
    QueryComplexity,
    QueryType,
    RetrievalMode,
    RetrievalStrategy,
)

logger = logging.getLogger(__name__)


class QueryClassifier:
    """
    Classifies queries into a type, a complexity and a retrieval mode.

    Type is decided by tallying regex signals for each of the four query types.
    Complexity is decided by a second, independent heuristic pass and maps to the
    retrieval mode (simple -> no retrieval, moderate -> single step, complex -> multi step).
    """

    # Short queries tend to be follow-ups or chit-chat
    CONVERSATIONAL_LENGTH_CUTOFF = 20
    SIMPLE_LENGTH_CUTOFF = 15
    COMPLEX_LENGTH_CUTOFF = 100

    FACTUAL_PATTERNS = [
        r"^what is",
        r"^define",
        r"^who is",
        r"^when (did|was)",
        r"^where (is|was)",
        r"article \d+",
        r"page \d+",
        r"section \d+",
        r"specific",
    ]

    ANALYTICAL_PATTERNS = [
        r"^explain",
        r"^describe",
        r"^how (does|do|can)",
        r"^why",
        r"compare",
        r"analyze",
        r"relationship between",
        r"impact of",
    ]

    EXPLORATORY_PATTERNS = [
        r"^(list|tell me).*all",
        r"what are (all|the)",
        r"give me (all|everything)",
        r"comprehensive",
        r"overview",
        r"summarize",
        r"summary",
    ]

    CONVERSATIONAL_PATTERNS = [
        r"^(and|also|what about)",
        r"^tell me more",
        r"^continue",
        r"^anything else",
        r"^can you",
    ]

    SIMPLE_PATTERNS = [
        r"^(what is|define|who is) (a|an|the)?\s?\w+\??$",  # "What is X?"
        r"^(hi|hello|hey|thanks|thank you)\b",  # Greetings
        r"^\d+\s*[\+\-\*\/]\s*\d+",  # Simple math: "2+2"
        r"^(yes|no|ok|okay|continue)\b",  # Confirmations
    ]

    COMPLEX_PATTERNS = [
        r"compare.*(?:and|with|versus|vs)",
        r"explain.*(?:why|how).*(?:and|also)",
        r"(analyze|evaluate|assess).*relationship",
        r"(?:list|describe|explain).*(?:all|every|each)",
    ]

    TYPE_REASONS = {
        QueryType.FACTUAL: "specific factual information",
        QueryType.ANALYTICAL: "deep explanation",
        QueryType.EXPLORATORY: "broad overview",
        QueryType.CONVERSATIONAL: "conversational follow-up",
    }

    MODE_REASONS = {
        RetrievalMode.NO_RETRIEVAL: "Using LLM knowledge only (no document retrieval needed)",
        RetrievalMode.SINGLE_STEP: "Single-step retrieval",
        RetrievalMode.MULTI_STEP: "Multi-step iterative retrieval for comprehensive answer",
    }

    # Base retrieval parameters per query type: (top_k, min_similarity, mmr_lambda, temperature, max_tokens)
    BASE_STRATEGIES = {
        QueryType.FACTUAL: (8, 0.55, 0.9, 0.3, 4096),
        QueryType.ANALYTICAL: (12, 0.45, 0.75, 0.4, 8192),
        QueryType.EXPLORATORY: (18, 0.35, 0.6, 0.5, 12288),
        QueryType.CONVERSATIONAL: (10, 0.4, 0.7, 0.45, 6144),
    }
    DEFAULT_STRATEGY = (10, 0.45, 0.85, 0.4, 8192)

    MULTI_STEP_TOP_K_BOOST = 5
    MULTI_STEP_TOP_K_CAP = 20
    MULTI_STEP_MAX_TOKENS_FACTOR = 1.5
    MULTI_STEP_MAX_TOKENS_CAP = 16384

    # Minimum top similarity for retrieval to count as sufficient
    SUFFICIENCY_THRESHOLDS = {
        QueryType.FACTUAL: 0.6,
        QueryType.ANALYTICAL: 0.5,
        QueryType.EXPLORATORY: 0.4,
        QueryType.CONVERSATIONAL: 0.45,
    }
    EXPLORATORY_MIN_RESULTS = 5

    def classify_query(self, query: str, has_documents: bool = False) -> QueryClassification:
        """
        Classify a query and pick its retrieval mode.

        Steps:
        1. Tally pattern matches for each query type; the highest tally wins
        2. Confidence is the winner's share of all matches (0.5 if none matched)
        3. Classify complexity: simple, complex, else moderate
        4. Map complexity to retrieval mode
        5. Override: with documents selected, never skip retrieval

        Args:
            query: User question string
            has_documents: Whether the user has one or more documents selected

        Returns:
            QueryClassification with type, complexity, mode, confidence and reasoning
        """
        if not query or not query.strip():
            logger.warning("Empty query received, classifying with default rules")
            query = query or ""

        scores = self._score_types(query)
        query_type = QueryType.FACTUAL
        best_score = -1
        for candidate_type, score in scores:
            # Strict comparison keeps the earlier type on ties
            if score > best_score:
                query_type = candidate_type
                best_score = score

        total_score = sum(score for _, score in scores)
        confidence = best_score / total_score if total_score > 0 else 0.5

        complexity, retrieval_mode = self._determine_complexity(query)

        if has_documents and retrieval_mode == RetrievalMode.NO_RETRIEVAL:
            logger.info(
                f"Classifier override: documents selected, forcing retrieval "
                f"(was {complexity}/{retrieval_mode}) - {query[:50]}"
            )
            retrieval_mode = RetrievalMode.SINGLE_STEP
            if complexity == QueryComplexity.SIMPLE:
                complexity = QueryComplexity.MODERATE

        reasoning = (
            f"Query seeks {self.TYPE_REASONS[query_type]} ({complexity} complexity). "
            f"{self.MODE_REASONS[retrieval_mode]}."
        )

        logger.info(
            f"Classification: {query_type}/{complexity}/{retrieval_mode} "
            f"(confidence {confidence:.2f}) - {query[:50]}"
        )

        return QueryClassification(
            type=query_type,
            complexity=complexity,
            retrieval_mode=retrieval_mode,
            confidence=confidence,
            reasoning=reasoning,
        )

    def get_retrieval_strategy(self, query_type: str, retrieval_mode: str) -> RetrievalStrategy:
        """
        Look up retrieval and generation parameters for a query type.

        Multi-step retrieval widens top_k by 5 (capped at 20) and gives the answer
        1.5x the token budget (capped at 16384).
        """
        top_k, min_similarity, mmr_lambda, temperature, max_tokens = self.BASE_STRATEGIES.get(
            query_type, self.DEFAULT_STRATEGY
        )

        if retrieval_mode == RetrievalMode.MULTI_STEP:
            top_k = min(top_k + self.MULTI_STEP_TOP_K_BOOST, self.MULTI_STEP_TOP_K_CAP)
            max_tokens = min(
                int(max_tokens * self.MULTI_STEP_MAX_TOKENS_FACTOR),
                self.MULTI_STEP_MAX_TOKENS_CAP,
            )

        return RetrievalStrategy(
            mode=retrieval_mode,
            top_k=top_k,
            min_similarity=min_similarity,
            mmr_lambda=mmr_lambda,
            temperature=temperature,
            max_tokens=max_tokens,
        )

    def check_retrieval_sufficiency(
        self,
        results: Sequence[SearchResult],
        query_type: str
    ) -> Tuple[bool, str]:
        """
        Check whether retrieval results look good enough for the query type.

        Returns:
            (sufficient, reason)
        """
        if not results:
            return False, "No results found - retrieval failed"

        min_expected = self.SUFFICIENCY_THRESHOLDS.get(query_type, 0.5)
        top_similarity = results[0].similarity

        if top_similarity < min_expected:
            return False, (
                f"Top result similarity ({top_similarity:.2f}) below threshold ({min_expected})"
            )

        if query_type == QueryType.EXPLORATORY and len(results) < self.EXPLORATORY_MIN_RESULTS:
            return False, (
                f"Exploratory query needs at least {self.EXPLORATORY_MIN_RESULTS} diverse results"
            )

        return True, "Retrieval results are sufficient for query type"

    def _score_types(self, query: str) -> List[Tuple[str, int]]:
        """Count pattern matches per query type, in tie-break order."""
        conversational = self._count_matches(query, self.CONVERSATIONAL_PATTERNS)
        if len(query) < self.CONVERSATIONAL_LENGTH_CUTOFF:
            conversational += 1

        return [
            (QueryType.FACTUAL, self._count_matches(query, self.FACTUAL_PATTERNS)),
            (QueryType.ANALYTICAL, self._count_matches(query, self.ANALYTICAL_PATTERNS)),
            (QueryType.EXPLORATORY, self._count_matches(query, self.EXPLORATORY_PATTERNS)),
            (QueryType.CONVERSATIONAL, conversational),
        ]

    def _determine_complexity(self, query: str) -> Tuple[str, str]:
        """Return (complexity, retrieval_mode). Simple is checked before complex."""
        is_simple = (
            len(query) < self.SIMPLE_LENGTH_CUTOFF
            or self._count_matches(query, self.SIMPLE_PATTERNS) > 0
        )
        if is_simple:
            return QueryComplexity.SIMPLE, RetrievalMode.NO_RETRIEVAL

        is_complex = (
            self._count_matches(query, self.COMPLEX_PATTERNS) > 0
            or len(re.split(r"[?.!]", query)) > 2  # multiple sentences/questions
            or len(query) > self.COMPLEX_LENGTH_CUTOFF
        )
        if is_complex:
            return QueryComplexity.COMPLEX, RetrievalMode.MULTI_STEP

        return QueryComplexity.MODERATE, RetrievalMode.SINGLE_STEP

    @staticmethod
    def _count_matches(query: str, patterns: List[str]) -> int:
        return sum(1 for pattern in patterns if re.search(pattern, query, re.IGNORECASE))
