"""Query classification data models."""
from dataclasses import dataclass


class QueryType:
    FACTUAL = "factual"
    ANALYTICAL = "analytical"
    EXPLORATORY = "exploratory"
    CONVERSATIONAL = "conversational"


class QueryComplexity:
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"


class RetrievalMode:
    NO_RETRIEVAL = "no_retrieval"
    SINGLE_STEP = "single_step"
    MULTI_STEP = "multi_step"


@dataclass
class QueryClassification:
    """
    Result of query classification.

    Attributes:
        type: One of the QueryType values
        complexity: One of the QueryComplexity values
        retrieval_mode: One of the RetrievalMode values
        confidence: Winner's share of all pattern matches (0.5 when nothing matched)
        reasoning: Human-readable explanation of the decision
    """
    type: str
    complexity: str
    retrieval_mode: str
    confidence: float
    reasoning: str


@dataclass
class RetrievalStrategy:
    """Retrieval and generation parameters. Thresholds may be relaxed between attempts."""
    mode: str
    top_k: int
    min_similarity: float
    mmr_lambda: float
    temperature: float
    max_tokens: int
