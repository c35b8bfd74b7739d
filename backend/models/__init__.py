"""Data models for the PrivatePDF RAG backend."""
from .chunk import Chunk, SearchResult, SearchQuery, SearchContext
from .query import QueryType, QueryComplexity, RetrievalMode, QueryClassification, RetrievalStrategy
from .cache import CacheEntry, CacheStats
from .grading import GradeResult, RAGGrades
from .chat import Message, ChatMessage, GenerationMetrics, MessageState
from .api import QueryRequest, HistoryMessage, Source, Metrics, ClassificationInfo, MessageEnvelope, CacheStatsResponse

__all__ = [
    "Chunk",
    "SearchResult",
    "SearchQuery",
    "SearchContext",
    "QueryType",
    "QueryComplexity",
    "RetrievalMode",
    "QueryClassification",
    "RetrievalStrategy",
    "CacheEntry",
    "CacheStats",
    "GradeResult",
    "RAGGrades",
    "Message",
    "ChatMessage",
    "GenerationMetrics",
    "MessageState",
    "QueryRequest",
    "HistoryMessage",
    "Source",
    "Metrics",
    "ClassificationInfo",
    "MessageEnvelope",
    "CacheStatsResponse",
]
