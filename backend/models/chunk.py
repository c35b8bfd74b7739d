"""Chunk and search result data models."""
from dataclasses import dataclass, field
from typing import Optional, List
import numpy as np

from config import DEFAULT_TOP_K, DEFAULT_SIMILARITY_THRESHOLD, DEFAULT_MMR_LAMBDA

@dataclass
class Chunk:
    """Represents a document chunk produced by ingestion. Read-only to retrieval."""
    chunk_id: str
    document_id: str
    text: str
    page_number: Optional[int] = None
    embedding: Optional[np.ndarray] = None
    tokens: int = 0

    def has_embedding(self) -> bool:
        return self.embedding is not None and len(self.embedding) > 0

@dataclass
class SearchResult:
    """Chunk annotated with its similarity to a query."""
    chunk: Chunk
    similarity: float  # 0.0 to 1.0 for normalized embeddings
    page_number: Optional[int] = None
    snippet: str = ""
    highlights: List[str] = field(default_factory=list)

@dataclass
class SearchQuery:
    """Parameters for a single semantic search call."""
    text: str
    document_id: Optional[str] = None
    top_k: int = DEFAULT_TOP_K
    min_similarity: float = DEFAULT_SIMILARITY_THRESHOLD
    rerank: bool = True
    mmr_lambda: float = DEFAULT_MMR_LAMBDA
    use_cache: bool = True

@dataclass
class SearchContext:
    """Outcome of a semantic search call."""
    query: str
    results: List[SearchResult]
    total_results: int
    search_time: float  # milliseconds
    model: str
