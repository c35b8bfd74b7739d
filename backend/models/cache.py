"""Semantic cache data models."""
from dataclasses import dataclass
from typing import List

import numpy as np

from models.chunk import SearchResult

@dataclass
class CacheEntry:
    """Cached search results for one query against one document."""
    query: str
    embedding: np.ndarray
    document_id: str
    results: List[SearchResult]
    timestamp: float  # seconds since epoch, refreshed on update
    hits: int = 0

@dataclass
class CacheStats:
    hits: int
    misses: int
    hit_rate: float
    total_entries: int
