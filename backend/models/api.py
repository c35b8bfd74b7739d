"""API request/response models for the HTTP surface."""
from typing import List, Optional
from pydantic import BaseModel, Field


class HistoryMessage(BaseModel):
    role: str
    content: str


class QueryRequest(BaseModel):
    """Body of POST /query."""
    text: str
    document_ids: List[str] = Field(default_factory=list)
    session_history: List[HistoryMessage] = Field(default_factory=list)


class Source(BaseModel):
    chunk_id: str
    document_id: str
    page: Optional[int] = None
    similarity: float
    snippet: str


class Metrics(BaseModel):
    total_tokens: int
    tokens_per_second: float


class ClassificationInfo(BaseModel):
    type: str
    complexity: str
    retrieval_mode: str
    confidence: float
    reasoning: str


class MessageEnvelope(BaseModel):
    """Final SSE event payload for one assistant message."""
    message_id: str
    state: str
    content: str
    sources: List[Source] = Field(default_factory=list)
    metrics: Optional[Metrics] = None
    classification: Optional[ClassificationInfo] = None


class CacheStatsResponse(BaseModel):
    hits: int
    misses: int
    hit_rate: float
    total_entries: int
