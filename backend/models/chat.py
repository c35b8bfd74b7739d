"""Chat data models shared with the surrounding chat layer."""
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from models.chunk import SearchResult
from models.query import QueryClassification


class MessageState:
    STREAMING = "streaming"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERROR = "error"


@dataclass
class Message:
    """A single prompt message sent to the chat backend."""
    role: str  # "system", "user" or "assistant"
    content: str

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass
class GenerationMetrics:
    total_tokens: int
    tokens_per_second: float


@dataclass
class ChatMessage:
    """Assistant message as it evolves during one send."""
    id: str
    role: str
    content: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    is_streaming: bool = True
    state: str = MessageState.STREAMING
    sources: Optional[List[SearchResult]] = None
    metrics: Optional[GenerationMetrics] = None
    classification: Optional[QueryClassification] = None
