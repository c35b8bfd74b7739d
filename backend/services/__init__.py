"""Services for the PrivatePDF Adaptive RAG backend."""
from .similarity import cosine_similarity
from .embedding_model import EmbeddingModel, EmbeddingError
from .chunk_store import ChunkStore, InMemoryChunkStore, SupabaseChunkStore
from .semantic_cache import SemanticCache
from .semantic_search import SemanticSearchEngine, SearchFailedError, build_rag_context
from .query_classifier import QueryClassifier
from .llm_client import LLMClient, LLMError, LLMClientError, ModelLoadingError
from .graders import RAGGrader
from .routing_logger import RoutingLogger
from .rag_controller import AdaptiveRAGController

__all__ = ['cosine_similarity', 'EmbeddingModel', 'EmbeddingError', 'ChunkStore', 'InMemoryChunkStore', 'SupabaseChunkStore', 'SemanticCache', 'SemanticSearchEngine', 'SearchFailedError', 'build_rag_context', 'QueryClassifier', 'LLMClient', 'LLMError', 'LLMClientError', 'ModelLoadingError', 'RAGGrader', 'RoutingLogger', 'AdaptiveRAGController']
