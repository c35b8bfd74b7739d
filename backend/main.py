"""Main entry point for the PrivatePDF Adaptive RAG API."""
import json
import logging
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse

from config import PORT, LOG_LEVEL, CORS_ORIGINS, CHAT_MODEL, SUPABASE_URL, SUPABASE_KEY, ROUTING_LOG_FILE
from logger import setup_logging
from models.api import QueryRequest, Source, Metrics, ClassificationInfo, MessageEnvelope, CacheStatsResponse
from models.chat import ChatMessage, Message, MessageState
from services.chunk_store import ChunkStore, InMemoryChunkStore, SupabaseChunkStore
from services.embedding_model import EmbeddingModel
from services.graders import RAGGrader
from services.llm_client import LLMClient
from services.query_classifier import QueryClassifier
from services.rag_controller import AdaptiveRAGController
from services.routing_logger import RoutingLogger
from services.semantic_cache import SemanticCache
from services.semantic_search import SemanticSearchEngine

# Initialize logging
logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="PrivatePDF Adaptive RAG",
    description="Chat with your PDFs using a local LLM and adaptive retrieval",
    version="1.0.0"
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Initialize services (will be done on startup)
chunk_store: ChunkStore = None
search_engine: SemanticSearchEngine = None
llm_client: LLMClient = None
routing_logger: RoutingLogger = None
controller: AdaptiveRAGController = None


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup."""
    global chunk_store, search_engine, llm_client, routing_logger, controller

    setup_logging(LOG_LEVEL)
    logger.info("Initializing PrivatePDF Adaptive RAG services...")

    try:
        if SUPABASE_URL and SUPABASE_KEY:
            chunk_store = SupabaseChunkStore(SUPABASE_URL, SUPABASE_KEY)
        else:
            chunk_store = InMemoryChunkStore()
            logger.info("Supabase not configured, using in-memory chunk store")

        embedding_model = EmbeddingModel()
        search_engine = SemanticSearchEngine(embedding_model, chunk_store, SemanticCache())
        logger.info("Initialized SemanticSearchEngine")

        llm_client = LLMClient()
        routing_logger = RoutingLogger(ROUTING_LOG_FILE)

        controller = AdaptiveRAGController(
            classifier=QueryClassifier(),
            search_engine=search_engine,
            llm_client=llm_client,
            grader=RAGGrader(llm_client),
            routing_logger=routing_logger,
            model=CHAT_MODEL,
        )
        logger.info("Initialized AdaptiveRAGController")

        # A cold embedding model makes the first search slow; failure here is not fatal
        await embedding_model.warmup()

        logger.info("All services initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize services: {e}", exc_info=True)
        raise


@app.on_event("shutdown")
async def shutdown_event():
    """Stop any running generation and close the routing log."""
    if controller is not None:
        controller.stop_generation()
    if routing_logger is not None:
        routing_logger.close()


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "message": "PrivatePDF Adaptive RAG API"}


@app.get("/health")
async def health():
    """Detailed health check including the Ollama server status."""
    ollama_status = await llm_client.check_status()
    return {
        "status": "healthy" if ollama_status["is_running"] else "degraded",
        "service": "privatepdf-adaptive-rag",
        "version": "1.0.0",
        "ollama": ollama_status,
        "is_generating": controller.is_generating,
    }


@app.post("/query")
async def query_endpoint(request: QueryRequest):
    """
    Streaming query endpoint.

    Runs the adaptive RAG pipeline for one user message and streams the answer as
    Server-Sent Events. Sending a new query aborts the one in flight.

    Args:
        request: QueryRequest with text, selected document ids and session history

    Returns:
        StreamingResponse with SSE format:
        - data: {type: "token", content: "..."} for each token
        - data: {type: "reset"} when generation restarts and earlier tokens are void
        - data: {type: "metadata", data: {...}} with the final message
        - data: {type: "error", error: {...}} if the message ended in error
    """
    history = [Message(role=m.role, content=m.content) for m in request.session_history]

    async def generate_stream():
        """Generator function for streaming response."""
        logger.info(f"Processing query: {request.text[:100]}...")
        streamed = ""

        try:
            async for snapshot in controller.send_message(request.text, request.document_ids, history):
                if snapshot.is_streaming:
                    if not snapshot.content.startswith(streamed):
                        # Generation restarted after a model-loading retry
                        streamed = ""
                        yield _sse({"type": "reset"})
                    if len(snapshot.content) > len(streamed):
                        delta = snapshot.content[len(streamed):]
                        streamed = snapshot.content
                        yield _sse({"type": "token", "content": delta})
                    continue

                if snapshot.state == MessageState.ERROR:
                    yield _sse({
                        "type": "error",
                        "error": {"code": "GENERATION_ERROR", "message": snapshot.content}
                    })
                else:
                    yield _sse({"type": "metadata", "data": _envelope(snapshot).model_dump()})

        except Exception as e:
            # Handle unexpected errors
            logger.error(f"Unexpected error during streaming: {e}", exc_info=True)
            yield _sse({
                "type": "error",
                "error": {
                    "code": "UNKNOWN_ERROR",
                    "message": f"Internal server error: {str(e)}"
                }
            })

    return StreamingResponse(
        generate_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no"  # Disable buffering in nginx
        }
    )


@app.post("/query/stop")
async def stop_query():
    """Abort the generation in flight, keeping its partial answer."""
    return {"stopped": controller.stop_generation()}


@app.get("/cache/stats", response_model=CacheStatsResponse)
async def cache_stats() -> CacheStatsResponse:
    stats = search_engine.get_cache_stats()
    return CacheStatsResponse(
        hits=stats.hits,
        misses=stats.misses,
        hit_rate=stats.hit_rate,
        total_entries=stats.total_entries,
    )


@app.delete("/cache")
async def clear_cache():
    search_engine.clear_all_cache()
    return {"status": "cleared"}


@app.delete("/cache/{document_id}")
async def clear_document_cache(document_id: str):
    """Drop cached searches for a document, e.g. after it was re-ingested or deleted."""
    search_engine.clear_document_cache(document_id)
    return {"status": "cleared", "document_id": document_id}


def _sse(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode('utf-8')


def _envelope(message: ChatMessage) -> MessageEnvelope:
    """Convert the final assistant message into its API representation."""
    sources: List[Source] = [
        Source(
            chunk_id=result.chunk.chunk_id,
            document_id=result.chunk.document_id,
            page=result.page_number,
            similarity=result.similarity,
            snippet=result.snippet,
        )
        for result in message.sources or []
    ]

    classification = None
    if message.classification is not None:
        classification = ClassificationInfo(
            type=message.classification.type,
            complexity=message.classification.complexity,
            retrieval_mode=message.classification.retrieval_mode,
            confidence=message.classification.confidence,
            reasoning=message.classification.reasoning,
        )

    metrics = None
    if message.metrics is not None:
        metrics = Metrics(
            total_tokens=message.metrics.total_tokens,
            tokens_per_second=message.metrics.tokens_per_second,
        )

    return MessageEnvelope(
        message_id=message.id,
        state=message.state,
        content=message.content,
        sources=sources,
        metrics=metrics,
        classification=classification,
    )


if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting PrivatePDF Adaptive RAG API on port {PORT}")
    uvicorn.run(app, host="0.0.0.0", port=PORT)
