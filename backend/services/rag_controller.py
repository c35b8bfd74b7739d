"""Adaptive RAG controller: classify, retrieve with grading, stream the answer."""
import asyncio
import logging
import re
import time
import uuid
from contextlib import aclosing
from dataclasses import asdict, replace
from typing import Any, AsyncIterator, Dict, List, Optional

from config import CHAT_MODEL, DEFAULT_TOP_P, MODEL_LOADING_MAX_RETRIES, MODEL_LOADING_BACKOFF_SECONDS
from models.chat import ChatMessage, GenerationMetrics, Message, MessageState
from models.chunk import SearchQuery, SearchResult
from models.query import QueryClassification, RetrievalMode, RetrievalStrategy
from services.graders import RAGGrader
from services.llm_client import LLMClient, ModelLoadingError
from services.query_classifier import QueryClassifier
from services.routing_logger import RoutingLogger
from services.semantic_search import SemanticSearchEngine, build_rag_context

logger = logging.getLogger(__name__)

THINK_PATTERN = re.compile(r"<think>.*?</think>", re.IGNORECASE | re.DOTALL)


def strip_think_tags(text: str) -> str:
    """Remove <think>...</think> reasoning blocks emitted by reasoning models."""
    return THINK_PATTERN.sub("", text).strip()


class AdaptiveRAGController:
    """
    Drives one assistant message from query to final answer.

    Each send classifies the query, optionally runs a graded retrieval loop over the
    selected documents, streams the answer from the chat model and grades it. Only one
    generation runs at a time: starting a new send cancels the previous one.
    """

    MULTI_STEP_MAX_ATTEMPTS = 3
    RELAXED_MIN_SIMILARITY_FLOOR = 0.25
    RELAX_MIN_SIMILARITY_STEP = 0.1
    RELAXED_TOP_K_STEP = 5
    RELAXED_TOP_K_CAP = 25

    def __init__(
        self,
        classifier: QueryClassifier,
        search_engine: SemanticSearchEngine,
        llm_client: LLMClient,
        grader: RAGGrader,
        routing_logger: Optional[RoutingLogger] = None,
        model: str = CHAT_MODEL,
        max_model_loading_retries: int = MODEL_LOADING_MAX_RETRIES,
        model_loading_backoff: float = MODEL_LOADING_BACKOFF_SECONDS
    ):
        """
        Initialize the controller.

        Args:
            classifier: QueryClassifier for type, complexity and retrieval mode
            search_engine: SemanticSearchEngine for chunk retrieval
            llm_client: LLMClient used for streaming generation
            grader: RAGGrader used for retrieval and answer grading
            routing_logger: Optional RoutingLogger for per-message decision logs
            model: Chat model used for generation and grading
            max_model_loading_retries: Retries while the model is still loading
            model_loading_backoff: Seconds to wait between those retries
        """
        self.classifier = classifier
        self.search_engine = search_engine
        self.llm_client = llm_client
        self.grader = grader
        self.routing_logger = routing_logger
        self.model = model
        self.max_model_loading_retries = max_model_loading_retries
        self.model_loading_backoff = model_loading_backoff
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def is_generating(self) -> bool:
        return self._cancel_event is not None

    def stop_generation(self) -> bool:
        """
        Abort the in-flight generation, if any.

        Returns:
            True if a generation was running
        """
        if self._cancel_event is None:
            return False
        logger.info("Stop requested - aborting generation")
        self._cancel_event.set()
        return True

    async def send_message(
        self,
        content: str,
        document_ids: Optional[List[str]] = None,
        history: Optional[List[Message]] = None
    ) -> AsyncIterator[ChatMessage]:
        """
        Answer one user message.

        Yields snapshots of the assistant message: first an empty streaming one, then
        one per streamed token, and finally one carrying the terminal state
        (completed, aborted or error). Errors never escape; they end the message in
        the error state with "Error: <message>" as content.

        Args:
            content: User query text
            document_ids: Ids of the documents the user selected
            history: Prior conversation messages, oldest first
        """
        if self._cancel_event is not None:
            logger.info("New message received - aborting in-flight generation")
            self._cancel_event.set()
        cancel_event = asyncio.Event()
        self._cancel_event = cancel_event

        start_time = time.time()
        document_ids = [doc_id.strip() for doc_id in (document_ids or []) if doc_id and doc_id.strip()]
        message = ChatMessage(id=str(uuid.uuid4()), role="assistant")
        trace: Dict[str, Any] = {"attempts": 0, "sufficiency": None, "grades": None}

        yield replace(message)

        try:
            async with aclosing(
                self._run_pipeline(message, content, document_ids, history or [], cancel_event, trace)
            ) as pipeline:
                async for snapshot in pipeline:
                    yield snapshot
        except Exception as e:
            logger.error(f"Generation error: {str(e)}", exc_info=True)
            message.content = f"Error: {str(e)}"
            message.state = MessageState.ERROR
            message.sources = None
            message.metrics = None
        finally:
            if self._cancel_event is cancel_event:
                self._cancel_event = None

        message.is_streaming = False
        self._log_decision(content, message, trace, start_time)
        yield replace(message)

    async def _run_pipeline(
        self,
        message: ChatMessage,
        content: str,
        document_ids: List[str],
        history: List[Message],
        cancel_event: asyncio.Event,
        trace: Dict[str, Any]
    ) -> AsyncIterator[ChatMessage]:
        """Classify, retrieve, generate and grade. Sets the terminal state on `message`."""
        classification = self.classifier.classify_query(content, has_documents=bool(document_ids))
        strategy = self.classifier.get_retrieval_strategy(classification.type, classification.retrieval_mode)
        message.classification = classification
        logger.info(f"Adaptive RAG classification: {classification.reasoning}")

        uses_retrieval = classification.retrieval_mode != RetrievalMode.NO_RETRIEVAL
        sources: List[SearchResult] = []

        if not uses_retrieval:
            logger.info("No retrieval needed - using LLM internal knowledge")
        elif not document_ids:
            logger.info("No documents selected - skipping retrieval")
        elif not content or not content.strip():
            logger.info("Empty query - skipping retrieval")
        else:
            sources = await self._retrieve(content, document_ids, classification, strategy, cancel_event, trace)
            sufficient, reason = self.classifier.check_retrieval_sufficiency(sources, classification.type)
            trace["sufficiency"] = {"sufficient": sufficient, "reason": reason}
            if not sufficient:
                logger.info(f"Retrieval may be insufficient: {reason}")

        if cancel_event.is_set():
            self._mark_aborted(message)
            return

        context = build_rag_context(sources)
        logger.debug(f"Context built from {len(sources)} chunks ({len(context)} chars)")
        messages = LLMClient.build_messages(content, context, history)

        metrics: Optional[GenerationMetrics] = None
        retries = 0
        while True:
            message.content = ""
            try:
                async with aclosing(self.llm_client.generate_stream(
                    self.model,
                    messages,
                    temperature=strategy.temperature,
                    max_tokens=strategy.max_tokens,
                    top_p=DEFAULT_TOP_P,
                )) as stream:
                    while True:
                        event = await self._next_stream_event(stream, cancel_event)
                        if event is None:
                            break
                        if event["type"] == "token":
                            message.content += event["content"]
                            yield replace(message)
                        elif event["type"] == "metadata":
                            data = event["data"]
                            metrics = GenerationMetrics(
                                total_tokens=data["total_tokens"],
                                tokens_per_second=data["tokens_per_second"],
                            )
                break
            except ModelLoadingError:
                if retries >= self.max_model_loading_retries:
                    raise
                retries += 1
                logger.info(
                    f"Model is loading, retrying in {self.model_loading_backoff}s "
                    f"({retries}/{self.max_model_loading_retries})"
                )
                try:
                    await asyncio.wait_for(cancel_event.wait(), timeout=self.model_loading_backoff)
                    break
                except asyncio.TimeoutError:
                    continue

        if cancel_event.is_set():
            self._mark_aborted(message)
            return

        if uses_retrieval and sources:
            grades = await self.grader.grade_rag_response(content, message.content, sources, self.model)
            trace["grades"] = {
                "retrieval": grades.retrieval.passed,
                "answer": grades.answer.passed,
                "hallucination": grades.hallucination.passed,
                "overall_passed": grades.overall_passed,
            }
            if grades.overall_passed:
                logger.info("Answer passed all quality checks")
            else:
                logger.warning(
                    f"Answer quality check failed: retrieval={grades.retrieval.reasoning}, "
                    f"answer={grades.answer.reasoning}, hallucination={grades.hallucination.reasoning}"
                )

            if cancel_event.is_set():
                self._mark_aborted(message)
                return

        message.content = strip_think_tags(message.content)
        message.sources = sources or None
        message.metrics = metrics
        message.state = MessageState.COMPLETED

    async def _retrieve(
        self,
        content: str,
        document_ids: List[str],
        classification: QueryClassification,
        strategy: RetrievalStrategy,
        cancel_event: asyncio.Event,
        trace: Dict[str, Any]
    ) -> List[SearchResult]:
        """
        Graded retrieval loop.

        Single-step retrieval makes one attempt; multi-step makes up to three,
        relaxing min_similarity (floor 0.25) and widening top_k (cap 25) after each
        attempt whose top chunk fails the relevance grade. The last attempt's chunks
        are used even if they fail.
        """
        max_attempts = self.MULTI_STEP_MAX_ATTEMPTS if classification.retrieval_mode == RetrievalMode.MULTI_STEP else 1
        sources: List[SearchResult] = []
        attempts = 0

        while attempts < max_attempts:
            if cancel_event.is_set():
                break

            attempts += 1
            logger.info(
                f"Retrieval attempt {attempts}/{max_attempts} "
                f"(top_k={strategy.top_k}, min_similarity={strategy.min_similarity:.2f})"
            )

            candidates: List[SearchResult] = []
            for document_id in document_ids:
                search_context = await self.search_engine.search(SearchQuery(
                    text=content,
                    document_id=document_id,
                    top_k=strategy.top_k,
                    min_similarity=strategy.min_similarity,
                    mmr_lambda=strategy.mmr_lambda,
                    use_cache=attempts == 1,
                ))
                candidates.extend(search_context.results)

            candidates.sort(key=lambda result: result.similarity, reverse=True)
            top_results = candidates[:strategy.top_k]

            if not top_results:
                logger.warning("No chunks retrieved")
                break

            if cancel_event.is_set():
                break

            grade = await self.grader.grade_retrieval(content, top_results, self.model)

            if grade.passed:
                logger.info("Retrieval passed grading")
                sources = top_results
                break

            if attempts < max_attempts:
                strategy.min_similarity = round(
                    max(self.RELAXED_MIN_SIMILARITY_FLOOR, strategy.min_similarity - self.RELAX_MIN_SIMILARITY_STEP), 2
                )
                strategy.top_k = min(strategy.top_k + self.RELAXED_TOP_K_STEP, self.RELAXED_TOP_K_CAP)
                logger.info(f"Retrieval failed grading ({grade.reasoning}), retrying with relaxed thresholds")
            else:
                logger.info(f"Using chunks despite failed grading: {grade.reasoning}")
                sources = top_results

        trace["attempts"] = attempts
        logger.info(f"Retrieved {len(sources)} chunks after {attempts} attempt(s)")
        return sources

    @staticmethod
    async def _next_stream_event(
        stream: AsyncIterator[Dict[str, Any]],
        cancel_event: asyncio.Event
    ) -> Optional[Dict[str, Any]]:
        """
        Wait for the next stream event or for cancellation, whichever comes first.

        Returns None when the stream is exhausted or the generation was cancelled. A
        pending read is cancelled and awaited so the stream can be closed right away.
        """
        if cancel_event.is_set():
            return None

        async def read_next():
            try:
                return await stream.__anext__()
            except StopAsyncIteration:
                return None

        next_task = asyncio.ensure_future(read_next())
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            await asyncio.wait({next_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (next_task, cancel_task):
                if not task.done():
                    task.cancel()
            await asyncio.wait({next_task, cancel_task})

        if cancel_event.is_set():
            return None
        return next_task.result()

    @staticmethod
    def _mark_aborted(message: ChatMessage) -> None:
        message.state = MessageState.ABORTED
        message.sources = None
        message.metrics = None
        logger.info(f"Generation aborted with {len(message.content)} chars of partial text")

    def _log_decision(self, content: str, message: ChatMessage, trace: Dict[str, Any], start_time: float) -> None:
        if self.routing_logger is None or message.classification is None:
            return

        classification = message.classification
        try:
            self.routing_logger.log_routing_decision(
                query=content,
                query_type=classification.type,
                complexity=classification.complexity,
                retrieval_mode=classification.retrieval_mode,
                confidence=classification.confidence,
                state=message.state,
                latency_ms=int((time.time() - start_time) * 1000),
                retrieval_attempts=trace["attempts"],
                chunks_retrieved=len(message.sources or []),
                sufficiency=trace["sufficiency"],
                grades=trace["grades"],
                metrics=asdict(message.metrics) if message.metrics else None,
            )
        except OSError as e:
            logger.warning(f"Failed to write routing decision: {str(e)}")
