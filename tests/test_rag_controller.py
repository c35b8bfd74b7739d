"""Unit tests for AdaptiveRAGController."""
import sys
sys.path.insert(0, 'backend')

import asyncio
import time
import numpy as np
import pytest
from unittest.mock import AsyncMock, Mock
from models.chat import Message, MessageState
from models.chunk import Chunk, SearchContext, SearchResult
from models.grading import GradeResult, RAGGrades
from models.query import QueryType, RetrievalMode
from services.llm_client import (
    GENERAL_SYSTEM_PROMPT,
    RAG_SYSTEM_PROMPT,
    LLMError,
    ModelLoadingError,
)
from services.query_classifier import QueryClassifier
from services.chunk_store import InMemoryChunkStore
from services.rag_controller import AdaptiveRAGController, strip_think_tags
from services.semantic_cache import SemanticCache
from services.semantic_search import SearchFailedError, SemanticSearchEngine

MODEL = "gemma3:4b-it-q4_K_M"


class FakeLLMClient:
    """Streams fixed tokens; can pretend the model is still loading for the first calls."""

    def __init__(self, tokens=("Hello", " there"), loading_failures=0):
        self.tokens = list(tokens)
        self.loading_failures = loading_failures
        self.calls = []

    async def generate_stream(self, model, messages, temperature=0.2, max_tokens=4096, top_p=0.9):
        self.calls.append({
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "top_p": top_p,
        })
        if self.loading_failures > 0:
            self.loading_failures -= 1
            raise ModelLoadingError(LLMError(code="MODEL_LOADING", message="Model is loading", details={}))

        for token in self.tokens:
            await asyncio.sleep(0)
            yield {"type": "token", "content": token}
        yield {"type": "metadata", "data": {"total_tokens": len(self.tokens), "tokens_per_second": 12.5}}


class StallingLLMClient(FakeLLMClient):
    """Streams one token, then goes quiet like a model stuck on a long prompt."""

    def __init__(self, stall_seconds=3.0, stalling_calls=1):
        super().__init__()
        self.stall_seconds = stall_seconds
        self.stalling_calls = stalling_calls
        self.closed_streams = 0

    async def generate_stream(self, model, messages, temperature=0.2, max_tokens=4096, top_p=0.9):
        self.calls.append({"model": model, "messages": messages})
        stalls = len(self.calls) <= self.stalling_calls
        try:
            yield {"type": "token", "content": "Hello"}
            if stalls:
                await asyncio.sleep(self.stall_seconds)
            yield {"type": "token", "content": " there"}
            yield {"type": "metadata", "data": {"total_tokens": 2, "tokens_per_second": 12.5}}
        finally:
            self.closed_streams += 1


async def wait_for_content(snapshots, content, timeout=1.0):
    deadline = time.perf_counter() + timeout
    while not (snapshots and snapshots[-1].content == content):
        assert time.perf_counter() < deadline, "stream never produced the expected content"
        await asyncio.sleep(0.01)


def make_result(chunk_id, similarity, document_id="doc-1", page_number=1):
    chunk = Chunk(
        chunk_id=chunk_id,
        document_id=document_id,
        text=f"Text of {chunk_id}",
        page_number=page_number,
        embedding=np.array([1.0, 0.0]),
    )
    return SearchResult(chunk=chunk, similarity=similarity, page_number=page_number, snippet=chunk.text)


def search_context(results):
    return SearchContext(query="q", results=results, total_results=len(results), search_time=1.0, model="nomic-embed-text")


def passing_grades():
    grade = GradeResult(passed=True, score=1.0, reasoning="ok")
    return RAGGrades(retrieval=grade, answer=grade, hallucination=grade, overall_passed=True)


@pytest.fixture
def search_engine():
    engine = Mock()
    engine.search = AsyncMock(return_value=search_context([
        make_result("c1", 0.82, page_number=3),
        make_result("c2", 0.71, page_number=5),
    ]))
    return engine


@pytest.fixture
def grader():
    grader = Mock()
    grader.grade_retrieval = AsyncMock(return_value=GradeResult(passed=True, score=1.0, reasoning="relevant"))
    grader.grade_rag_response = AsyncMock(return_value=passing_grades())
    return grader


@pytest.fixture
def llm_client():
    return FakeLLMClient()


@pytest.fixture
def routing_logger():
    return Mock()


@pytest.fixture
def controller(search_engine, llm_client, grader, routing_logger):
    return AdaptiveRAGController(
        classifier=QueryClassifier(),
        search_engine=search_engine,
        llm_client=llm_client,
        grader=grader,
        routing_logger=routing_logger,
        model=MODEL,
        model_loading_backoff=0,
    )


async def run(controller, content, document_ids=None, history=None):
    return [snapshot async for snapshot in controller.send_message(content, document_ids, history)]


class TestScenarios:
    """End-to-end behaviour of a single send."""

    @pytest.mark.asyncio
    async def test_greeting_without_documents(self, controller, search_engine, llm_client, grader):
        snapshots = await run(controller, "Hi")

        final = snapshots[-1]
        assert final.state == MessageState.COMPLETED
        assert final.is_streaming is False
        assert final.content == "Hello there"
        assert final.sources is None
        assert final.metrics.total_tokens == 2
        assert final.metrics.tokens_per_second == 12.5
        assert final.classification.type == QueryType.CONVERSATIONAL
        assert final.classification.retrieval_mode == RetrievalMode.NO_RETRIEVAL

        search_engine.search.assert_not_awaited()
        grader.grade_rag_response.assert_not_awaited()
        assert llm_client.calls[0]["messages"][0].content == GENERAL_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_streams_snapshots(self, controller):
        snapshots = await run(controller, "Hi")

        assert snapshots[0].content == ""
        assert snapshots[0].state == MessageState.STREAMING
        assert [s.content for s in snapshots[1:-1]] == ["Hello", "Hello there"]
        assert all(s.is_streaming for s in snapshots[:-1])
        assert len({s.id for s in snapshots}) == 1

    @pytest.mark.asyncio
    async def test_factual_query_with_document(self, controller, search_engine, llm_client, grader):
        snapshots = await run(controller, "What is the termination clause?", ["doc-1"])

        final = snapshots[-1]
        assert final.state == MessageState.COMPLETED
        assert final.classification.retrieval_mode == RetrievalMode.SINGLE_STEP
        assert [r.chunk.chunk_id for r in final.sources] == ["c1", "c2"]

        query = search_engine.search.await_args.args[0]
        assert query.document_id == "doc-1"
        assert query.top_k == 8
        assert query.min_similarity == 0.55
        assert query.mmr_lambda == 0.9
        assert all(r.similarity >= query.min_similarity for r in final.sources)

        messages = llm_client.calls[0]["messages"]
        assert messages[0].content == RAG_SYSTEM_PROMPT
        assert "[1] Page 3:\nText of c1" in messages[-1].content
        assert "[2] Page 5:\nText of c2" in messages[-1].content
        assert llm_client.calls[0]["temperature"] == 0.3
        assert llm_client.calls[0]["max_tokens"] == 4096
        assert llm_client.calls[0]["top_p"] == 0.9

        grader.grade_rag_response.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_documents_force_retrieval_for_greeting(self, controller, search_engine):
        snapshots = await run(controller, "Hi", ["doc-1"])

        assert snapshots[-1].classification.retrieval_mode == RetrievalMode.SINGLE_STEP
        search_engine.search.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_results_merged_across_documents(self, controller, search_engine):
        contexts = {
            "doc-1": search_context([make_result("a1", 0.7, "doc-1"), make_result("a2", 0.6, "doc-1")]),
            "doc-2": search_context([make_result("b1", 0.9, "doc-2")]),
        }
        search_engine.search.side_effect = lambda query: contexts[query.document_id]

        snapshots = await run(controller, "What is the termination clause?", ["doc-1", " doc-2 "])

        assert [r.chunk.chunk_id for r in snapshots[-1].sources] == ["b1", "a1", "a2"]

    @pytest.mark.asyncio
    async def test_empty_query_skips_retrieval(self, controller, search_engine):
        snapshots = await run(controller, "", ["doc-1"])

        assert snapshots[-1].state == MessageState.COMPLETED
        search_engine.search.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_results_generates_without_context(self, controller, search_engine, grader, llm_client):
        search_engine.search.return_value = search_context([])

        snapshots = await run(controller, "What is the termination clause?", ["doc-1"])

        assert snapshots[-1].state == MessageState.COMPLETED
        assert snapshots[-1].sources is None
        grader.grade_retrieval.assert_not_awaited()
        grader.grade_rag_response.assert_not_awaited()
        assert llm_client.calls[0]["messages"][0].content == GENERAL_SYSTEM_PROMPT

    @pytest.mark.asyncio
    async def test_history_window(self, controller, llm_client):
        history = [Message(role="user", content=f"m{i}") for i in range(12)]

        await run(controller, "What is the termination clause?", ["doc-1"], history)

        messages = llm_client.calls[0]["messages"]
        assert [m.content for m in messages[1:-1]] == [f"m{i}" for i in range(2, 12)]

    @pytest.mark.asyncio
    async def test_think_tags_are_stripped(self, search_engine, grader):
        llm = FakeLLMClient(tokens=("<think>plan the", " answer</think>", "\nThe answer"))
        controller = AdaptiveRAGController(QueryClassifier(), search_engine, llm, grader, model=MODEL)

        snapshots = await run(controller, "Hi")

        assert snapshots[-1].content == "The answer"

    @pytest.mark.asyncio
    async def test_routing_decision_logged(self, controller, routing_logger):
        await run(controller, "What is the termination clause?", ["doc-1"])

        kwargs = routing_logger.log_routing_decision.call_args.kwargs
        assert kwargs["query_type"] == QueryType.FACTUAL
        assert kwargs["state"] == MessageState.COMPLETED
        assert kwargs["retrieval_attempts"] == 1
        assert kwargs["chunks_retrieved"] == 2
        assert kwargs["sufficiency"]["sufficient"] is True
        assert kwargs["grades"]["overall_passed"] is True
        assert kwargs["metrics"] == {"total_tokens": 2, "tokens_per_second": 12.5}


class TestRetrievalLoop:
    """Graded retrieval with relaxation."""

    COMPLEX_QUERY = "Compare the termination clause with the renewal terms"

    @pytest.mark.asyncio
    async def test_multi_step_retries_at_most_three_times(self, controller, search_engine, grader, routing_logger):
        grader.grade_retrieval.return_value = GradeResult(passed=False, score=0.0, reasoning="not relevant")

        snapshots = await run(controller, self.COMPLEX_QUERY, ["doc-1"])

        assert search_engine.search.await_count == 3
        assert grader.grade_retrieval.await_count == 3
        queries = [call.args[0] for call in search_engine.search.await_args_list]
        assert [q.min_similarity for q in queries] == [0.45, 0.35, 0.25]
        assert [q.top_k for q in queries] == [17, 22, 25]
        # Last attempt's chunks are used even though grading failed
        assert len(snapshots[-1].sources) == 2
        assert routing_logger.log_routing_decision.call_args.kwargs["retrieval_attempts"] == 3

    @pytest.mark.asyncio
    async def test_relaxed_thresholds_reach_the_store(self, grader, llm_client):
        embedding_model = Mock()
        embedding_model.model_name = "nomic-embed-text"
        embedding_model.embed_text = AsyncMock(return_value=[1.0, 0.0])
        store = InMemoryChunkStore()
        store.add_chunks([
            Chunk(chunk_id="a", document_id="doc-1", text="Text of a", page_number=1,
                  embedding=np.array([0.6, 0.8])),
            Chunk(chunk_id="b", document_id="doc-1", text="Text of b", page_number=2,
                  embedding=np.array([0.4, np.sqrt(1 - 0.16)])),
        ])
        engine = SemanticSearchEngine(embedding_model, store, SemanticCache())
        grader.grade_retrieval.return_value = GradeResult(passed=False, score=0.0, reasoning="not relevant")
        controller = AdaptiveRAGController(
            QueryClassifier(), engine, llm_client, grader, model=MODEL, model_loading_backoff=0
        )

        snapshots = await run(controller, self.COMPLEX_QUERY, ["doc-1"])

        assert [s.chunk.chunk_id for s in snapshots[-1].sources] == ["a", "b"]
        graded = [call.args[1] for call in grader.grade_retrieval.await_args_list]
        assert [len(results) for results in graded] == [1, 2, 2]
        assert engine.get_cache_stats().hits == 0

    @pytest.mark.asyncio
    async def test_only_first_attempt_reads_cache(self, controller, search_engine, grader):
        grader.grade_retrieval.return_value = GradeResult(passed=False, score=0.0, reasoning="not relevant")

        await run(controller, self.COMPLEX_QUERY, ["doc-1"])

        queries = [call.args[0] for call in search_engine.search.await_args_list]
        assert [q.use_cache for q in queries] == [True, False, False]

    @pytest.mark.asyncio
    async def test_multi_step_stops_on_pass(self, controller, search_engine, grader):
        grader.grade_retrieval.side_effect = [
            GradeResult(passed=False, score=0.0, reasoning="not relevant"),
            GradeResult(passed=True, score=1.0, reasoning="relevant"),
        ]

        await run(controller, self.COMPLEX_QUERY, ["doc-1"])

        assert search_engine.search.await_count == 2

    @pytest.mark.asyncio
    async def test_single_step_makes_one_attempt(self, controller, search_engine, grader):
        grader.grade_retrieval.return_value = GradeResult(passed=False, score=0.0, reasoning="not relevant")

        snapshots = await run(controller, "What is the termination clause?", ["doc-1"])

        assert search_engine.search.await_count == 1
        assert len(snapshots[-1].sources) == 2

    @pytest.mark.asyncio
    async def test_top_k_applied_after_merge(self, controller, search_engine):
        search_engine.search.return_value = search_context(
            [make_result(f"c{i}", 0.9 - i * 0.01) for i in range(12)]
        )

        snapshots = await run(controller, "What is the termination clause?", ["doc-1"])

        assert len(snapshots[-1].sources) == 8


class TestModelLoadingRetry:
    """Retries while Ollama loads the model."""

    @pytest.mark.asyncio
    async def test_retries_until_model_is_loaded(self, search_engine, grader):
        llm = FakeLLMClient(loading_failures=2)
        controller = AdaptiveRAGController(
            QueryClassifier(), search_engine, llm, grader, model=MODEL, model_loading_backoff=0
        )

        snapshots = await run(controller, "Hi")

        assert snapshots[-1].state == MessageState.COMPLETED
        assert snapshots[-1].content == "Hello there"
        assert len(llm.calls) == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self, search_engine, grader):
        llm = FakeLLMClient(loading_failures=10)
        controller = AdaptiveRAGController(
            QueryClassifier(), search_engine, llm, grader,
            model=MODEL, max_model_loading_retries=2, model_loading_backoff=0
        )

        snapshots = await run(controller, "Hi")

        assert snapshots[-1].state == MessageState.ERROR
        assert snapshots[-1].content == "Error: Model is loading"
        assert len(llm.calls) == 3


class TestErrors:
    """Failures end the message in the error state."""

    @pytest.mark.asyncio
    async def test_search_failure_becomes_error_state(self, controller, search_engine):
        search_engine.search.side_effect = SearchFailedError("Search failed: Ollama is down")

        snapshots = await run(controller, "What is the termination clause?", ["doc-1"])

        final = snapshots[-1]
        assert final.state == MessageState.ERROR
        assert final.content == "Error: Search failed: Ollama is down"
        assert final.is_streaming is False
        assert final.sources is None
        assert controller.is_generating is False

    @pytest.mark.asyncio
    async def test_error_is_logged_to_routing_log(self, controller, search_engine, routing_logger):
        search_engine.search.side_effect = SearchFailedError("Search failed: boom")

        await run(controller, "What is the termination clause?", ["doc-1"])

        assert routing_logger.log_routing_decision.call_args.kwargs["state"] == MessageState.ERROR


class TestCancellation:
    """Stopping and superseding generations."""

    @pytest.mark.asyncio
    async def test_new_message_aborts_previous(self, controller):
        first = controller.send_message("Hi")
        assert (await first.__anext__()).content == ""
        assert (await first.__anext__()).content == "Hello"
        assert controller.is_generating is True

        second = await run(controller, "Hey there")
        assert second[-1].state == MessageState.COMPLETED

        rest = [snapshot async for snapshot in first]
        final = rest[-1]
        assert final.state == MessageState.ABORTED
        assert final.content == "Hello"
        assert final.sources is None
        assert final.metrics is None
        assert final.is_streaming is False
        assert controller.is_generating is False

    @pytest.mark.asyncio
    async def test_stop_generation(self, controller, routing_logger):
        snapshots = []
        async for snapshot in controller.send_message("Hi"):
            snapshots.append(snapshot)
            if snapshot.is_streaming and snapshot.content == "Hello":
                assert controller.stop_generation() is True

        assert snapshots[-1].state == MessageState.ABORTED
        assert snapshots[-1].content == "Hello"
        assert routing_logger.log_routing_decision.call_args.kwargs["state"] == MessageState.ABORTED

    @pytest.mark.asyncio
    async def test_stop_during_retrieval_skips_generation(self, controller, search_engine, llm_client):
        async def search_then_stop(query):
            controller.stop_generation()
            return search_context([make_result("c1", 0.8)])

        search_engine.search.side_effect = search_then_stop

        snapshots = await run(controller, "What is the termination clause?", ["doc-1"])

        assert snapshots[-1].state == MessageState.ABORTED
        assert llm_client.calls == []

    @pytest.mark.asyncio
    async def test_stop_interrupts_stalled_stream(self, search_engine, grader):
        llm = StallingLLMClient()
        controller = AdaptiveRAGController(QueryClassifier(), search_engine, llm, grader, model=MODEL)
        snapshots = []

        async def consume():
            async for snapshot in controller.send_message("Hi"):
                snapshots.append(snapshot)

        task = asyncio.create_task(consume())
        await wait_for_content(snapshots, "Hello")
        await asyncio.sleep(0.05)

        started = time.perf_counter()
        assert controller.stop_generation() is True
        await asyncio.wait_for(task, timeout=1.0)

        assert time.perf_counter() - started < 0.5
        assert snapshots[-1].state == MessageState.ABORTED
        assert snapshots[-1].content == "Hello"
        assert llm.closed_streams == 1
        assert controller.is_generating is False

    @pytest.mark.asyncio
    async def test_new_message_interrupts_stalled_stream(self, search_engine, grader):
        llm = StallingLLMClient()
        controller = AdaptiveRAGController(QueryClassifier(), search_engine, llm, grader, model=MODEL)
        first_snapshots = []

        async def consume_first():
            async for snapshot in controller.send_message("Hi"):
                first_snapshots.append(snapshot)

        first = asyncio.create_task(consume_first())
        await wait_for_content(first_snapshots, "Hello")

        started = time.perf_counter()
        second = await asyncio.wait_for(run(controller, "Hey there"), timeout=1.0)
        await asyncio.wait_for(first, timeout=1.0)

        assert time.perf_counter() - started < 0.5
        assert first_snapshots[-1].state == MessageState.ABORTED
        assert second[-1].state == MessageState.COMPLETED
        assert second[-1].content == "Hello there"
        assert llm.closed_streams == 2

    def test_stop_when_idle(self, controller):
        assert controller.stop_generation() is False
        assert controller.is_generating is False


class TestStripThinkTags:
    """Test suite for strip_think_tags."""

    def test_removes_multiline_blocks(self):
        assert strip_think_tags("<think>\nstep 1\nstep 2\n</think>\n\nAnswer") == "Answer"

    def test_case_insensitive(self):
        assert strip_think_tags("<THINK>x</Think>Answer ") == "Answer"

    def test_no_tags(self):
        assert strip_think_tags("  Plain answer  ") == "Plain answer"
