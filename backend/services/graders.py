"""LLM-judged yes/no grading of retrieval relevance, answer quality and grounding."""
import asyncio
import logging
from typing import List

from models.chat import Message
from models.chunk import SearchResult
from models.grading import GradeResult, RAGGrades
from services.llm_client import LLMClient

logger = logging.getLogger(__name__)


RETRIEVAL_GRADER_PROMPT = """You are a grader assessing relevance of a retrieved document to a user question.

Retrieved Document:
{document}

User Question: {query}

Give a binary score 'yes' or 'no' to indicate whether the document is relevant to the question.
Answer with ONLY 'yes' or 'no'."""

ANSWER_GRADER_PROMPT = """You are a grader assessing whether an answer addresses a user question.

User Question: {query}

Generated Answer: {answer}

Give a binary score 'yes' or 'no' to indicate whether the answer addresses the question.
Answer with ONLY 'yes' or 'no'."""

HALLUCINATION_GRADER_PROMPT = """You are a grader assessing whether an answer is grounded in / supported by a set of facts.

Facts:
{facts}

Generated Answer: {answer}

Give a binary score 'yes' or 'no':
- 'yes' means the answer is grounded in the facts
- 'no' means the answer contains information not found in the facts (hallucination)

Answer with ONLY 'yes' or 'no'."""


class RAGGrader:
    """
    Binary graders backed by the active chat model.

    Every grader is a single deterministic, very short completion. Grading is
    advisory: when the call itself fails the check passes with score 0.5 so a
    flaky grader never blocks an answer.
    """

    GRADER_TEMPERATURE = 0.0
    GRADER_MAX_TOKENS = 10
    MAX_HALLUCINATION_DOCUMENTS = 3

    def __init__(self, llm_client: LLMClient):
        self.llm_client = llm_client

    async def grade_retrieval(self, query: str, documents: List[SearchResult], model: str) -> GradeResult:
        """
        Check whether the top retrieved chunk is relevant to the query.

        Only documents[0] is sent to the grader.
        """
        if not documents:
            return GradeResult(passed=False, score=0.0, reasoning="No documents retrieved")

        prompt = RETRIEVAL_GRADER_PROMPT.format(document=documents[0].chunk.text, query=query)
        return await self._grade(
            "Retrieval",
            "You are a document relevance grader. Answer with only yes or no.",
            prompt,
            model,
            passed_reason="Document is relevant to query",
            failed_reason="Document not relevant to query",
            fallback_reason="Grading failed - assuming relevance",
        )

    async def grade_answer(self, query: str, answer: str, model: str) -> GradeResult:
        """Check whether the answer addresses the question."""
        prompt = ANSWER_GRADER_PROMPT.format(query=query, answer=answer)
        return await self._grade(
            "Answer",
            "You are an answer quality grader. Answer with only yes or no.",
            prompt,
            model,
            passed_reason="Answer addresses the question",
            failed_reason="Answer does not address the question",
            fallback_reason="Grading failed - assuming answer is adequate",
        )

    async def grade_hallucination(self, answer: str, documents: List[SearchResult], model: str) -> GradeResult:
        """
        Check whether the answer is grounded in the retrieved chunks.

        At most the first three chunks are used as facts. With no chunks there is
        nothing to contradict, so the check passes.
        """
        if not documents:
            return GradeResult(passed=True, score=1.0, reasoning="No retrieval documents - using LLM knowledge")

        facts = "\n\n".join(
            f"Document {index}:\n{result.chunk.text}"
            for index, result in enumerate(documents[:self.MAX_HALLUCINATION_DOCUMENTS], start=1)
        )
        prompt = HALLUCINATION_GRADER_PROMPT.format(facts=facts, answer=answer)
        return await self._grade(
            "Hallucination",
            "You are a hallucination detector. Answer with only yes or no.",
            prompt,
            model,
            passed_reason="Answer is grounded in documents",
            failed_reason="Answer contains hallucinations",
            fallback_reason="Grading failed - assuming answer is grounded",
        )

    async def grade_rag_response(
        self,
        query: str,
        answer: str,
        documents: List[SearchResult],
        model: str
    ) -> RAGGrades:
        """
        Run all three graders concurrently.

        Retrieval is auto-passed when nothing was retrieved.

        Returns:
            RAGGrades with overall_passed set only if every check passed
        """
        if documents:
            retrieval_task = self.grade_retrieval(query, documents, model)
        else:
            retrieval_task = self._auto_pass("No retrieval needed")

        retrieval, answer_grade, hallucination = await asyncio.gather(
            retrieval_task,
            self.grade_answer(query, answer, model),
            self.grade_hallucination(answer, documents, model),
        )

        overall_passed = retrieval.passed and answer_grade.passed and hallucination.passed
        logger.debug(
            f"RAG grades: retrieval={retrieval.passed}, answer={answer_grade.passed}, "
            f"hallucination={hallucination.passed}"
        )
        return RAGGrades(
            retrieval=retrieval,
            answer=answer_grade,
            hallucination=hallucination,
            overall_passed=overall_passed,
        )

    async def _grade(
        self,
        name: str,
        system_prompt: str,
        prompt: str,
        model: str,
        passed_reason: str,
        failed_reason: str,
        fallback_reason: str
    ) -> GradeResult:
        messages = [
            Message(role="system", content=system_prompt),
            Message(role="user", content=prompt),
        ]

        try:
            response = await self.llm_client.chat_sync(
                model,
                messages,
                temperature=self.GRADER_TEMPERATURE,
                max_tokens=self.GRADER_MAX_TOKENS,
            )
        except Exception as e:
            logger.error(f"{name} grading failed: {str(e)}", exc_info=True)
            return GradeResult(passed=True, score=0.5, reasoning=fallback_reason)

        passed = "yes" in response.lower().strip()
        return GradeResult(
            passed=passed,
            score=1.0 if passed else 0.0,
            reasoning=passed_reason if passed else failed_reason,
        )

    @staticmethod
    async def _auto_pass(reasoning: str) -> GradeResult:
        return GradeResult(passed=True, score=1.0, reasoning=reasoning)
