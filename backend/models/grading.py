"""Grading data models."""
from dataclasses import dataclass

@dataclass
class GradeResult:
    """Outcome of one LLM-judged yes/no check."""
    passed: bool
    score: float  # 1 = yes, 0 = no, 0.5 = grading call failed
    reasoning: str

@dataclass
class RAGGrades:
    """Combined outcome of the retrieval, answer and hallucination checks."""
    retrieval: GradeResult
    answer: GradeResult
    hallucination: GradeResult
    overall_passed: bool
