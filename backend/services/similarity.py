"""Vector similarity helpers used by search, MMR and the semantic cache."""
from typing import Sequence, Union
import numpy as np

Vector = Union[Sequence[float], np.ndarray]


def cosine_similarity(a: Vector, b: Vector) -> float:
    """
    Cosine similarity between two embeddings.

    Args:
        a: First embedding
        b: Second embedding

    Returns:
        Similarity in [-1, 1]; 0.0 if either vector has zero norm

    Raises:
        ValueError: If the embeddings have different dimensions
    """
    vec_a = np.asarray(a, dtype=float)
    vec_b = np.asarray(b, dtype=float)

    if vec_a.shape != vec_b.shape:
        raise ValueError(
            f"Embeddings must have the same dimension ({vec_a.size} != {vec_b.size})"
        )

    norm_a = np.linalg.norm(vec_a)
    norm_b = np.linalg.norm(vec_b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(vec_a, vec_b) / (norm_a * norm_b))
