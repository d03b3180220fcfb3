from typing import Sequence, Tuple

import numpy as np

from wikirunner.embeddings import EmbeddingProvider
from wikirunner.errors import EmbeddingError, NoCandidatesError


def normalize_rows(matrix: np.ndarray) -> np.ndarray:
    """
    Divide each row by its Euclidean norm. A zero row means the model had nothing to
    say about that text, which is an error rather than a zero score.
    """
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    if np.any(norms == 0) or not np.all(np.isfinite(norms)):
        raise EmbeddingError("Embedding model returned a degenerate (zero-norm) vector.")
    return matrix / norms


def select_best(
    embedder: EmbeddingProvider,
    target_text: str,
    candidates: Sequence[str],
) -> Tuple[str, float]:
    """
    Return the candidate whose embedding is closest to `target_text` by cosine
    similarity, together with that score. Ties go to the earliest candidate.
    """
    if not candidates:
        raise NoCandidatesError("No candidates to score.")
    if not target_text.strip():
        raise EmbeddingError("Cannot embed an empty target.")

    target_vec = np.asarray(embedder.embed([target_text]), dtype=np.float64)
    candidate_vecs = np.asarray(embedder.embed(list(candidates)), dtype=np.float64)

    if target_vec.ndim != 2 or target_vec.shape[0] != 1:
        raise EmbeddingError(f"Unexpected target embedding shape {target_vec.shape}.")
    if candidate_vecs.ndim != 2 or candidate_vecs.shape != (len(candidates), target_vec.shape[1]):
        raise EmbeddingError(
            f"Unexpected candidate embedding shape {candidate_vecs.shape} for {len(candidates)} candidates."
        )

    target_unit = normalize_rows(target_vec)[0]
    scores = normalize_rows(candidate_vecs) @ target_unit

    # argmax returns the first index among equal maxima
    best = int(np.argmax(scores))
    score = float(np.clip(scores[best], -1.0, 1.0))
    return candidates[best], score
