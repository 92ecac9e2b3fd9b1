"""Similarity engine — cosine ranking of stored chunk embeddings.

Pure functions, no Flask or DB access. Chunks can be ORM rows or any
object with id / document_id / chunk_text / embedding_json attributes.
"""

import json
import logging
import math
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class ScoredChunk:
    id: str
    document_id: str
    chunk_text: str
    similarity: float


def cosine_similarity(a, b):
    """Cosine similarity of two equal-length vectors.

    Returns 0.0 for mismatched lengths or when either vector has zero
    magnitude (never NaN).
    """
    if len(a) != len(b):
        return 0.0

    dot = 0.0
    mag_a = 0.0
    mag_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        mag_a += x * x
        mag_b += y * y

    mag_a = math.sqrt(mag_a)
    mag_b = math.sqrt(mag_b)
    if mag_a == 0 or mag_b == 0:
        return 0.0
    return dot / (mag_a * mag_b)


def _is_component(x):
    return isinstance(x, (int, float)) and not isinstance(x, bool) and math.isfinite(x)


def _parse_embedding(chunk):
    """Stored embedding as a list of floats, or None if it is not one."""
    raw = chunk.embedding_json
    if raw is None:
        return None
    if isinstance(raw, (list, tuple)):
        vec = list(raw)
    else:
        try:
            vec = json.loads(raw)
        except (TypeError, ValueError):
            return None
    if not isinstance(vec, list) or not all(_is_component(x) for x in vec):
        return None
    return [float(x) for x in vec]


def top_k_chunks(query_vector, chunks, k):
    """Return the k chunks most similar to query_vector, best first.

    Chunks with a missing, unparseable or empty embedding, or whose
    dimension differs from the query, are skipped with a warning.
    """
    scored = []
    for chunk in chunks:
        vec = _parse_embedding(chunk)
        if not vec:
            logger.warning(f"Skipping chunk {chunk.id}: missing or invalid embedding")
            continue
        if len(vec) != len(query_vector):
            logger.warning(
                f"Skipping chunk {chunk.id}: dimension {len(vec)} != {len(query_vector)}"
            )
            continue
        scored.append((cosine_similarity(query_vector, vec), chunk))

    scored.sort(key=lambda pair: pair[0], reverse=True)

    return [
        ScoredChunk(
            id=chunk.id,
            document_id=chunk.document_id,
            chunk_text=chunk.chunk_text,
            similarity=round(score, 6),
        )
        for score, chunk in scored[:max(k, 0)]
    ]
