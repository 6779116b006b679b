"""
Retrieval ranking - score candidates against a query embedding.

Implements:
- Cosine similarity scoring over records with embeddings
- Top-K truncation with stable ordering (ties keep storage order)
- The hybrid message/chunk allocation policy
"""

import logging
from dataclasses import dataclass, field
from typing import Generic, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .similarity import cosine_similarity


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetrievalHit(Generic[T]):
    """
    A scored search result.

    Attributes:
        item: The Message or DocumentChunk
        score: Cosine similarity to the query
        rank: 1-based position within its result list
    """
    item: T
    score: float
    rank: int


@dataclass
class HybridResult:
    """Messages and chunks returned by a hybrid search, each sorted by score."""
    messages: List[RetrievalHit] = field(default_factory=list)
    chunks: List[RetrievalHit] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.messages) + len(self.chunks)


def rank_by_similarity(
    query: Sequence[float],
    candidates: Iterable[T],
    top_k: Optional[int] = None,
) -> List[RetrievalHit]:
    """
    Score every candidate that has an embedding and sort by descending score.

    Candidates without an embedding are skipped. ``sorted`` is stable, so
    equal scores keep their input order.

    Args:
        query: Query embedding
        candidates: Records exposing ``embedding``
        top_k: Truncate to this many hits (None = keep all)

    Returns:
        Ranked hits
    """
    scored: List[Tuple[float, T]] = []
    for candidate in candidates:
        embedding = candidate.embedding
        if not embedding:
            continue
        scored.append((cosine_similarity(query, embedding), candidate))

    scored = sorted(scored, key=lambda pair: -pair[0])
    if top_k is not None:
        scored = scored[:max(top_k, 0)]

    return [
        RetrievalHit(item=item, score=score, rank=rank)
        for rank, (score, item) in enumerate(scored, start=1)
    ]


def allocate_hybrid(top_k: int, messages_available: int, chunks_available: int) -> Tuple[int, int]:
    """
    Split a result budget between messages and chunks.

    Starts from an even split (messages get the smaller half), hands any
    shortfall in one pool to the other, then caps both at availability.

    Example:
        >>> allocate_hybrid(10, 3, 20)
        (3, 7)
        >>> allocate_hybrid(10, 0, 5)
        (0, 5)

    Returns:
        (message_count, chunk_count)
    """
    top_k = max(top_k, 0)
    message_count = top_k // 2
    chunk_count = top_k - message_count

    if messages_available < message_count:
        chunk_count += message_count - messages_available
        message_count = messages_available

    if chunks_available < chunk_count:
        message_count += chunk_count - chunks_available
        chunk_count = chunks_available

    message_count = min(message_count, messages_available)
    chunk_count = min(chunk_count, chunks_available)
    return message_count, chunk_count


def select_hybrid(
    ranked_messages: List[RetrievalHit],
    ranked_chunks: List[RetrievalHit],
    top_k: int,
) -> HybridResult:
    """Apply ``allocate_hybrid`` to two ranked lists."""
    message_count, chunk_count = allocate_hybrid(top_k, len(ranked_messages), len(ranked_chunks))
    logger.debug(
        f"Hybrid allocation for top_k={top_k}: {message_count} of {len(ranked_messages)} "
        f"messages, {chunk_count} of {len(ranked_chunks)} chunks"
    )
    return HybridResult(
        messages=ranked_messages[:message_count],
        chunks=ranked_chunks[:chunk_count],
    )
