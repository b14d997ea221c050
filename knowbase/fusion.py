"""Reciprocal Rank Fusion of ranked result lists."""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

DEFAULT_RRF_K = 60


@dataclass
class RankedItem:
    """An entry of one input ranking. Lists are ordered best first."""

    id: str
    score: float = 0.0
    payload: Any = None


@dataclass
class FusedItem:
    id: str
    score: float  # raw score from the first list the item appeared in
    rrf_score: float
    rank: int
    payload: Any = None


def reciprocal_rank_fusion(
    ranked_lists: Sequence[Sequence[RankedItem]],
    k: Optional[int] = DEFAULT_RRF_K,
) -> List[FusedItem]:
    """
    Merge rankings with RRF: ``score(d) = sum(1 / (k + rank_i(d)))``.

    Ranks are 1-based. An id repeated within one list only counts at its
    best rank. Items are returned by descending RRF score; equal scores
    keep the order in which the items were first seen.

    Args:
        ranked_lists: Rankings to merge, each ordered best first
        k: Smoothing constant; values <= 0 fall back to 60

    Returns:
        Fused items with 1-based ``rank``
    """
    if not k or k <= 0:
        k = DEFAULT_RRF_K

    fused: Dict[str, FusedItem] = {}
    for ranking in ranked_lists:
        seen = set()
        for position, item in enumerate(ranking, start=1):
            if item.id in seen:
                continue
            seen.add(item.id)
            contribution = 1.0 / (k + position)
            entry = fused.get(item.id)
            if entry is None:
                fused[item.id] = FusedItem(
                    id=item.id,
                    score=item.score,
                    rrf_score=contribution,
                    rank=0,
                    payload=item.payload,
                )
            else:
                entry.rrf_score += contribution

    # sorted() is stable, dicts keep first-seen order
    ordered = sorted(fused.values(), key=lambda x: x.rrf_score, reverse=True)
    for rank, item in enumerate(ordered, start=1):
        item.rank = rank
    return ordered
