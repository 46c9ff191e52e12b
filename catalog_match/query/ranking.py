"""
Ranking & aggregation: collapse record-level search hits into catalog-item
recommendations. Pure functions, no I/O.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

from ..core.schema import Recommendation
from ..vector.types import SearchHit


@dataclass(frozen=True)
class RankingPolicy:
    """Tunable weighting of similarity, support and recency."""
    support_weight: float = 0.15
    support_cap: int = 10
    half_life_days: Optional[float] = None
    min_similarity: float = -1.0

    def __post_init__(self):
        if self.support_weight < 0:
            raise ValueError("support_weight must be >= 0")
        if self.support_cap < 1:
            raise ValueError("support_cap must be >= 1")
        if self.half_life_days is not None and self.half_life_days <= 0:
            raise ValueError("half_life_days must be > 0")


DEFAULT_POLICY = RankingPolicy()


def similarity_to_unit(score: float) -> float:
    """Map cosine similarity from [-1, 1] to [0, 1]."""
    return min(1.0, max(0.0, (score + 1.0) / 2.0))


def recency_factor(timestamp: Optional[datetime], now: datetime, half_life_days: Optional[float]) -> float:
    """
    Exponential decay by the age of the underlying record.

    Returns 1.0 when decay is disabled, the timestamp is unknown, or the
    record lies in the future.
    """
    if half_life_days is None or timestamp is None:
        return 1.0
    if (timestamp.tzinfo is None) != (now.tzinfo is None):
        timestamp = timestamp.replace(tzinfo=now.tzinfo)
    age_days = (now - timestamp).total_seconds() / 86400.0
    if age_days <= 0:
        return 1.0
    return 0.5 ** (age_days / half_life_days)


def support_boost(hit_count: int, policy: RankingPolicy) -> float:
    """Factor in [0, 1] that grows with supporting hits and saturates at the cap."""
    n = min(hit_count, policy.support_cap)
    ceiling = 1.0 + policy.support_weight * math.log1p(policy.support_cap - 1)
    return (1.0 + policy.support_weight * math.log1p(n - 1)) / ceiling


def confidence(max_similarity: float, hit_count: int, policy: RankingPolicy = DEFAULT_POLICY) -> float:
    """
    Confidence of a catalog item from its best (recency-weighted, unit-mapped)
    similarity and its number of supporting hits.

    Monotonic in max_similarity, non-decreasing in hit_count.
    """
    if hit_count < 1:
        return 0.0
    return max_similarity * support_boost(hit_count, policy)


def aggregate_hits(hits: Iterable[SearchHit], top_k: int, policy: RankingPolicy = DEFAULT_POLICY,
                   now: Optional[datetime] = None) -> List[Recommendation]:
    """
    Group hits by catalog item, score each group, rank and truncate.

    Args:
        hits: Record-level nearest-neighbor hits
        top_k: Maximum number of recommendations
        policy: Weighting policy
        now: Reference time for recency decay (default: current UTC time)

    Returns:
        Recommendations by confidence desc, catalog_item_id asc, ranks 1..n
    """
    if top_k <= 0:
        return []
    now = now or datetime.now(timezone.utc)

    best: Dict[str, float] = {}
    best_raw: Dict[str, float] = {}
    counts: Dict[str, int] = {}
    for hit in hits:
        if hit.similarity_score < policy.min_similarity:
            continue
        weighted = similarity_to_unit(hit.similarity_score) * recency_factor(
            hit.timestamp, now, policy.half_life_days
        )
        item = hit.catalog_item_id
        counts[item] = counts.get(item, 0) + 1
        best[item] = max(best.get(item, 0.0), weighted)
        best_raw[item] = max(best_raw.get(item, -1.0), hit.similarity_score)

    scored = [
        (round(confidence(best[item], counts[item], policy), 6), item)
        for item in counts
    ]
    scored.sort(key=lambda pair: (-pair[0], pair[1]))

    return [
        Recommendation(
            catalog_item_id=item,
            confidence_score=score,
            supporting_hit_count=counts[item],
            rank=rank,
            max_similarity=round(best_raw[item], 6),
        )
        for rank, (score, item) in enumerate(scored[:top_k], start=1)
    ]
