"""
Intent-aware ranking and supersession resolution.

Given hybrid candidates (memory + fused RRF score) the engine:

1. scores every candidate with the profile of the caller's intent:

       score = relevance * (rrf / max rrf)
             + recency   * decay ** hours_since_last_access
             + utility   * tanh(usefulness)
             + jitter    * U[0, 1)

2. walks candidates best-first and resolves each to what should be shown:
   live memories as-is, superseded ones to the live end of their chain,
   deleted ones dropped (or kept when the caller asks for deleted rows);

3. de-duplicates by the resolved id and stops at `limit`.

The engine never writes. The only I/O is the awaited `lookup` used to
follow supersession links.
"""

from __future__ import annotations

import enum
import logging
import math
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from db.memory_repository import HybridRow
from models import Deleted, Live, Memory, SupersededBy, utc_now

logger = logging.getLogger(__name__)

Lookup = Callable[[str], Awaitable[Optional[Memory]]]


class SearchIntent(str, enum.Enum):
    CONTINUITY = "continuity"
    FACT_CHECK = "fact_check"
    FREQUENT = "frequent"
    ASSOCIATIVE = "associative"
    EXPLORE = "explore"

    @classmethod
    def parse(cls, value: object) -> "SearchIntent":
        if isinstance(value, cls):
            return value
        raw = str(value or "").strip().lower()
        if not raw:
            raise ValueError(
                "intent is required. Valid intents: " + ", ".join(i.value for i in cls)
            )
        try:
            return cls(raw)
        except ValueError:
            raise ValueError(
                f"Unknown intent '{value}'. Valid intents: "
                + ", ".join(i.value for i in cls)
            ) from None


@dataclass(frozen=True)
class IntentProfile:
    relevance: float
    recency: float
    utility: float
    jitter: float


INTENT_PROFILES: Dict[SearchIntent, IntentProfile] = {
    SearchIntent.CONTINUITY: IntentProfile(relevance=0.3, recency=0.5, utility=0.2, jitter=0.02),
    SearchIntent.FACT_CHECK: IntentProfile(relevance=0.6, recency=0.1, utility=0.1, jitter=0.0),
    SearchIntent.FREQUENT: IntentProfile(relevance=0.2, recency=0.1, utility=0.6, jitter=0.02),
    SearchIntent.ASSOCIATIVE: IntentProfile(relevance=0.5, recency=0.25, utility=0.25, jitter=0.05),
    SearchIntent.EXPLORE: IntentProfile(relevance=0.3, recency=0.3, utility=0.3, jitter=0.15),
}


@dataclass(frozen=True)
class RankingConfig:
    recency_decay_per_hour: float = 0.995
    rrf_k: int = 60
    overfetch_factor: int = 3
    max_chain_hops: int = 50
    profiles: Mapping[SearchIntent, IntentProfile] = field(
        default_factory=lambda: dict(INTENT_PROFILES)
    )

    def profile_for(self, intent: SearchIntent) -> IntentProfile:
        return self.profiles[intent]


@dataclass(frozen=True)
class ScoreComponents:
    """Weighted contribution of each term to the final score."""

    relevance: float
    recency: float
    utility: float
    jitter: float

    @property
    def total(self) -> float:
        return self.relevance + self.recency + self.utility + self.jitter


@dataclass
class RankedMemory:
    memory: Memory
    score: float
    retrieved_id: str
    components: ScoreComponents
    deleted: bool = False

    def to_dict(self) -> Dict[str, Any]:
        entry = self.memory.to_dict()
        entry["score"] = round(self.score, 6)
        entry["deleted"] = self.deleted or self.memory.is_deleted
        if self.retrieved_id != self.memory.id:
            entry["retrievedId"] = self.retrieved_id
        return entry


def hours_since(memory: Memory, now: datetime) -> float:
    reference = memory.last_accessed or memory.created_at
    return max(0.0, (now - reference).total_seconds() / 3600.0)


class RankingEngine:
    def __init__(
        self,
        config: Optional[RankingConfig] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.config = config or RankingConfig()
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def score_rows(
        self,
        rows: Sequence[HybridRow],
        intent: SearchIntent,
        now: Optional[datetime] = None,
    ) -> List[Tuple[float, ScoreComponents, HybridRow]]:
        """Score rows in input order (one jitter draw per row when the intent has jitter)."""
        profile = self.config.profile_for(intent)
        current = now or utc_now()
        max_rrf = max((row.rrf_score for row in rows), default=0.0)

        scored: List[Tuple[float, ScoreComponents, HybridRow]] = []
        for row in rows:
            memory = row.memory
            fused = row.rrf_score / max_rrf if max_rrf > 0 else 0.0
            recency = self.config.recency_decay_per_hour ** hours_since(memory, current)
            jitter = self.rng.random() if profile.jitter > 0 else 0.0
            components = ScoreComponents(
                relevance=profile.relevance * fused,
                recency=profile.recency * recency,
                utility=profile.utility * math.tanh(memory.usefulness),
                jitter=profile.jitter * jitter,
            )
            scored.append((components.total, components, row))
        return scored

    # ------------------------------------------------------------------
    # Supersession
    # ------------------------------------------------------------------

    async def resolve_chain(self, memory: Memory, lookup: Lookup) -> Optional[Memory]:
        """
        Follow `SupersededBy` links from `memory` to the end of its chain.

        Returns the terminal memory (live or deleted), or None when the chain
        loops, points at a missing memory, or exceeds `max_chain_hops`.
        """
        current = memory
        visited: Set[str] = {memory.id}
        hops = 0
        while isinstance(current.supersession, SupersededBy):
            if hops >= self.config.max_chain_hops:
                logger.warning(
                    "Supersession chain from %s exceeds %d hops; dropping",
                    memory.id,
                    self.config.max_chain_hops,
                )
                return None
            next_id = current.supersession.memory_id
            if next_id in visited:
                logger.warning("Supersession cycle at %s (from %s); dropping", next_id, memory.id)
                return None
            successor = await lookup(next_id)
            if successor is None:
                logger.warning(
                    "Supersession link %s -> %s points at a missing memory; dropping",
                    current.id,
                    next_id,
                )
                return None
            visited.add(next_id)
            current = successor
            hops += 1
        return current

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    async def rank(
        self,
        rows: Sequence[HybridRow],
        intent: SearchIntent,
        limit: int,
        lookup: Lookup,
        include_deleted: bool = False,
        now: Optional[datetime] = None,
    ) -> List[RankedMemory]:
        if limit < 1:
            raise ValueError("limit must be at least 1")

        scored = self.score_rows(rows, intent, now=now)
        scored.sort(key=lambda item: item[0], reverse=True)

        results: List[RankedMemory] = []
        seen: Set[str] = set()
        for score, components, row in scored:
            if len(results) >= limit:
                break
            candidate = row.memory
            state = candidate.supersession
            tombstoned = False
            if isinstance(state, Live):
                resolved: Optional[Memory] = candidate
            elif isinstance(state, Deleted):
                resolved = candidate if include_deleted else None
            else:
                resolved = await self.resolve_chain(candidate, lookup)
                if resolved is not None and resolved.is_deleted:
                    # chain ends in a tombstone: keep the original, marked deleted
                    resolved = candidate if include_deleted else None
                    tombstoned = True
            if resolved is None or resolved.id in seen:
                continue
            seen.add(resolved.id)
            results.append(
                RankedMemory(
                    memory=resolved,
                    score=score,
                    retrieved_id=candidate.id,
                    components=components,
                    deleted=tombstoned or resolved.is_deleted,
                )
            )
        return results
