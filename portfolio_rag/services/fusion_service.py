"""
Fusion Service

Merges semantic and keyword candidates into one ranked list: weighted score
merge keyed by ``(kind, id)``, kind-diversity penalty, sort, body-prefix
deduplication, relevance floor, and truncation.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

from ..models.search import ORIGIN_HYBRID, ContentChunk

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
DEDUP_PREFIX_CHARS = 200


@dataclass
class FusionWeights:
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    diversity_weight: float = 0.1
    relevance_threshold: float = 0.6
    enable_deduplication: bool = True


@dataclass
class FusionResult:
    """Ranked chunks plus per-stage counts."""

    chunks: List[ContentChunk]
    semantic_count: int
    keyword_count: int
    merged_count: int
    total_results: int


class FusionService:
    """Weighted hybrid fusion and re-ranking."""

    @staticmethod
    def _result_key(chunk: ContentChunk) -> Tuple[str, str]:
        return chunk.kind, chunk.id

    @staticmethod
    def dedup_key(body: str) -> str:
        return _WHITESPACE_RE.sub(" ", (body or "").lower()).strip()[:DEDUP_PREFIX_CHARS]

    @classmethod
    def merge(
        cls,
        semantic: Sequence[ContentChunk],
        keyword: Sequence[ContentChunk],
        *,
        semantic_weight: float,
        keyword_weight: float,
    ) -> List[ContentChunk]:
        """Weighted merge. Keyword hits on a semantic key add to it and become hybrid."""
        merged: Dict[Tuple[str, str], ContentChunk] = dict(cls._best_per_key(semantic, semantic_weight))
        for key, chunk in cls._best_per_key(keyword, keyword_weight).items():
            existing = merged.get(key)
            if existing is None:
                merged[key] = chunk
            else:
                merged[key] = existing.with_relevance(existing.relevance + chunk.relevance, origin=ORIGIN_HYBRID)
        return list(merged.values())

    @classmethod
    def _best_per_key(
        cls,
        chunks: Sequence[ContentChunk],
        weight: float,
    ) -> Dict[Tuple[str, str], ContentChunk]:
        # A record matched by several query variants keeps its best weighted score.
        best: Dict[Tuple[str, str], ContentChunk] = {}
        for chunk in chunks:
            key = cls._result_key(chunk)
            weighted = chunk.relevance * weight
            existing = best.get(key)
            if existing is None or weighted > existing.relevance:
                best[key] = chunk.with_relevance(weighted)
        return best

    @staticmethod
    def apply_diversity_penalty(chunks: Sequence[ContentChunk], diversity_weight: float) -> List[ContentChunk]:
        """Penalize repeated kinds, scanning in descending pre-penalty score order.

        The n-th prior occurrence of a kind scales its score by
        ``1 - diversity_weight * n * 0.1``. Ties keep their incoming order.
        """
        ordered = sorted(chunks, key=lambda item: item.relevance, reverse=True)
        if diversity_weight <= 0:
            return ordered
        kind_counts: Dict[str, int] = {}
        penalized: List[ContentChunk] = []
        for chunk in ordered:
            count = kind_counts.get(chunk.kind, 0)
            kind_counts[chunk.kind] = count + 1
            if count > 0:
                chunk = chunk.with_relevance(chunk.relevance * (1 - diversity_weight * count * 0.1))
            penalized.append(chunk)
        return penalized

    @classmethod
    def deduplicate(cls, chunks: Sequence[ContentChunk]) -> List[ContentChunk]:
        seen = set()
        unique: List[ContentChunk] = []
        for chunk in chunks:
            key = cls.dedup_key(chunk.body)
            if key in seen:
                continue
            seen.add(key)
            unique.append(chunk)
        return unique

    def fuse(
        self,
        semantic: Sequence[ContentChunk],
        keyword: Sequence[ContentChunk],
        weights: FusionWeights,
        max_results: int,
    ) -> FusionResult:
        merged = self.merge(
            semantic,
            keyword,
            semantic_weight=weights.semantic_weight,
            keyword_weight=weights.keyword_weight,
        )
        ranked = self.apply_diversity_penalty(merged, weights.diversity_weight)
        ranked.sort(key=lambda item: item.relevance, reverse=True)

        if weights.enable_deduplication:
            ranked = self.deduplicate(ranked)

        filtered = [chunk for chunk in ranked if chunk.relevance >= weights.relevance_threshold]
        selected = filtered[: max(0, int(max_results))]

        logger.debug(
            "Fusion: semantic=%d keyword=%d merged=%d filtered=%d selected=%d",
            len(semantic),
            len(keyword),
            len(merged),
            len(filtered),
            len(selected),
        )
        return FusionResult(
            chunks=selected,
            semantic_count=len(semantic),
            keyword_count=len(keyword),
            merged_count=len(merged),
            total_results=len(filtered),
        )
