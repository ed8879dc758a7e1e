"""
Keyword Search Service

Lexical search adapter: extracts keywords, builds OR-of-substring patterns,
queries the primary corpus (topping up from the flat fallback corpus when the
primary answer is short), and recomputes a keyword relevance score per row.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

from ..models.search import ORIGIN_LEXICAL, ContentChunk
from .service_contracts import LexicalStoreLike

logger = logging.getLogger(__name__)

STOP_WORDS: FrozenSet[str] = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by",
    "is", "are", "was", "were", "be", "been", "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "can", "about", "what", "how",
})

_PUNCTUATION_RE = re.compile(r"[^\w\s]")

EXACT_CONTENT_AWARD = 1.0
TAG_AWARD = 0.7
SUBSTRING_AWARD = 0.5
SIMPLE_TOP_UP_MIN = 5


def extract_keywords(text: str, stop_words: FrozenSet[str] = STOP_WORDS) -> List[str]:
    """Lower-cased, punctuation-free tokens longer than two characters, deduplicated in order."""
    cleaned = _PUNCTUATION_RE.sub(" ", (text or "").lower())
    seen = set()
    keywords: List[str] = []
    for word in cleaned.split():
        if len(word) <= 2 or word in stop_words or word in seen:
            continue
        seen.add(word)
        keywords.append(word)
    return keywords


def build_patterns(keywords: Sequence[str]) -> List[str]:
    """``%kw%`` LIKE patterns with wildcard characters escaped by backslash."""
    patterns = []
    for keyword in keywords:
        escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        patterns.append(f"%{escaped}%")
    return patterns


def calculate_relevance(query: str, body: str, lexical_tags: Optional[str] = None) -> float:
    """Keyword relevance in ``[0, 1]``.

    Each query keyword earns 1.0 for an exact content keyword, 0.7 for a tag
    keyword, 0.5 for a raw substring of the body, else 0. The sum is divided by
    the number of query keywords.
    """
    query_keywords = extract_keywords(query)
    if not query_keywords:
        return 0.0
    lowered_body = (body or "").lower()
    content_keywords = set(extract_keywords(lowered_body))
    tag_keywords = set(extract_keywords(lexical_tags or ""))

    total = 0.0
    for keyword in query_keywords:
        if keyword in content_keywords:
            total += EXACT_CONTENT_AWARD
        elif keyword in tag_keywords:
            total += TAG_AWARD
        elif keyword in lowered_body:
            total += SUBSTRING_AWARD
    return total / len(query_keywords)


class KeywordSearchService:
    """Queries the lexical store for one query variant."""

    def __init__(self, store: LexicalStoreLike):
        self.store = store

    @staticmethod
    def _to_chunk(row: Dict[str, Any], query: str, *, id_prefix: str = "", collection: str = "primary") -> ContentChunk:
        body = str(row.get("body") or "")
        lexical_tags = row.get("lexical_tags")
        attributes = dict(row.get("attributes") or {})
        if collection != "primary":
            attributes["collection"] = collection
        return ContentChunk(
            id=f"{id_prefix}{row['id']}",
            kind=str(row["kind"]),
            title=row.get("title"),
            body=body,
            attributes=attributes,
            lexical_tags=lexical_tags,
            relevance=calculate_relevance(query, body, lexical_tags),
            origin=ORIGIN_LEXICAL,
        )

    async def query_keyword(
        self,
        text: str,
        *,
        kinds: Optional[Sequence[str]],
        limit: int,
    ) -> List[ContentChunk]:
        keywords = extract_keywords(text)
        if not keywords:
            return []
        patterns = build_patterns(keywords)
        kind_filter = list(kinds) if kinds else None

        rows = await asyncio.to_thread(self.store.pattern_search, patterns, kind_filter, limit)
        chunks = [self._to_chunk(row, text) for row in rows]

        if len(chunks) < limit:
            top_up_limit = max(SIMPLE_TOP_UP_MIN, limit - len(chunks))
            simple_rows = await asyncio.to_thread(
                self.store.simple_pattern_search,
                patterns,
                kind_filter,
                top_up_limit,
            )
            chunks.extend(
                self._to_chunk(row, text, id_prefix="simple_", collection="simple")
                for row in simple_rows
            )
            if simple_rows:
                logger.debug("Keyword top-up added %d simple rows for '%s'", len(simple_rows), text)
        return chunks
