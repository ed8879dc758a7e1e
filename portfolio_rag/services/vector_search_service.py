"""
Vector Search Service

Similarity search adapter: turns store rows into ``ContentChunk`` candidates
for the primary corpus and for recalled conversation turns.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from ..models.search import ORIGIN_CONVERSATION, ORIGIN_SEMANTIC, ContentChunk
from .embedding_service import EmbeddingResult
from .service_contracts import VectorStoreLike

logger = logging.getLogger(__name__)

CONVERSATION_KIND = "conversation"
CONVERSATION_LIMIT_CAP = 5


class VectorSearchService:
    """Queries the vector store with a query embedding."""

    def __init__(self, store: VectorStoreLike, *, fallback_similarity_weight: float = 0.5):
        self.store = store
        self.fallback_similarity_weight = max(0.0, min(1.0, float(fallback_similarity_weight)))

    def _similarity_scale(self, embedding: EmbeddingResult) -> float:
        return self.fallback_similarity_weight if embedding.is_fallback else 1.0

    @staticmethod
    def _tag_attributes(attributes: Dict[str, Any], embedding: EmbeddingResult) -> Dict[str, Any]:
        if embedding.is_fallback:
            return {**attributes, "query_embedding": "fallback"}
        return attributes

    async def query_similar(
        self,
        embedding: EmbeddingResult,
        *,
        kinds: Optional[Sequence[str]],
        threshold: float,
        limit: int,
    ) -> List[ContentChunk]:
        """Chunks with rescaled similarity >= threshold, most similar first.

        Similarities computed from a fallback embedding are discounted by
        ``fallback_similarity_weight``; a weight of 0 returns nothing.
        """
        scale = self._similarity_scale(embedding)
        if scale <= 0.0:
            logger.info("[RAG] Skipping similarity search for fallback query embedding")
            return []

        rows = await asyncio.to_thread(
            self.store.similarity_search,
            embedding.vector,
            list(kinds) if kinds else None,
            threshold,
            limit,
        )
        chunks: List[ContentChunk] = []
        for row in rows:
            similarity = float(row.get("similarity", 0.0)) * scale
            chunks.append(
                ContentChunk(
                    id=str(row["id"]),
                    kind=str(row["kind"]),
                    title=row.get("title"),
                    body=str(row.get("body") or ""),
                    attributes=self._tag_attributes(dict(row.get("attributes") or {}), embedding),
                    lexical_tags=row.get("lexical_tags"),
                    relevance=similarity,
                    origin=ORIGIN_SEMANTIC,
                )
            )
        return chunks

    async def query_conversations(
        self,
        embedding: EmbeddingResult,
        *,
        threshold: float,
        limit: int,
    ) -> List[ContentChunk]:
        """Recall prior conversation turns similar to the query."""
        scale = self._similarity_scale(embedding)
        if scale <= 0.0:
            return []

        capped_limit = min(int(limit), CONVERSATION_LIMIT_CAP)
        rows = await asyncio.to_thread(
            self.store.conversation_similarity_search,
            embedding.vector,
            threshold,
            capped_limit,
        )
        chunks: List[ContentChunk] = []
        for row in rows:
            user_message = str(row.get("user_message") or "")
            bot_response = str(row.get("bot_response") or "")
            attributes = {
                "session_id": row.get("session_id"),
                "created_at": row.get("created_at"),
                "user_message": user_message,
                "bot_response": bot_response,
            }
            chunks.append(
                ContentChunk(
                    id=f"conv_{row['id']}",
                    kind=CONVERSATION_KIND,
                    body=f"{user_message} {bot_response}",
                    attributes=self._tag_attributes(attributes, embedding),
                    relevance=float(row.get("similarity", 0.0)) * scale,
                    origin=ORIGIN_CONVERSATION,
                )
            )
        return chunks
