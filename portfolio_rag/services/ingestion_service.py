"""
Ingestion Service

Turns portfolio content items into embedded corpus chunks: each item body is
split into overlapping windows, every window is embedded, and the resulting
chunks are written to the corpus store in one transaction per item.
Finished chat exchanges are embedded and stored for conversation recall.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from ..models.search import Attributes, ContentChunk
from .embedding_service import DimensionMismatch, EmbeddingService, EmbeddingUnavailable
from .service_contracts import CorpusWriterLike

logger = logging.getLogger(__name__)


@dataclass
class PortfolioItem:
    """One authored piece of portfolio content before chunking."""

    id: str
    kind: str
    body: str
    title: Optional[str] = None
    lexical_tags: Optional[str] = None
    attributes: Attributes = field(default_factory=dict)

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "PortfolioItem":
        tags = payload.get("lexical_tags", payload.get("tags"))
        if isinstance(tags, (list, tuple)):
            tags = ", ".join(str(tag) for tag in tags)
        return cls(
            id=str(payload["id"]),
            kind=str(payload["kind"]),
            body=str(payload.get("body") or ""),
            title=payload.get("title"),
            lexical_tags=tags,
            attributes=dict(payload.get("attributes") or {}),
        )


@dataclass
class IngestionReport:
    items: int = 0
    stored_chunks: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)


class IngestionService:
    """Chunks, embeds and stores portfolio content."""

    def __init__(self, embedding_service: EmbeddingService, store: CorpusWriterLike):
        self.embedding_service = embedding_service
        self.store = store

    def build_windows(self, body: str) -> List[str]:
        collapsed = " ".join((body or "").split())
        if not collapsed:
            return []
        return self.embedding_service.chunk_text(collapsed)

    async def embed_item(self, item: PortfolioItem) -> List[ContentChunk]:
        """Embed every window of an item.

        Hash fallback vectors are rejected: they carry no meaning and would
        pollute similarity search once stored.
        """
        windows = self.build_windows(item.body)
        if not windows:
            raise ValueError("item has no body text")

        chunks: List[ContentChunk] = []
        for index, window in enumerate(windows):
            embedding = await self.embedding_service.embed(window)
            if embedding.is_fallback:
                raise EmbeddingUnavailable(f"embedding provider unavailable for window {index}")
            chunk_id = item.id if len(windows) == 1 else f"{item.id}_chunk_{index}"
            chunks.append(
                ContentChunk(
                    id=chunk_id,
                    kind=item.kind,
                    title=item.title,
                    body=window,
                    attributes={**item.attributes, "source_id": item.id, "chunk_index": index},
                    vector=embedding.vector,
                    lexical_tags=item.lexical_tags,
                )
            )
        return chunks

    async def ingest(self, items: Iterable[PortfolioItem]) -> IngestionReport:
        """Ingest items one by one; a failing item is recorded and skipped.

        Raises:
            DimensionMismatch: the provider returned inconsistent vectors
        """
        report = IngestionReport()
        for item in items:
            report.items += 1
            try:
                chunks = await self.embed_item(item)
                await asyncio.to_thread(self.store.upsert_chunks, chunks)
            except DimensionMismatch:
                raise
            except Exception as e:
                report.failed += 1
                label = item.title or item.id
                report.errors.append(f"Failed to process {label}: {e}")
                logger.error(f"Ingestion failed for {item.id} ({label}): {e}")
                continue

            report.stored_chunks += len(chunks)
            logger.info(f"Stored {len(chunks)} chunks for {item.id} ({item.kind})")

        logger.info(
            "[RAG] ingestion items=%d stored_chunks=%d failed=%d",
            report.items,
            report.stored_chunks,
            report.failed,
        )
        return report

    async def record_conversation(
        self,
        session_id: str,
        user_message: str,
        bot_response: str,
        turn_id: Optional[str] = None,
    ) -> str:
        """Embed the user message of a chat exchange and store the turn.

        Returns the stored turn id.

        Raises:
            EmbeddingUnavailable: only a fallback vector could be produced
        """
        embedding = await self.embedding_service.embed(user_message)
        if embedding.is_fallback:
            raise EmbeddingUnavailable("embedding provider unavailable for conversation turn")

        turn_id = turn_id or uuid.uuid4().hex
        await asyncio.to_thread(
            self.store.add_conversation_turn,
            turn_id=turn_id,
            session_id=session_id,
            user_message=user_message,
            bot_response=bot_response,
            vector=embedding.vector,
        )
        logger.info(f"Stored conversation turn {turn_id} for session {session_id}")
        return turn_id
