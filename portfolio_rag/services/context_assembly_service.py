"""
Context Assembly Service

Greedily packs ranked chunks into a token-bounded text block for the
downstream generator.
"""
from __future__ import annotations

import logging
import math
from typing import List, Sequence

from ..models.search import AssembledContext, ContentChunk
from .rag_config_service import ContextConfig

logger = logging.getLogger(__name__)

CHUNK_SEPARATOR = "\n\n"


class ContextAssemblyService:
    """Packs chunks by estimated token cost until the budget or chunk cap is hit."""

    def __init__(self, *, config: ContextConfig | None = None):
        self.config = config or ContextConfig()

    @staticmethod
    def estimate_tokens(text: str) -> int:
        return math.ceil(len(text or "") / 4)

    @staticmethod
    def format_chunk(chunk: ContentChunk) -> str:
        line = f"{chunk.kind.upper()}: {chunk.body}"
        if chunk.title:
            return f"{chunk.title}\n{line}"
        return line

    def assemble(self, chunks: Sequence[ContentChunk]) -> AssembledContext:
        ordered = sorted(chunks, key=lambda item: item.relevance, reverse=True)
        max_tokens = int(self.config.max_content_length)
        max_chunks = int(self.config.max_context_chunks)

        parts: List[str] = []
        included: List[ContentChunk] = []
        sources: List[str] = []
        total_tokens = 0
        truncated = False

        for chunk in ordered:
            cost = self.estimate_tokens(chunk.body)
            if total_tokens + cost > max_tokens:
                truncated = True
                break

            parts.append(self.format_chunk(chunk))
            included.append(chunk)
            total_tokens += cost
            if chunk.origin not in sources:
                sources.append(chunk.origin)
            if len(included) >= max_chunks:
                truncated = True
                break

        relevance_score = (
            sum(chunk.relevance for chunk in included) / len(included) if included else 0.0
        )
        if truncated:
            logger.info(
                "[RAG] Context truncated at %d/%d chunks (%d tokens)",
                len(included),
                len(ordered),
                total_tokens,
            )
        return AssembledContext(
            content=CHUNK_SEPARATOR.join(parts),
            sources=sources,
            relevance_score=relevance_score,
            chunks=included,
            total_tokens=total_tokens,
            truncated=truncated,
        )
