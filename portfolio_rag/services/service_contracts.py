"""Shared lightweight type contracts for service-layer composition."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Protocol, Sequence

StoreRow = Dict[str, Any]


@dataclass
class ProviderEmbedding:
    """Raw provider answer for one text."""

    vector: List[float]
    token_count: int


class EmbeddingProviderLike(Protocol):
    """Upstream embedding model: text in, vector out."""

    @property
    def model(self) -> str: ...

    async def embed(self, text: str) -> ProviderEmbedding: ...


class VectorStoreLike(Protocol):
    """Corpus store exposing cosine similarity search.

    Rows carry the stored chunk fields plus a ``similarity`` in ``[0, 1]``.
    """

    def similarity_search(
        self,
        vector: Sequence[float],
        kinds: Optional[Sequence[str]],
        threshold: float,
        limit: int,
    ) -> List[StoreRow]: ...

    def conversation_similarity_search(
        self,
        vector: Sequence[float],
        threshold: float,
        limit: int,
    ) -> List[StoreRow]: ...

    def count_chunks(self) -> int: ...


class LexicalStoreLike(Protocol):
    """Corpus store exposing OR-of-substrings pattern search."""

    def pattern_search(
        self,
        patterns: Sequence[str],
        kinds: Optional[Sequence[str]],
        limit: int,
    ) -> List[StoreRow]: ...

    def simple_pattern_search(
        self,
        patterns: Sequence[str],
        kinds: Optional[Sequence[str]],
        limit: int,
    ) -> List[StoreRow]: ...


class CorpusWriterLike(Protocol):
    """Corpus store accepting embedded chunks and conversation turns."""

    def upsert_chunks(self, chunks: Sequence[Any]) -> None: ...

    def add_conversation_turn(
        self,
        *,
        turn_id: str,
        session_id: str,
        user_message: str,
        bot_response: str,
        vector: Sequence[float],
        created_at: Optional[str] = None,
    ) -> None: ...


class CacheClientLike(Protocol):
    """Subset of the ``redis.asyncio.Redis`` API used by the cache service."""

    async def get(self, name: str) -> Optional[str]: ...

    async def set(self, name: str, value: str, ex: Optional[int] = None) -> Any: ...

    async def delete(self, *names: str) -> int: ...

    async def exists(self, *names: str) -> int: ...

    def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[str]: ...

    async def ping(self) -> Any: ...
