"""Search-related data models."""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator

AttributeValue = Union[str, int, float, bool, None, List[Any], Dict[str, Any]]
Attributes = Dict[str, AttributeValue]

ORIGIN_SEMANTIC = "semantic"
ORIGIN_LEXICAL = "lexical"
ORIGIN_HYBRID = "hybrid"
ORIGIN_CONVERSATION = "conversation-recall"

ChunkOrigin = Literal["semantic", "lexical", "hybrid", "conversation-recall"]


@dataclass(frozen=True)
class ContentChunk:
    """One retrievable record plus its per-query ranking annotations.

    Stored records are never mutated during ranking; ``with_relevance`` returns
    an annotated copy instead.
    """

    id: str
    kind: str
    body: str
    title: Optional[str] = None
    attributes: Attributes = field(default_factory=dict)
    vector: Optional[List[float]] = None
    lexical_tags: Optional[str] = None
    relevance: float = 0.0
    origin: ChunkOrigin = ORIGIN_SEMANTIC

    def with_relevance(self, relevance: float, origin: Optional[str] = None) -> "ContentChunk":
        if origin is None:
            return replace(self, relevance=float(relevance))
        return replace(self, relevance=float(relevance), origin=origin)

    def to_dict(self, include_vector: bool = False) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "id": self.id,
            "kind": self.kind,
            "title": self.title,
            "body": self.body,
            "attributes": dict(self.attributes),
            "lexical_tags": self.lexical_tags,
            "relevance": self.relevance,
            "origin": self.origin,
        }
        if include_vector and self.vector is not None:
            payload["vector"] = list(self.vector)
        return payload

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ContentChunk":
        vector = payload.get("vector")
        return cls(
            id=str(payload.get("id", "")),
            kind=str(payload.get("kind", "")),
            body=str(payload.get("body", "")),
            title=payload.get("title"),
            attributes=dict(payload.get("attributes") or {}),
            vector=[float(x) for x in vector] if vector is not None else None,
            lexical_tags=payload.get("lexical_tags"),
            relevance=float(payload.get("relevance", 0.0) or 0.0),
            origin=payload.get("origin") or ORIGIN_SEMANTIC,
        )


class SearchRequest(BaseModel):
    """Validated parameters for one retrieval call."""

    query: str = Field(..., min_length=1, description="Raw user query")
    content_kinds: List[str] = Field(
        default_factory=list,
        description="Allowed chunk kinds; empty means all kinds",
    )
    max_results: int = Field(10, ge=1, le=100, description="Result cap")
    similarity_threshold: float = Field(0.7, ge=0.0, le=1.0, description="Similarity floor")
    include_semantic_search: bool = Field(True, description="Run the embedding similarity path")
    include_keyword_search: bool = Field(True, description="Run the keyword pattern path")
    context_types: List[str] = Field(
        default_factory=lambda: ["content", "conversation"],
        description="Auxiliary context classes to search",
    )

    @field_validator("query")
    @classmethod
    def query_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("query must not be blank")
        return value

    @property
    def searches_conversations(self) -> bool:
        return "conversation" in self.context_types

    def cache_fingerprint(self) -> str:
        """Deterministic hash of the request content."""
        key_data = {
            "query": self.query,
            "content_kinds": sorted(self.content_kinds),
            "max_results": self.max_results,
            "similarity_threshold": self.similarity_threshold,
            "include_semantic_search": self.include_semantic_search,
            "include_keyword_search": self.include_keyword_search,
            "context_types": sorted(self.context_types),
        }
        raw = json.dumps(key_data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


@dataclass
class EntityMatch:
    entity: str
    type: str
    confidence: float


@dataclass
class QueryIntent:
    intent: str
    confidence: float
    entities: List[EntityMatch] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)


@dataclass
class SynonymGroup:
    original: str
    synonyms: List[str]


@dataclass
class QueryExpansion:
    original_query: str
    expanded_queries: List[str]
    synonym_groups: List[SynonymGroup] = field(default_factory=list)


@dataclass
class SearchOutcome:
    """Result of one search call."""

    chunks: List[ContentChunk]
    total_results: int
    search_time_ms: float
    cache_hit: bool = False
    semantic_results: int = 0
    keyword_results: int = 0
    merged_results: int = 0
    query_intent: Optional[str] = None
    expanded_queries: Optional[List[str]] = None

    @classmethod
    def empty(cls, search_time_ms: float = 0.0) -> "SearchOutcome":
        return cls(chunks=[], total_results=0, search_time_ms=search_time_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "total_results": self.total_results,
            "search_time_ms": self.search_time_ms,
            "cache_hit": self.cache_hit,
            "semantic_results": self.semantic_results,
            "keyword_results": self.keyword_results,
            "merged_results": self.merged_results,
            "query_intent": self.query_intent,
            "expanded_queries": list(self.expanded_queries) if self.expanded_queries else None,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "SearchOutcome":
        expanded = payload.get("expanded_queries")
        return cls(
            chunks=[ContentChunk.from_dict(item) for item in payload.get("chunks") or []],
            total_results=int(payload.get("total_results", 0) or 0),
            search_time_ms=float(payload.get("search_time_ms", 0.0) or 0.0),
            cache_hit=bool(payload.get("cache_hit", False)),
            semantic_results=int(payload.get("semantic_results", 0) or 0),
            keyword_results=int(payload.get("keyword_results", 0) or 0),
            merged_results=int(payload.get("merged_results", 0) or 0),
            query_intent=payload.get("query_intent"),
            expanded_queries=list(expanded) if expanded else None,
        )


@dataclass
class AssembledContext:
    """Token-bounded context block handed to the text generator."""

    content: str
    sources: List[str]
    relevance_score: float
    chunks: List[ContentChunk]
    total_tokens: int
    truncated: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "content": self.content,
            "sources": list(self.sources),
            "relevance_score": self.relevance_score,
            "chunks": [chunk.to_dict() for chunk in self.chunks],
            "total_tokens": self.total_tokens,
            "truncated": self.truncated,
        }
