"""
RAG Service

Hybrid retrieval pipeline: query understanding, concurrent semantic and
keyword search over every query variant, weighted fusion, result caching,
and context assembly.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, fields, replace
from typing import Any, Dict, List, Optional, Sequence, Union

from ..models.search import AssembledContext, ContentChunk, SearchOutcome, SearchRequest
from .cache_service import SEARCH_PREFIX, CacheService
from .context_assembly_service import ContextAssemblyService
from .embedding_service import DimensionMismatch, EmbeddingService
from .fusion_service import FusionService, FusionWeights
from .keyword_search_service import KeywordSearchService
from .query_understanding_service import QueryUnderstandingService
from .rag_config_service import ContextConfig, RetrievalConfig
from .vector_search_service import VectorSearchService

logger = logging.getLogger(__name__)

_CONTEXT_KEYS = {item.name for item in fields(ContextConfig)}
_RETRIEVAL_KEYS = {item.name for item in fields(RetrievalConfig)}


def _preview(text: str, limit: int = 80) -> str:
    return text if len(text) <= limit else f"{text[:limit]}..."


class RagService:
    """Service for hybrid retrieval and context assembly"""

    def __init__(
        self,
        *,
        embedding_service: EmbeddingService,
        vector_search: VectorSearchService,
        keyword_search: KeywordSearchService,
        query_understanding: Optional[QueryUnderstandingService] = None,
        fusion: Optional[FusionService] = None,
        context_assembly: Optional[ContextAssemblyService] = None,
        cache: Optional[CacheService] = None,
        config: Optional[RetrievalConfig] = None,
        search_cache_ttl_seconds: int = 600,
    ):
        self.embedding_service = embedding_service
        self.vector_search = vector_search
        self.keyword_search = keyword_search
        self.query_understanding = query_understanding or QueryUnderstandingService()
        self.fusion = fusion or FusionService()
        self.context_assembly = context_assembly or ContextAssemblyService()
        self.cache = cache
        self.config = config or RetrievalConfig()
        self.search_cache_ttl_seconds = search_cache_ttl_seconds

    @classmethod
    def create(cls, settings: Any = None) -> "RagService":
        """Build the default service graph from settings and the YAML config."""
        from ..config import get_settings
        from ..logging_config import setup_logging
        from .corpus_store import SqliteCorpusStore
        from .rag_config_service import RagConfigService

        settings = settings or get_settings()
        setup_logging(settings.log_level, log_dir=settings.log_dir, log_to_file=settings.log_to_file)
        config_path = str(settings.rag_config_path) if settings.rag_config_path else None
        rag_config = RagConfigService(config_path).config

        cache = None
        if settings.cache_enabled:
            cache = CacheService.from_url(settings.redis_url, config=rag_config.cache)

        embedding_service = EmbeddingService.from_config(
            rag_config.embedding,
            api_key=settings.openai_api_key,
            base_url=settings.openai_base_url,
            cache=cache,
            cache_ttl_seconds=rag_config.cache.embedding_ttl_seconds,
        )
        store = SqliteCorpusStore(str(settings.corpus_db_path))
        return cls(
            embedding_service=embedding_service,
            vector_search=VectorSearchService(
                store,
                fallback_similarity_weight=rag_config.retrieval.fallback_similarity_weight,
            ),
            keyword_search=KeywordSearchService(store),
            context_assembly=ContextAssemblyService(config=rag_config.context),
            cache=cache,
            config=rag_config.retrieval,
            search_cache_ttl_seconds=rag_config.cache.search_ttl_seconds,
        )

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()

    # ==================== Configuration ====================

    def update_config(self, **changes: Any) -> None:
        """Update retrieval and context settings in place."""
        unknown = set(changes) - _RETRIEVAL_KEYS - _CONTEXT_KEYS
        if unknown:
            raise ValueError(f"Unknown RAG config keys: {sorted(unknown)}")
        retrieval_changes = {k: v for k, v in changes.items() if k in _RETRIEVAL_KEYS}
        context_changes = {k: v for k, v in changes.items() if k in _CONTEXT_KEYS}
        if retrieval_changes:
            self.config = replace(self.config, **retrieval_changes)
        if context_changes:
            self.context_assembly.config = replace(self.context_assembly.config, **context_changes)

    def get_config(self) -> Dict[str, Any]:
        return {**asdict(self.config), **asdict(self.context_assembly.config)}

    def _fusion_weights(self) -> FusionWeights:
        return FusionWeights(
            semantic_weight=self.config.semantic_weight,
            keyword_weight=self.config.keyword_weight,
            diversity_weight=self.config.diversity_weight,
            relevance_threshold=self.config.relevance_threshold,
            enable_deduplication=self.config.enable_deduplication,
        )

    # ==================== Retrieval paths ====================

    async def _semantic_path(self, variants: Sequence[str], request: SearchRequest) -> List[ContentChunk]:
        results: List[ContentChunk] = []
        total = len(variants)
        for index, variant in enumerate(variants, start=1):
            try:
                embedding = await self.embedding_service.embed(variant)
                results.extend(
                    await self.vector_search.query_similar(
                        embedding,
                        kinds=request.content_kinds,
                        threshold=request.similarity_threshold,
                        limit=request.max_results,
                    )
                )
            except DimensionMismatch:
                raise
            except Exception as e:
                logger.warning(
                    "RAG semantic search failed for query[%d/%d]='%s': %s",
                    index,
                    total,
                    _preview(variant),
                    e,
                )
                continue

            if not request.searches_conversations:
                continue
            try:
                results.extend(
                    await self.vector_search.query_conversations(
                        embedding,
                        threshold=request.similarity_threshold,
                        limit=request.max_results,
                    )
                )
            except DimensionMismatch:
                raise
            except Exception as e:
                logger.warning(
                    "RAG conversation search failed for query[%d/%d]='%s': %s",
                    index,
                    total,
                    _preview(variant),
                    e,
                )
        return results

    async def _keyword_path(self, variants: Sequence[str], request: SearchRequest) -> List[ContentChunk]:
        results: List[ContentChunk] = []
        total = len(variants)
        for index, variant in enumerate(variants, start=1):
            try:
                results.extend(
                    await self.keyword_search.query_keyword(
                        variant,
                        kinds=request.content_kinds,
                        limit=request.max_results,
                    )
                )
            except Exception as e:
                logger.warning(
                    "RAG keyword search failed for query[%d/%d]='%s': %s",
                    index,
                    total,
                    _preview(variant),
                    e,
                )
        return results

    @staticmethod
    async def _skipped_path() -> List[ContentChunk]:
        return []

    # ==================== Search ====================

    def _search_cache_key(self, request: SearchRequest) -> str:
        return f"{SEARCH_PREFIX}{request.cache_fingerprint()}"

    async def _get_cached_outcome(self, cache_key: str) -> Optional[SearchOutcome]:
        if self.cache is None or not self.config.cache_enabled:
            return None
        cached = await self.cache.get(cache_key)
        if not isinstance(cached, dict):
            return None
        try:
            return SearchOutcome.from_dict(cached)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Ignoring malformed cached search result %s: %s", cache_key, e)
            return None

    async def search(self, request: Union[SearchRequest, Dict[str, Any]]) -> SearchOutcome:
        """Run hybrid retrieval for one request.

        Raises:
            pydantic.ValidationError: malformed request, before any I/O
            DimensionMismatch: embedding dimensionality is inconsistent
        """
        if not isinstance(request, SearchRequest):
            request = SearchRequest.model_validate(request)

        started = time.perf_counter()
        cache_key = self._search_cache_key(request)
        cached = await self._get_cached_outcome(cache_key)
        if cached is not None:
            cached.cache_hit = True
            cached.search_time_ms = (time.perf_counter() - started) * 1000
            logger.info("[RAG] search cache hit query='%s' results=%d", _preview(request.query), len(cached.chunks))
            return cached

        normalized = self.query_understanding.normalize(request.query)
        if not normalized:
            logger.info("[RAG] query '%s' has no searchable text", _preview(request.query))
            return SearchOutcome.empty((time.perf_counter() - started) * 1000)

        query_intent = None
        if self.config.enable_intent_detection:
            query_intent = self.query_understanding.detect_intent(normalized).intent

        variants = [normalized]
        if self.config.enable_query_expansion:
            variants = self.query_understanding.expand_query(normalized).expanded_queries

        path_results = await asyncio.gather(
            self._semantic_path(variants, request) if request.include_semantic_search else self._skipped_path(),
            self._keyword_path(variants, request) if request.include_keyword_search else self._skipped_path(),
            return_exceptions=True,
        )
        collected: List[List[ContentChunk]] = []
        for channel, payload in zip(("semantic", "keyword"), path_results):
            if isinstance(payload, DimensionMismatch):
                raise payload
            if isinstance(payload, BaseException):
                if not isinstance(payload, Exception):
                    raise payload
                logger.warning("RAG %s path failed for query='%s': %s", channel, _preview(normalized), payload)
                collected.append([])
                continue
            collected.append(payload)
        semantic_results, keyword_results = collected

        fused = self.fusion.fuse(
            semantic_results,
            keyword_results,
            self._fusion_weights(),
            request.max_results,
        )
        outcome = SearchOutcome(
            chunks=fused.chunks,
            total_results=fused.total_results,
            search_time_ms=(time.perf_counter() - started) * 1000,
            cache_hit=False,
            semantic_results=fused.semantic_count,
            keyword_results=fused.keyword_count,
            merged_results=fused.merged_count,
            query_intent=query_intent,
            expanded_queries=variants if len(variants) > 1 else None,
        )
        logger.info(
            "[RAG] search query='%s' intent=%s variants=%d semantic=%d keyword=%d merged=%d selected=%d elapsed_ms=%.1f",
            _preview(normalized),
            query_intent,
            len(variants),
            outcome.semantic_results,
            outcome.keyword_results,
            outcome.merged_results,
            len(outcome.chunks),
            outcome.search_time_ms,
        )

        if self.cache is not None and self.config.cache_enabled:
            await self.cache.set(cache_key, outcome.to_dict(), ttl=self.search_cache_ttl_seconds)
        return outcome

    def assemble_context(self, chunks: Sequence[ContentChunk]) -> AssembledContext:
        return self.context_assembly.assemble(chunks)

    async def assemble_context_from_query(self, query: str, **options: Any) -> AssembledContext:
        """Search, then pack the ranked chunks into a context block."""
        outcome = await self.search(SearchRequest(query=query, **options))
        return self.assemble_context(outcome.chunks)

    async def find_similar_content(
        self,
        content: str,
        kind: Optional[str] = None,
        max_results: int = 5,
    ) -> List[ContentChunk]:
        """Semantic-only lookup of chunks resembling the given text."""
        outcome = await self.search(
            SearchRequest(
                query=content,
                content_kinds=[kind] if kind else [],
                max_results=max_results,
                include_keyword_search=False,
                include_semantic_search=True,
            )
        )
        return outcome.chunks

    async def invalidate_search_cache(self) -> int:
        if self.cache is None:
            return 0
        return await self.cache.invalidate_pattern(f"{SEARCH_PREFIX}*")

    # ==================== Diagnostics ====================

    async def health_check(self) -> Dict[str, Any]:
        """Check the embedding provider, cache and corpus store.

        A store failure makes the pipeline unhealthy. Embedding or cache
        failures only degrade it, since keyword search and fallback vectors
        still answer queries.
        """
        details: Dict[str, Dict[str, Any]] = {}

        try:
            await self.embedding_service.check_provider()
            details["embedding"] = {"status": "healthy", "model": self.embedding_service.model}
        except Exception as e:
            details["embedding"] = {"status": "degraded", "error": str(e)}

        if self.cache is None:
            details["cache"] = {"status": "disabled"}
        elif await self.cache.ping():
            details["cache"] = {"status": "healthy", **self.cache.get_metrics()}
        else:
            details["cache"] = {"status": "degraded"}

        try:
            chunk_count = await asyncio.to_thread(self.vector_search.store.count_chunks)
            details["store"] = {"status": "healthy", "chunks": chunk_count}
        except Exception as e:
            details["store"] = {"status": "unhealthy", "error": str(e)}

        statuses = {item["status"] for item in details.values()}
        if "unhealthy" in statuses:
            status = "unhealthy"
        elif "degraded" in statuses:
            status = "degraded"
        else:
            status = "healthy"
        if status != "healthy":
            logger.warning("[RAG] health check status=%s details=%s", status, details)
        return {"status": status, "details": details}
