"""
Embedding Service

Turns text into fixed-dimension vectors through a LangChain ``Embeddings``
backend, with preprocessing, sentence-aware chunking, caching, rate limiting,
retry with exponential backoff, and an optional hash-projection fallback.
"""
from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import math
import re
import time
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from langchain_core.embeddings import Embeddings

from .cache_service import EMBEDDING_PREFIX, CacheService
from .rag_config_service import EmbeddingConfig
from .rate_limiter import RateLimiter, RateLimitTimeout
from .service_contracts import EmbeddingProviderLike, ProviderEmbedding

logger = logging.getLogger(__name__)

_WHITESPACE_RE = re.compile(r"\s+")
_DISALLOWED_CHARS_RE = re.compile(r"[^\w\s.,!?;:-]")
_SENTENCE_ENDINGS = (".", "?", "!")
_MAX_METRICS_HISTORY = 1000

EmbeddingKind = Literal["embedded", "fallback"]


class EmbeddingUnavailable(Exception):
    """The upstream model failed and no fallback is configured."""


class DimensionMismatch(ValueError):
    """Vectors of different dimensionality were combined or compared."""


@dataclass
class EmbeddingResult:
    """One vector, tagged with how it was produced."""

    kind: EmbeddingKind
    vector: List[float]
    text: str
    model: str
    dimensions: int
    token_count: int = 0
    from_cache: bool = False
    chunks: Optional[List[str]] = None
    processing_time_ms: float = 0.0

    @property
    def is_fallback(self) -> bool:
        return self.kind == "fallback"


@dataclass
class BatchEmbeddingResult:
    results: List[EmbeddingResult]
    total_processing_time_ms: float
    cache_hits: int = 0
    cache_misses: int = 0
    failed_count: int = 0
    errors: List[str] = field(default_factory=list)


@dataclass
class EmbeddingMetrics:
    total_requests: int = 0
    cache_hit_rate: float = 0.0
    average_processing_time_ms: float = 0.0
    failure_rate: float = 0.0
    last_reset: float = field(default_factory=time.time)


class LangChainEmbeddingProvider:
    """Adapts a LangChain ``Embeddings`` object to the provider contract."""

    def __init__(self, embeddings: Embeddings, model: str):
        self.embeddings = embeddings
        self._model = model

    @property
    def model(self) -> str:
        return self._model

    async def embed(self, text: str) -> ProviderEmbedding:
        vector = await self.embeddings.aembed_query(text)
        return ProviderEmbedding(
            vector=[float(x) for x in vector],
            token_count=EmbeddingService.estimate_tokens(text),
        )


def build_embedding_provider(
    config: EmbeddingConfig,
    *,
    api_key: str = "",
    base_url: str = "",
) -> LangChainEmbeddingProvider:
    """
    Build the configured LangChain embedding backend.

    Args:
        config: Embedding section of the RAG config
        api_key: Credential override (e.g. from the environment); wins over config
        base_url: Endpoint override; wins over config
    """
    if config.provider == "local":
        from langchain_community.embeddings import HuggingFaceEmbeddings

        embeddings = HuggingFaceEmbeddings(
            model_name=config.local_model,
            model_kwargs={"device": config.local_device},
        )
        return LangChainEmbeddingProvider(embeddings, config.local_model)

    from langchain_openai import OpenAIEmbeddings

    key = api_key or config.api_key
    if not key and not (base_url or config.api_base_url):
        raise ValueError(
            "No embedding API key configured. Set OPENAI_API_KEY or embedding.api_key in the RAG config."
        )

    kwargs: Dict[str, Any] = {
        "model": config.api_model,
        # Local OpenAI-compatible endpoints accept any key.
        "api_key": key or "local",
        "check_embedding_ctx_length": False,
        "max_retries": 0,
    }
    endpoint = base_url or config.api_base_url
    if endpoint:
        kwargs["base_url"] = endpoint
    if config.batch_size:
        kwargs["chunk_size"] = config.batch_size
    return LangChainEmbeddingProvider(OpenAIEmbeddings(**kwargs), config.api_model)


class EmbeddingService:
    """Embedding gateway used by the retrieval pipeline."""

    def __init__(
        self,
        provider: EmbeddingProviderLike,
        *,
        config: Optional[EmbeddingConfig] = None,
        cache: Optional[CacheService] = None,
        cache_ttl_seconds: int = 3600,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self.cache = cache
        self.cache_ttl_seconds = cache_ttl_seconds
        self.rate_limiter = rate_limiter
        self._sleep = sleep
        self.metrics = EmbeddingMetrics()
        self._processing_times: List[float] = []

    @classmethod
    def from_config(
        cls,
        config: EmbeddingConfig,
        *,
        api_key: str = "",
        base_url: str = "",
        cache: Optional[CacheService] = None,
        cache_ttl_seconds: int = 3600,
    ) -> "EmbeddingService":
        """Build the gateway with the configured provider and rate limits."""
        return cls(
            build_embedding_provider(config, api_key=api_key, base_url=base_url),
            config=config,
            cache=cache,
            cache_ttl_seconds=cache_ttl_seconds,
            rate_limiter=RateLimiter(
                requests_per_minute=config.requests_per_minute,
                tokens_per_minute=config.tokens_per_minute,
                max_wait_seconds=config.rate_limit_max_wait_seconds,
            ),
        )

    @property
    def model(self) -> str:
        return self.provider.model

    # ==================== Text handling ====================

    def preprocess_text(self, text: str) -> str:
        cleaned = _DISALLOWED_CHARS_RE.sub("", text or "")
        cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
        return cleaned[: max(1, self.config.max_tokens) * 4]

    @staticmethod
    def estimate_tokens(text: str) -> int:
        return math.ceil(len(text or "") / 4)

    def chunk_text(
        self,
        text: str,
        chunk_size: Optional[int] = None,
        overlap: Optional[int] = None,
    ) -> List[str]:
        """Split text into overlapping windows, preferring sentence boundaries."""
        size = max(1, int(chunk_size or self.config.chunk_size))
        step_back = max(0, int(self.config.chunk_overlap if overlap is None else overlap))
        if len(text) <= size:
            return [text]

        windows: List[str] = []
        start = 0
        while start < len(text):
            end = min(start + size, len(text))
            window_end = end
            if end < len(text):
                boundary = max(text.rfind(mark, start, end) for mark in _SENTENCE_ENDINGS)
                if boundary > start + size * 0.5:
                    window_end = boundary + 1

            window = text[start:window_end].strip()
            if window:
                windows.append(window)
            if window_end >= len(text):
                break
            start = max(window_end - step_back, start + 1)
        return windows

    # ==================== Vector math ====================

    @staticmethod
    def average_vectors(vectors: Sequence[Sequence[float]]) -> List[float]:
        if not vectors:
            raise ValueError("Cannot average an empty list of vectors")
        dims = len(vectors[0])
        totals = [0.0] * dims
        for vector in vectors:
            if len(vector) != dims:
                raise DimensionMismatch(f"Expected {dims} dimensions, got {len(vector)}")
            for i, value in enumerate(vector):
                totals[i] += float(value)
        return [value / len(vectors) for value in totals]

    @staticmethod
    def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
        if len(a) != len(b):
            raise DimensionMismatch(f"Cannot compare {len(a)}-d and {len(b)}-d vectors")
        dot = 0.0
        a_norm = 0.0
        b_norm = 0.0
        for a_val, b_val in zip(a, b):
            dot += a_val * b_val
            a_norm += a_val * a_val
            b_norm += b_val * b_val
        if a_norm <= 0.0 or b_norm <= 0.0:
            return 0.0
        return dot / (math.sqrt(a_norm) * math.sqrt(b_norm))

    @staticmethod
    def euclidean_distance(a: Sequence[float], b: Sequence[float]) -> float:
        if len(a) != len(b):
            raise DimensionMismatch(f"Cannot compare {len(a)}-d and {len(b)}-d vectors")
        return math.sqrt(sum((a_val - b_val) ** 2 for a_val, b_val in zip(a, b)))

    @staticmethod
    def hash_embedding(text: str, dimensions: int) -> List[float]:
        """Deterministic character-hash projection. Not semantically meaningful."""
        vector = [0.0] * dimensions
        for i, char in enumerate(text):
            code = ord(char)
            vector[(code * (i + 1)) % dimensions] += math.sin(code + i) * 0.1
        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = [value / norm for value in vector]
        return vector

    def validate_embedding(self, vector: Any) -> bool:
        if not isinstance(vector, (list, tuple)) or not vector:
            return False
        if len(vector) != self.config.dimensions:
            return False
        return all(
            isinstance(value, (int, float)) and not isinstance(value, bool) and not math.isnan(value)
            for value in vector
        )

    # ==================== Cache ====================

    @staticmethod
    def cache_key(text: str, model: str) -> str:
        digest = hashlib.sha256(json.dumps([text, model]).encode("utf-8")).hexdigest()
        return f"{EMBEDDING_PREFIX}{digest}"

    async def _get_cached(self, text: str) -> Optional[Dict[str, Any]]:
        if self.cache is None:
            return None
        entry = await self.cache.get(self.cache_key(text, self.model))
        if not isinstance(entry, dict) or not isinstance(entry.get("vector"), list):
            return None
        return entry

    async def _set_cached(self, text: str, vector: List[float]) -> None:
        if self.cache is None:
            return
        await self.cache.set(
            self.cache_key(text, self.model),
            {
                "vector": vector,
                "text": text,
                "model": self.model,
                "dimensions": len(vector),
            },
            ttl=self.cache_ttl_seconds,
        )

    # ==================== Embedding ====================

    async def _provider_once(self, text: str, estimated: int) -> ProviderEmbedding:
        if self.rate_limiter is not None:
            await self.rate_limiter.acquire(estimated)
        result = await self.provider.embed(text)
        if self.rate_limiter is not None:
            self.rate_limiter.record_usage(estimated, result.token_count)
        return result

    async def check_provider(self, text: str = "health check") -> ProviderEmbedding:
        """Single rate-limited provider call, bypassing cache and retries."""
        return await self._provider_once(text, self.estimate_tokens(text))

    async def _call_provider(self, text: str) -> ProviderEmbedding:
        estimated = self.estimate_tokens(text)
        attempts = max(1, int(self.config.max_retries))
        attempt = 1
        while True:
            try:
                return await self._provider_once(text, estimated)
            except RateLimitTimeout:
                raise
            except Exception as e:
                if attempt >= attempts:
                    raise
                delay = 2 ** attempt
                logger.warning(
                    "Embedding call failed (attempt %d/%d), retrying in %ss: %s",
                    attempt,
                    attempts,
                    delay,
                    e,
                )
                await self._sleep(delay)
                attempt += 1

    async def embed(self, text: str, *, use_cache: Optional[bool] = None) -> EmbeddingResult:
        """Embed text as a single vector, averaging across windows when chunked."""
        started = time.perf_counter()
        normalized = self.preprocess_text(text)
        if not normalized:
            raise ValueError("Cannot embed empty text")
        cache_enabled = self.config.cache_enabled if use_cache is None else use_cache

        if cache_enabled:
            cached = await self._get_cached(normalized)
            if cached is not None:
                elapsed = (time.perf_counter() - started) * 1000
                self._update_metrics(elapsed, from_cache=True, failed=False)
                return EmbeddingResult(
                    kind="embedded",
                    vector=[float(x) for x in cached["vector"]],
                    text=normalized,
                    model=str(cached.get("model") or self.model),
                    dimensions=int(cached.get("dimensions") or len(cached["vector"])),
                    token_count=self.estimate_tokens(normalized),
                    from_cache=True,
                    processing_time_ms=elapsed,
                )

        windows = self.chunk_text(normalized)
        try:
            answers = [await self._call_provider(window) for window in windows]
            if len(answers) == 1:
                vector = answers[0].vector
            else:
                vector = self.average_vectors([answer.vector for answer in answers])
        except DimensionMismatch:
            raise
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            self._update_metrics(elapsed, from_cache=False, failed=True)
            if self.config.fallback_enabled:
                return self._fallback(normalized, e)
            raise EmbeddingUnavailable(f"Embedding generation failed: {e}") from e

        if cache_enabled:
            await self._set_cached(normalized, vector)

        elapsed = (time.perf_counter() - started) * 1000
        self._update_metrics(elapsed, from_cache=False, failed=False)
        return EmbeddingResult(
            kind="embedded",
            vector=vector,
            text=normalized,
            model=self.model,
            dimensions=len(vector),
            token_count=sum(answer.token_count for answer in answers),
            from_cache=False,
            chunks=windows if len(windows) > 1 else None,
            processing_time_ms=elapsed,
        )

    async def embed_chunks(self, text: str) -> List[EmbeddingResult]:
        """Embed each window of a long text separately."""
        normalized = self.preprocess_text(text)
        if not normalized:
            raise ValueError("Cannot embed empty text")
        return [await self.embed(window) for window in self.chunk_text(normalized)]

    def _fallback(self, text: str, error: Exception) -> EmbeddingResult:
        logger.warning("Embedding generation failed, using fallback for '%s...': %s", text[:50], error)
        vector = self.hash_embedding(text, self.config.dimensions)
        return EmbeddingResult(
            kind="fallback",
            vector=vector,
            text=text,
            model=f"{self.model}-fallback",
            dimensions=len(vector),
            token_count=self.estimate_tokens(text),
        )

    async def embed_batch(
        self,
        texts: Sequence[str],
        *,
        batch_size: Optional[int] = None,
        use_cache: Optional[bool] = None,
    ) -> BatchEmbeddingResult:
        """Embed many texts; per-text failures are collected, not raised."""
        started = time.perf_counter()
        size = max(1, int(batch_size or self.config.batch_size))
        outcome = BatchEmbeddingResult(results=[], total_processing_time_ms=0.0)

        for offset in range(0, len(texts), size):
            batch = list(texts[offset:offset + size])
            answers = await asyncio.gather(
                *(self.embed(text, use_cache=use_cache) for text in batch),
                return_exceptions=True,
            )
            for index, answer in enumerate(answers):
                if isinstance(answer, BaseException):
                    if not isinstance(answer, Exception):
                        raise answer
                    outcome.failed_count += 1
                    outcome.errors.append(f"Text {offset + index}: {answer}")
                    continue
                if answer.from_cache:
                    outcome.cache_hits += 1
                else:
                    outcome.cache_misses += 1
                outcome.results.append(answer)

        outcome.total_processing_time_ms = (time.perf_counter() - started) * 1000
        return outcome

    # ==================== Metrics & config ====================

    def _update_metrics(self, elapsed_ms: float, *, from_cache: bool, failed: bool) -> None:
        if not self.config.performance_tracking:
            return
        metrics = self.metrics
        metrics.total_requests += 1
        total = metrics.total_requests
        metrics.failure_rate = (metrics.failure_rate * (total - 1) + (1 if failed else 0)) / total
        metrics.cache_hit_rate = (metrics.cache_hit_rate * (total - 1) + (1 if from_cache else 0)) / total
        if not failed:
            self._processing_times.append(elapsed_ms)
            if len(self._processing_times) > _MAX_METRICS_HISTORY:
                self._processing_times.pop(0)
            metrics.average_processing_time_ms = sum(self._processing_times) / len(self._processing_times)

    def get_metrics(self) -> Dict[str, Any]:
        return asdict(self.metrics)

    def reset_metrics(self) -> None:
        self.metrics = EmbeddingMetrics()
        self._processing_times = []

    def update_config(self, **changes: Any) -> None:
        known = {item.name for item in fields(EmbeddingConfig)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown embedding config keys: {sorted(unknown)}")
        self.config = replace(self.config, **changes)

    def get_config(self) -> Dict[str, Any]:
        return asdict(self.config)
