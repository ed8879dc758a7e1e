"""Unit tests for the embedding gateway."""

import math

import pytest
from langchain_core.embeddings import DeterministicFakeEmbedding

from portfolio_rag.services.cache_service import CacheService
from portfolio_rag.services.embedding_service import (
    DimensionMismatch,
    EmbeddingService,
    EmbeddingUnavailable,
    LangChainEmbeddingProvider,
)
from portfolio_rag.services.rag_config_service import EmbeddingConfig
from portfolio_rag.services.rate_limiter import RateLimiter, RateLimitTimeout
from portfolio_rag.services.service_contracts import ProviderEmbedding


class _FakeProvider:
    def __init__(self, *, model="fake-embed", vectors=None, fail_times=0, error=None):
        self._model = model
        self.vectors = list(vectors or [])
        self.fail_times = fail_times
        self.error = error or RuntimeError("upstream down")
        self.calls = []

    @property
    def model(self):
        return self._model

    async def embed(self, text):
        self.calls.append(text)
        if self.fail_times > 0:
            self.fail_times -= 1
            raise self.error
        vector = self.vectors.pop(0) if self.vectors else [1.0, 0.0, 0.0]
        return ProviderEmbedding(vector=vector, token_count=max(1, len(text) // 4))


class _RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def _service(provider=None, *, cache=None, sleep=None, **config_overrides):
    config_values = {"dimensions": 3, "max_tokens": 512, "chunk_size": 1000, "chunk_overlap": 150}
    config_values.update(config_overrides)
    return EmbeddingService(
        provider or _FakeProvider(),
        config=EmbeddingConfig(**config_values),
        cache=cache,
        sleep=sleep or _RecordingSleep(),
    )


def test_preprocess_trims_collapses_strips_and_truncates():
    service = _service()
    assert service.preprocess_text("  Hello   world\n\n(test) <x>  ") == "Hello world test x"
    assert service.preprocess_text("Résumé: 5 years!") == "Résumé: 5 years!"

    short = _service(max_tokens=2)
    assert short.preprocess_text("abcdefghijkl") == "abcdefgh"


def test_preprocess_recollapses_whitespace_left_by_stripped_characters():
    service = _service()
    assert service.preprocess_text("a @ b") == "a b"
    assert service.preprocess_text(" C++ & Go ") == "C Go"


def test_estimate_tokens_uses_four_characters_per_token():
    assert EmbeddingService.estimate_tokens("") == 0
    assert EmbeddingService.estimate_tokens("abcd") == 1
    assert EmbeddingService.estimate_tokens("abcde") == 2


def test_chunk_text_returns_single_window_for_short_text():
    service = _service()
    assert service.chunk_text("short text", chunk_size=100, overlap=10) == ["short text"]


def test_chunk_text_hard_cuts_with_overlap():
    service = _service()
    windows = service.chunk_text("a" * 50, chunk_size=20, overlap=5)
    assert [len(w) for w in windows] == [20, 20, 20]


def test_chunk_text_snaps_to_sentence_end_past_midpoint():
    service = _service()
    text = "Alpha beta. Gamma delta epsilon zeta eta theta."

    windows = service.chunk_text(text, chunk_size=18, overlap=5)

    assert windows[0] == "Alpha beta."
    assert windows[-1].endswith("theta.")
    assert all(0 < len(w) <= 18 for w in windows)


def test_average_vectors_and_dimension_mismatch():
    assert EmbeddingService.average_vectors([[1.0, 0.0], [0.0, 1.0]]) == [0.5, 0.5]
    with pytest.raises(DimensionMismatch):
        EmbeddingService.average_vectors([[1.0, 0.0], [1.0]])
    with pytest.raises(ValueError):
        EmbeddingService.average_vectors([])


def test_similarity_helpers():
    assert EmbeddingService.cosine_similarity([1.0, 0.0], [1.0, 0.0]) == pytest.approx(1.0)
    assert EmbeddingService.cosine_similarity([1.0, 0.0], [-1.0, 0.0]) == pytest.approx(-1.0)
    assert EmbeddingService.cosine_similarity([0.0, 0.0], [1.0, 0.0]) == 0.0
    assert EmbeddingService.euclidean_distance([0.0, 0.0], [3.0, 4.0]) == pytest.approx(5.0)
    with pytest.raises(DimensionMismatch):
        EmbeddingService.cosine_similarity([1.0], [1.0, 0.0])
    with pytest.raises(DimensionMismatch):
        EmbeddingService.euclidean_distance([1.0], [1.0, 0.0])


def test_validate_embedding_checks_shape_and_values():
    service = _service()
    assert service.validate_embedding([0.1, 0.2, 0.3]) is True
    assert service.validate_embedding([0.1, 0.2]) is False
    assert service.validate_embedding([0.1, float("nan"), 0.3]) is False
    assert service.validate_embedding([]) is False
    assert service.validate_embedding("abc") is False


def test_cache_key_depends_on_text_and_model():
    key = EmbeddingService.cache_key("hello", "model-a")
    assert key.startswith("embedding:")
    assert key == EmbeddingService.cache_key("hello", "model-a")
    assert key != EmbeddingService.cache_key("hello", "model-b")
    assert key != EmbeddingService.cache_key("hello!", "model-a")


@pytest.mark.asyncio
async def test_embed_caches_and_short_circuits_provider(fake_redis):
    provider = _FakeProvider(vectors=[[0.1, 0.2, 0.3]])
    service = _service(provider, cache=CacheService(fake_redis))

    first = await service.embed("  Senior   engineer ")
    second = await service.embed("Senior engineer")

    assert first.kind == "embedded"
    assert first.from_cache is False
    assert first.vector == [0.1, 0.2, 0.3]
    assert second.from_cache is True
    assert second.vector == [0.1, 0.2, 0.3]
    assert second.dimensions == 3
    assert provider.calls == ["Senior engineer"]

    stored = next(iter(fake_redis.data.values()))
    assert '"model": "fake-embed"' in stored
    assert '"text": "Senior engineer"' in stored


@pytest.mark.asyncio
async def test_embed_averages_windows_of_long_text():
    provider = _FakeProvider(vectors=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    service = _service(provider, chunk_size=20, chunk_overlap=5)

    result = await service.embed("a" * 50)

    assert len(provider.calls) == 3
    assert result.vector == pytest.approx([1 / 3, 1 / 3, 1 / 3])
    assert result.chunks is not None and len(result.chunks) == 3


@pytest.mark.asyncio
async def test_embed_raises_dimension_mismatch_even_with_fallback():
    provider = _FakeProvider(vectors=[[1.0, 0.0, 0.0], [0.0, 1.0]])
    service = _service(provider, chunk_size=20, chunk_overlap=0, fallback_enabled=True)

    with pytest.raises(DimensionMismatch):
        await service.embed("b" * 40)


@pytest.mark.asyncio
async def test_embed_retries_with_exponential_backoff():
    sleep = _RecordingSleep()
    provider = _FakeProvider(fail_times=2, vectors=[[0.0, 1.0, 0.0]])
    service = _service(provider, sleep=sleep)

    result = await service.embed("retry me")

    assert result.kind == "embedded"
    assert len(provider.calls) == 3
    assert sleep.delays == [2, 4]


@pytest.mark.asyncio
async def test_embed_surfaces_last_provider_error_after_retries():
    sleep = _RecordingSleep()
    error = RuntimeError("quota exceeded")
    provider = _FakeProvider(fail_times=10, error=error)
    service = _service(provider, sleep=sleep, fallback_enabled=False, max_retries=3)

    with pytest.raises(EmbeddingUnavailable) as excinfo:
        await service.embed("retry me")

    assert excinfo.value.__cause__ is error
    assert len(provider.calls) == 3
    assert sleep.delays == [2, 4]


@pytest.mark.asyncio
async def test_rate_limit_timeout_is_not_retried():
    sleep = _RecordingSleep()
    provider = _FakeProvider()
    limiter = RateLimiter(requests_per_minute=1, tokens_per_minute=1000, max_wait_seconds=0.0)
    service = EmbeddingService(
        provider,
        config=EmbeddingConfig(dimensions=3, fallback_enabled=False),
        rate_limiter=limiter,
        sleep=sleep,
    )

    await service.embed("first question")
    with pytest.raises(EmbeddingUnavailable) as excinfo:
        await service.embed("second question")

    assert isinstance(excinfo.value.__cause__, RateLimitTimeout)
    assert provider.calls == ["first question"]
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_check_provider_reserves_rate_limit_slot_and_skips_cache(fake_redis):
    provider = _FakeProvider()
    limiter = RateLimiter(requests_per_minute=5, tokens_per_minute=1000)
    service = EmbeddingService(
        provider,
        config=EmbeddingConfig(dimensions=3),
        cache=CacheService(fake_redis),
        rate_limiter=limiter,
    )

    result = await service.check_provider()

    assert result.vector == [1.0, 0.0, 0.0]
    assert provider.calls == ["health check"]
    assert limiter.snapshot()["requests"] == 1
    assert limiter.snapshot()["tokens"] == 3
    assert fake_redis.data == {}


@pytest.mark.asyncio
async def test_embed_falls_back_to_tagged_hash_vector(fake_redis):
    provider = _FakeProvider(fail_times=10)
    service = _service(provider, cache=CacheService(fake_redis), fallback_enabled=True)

    first = await service.embed("portfolio question")
    second = await service.embed("portfolio question")

    assert first.kind == "fallback"
    assert first.is_fallback
    assert first.model == "fake-embed-fallback"
    assert first.dimensions == 3
    assert math.sqrt(sum(v * v for v in first.vector)) == pytest.approx(1.0)
    assert first.vector == second.vector
    assert fake_redis.data == {}


@pytest.mark.asyncio
async def test_embed_raises_unavailable_without_fallback():
    service = _service(_FakeProvider(fail_times=10), fallback_enabled=False)

    with pytest.raises(EmbeddingUnavailable):
        await service.embed("portfolio question")


@pytest.mark.asyncio
async def test_embed_rejects_empty_text():
    with pytest.raises(ValueError):
        await _service().embed("   <>  ")


@pytest.mark.asyncio
async def test_embed_chunks_returns_one_result_per_window():
    provider = _FakeProvider(vectors=[[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]])
    service = _service(provider, chunk_size=20, chunk_overlap=5, cache_enabled=False)

    results = await service.embed_chunks("a" * 50)

    assert [r.vector for r in results] == [[1.0, 0.0, 0.0], [0.0, 1.0, 0.0], [0.0, 0.0, 1.0]]


@pytest.mark.asyncio
async def test_embed_batch_collects_failures(fake_redis):
    service = _service(_FakeProvider(), cache=CacheService(fake_redis))
    await service.embed("first text")

    batch = await service.embed_batch(["first text", "", "second text"], batch_size=2)

    assert len(batch.results) == 2
    assert batch.cache_hits == 1
    assert batch.cache_misses == 1
    assert batch.failed_count == 1
    assert batch.errors[0].startswith("Text 1:")


@pytest.mark.asyncio
async def test_metrics_track_cache_hit_rate_and_failures(fake_redis):
    service = _service(_FakeProvider(fail_times=3), cache=CacheService(fake_redis), max_retries=3)

    await service.embed("will fall back")
    await service.embed("works now")
    await service.embed("works now")

    metrics = service.get_metrics()
    assert metrics["total_requests"] == 3
    assert metrics["failure_rate"] == pytest.approx(1 / 3)
    assert metrics["cache_hit_rate"] == pytest.approx(1 / 3)

    service.reset_metrics()
    assert service.get_metrics()["total_requests"] == 0


def test_update_config_rejects_unknown_keys():
    service = _service()
    service.update_config(chunk_size=42)
    assert service.get_config()["chunk_size"] == 42
    with pytest.raises(ValueError):
        service.update_config(not_a_setting=True)


@pytest.mark.asyncio
async def test_langchain_provider_adapts_embeddings_interface():
    provider = LangChainEmbeddingProvider(DeterministicFakeEmbedding(size=3), "fake-embed")

    first = await provider.embed("portfolio chatbot")
    second = await provider.embed("portfolio chatbot")

    assert provider.model == "fake-embed"
    assert len(first.vector) == 3
    assert first.vector == second.vector
    assert first.token_count == 5
