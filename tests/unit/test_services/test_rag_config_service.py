"""Unit tests for RagConfigService."""

import yaml

from portfolio_rag.services.rag_config_service import RagConfigService


def test_rag_config_service_creates_default_file(tmp_path):
    config_path = tmp_path / "rag_config.yaml"

    service = RagConfigService(config_path=str(config_path))

    assert config_path.read_text(encoding="utf-8").startswith("# Default retrieval pipeline settings.")
    flat = service.get_flat_config()
    assert flat["retrieval_semantic_weight"] == 0.7
    assert flat["retrieval_keyword_weight"] == 0.3
    assert flat["retrieval_relevance_threshold"] == 0.6
    assert flat["context_max_content_length"] == 4000
    assert flat["context_max_context_chunks"] == 10
    assert flat["cache_search_ttl_seconds"] == 600
    assert flat["embedding_chunk_size"] == 1000


def test_rag_config_service_ignores_unknown_keys(tmp_path):
    config_path = tmp_path / "rag_config.yaml"
    config_path.write_text(
        yaml.safe_dump(
            {
                "retrieval": {"semantic_weight": 0.6, "top_k": 9},
                "context": {"max_context_chunks": 4},
                "legacy": {"enabled": True},
            }
        ),
        encoding="utf-8",
    )

    service = RagConfigService(config_path=str(config_path))

    assert service.config.retrieval.semantic_weight == 0.6
    assert service.config.retrieval.keyword_weight == 0.3
    assert service.config.context.max_context_chunks == 4
    assert not hasattr(service.config.retrieval, "top_k")


def test_rag_config_service_falls_back_to_defaults_on_malformed_yaml(tmp_path):
    config_path = tmp_path / "rag_config.yaml"
    config_path.write_text("retrieval: [unterminated", encoding="utf-8")

    service = RagConfigService(config_path=str(config_path))

    assert service.config.retrieval.semantic_weight == 0.7


def test_rag_config_service_saves_section_updates(tmp_path):
    config_path = tmp_path / "rag_config.yaml"
    service = RagConfigService(config_path=str(config_path))

    service.save_config(
        {
            "retrieval": {"diversity_weight": 0.2, "relevance_threshold": None},
            "embedding": {"provider": "local"},
            "unknown": {"value": 1},
        }
    )

    reloaded = RagConfigService(config_path=str(config_path))
    assert reloaded.config.retrieval.diversity_weight == 0.2
    assert reloaded.config.retrieval.relevance_threshold == 0.6
    assert reloaded.config.embedding.provider == "local"
    assert "unknown" not in yaml.safe_load(config_path.read_text(encoding="utf-8"))
