"""
RAG Config Service

Manages configuration for the retrieval pipeline: embedding gateway, fusion
and ranking, context packing, and cache lifetimes.
"""
import logging
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Type, TypeVar

import yaml

from ..paths import config_defaults_dir, data_state_dir, ensure_local_file

logger = logging.getLogger(__name__)

_SectionT = TypeVar("_SectionT")


@dataclass
class EmbeddingConfig:
    provider: str = "api"
    api_model: str = "text-embedding-ada-002"
    api_base_url: str = ""
    api_key: str = ""
    local_model: str = "sentence-transformers/all-MiniLM-L6-v2"
    local_device: str = "cpu"
    dimensions: int = 1536
    max_tokens: int = 8191
    chunk_size: int = 1000
    chunk_overlap: int = 150
    batch_size: int = 100
    requests_per_minute: int = 3000
    tokens_per_minute: int = 1000000
    rate_limit_max_wait_seconds: float = 120.0
    max_retries: int = 3
    cache_enabled: bool = True
    fallback_enabled: bool = True
    performance_tracking: bool = True


@dataclass
class RetrievalConfig:
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    diversity_weight: float = 0.1
    relevance_threshold: float = 0.6
    fallback_similarity_weight: float = 0.5
    enable_query_expansion: bool = True
    enable_intent_detection: bool = True
    enable_deduplication: bool = True
    cache_enabled: bool = True


@dataclass
class ContextConfig:
    max_content_length: int = 4000
    max_context_chunks: int = 10


@dataclass
class CacheConfig:
    key_prefix: str = "portfolio_rag:"
    default_ttl_seconds: int = 300
    embedding_ttl_seconds: int = 3600
    search_ttl_seconds: int = 600


@dataclass
class RagConfig:
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    context: ContextConfig = field(default_factory=ContextConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)


_SECTIONS: Dict[str, type] = {
    "embedding": EmbeddingConfig,
    "retrieval": RetrievalConfig,
    "context": ContextConfig,
    "cache": CacheConfig,
}


def build_section(section_cls: Type[_SectionT], data: Optional[Dict[str, Any]]) -> _SectionT:
    """Build a config section from a mapping, ignoring unknown keys."""
    known = {item.name for item in fields(section_cls)}
    values = {key: value for key, value in (data or {}).items() if key in known and value is not None}
    return section_cls(**values)


class RagConfigService:
    """Loads and persists the retrieval pipeline YAML file."""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path) if config_path else data_state_dir() / "rag_config.yaml"
        self._ensure_config_exists()
        self.config = self._load_config()

    def _ensure_config_exists(self) -> None:
        created = ensure_local_file(
            local_path=self.config_path,
            defaults_path=config_defaults_dir() / "rag_config.yaml",
            initial_text=yaml.safe_dump(asdict(RagConfig()), allow_unicode=True, sort_keys=False),
        )
        if created:
            logger.info(f"Created default RAG config at {self.config_path}")

    def _read_raw(self) -> Dict[str, Any]:
        with open(self.config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValueError(f"expected a mapping at the top of {self.config_path.name}")
        return data

    def _load_config(self) -> RagConfig:
        """Parse the YAML file; unreadable files yield built-in defaults."""
        try:
            data = self._read_raw()
        except Exception as e:
            logger.error(f"Failed to load RAG config: {e}")
            return RagConfig()

        sections = {
            name: build_section(section_cls, data.get(name))
            for name, section_cls in _SECTIONS.items()
        }
        return RagConfig(**sections)

    def reload_config(self):
        self.config = self._load_config()

    def save_config(self, updates: Dict):
        """
        Merge section updates into the file and reload.

        Unknown sections are skipped and ``None`` values leave the stored
        value untouched. Each merged section is rebuilt through its
        dataclass before writing so unknown keys never reach disk.
        """
        try:
            data = self._read_raw()
            for name, changes in updates.items():
                section_cls = _SECTIONS.get(name)
                if section_cls is None or not isinstance(changes, dict):
                    continue
                merged = dict(data.get(name) or {})
                merged.update({key: value for key, value in changes.items() if value is not None})
                data[name] = asdict(build_section(section_cls, merged))

            with open(self.config_path, "w", encoding="utf-8") as f:
                yaml.safe_dump(data, f, allow_unicode=True, default_flow_style=False, sort_keys=False)
        except Exception as e:
            logger.error(f"Failed to save RAG config: {e}")
            raise

        self.reload_config()
        logger.info("RAG config updated successfully")

    def get_flat_config(self) -> Dict[str, Any]:
        """Return config as a flat ``section_key`` dictionary."""
        flat: Dict[str, Any] = {}
        for section_key, section in asdict(self.config).items():
            for key, value in section.items():
                flat[f"{section_key}_{key}"] = value
        return flat
