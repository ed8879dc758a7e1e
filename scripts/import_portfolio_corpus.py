#!/usr/bin/env python3
"""Import portfolio content items from a YAML/JSON file into the corpus store."""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import List

import yaml

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from portfolio_rag.config import get_settings
from portfolio_rag.logging_config import setup_logging
from portfolio_rag.models.search import ContentChunk
from portfolio_rag.services.corpus_store import SqliteCorpusStore
from portfolio_rag.services.embedding_service import EmbeddingService
from portfolio_rag.services.ingestion_service import IngestionService, PortfolioItem
from portfolio_rag.services.rag_config_service import RagConfigService


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Embed portfolio content and store it in the corpus.")
    parser.add_argument("--source", type=Path, required=True, help="YAML or JSON file with content items.")
    parser.add_argument(
        "--db-path",
        type=Path,
        default=None,
        help="Corpus SQLite database (defaults to CORPUS_DB_PATH).",
    )
    parser.add_argument(
        "--simple-collection",
        action="store_true",
        help="Also write the raw items into the flat keyword fallback collection.",
    )
    parser.add_argument(
        "--allow-api-embedding",
        action="store_true",
        help="Allow imports when embedding provider is API-based.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only print planned items and their window counts.",
    )
    return parser.parse_args()


def load_items(source: Path) -> List[PortfolioItem]:
    data = yaml.safe_load(source.read_text(encoding="utf-8")) or []
    if isinstance(data, dict):
        data = data.get("items") or []
    if not isinstance(data, list):
        raise RuntimeError(f"Expected a list of items in {source}")
    return [PortfolioItem.from_dict(entry) for entry in data]


async def _main() -> None:
    args = parse_args()
    settings = get_settings()
    setup_logging(settings.log_level, log_dir=settings.log_dir, log_to_file=settings.log_to_file)

    if not args.source.exists():
        raise RuntimeError(f"source file not found: {args.source}")
    items = load_items(args.source)

    rag_config = RagConfigService(str(settings.rag_config_path) if settings.rag_config_path else None).config
    embedding_cfg = rag_config.embedding
    print(f"[embed] provider={embedding_cfg.provider}")
    if embedding_cfg.provider == "api" and not args.allow_api_embedding and not args.dry_run:
        raise RuntimeError("Embedding provider is API-based. Refusing import without --allow-api-embedding.")

    embedding_service = EmbeddingService.from_config(
        embedding_cfg,
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
    )
    store = SqliteCorpusStore(str(args.db_path or settings.corpus_db_path))
    ingestion = IngestionService(embedding_service, store)

    print(f"[plan] source={args.source} items={len(items)}")
    if not items:
        print("[plan] nothing to import")
        return

    if args.dry_run:
        for item in items:
            print(f"[dry-run] {item.kind}/{item.id} -> {len(ingestion.build_windows(item.body))} windows")
        print("[done] dry-run only, nothing was stored")
        return

    report = await ingestion.ingest(items)

    if args.simple_collection:
        store.upsert_simple_chunks(
            [
                ContentChunk(
                    id=item.id,
                    kind=item.kind,
                    body=" ".join(item.body.split()),
                    attributes=dict(item.attributes),
                    lexical_tags=item.lexical_tags,
                )
                for item in items
            ]
        )
        print(f"[ok] simple collection rows written: {len(items)}")

    for error in report.errors:
        print(f"[error] {error}")
    print(
        "[done] items={items} stored_chunks={stored} failed={failed} corpus_size={size}".format(
            items=report.items,
            stored=report.stored_chunks,
            failed=report.failed,
            size=store.count_chunks(),
        )
    )


if __name__ == "__main__":
    asyncio.run(_main())
