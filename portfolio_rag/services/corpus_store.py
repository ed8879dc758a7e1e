"""
SQLite corpus store for portfolio content.

Holds three collections:
- content_chunks: primary indexed corpus (vectors + lexical tags)
- content_chunks_simple: flat fallback corpus used to top up keyword search
- conversation_turns: prior chat exchanges with embeddings

Vectors are stored as float32 blobs and ranked in Python by cosine similarity.
"""
from __future__ import annotations

import json
import logging
import sqlite3
import struct
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..models.search import ContentChunk
from ..paths import resolve_repo_path
from .embedding_service import EmbeddingService

logger = logging.getLogger(__name__)


class SqliteCorpusStore:
    """Vector and pattern search over the portfolio corpus in SQLite."""

    def __init__(self, db_path: Optional[str] = None):
        db_path_obj = resolve_repo_path(db_path or "data/state/portfolio_corpus.sqlite3")
        db_path_obj.parent.mkdir(parents=True, exist_ok=True)

        self.db_path: Path = db_path_obj
        self._lock = Lock()
        self._ensure_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS content_chunks (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    title TEXT,
                    body TEXT NOT NULL,
                    attributes_json TEXT NOT NULL DEFAULT '{}',
                    lexical_tags TEXT,
                    embedding_blob BLOB,
                    embedding_dim INTEGER,
                    status TEXT NOT NULL DEFAULT 'active',
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS content_chunks_simple (
                    id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    body TEXT NOT NULL,
                    attributes_json TEXT NOT NULL DEFAULT '{}',
                    lexical_tags TEXT
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS conversation_turns (
                    id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL,
                    user_message TEXT NOT NULL,
                    bot_response TEXT NOT NULL,
                    embedding_blob BLOB,
                    embedding_dim INTEGER,
                    created_at TEXT DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_content_chunks_kind ON content_chunks (kind)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_conversation_turns_session ON conversation_turns (session_id)"
            )
            conn.commit()

    @staticmethod
    def _pack_vector_float32(vector: Sequence[float]) -> bytes:
        if not vector:
            return b""
        return struct.pack(f"<{len(vector)}f", *[float(item) for item in vector])

    @staticmethod
    def _unpack_vector_float32(blob: bytes) -> List[float]:
        if not blob or len(blob) % 4 != 0:
            return []
        dim = len(blob) // 4
        return list(struct.unpack(f"<{dim}f", blob))

    @staticmethod
    def _rescaled_similarity(query: Sequence[float], candidate: Sequence[float]) -> float:
        cosine = EmbeddingService.cosine_similarity(query, candidate)
        return max(0.0, min(1.0, (1.0 + cosine) / 2.0))

    @staticmethod
    def _kind_clause(kinds: Optional[Sequence[str]]) -> Tuple[str, List[Any]]:
        if not kinds:
            return "", []
        placeholders = ",".join("?" for _ in kinds)
        return f" AND kind IN ({placeholders})", list(kinds)

    @staticmethod
    def _pattern_clause(column: str, patterns: Sequence[str]) -> str:
        return "(" + " OR ".join(f"LOWER({column}) LIKE ? ESCAPE '\\'" for _ in patterns) + ")"

    # ==================== Writes ====================

    def upsert_chunks(self, chunks: Sequence[ContentChunk]) -> None:
        """Insert or replace primary corpus chunks."""
        if not chunks:
            return
        with self._lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN")
            try:
                for chunk in chunks:
                    vector = [float(x) for x in (chunk.vector or [])]
                    cursor.execute(
                        """
                        INSERT OR REPLACE INTO content_chunks (
                            id, kind, title, body, attributes_json, lexical_tags,
                            embedding_blob, embedding_dim, status, updated_at
                        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, 'active', CURRENT_TIMESTAMP)
                        """,
                        (
                            chunk.id,
                            chunk.kind,
                            chunk.title,
                            chunk.body,
                            json.dumps(chunk.attributes, ensure_ascii=False),
                            chunk.lexical_tags,
                            self._pack_vector_float32(vector) if vector else None,
                            len(vector) if vector else None,
                        ),
                    )
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    def upsert_simple_chunks(self, chunks: Sequence[ContentChunk]) -> None:
        """Insert or replace rows in the flat fallback corpus."""
        if not chunks:
            return
        with self._lock, self._connect() as conn:
            conn.executemany(
                """
                INSERT OR REPLACE INTO content_chunks_simple (id, kind, body, attributes_json, lexical_tags)
                VALUES (?, ?, ?, ?, ?)
                """,
                [
                    (
                        chunk.id,
                        chunk.kind,
                        chunk.body,
                        json.dumps(chunk.attributes, ensure_ascii=False),
                        chunk.lexical_tags,
                    )
                    for chunk in chunks
                ],
            )
            conn.commit()

    def set_chunk_status(self, chunk_id: str, status: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("UPDATE content_chunks SET status = ? WHERE id = ?", (status, chunk_id))
            conn.commit()

    def add_conversation_turn(
        self,
        *,
        turn_id: str,
        session_id: str,
        user_message: str,
        bot_response: str,
        vector: Sequence[float],
        created_at: Optional[str] = None,
    ) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO conversation_turns (
                    id, session_id, user_message, bot_response, embedding_blob, embedding_dim, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, COALESCE(?, CURRENT_TIMESTAMP))
                """,
                (
                    turn_id,
                    session_id,
                    user_message,
                    bot_response,
                    self._pack_vector_float32(vector),
                    len(vector),
                    created_at,
                ),
            )
            conn.commit()

    def count_chunks(self) -> int:
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS total FROM content_chunks WHERE status = 'active'").fetchone()
        return int(row["total"] or 0)

    # ==================== Similarity search ====================

    def similarity_search(
        self,
        vector: Sequence[float],
        kinds: Optional[Sequence[str]],
        threshold: float,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Rank active chunks by rescaled cosine similarity, descending."""
        kind_sql, kind_params = self._kind_clause(kinds)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT id, kind, title, body, attributes_json, lexical_tags, embedding_blob
                FROM content_chunks
                WHERE status = 'active' AND embedding_blob IS NOT NULL{kind_sql}
                ORDER BY rowid ASC
                """,
                kind_params,
            ).fetchall()

        scored: List[Dict[str, Any]] = []
        for row in rows:
            candidate = self._unpack_vector_float32(row["embedding_blob"])
            if not candidate:
                continue
            similarity = self._rescaled_similarity(vector, candidate)
            if similarity < threshold:
                continue
            scored.append(
                {
                    "id": str(row["id"]),
                    "kind": str(row["kind"]),
                    "title": row["title"],
                    "body": str(row["body"] or ""),
                    "attributes": json.loads(row["attributes_json"] or "{}"),
                    "lexical_tags": row["lexical_tags"],
                    "similarity": similarity,
                }
            )

        # Stable sort keeps store row order for ties.
        scored.sort(key=lambda item: item["similarity"], reverse=True)
        return scored[: max(0, int(limit))]

    def conversation_similarity_search(
        self,
        vector: Sequence[float],
        threshold: float,
        limit: int,
    ) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, session_id, user_message, bot_response, embedding_blob, created_at
                FROM conversation_turns
                WHERE embedding_blob IS NOT NULL
                ORDER BY rowid ASC
                """
            ).fetchall()

        scored: List[Dict[str, Any]] = []
        for row in rows:
            candidate = self._unpack_vector_float32(row["embedding_blob"])
            if not candidate:
                continue
            similarity = self._rescaled_similarity(vector, candidate)
            if similarity < threshold:
                continue
            scored.append(
                {
                    "id": str(row["id"]),
                    "session_id": str(row["session_id"]),
                    "user_message": str(row["user_message"] or ""),
                    "bot_response": str(row["bot_response"] or ""),
                    "created_at": row["created_at"],
                    "similarity": similarity,
                }
            )

        scored.sort(key=lambda item: item["similarity"], reverse=True)
        return scored[: max(0, int(limit))]

    # ==================== Pattern search ====================

    def pattern_search(
        self,
        patterns: Sequence[str],
        kinds: Optional[Sequence[str]],
        limit: int,
    ) -> List[Dict[str, Any]]:
        """OR-of-substrings match over title, tags and body.

        Rows matching in the title come first, then tag matches, then body.
        """
        if not patterns:
            return []
        title_match = self._pattern_clause("title", patterns)
        tags_match = self._pattern_clause("lexical_tags", patterns)
        body_match = self._pattern_clause("body", patterns)
        kind_sql, kind_params = self._kind_clause(kinds)
        pattern_params = list(patterns)

        sql = f"""
            SELECT id, kind, title, body, attributes_json, lexical_tags
            FROM content_chunks
            WHERE status = 'active'
              AND ({body_match} OR {tags_match} OR {title_match}){kind_sql}
            ORDER BY
              CASE
                WHEN {title_match} THEN 3
                WHEN {tags_match} THEN 2
                ELSE 1
              END DESC,
              rowid ASC
            LIMIT ?
        """
        params: List[Any] = [
            *pattern_params,
            *pattern_params,
            *pattern_params,
            *kind_params,
            *pattern_params,
            *pattern_params,
            max(1, int(limit)),
        ]
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            {
                "id": str(row["id"]),
                "kind": str(row["kind"]),
                "title": row["title"],
                "body": str(row["body"] or ""),
                "attributes": json.loads(row["attributes_json"] or "{}"),
                "lexical_tags": row["lexical_tags"],
            }
            for row in rows
        ]

    def simple_pattern_search(
        self,
        patterns: Sequence[str],
        kinds: Optional[Sequence[str]],
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Pattern match over the flat fallback corpus, tag matches first."""
        if not patterns:
            return []
        tags_match = self._pattern_clause("lexical_tags", patterns)
        body_match = self._pattern_clause("body", patterns)
        kind_sql, kind_params = self._kind_clause(kinds)
        pattern_params = list(patterns)

        sql = f"""
            SELECT id, kind, body, attributes_json, lexical_tags
            FROM content_chunks_simple
            WHERE ({body_match} OR {tags_match}){kind_sql}
            ORDER BY
              CASE WHEN {tags_match} THEN 2 ELSE 1 END DESC,
              rowid ASC
            LIMIT ?
        """
        params: List[Any] = [
            *pattern_params,
            *pattern_params,
            *kind_params,
            *pattern_params,
            max(1, int(limit)),
        ]
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()

        return [
            {
                "id": str(row["id"]),
                "kind": str(row["kind"]),
                "title": None,
                "body": str(row["body"] or ""),
                "attributes": json.loads(row["attributes_json"] or "{}"),
                "lexical_tags": row["lexical_tags"],
            }
            for row in rows
        ]
