"""Shared pytest fixtures for all tests."""

import fnmatch
import shutil
import uuid
from pathlib import Path
from typing import Dict, Optional

import pytest

from portfolio_rag.models.search import ContentChunk


def _create_workspace_temp_dir(kind: str) -> Path:
    """Create a temporary directory under repository-local .pytest_work."""
    repo_root = Path(__file__).resolve().parents[1]
    root_dir = repo_root / ".pytest_work" / kind
    root_dir.mkdir(parents=True, exist_ok=True)
    temp_dir = root_dir / f"{kind}_{uuid.uuid4().hex[:8]}"
    temp_dir.mkdir(parents=True, exist_ok=True)
    return temp_dir


@pytest.fixture
def tmp_path():
    """Workspace-local replacement for pytest's tmp_path fixture."""
    temp_dir = _create_workspace_temp_dir("tmp_path")
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


class FakeRedis:
    """In-memory stand-in for the ``redis.asyncio`` calls the cache uses."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, Optional[int]] = {}
        self.fail = False
        self.closed = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def get(self, name):
        self._check()
        return self.data.get(name)

    async def set(self, name, value, ex=None):
        self._check()
        self.data[name] = value
        self.ttls[name] = ex
        return True

    async def delete(self, *names):
        self._check()
        removed = 0
        for name in names:
            if self.data.pop(name, None) is not None:
                removed += 1
        return removed

    async def exists(self, *names):
        self._check()
        return sum(1 for name in names if name in self.data)

    async def scan_iter(self, match=None):
        self._check()
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    async def ping(self):
        self._check()
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def make_chunk():
    """Factory for ContentChunk records with sensible defaults."""

    def _make(
        chunk_id: str,
        *,
        kind: str = "experience",
        body: Optional[str] = None,
        title: Optional[str] = None,
        relevance: float = 0.0,
        origin: str = "semantic",
        lexical_tags: Optional[str] = None,
        vector=None,
    ) -> ContentChunk:
        return ContentChunk(
            id=chunk_id,
            kind=kind,
            body=body if body is not None else f"Body of chunk {chunk_id}",
            title=title,
            lexical_tags=lexical_tags,
            vector=vector,
            relevance=relevance,
            origin=origin,
        )

    return _make


@pytest.fixture
def portfolio_chunks():
    """Small résumé corpus with 3-d vectors (axes: backend, frontend, education)."""
    return [
        ContentChunk(
            id="exp-1",
            kind="experience",
            title="Backend Engineer at Consuy",
            body="Built Python data pipelines and REST APIs for payment reconciliation.",
            lexical_tags="python, api, backend, payments",
            vector=[1.0, 0.0, 0.0],
            attributes={"company": "Consuy", "years": 3},
        ),
        ContentChunk(
            id="proj-1",
            kind="project",
            title="Portfolio Chatbot",
            body="A React and TypeScript chatbot that answers questions about my career.",
            lexical_tags="react, typescript, chatbot",
            vector=[0.2, 1.0, 0.0],
        ),
        ContentChunk(
            id="edu-1",
            kind="education",
            title="BSc Computer Science",
            body="Studied algorithms, databases and distributed systems at university.",
            lexical_tags="degree, university, computer science",
            vector=[0.0, 0.0, 1.0],
        ),
        ContentChunk(
            id="skills-1",
            kind="skills",
            body="Python, SQL, React, Docker and cloud infrastructure.",
            lexical_tags="python, sql, react, docker",
            vector=[0.7, 0.7, 0.0],
        ),
    ]
