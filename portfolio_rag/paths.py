"""
Path helpers for repository layout.

Layout:
- config/defaults/: tracked default configs (rag_config.yaml)
- data/state/: writable instance state (gitignored): the live rag_config.yaml
  and the SQLite corpus database
- logs/: rotating log files
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Optional


@lru_cache(maxsize=1)
def repo_root() -> Path:
    # portfolio_rag/paths.py -> parents: portfolio_rag/ -> repo root
    return Path(__file__).resolve().parents[1]


def config_defaults_dir() -> Path:
    return repo_root() / "config" / "defaults"


def data_state_dir() -> Path:
    return repo_root() / "data" / "state"


def logs_dir() -> Path:
    return repo_root() / "logs"


def resolve_repo_path(path: Path | str) -> Path:
    """Anchor relative paths at the repository root."""
    candidate = Path(path).expanduser()
    if candidate.is_absolute():
        return candidate
    return repo_root() / candidate


def ensure_local_file(
    *,
    local_path: Path,
    defaults_path: Optional[Path] = None,
    initial_text: Optional[str] = None,
) -> bool:
    """
    Create a writable local file if it is missing.

    Copies defaults_path when that file exists, otherwise writes initial_text.
    Returns True when a file was created.
    """
    if local_path.exists():
        return False

    local_path.parent.mkdir(parents=True, exist_ok=True)
    if defaults_path is not None and defaults_path.is_file():
        local_path.write_text(defaults_path.read_text(encoding="utf-8"), encoding="utf-8")
    else:
        local_path.write_text(initial_text or "", encoding="utf-8")
    return True
