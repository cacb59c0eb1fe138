"""
Environment + project-root helpers.

The ORS API key usually lives in a repo-local `.env` file, and the engine is started
from different working directories (CLI, uvicorn, tests). Relative settings such as
`cache.dir` are resolved against the project root found here.
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv

_ROOT_MARKERS = (".env", ".git")


def _is_project_root(path: Path) -> bool:
    if any((path / marker).exists() for marker in _ROOT_MARKERS):
        return True
    return (path / "pyproject.toml").is_file() and (path / "src").is_dir()


def _search_upwards(start: Path) -> Path | None:
    start = start.resolve()
    for candidate in (start, *start.parents):
        if _is_project_root(candidate):
            return candidate
    return None


def _explicit_env_file() -> Path | None:
    value = os.getenv("DELIVERYTRACK_ENV_FILE")
    return Path(value).expanduser().resolve() if value else None


@lru_cache
def get_project_root() -> Path:
    """Project root: `DELIVERYTRACK_PROJECT_ROOT`, the env file's directory, or a marker search.

    The search starts at the working directory, then at the installed package.
    """
    override = os.getenv("DELIVERYTRACK_PROJECT_ROOT")
    if override:
        return Path(override).expanduser().resolve()

    env_file = _explicit_env_file()
    if env_file is not None:
        return env_file.parent

    return (
        _search_upwards(Path.cwd())
        or _search_upwards(Path(__file__).parent)
        or Path.cwd().resolve()
    )


@lru_cache
def load_dotenv_if_present() -> Path | None:
    """Load `.env` once and return its path. Variables already in the environment win."""
    env_path = _explicit_env_file() or get_project_root() / ".env"
    if not env_path.is_file():
        return None
    load_dotenv(dotenv_path=env_path, override=False)
    return env_path


def resolve_project_path(path: str | Path) -> Path:
    """Resolve a possibly-relative path against the project root."""
    p = Path(path).expanduser()
    if p.is_absolute():
        return p
    return (get_project_root() / p).resolve()
