from __future__ import annotations

import importlib.metadata
import tomllib
from pathlib import Path

_DISTRIBUTION_NAME = "gridcrud"
_UNKNOWN = "0.0.0+unknown"


def _find_repo_root(start: Path) -> Path | None:
    for parent in [start, *start.parents]:
        if (parent / "pyproject.toml").is_file():
            return parent
    return None


def _read_pyproject_version(pyproject: Path) -> str | None:
    try:
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError):
        return None
    project = data.get("project")
    if not isinstance(project, dict) or project.get("name") != _DISTRIBUTION_NAME:
        return None
    version = project.get("version")
    if isinstance(version, str) and version.strip():
        return version.strip()
    return None


def get_version() -> str:
    """Installed distribution metadata first, then the checkout's pyproject.toml."""
    try:
        return importlib.metadata.version(_DISTRIBUTION_NAME)
    except importlib.metadata.PackageNotFoundError:
        root = _find_repo_root(Path(__file__).resolve().parent)
        if root:
            return _read_pyproject_version(root / "pyproject.toml") or _UNKNOWN
        return _UNKNOWN
