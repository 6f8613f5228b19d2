from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List

from gridcrud.config import DbConfig, Settings
from gridcrud.grid import Grid
from gridcrud.schema import GridConfig, validate_config

APP_VERSION = 1

_PATH_RE = re.compile(r"^/[A-Za-z0-9_\-/]*$")
_RESERVED_PREFIXES = ("/static", "/uploads")


@dataclass
class PageSpec:
    path: str
    title: str
    grids: List[GridConfig] = field(default_factory=list)


@dataclass
class AppSpec:
    name: str
    db: DbConfig
    pages: List[PageSpec]
    setup_sql: List[str] = field(default_factory=list)

    def page_map(self) -> Dict[str, PageSpec]:
        return {page.path: page for page in self.pages}


def load_app(path: str) -> Dict[str, Any]:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        raise ValueError("App file must be an object")
    return data


def validate_app(raw: Dict[str, Any]) -> AppSpec:
    if not isinstance(raw, dict):
        raise ValueError("App file must be an object")
    version = raw.get("app_version", APP_VERSION)
    if version != APP_VERSION:
        raise ValueError(f"Unsupported app_version: {version!r} (expected {APP_VERSION})")
    name = raw.get("name") or "gridcrud"
    if not isinstance(name, str):
        raise ValueError("name must be a string")
    db_config = DbConfig.from_dict(raw.get("db"))

    setup_sql = raw.get("setup_sql") or []
    if not isinstance(setup_sql, list) or not all(isinstance(s, str) for s in setup_sql):
        raise ValueError("setup_sql must be a list of SQL strings")

    pages_raw = raw.get("pages")
    if not isinstance(pages_raw, list) or not pages_raw:
        raise ValueError("pages must be a non-empty list")
    pages: List[PageSpec] = []
    seen: set[str] = set()
    for p_idx, item in enumerate(pages_raw):
        if not isinstance(item, dict):
            raise ValueError("page must be an object")
        path = item.get("path", "/")
        if not isinstance(path, str) or not _PATH_RE.match(path):
            raise ValueError(f"Invalid page path: {path!r}")
        if path.startswith(_RESERVED_PREFIXES):
            raise ValueError(f"Page path is reserved: {path}")
        if path in seen:
            raise ValueError(f"Duplicate page path: {path}")
        seen.add(path)
        grids_raw = item.get("grids")
        if not isinstance(grids_raw, list) or not grids_raw:
            raise ValueError(f"Page {path} needs at least one grid")
        grids = []
        for g_idx, grid_raw in enumerate(grids_raw):
            if not isinstance(grid_raw, dict):
                raise ValueError("grid must be an object")
            grid_raw = dict(grid_raw)
            grid_raw.setdefault("grid_id", f"grid-{p_idx}-{g_idx}")
            try:
                grids.append(validate_config(grid_raw))
            except ValueError as exc:
                raise ValueError(f"Page {path}, grid {g_idx}: {exc}") from exc
        title = item.get("title") or name
        if not isinstance(title, str):
            raise ValueError("page title must be a string")
        pages.append(PageSpec(path=path, title=title, grids=grids))
    return AppSpec(name=name, db=db_config, pages=pages, setup_sql=list(setup_sql))


def run_setup(app: AppSpec, conn: sqlite3.Connection) -> None:
    for statement in app.setup_sql:
        conn.executescript(statement)
    conn.commit()


def build_grids(page: PageSpec, *, connection: sqlite3.Connection, settings: Settings) -> List[Grid]:
    # Configs are copied so per-request changes never leak between requests.
    return [Grid.from_dict(config.to_dict(), connection=connection, settings=settings) for config in page.grids]
