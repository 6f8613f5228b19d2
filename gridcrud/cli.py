import argparse
import glob
import json
import logging
import sys
from pathlib import Path

from gridcrud.app import load_app, validate_app
from gridcrud.config import Settings
from gridcrud.server import run_server
from gridcrud.version import get_version

_SAMPLE = {
    "name": "Blog",
    "app_version": 1,
    "db": {"driver": "sqlite", "database": "blog.db"},
    "setup_sql": [
        "CREATE TABLE IF NOT EXISTS users ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, username TEXT NOT NULL UNIQUE, "
        "email TEXT, role TEXT DEFAULT 'user')",
        "CREATE TABLE IF NOT EXISTS posts ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT, user_id INTEGER REFERENCES users(id), "
        "title TEXT NOT NULL, content TEXT, status TEXT DEFAULT 'draft', "
        "created_at TEXT DEFAULT CURRENT_TIMESTAMP)",
    ],
    "pages": [
        {
            "path": "/",
            "title": "Posts",
            "grids": [
                {
                    "table": "posts",
                    "title": "Posts Overview",
                    "icon": "bi bi-newspaper",
                    "columns": ["id", "user_id", "title", "status", "created_at"],
                    "labels": {"user_id": "Author", "created_at": "Published"},
                    "per_page": 10,
                    "per_page_choices": [5, 10, 25, "all"],
                    "order_by": [{"column": "id", "direction": "desc"}],
                    "search_columns": ["title", "content", "user_id"],
                    "default_search_column": "title",
                    "relations": [{"field": "user_id", "table": "users", "target": "id", "display": ["username"]}],
                    "column_cuts": {"title": 40},
                    "row_highlights": [
                        {"condition": {"column": "status", "operator": "equals", "value": "draft"}, "css_class": "table-warning"}
                    ],
                    "validation": {"title": {"required": True, "max_length": 200}},
                    "actions": {"delete": {"enabled": True, "condition": {"column": "status", "operator": "equals", "value": "published"}}},
                }
            ],
        },
        {
            "path": "/users",
            "title": "Users",
            "grids": [
                {
                    "table": "users",
                    "columns": ["id", "username", "email", "role"],
                    "search_columns": ["username", "email"],
                    "validation": {
                        "username": {"required": True, "pattern": "alpha_dash", "unique": True},
                        "email": {"pattern": "email"},
                    },
                    "field_types": {"role": {"type": "select", "default": "user", "options": ["user", "admin"]}},
                    "summaries": [{"column": "id", "type": "count", "label": "Users"}],
                }
            ],
        },
    ],
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def cmd_validate(args: argparse.Namespace) -> int:
    def _collect_paths(raw: str) -> list[Path]:
        p = Path(raw)
        if p.exists():
            if p.is_dir():
                return sorted(p.rglob("*.grid.json"))
            return [p]
        # Allow shell-less glob usage: `gridcrud validate apps/**/*.grid.json`
        if any(ch in raw for ch in ("*", "?", "[")):
            out: list[Path] = []
            for m in (Path(m) for m in glob.glob(raw, recursive=True)):
                out.extend(sorted(m.rglob("*.grid.json")) if m.is_dir() else [m])
            return out
        return []

    files: list[Path] = []
    seen: set[Path] = set()
    for raw in args.paths:
        for f in _collect_paths(raw):
            rf = f.resolve()
            if rf not in seen:
                seen.add(rf)
                files.append(rf)

    if not files:
        print("ERROR: No app files found. Expected a .grid.json file or a directory containing them.", file=sys.stderr)
        return 1

    errors: list[tuple[Path, Exception]] = []
    for f in files:
        try:
            validate_app(load_app(str(f)))
        except (OSError, ValueError) as exc:
            errors.append((f, exc))

    if errors:
        for f, exc in errors:
            print(f"ERROR: {f}: {exc}", file=sys.stderr)
        return 1

    print("OK" if len(files) == 1 else f"OK ({len(files)} files)")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    app = validate_app(load_app(args.file))
    run_server(app, Settings.from_env(), host=args.host, port=args.port)
    return 0


def cmd_init(args: argparse.Namespace) -> int:
    path = Path(args.file)
    if path.exists() and not args.force:
        raise SystemExit(f"File already exists: {path}")
    path.write_text(json.dumps(_SAMPLE, ensure_ascii=False, indent=2), encoding="utf-8")
    print(str(path))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="gridcrud")
    parser.add_argument("--version", action="version", version=f"gridcrud {get_version()}")
    parser.add_argument("--log-level", default=None, help="Logging level (default: GRIDCRUD_LOG_LEVEL or INFO)")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_validate = sub.add_parser("validate", help="Validate gridcrud app files")
    p_validate.add_argument("paths", nargs="+", help="App file(s), directory, or glob (e.g. apps/**/*.grid.json)")
    p_validate.set_defaults(func=cmd_validate)

    p_run = sub.add_parser("run", help="Serve an app with the development server")
    p_run.add_argument("file")
    p_run.add_argument("--host", default="127.0.0.1")
    p_run.add_argument("--port", type=int, default=8000)
    p_run.set_defaults(func=cmd_run)

    p_init = sub.add_parser("init", help="Create a sample app JSON")
    p_init.add_argument("file", nargs="?", default="app.grid.json")
    p_init.add_argument("--force", action="store_true")
    p_init.set_defaults(func=cmd_init)

    args = parser.parse_args(argv)
    _configure_logging(args.log_level or Settings.from_env().log_level)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
