from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from gridcrud.config import DbConfig

log = logging.getLogger(__name__)

_SAFE_IDENT_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_PK_NAME_RE = re.compile(r"(^id$|_id$)", re.IGNORECASE)


def is_safe_ident(value: Any) -> bool:
    return isinstance(value, str) and bool(_SAFE_IDENT_RE.match(value))


def require_ident(value: Any, *, what: str) -> str:
    # Identifiers are interpolated into SQL text, values never are.
    if not is_safe_ident(value):
        raise ValueError(f"Invalid {what} identifier: {value!r}")
    return value


def quote_ident(value: str) -> str:
    require_ident(value, what="column")
    return f'"{value}"'


def split_ref(ref: str) -> Tuple[str | None, str]:
    """Split `alias.column` into its parts; bare names get no alias."""
    if not isinstance(ref, str):
        raise ValueError(f"Invalid column reference: {ref!r}")
    if "." in ref:
        alias, column = ref.split(".", 1)
        return require_ident(alias, what="alias"), require_ident(column, what="column")
    return None, require_ident(ref, what="column")


@dataclass
class ColumnInfo:
    name: str
    type: str = ""
    notnull: bool = False
    default: Any = None
    pk: bool = False

    @property
    def affinity(self) -> str:
        # SQLite type affinity rules, simplified.
        declared = self.type.upper()
        if "INT" in declared:
            return "int"
        if any(token in declared for token in ("REAL", "FLOA", "DOUB", "NUMERIC", "DECIMAL")):
            return "float"
        if "BOOL" in declared:
            return "bool"
        return "text"


class ConnectionProvider:
    """Lazily opens and caches one database handle for a DbConfig."""

    def __init__(self, config: DbConfig | None = None) -> None:
        self.config = config or DbConfig()
        self._conn: sqlite3.Connection | None = None

    def connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = connect(self.config.database, **self.config.options)
            log.debug("Opened %s connection to %s", self.config.driver, self.config.database)
        return self._conn

    def set_connection(self, conn: sqlite3.Connection) -> None:
        register_functions(conn)
        self._conn = conn

    def configure(self, config: DbConfig) -> None:
        self.disconnect()
        self.config = config

    def disconnect(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


default_provider = ConnectionProvider()


def connection() -> sqlite3.Connection:
    return default_provider.connection()


# Unicode case folding for search; SQLite LOWER() only folds ASCII.
FOLD_FUNCTION = "gridcrud_fold"


def _fold(value: Any) -> Any:
    if value is None:
        return None
    return str(value).casefold()


def register_functions(conn: sqlite3.Connection) -> None:
    conn.create_function(FOLD_FUNCTION, 1, _fold, deterministic=True)


def connect(path: str, *, check_same_thread: bool = True, **options: Any) -> sqlite3.Connection:
    conn = sqlite3.connect(path, check_same_thread=check_same_thread, **options)
    conn.row_factory = sqlite3.Row
    register_functions(conn)
    return conn


def table_columns(conn: sqlite3.Connection, table: str) -> List[ColumnInfo]:
    require_ident(table, what="table")
    cur = conn.execute(f"PRAGMA table_info({quote_ident(table)})")
    columns = [
        ColumnInfo(
            name=str(row["name"]),
            type=str(row["type"] or ""),
            notnull=bool(row["notnull"]),
            default=row["dflt_value"],
            pk=bool(row["pk"]),
        )
        for row in cur.fetchall()
    ]
    if columns:
        return columns
    # Views and virtual tables may not report through PRAGMA.
    cur = conn.execute(f"SELECT * FROM {quote_ident(table)} LIMIT 0")
    return [ColumnInfo(name=str(desc[0])) for desc in cur.description or ()]


def detect_primary_key(columns: Sequence[ColumnInfo]) -> str | None:
    for column in columns:
        if column.pk:
            return column.name
    for column in columns:
        if _PK_NAME_RE.search(column.name):
            return column.name
    return columns[0].name if columns else None


def fetch_all(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> List[Dict[str, Any]]:
    log.debug("SQL %s %r", sql, tuple(params))
    cursor = conn.execute(sql, tuple(params))
    return [dict(row) for row in cursor.fetchall()]


def fetch_one(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> Dict[str, Any] | None:
    log.debug("SQL %s %r", sql, tuple(params))
    cursor = conn.execute(sql, tuple(params))
    row = cursor.fetchone()
    return dict(row) if row else None


def fetch_scalar(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> Any:
    log.debug("SQL %s %r", sql, tuple(params))
    row = conn.execute(sql, tuple(params)).fetchone()
    return row[0] if row else None


def execute_write(conn: sqlite3.Connection, sql: str, params: Iterable[Any] = ()) -> sqlite3.Cursor:
    log.debug("SQL %s %r", sql, tuple(params))
    cursor = conn.execute(sql, tuple(params))
    conn.commit()
    return cursor


def coerce_value(kind: str, value: Any, *, nullable: bool = True) -> Any:
    """Coerce a submitted form value for storage in a column of the given kind."""
    if value is None:
        return None
    if isinstance(value, str) and value == "" and kind in ("int", "float", "bool") and nullable:
        return None
    if kind == "int":
        if isinstance(value, bool):
            return int(value)
        if isinstance(value, str):
            return int(value.strip())
        return int(value)
    if kind == "float":
        return float(value)
    if kind == "bool":
        if isinstance(value, str):
            return 1 if value.strip().lower() in ("1", "true", "yes", "on") else 0
        return 1 if bool(value) else 0
    if kind == "multi":
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value if v not in (None, ""))
        return str(value)
    if kind == "json":
        if isinstance(value, str):
            return value
        return json.dumps(value, ensure_ascii=False)
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return value
