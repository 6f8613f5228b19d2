from __future__ import annotations

from typing import Any, Dict, Iterable, List, Sequence, Tuple

from gridcrud.db import FOLD_FUNCTION, quote_ident, require_ident, split_ref
from gridcrud.schema import WHERE_OPERATORS, GridConfig, Relation, Subselect, Summary, WhereClause

Fragment = Tuple[str, List[Any]]

_LIKE_ESCAPE = "\\"


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so the term matches literally."""
    return (
        term.replace(_LIKE_ESCAPE, _LIKE_ESCAPE * 2)
        .replace("%", _LIKE_ESCAPE + "%")
        .replace("_", _LIKE_ESCAPE + "_")
    )


def _qualified(alias: str, column: str) -> str:
    return f"{quote_ident(alias)}.{quote_ident(column)}"


def compile_operator(expr: str, operator: str, value: Any) -> Fragment:
    op = str(operator).upper()
    if op not in WHERE_OPERATORS:
        raise ValueError(f"Unsupported operator: {operator!r}")
    if op in ("IS NULL", "IS NOT NULL"):
        return f"{expr} {op}", []
    if op in ("IN", "NOT IN"):
        values = list(value) if isinstance(value, (list, tuple, set)) else [value]
        if not values:
            # IN () is a syntax error; an empty set matches nothing.
            return ("1 = 0" if op == "IN" else "1 = 1"), []
        marks = ", ".join("?" for _ in values)
        return f"{expr} {op} ({marks})", values
    if value is None and op in ("=", "!=", "<>"):
        return f"{expr} {'IS NULL' if op == '=' else 'IS NOT NULL'}", []
    return f"{expr} {op} ?", [value]


class QueryBuilder:
    """
    Assembles the SQL for one grid. Identifiers are checked and quoted,
    values always travel as bound parameters.
    """

    def __init__(self, config: GridConfig, table_columns: Iterable[str]) -> None:
        self.config = config
        self.table = require_ident(config.table, what="table")
        self.table_columns = list(table_columns)
        self._columns = set(self.table_columns)
        self._joins = config.join_aliases()
        self._subselects = config.subselect_aliases()

    # column references

    def is_known(self, ref: str) -> bool:
        try:
            self.expr(ref)
        except ValueError:
            return False
        return True

    def expr(self, ref: str) -> str:
        alias, column = split_ref(ref)
        if alias is not None:
            if alias == self.table and column in self._columns:
                return _qualified(self.table, column)
            if alias not in self._joins:
                raise ValueError(f"Unknown join alias: {alias!r}")
            return _qualified(alias, column)
        if column in self._subselects:
            return self.subselect_expr(self._subselects[column])
        if column not in self._columns:
            raise ValueError(f"Unknown column: {column!r}")
        return _qualified(self.table, column)

    def subselect_expr(self, sub: Subselect) -> str:
        source = f"{quote_ident(sub.table)} AS \"s\""
        match = f"{_qualified('s', sub.match_column)} = {_qualified(self.table, sub.outer_column)}"
        if sub.aggregate == "count" and sub.column is None:
            agg = "COUNT(*)"
        else:
            agg = f"{sub.aggregate.upper()}({_qualified('s', sub.column)})"
        return f"(SELECT {agg} FROM {source} WHERE {match})"

    def relation_label_expr(self, relation: Relation) -> str:
        """Correlated lookup of the first display column, used for sorting."""
        first = relation.display[0]
        return (
            f"(SELECT {_qualified('r', first)} FROM {quote_ident(relation.table)} AS \"r\" "
            f"WHERE {_qualified('r', relation.target)} = {_qualified(self.table, relation.field)} LIMIT 1)"
        )

    # clauses

    def from_clause(self) -> str:
        parts = [f"FROM {quote_ident(self.table)}"]
        for join in self.config.joins:
            parts.append(
                f"LEFT JOIN {quote_ident(join.table)} AS {quote_ident(join.alias)} "
                f"ON {_qualified(join.alias, join.join_field)} = {_qualified(self.table, join.field)}"
            )
        return " ".join(parts)

    def select_list(self, columns: Sequence[str], primary_key: str | None) -> str:
        items: List[str] = []
        seen = set()
        for ref in columns:
            if ref in seen:
                continue
            seen.add(ref)
            items.append(f"{self.expr(ref)} AS {quote_ident_ref(ref)}")
        if primary_key and primary_key not in seen and primary_key in self._columns:
            items.append(f"{_qualified(self.table, primary_key)} AS {quote_ident(primary_key)}")
        return ", ".join(items)

    def where_chain(self, clauses: Sequence[WhereClause]) -> Fragment:
        """Fold clauses left to right: a, OR b, AND c gives ((a OR b) AND c)."""
        chain = ""
        params: List[Any] = []
        for clause in clauses:
            fragment, values = compile_operator(self.expr(clause.column), clause.operator, clause.value)
            chain = f"({chain} {clause.glue.upper()} {fragment})" if chain else f"({fragment})"
            params.extend(values)
        return chain, params

    def searchable(self) -> List[str]:
        if self.config.search_columns:
            return list(self.config.search_columns)
        if self.config.columns:
            return [c for c in self.config.columns if c not in self._subselects]
        return list(self.table_columns)

    def search_clause(self, term: Any, column: str | None = None) -> Fragment:
        if term is None or str(term).strip() == "":
            return "", []
        allowed = self.searchable()
        if column:
            if column not in allowed:
                raise ValueError(f"Column is not searchable: {column!r}")
            targets = [column]
        else:
            targets = allowed
        pattern = f"%{escape_like(str(term).strip())}%"
        like = f"LIKE {FOLD_FUNCTION}(?) ESCAPE '{_LIKE_ESCAPE}'"
        ors: List[str] = []
        params: List[Any] = []
        for ref in targets:
            expr = self.expr(ref)
            ors.append(f"{FOLD_FUNCTION}({expr}) {like}")
            params.append(pattern)
            relation = self.config.relation_for(ref)
            if relation is not None and not relation.multi:
                label_ors = " OR ".join(f"{FOLD_FUNCTION}({_qualified('r', col)}) {like}" for col in relation.display)
                ors.append(
                    f"{expr} IN (SELECT {_qualified('r', relation.target)} "
                    f"FROM {quote_ident(relation.table)} AS \"r\" WHERE {label_ors})"
                )
                params.extend([pattern] * len(relation.display))
        if not ors:
            return "", []
        return f"({' OR '.join(ors)})", params

    def filter_clause(
        self,
        *,
        search_term: Any = None,
        search_column: str | None = None,
        extra: Sequence[Fragment] = (),
    ) -> Fragment:
        """Configured where chain, search and extra conditions, ANDed."""
        fragments = [self.where_chain(self.config.where), self.search_clause(search_term, search_column)]
        fragments.extend(extra)
        parts = [sql for sql, _ in fragments if sql]
        params: List[Any] = []
        for sql, values in fragments:
            if sql:
                params.extend(values)
        if not parts:
            return "", []
        return " WHERE " + " AND ".join(parts), params

    def order_clause(self, sort: str | None, direction: str | None, primary_key: str | None) -> str:
        entries: List[Tuple[str, str]] = []
        if sort:
            entries.append((sort, "desc" if str(direction or "").lower() == "desc" else "asc"))
        for order in self.config.order_by:
            entries.append((order.column, order.direction))
        if primary_key and primary_key in self._columns:
            entries.append((primary_key, "asc"))
        rendered: List[str] = []
        used = set()
        for ref, dirn in entries:
            if ref in used:
                continue
            used.add(ref)
            relation = self.config.relation_for(ref)
            if relation is not None and not relation.multi:
                expr = self.relation_label_expr(relation)
            else:
                expr = self.expr(ref)
            rendered.append(f"{expr} {'DESC' if dirn == 'desc' else 'ASC'}")
        return " ORDER BY " + ", ".join(rendered) if rendered else ""

    # statements

    def select(
        self,
        columns: Sequence[str],
        *,
        primary_key: str | None,
        where: Fragment = ("", []),
        order: str = "",
        limit: int | None = None,
        offset: int = 0,
    ) -> Fragment:
        where_sql, params = where
        sql = f"SELECT {self.select_list(columns, primary_key)} {self.from_clause()}{where_sql}{order}"
        params = list(params)
        if limit:
            sql += " LIMIT ? OFFSET ?"
            params.extend([int(limit), max(int(offset), 0)])
        return sql, params

    def count(self, where: Fragment = ("", [])) -> Fragment:
        where_sql, params = where
        return f"SELECT COUNT(*) {self.from_clause()}{where_sql}", list(params)

    def summaries(self, summaries: Sequence[Summary], where: Fragment = ("", [])) -> Fragment:
        where_sql, params = where
        items = []
        for idx, summary in enumerate(summaries):
            expr = self.expr(summary.column)
            items.append(f"{summary.type.upper()}({expr}) AS \"s{idx}\"")
        return f"SELECT {', '.join(items)} {self.from_clause()}{where_sql}", list(params)

    def pk_condition(self, primary_key: str, value: Any) -> Fragment:
        require_ident(primary_key, what="primary key")
        if primary_key not in self._columns:
            raise ValueError(f"Unknown column: {primary_key!r}")
        return f"{_qualified(self.table, primary_key)} = ?", [value]


def quote_ident_ref(ref: str) -> str:
    """Quote a result alias; joined columns keep their dotted name."""
    alias, column = split_ref(ref)
    return f'"{alias}.{column}"' if alias else quote_ident(column)


def insert_sql(table: str, data: Dict[str, Any]) -> Fragment:
    require_ident(table, what="table")
    if not data:
        return f"INSERT INTO {quote_ident(table)} DEFAULT VALUES", []
    cols = list(data.keys())
    col_sql = ", ".join(quote_ident(c) for c in cols)
    marks = ", ".join("?" for _ in cols)
    return f"INSERT INTO {quote_ident(table)} ({col_sql}) VALUES ({marks})", [data[c] for c in cols]


def update_sql(table: str, data: Dict[str, Any], primary_key: str, value: Any) -> Fragment:
    require_ident(table, what="table")
    if not data:
        raise ValueError("No fields to update")
    cols = list(data.keys())
    sets = ", ".join(f"{quote_ident(c)} = ?" for c in cols)
    return (
        f"UPDATE {quote_ident(table)} SET {sets} WHERE {quote_ident(primary_key)} = ?",
        [data[c] for c in cols] + [value],
    )


def delete_sql(table: str, primary_key: str, value: Any) -> Fragment:
    require_ident(table, what="table")
    return f"DELETE FROM {quote_ident(table)} WHERE {quote_ident(primary_key)} = ?", [value]


def exists_sql(table: str, column: str, value: Any, *, exclude: Tuple[str, Any] | None = None) -> Fragment:
    """Used by the `unique` validation rule."""
    require_ident(table, what="table")
    sql = f"SELECT 1 FROM {quote_ident(table)} WHERE {quote_ident(column)} = ?"
    params: List[Any] = [value]
    if exclude is not None:
        sql += f" AND {quote_ident(exclude[0])} != ?"
        params.append(exclude[1])
    return sql + " LIMIT 1", params


def relation_options_sql(relation: Relation, values: Sequence[Any] | None = None, *, limit: int | None = None) -> Fragment:
    """Options for a relation: `value` plus each display column."""
    cols = [f"{quote_ident(relation.target)} AS \"value\""]
    cols.extend(quote_ident(col) for col in relation.display if col != "value")
    sql = f"SELECT {', '.join(cols)} FROM {quote_ident(relation.table)}"
    conds: List[str] = []
    params: List[Any] = []
    for key, expected in relation.where.items():
        fragment, values_ = compile_operator(quote_ident(key), "=", expected)
        conds.append(fragment)
        params.extend(values_)
    if values is not None:
        fragment, values_ = compile_operator(quote_ident(relation.target), "IN", list(values))
        conds.append(fragment)
        params.extend(values_)
    if conds:
        sql += " WHERE " + " AND ".join(conds)
    sql += f" ORDER BY {quote_ident(relation.order_by or relation.display[0])}"
    if limit:
        sql += " LIMIT ?"
        params.append(int(limit))
    return sql, params
