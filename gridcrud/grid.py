from __future__ import annotations

import html
import logging
import math
import re
import secrets
import sqlite3
from typing import Any, Callable, Dict, Iterable, List, Sequence, Tuple

from gridcrud import db, hooks
from gridcrud.conditions import matches_row
from gridcrud.config import Settings, get_settings
from gridcrud.query import QueryBuilder, compile_operator, delete_sql, exists_sql, insert_sql, relation_options_sql, update_sql
from gridcrud.schema import (
    ALLOWED_ACTIONS,
    FIELD_TYPES,
    FORM_MODES,
    ROW_ACTIONS,
    SUBSELECT_AGGREGATES,
    SUMMARY_TYPES,
    WHERE_OPERATORS,
    ActionRule,
    FieldType,
    GridConfig,
    Highlight,
    Join,
    NestedGrid,
    OrderBy,
    Relation,
    Subselect,
    Summary,
    WhereClause,
    check_per_page_choice,
    require_css,
    require_ref,
    split_list,
    validate_config,
)
from gridcrud.signing import load_config, sign_config
from gridcrud.validation import ValidationError, check_rules, validate_fields

log = logging.getLogger(__name__)

MAX_PER_PAGE = 1000
RELATION_OPTION_LIMIT = 1000

_PATTERN_TOKEN_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")

# Field type -> storage coercion kind.
_STORAGE_KINDS = {
    "int": "int",
    "float": "float",
    "bool": "bool",
    "multiselect": "multi",
    "json": "json",
}


class ActionRejected(PermissionError):
    """The action is disabled for the grid, or for this particular row."""

    def __init__(self, action: str, message: str | None = None) -> None:
        super().__init__(message or f"Action not allowed: {action}")
        self.action = action


class RecordNotFound(LookupError):
    pass


def generate_id() -> str:
    return "gridcrud-" + secrets.token_hex(6)


def make_title(name: str) -> str:
    return " ".join(part.capitalize() for part in re.split(r"[_.\s]+", name) if part)


def _text(value: Any) -> str:
    return "" if value is None else str(value)


def _callable_name(target: Any, register: Callable[[str, Callable[..., Any]], Any]) -> str:
    """Accept a registered name or a function (registered under its own name)."""
    if callable(target):
        name = getattr(target, "__name__", "")
        if not name or name == "<lambda>":
            raise ValueError("Handlers passed as functions must be named functions")
        register(name, target)
        return name
    if not isinstance(target, str) or not target:
        raise ValueError("Handler must be a registered name or a function")
    return target


class Grid:
    """
    Fluent builder for one database-backed grid.

    Configuration calls only accumulate into `self.config` (a GridConfig);
    nothing touches the database until a record operation or render runs.

        grid = (
            Grid("posts", connection=conn)
            .columns("id,user_id,title,created_at")
            .relation("user_id", "users", "id", "username")
            .search_columns("title,content", "title")
            .order_by("id", "desc")
        )
        html = grid.render()
    """

    def __init__(
        self,
        table: str,
        *,
        connection: sqlite3.Connection | None = None,
        provider: db.ConnectionProvider | None = None,
        settings: Settings | None = None,
        grid_id: str | None = None,
    ) -> None:
        self.config = GridConfig(table=db.require_ident(table, what="table"), grid_id=grid_id or generate_id())
        self.settings = settings or get_settings()
        if connection is not None:
            db.register_functions(connection)
        self._conn = connection
        self._provider = provider
        self._schema: List[db.ColumnInfo] | None = None

    # construction / serialization

    @classmethod
    def from_config(cls, config: GridConfig, **kwargs: Any) -> "Grid":
        grid = cls(config.table, grid_id=config.grid_id or None, **kwargs)
        grid.config = config
        if not config.grid_id:
            config.grid_id = generate_id()
        return grid

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], **kwargs: Any) -> "Grid":
        return cls.from_config(validate_config(raw), **kwargs)

    @classmethod
    def from_token(cls, token: Any, *, settings: Settings | None = None, **kwargs: Any) -> "Grid":
        settings = settings or get_settings()
        return cls.from_dict(load_config(token, settings.secret_key), settings=settings, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        return self.config.to_dict()

    def to_token(self) -> str:
        data = self.to_dict()
        # Fail at build time rather than on the first action request.
        validate_config(data)
        return sign_config(data, self.settings.secret_key)

    @property
    def id(self) -> str:
        return self.config.grid_id

    @property
    def table(self) -> str:
        return self.config.table

    # database access

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = (self._provider or db.default_provider).connection()
        return self._conn

    def schema(self) -> List[db.ColumnInfo]:
        if self._schema is None:
            self._schema = db.table_columns(self.conn, self.table)
            if not self._schema:
                raise ValueError(f"Table {self.table!r} has no columns or does not exist")
        return self._schema

    def column_names(self) -> List[str]:
        return [col.name for col in self.schema()]

    def column_info(self, name: str) -> db.ColumnInfo | None:
        for col in self.schema():
            if col.name == name:
                return col
        return None

    @property
    def pk(self) -> str | None:
        return self.config.primary_key or db.detect_primary_key(self.schema())

    def builder(self) -> QueryBuilder:
        return QueryBuilder(self.config, self.column_names())

    # fluent configuration

    def set_per_page(self, per_page: Any) -> "Grid":
        choice = check_per_page_choice(per_page)
        self.config.per_page = 0 if choice == "all" else choice
        return self

    limit = set_per_page

    def limit_list(self, choices: Any) -> "Grid":
        parsed = [check_per_page_choice(c) for c in split_list(choices)]
        if not parsed:
            raise ValueError("limit_list needs at least one choice")
        self.config.per_page_choices = parsed
        current = "all" if self.config.per_page == 0 else self.config.per_page
        if current not in parsed:
            first = parsed[0]
            self.config.per_page = 0 if first == "all" else first
        return self

    def order_by(self, columns: Any, direction: str = "asc") -> "Grid":
        direction = str(direction).lower()
        if direction not in ("asc", "desc"):
            raise ValueError("direction must be asc or desc")
        for column in split_list(columns):
            self.config.order_by.append(OrderBy(column=require_ref(column, what="order column"), direction=direction))
        return self

    def columns(self, columns: Any) -> "Grid":
        self.config.columns = [require_ref(c, what="column") for c in split_list(columns)]
        return self

    def fields(self, fields: Any, mode: str | None = None) -> "Grid":
        names = [db.require_ident(f, what="field") for f in split_list(fields)]
        modes = FORM_MODES if mode is None else (mode,)
        for m in modes:
            if m not in FORM_MODES:
                raise ValueError(f"mode must be one of {FORM_MODES}")
            self.config.fields[m] = list(names)
        return self

    def search_columns(self, columns: Any, default: str | None = None) -> "Grid":
        self.config.search_columns = [require_ref(c, what="search column") for c in split_list(columns)]
        if default is not None:
            if default not in self.config.search_columns:
                raise ValueError(f"Default search column {default!r} is not a search column")
            self.config.default_search_column = default
        return self

    def set_column_labels(self, labels: Dict[str, str]) -> "Grid":
        for column, text in labels.items():
            self.label(column, text)
        return self

    def label(self, column: str, text: str) -> "Grid":
        self.config.labels[require_ref(column, what="label column")] = str(text)
        return self

    def column_pattern(self, column: str, pattern: str) -> "Grid":
        self.config.patterns[require_ref(column, what="pattern column")] = str(pattern)
        return self

    def column_callback(self, column: str, formatter: Any) -> "Grid":
        name = _callable_name(formatter, hooks.formatter)
        self.config.formatters[require_ref(column, what="formatter column")] = name
        return self

    def column_class(self, column: str, css_class: str) -> "Grid":
        self.config.column_classes[require_ref(column, what="class column")] = require_css(css_class, what="column class")
        return self

    def column_width(self, column: str, width: str) -> "Grid":
        self.config.column_widths[require_ref(column, what="width column")] = str(width).strip()
        return self

    def column_cut(self, column: str, length: int) -> "Grid":
        if not isinstance(length, int) or length < 1:
            raise ValueError("column_cut length must be an int >= 1")
        self.config.column_cuts[require_ref(column, what="cut column")] = length
        return self

    def highlight(self, column: str, condition: Any, css_class: str) -> "Grid":
        column = require_ref(column, what="highlight column")
        if isinstance(condition, dict) and "operator" in condition and "column" not in condition:
            condition = dict(condition, column=column)
        self.config.highlights.append(Highlight(column=column, condition=condition, css_class=require_css(css_class, what="highlight class")))
        return self

    def highlight_row(self, condition: Any, css_class: str) -> "Grid":
        self.config.row_highlights.append(Highlight(condition=condition, css_class=require_css(css_class, what="row highlight class")))
        return self

    def table_name(self, title: str) -> "Grid":
        self.config.title = str(title)
        return self

    def table_tooltip(self, tooltip: str) -> "Grid":
        self.config.tooltip = str(tooltip)
        return self

    def table_icon(self, icon: str) -> "Grid":
        self.config.icon = require_css(icon, what="icon")
        return self

    def set_panel_width(self, width: str) -> "Grid":
        self.config.panel_width = str(width).strip()
        return self

    def column_summary(self, column: str, summary_type: str = "sum", label: str | None = None) -> "Grid":
        summary_type = str(summary_type).lower()
        if summary_type not in SUMMARY_TYPES:
            raise ValueError(f"summary type must be one of {sorted(SUMMARY_TYPES)}")
        self.config.summaries.append(Summary(column=require_ref(column, what="summary column"), type=summary_type, label=label))
        return self

    def where(self, column: str, value: Any = None, operator: str = "=") -> "Grid":
        return self._add_where(column, value, operator, "AND")

    def or_where(self, column: str, value: Any = None, operator: str = "=") -> "Grid":
        return self._add_where(column, value, operator, "OR")

    def _add_where(self, column: str, value: Any, operator: str, glue: str) -> "Grid":
        op = str(operator).upper().strip()
        if op not in WHERE_OPERATORS:
            raise ValueError(f"Unsupported where operator: {operator!r}")
        if op in ("IN", "NOT IN"):
            value = split_list(value) if isinstance(value, str) else list(value or [])
        self.config.where.append(WhereClause(column=require_ref(column, what="where column"), operator=op, value=value, glue=glue))
        return self

    def join(self, field: str, table: str, join_field: str, alias: str) -> "Grid":
        alias = db.require_ident(alias, what="join alias")
        if alias == self.table or alias in self.config.join_aliases():
            raise ValueError(f"Duplicate join alias: {alias}")
        self.config.joins.append(
            Join(
                field=db.require_ident(field, what="join field"),
                table=db.require_ident(table, what="join table"),
                join_field=db.require_ident(join_field, what="join target field"),
                alias=alias,
            )
        )
        return self

    def relation(
        self,
        field: str,
        table: str,
        target: str,
        display: Any,
        *,
        where: Dict[str, Any] | None = None,
        order_by: str | None = None,
        separator: str = " ",
        multi: bool = False,
    ) -> "Grid":
        columns = [db.require_ident(c, what="relation display") for c in split_list(display)]
        if not columns:
            raise ValueError("relation display needs at least one column")
        for key in (where or {}):
            db.require_ident(key, what="relation filter")
        if order_by is not None:
            db.require_ident(order_by, what="relation order")
        self.config.relations = [r for r in self.config.relations if r.field != field]
        self.config.relations.append(
            Relation(
                field=db.require_ident(field, what="relation field"),
                table=db.require_ident(table, what="relation table"),
                target=db.require_ident(target, what="relation target"),
                display=columns,
                separator=separator,
                where=dict(where or {}),
                order_by=order_by,
                multi=multi,
            )
        )
        return self

    def subselect(
        self,
        alias: str,
        table: str,
        match_column: str,
        outer_column: str = "id",
        aggregate: str = "count",
        column: str | None = None,
    ) -> "Grid":
        aggregate = str(aggregate).lower()
        if aggregate not in SUBSELECT_AGGREGATES:
            raise ValueError(f"aggregate must be one of {sorted(SUBSELECT_AGGREGATES)}")
        if column is None and aggregate != "count":
            raise ValueError(f"{aggregate} subselect needs a column")
        self.config.subselects.append(
            Subselect(
                alias=db.require_ident(alias, what="subselect alias"),
                table=db.require_ident(table, what="subselect table"),
                aggregate=aggregate,
                column=db.require_ident(column, what="subselect column") if column is not None else None,
                match_column=db.require_ident(match_column, what="subselect match column"),
                outer_column=db.require_ident(outer_column, what="subselect outer column"),
            )
        )
        return self

    def primary_key(self, column: str) -> "Grid":
        self.config.primary_key = db.require_ident(column, what="primary key")
        return self

    def readonly(self, fields: Any, mode: str = "all") -> "Grid":
        if mode not in FORM_MODES and mode != "all":
            raise ValueError("readonly mode must be create, edit, view or all")
        names = self.config.readonly.setdefault(mode, [])
        for name in split_list(fields):
            if name not in names:
                names.append(db.require_ident(name, what="readonly field"))
        return self

    def pass_var(self, field: str, value: Any, mode: str = "all") -> "Grid":
        if mode not in ("create", "edit", "all"):
            raise ValueError("pass_var mode must be create, edit or all")
        self.config.pass_vars.setdefault(mode, {})[db.require_ident(field, what="pass_var field")] = value
        return self

    def change_type(
        self,
        field: str,
        field_type: str,
        default: Any = None,
        params: Dict[str, Any] | None = None,
        options: Sequence[Any] | None = None,
    ) -> "Grid":
        if field_type not in FIELD_TYPES:
            raise ValueError(f"field type must be one of {sorted(FIELD_TYPES)}")
        self.config.field_types[db.require_ident(field, what="field")] = FieldType(
            type=field_type, default=default, params=dict(params or {}), options=list(options or [])
        )
        return self

    def validation_rules(self, field: str, **rules: Any) -> "Grid":
        db.require_ident(field, what="validation field")
        merged = dict(self.config.validation.get(field, {}))
        merged.update(rules)
        self.config.validation[field] = check_rules(field, merged)
        return self

    def validation_required(self, fields: Any, message: str | None = None) -> "Grid":
        for field in split_list(fields):
            extra = {"message": message} if message else {}
            self.validation_rules(field, required=True, **extra)
        return self

    def validation_pattern(self, field: str, pattern: str, message: str | None = None) -> "Grid":
        extra = {"message": message} if message else {}
        return self.validation_rules(field, pattern=pattern, **extra)

    def hook(self, event: str, handler: Any) -> "Grid":
        if event not in hooks.HOOK_EVENTS:
            raise ValueError(f"event must be one of {hooks.HOOK_EVENTS}")
        name = _callable_name(handler, hooks.register)
        self.config.hooks.setdefault(event, []).append(name)
        return self

    def before_insert(self, handler: Any) -> "Grid":
        return self.hook("before_insert", handler)

    def after_insert(self, handler: Any) -> "Grid":
        return self.hook("after_insert", handler)

    def before_update(self, handler: Any) -> "Grid":
        return self.hook("before_update", handler)

    def after_update(self, handler: Any) -> "Grid":
        return self.hook("after_update", handler)

    def before_delete(self, handler: Any) -> "Grid":
        return self.hook("before_delete", handler)

    def after_delete(self, handler: Any) -> "Grid":
        return self.hook("after_delete", handler)

    def set_action(self, action: str, enabled: bool = True, condition: Any = None) -> "Grid":
        """
        Enable/disable an action. With a condition the action stays enabled
        for the grid but is refused for rows matching it.
        """
        if action not in ALLOWED_ACTIONS:
            raise ValueError(f"action must be one of {sorted(ALLOWED_ACTIONS)}")
        self.config.actions[action] = ActionRule(enabled=enabled, condition=condition)
        return self

    def unset_add(self) -> "Grid":
        return self.set_action("add", False)

    def unset_export(self) -> "Grid":
        return self.set_action("export", False)

    def unset_search(self) -> "Grid":
        return self.set_action("search", False)

    def unset_batch_delete(self) -> "Grid":
        return self.set_action("batch_delete", False)

    def unset_bulk_update(self) -> "Grid":
        return self.set_action("bulk_update", False)

    def unset_edit(self, condition: Any = None) -> "Grid":
        return self.set_action("edit", condition is not None, condition)

    def unset_view(self, condition: Any = None) -> "Grid":
        return self.set_action("view", condition is not None, condition)

    def unset_delete(self, condition: Any = None) -> "Grid":
        return self.set_action("delete", condition is not None, condition)

    def unset_duplicate(self, condition: Any = None) -> "Grid":
        return self.set_action("duplicate", condition is not None, condition)

    def enable_duplicate(self) -> "Grid":
        return self.set_action("duplicate", True)

    def nested_table(self, name: str, parent_column: str, grid: "Grid | str", foreign_column: str, label: str | None = None) -> "Grid":
        inner = grid if isinstance(grid, Grid) else Grid(grid, settings=self.settings)
        self.config.nested.append(
            NestedGrid(
                name=db.require_ident(name, what="nested name"),
                parent_column=db.require_ident(parent_column, what="nested parent column"),
                foreign_column=db.require_ident(foreign_column, what="nested foreign column"),
                config=inner.to_dict(),
                label=label,
            )
        )
        return self

    # metadata

    def visible_columns(self) -> List[str]:
        return list(self.config.columns) if self.config.columns else self.column_names()

    def labels(self) -> Dict[str, str]:
        names = list(self.visible_columns())
        for mode in FORM_MODES:
            names.extend(n for n in self.form_field_names(mode) if n not in names)
        return {name: self.config.labels.get(name) or make_title(name) for name in names}

    def per_page_choices(self) -> List[Any]:
        return list(self.config.per_page_choices)

    def resolve_per_page(self, value: Any) -> int:
        if value is None or value == "":
            return self.config.per_page
        if isinstance(value, str) and value.strip().lower() == "all":
            return 0
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid per_page: {value!r}") from None
        if number < 0:
            raise ValueError("per_page must be >= 0")
        return min(number, MAX_PER_PAGE)

    def is_action_allowed(self, action: str, row: Dict[str, Any] | None = None) -> bool:
        rule = self.config.action_rule(action)
        if not rule.enabled:
            return False
        if row is not None and rule.condition is not None and matches_row(rule.condition, row):
            return False
        return True

    def ensure_allowed(self, action: str, row: Dict[str, Any] | None = None) -> None:
        if not self.is_action_allowed(action, row):
            if row is not None and self.config.action_rule(action).enabled:
                raise ActionRejected(action, f"Action not allowed for this record: {action}")
            raise ActionRejected(action)

    def check_primary_key(self, column: Any) -> str:
        pk = self.pk
        if pk is None:
            raise ValueError(f"Table {self.table!r} has no usable primary key")
        if column not in (None, "") and column != pk:
            raise ValueError(f"Unknown primary key column: {column!r}")
        return pk

    # form fields

    def form_field_names(self, mode: str) -> List[str]:
        configured = self.config.fields.get(mode)
        if configured:
            return list(configured)
        pk = self.pk
        names = self.column_names()
        if mode == "view":
            return names
        return [n for n in names if n != pk]

    def field_type(self, name: str) -> str:
        override = self.config.field_types.get(name)
        if override is not None:
            return override.type
        relation = self.config.relation_for(name)
        if relation is not None:
            return "multiselect" if relation.multi else "select"
        info = self.column_info(name)
        if info is None:
            return "text"
        return {"int": "int", "float": "float", "bool": "bool"}.get(info.affinity, "text")

    def is_readonly(self, name: str, mode: str) -> bool:
        return name in self.config.readonly.get(mode, []) or name in self.config.readonly.get("all", [])

    def relation_options(self, field: str) -> List[Dict[str, Any]]:
        relation = self.config.relation_for(field)
        if relation is None:
            return []
        sql, params = relation_options_sql(relation, limit=RELATION_OPTION_LIMIT)
        return [
            {"value": row["value"], "label": self._relation_label(relation, row)}
            for row in db.fetch_all(self.conn, sql, params)
        ]

    def _field_options(self, name: str) -> List[Dict[str, Any]]:
        override = self.config.field_types.get(name)
        if override is not None and override.options:
            options = []
            for item in override.options:
                if isinstance(item, dict):
                    options.append({"value": item.get("value"), "label": _text(item.get("label", item.get("value")))})
                else:
                    options.append({"value": item, "label": _text(item)})
            return options
        return self.relation_options(name)

    def form_fields(self, mode: str) -> List[Dict[str, Any]]:
        if mode not in FORM_MODES:
            raise ValueError(f"mode must be one of {FORM_MODES}")
        labels = self.labels()
        fields = []
        for name in self.form_field_names(mode):
            ftype = self.field_type(name)
            override = self.config.field_types.get(name)
            rules = self.config.validation.get(name, {})
            info = self.column_info(name)
            fields.append(
                {
                    "name": name,
                    "label": labels.get(name) or make_title(name),
                    "type": ftype,
                    "required": bool(rules.get("required")),
                    "readonly": mode == "view" or self.is_readonly(name, mode),
                    "default": override.default if override is not None else None,
                    "params": dict(override.params) if override is not None else {},
                    "options": self._field_options(name) if ftype in ("select", "multiselect") else [],
                    "nullable": not (info.notnull if info else False),
                }
            )
        return fields

    # row decoration

    def _relation_label(self, relation: Relation, row: Dict[str, Any]) -> str:
        parts = [_text(row.get(col)) for col in relation.display]
        return relation.separator.join(p for p in parts if p != "")

    def relation_labels(self, rows: Sequence[Dict[str, Any]], columns: Iterable[str]) -> Dict[str, Dict[str, str]]:
        """Map relation column -> {str(raw value): label} for the values in `rows`."""
        result: Dict[str, Dict[str, str]] = {}
        for column in columns:
            relation = self.config.relation_for(column)
            if relation is None:
                continue
            values = set()
            for row in rows:
                raw = row.get(column)
                if raw is None or raw == "":
                    continue
                if relation.multi:
                    values.update(v.strip() for v in str(raw).split(",") if v.strip())
                else:
                    values.add(raw)
            if not values:
                result[column] = {}
                continue
            sql, params = relation_options_sql(relation, sorted(values, key=str))
            result[column] = {
                _text(item["value"]): self._relation_label(relation, item) for item in db.fetch_all(self.conn, sql, params)
            }
        return result

    def display_text(self, column: str, row: Dict[str, Any], labels: Dict[str, Dict[str, str]]) -> str:
        """Plain (unescaped) text of a cell: relation labels substituted."""
        raw = row.get(column)
        relation = self.config.relation_for(column)
        if relation is None or raw is None:
            return _text(raw)
        mapping = labels.get(column, {})
        if relation.multi:
            ids = [v.strip() for v in str(raw).split(",") if v.strip()]
            return ", ".join(mapping.get(v, v) for v in ids)
        return mapping.get(_text(raw), _text(raw))

    def format_cell(self, column: str, row: Dict[str, Any], labels: Dict[str, Dict[str, str]]) -> str:
        text = self.display_text(column, row, labels)
        cut = self.config.column_cuts.get(column)
        if cut and len(text) > cut:
            text = text[:cut] + "..."
        formatted = html.escape(text)

        pattern = self.config.patterns.get(column)
        if pattern:
            def _sub(match: re.Match) -> str:
                key = match.group(1)
                if key == "value":
                    return formatted
                return html.escape(_text(row.get(key)))

            formatted = _PATTERN_TOKEN_RE.sub(_sub, pattern)

        name = self.config.formatters.get(column)
        if name:
            formatted = _text(hooks.get_formatter(name)(row.get(column), row, column, formatted))
        return formatted

    def row_meta(self, row: Dict[str, Any], columns: Sequence[str], labels: Dict[str, Dict[str, str]]) -> Dict[str, Any]:
        cell_class: Dict[str, str] = {}
        for column in columns:
            classes = []
            static = self.config.column_classes.get(column)
            if static:
                classes.append(static)
            for highlight in self.config.highlights:
                if highlight.column == column and matches_row(highlight.condition, row):
                    classes.append(highlight.css_class)
            if classes:
                cell_class[column] = " ".join(classes)
        row_class = " ".join(h.css_class for h in self.config.row_highlights if matches_row(h.condition, row))
        return {
            "display": {column: self.format_cell(column, row, labels) for column in columns},
            "row_class": row_class,
            "cell_class": cell_class,
            "actions": {action: self.is_action_allowed(action, row) for action in ROW_ACTIONS},
        }

    def decorate_rows(self, rows: List[Dict[str, Any]], columns: Sequence[str]) -> List[Dict[str, Any]]:
        labels = self.relation_labels(rows, columns)
        pk = self.pk
        decorated = []
        for row in rows:
            meta = self.row_meta(row, columns, labels)
            out = dict(row)
            out["__pk"] = row.get(pk) if pk else None
            out["__meta"] = meta
            decorated.append(out)
        return decorated

    # reads

    def _check_search(self, search_term: Any) -> None:
        if search_term not in (None, "") and not self.is_action_allowed("search"):
            raise ActionRejected("search")

    def get_table_data(
        self,
        page: Any = 1,
        per_page: Any = None,
        search_term: Any = None,
        search_column: str | None = None,
        sort: str | None = None,
        direction: str | None = None,
    ) -> Dict[str, Any]:
        self._check_search(search_term)
        qb = self.builder()
        columns = self.visible_columns()
        pk = self.pk
        if sort not in (None, ""):
            if sort not in columns:
                raise ValueError(f"Cannot sort by {sort!r}")
        else:
            sort = None
        where = qb.filter_clause(search_term=search_term, search_column=search_column or None)

        total = int(db.fetch_scalar(self.conn, *qb.count(where)) or 0)
        size = self.resolve_per_page(per_page)
        total_pages = max(1, math.ceil(total / size)) if size else 1
        try:
            current = int(page or 1)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid page: {page!r}") from None
        current = min(max(current, 1), total_pages)
        offset = (current - 1) * size if size else 0

        sql, params = qb.select(
            columns,
            primary_key=pk,
            where=where,
            order=qb.order_clause(sort, direction, pk),
            limit=size or None,
            offset=offset,
        )
        rows = self.decorate_rows(db.fetch_all(self.conn, sql, params), columns)
        return {
            "rows": rows,
            "columns": columns,
            "pagination": {
                "current_page": current,
                "total_pages": total_pages,
                "total_rows": total,
                "per_page": size if size else "all",
            },
            "meta": {
                "labels": self.labels(),
                "primary_key": pk,
                "summaries": self.compute_summaries(qb, where),
            },
        }

    def compute_summaries(self, qb: QueryBuilder, where: Tuple[str, List[Any]]) -> List[Dict[str, Any]]:
        if not self.config.summaries:
            return []
        row = db.fetch_one(self.conn, *qb.summaries(self.config.summaries, where)) or {}
        result = []
        for idx, summary in enumerate(self.config.summaries):
            value = row.get(f"s{idx}")
            if isinstance(value, float):
                value = round(value, 4)
            result.append(
                {
                    "column": summary.column,
                    "type": summary.type,
                    "label": summary.label or summary.type.capitalize(),
                    "value": value,
                }
            )
        return result

    def find_row(self, pk_value: Any, *, scoped: bool = True) -> Dict[str, Any] | None:
        """
        Load one row by primary key. Scoped lookups also apply the grid's
        where clauses, so records outside the grid are never reachable.
        """
        pk = self.check_primary_key(None)
        qb = self.builder()
        table_cols = self.column_names()
        columns = table_cols + [c for c in self.visible_columns() if c not in table_cols]
        chain = qb.where_chain(self.config.where) if scoped else ("", [])
        parts = [f for f in (chain, qb.pk_condition(pk, pk_value)) if f[0]]
        where_sql = " WHERE " + " AND ".join(sql for sql, _ in parts)
        params = [p for _, values in parts for p in values]
        sql, params = qb.select(columns, primary_key=pk, where=(where_sql, params))
        return db.fetch_one(self.conn, sql, params)

    def _require_row(self, pk_value: Any) -> Dict[str, Any]:
        if pk_value in (None, ""):
            raise ValueError("Missing primary key value")
        row = self.find_row(pk_value)
        if row is None:
            raise RecordNotFound(f"Record not found: {pk_value}")
        return row

    def get_record(self, pk_value: Any, mode: str = "view") -> Dict[str, Any]:
        if mode not in ("view", "edit"):
            raise ValueError("mode must be view or edit")
        row = self._require_row(pk_value)
        self.ensure_allowed(mode, row)
        pk = self.pk
        names = self.form_field_names(mode)
        record = {name: row.get(name) for name in names}
        record[pk] = row.get(pk)
        labels = self.relation_labels([row], names)
        return {
            "row": record,
            "display": {name: self.display_text(name, row, labels) for name in names},
            "fields": self.form_fields(mode),
        }

    # writes

    def _storage_kind(self, name: str) -> str:
        override = self.config.field_types.get(name)
        if override is not None and override.type in _STORAGE_KINDS:
            return _STORAGE_KINDS[override.type]
        relation = self.config.relation_for(name)
        if relation is not None and relation.multi:
            return "multi"
        info = self.column_info(name)
        return info.affinity if info is not None else "text"

    def _unique_checker(self, existing: Dict[str, Any] | None) -> Callable[[str, Any], bool]:
        pk = self.pk

        def _is_unique(field: str, value: Any) -> bool:
            exclude = (pk, existing.get(pk)) if existing is not None and pk else None
            return db.fetch_one(self.conn, *exists_sql(self.table, field, value, exclude=exclude)) is None

        return _is_unique

    def prepare_write(self, fields: Any, mode: str, existing: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """Filter, validate and coerce a submitted payload for INSERT/UPDATE."""
        if not isinstance(fields, dict):
            raise ValueError("fields must be an object")
        columns = set(self.column_names())
        pk = self.pk
        allowed = [n for n in self.form_field_names(mode) if not self.is_readonly(n, mode) and n in columns]
        data = {name: fields[name] for name in allowed if name in fields}
        if mode == "edit":
            data.pop(pk, None)

        for scope in ("all", mode):
            for name, value in self.config.pass_vars.get(scope, {}).items():
                if name not in columns:
                    raise ValueError(f"pass_var targets unknown column: {name!r}")
                data[name] = value

        if mode == "create":
            for name, override in self.config.field_types.items():
                if name in columns and name not in data and override.default is not None:
                    data[name] = override.default

        labels = self.labels()
        validate_fields(
            data,
            self.config.validation,
            labels=labels,
            partial=mode == "edit",
            is_unique=self._unique_checker(existing),
        )

        errors: Dict[str, str] = {}
        coerced: Dict[str, Any] = {}
        for name, value in data.items():
            info = self.column_info(name)
            try:
                coerced[name] = db.coerce_value(self._storage_kind(name), value, nullable=not (info and info.notnull))
            except (TypeError, ValueError):
                errors[name] = f"{labels.get(name) or make_title(name)} has an invalid value."
        if errors:
            raise ValidationError("Validation failed.", errors)
        return coerced

    def _run(self, event: str, payload: Any, **context: Any) -> Any:
        names = self.config.hooks.get(event) or []
        if not names:
            return payload
        return hooks.run_hooks(names, payload, grid=self, **context)

    def create_record(self, fields: Any) -> Dict[str, Any]:
        self.ensure_allowed("add")
        data = self.prepare_write(fields, "create")
        data = self._run("before_insert", data, mode="create")
        return self._insert(data, mode="create")

    def _insert(self, data: Dict[str, Any], *, mode: str) -> Dict[str, Any]:
        pk = self.check_primary_key(None)
        cursor = db.execute_write(self.conn, *insert_sql(self.table, data))
        if pk in data:
            pk_value = data[pk]
        else:
            found = db.fetch_one(
                self.conn, f"SELECT {db.quote_ident(pk)} FROM {db.quote_ident(self.table)} WHERE rowid = ?", [cursor.lastrowid]
            )
            pk_value = found[pk] if found else cursor.lastrowid
        row = self.find_row(pk_value, scoped=False) or dict(data, **{pk: pk_value})
        self._run("after_insert", row, mode=mode)
        log.info("Inserted %s.%s=%r", self.table, pk, pk_value)
        return row

    def update_record(self, pk_value: Any, fields: Any) -> Dict[str, Any]:
        existing = self._require_row(pk_value)
        self.ensure_allowed("edit", existing)
        pk = self.pk
        data = self.prepare_write(fields, "edit", existing=existing)
        data = self._run("before_update", data, mode="edit", row=existing)
        if data:
            db.execute_write(self.conn, *update_sql(self.table, data, pk, existing[pk]))
        row = self.find_row(existing[pk], scoped=False) or existing
        self._run("after_update", row, mode="edit", previous=existing)
        return row

    def delete_record(self, pk_value: Any) -> Dict[str, Any]:
        existing = self._require_row(pk_value)
        self.ensure_allowed("delete", existing)
        pk = self.pk
        self._run("before_delete", existing)
        db.execute_write(self.conn, *delete_sql(self.table, pk, existing[pk]))
        self._run("after_delete", existing)
        return existing

    def duplicate_record(self, pk_value: Any) -> Dict[str, Any]:
        self.ensure_allowed("add")
        source = self._require_row(pk_value)
        self.ensure_allowed("duplicate", source)
        pk = self.pk
        data = {name: source.get(name) for name in self.column_names() if name != pk}
        data = self._run("before_insert", data, mode="duplicate", source=source)
        return self._insert(data, mode="duplicate")

    def delete_records(self, pk_values: Sequence[Any]) -> Dict[str, Any]:
        self.ensure_allowed("batch_delete")
        deleted: List[Any] = []
        failures: List[Dict[str, Any]] = []
        for value in _unique_values(pk_values):
            try:
                self.delete_record(value)
            except (RecordNotFound, ActionRejected, ValidationError) as exc:
                failures.append({"value": value, "error": str(exc)})
            except (sqlite3.Error, hooks.HookError):
                log.exception("Deleting %s %r failed", self.table, value)
                failures.append({"value": value, "error": "Operation failed."})
            else:
                deleted.append(value)
        return {"deleted": deleted, "failures": failures}

    def update_records(self, pk_values: Sequence[Any], fields: Any) -> Dict[str, Any]:
        self.ensure_allowed("bulk_update")
        if not isinstance(fields, dict) or not fields:
            raise ValueError("fields must be a non-empty object")
        updated: List[Any] = []
        failures: List[Dict[str, Any]] = []
        for value in _unique_values(pk_values):
            try:
                self.update_record(value, fields)
            except ValidationError as exc:
                failures.append({"value": value, "error": str(exc), "errors": exc.errors})
            except (RecordNotFound, ActionRejected) as exc:
                failures.append({"value": value, "error": str(exc)})
            except sqlite3.IntegrityError as exc:
                log.warning("Updating %s %r violated a constraint: %s", self.table, value, exc)
                failures.append({"value": value, "error": "The record violates a database constraint."})
            except (sqlite3.Error, hooks.HookError):
                log.exception("Updating %s %r failed", self.table, value)
                failures.append({"value": value, "error": "Operation failed."})
            else:
                updated.append(value)
        return {"updated": updated, "failures": failures}

    # exports / nested / render

    def export_dataset(
        self,
        search_term: Any = None,
        search_column: str | None = None,
        selected: Sequence[Any] | None = None,
        *,
        limit: int | None = None,
    ) -> Tuple[List[str], List[List[Any]]]:
        """Header labels and plain cell values for every matching row."""
        self.ensure_allowed("export")
        self._check_search(search_term)
        qb = self.builder()
        columns = self.visible_columns()
        pk = self.pk
        extra = []
        if selected:
            extra.append(compile_operator(qb.expr(pk), "IN", list(selected)))
        where = qb.filter_clause(search_term=search_term, search_column=search_column or None, extra=extra)
        limit = limit if limit is not None else self.settings.max_export_rows
        sql, params = qb.select(columns, primary_key=pk, where=where, order=qb.order_clause(None, None, pk), limit=limit or None)
        rows = db.fetch_all(self.conn, sql, params)
        labels = self.relation_labels(rows, columns)
        titles = self.labels()
        header = [titles.get(c) or make_title(c) for c in columns]
        body = []
        for row in rows:
            body.append(
                [
                    self.display_text(c, row, labels) if self.config.relation_for(c) else row.get(c)
                    for c in columns
                ]
            )
        return header, body

    def nested_grid(self, name: str, parent_pk: Any) -> "Grid":
        nested = next((n for n in self.config.nested if n.name == name), None)
        if nested is None:
            raise ValueError(f"Unknown nested grid: {name!r}")
        parent = self._require_row(parent_pk)
        inner = Grid.from_dict(nested.config, connection=self._conn, provider=self._provider, settings=self.settings)
        inner.config.grid_id = generate_id()
        inner.where(nested.foreign_column, parent.get(nested.parent_column))
        return inner

    def render(self, *, endpoint: str = "", inline_script: bool = True) -> str:
        from gridcrud.render import render_grid

        return render_grid(self, endpoint=endpoint, inline_script=inline_script)


def _unique_values(values: Sequence[Any]) -> List[Any]:
    if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple)):
        raise ValueError("primary_key_values must be a list")
    seen = []
    for value in values:
        if value not in (None, "") and value not in seen:
            seen.append(value)
    if not seen:
        raise ValueError("No records selected")
    return seen
