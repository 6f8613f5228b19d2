from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List

from gridcrud.conditions import ConditionError, row_condition
from gridcrud.db import is_safe_ident, require_ident
from gridcrud.hooks import HOOK_EVENTS
from gridcrud.validation import check_rules

CONFIG_VERSION = 1

ALLOWED_ACTIONS = {
    "add",
    "edit",
    "view",
    "delete",
    "duplicate",
    "export",
    "batch_delete",
    "bulk_update",
    "search",
}
ROW_ACTIONS = ("view", "edit", "duplicate", "delete")

FIELD_TYPES = {
    "text",
    "textarea",
    "int",
    "float",
    "bool",
    "select",
    "multiselect",
    "date",
    "datetime",
    "email",
    "password",
    "hidden",
    "json",
    "file",
    "image",
}

SUMMARY_TYPES = {"sum", "avg", "min", "max", "count"}
SUBSELECT_AGGREGATES = {"count", "sum", "avg", "min", "max"}

WHERE_OPERATORS = {
    "=",
    "!=",
    "<>",
    "<",
    "<=",
    ">",
    ">=",
    "LIKE",
    "NOT LIKE",
    "IN",
    "NOT IN",
    "IS NULL",
    "IS NOT NULL",
}

FORM_MODES = ("create", "edit", "view")

_WIDTH_RE = re.compile(r"^\d+(\.\d+)?(px|%|em|rem|ch|vw)?$")
_CSS_CLASS_RE = re.compile(r"^[A-Za-z0-9_\- :]*$")


def require_ref(value: Any, *, what: str) -> str:
    """Column reference: `column` or `alias.column`."""
    if not isinstance(value, str):
        raise ValueError(f"Invalid {what} identifier: {value!r}")
    parts = value.split(".")
    if len(parts) > 2 or not all(is_safe_ident(p) for p in parts):
        raise ValueError(f"Invalid {what} identifier: {value!r}")
    return value


def require_css(value: Any, *, what: str) -> str:
    if not isinstance(value, str) or not _CSS_CLASS_RE.match(value):
        raise ValueError(f"{what} must be a plain CSS class list: {value!r}")
    return value.strip()


def split_list(value: Any) -> List[str]:
    """Accept "a,b,c" or ["a", "b"]; returns stripped, non-empty items."""
    if value is None:
        return []
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if str(item).strip()]
    raise ValueError(f"Expected a comma separated string or list, got {type(value).__name__}")


@dataclass
class WhereClause:
    column: str
    operator: str = "="
    value: Any = None
    glue: str = "AND"


@dataclass
class OrderBy:
    column: str
    direction: str = "asc"


@dataclass
class Join:
    field: str
    table: str
    join_field: str
    alias: str


@dataclass
class Relation:
    field: str
    table: str
    target: str
    display: List[str]
    separator: str = " "
    where: Dict[str, Any] = field(default_factory=dict)
    order_by: str | None = None
    multi: bool = False


@dataclass
class Subselect:
    alias: str
    table: str
    aggregate: str = "count"
    column: str | None = None
    match_column: str = "id"
    outer_column: str = "id"


@dataclass
class Highlight:
    condition: Any
    css_class: str
    column: str | None = None


@dataclass
class Summary:
    column: str
    type: str = "sum"
    label: str | None = None


@dataclass
class FieldType:
    type: str
    default: Any = None
    params: Dict[str, Any] = field(default_factory=dict)
    options: List[Any] = field(default_factory=list)


@dataclass
class ActionRule:
    enabled: bool = True
    condition: Any = None


@dataclass
class NestedGrid:
    name: str
    parent_column: str
    foreign_column: str
    config: Dict[str, Any]
    label: str | None = None


@dataclass
class GridConfig:
    table: str
    grid_id: str = ""
    version: int = CONFIG_VERSION
    primary_key: str | None = None
    columns: List[str] = field(default_factory=list)
    fields: Dict[str, List[str]] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    per_page: int = 10
    per_page_choices: List[Any] = field(default_factory=lambda: [10, 25, 50, 100])
    order_by: List[OrderBy] = field(default_factory=list)
    where: List[WhereClause] = field(default_factory=list)
    joins: List[Join] = field(default_factory=list)
    relations: List[Relation] = field(default_factory=list)
    subselects: List[Subselect] = field(default_factory=list)
    search_columns: List[str] = field(default_factory=list)
    default_search_column: str | None = None
    patterns: Dict[str, str] = field(default_factory=dict)
    formatters: Dict[str, str] = field(default_factory=dict)
    column_classes: Dict[str, str] = field(default_factory=dict)
    column_widths: Dict[str, str] = field(default_factory=dict)
    column_cuts: Dict[str, int] = field(default_factory=dict)
    highlights: List[Highlight] = field(default_factory=list)
    row_highlights: List[Highlight] = field(default_factory=list)
    summaries: List[Summary] = field(default_factory=list)
    validation: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    hooks: Dict[str, List[str]] = field(default_factory=dict)
    actions: Dict[str, ActionRule] = field(default_factory=dict)
    readonly: Dict[str, List[str]] = field(default_factory=dict)
    pass_vars: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    field_types: Dict[str, FieldType] = field(default_factory=dict)
    nested: List[NestedGrid] = field(default_factory=list)
    title: str | None = None
    tooltip: str | None = None
    icon: str | None = None
    panel_width: str | None = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def relation_for(self, column: str) -> Relation | None:
        for relation in self.relations:
            if relation.field == column:
                return relation
        return None

    def join_aliases(self) -> Dict[str, Join]:
        return {join.alias: join for join in self.joins}

    def subselect_aliases(self) -> Dict[str, Subselect]:
        return {sub.alias: sub for sub in self.subselects}

    def action_rule(self, action: str) -> ActionRule:
        return self.actions.get(action) or ActionRule()


def _get_list(raw: Dict[str, Any], key: str) -> List[Any]:
    value = raw.get(key) or []
    if not isinstance(value, list):
        raise ValueError(f"{key} must be a list")
    return value


def _get_dict(raw: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = raw.get(key) or {}
    if not isinstance(value, dict):
        raise ValueError(f"{key} must be an object")
    return value


def _opt_str(raw: Dict[str, Any], key: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"{key} must be a string")
    return value


def _check_condition(value: Any, *, what: str) -> Any:
    try:
        row_condition(value)
    except ConditionError as exc:
        raise ValueError(f"{what}: {exc}") from exc
    return value


def check_per_page_choice(value: Any) -> Any:
    if isinstance(value, str) and value.strip().lower() == "all":
        return "all"
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid per-page choice: {value!r}") from None
    if number < 1:
        raise ValueError("Per-page choices must be >= 1")
    return number


def validate_config(raw: Dict[str, Any]) -> GridConfig:
    """Rebuild a GridConfig from plain JSON data, rejecting anything unsafe."""
    if not isinstance(raw, dict):
        raise ValueError("Grid configuration must be an object")
    version = raw.get("version", CONFIG_VERSION)
    if version != CONFIG_VERSION:
        raise ValueError(f"Unsupported config version: {version!r} (expected {CONFIG_VERSION})")

    table = require_ident(raw.get("table"), what="table")
    grid_id = raw.get("grid_id") or ""
    if not isinstance(grid_id, str) or (grid_id and not re.match(r"^[A-Za-z0-9_-]+$", grid_id)):
        raise ValueError("grid_id must be alphanumeric with dashes or underscores")
    primary_key = raw.get("primary_key")
    if primary_key is not None:
        require_ident(primary_key, what="primary key")

    joins: List[Join] = []
    for item in _get_list(raw, "joins"):
        if not isinstance(item, dict):
            raise ValueError("join must be an object")
        join = Join(
            field=require_ident(item.get("field"), what="join field"),
            table=require_ident(item.get("table"), what="join table"),
            join_field=require_ident(item.get("join_field"), what="join target field"),
            alias=require_ident(item.get("alias"), what="join alias"),
        )
        if join.alias == table or join.alias in {j.alias for j in joins}:
            raise ValueError(f"Duplicate join alias: {join.alias}")
        joins.append(join)

    relations: List[Relation] = []
    for item in _get_list(raw, "relations"):
        if not isinstance(item, dict):
            raise ValueError("relation must be an object")
        display = split_list(item.get("display"))
        if not display:
            raise ValueError("relation.display requires at least one column")
        for column in display:
            require_ident(column, what="relation display")
        where = item.get("where") or {}
        if not isinstance(where, dict):
            raise ValueError("relation.where must be an object")
        for key, value in where.items():
            require_ident(key, what="relation filter")
            if not isinstance(value, (str, int, float, bool)) and value is not None:
                raise ValueError("relation.where values must be scalars")
        order_by = item.get("order_by")
        if order_by is not None:
            require_ident(order_by, what="relation order")
        separator = item.get("separator", " ")
        if not isinstance(separator, str):
            raise ValueError("relation.separator must be a string")
        relations.append(
            Relation(
                field=require_ident(item.get("field"), what="relation field"),
                table=require_ident(item.get("table"), what="relation table"),
                target=require_ident(item.get("target"), what="relation target"),
                display=display,
                separator=separator,
                where=dict(where),
                order_by=order_by,
                multi=bool(item.get("multi", False)),
            )
        )

    subselects: List[Subselect] = []
    for item in _get_list(raw, "subselects"):
        if not isinstance(item, dict):
            raise ValueError("subselect must be an object")
        aggregate = str(item.get("aggregate", "count")).lower()
        if aggregate not in SUBSELECT_AGGREGATES:
            raise ValueError(f"subselect.aggregate must be one of {sorted(SUBSELECT_AGGREGATES)}")
        column = item.get("column")
        if column is not None:
            require_ident(column, what="subselect column")
        elif aggregate != "count":
            raise ValueError(f"subselect.column is required for {aggregate}")
        subselects.append(
            Subselect(
                alias=require_ident(item.get("alias"), what="subselect alias"),
                table=require_ident(item.get("table"), what="subselect table"),
                aggregate=aggregate,
                column=column,
                match_column=require_ident(item.get("match_column"), what="subselect match column"),
                outer_column=require_ident(item.get("outer_column"), what="subselect outer column"),
            )
        )

    where_clauses: List[WhereClause] = []
    for item in _get_list(raw, "where"):
        if not isinstance(item, dict):
            raise ValueError("where clause must be an object")
        operator = str(item.get("operator", "=")).upper()
        if operator not in WHERE_OPERATORS:
            raise ValueError(f"Unsupported where operator: {operator}")
        glue = str(item.get("glue", "AND")).upper()
        if glue not in ("AND", "OR"):
            raise ValueError("where glue must be AND or OR")
        value = item.get("value")
        if operator in ("IN", "NOT IN") and not isinstance(value, list):
            raise ValueError(f"{operator} expects a list value")
        where_clauses.append(
            WhereClause(column=require_ref(item.get("column"), what="where column"), operator=operator, value=value, glue=glue)
        )

    order_by: List[OrderBy] = []
    for item in _get_list(raw, "order_by"):
        if not isinstance(item, dict):
            raise ValueError("order_by entry must be an object")
        direction = str(item.get("direction", "asc")).lower()
        if direction not in ("asc", "desc"):
            raise ValueError("order_by direction must be asc or desc")
        order_by.append(OrderBy(column=require_ref(item.get("column"), what="order column"), direction=direction))

    columns = [require_ref(c, what="column") for c in _get_list(raw, "columns")]

    fields: Dict[str, List[str]] = {}
    for mode, names in _get_dict(raw, "fields").items():
        if mode not in FORM_MODES:
            raise ValueError(f"fields mode must be one of {FORM_MODES}")
        if not isinstance(names, list):
            raise ValueError("fields entries must be lists")
        fields[mode] = [require_ident(n, what="field") for n in names]

    labels = {}
    for key, value in _get_dict(raw, "labels").items():
        require_ref(key, what="label column")
        if not isinstance(value, str):
            raise ValueError("labels must be strings")
        labels[key] = value

    per_page = raw.get("per_page", 10)
    if not isinstance(per_page, int) or isinstance(per_page, bool) or per_page < 0:
        raise ValueError("per_page must be an int >= 0")
    per_page_choices = [check_per_page_choice(v) for v in _get_list(raw, "per_page_choices")] or [10, 25, 50, 100]

    search_columns = [require_ref(c, what="search column") for c in _get_list(raw, "search_columns")]
    default_search_column = raw.get("default_search_column")
    if default_search_column is not None:
        require_ref(default_search_column, what="search column")

    patterns = {require_ref(k, what="pattern column"): str(v) for k, v in _get_dict(raw, "patterns").items()}
    formatters = {require_ref(k, what="formatter column"): str(v) for k, v in _get_dict(raw, "formatters").items()}
    column_classes = {
        require_ref(k, what="class column"): require_css(v, what="column class")
        for k, v in _get_dict(raw, "column_classes").items()
    }
    column_widths: Dict[str, str] = {}
    for key, value in _get_dict(raw, "column_widths").items():
        if not isinstance(value, str) or not _WIDTH_RE.match(value.strip()):
            raise ValueError(f"Invalid column width for {key}: {value!r}")
        column_widths[require_ref(key, what="width column")] = value.strip()
    column_cuts: Dict[str, int] = {}
    for key, value in _get_dict(raw, "column_cuts").items():
        if not isinstance(value, int) or value < 1:
            raise ValueError("column cut length must be an int >= 1")
        column_cuts[require_ref(key, what="cut column")] = value

    highlights = []
    for item in _get_list(raw, "highlights"):
        if not isinstance(item, dict):
            raise ValueError("highlight must be an object")
        highlights.append(
            Highlight(
                column=require_ref(item.get("column"), what="highlight column"),
                condition=_check_condition(item.get("condition"), what="highlight"),
                css_class=require_css(item.get("css_class"), what="highlight class"),
            )
        )
    row_highlights = []
    for item in _get_list(raw, "row_highlights"):
        if not isinstance(item, dict):
            raise ValueError("row highlight must be an object")
        row_highlights.append(
            Highlight(
                condition=_check_condition(item.get("condition"), what="row highlight"),
                css_class=require_css(item.get("css_class"), what="row highlight class"),
            )
        )

    summaries = []
    for item in _get_list(raw, "summaries"):
        if not isinstance(item, dict):
            raise ValueError("summary must be an object")
        summary_type = str(item.get("type", "sum")).lower()
        if summary_type not in SUMMARY_TYPES:
            raise ValueError(f"summary type must be one of {sorted(SUMMARY_TYPES)}")
        summaries.append(
            Summary(column=require_ref(item.get("column"), what="summary column"), type=summary_type, label=_opt_str(item, "label"))
        )

    validation = {
        require_ident(k, what="validation field"): check_rules(k, v) for k, v in _get_dict(raw, "validation").items()
    }

    hooks: Dict[str, List[str]] = {}
    for event, names in _get_dict(raw, "hooks").items():
        if event not in HOOK_EVENTS:
            raise ValueError(f"hook event must be one of {HOOK_EVENTS}")
        if not isinstance(names, list) or not all(isinstance(n, str) and n for n in names):
            raise ValueError("hook handlers must be a list of names")
        hooks[event] = list(names)

    actions: Dict[str, ActionRule] = {}
    for name, rule in _get_dict(raw, "actions").items():
        if name not in ALLOWED_ACTIONS:
            raise ValueError(f"action must be one of {sorted(ALLOWED_ACTIONS)}")
        if not isinstance(rule, dict):
            raise ValueError("action rule must be an object")
        actions[name] = ActionRule(
            enabled=bool(rule.get("enabled", True)),
            condition=_check_condition(rule.get("condition"), what=f"action {name}"),
        )

    readonly: Dict[str, List[str]] = {}
    for mode, names in _get_dict(raw, "readonly").items():
        if mode not in FORM_MODES and mode != "all":
            raise ValueError("readonly mode must be create, edit, view or all")
        if not isinstance(names, list):
            raise ValueError("readonly entries must be lists")
        readonly[mode] = [require_ident(n, what="readonly field") for n in names]

    pass_vars: Dict[str, Dict[str, Any]] = {}
    for mode, values in _get_dict(raw, "pass_vars").items():
        if mode not in ("create", "edit", "all"):
            raise ValueError("pass_var mode must be create, edit or all")
        if not isinstance(values, dict):
            raise ValueError("pass_vars entries must be objects")
        pass_vars[mode] = {require_ident(k, what="pass_var field"): v for k, v in values.items()}

    field_types: Dict[str, FieldType] = {}
    for name, item in _get_dict(raw, "field_types").items():
        require_ident(name, what="field")
        if not isinstance(item, dict):
            raise ValueError("field type must be an object")
        ftype = item.get("type")
        if ftype not in FIELD_TYPES:
            raise ValueError(f"field type must be one of {sorted(FIELD_TYPES)}")
        params = item.get("params") or {}
        options = item.get("options") or []
        if not isinstance(params, dict) or not isinstance(options, list):
            raise ValueError("field type params must be an object and options a list")
        field_types[name] = FieldType(type=ftype, default=item.get("default"), params=dict(params), options=list(options))

    nested: List[NestedGrid] = []
    for item in _get_list(raw, "nested"):
        if not isinstance(item, dict):
            raise ValueError("nested grid must be an object")
        inner = item.get("config")
        # Validated eagerly so a bad inner config fails with the outer one.
        validate_config(inner)
        nested.append(
            NestedGrid(
                name=require_ident(item.get("name"), what="nested name"),
                parent_column=require_ident(item.get("parent_column"), what="nested parent column"),
                foreign_column=require_ident(item.get("foreign_column"), what="nested foreign column"),
                config=inner,
                label=_opt_str(item, "label"),
            )
        )

    panel_width = raw.get("panel_width")
    if panel_width is not None and (not isinstance(panel_width, str) or not _WIDTH_RE.match(panel_width)):
        raise ValueError("panel_width must be a CSS length")

    return GridConfig(
        table=table,
        grid_id=grid_id,
        version=version,
        primary_key=primary_key,
        columns=columns,
        fields=fields,
        labels=labels,
        per_page=per_page,
        per_page_choices=per_page_choices,
        order_by=order_by,
        where=where_clauses,
        joins=joins,
        relations=relations,
        subselects=subselects,
        search_columns=search_columns,
        default_search_column=default_search_column,
        patterns=patterns,
        formatters=formatters,
        column_classes=column_classes,
        column_widths=column_widths,
        column_cuts=column_cuts,
        highlights=highlights,
        row_highlights=row_highlights,
        summaries=summaries,
        validation=validation,
        hooks=hooks,
        actions=actions,
        readonly=readonly,
        pass_vars=pass_vars,
        field_types=field_types,
        nested=nested,
        title=_opt_str(raw, "title"),
        tooltip=_opt_str(raw, "tooltip"),
        icon=require_css(raw["icon"], what="icon") if raw.get("icon") else None,
        panel_width=panel_width,
    )
