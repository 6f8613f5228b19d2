from __future__ import annotations

import re
from typing import Any, Callable


class ConditionError(ValueError):
    pass


_OP_RE = re.compile(r"^\$[a-zA-Z_][a-zA-Z0-9_]*$")

# Operator names accepted in `{column, operator, value}` row conditions.
ROW_OPERATORS = {
    "equals": "$eq",
    "=": "$eq",
    "==": "$eq",
    "not_equals": "$ne",
    "!=": "$ne",
    "<>": "$ne",
    "gt": "$gt",
    ">": "$gt",
    "gte": "$gte",
    ">=": "$gte",
    "lt": "$lt",
    "<": "$lt",
    "lte": "$lte",
    "<=": "$lte",
    "in": "$in",
    "not_in": "$in",
    "contains": "$icontains",
    "not_contains": "$icontains",
    "starts_with": "$startsWith",
    "ends_with": "$endsWith",
    "empty": "$truthy",
    "not_empty": "$truthy",
}
_NEGATED_ROW_OPERATORS = {"not_in", "not_contains", "empty"}


def lookup_path(expr: str, ctx: dict[str, Any]) -> Any:
    """
    Resolve "row.status" style paths against the evaluation context.

    Joined columns keep their dotted key in a row, so "row.author.username"
    finds the value stored under "author.username". Returns None when any
    segment is missing.
    """
    parts = [p for p in str(expr).strip().split(".") if p]
    if not parts:
        return None
    value: Any = ctx.get(parts[0])
    rest = parts[1:]
    while rest:
        if not isinstance(value, dict):
            return None
        for size in range(len(rest), 0, -1):
            key = ".".join(rest[:size])
            if key in value:
                value = value[key]
                rest = rest[size:]
                break
        else:
            return None
    return value


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def loose_equal(actual: Any, expected: Any) -> bool:
    """Equality that treats 23, 23.0 and "23" alike, since database values and
    configured values often differ only in type."""
    if actual == expected:
        return True
    if actual is None or expected is None:
        return False
    a_num = _as_number(actual)
    e_num = _as_number(expected)
    if a_num is not None and e_num is not None:
        return a_num == e_num
    return str(actual) == str(expected)


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def _check(actual: Any, expected: Any) -> bool:
        a_num = _as_number(actual)
        e_num = _as_number(expected)
        if a_num is None or e_num is None:
            return False
        return compare(a_num, e_num)

    return _check


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, list):
        raise ConditionError("$in expects [expr, [values...]]")
    return any(loose_equal(actual, candidate) for candidate in expected)


def _icontains(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    return str(expected).lower() in str(actual).lower()


def _affix(method: str) -> Callable[[Any, Any], bool]:
    def _check(actual: Any, expected: Any) -> bool:
        if not isinstance(expected, str):
            raise ConditionError(f"${method} expects [expr, string]")
        if actual is None:
            return False
        return getattr(str(actual), method)(expected)

    return _check


def _regex(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, str):
        raise ConditionError("$regex expects [expr, pattern_string]")
    if actual is None:
        return False
    try:
        return re.search(expected, str(actual)) is not None
    except re.error as exc:
        raise ConditionError(f"Invalid regex: {exc}") from exc


_BINARY_OPS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": loose_equal,
    "$ne": lambda actual, expected: not loose_equal(actual, expected),
    "$gt": _numeric(lambda a, e: a > e),
    "$gte": _numeric(lambda a, e: a >= e),
    "$lt": _numeric(lambda a, e: a < e),
    "$lte": _numeric(lambda a, e: a <= e),
    "$in": _in,
    "$icontains": _icontains,
    "$startsWith": _affix("startswith"),
    "$endsWith": _affix("endswith"),
    "$regex": _regex,
}


def eval_condition(cond: Any, ctx: dict[str, Any]) -> bool:
    """
    Evaluate a row rule without executing any user code.

    Supported forms:
      1) Equality map (AND): {"row.role": "admin", "row.active": 1}
      2) Combinators: {"$and": [...]}, {"$or": [...]}, {"$not": cond}
      3) Binary operators: {"$gt": ["row.views", 100]} for
         $eq $ne $gt $gte $lt $lte $in $icontains $startsWith $endsWith $regex
      4) {"$truthy": "row.column"}
    """
    if cond is None:
        return True
    if isinstance(cond, bool):
        return cond
    if isinstance(cond, list):
        return all(eval_condition(item, ctx) for item in cond)
    if not isinstance(cond, dict):
        return False

    if not any(isinstance(k, str) and k.startswith("$") for k in cond):
        for expr, expected in cond.items():
            if not isinstance(expr, str) or not expr.strip():
                return False
            if not loose_equal(lookup_path(expr, ctx), expected):
                return False
        return True

    if len(cond) != 1:
        raise ConditionError("Operator condition objects must have exactly one $operator key")
    op, arg = next(iter(cond.items()))
    if not isinstance(op, str) or not _OP_RE.match(op):
        raise ConditionError("Invalid $operator key")

    if op in ("$and", "$or"):
        if not isinstance(arg, list):
            raise ConditionError(f"{op} expects a list")
        results = (eval_condition(item, ctx) for item in arg)
        return all(results) if op == "$and" else any(results)
    if op == "$not":
        return not eval_condition(arg, ctx)
    if op == "$truthy":
        if not isinstance(arg, str) or not arg.strip():
            raise ConditionError("$truthy expects 'expr'")
        return bool(lookup_path(arg, ctx))

    check = _BINARY_OPS.get(op)
    if check is None:
        raise ConditionError(f"Unknown operator: {op}")
    if not isinstance(arg, list) or len(arg) != 2:
        raise ConditionError(f"{op} expects [expr, value]")
    expr, expected = arg
    if not isinstance(expr, str) or not expr.strip():
        raise ConditionError(f"{op} expr must be a non-empty string")
    return check(lookup_path(expr, ctx), expected)


def row_condition(spec: Any) -> Any:
    """
    Translate a `{"column": ..., "operator": ..., "value": ...}` row condition
    into the operator form understood by eval_condition. Operator-form
    conditions and equality maps pass through unchanged.
    """
    if spec is None or isinstance(spec, (bool, list)):
        return spec
    if not isinstance(spec, dict):
        raise ConditionError("Row condition must be an object")
    if "column" not in spec:
        return spec
    column = spec.get("column")
    if not isinstance(column, str) or not column.strip():
        raise ConditionError("Row condition column must be a non-empty string")
    operator = str(spec.get("operator", "equals")).strip().lower()
    op = ROW_OPERATORS.get(operator)
    if op is None:
        raise ConditionError(f"Unknown row condition operator: {operator!r}")
    expr = f"row.{column}"
    if op == "$truthy":
        cond: dict[str, Any] = {"$truthy": expr}
    else:
        value = spec.get("value")
        if op == "$in" and not isinstance(value, list):
            value = [v.strip() for v in str(value).split(",")] if value is not None else []
        if op in ("$startsWith", "$endsWith"):
            value = "" if value is None else str(value)
        cond = {op: [expr, value]}
    if operator in _NEGATED_ROW_OPERATORS:
        return {"$not": cond}
    return cond


def matches_row(spec: Any, row: dict[str, Any]) -> bool:
    return eval_condition(row_condition(spec), {"row": row})
