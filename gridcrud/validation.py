from __future__ import annotations

import re
from typing import Any, Callable, Dict, Mapping

NAMED_PATTERNS = {
    "email": r"^[^@\s]+@[^@\s]+\.[^@\s]+$",
    "integer": r"^-?\d+$",
    "numeric": r"^-?\d+(\.\d+)?$",
    "alpha": r"^[A-Za-z]+$",
    "alpha_numeric": r"^[A-Za-z0-9]+$",
    "alpha_dash": r"^[A-Za-z0-9_-]+$",
    "url": r"^https?://\S+$",
    "date": r"^\d{4}-\d{2}-\d{2}$",
}

ALLOWED_RULES = {"required", "min_length", "max_length", "pattern", "min", "max", "unique", "message"}


class ValidationError(ValueError):
    """Raised with a field -> message map; reported to the caller, not thrown to the top."""

    def __init__(self, message: str, errors: Dict[str, str] | None = None) -> None:
        super().__init__(message)
        self.errors: Dict[str, str] = dict(errors or {})


def check_rules(field: str, rules: Mapping[str, Any]) -> Dict[str, Any]:
    """Validate a rule mapping at configuration time."""
    if not isinstance(rules, Mapping):
        raise ValueError(f"validation rules for {field} must be an object")
    unknown = [k for k in rules.keys() if k not in ALLOWED_RULES]
    if unknown:
        raise ValueError(f"Unknown validation rule(s) for {field}: {sorted(unknown)}")
    for key in ("min_length", "max_length"):
        if key in rules and (not isinstance(rules[key], int) or rules[key] < 0):
            raise ValueError(f"{field}.{key} must be an int >= 0")
    for key in ("min", "max"):
        if key in rules and (isinstance(rules[key], bool) or not isinstance(rules[key], (int, float))):
            raise ValueError(f"{field}.{key} must be a number")
    pattern = rules.get("pattern")
    if pattern is not None:
        if not isinstance(pattern, str) or not pattern:
            raise ValueError(f"{field}.pattern must be a non-empty string")
        try:
            re.compile(NAMED_PATTERNS.get(pattern, pattern))
        except re.error as exc:
            raise ValueError(f"{field}.pattern is not a valid regex: {exc}") from exc
    return dict(rules)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict)):
        return len(value) == 0
    return False


def validate_fields(
    data: Mapping[str, Any],
    rules: Mapping[str, Mapping[str, Any]],
    *,
    labels: Mapping[str, str] | None = None,
    partial: bool = False,
    is_unique: Callable[[str, Any], bool] | None = None,
) -> None:
    """
    Check submitted data against per-field rules and raise ValidationError
    with every failing field. With `partial`, fields absent from the payload
    are skipped (updates only send what changed).
    """
    labels = labels or {}
    errors: Dict[str, str] = {}
    for field, field_rules in rules.items():
        label = labels.get(field) or field.replace("_", " ").title()
        custom = field_rules.get("message")
        present = field in data
        if partial and not present:
            continue
        value = data.get(field)

        if _is_blank(value):
            if field_rules.get("required"):
                errors[field] = custom or f"{label} is required."
            continue

        text = value if isinstance(value, str) else str(value)
        min_length = field_rules.get("min_length")
        max_length = field_rules.get("max_length")
        if min_length is not None and len(text) < min_length:
            errors[field] = custom or f"{label} must be at least {min_length} characters."
            continue
        if max_length is not None and len(text) > max_length:
            errors[field] = custom or f"{label} must be at most {max_length} characters."
            continue

        pattern = field_rules.get("pattern")
        if pattern:
            regex = NAMED_PATTERNS.get(pattern, pattern)
            if re.search(regex, text) is None:
                errors[field] = custom or f"{label} has an invalid format."
                continue

        if "min" in field_rules or "max" in field_rules:
            try:
                number = float(text)
            except ValueError:
                errors[field] = custom or f"{label} must be a number."
                continue
            if "min" in field_rules and number < field_rules["min"]:
                errors[field] = custom or f"{label} must be at least {field_rules['min']}."
                continue
            if "max" in field_rules and number > field_rules["max"]:
                errors[field] = custom or f"{label} must be at most {field_rules['max']}."
                continue

        if field_rules.get("unique") and is_unique is not None and not is_unique(field, value):
            errors[field] = custom or f"{label} must be unique."

    if errors:
        raise ValidationError("Validation failed.", errors)
