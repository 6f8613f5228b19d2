"""
Named handler registry.

Grid configurations travel through the browser as JSON, so they can only
reference handlers by name. Handlers are registered once at import time:

    from gridcrud import hooks

    @hooks.register("stamp_created_at")
    def stamp_created_at(data, grid, **_):
        data["created_at"] = datetime.utcnow().isoformat()
        return data

    @hooks.formatter("role_badge")
    def role_badge(value, row, column, formatted):
        return f"<span class=\"badge\">{formatted}</span>"
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict

log = logging.getLogger(__name__)

HOOK_EVENTS = (
    "before_insert",
    "after_insert",
    "before_update",
    "after_update",
    "before_delete",
    "after_delete",
)

_HANDLERS: Dict[str, Callable[..., Any]] = {}
_FORMATTERS: Dict[str, Callable[..., Any]] = {}


class HookError(LookupError):
    pass


def register(name: str, func: Callable[..., Any] | None = None):
    """Register a lifecycle handler under `name` (usable as a decorator)."""

    def _add(fn: Callable[..., Any]) -> Callable[..., Any]:
        if not isinstance(name, str) or not name:
            raise ValueError("Handler name must be a non-empty string")
        if name in _HANDLERS and _HANDLERS[name] is not fn:
            log.warning("Replacing hook handler %r", name)
        _HANDLERS[name] = fn
        return fn

    if func is not None:
        return _add(func)
    return _add


def formatter(name: str, func: Callable[..., Any] | None = None):
    """Register a column formatter: fn(value, row, column, formatted) -> html."""

    def _add(fn: Callable[..., Any]) -> Callable[..., Any]:
        if not isinstance(name, str) or not name:
            raise ValueError("Formatter name must be a non-empty string")
        _FORMATTERS[name] = fn
        return fn

    if func is not None:
        return _add(func)
    return _add


def get_handler(name: str) -> Callable[..., Any]:
    try:
        return _HANDLERS[name]
    except KeyError:
        raise HookError(f"Unknown hook handler: {name!r}") from None


def get_formatter(name: str) -> Callable[..., Any]:
    try:
        return _FORMATTERS[name]
    except KeyError:
        raise HookError(f"Unknown column formatter: {name!r}") from None


def has_handler(name: str) -> bool:
    return name in _HANDLERS


def has_formatter(name: str) -> bool:
    return name in _FORMATTERS


def unregister(name: str) -> None:
    _HANDLERS.pop(name, None)
    _FORMATTERS.pop(name, None)


def run_hooks(names: list[str], payload: Any, **context: Any) -> Any:
    """
    Run handlers in order. A handler that returns a value other than None
    replaces the payload passed to the next one.
    """
    for name in names:
        result = get_handler(name)(payload, **context)
        if result is not None:
            payload = result
    return payload
