from __future__ import annotations

import html
import json
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List

from gridcrud.dispatch import MARKER
from gridcrud.schema import ROW_ACTIONS

if TYPE_CHECKING:
    from gridcrud.grid import Grid

STATIC_DIR = Path(__file__).with_name("static")
SCRIPT_NAME = "gridcrud.js"

BOOTSTRAP_HEAD = (
    "<link href=\"https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css\" rel=\"stylesheet\">"
    "<link href=\"https://cdn.jsdelivr.net/npm/bootstrap-icons@1.11.3/font/bootstrap-icons.css\" rel=\"stylesheet\">"
)

STYLE = {
    "wrapper": "gridcrud card shadow-sm",
    "toolbar": "card-header d-flex flex-wrap align-items-center justify-content-between gap-2",
    "title": "h5 mb-0 d-flex align-items-center gap-2",
    "toolbar_actions": "d-flex flex-wrap align-items-center gap-2",
    "search": "input-group input-group-sm",
    "search_input": "form-control",
    "search_select": "form-select",
    "btn_primary": "btn btn-sm btn-primary",
    "btn_secondary": "btn btn-sm btn-outline-secondary",
    "btn_danger": "btn btn-sm btn-outline-danger",
    "btn_row": "btn btn-sm btn-link p-0 ms-2",
    "table_wrap": "table-responsive",
    "table": "table table-hover table-sm align-middle mb-0",
    "thead": "table-light",
    "sort_link": "link-body-emphasis text-decoration-none",
    "empty": "text-center text-muted py-4",
    "tfoot": "table-light fw-semibold",
    "footer": "card-footer d-flex flex-wrap align-items-center justify-content-between gap-2",
    "pagination": "pagination pagination-sm mb-0",
    "page_item": "page-item",
    "page_link": "page-link",
    "per_page": "form-select form-select-sm w-auto",
    "panel": "offcanvas offcanvas-end",
    "panel_header": "offcanvas-header border-bottom",
    "panel_body": "offcanvas-body",
    "nested_row": "gridcrud-nested",
}

ACTION_ICONS = {
    "view": ("bi bi-eye", "View"),
    "edit": ("bi bi-pencil", "Edit"),
    "duplicate": ("bi bi-copy", "Duplicate"),
    "delete": ("bi bi-trash text-danger", "Delete"),
}


def _esc(value: Any) -> str:
    if value is None:
        return ""
    return html.escape(str(value), quote=True)


def _script_json(data: Any) -> str:
    # `</script>` inside the payload must not close the block.
    text = json.dumps(data, ensure_ascii=False, default=str)
    return text.replace("<", "\\u003c").replace(">", "\\u003e").replace("&", "\\u0026")


@lru_cache(maxsize=1)
def client_script() -> str:
    return (STATIC_DIR / SCRIPT_NAME).read_text(encoding="utf-8")


def client_options(grid: "Grid", data: Dict[str, Any], endpoint: str) -> Dict[str, Any]:
    config = grid.config
    return {
        "id": grid.id,
        "table": grid.table,
        "token": grid.to_token(),
        "endpoint": endpoint,
        "marker": MARKER,
        "primary_key": data["meta"]["primary_key"],
        "columns": data["columns"],
        "labels": data["meta"]["labels"],
        "pagination": data["pagination"],
        "per_page_choices": grid.per_page_choices(),
        "default_search_column": config.default_search_column,
        "selectable": _selectable(grid),
        "actions": {
            name: grid.is_action_allowed(name)
            for name in ("add", "edit", "view", "delete", "duplicate", "export", "batch_delete", "bulk_update", "search")
        },
        "nested": [{"name": n.name, "label": n.label or n.name.replace("_", " ").title()} for n in config.nested],
        "panel_width": config.panel_width,
    }


def _selectable(grid: "Grid") -> bool:
    return grid.is_action_allowed("batch_delete") or grid.is_action_allowed("bulk_update")


def render_toolbar(grid: "Grid") -> str:
    config = grid.config
    icon = f"<i class=\"{_esc(config.icon)}\"></i>" if config.icon else ""
    tooltip = f" title=\"{_esc(config.tooltip)}\" data-bs-toggle=\"tooltip\"" if config.tooltip else ""
    title = config.title or grid.table.replace("_", " ").title()
    parts = [f"<div class=\"{STYLE['title']}\"{tooltip}>{icon}<span>{_esc(title)}</span></div>"]

    actions: List[str] = []
    if grid.is_action_allowed("search"):
        builder = grid.builder()
        labels = grid.labels()
        options = ["<option value=\"\">All columns</option>"]
        for column in builder.searchable():
            selected = " selected" if column == config.default_search_column else ""
            options.append(
                f"<option value=\"{_esc(column)}\"{selected}>{_esc(labels.get(column, column))}</option>"
            )
        actions.append(
            f"<form class=\"{STYLE['search']}\" data-gridcrud-search role=\"search\">"
            f"<input class=\"{STYLE['search_input']}\" type=\"search\" name=\"search_term\" placeholder=\"Search\"/>"
            f"<select class=\"{STYLE['search_select']}\" name=\"search_column\">{''.join(options)}</select>"
            f"<button class=\"{STYLE['btn_secondary']}\" type=\"submit\"><i class=\"bi bi-search\"></i></button>"
            "</form>"
        )
    if grid.is_action_allowed("add"):
        actions.append(
            f"<button class=\"{STYLE['btn_primary']}\" type=\"button\" data-gridcrud-action=\"create\">"
            "<i class=\"bi bi-plus-lg\"></i> Add</button>"
        )
    if grid.is_action_allowed("export"):
        actions.append(
            f"<button class=\"{STYLE['btn_secondary']}\" type=\"button\" data-gridcrud-action=\"export_csv\">CSV</button>"
            f"<button class=\"{STYLE['btn_secondary']}\" type=\"button\" data-gridcrud-action=\"export_excel\">Excel</button>"
        )
    if grid.is_action_allowed("batch_delete"):
        actions.append(
            f"<button class=\"{STYLE['btn_danger']}\" type=\"button\" data-gridcrud-action=\"batch_delete\" disabled>"
            "<i class=\"bi bi-trash\"></i> Delete selected</button>"
        )
    parts.append(f"<div class=\"{STYLE['toolbar_actions']}\">{''.join(actions)}</div>")
    return f"<div class=\"{STYLE['toolbar']}\">{''.join(parts)}</div>"


def render_header(grid: "Grid", columns: List[str], labels: Dict[str, str]) -> str:
    cells = []
    if _selectable(grid):
        cells.append("<th scope=\"col\" style=\"width:1%\"><input class=\"form-check-input\" type=\"checkbox\" data-gridcrud-select-all/></th>")
    for column in columns:
        width = grid.config.column_widths.get(column)
        style = f" style=\"width:{_esc(width)}\"" if width else ""
        cells.append(
            f"<th scope=\"col\"{style}><a href=\"#\" class=\"{STYLE['sort_link']}\" data-gridcrud-sort=\"{_esc(column)}\">"
            f"{_esc(labels.get(column, column))}</a></th>"
        )
    cells.append("<th scope=\"col\" class=\"text-end\">Actions</th>")
    return f"<thead class=\"{STYLE['thead']}\"><tr>{''.join(cells)}</tr></thead>"


def render_row(grid: "Grid", row: Dict[str, Any], columns: List[str]) -> str:
    meta = row["__meta"]
    pk = _esc(row.get("__pk"))
    cells = []
    if _selectable(grid):
        cells.append(
            f"<td><input class=\"form-check-input\" type=\"checkbox\" data-gridcrud-select value=\"{pk}\"/></td>"
        )
    for column in columns:
        css = meta["cell_class"].get(column)
        cls = f" class=\"{_esc(css)}\"" if css else ""
        # display values are escaped, or trusted formatter output
        cells.append(f"<td{cls} data-column=\"{_esc(column)}\">{meta['display'].get(column, '')}</td>")
    buttons = []
    for nested in grid.config.nested:
        buttons.append(
            f"<button type=\"button\" class=\"{STYLE['btn_row']}\" data-gridcrud-nested=\"{_esc(nested.name)}\" "
            f"title=\"{_esc(nested.label or nested.name)}\"><i class=\"bi bi-chevron-down\"></i></button>"
        )
    for action in ROW_ACTIONS:
        if not meta["actions"].get(action):
            continue
        icon, title = ACTION_ICONS[action]
        buttons.append(
            f"<button type=\"button\" class=\"{STYLE['btn_row']}\" data-gridcrud-action=\"{action}\" title=\"{title}\">"
            f"<i class=\"{icon}\"></i></button>"
        )
    cells.append(f"<td class=\"text-end text-nowrap\">{''.join(buttons)}</td>")
    row_class = f" class=\"{_esc(meta['row_class'])}\"" if meta["row_class"] else ""
    return f"<tr{row_class} data-pk=\"{pk}\">{''.join(cells)}</tr>"


def render_body(grid: "Grid", rows: List[Dict[str, Any]], columns: List[str]) -> str:
    if not rows:
        span = len(columns) + 1 + (1 if _selectable(grid) else 0)
        return f"<tbody><tr><td colspan=\"{span}\" class=\"{STYLE['empty']}\">No records found.</td></tr></tbody>"
    return "<tbody>" + "".join(render_row(grid, row, columns) for row in rows) + "</tbody>"


def render_summaries(grid: "Grid", summaries: List[Dict[str, Any]], columns: List[str]) -> str:
    if not summaries:
        return ""
    by_column: Dict[str, List[str]] = {}
    for item in summaries:
        by_column.setdefault(item["column"], []).append(f"{_esc(item['label'])}: {_esc(item['value'])}")
    cells = []
    if _selectable(grid):
        cells.append("<td></td>")
    for column in columns:
        cells.append(f"<td data-column=\"{_esc(column)}\">{'<br/>'.join(by_column.get(column, []))}</td>")
    cells.append("<td></td>")
    return f"<tfoot class=\"{STYLE['tfoot']}\" data-gridcrud-summary><tr>{''.join(cells)}</tr></tfoot>"


def render_pagination(grid: "Grid", pagination: Dict[str, Any]) -> str:
    current = pagination["current_page"]
    total_pages = pagination["total_pages"]
    items = []

    def _item(label: str, page: int, *, disabled: bool = False, active: bool = False) -> str:
        state = " disabled" if disabled else (" active" if active else "")
        return (
            f"<li class=\"{STYLE['page_item']}{state}\"><a class=\"{STYLE['page_link']}\" href=\"#\" "
            f"data-gridcrud-page=\"{page}\">{label}</a></li>"
        )

    items.append(_item("&laquo;", max(1, current - 1), disabled=current <= 1))
    start = max(1, current - 2)
    end = min(total_pages, current + 2)
    for page in range(start, end + 1):
        items.append(_item(str(page), page, active=page == current))
    items.append(_item("&raquo;", min(total_pages, current + 1), disabled=current >= total_pages))

    per_page = pagination["per_page"]
    options = []
    for choice in grid.per_page_choices():
        selected = " selected" if str(choice) == str(per_page) else ""
        label = "All" if choice == "all" else str(choice)
        options.append(f"<option value=\"{_esc(choice)}\"{selected}>{label}</option>")
    return (
        f"<div class=\"{STYLE['footer']}\" data-gridcrud-footer>"
        f"<small class=\"text-muted\" data-gridcrud-info>Page {current} of {total_pages} · {pagination['total_rows']} total</small>"
        f"<div class=\"d-flex align-items-center gap-2\">"
        f"<select class=\"{STYLE['per_page']}\" data-gridcrud-per-page>{''.join(options)}</select>"
        f"<nav><ul class=\"{STYLE['pagination']}\" data-gridcrud-pages>{''.join(items)}</ul></nav>"
        "</div></div>"
    )


def render_panel(grid: "Grid") -> str:
    width = grid.config.panel_width
    style = f" style=\"--bs-offcanvas-width:{_esc(width)}\"" if width else ""
    return (
        f"<div class=\"{STYLE['panel']}\" tabindex=\"-1\" data-gridcrud-panel{style}>"
        f"<div class=\"{STYLE['panel_header']}\"><h5 class=\"offcanvas-title\" data-gridcrud-panel-title></h5>"
        "<button type=\"button\" class=\"btn-close\" data-gridcrud-close aria-label=\"Close\"></button></div>"
        f"<div class=\"{STYLE['panel_body']}\"><form data-gridcrud-form novalidate></form></div>"
        "</div>"
    )


def render_grid(grid: "Grid", *, endpoint: str = "", inline_script: bool = True) -> str:
    """Markup, first page of rows, signed config bundle and (optionally) the client runtime."""
    data = grid.get_table_data(page=1)
    columns = data["columns"]
    labels = data["meta"]["labels"]
    options = client_options(grid, data, endpoint)
    table = (
        f"<div class=\"{STYLE['table_wrap']}\"><table class=\"{STYLE['table']}\">"
        + render_header(grid, columns, labels)
        + render_body(grid, data["rows"], columns)
        + render_summaries(grid, data["meta"]["summaries"], columns)
        + "</table></div>"
    )
    script = ""
    if inline_script:
        script = f"<script>{client_script()}</script>"
    return (
        f"<div class=\"{STYLE['wrapper']}\" id=\"{_esc(grid.id)}\" data-gridcrud>"
        + render_toolbar(grid)
        + table
        + render_pagination(grid, data["pagination"])
        + render_panel(grid)
        + f"<script type=\"application/json\" data-gridcrud-config>{_script_json(options)}</script>"
        + "</div>"
        + script
    )


def render_page(title: str, body: str, *, script_src: str | None = "/static/" + SCRIPT_NAME) -> str:
    """Standalone HTML page around one or more rendered grids."""
    script = f"<script src=\"{_esc(script_src)}\"></script>" if script_src else ""
    return (
        "<!doctype html><html lang=\"en\"><head><meta charset=\"utf-8\"/>"
        "<meta name=\"viewport\" content=\"width=device-width, initial-scale=1\"/>"
        f"<title>{_esc(title)}</title>{BOOTSTRAP_HEAD}</head>"
        "<body><div class=\"container py-4\">"
        f"<h1 class=\"h3 mb-4\">{_esc(title)}</h1>{body}"
        f"</div>{script}</body></html>"
    )
