"""
Action request dispatcher.

Every asynchronous grid request carries the marker parameter, an action name
and the signed grid configuration. The dispatcher rebuilds the Grid from that
configuration, checks the action against it and answers with JSON (or a file
for exports). No state survives between requests.
"""
from __future__ import annotations

import json
import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping

from gridcrud import db
from gridcrud.conditions import ConditionError
from gridcrud.config import Settings, get_settings
from gridcrud.exports import build_export
from gridcrud.grid import ActionRejected, Grid, RecordNotFound
from gridcrud.hooks import HookError
from gridcrud.signing import SignatureError
from gridcrud.uploads import UploadedFile, UploadError, file_metadata, file_sizes, store_upload
from gridcrud.validation import ValidationError

log = logging.getLogger(__name__)
audit = logging.getLogger("gridcrud.audit")

MARKER = "gridcrud_ajax"

IDLE = "idle"
VALIDATING = "validating"
EXECUTING = "executing"
RESPONDING = "responding"

JSON_CONTENT_TYPE = "application/json; charset=utf-8"

# Actions that may arrive over GET; everything else changes data.
READ_ONLY_ACTIONS = frozenset(
    {"fetch", "read", "export_csv", "export_excel", "file_metadata", "file_metadata_bulk", "nested_fetch"}
)


class RequestError(ValueError):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class Response:
    status: int = 200
    body: bytes = b""
    content_type: str = JSON_CONTENT_TYPE
    headers: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def json(cls, data: Any, status: int = 200) -> "Response":
        body = json.dumps(data, ensure_ascii=False, default=str).encode("utf-8")
        return cls(status=status, body=body)

    @classmethod
    def error(cls, message: str, status: int, **extra: Any) -> "Response":
        payload: Dict[str, Any] = {"success": False, "error": message}
        payload.update(extra)
        return cls.json(payload, status=status)

    def data(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


def is_action_request(params: Mapping[str, Any]) -> bool:
    value = params.get(MARKER)
    if isinstance(value, list):
        value = value[0] if value else None
    return str(value or "").strip().lower() in ("1", "true", "yes")


def _json_param(params: Mapping[str, Any], name: str, default: Any = None) -> Any:
    value = params.get(name, default)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return default
        try:
            return json.loads(text)
        except ValueError:
            raise RequestError(f"{name} must be valid JSON") from None
    return value


def _list_param(params: Mapping[str, Any], name: str) -> List[Any]:
    value = params.get(name)
    if value is None or value == "":
        return []
    if isinstance(value, str):
        text = value.strip()
        if text.startswith("["):
            value = _json_param(params, name)
        else:
            value = [v.strip() for v in text.split(",") if v.strip()]
    if not isinstance(value, list):
        raise RequestError(f"{name} must be a list")
    return value


def _str_param(params: Mapping[str, Any], name: str) -> str | None:
    value = params.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class Dispatcher:
    """Turns a parsed parameter mapping into a Response."""

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        provider: db.ConnectionProvider | None = None,
        connection: sqlite3.Connection | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.provider = provider
        self.connection = connection
        self.state = IDLE
        self._actions: Dict[str, Callable[[Grid, Mapping[str, Any], Dict[str, UploadedFile]], Response]] = {
            "fetch": self.fetch,
            "read": self.read,
            "create": self.create,
            "update": self.update,
            "delete": self.delete,
            "batch_delete": self.batch_delete,
            "bulk_update": self.bulk_update,
            "bulk_action": self.bulk_action,
            "duplicate": self.duplicate,
            "export_csv": self.export_csv,
            "export_excel": self.export_excel,
            "upload": self.upload,
            "file_metadata": self.file_metadata,
            "file_metadata_bulk": self.file_metadata_bulk,
            "nested_fetch": self.nested_fetch,
        }

    @property
    def actions(self) -> List[str]:
        return sorted(self._actions)

    def _transition(self, state: str, action: str) -> None:
        log.debug("dispatch %s -> %s (%s)", self.state, state, action)
        self.state = state

    def handle(self, params: Mapping[str, Any], files: Dict[str, UploadedFile] | None = None) -> Response:
        action = _str_param(params, "action") or "fetch"
        self._transition(VALIDATING, action)
        try:
            handler = self._actions.get(action)
            if handler is None:
                return Response.error(f"Action not supported: {action}", 400)
            grid = self.rehydrate(params)
            self._transition(EXECUTING, action)
            return handler(grid, params, files or {})
        except RequestError as exc:
            return Response.error(str(exc), exc.status)
        except SignatureError as exc:
            log.info("Rejected grid configuration: %s", exc)
            return Response.error(str(exc), 400)
        except ActionRejected as exc:
            log.info("Rejected action %s: %s", action, exc)
            return Response.error(str(exc), 403)
        except RecordNotFound as exc:
            return Response.error(str(exc), 404)
        except ValidationError as exc:
            return Response.error(str(exc), 422, errors=exc.errors)
        except UploadError as exc:
            return Response.error(str(exc), exc.status)
        except (ConditionError, ValueError) as exc:
            return Response.error(str(exc), 400)
        except sqlite3.IntegrityError as exc:
            log.warning("Constraint violation during %s: %s", action, exc)
            return Response.error("The record violates a database constraint.", 409)
        except (sqlite3.Error, HookError):
            log.exception("Action %s failed", action)
            return Response.error("Operation failed.", 500)
        finally:
            self._transition(RESPONDING, action)
            self._transition(IDLE, action)

    def rehydrate(self, params: Mapping[str, Any]) -> Grid:
        table = _str_param(params, "table")
        if not table:
            raise RequestError("Missing table.")
        db.require_ident(table, what="table")
        grid = Grid.from_token(
            params.get("config"), settings=self.settings, connection=self.connection, provider=self.provider
        )
        if grid.table != table:
            raise RequestError("Table does not match the grid configuration.")
        grid_id = _str_param(params, "id")
        if grid_id and grid_id != grid.id:
            raise RequestError("Grid id does not match the grid configuration.")
        return grid

    def _pk_value(self, grid: Grid, params: Mapping[str, Any]) -> Any:
        grid.check_primary_key(_str_param(params, "primary_key_column"))
        value = params.get("primary_key_value")
        if value is None or value == "":
            raise RequestError("Missing primary key value.")
        return value

    def _pk_values(self, grid: Grid, params: Mapping[str, Any]) -> List[Any]:
        grid.check_primary_key(_str_param(params, "primary_key_column"))
        values = _list_param(params, "primary_key_values")
        if not values:
            raise RequestError("No records selected.")
        return values

    def _fields(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        fields = _json_param(params, "fields", {})
        if not isinstance(fields, dict):
            raise RequestError("fields must be an object")
        return fields

    def _audit(self, action: str, grid: Grid, keys: Any) -> None:
        audit.info(json.dumps({"action": action, "table": grid.table, "grid": grid.id, "keys": keys}, default=str))

    # actions

    def fetch(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        result = grid.get_table_data(
            page=params.get("page") or 1,
            per_page=params.get("per_page"),
            search_term=_str_param(params, "search_term"),
            search_column=_str_param(params, "search_column"),
            sort=_str_param(params, "sort"),
            direction=_str_param(params, "direction"),
        )
        return Response.json(
            {
                "success": True,
                "data": result["rows"],
                "columns": result["columns"],
                "pagination": result["pagination"],
                "meta": result["meta"],
                "id": grid.id,
            }
        )

    def read(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        mode = _str_param(params, "mode") or "view"
        if mode == "create":
            grid.ensure_allowed("add")
            return Response.json({"success": True, "row": {}, "fields": grid.form_fields("create"), "id": grid.id})
        if mode not in ("view", "edit"):
            raise RequestError("mode must be create, edit or view")
        record = grid.get_record(self._pk_value(grid, params), mode)
        return Response.json({"success": True, "id": grid.id, **record})

    def create(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        row = grid.create_record(self._fields(params))
        self._audit("create", grid, row.get(grid.pk))
        return Response.json({"success": True, "row": row, "columns": list(row.keys())}, status=201)

    def update(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        value = self._pk_value(grid, params)
        row = grid.update_record(value, self._fields(params))
        self._audit("update", grid, value)
        return Response.json({"success": True, "row": row, "columns": list(row.keys())})

    def delete(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        value = self._pk_value(grid, params)
        grid.delete_record(value)
        self._audit("delete", grid, value)
        return Response.json({"success": True, "deleted": [value]})

    def _batch_response(self, grid: Grid, action: str, result: Dict[str, Any], key: str, status: int) -> Response:
        done = result[key]
        payload: Dict[str, Any] = {"success": bool(done), **result, "id": grid.id}
        if not done:
            payload["error"] = f"No records were {key}."
            return Response.json(payload, status=status)
        self._audit(action, grid, done)
        if result["failures"]:
            payload["warning"] = f"Some records could not be {key}."
        return Response.json(payload)

    def batch_delete(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        result = grid.delete_records(self._pk_values(grid, params))
        return self._batch_response(grid, "batch_delete", result, "deleted", 404)

    def bulk_update(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        result = grid.update_records(self._pk_values(grid, params), self._fields(params))
        return self._batch_response(grid, "bulk_update", result, "updated", 400)

    def bulk_action(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        operation = _str_param(params, "operation")
        if operation == "delete":
            return self.batch_delete(grid, params, files)
        if operation == "update":
            return self.bulk_update(grid, params, files)
        raise RequestError(f"Unsupported bulk operation: {operation}")

    def duplicate(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        value = self._pk_value(grid, params)
        row = grid.duplicate_record(value)
        self._audit("duplicate", grid, {"source": value, "copy": row.get(grid.pk)})
        return Response.json({"success": True, "row": row, "columns": list(row.keys())}, status=201)

    def _export(self, grid: Grid, params: Mapping[str, Any], fmt: str) -> Response:
        selected = _list_param(params, "primary_key_values") or None
        header, rows = grid.export_dataset(
            search_term=_str_param(params, "search_term"),
            search_column=_str_param(params, "search_column"),
            selected=selected,
        )
        body, content_type, filename = build_export(fmt, grid.table, header, rows, sheet=grid.config.title)
        return Response(
            status=200,
            body=body,
            content_type=content_type,
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    def export_csv(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        return self._export(grid, params, "csv")

    def export_excel(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        return self._export(grid, params, "xlsx")

    def upload(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        if not (grid.is_action_allowed("add") or grid.is_action_allowed("edit")):
            raise ActionRejected("upload")
        upload = files.get("file")
        if upload is None:
            raise RequestError("Missing file.")
        kind = _str_param(params, "kind") or "file"
        stored = store_upload(upload, kind=kind, table=grid.table, settings=self.settings)
        self._audit("upload", grid, stored["name"])
        return Response.json({"success": True, **stored}, status=201)

    def file_metadata(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        name = _str_param(params, "name")
        if not name:
            raise RequestError("Missing file name.")
        return Response.json({"success": True, **file_metadata(name, self.settings)})

    def file_metadata_bulk(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        names = _list_param(params, "names")
        return Response.json({"success": True, "sizes": file_sizes(names, self.settings)})

    def nested_fetch(self, grid: Grid, params: Mapping[str, Any], files: Dict[str, UploadedFile]) -> Response:
        name = _str_param(params, "nested")
        if not name:
            raise RequestError("Missing nested grid name.")
        inner = grid.nested_grid(name, self._pk_value(grid, params))
        # The page already carries the client runtime.
        html = inner.render(endpoint=_str_param(params, "endpoint") or "", inline_script=False)
        return Response.json({"success": True, "html": html, "id": inner.id})


def dispatch(
    params: Mapping[str, Any],
    files: Dict[str, UploadedFile] | None = None,
    *,
    settings: Settings | None = None,
    connection: sqlite3.Connection | None = None,
) -> Response:
    return Dispatcher(settings=settings, connection=connection).handle(params, files)
