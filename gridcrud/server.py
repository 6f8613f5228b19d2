from __future__ import annotations

import html
import json
import logging
import mimetypes
import time
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, HTTPServer
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qs, urlparse

from gridcrud.app import AppSpec, build_grids, run_setup
from gridcrud.config import Settings, get_settings
from gridcrud.db import ConnectionProvider
from gridcrud.dispatch import READ_ONLY_ACTIONS, Dispatcher, Response, is_action_request
from gridcrud.render import STATIC_DIR, render_page
from gridcrud.uploads import UploadedFile, UploadError, parse_multipart, stored_path

log = logging.getLogger(__name__)

_BASE_CSP = (
    "default-src 'self'; "
    "script-src 'self' 'unsafe-inline'; "
    "style-src 'self' https://cdn.jsdelivr.net 'unsafe-inline'; "
    "font-src https://cdn.jsdelivr.net; "
    "img-src 'self' data:; "
    "connect-src 'self'; "
    "frame-ancestors 'none'"
)

_INLINE_UPLOAD_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp", "image/bmp"}


class RateLimiter:
    def __init__(self, limit_per_minute: int) -> None:
        self.limit = max(1, limit_per_minute)
        self.window = 60
        self.hits: dict[str, tuple[float, int]] = {}

    def allow(self, key: str) -> bool:
        now = time.time()
        start, count = self.hits.get(key, (now, 0))
        if now - start >= self.window:
            start, count = now, 0
        count += 1
        self.hits[key] = (start, count)
        return count <= self.limit


class GridServer:
    def __init__(self, app: AppSpec, settings: Settings | None = None) -> None:
        self.app = app
        self.settings = settings or get_settings()
        self.provider = ConnectionProvider(app.db)
        self.conn = self.provider.connection()
        run_setup(app, self.conn)
        self.page_map = app.page_map()
        self.rate_limiter = RateLimiter(self.settings.rate_limit)
        self.dispatcher = Dispatcher(settings=self.settings, connection=self.conn)

    def render(self, path: str) -> str:
        page = self.page_map[path]
        grids = build_grids(page, connection=self.conn, settings=self.settings)
        body = "".join(f"<div class=\"mb-5\">{grid.render(endpoint=path, inline_script=False)}</div>" for grid in grids)
        return render_page(page.title, body)

    def close(self) -> None:
        self.provider.disconnect()


class Handler(BaseHTTPRequestHandler):
    server_ctx: GridServer

    def do_GET(self) -> None:  # noqa: N802
        if not self._check_rate_limit():
            return
        parsed = urlparse(self.path)
        if parsed.path.startswith("/static/"):
            self._serve_static(parsed.path)
            return
        upload_prefix = self.server_ctx.settings.upload_url.rstrip("/") + "/"
        if parsed.path.startswith(upload_prefix):
            self._serve_upload(parsed.path[len(upload_prefix) :])
            return
        params = _flatten(parse_qs(parsed.query))
        if is_action_request(params):
            action = str(params.get("action") or "fetch").strip()
            if action not in READ_ONLY_ACTIONS:
                self._send_error(HTTPStatus.METHOD_NOT_ALLOWED, f"Action {action} requires POST")
                return
            self._dispatch(params, {})
            return
        if parsed.path in self.server_ctx.page_map:
            self._send_html(self.server_ctx.render(parsed.path))
            return
        self._send_error(HTTPStatus.NOT_FOUND, "Not found")

    def do_POST(self) -> None:  # noqa: N802
        if not self._check_rate_limit():
            return
        parsed = urlparse(self.path)
        payload = self._read_payload()
        if payload is None:
            return
        body, files = payload
        params = _flatten(parse_qs(parsed.query))
        params.update(body)
        if is_action_request(params):
            self._dispatch(params, files)
            return
        self._send_error(HTTPStatus.NOT_FOUND, "Not found")

    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        log.info("%s %s", self.address_string(), format % args)

    def _check_rate_limit(self) -> bool:
        key = self.client_address[0]
        if not self.server_ctx.rate_limiter.allow(key):
            self._send_error(HTTPStatus.TOO_MANY_REQUESTS, "Rate limit exceeded")
            return False
        return True

    def _dispatch(self, params: Dict[str, Any], files: Dict[str, UploadedFile]) -> None:
        self._send_response(self.server_ctx.dispatcher.handle(params, files))

    def _read_payload(self) -> Optional[Tuple[Dict[str, Any], Dict[str, UploadedFile]]]:
        try:
            length = int(self.headers.get("Content-Length", "0"))
        except ValueError:
            self._send_error(HTTPStatus.BAD_REQUEST, "Invalid Content-Length")
            return None
        if length > self.server_ctx.settings.max_body_bytes:
            self._send_error(HTTPStatus.REQUEST_ENTITY_TOO_LARGE, "Payload too large")
            return None
        raw = self.rfile.read(length) if length > 0 else b""
        full_content_type = self.headers.get("Content-Type") or ""
        content_type = full_content_type.split(";")[0].strip().lower()
        if content_type == "application/json":
            if not raw:
                return {}, {}
            try:
                data = json.loads(raw.decode("utf-8"))
            except ValueError:
                self._send_error(HTTPStatus.BAD_REQUEST, "Invalid JSON payload")
                return None
            if not isinstance(data, dict):
                self._send_error(HTTPStatus.BAD_REQUEST, "JSON payload must be an object")
                return None
            return data, {}
        if content_type == "application/x-www-form-urlencoded":
            return _flatten(parse_qs(raw.decode("utf-8"))), {}
        if content_type == "multipart/form-data":
            fields, files = parse_multipart(raw, full_content_type)
            return dict(fields), files
        return {}, {}

    def _send_response(self, response: Response) -> None:
        self.send_response(response.status)
        self._apply_security_headers()
        self.send_header("Content-Type", response.content_type)
        for name, value in response.headers.items():
            self.send_header(name, value)
        self.send_header("Content-Length", str(len(response.body)))
        self.end_headers()
        self.wfile.write(response.body)

    def _send_json(self, data: Any, status: HTTPStatus = HTTPStatus.OK) -> None:
        self._send_response(Response.json(data, status=int(status)))

    def _send_html(self, text: str, status: HTTPStatus = HTTPStatus.OK) -> None:
        payload = text.encode("utf-8")
        self.send_response(status)
        self._apply_security_headers(is_html=True)
        self.send_header("Content-Type", "text/html; charset=utf-8")
        self.send_header("Content-Length", str(len(payload)))
        self.end_headers()
        self.wfile.write(payload)

    def _send_error(self, status: HTTPStatus, message: str) -> None:
        self._send_json({"success": False, "error": message}, status=status)

    def _send_file(self, file_path: Path, content_type: str, *, attachment: bool = False) -> None:
        data = file_path.read_bytes()
        self.send_response(HTTPStatus.OK)
        self._apply_security_headers()
        self.send_header("Content-Type", content_type)
        if attachment:
            self.send_header("Content-Disposition", f"attachment; filename=\"{html.escape(file_path.name)}\"")
        self.send_header("Content-Length", str(len(data)))
        self.end_headers()
        self.wfile.write(data)

    def _serve_static(self, path: str) -> None:
        rel = path[len("/static/") :].lstrip("/")
        if not rel or ".." in rel:
            self._send_error(HTTPStatus.NOT_FOUND, "Not found")
            return
        base = STATIC_DIR.resolve()
        file_path = (base / rel).resolve()
        if base not in file_path.parents or not file_path.is_file():
            self._send_error(HTTPStatus.NOT_FOUND, "Not found")
            return
        if file_path.suffix == ".js":
            content_type = "text/javascript; charset=utf-8"
        elif file_path.suffix == ".css":
            content_type = "text/css; charset=utf-8"
        else:
            content_type = "application/octet-stream"
        self._send_file(file_path, content_type)

    def _serve_upload(self, name: str) -> None:
        try:
            file_path = stored_path(name, self.server_ctx.settings)
        except UploadError:
            self._send_error(HTTPStatus.NOT_FOUND, "Not found")
            return
        if not file_path.is_file():
            self._send_error(HTTPStatus.NOT_FOUND, "Not found")
            return
        content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        self._send_file(file_path, content_type, attachment=content_type not in _INLINE_UPLOAD_TYPES)

    def _apply_security_headers(self, *, is_html: bool = False) -> None:
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("X-Frame-Options", "DENY")
        self.send_header("Referrer-Policy", "no-referrer")
        self.send_header("Permissions-Policy", "interest-cohort=()")
        if is_html:
            self.send_header("Content-Security-Policy", _BASE_CSP)
            self.send_header("Cache-Control", "no-store")


def _flatten(parsed: Dict[str, list]) -> Dict[str, Any]:
    return {k: v[0] if len(v) == 1 else v for k, v in parsed.items()}


def run_server(app: AppSpec, settings: Settings | None = None, host: str = "127.0.0.1", port: int = 8000) -> None:
    ctx = GridServer(app, settings)
    try:
        Handler.server_ctx = ctx
        httpd = HTTPServer((host, port), Handler)
        print(f"gridcrud running on http://{host}:{port}")
        httpd.serve_forever()
    finally:
        ctx.close()
