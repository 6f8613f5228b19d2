from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from email.parser import BytesParser
from email.policy import default as email_default_policy
from pathlib import Path
from typing import Any, Dict, Iterable, Tuple

from gridcrud.config import Settings

log = logging.getLogger(__name__)

MAX_IMAGE_BYTES = 8 * 1024 * 1024
MAX_FILE_BYTES = 20 * 1024 * 1024

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "gif", "webp", "bmp"}
FILE_EXTENSIONS = IMAGE_EXTENSIONS | {
    "pdf",
    "txt",
    "csv",
    "json",
    "md",
    "doc",
    "docx",
    "xls",
    "xlsx",
    "ppt",
    "pptx",
    "odt",
    "ods",
    "zip",
}
# Never stored, whatever the allow-list says: these execute or render as markup.
DENIED_EXTENSIONS = {"php", "phtml", "phar", "cgi", "pl", "py", "sh", "bat", "exe", "js", "html", "htm", "svg", "xml"}

_STORED_NAME_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


class UploadError(ValueError):
    def __init__(self, message: str, status: int = 400) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class UploadedFile:
    field: str
    filename: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        name = Path(self.filename.replace("\\", "/")).name
        return name.rsplit(".", 1)[-1].lower() if "." in name else ""


def parse_multipart(raw: bytes, content_type: str) -> Tuple[Dict[str, str], Dict[str, UploadedFile]]:
    """Split a multipart/form-data body into plain fields and files."""
    fields: Dict[str, str] = {}
    files: Dict[str, UploadedFile] = {}
    if not raw:
        return fields, files
    # Parse multipart without the cgi module (removed in Python 3.13).
    msg = BytesParser(policy=email_default_policy).parsebytes(
        b"Content-Type: " + content_type.encode("utf-8") + b"\r\n\r\n" + raw
    )
    if not msg.is_multipart():
        return fields, files
    for part in msg.iter_parts():
        if part.get_content_disposition() != "form-data":
            continue
        name = part.get_param("name", header="content-disposition")
        if not name:
            continue
        filename = part.get_filename()
        if filename is not None:
            payload = part.get_payload(decode=True) or b""
            files[str(name)] = UploadedFile(
                field=str(name),
                filename=str(filename),
                content_type=part.get_content_type(),
                data=payload,
            )
            continue
        value = part.get_content()
        fields[str(name)] = value.decode("utf-8", errors="replace") if isinstance(value, bytes) else str(value)
    return fields, files


def check_upload(upload: UploadedFile, kind: str) -> str:
    if kind not in ("image", "file"):
        raise UploadError("kind must be image or file")
    ext = upload.extension
    if not ext:
        raise UploadError("File has no extension.")
    if ext in DENIED_EXTENSIONS:
        raise UploadError(f"File type not allowed: .{ext}")
    allowed = IMAGE_EXTENSIONS if kind == "image" else FILE_EXTENSIONS
    if ext not in allowed:
        raise UploadError(f"File type not allowed: .{ext}")
    limit = MAX_IMAGE_BYTES if kind == "image" else MAX_FILE_BYTES
    if upload.size == 0:
        raise UploadError("Uploaded file is empty.")
    if upload.size > limit:
        raise UploadError(f"File too large (max {limit // (1024 * 1024)} MB).", status=413)
    return ext


def store_upload(upload: UploadedFile, *, kind: str, table: str, settings: Settings, now: datetime | None = None) -> Dict[str, object]:
    """Write the file as `<table>_<YYYYmmdd_HHMMSS>.<ext>` under the upload dir."""
    ext = check_upload(upload, kind)
    target_dir = Path(settings.upload_dir)
    target_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{table}_{(now or datetime.now()).strftime('%Y%m%d_%H%M%S')}"
    name = f"{stem}.{ext}"
    counter = 1
    while (target_dir / name).exists():
        name = f"{stem}_{counter}.{ext}"
        counter += 1
    (target_dir / name).write_bytes(upload.data)
    log.info("Stored upload %s (%d bytes)", name, upload.size)
    return {"location": f"{settings.upload_url.rstrip('/')}/{name}", "name": name, "size": upload.size}


def stored_path(name: str, settings: Settings) -> Path:
    # Only bare stored names; anything with a path component is refused.
    base = str(name or "").replace("\\", "/").rsplit("/", 1)[-1]
    if not base or not _STORED_NAME_RE.match(base) or base.startswith("."):
        raise UploadError("Invalid file name.")
    root = Path(settings.upload_dir).resolve()
    path = (root / base).resolve()
    if path.parent != root:
        raise UploadError("Invalid file name.")
    return path


def file_metadata(name: str, settings: Settings) -> Dict[str, object]:
    path = stored_path(name, settings)
    if not path.is_file():
        raise UploadError("File not found.", status=404)
    return {"name": path.name, "size": path.stat().st_size, "location": f"{settings.upload_url.rstrip('/')}/{path.name}"}


def file_sizes(names: Iterable[Any], settings: Settings) -> Dict[str, int]:
    """Sizes of the stored files among names; invalid or missing names are left out."""
    sizes: Dict[str, int] = {}
    for name in names:
        if not isinstance(name, str):
            continue
        name = name.strip()
        if not name or name in sizes:
            continue
        try:
            path = stored_path(name, settings)
        except UploadError:
            continue
        if path.is_file():
            sizes[name] = path.stat().st_size
    return sizes
