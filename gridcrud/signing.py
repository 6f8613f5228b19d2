from __future__ import annotations

import base64
import hashlib
import hmac
import json
from typing import Any, Dict


class SignatureError(ValueError):
    pass


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(text: str) -> bytes:
    padding = "=" * (-len(text) % 4)
    return base64.urlsafe_b64decode(text + padding)


def _signature(payload: str, secret_key: str) -> str:
    digest = hmac.new(secret_key.encode("utf-8"), payload.encode("ascii"), hashlib.sha256).digest()
    return _b64encode(digest)


def sign_config(data: Dict[str, Any], secret_key: str) -> str:
    """Serialize a configuration dict into `<payload>.<signature>`."""
    raw = json.dumps(data, ensure_ascii=False, separators=(",", ":"), sort_keys=True)
    payload = _b64encode(raw.encode("utf-8"))
    return f"{payload}.{_signature(payload, secret_key)}"


def load_config(token: Any, secret_key: str) -> Dict[str, Any]:
    if not isinstance(token, str) or not token.strip():
        raise SignatureError("Missing grid configuration.")
    payload, sep, signature = token.strip().partition(".")
    if not sep or not payload or not signature:
        raise SignatureError("Malformed grid configuration.")
    if not hmac.compare_digest(signature, _signature(payload, secret_key)):
        raise SignatureError("Grid configuration signature mismatch.")
    try:
        data = json.loads(_b64decode(payload).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise SignatureError("Grid configuration could not be decoded.") from exc
    if not isinstance(data, dict):
        raise SignatureError("Grid configuration must be an object.")
    return data
