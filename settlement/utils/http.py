from __future__ import annotations

import secrets
from functools import wraps
from typing import Any, Dict, Optional, Tuple

from flask import Response, current_app, jsonify, request

from settlement.errors import ValidationError


def json_ok(payload: Dict[str, Any], status: int = 200) -> Tuple[Response, int]:
    body = {"ok": True}
    body.update(payload)
    return jsonify(body), int(status)


def json_error(code: str, message: str, status: int) -> Tuple[Response, int]:
    return jsonify({"ok": False, "error": code, "message": message}), int(status)


def json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("JSON body must be an object")
    return data


def bearer_token() -> str:
    auth = (request.headers.get("Authorization") or "").strip()
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return ""


def bearer_gate(config_key: str) -> Optional[Tuple[Response, int]]:
    """
    before_request helper: 401 unless the bearer token matches app.config[config_key].
    An empty configured token leaves the gate open (local/dev).
    """
    expected = (current_app.config.get(config_key) or "").strip()
    if not expected:
        return None
    got = bearer_token()
    if not got or not secrets.compare_digest(expected, got):
        return json_error("unauthorized", "missing or invalid bearer token", 401)
    return None


def actor() -> Optional[str]:
    """Who is acting, as reported by the calling back-office (X-Actor header)."""
    v = (request.headers.get("X-Actor") or "").strip()
    return v[:80] or None


def int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ValidationError(f"query parameter {name} must be an integer") from e


def require_token(config_key: str):
    """Per-view variant of bearer_gate for blueprints that are otherwise open."""

    def deco(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            denied = bearer_gate(config_key)
            if denied is not None:
                return denied
            return fn(*args, **kwargs)

        return wrapper

    return deco
