"""JSON response helpers shared by the HTTP handlers."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from werkzeug.wrappers import Response

JSON_CONTENT_TYPE = "application/json"


def _encode_default(value: Any) -> Any:
    if isinstance(value, datetime):
        if value.tzinfo is None or value.utcoffset() == timezone.utc.utcoffset(None):
            return value.replace(tzinfo=None).isoformat(timespec="seconds") + "Z"
        return value.isoformat()
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f"cannot encode {type(value).__name__} as JSON")


def json_response(status: int, data: Any) -> Response:
    """Return a response whose body is data encoded as JSON."""
    body = json.dumps(data, sort_keys=True, default=_encode_default) + "\n"
    return Response(body, status=status, content_type=JSON_CONTENT_TYPE)


def error_response(status: int, code: str, message: str) -> Response:
    """Return a JSON error response in the API's error envelope."""
    return json_response(status, {"error": {"code": code, "message": message}})


def health_response() -> Response:
    """Return the health check response."""
    return json_response(200, {"status": "ok"})