"""mcod_shared.http_utils — HTTP response helpers with CORS.

Standard response envelope used by the API Gateway facing Lambdas.
"""

from __future__ import annotations

import base64
import json
from typing import Any, Dict, Optional, Tuple

from mcod_shared.config import CORS_ORIGIN

CORS_HEADERS = {
    "Access-Control-Allow-Origin": CORS_ORIGIN,
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Allow-Methods": "*",
}


def _response(status_code: int, body: Any) -> Dict[str, Any]:
    """Build a standard API Gateway response with CORS headers."""
    return {
        "statusCode": status_code,
        "headers": {
            "Content-Type": "application/json",
            **CORS_HEADERS,
        },
        "body": json.dumps(body, default=str),
    }


def _preflight() -> Dict[str, Any]:
    """Empty 204 answer to a CORS preflight request."""
    return {"statusCode": 204, "headers": dict(CORS_HEADERS), "body": ""}


def _error(status_code: int, message: str, **extra: Any) -> Dict[str, Any]:
    """Build a standard error response.

    Args:
        status_code: HTTP status code.
        message: Human-readable error message.
        **extra: Additional fields merged into the response payload.
    """
    payload: Dict[str, Any] = {"message": message}
    if extra:
        payload.update(extra)
    return _response(status_code, payload)


def _parse_body(event: Dict[str, Any]) -> Any:
    """Parse JSON body from API Gateway event (handles base64)."""
    raw = event.get("body") or "{}"
    if event.get("isBase64Encoded"):
        raw = base64.b64decode(raw).decode("utf-8")
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return None


def _path_method(event: Dict[str, Any]) -> Tuple[str, str]:
    """Extract HTTP method and path from an API Gateway v1 or v2 event."""
    rc = event.get("requestContext") or {}
    http = rc.get("http") or {}
    method = (http.get("method") or event.get("httpMethod") or "GET").upper()
    path = http.get("path") or event.get("rawPath") or event.get("path") or "/"
    return method, path


def _authorized_user_id(event: Dict[str, Any]) -> Optional[str]:
    """Return the userId placed in the request context by the token authorizer."""
    authorizer = (event.get("requestContext") or {}).get("authorizer") or {}
    user_id = authorizer.get("userId") or (authorizer.get("lambda") or {}).get("userId")
    return str(user_id) if user_id else None
