"""server_configuration/lambda_function.py

Saved game server settings for the authenticated user.

Routes:
    GET  /configuration   Return the caller's saved configuration (404 if none)
    PUT  /configuration   Validate and save the caller's configuration

The caller is identified by the userId the token authorizer placed in the
request context; requests without one get 401.
"""

from __future__ import annotations

from typing import Any, Dict

from botocore.exceptions import BotoCoreError, ClientError

from mcod_shared.config import logger
from mcod_shared.http_utils import _authorized_user_id, _error, _parse_body, _path_method, _preflight, _response
from mcod_shared.server_settings import get_saved_configuration, put_saved_configuration, validate_server_configuration


def _handle_get(user_id: str) -> Dict[str, Any]:
    configuration = get_saved_configuration(user_id)
    if configuration is None:
        return _error(404, "Not Found")
    return _response(200, configuration)


def _handle_put(event: Dict[str, Any], user_id: str) -> Dict[str, Any]:
    body = _parse_body(event)
    configuration, errors = validate_server_configuration(body)
    if errors:
        return _error(400, "Invalid configuration", details=errors)
    item = put_saved_configuration(user_id, configuration)
    return _response(200, {"configuration": configuration, "updatedAt": item["updatedAt"]})


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    if method == "OPTIONS":
        return _preflight()

    user_id = _authorized_user_id(event)
    if not user_id:
        return _error(401, "Unauthorized")

    try:
        if method == "GET":
            return _handle_get(user_id)
        if method == "PUT":
            return _handle_put(event, user_id)
        return _error(405, f"Method not allowed: {method} {path}")
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error on %s %s: %s", method, path, exc, exc_info=True)
        return _error(500, "Internal server error")


handler = lambda_handler
