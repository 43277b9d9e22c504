"""server_api/lambda_function.py

HTTP API for on-demand server lifecycles.

Routes:
    POST   /servers                     Request a new server (202, PENDING record)
    GET    /servers/{serverId}          Latest lifecycle record for a server
    GET    /servers?userId=&limit=&debug=   A user's server history, newest first
    POST   /servers/{serverId}/stop     Stop a running server (202)

New requests only create the PENDING record; provisioning is driven by the
table's stream (see server_provisioning). Stopping only stops the ECS task;
teardown is driven by the task's STOPPED event (see server_teardown).

When the token authorizer supplied a userId, callers may only act on their
own servers.
"""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from mcod_shared import config
from mcod_shared.aws_clients import _get_ecs
from mcod_shared.config import PUBLIC_RECORD_FIELDS, logger
from mcod_shared.errors import RecordAlreadyExists
from mcod_shared.http_utils import _authorized_user_id, _error, _parse_body, _path_method, _preflight, _response
from mcod_shared.records import create_server_record, get_latest_server_record, query_server_records_by_user
from mcod_shared.server_settings import get_saved_configuration

_SERVER_RE = re.compile(r"^/servers/([0-9a-z]+)$")
_STOP_RE = re.compile(r"^/servers/([0-9a-z]+)/stop$")

# Attempts at drawing a fresh serverId when the conditional create collides.
_CREATE_ATTEMPTS = 3


def _public(record: Dict[str, Any], debug: bool) -> Dict[str, Any]:
    if debug:
        return record
    return {field: record.get(field) for field in PUBLIC_RECORD_FIELDS}


def _is_debug(params: Dict[str, Any]) -> bool:
    return str(params.get("debug") or "").lower() == "true"


def _validate_request(body: Any) -> List[str]:
    if not isinstance(body, dict):
        return ["request body must be a JSON object"]
    errors = []
    if not isinstance(body.get("userId"), str) or not body["userId"]:
        errors.append("userId is required")
    version = body.get("version")
    if not isinstance(version, str) or not 2 <= len(version) <= 100:
        errors.append("version must be a string of 2-100 characters")
    server_type = body.get("type")
    if not isinstance(server_type, str) or not 2 <= len(server_type) <= 500:
        errors.append("type must be a string of 2-500 characters")
    return errors


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------


def _handle_create(event: Dict[str, Any]) -> Dict[str, Any]:
    body = _parse_body(event)
    caller = _authorized_user_id(event)
    if isinstance(body, dict) and caller and not body.get("userId"):
        body["userId"] = caller

    errors = _validate_request(body)
    if errors:
        return _error(400, "Invalid request", details=errors)
    if caller and body["userId"] != caller:
        return _error(403, "Cannot request a server for another user")

    server_config: Dict[str, Any] = dict(get_saved_configuration(body["userId"]) or {})
    server_config.update({"version": body["version"], "type": body["type"]})

    for attempt in range(1, _CREATE_ATTEMPTS + 1):
        try:
            record = create_server_record(body["userId"], server_config)
            break
        except RecordAlreadyExists:
            logger.warning("[WARNING] serverId collision (attempt %d/%d)", attempt, _CREATE_ATTEMPTS)
    else:
        return _error(503, "Could not allocate a server id; try again")

    return _response(202, {
        "serverId": record["serverId"],
        "serverStatus": record["serverStatus"],
        "location": f"/servers/{record['serverId']}",
    })


def _owned_latest(event: Dict[str, Any], server_id: str) -> Optional[Dict[str, Any]]:
    record = get_latest_server_record(server_id)
    caller = _authorized_user_id(event)
    if record and caller and record.get("userId") != caller:
        return None
    return record


def _handle_status(event: Dict[str, Any], server_id: str) -> Dict[str, Any]:
    record = _owned_latest(event, server_id)
    if not record:
        return _error(404, f"Server with serverId {server_id} not found")
    params = event.get("queryStringParameters") or {}
    return _response(200, _public(record, _is_debug(params)))


def _handle_history(event: Dict[str, Any]) -> Dict[str, Any]:
    params = event.get("queryStringParameters") or {}
    user_id = params.get("userId") or _authorized_user_id(event)
    if not user_id:
        return _error(400, "userId is required as query parameter")
    caller = _authorized_user_id(event)
    if caller and user_id != caller:
        return _error(403, "Cannot read another user's history")

    limit = config.HISTORY_DEFAULT_LIMIT
    if params.get("limit"):
        try:
            limit = int(params["limit"])
        except ValueError:
            return _error(400, "limit must be an integer")
        if limit < 1:
            return _error(400, "limit must be positive")

    debug = _is_debug(params)
    records = query_server_records_by_user(user_id, limit)
    return _response(200, [_public(record, debug) for record in records])


def _handle_stop(event: Dict[str, Any], server_id: str) -> Dict[str, Any]:
    record = _owned_latest(event, server_id)
    if not record:
        return _error(404, f"Server with serverId {server_id} not found")

    if not record.get("endedAt"):
        task_arn = record.get("taskArn")
        if not task_arn:
            return _error(409, f"Server {server_id} has no running task yet", serverStatus=record.get("serverStatus"))
        _get_ecs().stop_task(cluster=config.CLUSTER_NAME, task=task_arn, reason="Requested by user")
        logger.info("[INFO] Stop requested for server %s (task %s)", server_id, task_arn)
    else:
        logger.info("[SKIP] Server %s already ended", server_id)

    return _response(202, {"location": f"/servers/{server_id}"})


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    path = path.rstrip("/") or "/"

    if method == "OPTIONS":
        return _preflight()

    logger.info("[INFO] route method=%s path=%s", method, path)
    try:
        if method == "POST" and path == "/servers":
            return _handle_create(event)
        if method == "GET" and path == "/servers":
            return _handle_history(event)
        match = _SERVER_RE.match(path)
        if method == "GET" and match:
            return _handle_status(event, match.group(1))
        match = _STOP_RE.match(path)
        if method == "POST" and match:
            return _handle_stop(event, match.group(1))
        return _error(404, f"Unsupported route: {method} {path}")
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] AWS error on %s %s: %s", method, path, exc, exc_info=True)
        return _error(500, "Internal server error")
    except Exception as exc:
        logger.error("[ERROR] Unexpected error on %s %s: %s", method, path, exc, exc_info=True)
        return _error(500, "Internal server error")


handler = lambda_handler
