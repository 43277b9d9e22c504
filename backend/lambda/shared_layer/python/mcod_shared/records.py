"""mcod_shared.records — Server lifecycle record persistence (DynamoDB).

One item per server lifecycle, keyed by `serverId` (partition) and
`startedAt` (sort, epoch ms). Records are created PENDING by request intake,
moved to RUNNING by the provisioning orchestrator and to STOPPED by the
teardown orchestrator. Records are never deleted.

Writers only ever touch their own fields through partial `SET` updates, and
status changes are conditional on the current status, so a regression
(e.g. STOPPED -> RUNNING) is rejected by the table itself.
"""

from __future__ import annotations

import secrets
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from mcod_shared.aws_clients import _get_ddb
from mcod_shared.config import (
    HISTORY_MAX_LIMIT,
    SERVER_HISTORY_TABLE,
    SERVER_ID_ALPHABET,
    SERVER_ID_LENGTH,
    SERVER_STATUS_PENDING,
    SERVER_STATUS_RUNNING,
    SERVER_STATUS_STOPPED,
    USER_ID_INDEX_NAME,
    _STATUS_TRANSITIONS,
    logger,
)
from mcod_shared.errors import InvalidStatusTransition, RecordAlreadyExists, _client_error_code
from mcod_shared.serialization import _deserialize, _epoch_ms, _serialize

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------


def _new_server_id() -> str:
    return "".join(secrets.choice(SERVER_ID_ALPHABET) for _ in range(SERVER_ID_LENGTH))


def _record_key(server_id: str, started_at: int) -> Dict[str, Any]:
    return {
        "serverId": {"S": str(server_id)},
        "startedAt": {"N": str(int(started_at))},
    }


def _update_parts(fields: Dict[str, Any]) -> Tuple[str, Dict[str, str], Dict[str, Any]]:
    """Build a `SET` expression with placeholder names/values for `fields`."""
    if not fields:
        raise ValueError("update requires at least one field")
    assignments: List[str] = []
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    for i, (name, value) in enumerate(sorted(fields.items())):
        names[f"#f{i}"] = name
        values[f":v{i}"] = _serialize(value)
        assignments.append(f"#f{i} = :v{i}")
    return "SET " + ", ".join(assignments), names, values


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------


def create_server_record(
    user_id: str,
    server_config: Dict[str, Any],
    *,
    server_id: Optional[str] = None,
    started_at: Optional[int] = None,
) -> Dict[str, Any]:
    """Create a PENDING lifecycle record; raises RecordAlreadyExists on key clash."""
    record = {
        "serverId": server_id or _new_server_id(),
        "startedAt": int(started_at if started_at is not None else _epoch_ms()),
        "endedAt": None,
        "publicIp": None,
        "serverConfig": dict(server_config),
        "serverStatus": SERVER_STATUS_PENDING,
        "userId": user_id,
        "taskArn": None,
        "instanceId": None,
        "containerInstanceArn": None,
    }
    try:
        _get_ddb().put_item(
            TableName=SERVER_HISTORY_TABLE,
            Item={k: _serialize(v) for k, v in record.items()},
            ConditionExpression="attribute_not_exists(serverId)",
        )
    except ClientError as exc:
        if _client_error_code(exc) == "ConditionalCheckFailedException":
            raise RecordAlreadyExists(f"server record {record['serverId']} already exists") from exc
        raise
    logger.info("[INFO] Created server record %s (user=%s)", record["serverId"], user_id)
    return record


def get_server_record(server_id: str, started_at: int) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=SERVER_HISTORY_TABLE,
        Key=_record_key(server_id, started_at),
        ConsistentRead=True,
    )
    item = resp.get("Item")
    return _deserialize(item) if item else None


def get_latest_server_record(server_id: str) -> Optional[Dict[str, Any]]:
    """Most recent lifecycle record for a serverId."""
    resp = _get_ddb().query(
        TableName=SERVER_HISTORY_TABLE,
        KeyConditionExpression="serverId = :pk",
        ExpressionAttributeValues={":pk": {"S": server_id}},
        Limit=1,
        ScanIndexForward=False,
        ConsistentRead=True,
    )
    items = resp.get("Items") or []
    return _deserialize(items[0]) if items else None


def query_server_records_by_user(user_id: str, limit: int) -> List[Dict[str, Any]]:
    """A user's lifecycle records, newest first, at most HISTORY_MAX_LIMIT."""
    resp = _get_ddb().query(
        TableName=SERVER_HISTORY_TABLE,
        IndexName=USER_ID_INDEX_NAME,
        KeyConditionExpression="userId = :uid",
        ExpressionAttributeValues={":uid": {"S": user_id}},
        Limit=max(1, min(int(limit), HISTORY_MAX_LIMIT)),
        ScanIndexForward=False,
    )
    return [_deserialize(item) for item in resp.get("Items") or []]


# ---------------------------------------------------------------------------
# Updates
# ---------------------------------------------------------------------------


def claim_provisioning(server_id: str, started_at: int, execution_id: str) -> bool:
    """Stamp the record with the provisioning execution that owns it.

    Succeeds only while the record is PENDING and unclaimed (or already
    claimed by this same execution). A second trigger for the same record
    gets False and must not provision anything.
    """
    try:
        _get_ddb().update_item(
            TableName=SERVER_HISTORY_TABLE,
            Key=_record_key(server_id, started_at),
            UpdateExpression="SET provisioningExecutionId = :eid",
            ConditionExpression=(
                "attribute_exists(serverId) AND serverStatus = :pending AND "
                "(attribute_not_exists(provisioningExecutionId) OR provisioningExecutionId = :eid)"
            ),
            ExpressionAttributeValues={
                ":eid": {"S": execution_id},
                ":pending": {"S": SERVER_STATUS_PENDING},
            },
        )
    except ClientError as exc:
        if _client_error_code(exc) == "ConditionalCheckFailedException":
            logger.info("[SKIP] Server %s/%s already claimed or no longer PENDING", server_id, started_at)
            return False
        raise
    return True


def transition_server_status(
    server_id: str,
    started_at: int,
    target_status: str,
    fields: Optional[Dict[str, Any]] = None,
) -> bool:
    """Move a record to `target_status` and set `fields` in one atomic update.

    Returns True when applied, False when the record was already in the
    target status (duplicate delivery). Raises InvalidStatusTransition for
    any other precondition failure.
    """
    if target_status not in _STATUS_TRANSITIONS:
        raise ValueError(f"Unknown server status '{target_status}'")
    allowed_from = sorted(prev for prev, nxt in _STATUS_TRANSITIONS.items() if target_status in nxt)
    if not allowed_from:
        raise ValueError(f"No status transitions lead to '{target_status}'")

    expr, names, values = _update_parts({**(fields or {}), "serverStatus": target_status})
    placeholders = []
    for i, status in enumerate(allowed_from):
        values[f":from{i}"] = {"S": status}
        placeholders.append(f":from{i}")
    names["#status"] = "serverStatus"
    condition = f"attribute_exists(serverId) AND #status IN ({', '.join(placeholders)})"

    try:
        _get_ddb().update_item(
            TableName=SERVER_HISTORY_TABLE,
            Key=_record_key(server_id, started_at),
            UpdateExpression=expr,
            ConditionExpression=condition,
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
        )
    except ClientError as exc:
        if _client_error_code(exc) != "ConditionalCheckFailedException":
            raise
        current = get_server_record(server_id, started_at)
        if current is None:
            raise InvalidStatusTransition(f"server record {server_id}/{started_at} not found") from exc
        if current.get("serverStatus") == target_status:
            logger.info("[SKIP] Server %s already %s", server_id, target_status)
            return False
        raise InvalidStatusTransition(
            f"Invalid status transition {current.get('serverStatus')} -> {target_status} for {server_id}"
        ) from exc
    logger.info("[INFO] Server %s/%s -> %s", server_id, started_at, target_status)
    return True


def mark_server_running(
    server_id: str,
    started_at: int,
    *,
    public_ip: Optional[str],
    container_instance_arn: str,
    task_arn: str,
    instance_id: str,
) -> bool:
    return transition_server_status(
        server_id,
        started_at,
        SERVER_STATUS_RUNNING,
        {
            "publicIp": public_ip,
            "containerInstanceArn": container_instance_arn,
            "taskArn": task_arn,
            "instanceId": instance_id,
        },
    )


def mark_server_stopped(server_id: str, started_at: int, ended_at: int) -> bool:
    started_at = int(started_at)
    ended_at = int(ended_at)
    if ended_at < started_at:
        logger.warning(
            "[WARNING] endedAt %d precedes startedAt %d for %s; clamping",
            ended_at,
            started_at,
            server_id,
        )
        ended_at = started_at
    return transition_server_status(server_id, started_at, SERVER_STATUS_STOPPED, {"endedAt": ended_at})
