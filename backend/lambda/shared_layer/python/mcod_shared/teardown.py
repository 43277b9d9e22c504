"""mcod_shared.teardown — Teardown orchestrator for a stopped server workload.

State graph:

    ResolveCorrelationTags -> ResolveInstance -> SyncStorage -> WaitForSync
        -> GetSyncStatus -> IsSyncComplete
        IsSyncComplete --Success--> Reclaim -> CloseRecord -> End
        IsSyncComplete --Pending/InProgress/Delayed--> WaitForSync  (bounded)
        IsSyncComplete --anything else--> SyncFailed
        other step failures --> TeardownFailed

The instance is only terminated once the world sync is observed as Success,
and the record only becomes STOPPED after the instance is terminated.
Neither failure state reclaims the instance.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from mcod_shared import config
from mcod_shared.aws_clients import _get_ec2, _get_ecs, _get_ssm
from mcod_shared.config import logger
from mcod_shared.errors import InvalidStatusTransition, WorkflowFailed, _client_error_code
from mcod_shared.records import get_server_record, mark_server_stopped
from mcod_shared.serialization import _emit_structured_observability, _epoch_ms
from mcod_shared.workflow import WORKFLOW_STATUS_FAILED, run_workflow

COMPONENT = "server_teardown"

SYNC_FAILED_STATE = "SyncFailed"


def _sync_script() -> str:
    """Mirror the world directory to the instance owner's prefix."""
    return "\n".join([
        "set -e",
        'TOKEN=$(curl -s -X PUT "http://169.254.169.254/latest/api/token" '
        '-H "X-aws-ec2-metadata-token-ttl-seconds: 21600")',
        'USER_ID=$(curl -s -f -H "X-aws-ec2-metadata-token: $TOKEN" '
        "http://169.254.169.254/latest/meta-data/tags/instance/userId)",
        # An empty prefix would mirror (and delete) at the bucket root.
        'test -n "$USER_ID"',
        f"aws s3 sync {config.WORLD_DATA_DIR} s3://{config.WORLDS_BUCKET}/$USER_ID "
        "--delete --only-show-errors --no-progress",
    ])


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


def _tag_value(tags, key: str) -> Optional[str]:
    for tag in tags or []:
        if tag.get("key") == key:
            return tag.get("value")
    return None


def _resolve_correlation_tags(ctx: Dict[str, Any]) -> str:
    detail = ctx["detail"]
    try:
        resp = _get_ecs().describe_tasks(
            cluster=detail["clusterArn"],
            tasks=[detail["taskArn"]],
            include=["TAGS"],
        )
    except (ClientError, BotoCoreError) as exc:
        raise WorkflowFailed("ResolveTagsFailed", f"describe_tasks failed: {_client_error_code(exc) or exc}") from exc

    tasks = resp.get("tasks") or []
    tags = tasks[0].get("tags") if tasks else []
    server_id = _tag_value(tags, config.TAG_SERVER_ID)
    started_at_raw = _tag_value(tags, config.TAG_STARTED_AT)
    if not server_id or not started_at_raw:
        raise WorkflowFailed("MissingCorrelationTags", f"task {detail['taskArn']} has no serverId/startedAt tags")
    try:
        started_at = int(started_at_raw)
    except ValueError:
        raise WorkflowFailed("MissingCorrelationTags", f"task startedAt tag {started_at_raw!r} is not an integer")

    ctx["serverId"] = server_id
    ctx["startedAt"] = started_at

    record = get_server_record(server_id, started_at)
    if record is None:
        raise WorkflowFailed("RecordNotFound", f"no server record {server_id}/{started_at}")
    if record.get("serverStatus") == config.SERVER_STATUS_STOPPED:
        logger.info("[SKIP] Server %s already STOPPED; nothing to tear down", server_id)
        ctx["alreadyStopped"] = True
        return "End"
    return "ResolveInstance"


def _resolve_instance(ctx: Dict[str, Any]) -> str:
    detail = ctx["detail"]
    try:
        resp = _get_ecs().describe_container_instances(
            cluster=detail["clusterArn"],
            containerInstances=[detail["containerInstanceArn"]],
        )
    except (ClientError, BotoCoreError) as exc:
        raise WorkflowFailed(
            "ResolveInstanceFailed",
            f"describe_container_instances failed: {_client_error_code(exc) or exc}",
        ) from exc

    container_instances = resp.get("containerInstances") or []
    instance_id = (container_instances[0] if container_instances else {}).get("ec2InstanceId")
    if not instance_id:
        raise WorkflowFailed("ResolveInstanceFailed", f"no instance behind {detail['containerInstanceArn']}")
    ctx["instanceId"] = instance_id
    ctx["syncAttempts"] = 0
    return "SyncStorage"


# ---------------------------------------------------------------------------
# World sync
# ---------------------------------------------------------------------------


def _sync_storage(ctx: Dict[str, Any]) -> str:
    try:
        resp = _get_ssm().send_command(
            DocumentName=config.SSM_DOCUMENT_NAME,
            InstanceIds=[ctx["instanceId"]],
            Parameters={
                "commands": [_sync_script()],
                "executionTimeout": [str(config.SYNC_COMMAND_TIMEOUT_SECONDS)],
            },
            Comment=f"world sync for server {ctx.get('serverId')}",
        )
    except (ClientError, BotoCoreError) as exc:
        raise WorkflowFailed(
            "SyncFailed",
            f"send_command failed: {_client_error_code(exc) or exc}",
            state=SYNC_FAILED_STATE,
        ) from exc
    ctx["syncCommandId"] = resp["Command"]["CommandId"]
    logger.info("[INFO] World sync %s issued on %s", ctx["syncCommandId"], ctx["instanceId"])
    return "WaitForSync"


def _get_sync_status(ctx: Dict[str, Any]) -> str:
    ctx["syncAttempts"] = int(ctx.get("syncAttempts") or 0) + 1
    try:
        resp = _get_ssm().get_command_invocation(
            CommandId=ctx["syncCommandId"],
            InstanceId=ctx["instanceId"],
        )
        ctx["syncStatus"] = str(resp.get("Status") or "")
    except (ClientError, BotoCoreError) as exc:
        # The invocation is not visible for a moment after send_command.
        if _client_error_code(exc) == "InvocationDoesNotExist":
            ctx["syncStatus"] = "Pending"
        else:
            raise WorkflowFailed(
                "SyncStatusUnavailable",
                f"get_command_invocation failed: {_client_error_code(exc) or exc}",
                state=SYNC_FAILED_STATE,
            ) from exc
    return "IsSyncComplete"


def _is_sync_complete(ctx: Dict[str, Any]) -> str:
    status = ctx.get("syncStatus")
    if status == config.SYNC_STATUS_SUCCESS:
        return "Reclaim"
    if status in config.SYNC_IN_FLIGHT_STATUSES:
        attempts = int(ctx.get("syncAttempts") or 0)
        if attempts >= config.SYNC_MAX_ATTEMPTS:
            raise WorkflowFailed(
                "SyncTimedOut",
                f"world sync still {status} after {attempts} polls",
                state=SYNC_FAILED_STATE,
            )
        return "WaitForSync"
    raise WorkflowFailed("SyncFailed", f"world sync ended with status {status!r}", state=SYNC_FAILED_STATE)


# ---------------------------------------------------------------------------
# Reclaim and close
# ---------------------------------------------------------------------------


def _reclaim(ctx: Dict[str, Any]) -> str:
    instance_id = ctx["instanceId"]
    try:
        _get_ec2().terminate_instances(InstanceIds=[instance_id])
        ctx["reclaimResult"] = "terminated"
    except (ClientError, BotoCoreError) as exc:
        if _client_error_code(exc) != "InvalidInstanceID.NotFound":
            raise WorkflowFailed("ReclaimFailed", f"terminate_instances failed: {_client_error_code(exc) or exc}") from exc
        ctx["reclaimResult"] = "already_terminated"
    logger.info("[INFO] Instance %s %s", instance_id, ctx["reclaimResult"])
    return "CloseRecord"


def _close_record(ctx: Dict[str, Any]) -> str:
    ctx["currentTime"] = _epoch_ms()
    try:
        mark_server_stopped(ctx["serverId"], ctx["startedAt"], ctx["currentTime"])
    except InvalidStatusTransition as exc:
        raise WorkflowFailed("RecordUpdateRejected", str(exc)) from exc
    return "End"


TEARDOWN_WORKFLOW: Dict[str, Any] = {
    "name": COMPONENT,
    "start": "ResolveCorrelationTags",
    "failure_state": "TeardownFailed",
    "states": {
        "ResolveCorrelationTags": {"type": "task", "run": _resolve_correlation_tags},
        "ResolveInstance": {"type": "task", "run": _resolve_instance},
        "SyncStorage": {"type": "task", "run": _sync_storage},
        "WaitForSync": {"type": "wait", "seconds": lambda ctx: config.SYNC_POLL_SECONDS, "next": "GetSyncStatus"},
        "GetSyncStatus": {"type": "task", "run": _get_sync_status},
        "IsSyncComplete": {"type": "choice", "choose": _is_sync_complete},
        "Reclaim": {"type": "task", "run": _reclaim},
        "CloseRecord": {"type": "task", "run": _close_record},
        SYNC_FAILED_STATE: {
            "type": "fail",
            "error": "SyncFailed",
            "cause": "The world sync command did not return Success.",
        },
        "TeardownFailed": {"type": "fail", "error": "TeardownFailed", "cause": "Server teardown failed"},
        "End": {"type": "succeed"},
    },
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def new_teardown_context(detail: Dict[str, Any], execution_id: Optional[str] = None) -> Dict[str, Any]:
    for field in ("clusterArn", "containerInstanceArn", "taskArn"):
        if not detail.get(field):
            raise ValueError(f"stop notification missing '{field}'")
    return {
        "executionId": execution_id or str(uuid.uuid4()),
        "detail": {
            "clusterArn": detail["clusterArn"],
            "containerInstanceArn": detail["containerInstanceArn"],
            "taskArn": detail["taskArn"],
        },
    }


def teardown_server(
    detail: Dict[str, Any],
    *,
    sleep: Callable[[float], None] = time.sleep,
    execution_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Sync, reclaim and close out the server behind a stopped task."""
    ctx = new_teardown_context(detail, execution_id)
    logger.info("[START] Teardown for task %s (execution %s)", ctx["detail"]["taskArn"], ctx["executionId"])
    result = run_workflow(TEARDOWN_WORKFLOW, ctx, sleep=sleep)

    if result["status"] == WORKFLOW_STATUS_FAILED and result.get("instanceId") and not result.get("reclaimResult"):
        logger.error("[ERROR] Instance %s left running after failed teardown of %s",
                     result["instanceId"], result.get("serverId"))
        _emit_structured_observability(
            component=COMPONENT,
            event="instance_leaked",
            server_id=result.get("serverId"),
            execution_id=ctx["executionId"],
            state=result.get("state"),
            error_code=result.get("error"),
            extra={"instance_id": result["instanceId"], "reason": result.get("cause")},
        )
    logger.info("[END] Teardown for server %s: %s", result.get("serverId"), result["status"])
    return result
