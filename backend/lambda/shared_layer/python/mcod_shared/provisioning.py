"""mcod_shared.provisioning — Provisioning orchestrator for a new server record.

State graph:

    LaunchInstance -> WaitForInstance -> CheckReadiness -> IsInstanceReady
        IsInstanceReady --ready--> PlaceWorkload -> RecordRunning -> End
        IsInstanceReady --not ready--> WaitForInstance  (bounded)
        any step failure --> ProvisioningFailed

The readiness loop is bounded by READINESS_MAX_ATTEMPTS polls and by
READINESS_TIMEOUT_SECONDS of wall-clock time (less when the caller passes a
smaller time budget), with the wait before each poll doubling from
READINESS_POLL_SECONDS up to READINESS_MAX_DELAY_SECONDS.

A failed execution never compensates. If an instance was launched it is left
running and an `instance_leaked` observability event names it.
"""

from __future__ import annotations

import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from mcod_shared import config
from mcod_shared.aws_clients import _get_ec2, _get_ecs, _get_ssm
from mcod_shared.config import logger
from mcod_shared.errors import InvalidStatusTransition, WorkflowFailed, _client_error_code
from mcod_shared.readiness import check_instance_readiness
from mcod_shared.records import claim_provisioning, mark_server_running
from mcod_shared.serialization import _emit_structured_observability
from mcod_shared.workflow import WORKFLOW_STATUS_FAILED, backoff_delay, run_workflow

COMPONENT = "server_provisioning"

# serverConfig keys passed to the game container, in order. Each becomes an
# upper-cased environment variable (allow_flight -> ALLOW_FLIGHT).
SERVER_ENV_FIELDS = (
    "type",
    "version",
    "allow_flight",
    "allow_nether",
    "difficulty",
    "generate_structures",
    "hardcore",
    "level_type",
    "max_players",
    "mode",
    "network_compression_threshold",
    "online_mode",
    "seed",
    "simulation_distance",
    "spawn_animals",
    "spawn_monsters",
    "spawn_npcs",
    "spawn_protection",
    "sync_chunk_writes",
    "view_distance",
)

READINESS_TIMEOUT_CAUSE = "instance did not become ready in time"


# ---------------------------------------------------------------------------
# Launch
# ---------------------------------------------------------------------------


def _instance_user_data() -> str:
    """Boot script: restore the user's world, then join the cluster."""
    data_dir = config.WORLD_DATA_DIR
    return "\n".join([
        "#!/bin/bash",
        "set -e",
        "systemctl mask ecs",
        f"mkdir -p /var/log/ecs /var/log/minecraft {data_dir}",
        'TOKEN=$(curl -s -X PUT "http://169.254.169.254/latest/api/token" '
        '-H "X-aws-ec2-metadata-token-ttl-seconds: 21600")',
        'USER_ID=$(curl -s -H "X-aws-ec2-metadata-token: $TOKEN" '
        "http://169.254.169.254/latest/meta-data/tags/instance/userId)",
        f"aws s3 sync s3://{config.WORLDS_BUCKET}/$USER_ID {data_dir} --only-show-errors --no-progress",
        f"echo ECS_CLUSTER={config.CLUSTER_NAME} >> /etc/ecs/ecs.config",
        "systemctl unmask ecs",
        "systemctl enable --now --no-block ecs",
        "",
    ])


def _resolve_image_id() -> str:
    if config.INSTANCE_IMAGE_ID:
        return config.INSTANCE_IMAGE_ID
    resp = _get_ssm().get_parameter(Name=config.INSTANCE_IMAGE_PARAMETER)
    return str(resp["Parameter"]["Value"])


def _launch_instance(ctx: Dict[str, Any]) -> str:
    params: Dict[str, Any] = {
        "InstanceType": config.INSTANCE_TYPE,
        "MinCount": 1,
        "MaxCount": 1,
        "UserData": _instance_user_data(),
        "TagSpecifications": [
            {"ResourceType": "instance", "Tags": [{"Key": config.TAG_USER_ID, "Value": str(ctx["userId"])}]},
        ],
        "MetadataOptions": {
            "HttpTokens": "required",
            "HttpEndpoint": "enabled",
            "InstanceMetadataTags": "enabled",
        },
    }
    if config.SUBNET_ID:
        params["SubnetId"] = config.SUBNET_ID
    if config.SECURITY_GROUP_IDS:
        params["SecurityGroupIds"] = list(config.SECURITY_GROUP_IDS)
    if config.INSTANCE_PROFILE_NAME:
        params["IamInstanceProfile"] = {"Name": config.INSTANCE_PROFILE_NAME}

    try:
        params["ImageId"] = _resolve_image_id()
        resp = _get_ec2().run_instances(**params)
    except (ClientError, BotoCoreError) as exc:
        raise WorkflowFailed("LaunchFailed", f"run_instances failed: {_client_error_code(exc) or exc}") from exc

    instances = resp.get("Instances") or []
    instance_id = str((instances[0] if instances else {}).get("InstanceId") or "")
    if not instance_id:
        raise WorkflowFailed("LaunchFailed", "run_instances returned no instance id")

    ctx["runInstanceResult"] = {"InstanceId": instance_id}
    ctx["readinessAttempts"] = 0
    timeout = float(config.READINESS_TIMEOUT_SECONDS)
    if ctx.get("timeBudgetSeconds") is not None:
        timeout = max(0.0, min(timeout, float(ctx["timeBudgetSeconds"])))
    ctx["readinessTimeoutSeconds"] = timeout
    ctx["readinessDeadline"] = time.time() + timeout
    logger.info("[INFO] Launched instance %s for server %s", instance_id, ctx.get("serverId"))
    return "WaitForInstance"


# ---------------------------------------------------------------------------
# Readiness loop
# ---------------------------------------------------------------------------


def _readiness_wait_seconds(ctx: Dict[str, Any]) -> float:
    return backoff_delay(
        int(ctx.get("readinessAttempts") or 0),
        config.READINESS_POLL_SECONDS,
        config.READINESS_MAX_DELAY_SECONDS,
    )


def _check_readiness(ctx: Dict[str, Any]) -> str:
    ctx["readinessAttempts"] = int(ctx.get("readinessAttempts") or 0) + 1
    instance_id = ctx["runInstanceResult"]["InstanceId"]
    try:
        ctx["checkerResult"] = check_instance_readiness(config.CLUSTER_NAME, instance_id)
    except (ClientError, BotoCoreError) as exc:
        # A failed lookup counts as one not-ready poll.
        code = _client_error_code(exc) or type(exc).__name__
        logger.warning("[WARNING] Readiness check for %s failed (%s); will retry", instance_id, code)
        ctx["checkerResult"] = {
            "instanceIsReady": False,
            "containerInstanceArn": None,
            "publicIp": None,
            "error": code,
        }
    return "IsInstanceReady"


def _is_instance_ready(ctx: Dict[str, Any]) -> str:
    ready = (ctx.get("checkerResult") or {}).get("instanceIsReady")
    if ready is True:
        return "PlaceWorkload"
    if ready is not False:
        raise WorkflowFailed("ReadinessIndeterminate", f"readiness check returned {ready!r}")
    attempts = int(ctx.get("readinessAttempts") or 0)
    if attempts >= config.READINESS_MAX_ATTEMPTS:
        raise WorkflowFailed("ReadinessTimeout", f"{READINESS_TIMEOUT_CAUSE} ({attempts} polls)")
    if time.time() >= float(ctx.get("readinessDeadline") or 0):
        raise WorkflowFailed("ReadinessTimeout", f"{READINESS_TIMEOUT_CAUSE} ({ctx.get('readinessTimeoutSeconds')}s)")
    return "WaitForInstance"


# ---------------------------------------------------------------------------
# Workload placement and record update
# ---------------------------------------------------------------------------


def _workload_environment(server_config: Dict[str, Any]) -> List[Dict[str, str]]:
    env = []
    for field in SERVER_ENV_FIELDS:
        value = server_config.get(field)
        if value is None:
            continue
        env.append({"name": field.upper(), "value": str(value)})
    return env


def _place_workload(ctx: Dict[str, Any]) -> str:
    instance_id = ctx["runInstanceResult"]["InstanceId"]
    try:
        resp = _get_ecs().run_task(
            cluster=config.CLUSTER_NAME,
            taskDefinition=config.TASK_DEFINITION_ARN,
            launchType="EC2",
            group=config.TASK_GROUP,
            count=1,
            placementConstraints=[{"type": "memberOf", "expression": f"ec2InstanceId == {instance_id}"}],
            overrides={
                "containerOverrides": [
                    {
                        "name": config.CONTAINER_NAME,
                        "environment": _workload_environment(ctx.get("serverConfig") or {}),
                    }
                ]
            },
            tags=[
                {"key": config.TAG_SERVER_ID, "value": str(ctx["serverId"])},
                {"key": config.TAG_STARTED_AT, "value": str(int(ctx["startedAt"]))},
            ],
        )
    except (ClientError, BotoCoreError) as exc:
        raise WorkflowFailed("PlacementFailed", f"run_task failed: {_client_error_code(exc) or exc}") from exc

    tasks = resp.get("tasks") or []
    if not tasks:
        reasons = ", ".join(str(f.get("reason")) for f in resp.get("failures") or []) or "no task started"
        raise WorkflowFailed("PlacementFailed", f"run_task placed nothing: {reasons}")

    task = tasks[0]
    ctx["runServerTaskResult"] = {"taskArn": task.get("taskArn"), "desiredStatus": task.get("desiredStatus")}
    logger.info("[INFO] Placed task %s on %s", task.get("taskArn"), instance_id)
    return "RecordRunning"


def _record_running(ctx: Dict[str, Any]) -> str:
    checker = ctx.get("checkerResult") or {}
    try:
        mark_server_running(
            ctx["serverId"],
            ctx["startedAt"],
            public_ip=checker.get("publicIp"),
            container_instance_arn=checker.get("containerInstanceArn"),
            task_arn=ctx["runServerTaskResult"]["taskArn"],
            instance_id=ctx["runInstanceResult"]["InstanceId"],
        )
    except InvalidStatusTransition as exc:
        raise WorkflowFailed("RecordUpdateRejected", str(exc)) from exc
    return "End"


PROVISIONING_WORKFLOW: Dict[str, Any] = {
    "name": COMPONENT,
    "start": "LaunchInstance",
    "failure_state": "ProvisioningFailed",
    "states": {
        "LaunchInstance": {"type": "task", "run": _launch_instance},
        "WaitForInstance": {"type": "wait", "seconds": _readiness_wait_seconds, "next": "CheckReadiness"},
        "CheckReadiness": {"type": "task", "run": _check_readiness},
        "IsInstanceReady": {"type": "choice", "choose": _is_instance_ready},
        "PlaceWorkload": {"type": "task", "run": _place_workload},
        "RecordRunning": {"type": "task", "run": _record_running},
        "ProvisioningFailed": {
            "type": "fail",
            "error": "ProvisioningFailed",
            "cause": "Server provisioning failed",
        },
        "End": {"type": "succeed"},
    },
}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def new_provisioning_context(record: Dict[str, Any], execution_id: Optional[str] = None) -> Dict[str, Any]:
    for field in ("serverId", "startedAt", "userId"):
        if record.get(field) in (None, ""):
            raise ValueError(f"server record missing '{field}'")
    return {
        "executionId": execution_id or str(uuid.uuid4()),
        "serverId": str(record["serverId"]),
        "startedAt": int(record["startedAt"]),
        "userId": str(record["userId"]),
        "serverConfig": dict(record.get("serverConfig") or {}),
    }


def provision_server(
    record: Dict[str, Any],
    *,
    sleep: Callable[[float], None] = time.sleep,
    execution_id: Optional[str] = None,
    time_budget_seconds: Optional[float] = None,
) -> Optional[Dict[str, Any]]:
    """Claim a PENDING record and run the provisioning workflow for it.

    `time_budget_seconds` caps the readiness deadline so a caller with a hard
    run-time limit still reaches ProvisioningFailed, and reports a launched
    instance, before it is stopped.

    Returns the final workflow context, or None when the record was already
    claimed by another execution or is no longer PENDING.
    """
    ctx = new_provisioning_context(record, execution_id)
    if time_budget_seconds is not None:
        ctx["timeBudgetSeconds"] = float(time_budget_seconds)
    if not claim_provisioning(ctx["serverId"], ctx["startedAt"], ctx["executionId"]):
        _emit_structured_observability(
            component=COMPONENT,
            event="duplicate_trigger_skipped",
            server_id=ctx["serverId"],
            execution_id=ctx["executionId"],
        )
        return None

    logger.info("[START] Provisioning server %s (execution %s)", ctx["serverId"], ctx["executionId"])
    result = run_workflow(PROVISIONING_WORKFLOW, ctx, sleep=sleep)

    if result["status"] == WORKFLOW_STATUS_FAILED:
        instance_id = (result.get("runInstanceResult") or {}).get("InstanceId")
        if instance_id:
            logger.error("[ERROR] Instance %s left running after failed provisioning of %s",
                         instance_id, ctx["serverId"])
            _emit_structured_observability(
                component=COMPONENT,
                event="instance_leaked",
                server_id=ctx["serverId"],
                execution_id=ctx["executionId"],
                state=result.get("state"),
                error_code=result.get("error"),
                extra={"instance_id": instance_id, "reason": result.get("cause")},
            )
    else:
        logger.info("[SUCCESS] Server %s RUNNING", ctx["serverId"])
    logger.info("[END] Provisioning server %s: %s", ctx["serverId"], result["status"])
    return result
