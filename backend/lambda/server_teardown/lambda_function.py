"""server_teardown/lambda_function.py

EventBridge-triggered Lambda for ECS Task State Change events. When a game
server task reaches STOPPED, its world is synced to S3, its instance is
terminated and its history record is closed out as STOPPED.

Only tasks in the configured task group (TASK_GROUP) are handled; events for
other tasks in the cluster, and non-STOPPED transitions, are skipped.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from mcod_shared import config
from mcod_shared.config import logger
from mcod_shared.teardown import teardown_server

ECS_EVENT_SOURCE = "aws.ecs"
ECS_TASK_STATE_CHANGE = "ECS Task State Change"


def _task_group_matches(detail: Dict[str, Any]) -> bool:
    group = str(detail.get("group") or "")
    return group in (config.TASK_GROUP, f"family:{config.TASK_GROUP}")


def handler(event: Dict[str, Any], context: Any) -> Optional[Dict[str, Any]]:
    """EventBridge Lambda handler for stopped server tasks."""
    detail = event.get("detail") or {}
    if event.get("source") != ECS_EVENT_SOURCE or event.get("detail-type") != ECS_TASK_STATE_CHANGE:
        logger.info("[SKIP] Not an ECS task state change: %s / %s", event.get("source"), event.get("detail-type"))
        return None
    if detail.get("lastStatus") != "STOPPED":
        logger.info("[SKIP] Task %s lastStatus=%s", detail.get("taskArn"), detail.get("lastStatus"))
        return None
    if not _task_group_matches(detail):
        logger.info("[SKIP] Task %s is not in group %s", detail.get("taskArn"), config.TASK_GROUP)
        return None
    if not detail.get("containerInstanceArn"):
        logger.warning("[WARNING] Stopped task %s never had a container instance", detail.get("taskArn"))
        return None

    result = teardown_server(detail)
    return {
        "executionId": result["executionId"],
        "serverId": result.get("serverId"),
        "status": result["status"],
        "state": result["state"],
        "error": result.get("error"),
    }


lambda_handler = handler
