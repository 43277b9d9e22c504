"""server_provisioning/lambda_function.py

DynamoDB Streams consumer on the server history table. Every INSERT is a new
PENDING server request; each one runs the provisioning workflow:

  - launch an ECS-optimized instance tagged with the requesting userId
  - poll (bounded, with backoff) until it joins the cluster
  - place the game server task on that instance
  - mark the record RUNNING with its public IP and task handles

MODIFY and REMOVE records are ignored. A record that another execution has
already claimed is skipped, so redelivered stream batches never start a
second server.

Records in one batch are provisioned concurrently (up to
PROVISIONING_MAX_WORKERS threads) so one slow instance never delays another
server. Each workflow gets the invocation's remaining run time, less
PROVISIONING_TIME_MARGIN_SECONDS, as its readiness budget.

Environment variables: see mcod_shared.config (CLUSTER_NAME, TASK_DEFINITION_ARN,
INSTANCE_*, SUBNET_ID, SECURITY_GROUP_IDS, READINESS_*, PROVISIONING_*).
"""

from __future__ import annotations

import json
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Optional

from mcod_shared import config
from mcod_shared.config import logger
from mcod_shared.provisioning import provision_server
from mcod_shared.serialization import _deserialize
from mcod_shared.workflow import WORKFLOW_STATUS_SUCCEEDED


def _time_budget(context: Any) -> Optional[float]:
    remaining = getattr(context, "get_remaining_time_in_millis", None)
    if remaining is None:
        return None
    return remaining() / 1000.0 - config.PROVISIONING_TIME_MARGIN_SECONDS


def _process_record(record: Dict[str, Any], context: Any = None) -> str:
    if record.get("eventName") != "INSERT":
        return "skipped"
    image = (record.get("dynamodb") or {}).get("NewImage")
    if not image:
        logger.warning("[WARNING] INSERT record without NewImage; skipping")
        return "skipped"

    server = _deserialize(image)
    try:
        result = provision_server(server, time_budget_seconds=_time_budget(context))
    except ValueError as exc:
        logger.error("[ERROR] Unusable server record: %s", exc)
        return "failed"
    if result is None:
        return "skipped"
    return "succeeded" if result["status"] == WORKFLOW_STATUS_SUCCEEDED else "failed"


def handler(event: Dict[str, Any], context: Any) -> Dict[str, int]:
    """DynamoDB Streams handler for new server records."""
    records = event.get("Records") or []
    logger.info("[START] server_provisioning: %d stream record(s)", len(records))

    summary = {"processed": 0, "succeeded": 0, "failed": 0, "skipped": 0}
    inserts: List[Dict[str, Any]] = []
    for record in records:
        summary["processed"] += 1
        if record.get("eventName") == "INSERT":
            inserts.append(record)
        else:
            summary["skipped"] += 1

    if inserts:
        workers = max(1, min(len(inserts), config.PROVISIONING_MAX_WORKERS))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = [pool.submit(_process_record, record, context) for record in inserts]
            for future in as_completed(futures):
                summary[future.result()] += 1

    logger.info("[END] server_provisioning: %s", json.dumps(summary, sort_keys=True))
    return summary


lambda_handler = handler
