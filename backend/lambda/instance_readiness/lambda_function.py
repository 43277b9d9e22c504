"""instance_readiness/lambda_function.py

Standalone readiness probe: has the given EC2 instance registered with the
ECS cluster yet?

Input:  {"clusterName": "<cluster>", "ec2InstanceId": "i-..."}
Output: {"instanceIsReady": bool, "containerInstanceArn": str|null, "publicIp": str|null}

Invalid input raises ValueError; AWS lookup errors propagate so the caller
can decide whether to retry.
"""

from __future__ import annotations

import re
from typing import Any, Dict

from mcod_shared.config import logger
from mcod_shared.readiness import check_instance_readiness

_INSTANCE_ID_RE = re.compile(r"^i-[0-9a-f]{8,17}$")


def _validate(event: Dict[str, Any]) -> Dict[str, str]:
    cluster = event.get("clusterName")
    instance_id = event.get("ec2InstanceId")
    if not isinstance(cluster, str) or not cluster.strip():
        raise ValueError("clusterName is required")
    if not isinstance(instance_id, str) or not _INSTANCE_ID_RE.match(instance_id):
        raise ValueError(f"ec2InstanceId is invalid: {instance_id!r}")
    return {"clusterName": cluster.strip(), "ec2InstanceId": instance_id}


def handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    params = _validate(event or {})
    result = check_instance_readiness(params["clusterName"], params["ec2InstanceId"])
    logger.info("[INFO] readiness %s in %s: %s",
                params["ec2InstanceId"], params["clusterName"], result["instanceIsReady"])
    return result


lambda_handler = handler
