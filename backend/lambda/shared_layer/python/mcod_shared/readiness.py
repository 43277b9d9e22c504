"""mcod_shared.readiness — Has a launched instance joined the container cluster?

Pure query: lists the cluster's ACTIVE container instances, matches the one
backed by the given EC2 instance and resolves its public address. Lookup
failures propagate to the caller; they are never reported as ready.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from mcod_shared.aws_clients import _get_ec2, _get_ecs
from mcod_shared.config import logger

# DescribeContainerInstances accepts at most 100 ARNs per call.
_DESCRIBE_BATCH = 100


def _not_ready() -> Dict[str, Any]:
    return {"instanceIsReady": False, "containerInstanceArn": None, "publicIp": None}


def _list_active_container_instances(cluster: str) -> List[str]:
    ecs = _get_ecs()
    arns: List[str] = []
    kwargs: Dict[str, Any] = {"cluster": cluster, "status": "ACTIVE"}
    while True:
        resp = ecs.list_container_instances(**kwargs)
        arns.extend(resp.get("containerInstanceArns") or [])
        token = resp.get("nextToken")
        if not token:
            return arns
        kwargs["nextToken"] = token


def _resolve_public_ip(instance_id: str) -> Optional[str]:
    """Primary public address, else the first interface's association, else None."""
    resp = _get_ec2().describe_instances(InstanceIds=[instance_id])
    for reservation in resp.get("Reservations") or []:
        for instance in reservation.get("Instances") or []:
            if instance.get("PublicIpAddress"):
                return str(instance["PublicIpAddress"])
            interfaces = instance.get("NetworkInterfaces") or []
            if interfaces:
                ip = (interfaces[0].get("Association") or {}).get("PublicIp")
                if ip:
                    return str(ip)
    return None


def check_instance_readiness(cluster: str, instance_id: str) -> Dict[str, Any]:
    """Return a ReadinessResult for `instance_id` in `cluster`.

    {"instanceIsReady": bool, "containerInstanceArn": str|None, "publicIp": str|None}
    """
    arns = _list_active_container_instances(cluster)
    if not arns:
        logger.info("[INFO] No active container instances in %s yet", cluster)
        return _not_ready()

    ecs = _get_ecs()
    for offset in range(0, len(arns), _DESCRIBE_BATCH):
        resp = ecs.describe_container_instances(
            cluster=cluster,
            containerInstances=arns[offset:offset + _DESCRIBE_BATCH],
        )
        for container_instance in resp.get("containerInstances") or []:
            if container_instance.get("ec2InstanceId") != instance_id:
                continue
            return {
                "instanceIsReady": True,
                "containerInstanceArn": container_instance.get("containerInstanceArn"),
                "publicIp": _resolve_public_ip(instance_id),
            }

    logger.info("[INFO] Instance %s has not registered with %s yet", instance_id, cluster)
    return _not_ready()
