"""mcod_shared.aws_clients — Cached AWS service clients.

One client per (service, region) is built on first use and reused for the
lifetime of the execution environment. Creation is guarded by a lock because
the provisioning stream handler runs workflows on worker threads; boto3
clients themselves are safe to share between threads once built.
"""

from __future__ import annotations

import threading
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.config import Config

from mcod_shared.config import REGION

# S3 deletes are batched by the caller, so fewer retries per request.
_RETRY_ATTEMPTS = {"s3": 3}
_DEFAULT_RETRY_ATTEMPTS = 5

_clients: Dict[Tuple[str, str], Any] = {}
_lock = threading.Lock()


def _client(service: str, region: Optional[str] = None):
    key = (service, region or REGION)
    client = _clients.get(key)
    if client is not None:
        return client
    with _lock:
        if key not in _clients:
            _clients[key] = boto3.client(
                service,
                region_name=key[1],
                config=Config(retries={
                    "max_attempts": _RETRY_ATTEMPTS.get(service, _DEFAULT_RETRY_ATTEMPTS),
                    "mode": "standard",
                }),
            )
        return _clients[key]


def _reset_clients() -> None:
    with _lock:
        _clients.clear()


def _get_ddb(region: Optional[str] = None):
    return _client("dynamodb", region)


def _get_ec2(region: Optional[str] = None):
    return _client("ec2", region)


def _get_ecs(region: Optional[str] = None):
    return _client("ecs", region)


def _get_ssm(region: Optional[str] = None):
    return _client("ssm", region)


def _get_s3(region: Optional[str] = None):
    return _client("s3", region)
