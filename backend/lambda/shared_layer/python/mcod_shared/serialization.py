"""mcod_shared.serialization — DynamoDB serialization, timestamps, observability.

Lifecycle instants (`startedAt`, `endedAt`) are Unix epoch milliseconds,
stored as DynamoDB numbers.
"""

from __future__ import annotations

import datetime as dt
import json
import time
from decimal import Decimal
from typing import Any, Dict, Optional

from boto3.dynamodb.types import TypeDeserializer, TypeSerializer

from mcod_shared.config import logger

_SER = TypeSerializer()
_DESER = TypeDeserializer()


def _serialize(value: Any) -> Any:
    """Serialize a Python value for DynamoDB."""
    if isinstance(value, float):
        value = Decimal(str(value))
    if isinstance(value, dict):
        return {"M": {k: _serialize(v) for k, v in value.items()}}
    return _SER.serialize(value)


def _deserialize(item: Dict[str, Any]) -> Dict[str, Any]:
    """Deserialize a DynamoDB item to a plain Python dict."""
    return {k: _plain(_DESER.deserialize(v)) for k, v in item.items()}


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return int(value) if value == int(value) else float(value)
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def _now_z() -> str:
    """Current UTC timestamp in ISO 8601 format with Z suffix."""
    return dt.datetime.now(dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _epoch_ms() -> int:
    """Current Unix epoch in milliseconds."""
    return int(time.time() * 1000)


def _emit_structured_observability(
    *,
    component: str,
    event: str,
    server_id: Optional[str] = None,
    execution_id: Optional[str] = None,
    state: Optional[str] = None,
    latency_ms: Optional[int] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "timestamp": _now_z(),
        "component": component,
        "event": event,
        "server_id": str(server_id or ""),
        "execution_id": str(execution_id or ""),
        "state": str(state or ""),
        "latency_ms": int(max(0, latency_ms or 0)),
        "error_code": str(error_code or ""),
    }
    if extra:
        payload.update(extra)
    logger.info("[OBSERVABILITY] %s", json.dumps(payload, sort_keys=True, default=str))
