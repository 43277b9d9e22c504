"""server_storage/lambda_function.py

DELETE /storage: remove the authenticated user's saved worlds.

Every object under `<userId>/` in WORLDS_BUCKET is deleted, in batches of
1000 keys (the DeleteObjects limit). The prefix placeholder object itself,
if any, is left alone.
"""

from __future__ import annotations

from typing import Any, Dict, List

from botocore.exceptions import BotoCoreError, ClientError

from mcod_shared import config
from mcod_shared.aws_clients import _get_s3
from mcod_shared.config import logger
from mcod_shared.http_utils import _authorized_user_id, _error, _path_method, _preflight, _response

MAX_DELETE = 1000


def _list_keys(prefix: str) -> List[str]:
    s3 = _get_s3()
    keys: List[str] = []
    kwargs: Dict[str, Any] = {"Bucket": config.WORLDS_BUCKET, "Prefix": prefix}
    while True:
        resp = s3.list_objects_v2(**kwargs)
        for obj in resp.get("Contents") or []:
            key = obj.get("Key")
            if key and key != prefix:
                keys.append(key)
        if not resp.get("IsTruncated"):
            return keys
        kwargs["ContinuationToken"] = resp["NextContinuationToken"]


def _delete_prefix(prefix: str) -> Dict[str, int]:
    keys = _list_keys(prefix)
    s3 = _get_s3()
    deleted = 0
    errors = 0
    for offset in range(0, len(keys), MAX_DELETE):
        chunk = keys[offset:offset + MAX_DELETE]
        resp = s3.delete_objects(
            Bucket=config.WORLDS_BUCKET,
            Delete={"Objects": [{"Key": key} for key in chunk], "Quiet": False},
        )
        deleted += len(resp.get("Deleted") or [])
        for err in resp.get("Errors") or []:
            errors += 1
            logger.warning("[WARNING] Could not delete %s: %s", err.get("Key"), err.get("Message"))
    return {"found": len(keys), "deleted": deleted, "errors": errors}


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    method, path = _path_method(event)
    if method == "OPTIONS":
        return _preflight()
    if method != "DELETE":
        return _error(405, f"Method not allowed: {method} {path}")

    user_id = _authorized_user_id(event)
    if not user_id:
        return _error(401, "Unauthorized")

    prefix = f"{user_id}/"
    try:
        result = _delete_prefix(prefix)
    except (ClientError, BotoCoreError) as exc:
        logger.error("[ERROR] Error deleting s3://%s/%s: %s", config.WORLDS_BUCKET, prefix, exc, exc_info=True)
        return _error(500, "Internal server error")

    if result["found"] == 0:
        return _response(200, {"message": "Nothing to delete"})
    if result["errors"]:
        return _error(500, f"Failed to delete {result['errors']} objects under prefix {prefix}", **result)
    logger.info("[SUCCESS] Deleted %d objects under %s", result["deleted"], prefix)
    return _response(200, {"message": f"Deleted {result['deleted']} objects under prefix {prefix}"})


handler = lambda_handler
