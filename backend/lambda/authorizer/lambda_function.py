"""authorizer/lambda_function.py

API Gateway TOKEN authorizer. Verifies the `Authorization: Bearer <jwt>`
header against the Supabase HS256 secret and returns an IAM policy; the
token's `sub` is passed to the API as `requestContext.authorizer.userId`.

Environment variables:
    SUPABASE_JWT_SECRET   HS256 signing secret
"""

from __future__ import annotations

from typing import Any, Dict

from mcod_shared.auth import _authorize
from mcod_shared.config import logger


def lambda_handler(event: Dict[str, Any], _context: Any) -> Dict[str, Any]:
    policy = _authorize(event or {})
    effect = policy["policyDocument"]["Statement"][0]["Effect"]
    logger.info("[INFO] authorizer: %s for principal %s", effect, policy["principalId"])
    return policy


handler = lambda_handler
