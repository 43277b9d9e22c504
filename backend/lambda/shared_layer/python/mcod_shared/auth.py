"""mcod_shared.auth — Bearer JWT verification for the API token authorizer.

Tokens are issued by Supabase and signed with the project's legacy HS256
secret. The verified `sub` claim becomes the caller's userId.

Requires environment variables:
    SUPABASE_JWT_SECRET   HS256 signing secret (SUPABASE_LEGACY_JWT_SECRET also accepted)
"""

from __future__ import annotations

from typing import Any, Dict, Optional

import jwt

from mcod_shared import config
from mcod_shared.config import logger


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an `Authorization: Bearer <token>` value."""
    if not authorization:
        return None
    parts = authorization.strip().split(" ")
    if len(parts) != 2 or parts[0].lower() != "bearer" or not parts[1]:
        return None
    return parts[1]


def _verify_token(token: str) -> Dict[str, Any]:
    """Verify an HS256 JWT. Returns decoded claims; raises ValueError otherwise."""
    if not config.SUPABASE_JWT_SECRET:
        raise ValueError("SUPABASE_JWT_SECRET not set")
    try:
        claims = jwt.decode(
            token,
            config.SUPABASE_JWT_SECRET,
            algorithms=["HS256"],
            options={"verify_exp": True, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        raise ValueError("Token has expired.")
    except jwt.PyJWTError as exc:
        raise ValueError(f"Token validation failed: {exc}") from exc
    if not claims.get("sub"):
        raise ValueError("Token has no subject")
    return claims


def _policy(principal_id: str, effect: str, resource: str) -> Dict[str, Any]:
    return {
        "principalId": principal_id,
        "policyDocument": {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Action": "execute-api:Invoke",
                    "Effect": effect,
                    "Resource": resource,
                }
            ],
        },
        "context": {
            "source": "supabase-jwt-authorizer",
            "userId": principal_id,
        },
    }


def _authorize(event: Dict[str, Any]) -> Dict[str, Any]:
    """Build an Allow policy for a valid token, Deny for anything else."""
    resource = str(event.get("methodArn") or "*")
    token = _extract_bearer_token(event.get("authorizationToken"))
    if not token:
        logger.warning("[WARNING] authorizer: missing bearer token")
        return _policy("unauthorized", "Deny", resource)
    try:
        claims = _verify_token(token)
    except ValueError as exc:
        logger.warning("[WARNING] authorizer: JWT verification failed: %s", exc)
        return _policy("unauthorized", "Deny", resource)
    return _policy(str(claims["sub"]), "Allow", resource)
