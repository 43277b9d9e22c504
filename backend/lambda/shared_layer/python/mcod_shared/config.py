"""mcod_shared.config — Environment variables, lifecycle constants, logging.

Every Lambda in this project reads its configuration from here at import
time. Defaults match the single-region deployment; override per function
through the Lambda environment.
"""
from __future__ import annotations

import logging
import os
from typing import Tuple

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger()
logger.setLevel(logging.INFO)


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[WARNING] %s=%r is not an integer; using default %d", name, raw, default)
        return default


def _csv_env(name: str) -> Tuple[str, ...]:
    return tuple(part.strip() for part in os.environ.get(name, "").split(",") if part.strip())


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

REGION = os.environ.get("MCOD_REGION", os.environ.get("AWS_REGION", "us-east-1"))

SERVER_HISTORY_TABLE = os.environ.get("SERVER_HISTORY_TABLE", "server-history")
USER_ID_INDEX_NAME = os.environ.get("USER_ID_INDEX_NAME", "userId-index")
SERVER_CONFIGURATION_TABLE = os.environ.get("SERVER_CONFIGURATION_TABLE", "server-configuration")
WORLDS_BUCKET = os.environ.get("WORLDS_BUCKET", "minecraft-worlds")

CLUSTER_NAME = os.environ.get("CLUSTER_NAME", "minecraft-on-demand")
TASK_DEFINITION_ARN = os.environ.get("TASK_DEFINITION_ARN", "minecraft-server")
CONTAINER_NAME = os.environ.get("CONTAINER_NAME", "MinecraftJavaServer")
TASK_GROUP = os.environ.get("TASK_GROUP", "minecraft-on-demand")

INSTANCE_IMAGE_ID = os.environ.get("INSTANCE_IMAGE_ID", "")
INSTANCE_IMAGE_PARAMETER = os.environ.get(
    "INSTANCE_IMAGE_PARAMETER",
    "/aws/service/ecs/optimized-ami/amazon-linux-2023/arm64/recommended/image_id",
)
INSTANCE_TYPE = os.environ.get("INSTANCE_TYPE", "t4g.small")
SUBNET_ID = os.environ.get("SUBNET_ID", "")
SECURITY_GROUP_IDS = _csv_env("SECURITY_GROUP_IDS")
INSTANCE_PROFILE_NAME = os.environ.get("INSTANCE_PROFILE_NAME", "")
WORLD_DATA_DIR = os.environ.get("WORLD_DATA_DIR", "/minecraft_data")

READINESS_POLL_SECONDS = _int_env("READINESS_POLL_SECONDS", 5)
READINESS_MAX_DELAY_SECONDS = _int_env("READINESS_MAX_DELAY_SECONDS", 10)
READINESS_MAX_ATTEMPTS = _int_env("READINESS_MAX_ATTEMPTS", 10)
READINESS_TIMEOUT_SECONDS = _int_env("READINESS_TIMEOUT_SECONDS", 300)
# Seconds of Lambda run time kept back after the readiness deadline for
# placement and the record update.
PROVISIONING_TIME_MARGIN_SECONDS = _int_env("PROVISIONING_TIME_MARGIN_SECONDS", 30)
PROVISIONING_MAX_WORKERS = _int_env("PROVISIONING_MAX_WORKERS", 10)

SYNC_POLL_SECONDS = _int_env("SYNC_POLL_SECONDS", 10)
SYNC_MAX_ATTEMPTS = _int_env("SYNC_MAX_ATTEMPTS", 60)
SSM_DOCUMENT_NAME = os.environ.get("SSM_DOCUMENT_NAME", "AWS-RunShellScript")
SYNC_COMMAND_TIMEOUT_SECONDS = _int_env("SYNC_COMMAND_TIMEOUT_SECONDS", 600)

CORS_ORIGIN = os.environ.get("CORS_ORIGIN", "*")
SUPABASE_JWT_SECRET = os.environ.get("SUPABASE_JWT_SECRET", os.environ.get("SUPABASE_LEGACY_JWT_SECRET", ""))

HISTORY_DEFAULT_LIMIT = _int_env("HISTORY_DEFAULT_LIMIT", 10)
HISTORY_MAX_LIMIT = _int_env("HISTORY_MAX_LIMIT", 100)
SERVER_ID_LENGTH = 12
SERVER_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"

# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------

SERVER_STATUS_PENDING = "PENDING"
SERVER_STATUS_RUNNING = "RUNNING"
SERVER_STATUS_STOPPED = "STOPPED"

_STATUS_TRANSITIONS = {
    SERVER_STATUS_PENDING: {SERVER_STATUS_RUNNING},
    SERVER_STATUS_RUNNING: {SERVER_STATUS_STOPPED},
    SERVER_STATUS_STOPPED: set(),
}

# Fields returned by the public read paths; debug reads return whole records.
PUBLIC_RECORD_FIELDS = (
    "serverId",
    "startedAt",
    "endedAt",
    "serverStatus",
    "serverConfig",
    "publicIp",
)

# Remote command statuses (SSM GetCommandInvocation).
SYNC_STATUS_SUCCESS = "Success"
SYNC_IN_FLIGHT_STATUSES = frozenset({"Pending", "InProgress", "Delayed"})

# Correlation tags carried by every server workload.
TAG_SERVER_ID = "serverId"
TAG_STARTED_AT = "startedAt"
TAG_USER_ID = "userId"
