"""mcod_shared.server_settings — Per-user saved game server configuration.

Validation mirrors the container image's environment contract: every value
is a string, enumerated fields only accept their listed values, and unknown
keys are rejected. Missing optional fields take their defaults.

Stored one item per user in SERVER_CONFIGURATION_TABLE:
    {"userId": S, "configuration": M, "updatedAt": N (epoch ms)}
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

from mcod_shared.aws_clients import _get_ddb
from mcod_shared.config import SERVER_CONFIGURATION_TABLE, logger
from mcod_shared.serialization import _deserialize, _epoch_ms, _serialize

SERVER_TYPES = ("VANILLA", "FABRIC", "FORGE", "SPIGOT", "PAPER")
_BOOL_STRINGS = ("true", "false")

# field -> (allowed values or None for free text, default or None if required)
_ENUM_FIELDS: Dict[str, Tuple[Tuple[str, ...], Optional[str]]] = {
    "type": (SERVER_TYPES, None),
    "hardcore": (_BOOL_STRINGS, "false"),
    "allow_flight": (("TRUE", "FALSE"), "FALSE"),
    "allow_nether": (_BOOL_STRINGS, "true"),
    "spawn_monsters": (_BOOL_STRINGS, "true"),
    "online_mode": (_BOOL_STRINGS, "true"),
    "generate_structures": (_BOOL_STRINGS, "true"),
    "level_type": (
        ("minecraft:normal", "minecraft:flat", "minecraft:large_biomes", "minecraft:amplified"),
        "minecraft:normal",
    ),
    "difficulty": (("peaceful", "easy", "normal", "hard"), "easy"),
    "mode": (("creative", "survival", "adventure"), "creative"),
    "spawn_animals": (_BOOL_STRINGS, "true"),
    "sync_chunk_writes": (_BOOL_STRINGS, "true"),
    "spawn_npcs": (_BOOL_STRINGS, "true"),
}

_TEXT_FIELDS: Dict[str, Optional[str]] = {
    "version": None,
    "spawn_protection": "16",
    "seed": "",
    "network_compression_threshold": "256",
    "simulation_distance": "4",
    "view_distance": "8",
    "max_players": "20",
}

SEED_MAX_LENGTH = 32

CONFIGURATION_FIELDS = tuple(sorted(set(_ENUM_FIELDS) | set(_TEXT_FIELDS)))


def validate_server_configuration(payload: Any) -> Tuple[Dict[str, str], List[str]]:
    """Return (normalized configuration, errors). Errors empty means valid."""
    if not isinstance(payload, dict):
        return {}, ["configuration must be a JSON object"]

    errors: List[str] = []
    result: Dict[str, str] = {}

    unknown = sorted(set(payload) - set(CONFIGURATION_FIELDS))
    if unknown:
        errors.append(f"unknown fields: {', '.join(unknown)}")

    for field, default in _TEXT_FIELDS.items():
        value = payload.get(field, default)
        if value is None:
            errors.append(f"{field} is required")
        elif not isinstance(value, str):
            errors.append(f"{field} must be a string")
        else:
            result[field] = value

    for field, (allowed, default) in _ENUM_FIELDS.items():
        value = payload.get(field, default)
        if value is None:
            errors.append(f"{field} is required")
        elif value not in allowed:
            errors.append(f"{field} must be one of {', '.join(allowed)}")
        else:
            result[field] = value

    if len(result.get("seed", "")) > SEED_MAX_LENGTH:
        errors.append(f"seed must be at most {SEED_MAX_LENGTH} characters")

    return (result if not errors else {}), errors


def get_saved_configuration(user_id: str) -> Optional[Dict[str, Any]]:
    resp = _get_ddb().get_item(
        TableName=SERVER_CONFIGURATION_TABLE,
        Key={"userId": {"S": user_id}},
        ConsistentRead=True,
    )
    item = resp.get("Item")
    if not item:
        return None
    return _deserialize(item).get("configuration") or {}


def put_saved_configuration(user_id: str, configuration: Dict[str, str]) -> Dict[str, Any]:
    item = {
        "userId": user_id,
        "configuration": configuration,
        "updatedAt": _epoch_ms(),
    }
    _get_ddb().put_item(
        TableName=SERVER_CONFIGURATION_TABLE,
        Item={k: _serialize(v) for k, v in item.items()},
    )
    logger.info("[SUCCESS] Saved server configuration for %s", user_id)
    return item
