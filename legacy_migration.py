"""One-time upgrade from the single-blob layout to the partitioned keys."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from kv import KeyValueStore

logger = logging.getLogger(__name__)

LEGACY_DATA_KEY = "cyber-security-training-data"

KEY_USERS = "data:users"
KEY_QUIZZES = "data:quizzes"
KEY_SETTINGS = "data:settings"
KEY_MODULE_CATEGORIES = "data:moduleCategories"


def migrate_legacy(kv: KeyValueStore, default_settings: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
    """Fan the legacy blob out to the partitioned keys and delete it.

    Returns the migrated data (settings defaulted) or ``None`` when there is
    no legacy blob, which makes repeated runs no-ops.
    """
    legacy = kv.get(LEGACY_DATA_KEY)
    if not isinstance(legacy, dict) or "users" not in legacy:
        return None

    logger.info("Found legacy data, migrating to multi-key structure...")
    settings = legacy.get("settings") or dict(default_settings)
    sets: Dict[str, Any] = {
        KEY_USERS: legacy["users"],
        KEY_QUIZZES: legacy.get("quizzes") or [],
        KEY_SETTINGS: settings,
    }
    if legacy.get("moduleCategories"):
        sets[KEY_MODULE_CATEGORIES] = legacy["moduleCategories"]

    kv.transaction(sets, deletes=[LEGACY_DATA_KEY])
    logger.info("Migration complete.")

    migrated = dict(legacy)
    migrated["quizzes"] = sets[KEY_QUIZZES]
    migrated["settings"] = settings
    return migrated
