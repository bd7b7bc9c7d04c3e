"""Server-side partitioned store: four independent keys instead of one blob."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import catalog
from bootstrap import derive_module_categories
from env_validation import ConfigurationError
from kv import KeyValueStore, kv_from_env
from legacy_migration import (
    KEY_MODULE_CATEGORIES,
    KEY_QUIZZES,
    KEY_SETTINGS,
    KEY_USERS,
    migrate_legacy,
)

logger = logging.getLogger(__name__)

PARTITION_KEYS: Dict[str, str] = {
    "users": KEY_USERS,
    "quizzes": KEY_QUIZZES,
    "moduleCategories": KEY_MODULE_CATEGORIES,
    "settings": KEY_SETTINGS,
}


class InvalidKeyError(ValueError):
    """Raised for a partial update naming a key outside the four partitions."""


class RemotePartitionedStore:
    def __init__(self, kv: Optional[KeyValueStore]) -> None:
        self.kv = kv

    @classmethod
    def from_env(cls) -> "RemotePartitionedStore":
        return cls(kv_from_env())

    @property
    def configured(self) -> bool:
        return self.kv is not None

    def _require_kv(self) -> KeyValueStore:
        if self.kv is None:
            raise ConfigurationError("KV store is not configured.")
        return self.kv

    def read(self) -> Dict[str, Any]:
        """Return ``{users, quizzes, moduleCategories, settings}``.

        Migrates a legacy blob first; initializes an empty store with the
        built-in defaults.
        """
        kv = self._require_kv()

        migrated = migrate_legacy(kv, catalog.default_settings())
        if migrated is not None:
            migrated.setdefault("moduleCategories", [])
            return migrated

        users, quizzes, module_categories, settings = kv.mget(
            KEY_USERS, KEY_QUIZZES, KEY_MODULE_CATEGORIES, KEY_SETTINGS
        )
        if users is None or quizzes is None:
            logger.info("No data found in KV, initializing with default data.")
            return self._initialize(kv)

        return {
            "users": users,
            "quizzes": quizzes,
            "moduleCategories": module_categories or [],
            "settings": settings or catalog.default_settings(),
        }

    def _initialize(self, kv: KeyValueStore) -> Dict[str, Any]:
        quizzes = catalog.default_quizzes()
        data = {
            "users": catalog.default_users(),
            "quizzes": quizzes,
            "moduleCategories": derive_module_categories(quizzes),
            "settings": catalog.default_settings(),
        }
        kv.transaction({PARTITION_KEYS[name]: value for name, value in data.items()})
        return data

    def write_all(self, payload: Mapping[str, Any]) -> None:
        """Write every partition in one transaction (full-snapshot imports)."""
        kv = self._require_kv()
        sets = {
            KEY_USERS: payload["users"],
            KEY_QUIZZES: payload["quizzes"],
            KEY_SETTINGS: payload["settings"],
        }
        if payload.get("moduleCategories") is not None:
            sets[KEY_MODULE_CATEGORIES] = payload["moduleCategories"]
        kv.transaction(sets)

    def write_key(self, key: str, value: Any) -> None:
        """Write one partition, independent of the other three."""
        kv = self._require_kv()
        db_key = PARTITION_KEYS.get(key)
        if db_key is None:
            raise InvalidKeyError(f"Invalid data key provided: {key}")
        kv.set(db_key, value)
