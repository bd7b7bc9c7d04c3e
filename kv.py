"""Key/value backends behind the partitioned store.

Values are JSON documents. Two backends share one small interface
(``get``/``mget``/``set``/``delete``/``transaction``):

* ``SQLiteKV`` keeps entries in a ``kv_entries`` table through the pooled
  connections of :mod:`db_pool`; a multi-key write is one SQL transaction.
* ``RedisKV`` talks to Redis through redis-py; a multi-key write is a
  ``MULTI``/``EXEC`` pipeline.

``kv_from_env`` picks the backend from ``KV_URL``.
"""

from __future__ import annotations

import json
import logging
import os
from typing import Any, Dict, List, Mapping, Optional, Sequence

import redis

from db_pool import SQLiteConnectionPool
from env_validation import ConfigurationError

logger = logging.getLogger(__name__)


def _encode(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


class CorruptValueError(ValueError):
    """A stored value exists but is not a JSON document."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Stored value for {key} is not valid JSON.")
        self.key = key


def _decode(raw: Optional[str], key: str) -> Any:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.error("Stored value for %s is not valid JSON", key)
        raise CorruptValueError(key) from exc


class KeyValueStore:
    """Interface shared by the backends."""

    def get(self, key: str) -> Any:
        raise NotImplementedError

    def mget(self, *keys: str) -> List[Any]:
        raise NotImplementedError

    def set(self, key: str, value: Any) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def transaction(self, sets: Mapping[str, Any], deletes: Sequence[str] = ()) -> None:
        """Apply every set and delete atomically: all of them or none."""
        raise NotImplementedError


class SQLiteKV(KeyValueStore):
    def __init__(self, path: str, max_connections: int = 5) -> None:
        self.path = path
        self._pool = SQLiteConnectionPool(path, max_connections=max_connections)
        with self._pool.get_connection() as con:
            con.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_entries (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
                """
            )
            con.commit()

    def get(self, key: str) -> Any:
        return self.mget(key)[0]

    def mget(self, *keys: str) -> List[Any]:
        if not keys:
            return []
        placeholders = ",".join("?" for _ in keys)
        with self._pool.get_connection() as con:
            rows = con.execute(
                f"SELECT key, value FROM kv_entries WHERE key IN ({placeholders})",
                list(keys),
            ).fetchall()
        found = {row["key"]: row["value"] for row in rows}
        return [_decode(found.get(key), key) for key in keys]

    def set(self, key: str, value: Any) -> None:
        self.transaction({key: value})

    def delete(self, key: str) -> None:
        self.transaction({}, deletes=[key])

    def transaction(self, sets: Mapping[str, Any], deletes: Sequence[str] = ()) -> None:
        encoded = [(key, _encode(value)) for key, value in sets.items()]
        with self._pool.get_connection() as con:
            try:
                for key, raw in encoded:
                    con.execute(
                        """
                        INSERT INTO kv_entries (key, value, updated_at)
                        VALUES (?, ?, CURRENT_TIMESTAMP)
                        ON CONFLICT(key) DO UPDATE SET
                            value = excluded.value,
                            updated_at = CURRENT_TIMESTAMP
                        """,
                        (key, raw),
                    )
                for key in deletes:
                    con.execute("DELETE FROM kv_entries WHERE key = ?", (key,))
                con.commit()
            except Exception:
                con.rollback()
                raise

    def close(self) -> None:
        self._pool.close_all()


class RedisKV(KeyValueStore):
    def __init__(self, url: str = "redis://localhost:6379/0", client: Optional[Any] = None) -> None:
        self._r = client if client is not None else redis.from_url(url, decode_responses=True)

    def get(self, key: str) -> Any:
        return _decode(self._r.get(key), key)

    def mget(self, *keys: str) -> List[Any]:
        if not keys:
            return []
        return [_decode(raw, key) for key, raw in zip(keys, self._r.mget(list(keys)))]

    def set(self, key: str, value: Any) -> None:
        self._r.set(key, _encode(value))

    def delete(self, key: str) -> None:
        self._r.delete(key)

    def transaction(self, sets: Mapping[str, Any], deletes: Sequence[str] = ()) -> None:
        encoded: Dict[str, str] = {key: _encode(value) for key, value in sets.items()}
        pipe = self._r.pipeline(transaction=True)
        for key, raw in encoded.items():
            pipe.set(key, raw)
        for key in deletes:
            pipe.delete(key)
        pipe.execute()


def kv_from_url(url: str) -> KeyValueStore:
    if url.startswith(("redis://", "rediss://")):
        return RedisKV(url)
    if url.startswith("sqlite:///"):
        path = url[len("sqlite:///"):]
        if not path:
            raise ConfigurationError("sqlite KV_URL needs a file path, e.g. sqlite:///data/kv.db")
        return SQLiteKV(path)
    raise ConfigurationError(f"Unsupported KV_URL scheme: {url}")


def kv_from_env() -> Optional[KeyValueStore]:
    """Build the configured backend, or ``None`` when ``KV_URL`` is unset."""
    url = os.getenv("KV_URL")
    if not url:
        return None
    return kv_from_url(url)
