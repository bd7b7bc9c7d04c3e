"""On-device backup slot holding the last known-good full snapshot."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from env_validation import DEFAULT_LOCAL_CACHE_PATH

logger = logging.getLogger(__name__)


class LocalDurableCache:
    """Single JSON slot on disk.

    Writes are synchronous and never raise: a failed save is logged and the
    caller carries on with its in-memory state.
    """

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path or os.getenv("LOCAL_CACHE_PATH") or DEFAULT_LOCAL_CACHE_PATH)

    def save(self, payload: Mapping[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=".cache-", suffix=".json", dir=str(self.path.parent))
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh, ensure_ascii=False)
                os.replace(tmp_name, self.path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to save data to the local cache at %s: %s", self.path, exc)
            return False
        return True

    def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to parse local cache data at %s: %s", self.path, exc)
            return None
        if not isinstance(data, dict):
            logger.error("Local cache at %s does not hold a JSON object", self.path)
            return None
        return data

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
