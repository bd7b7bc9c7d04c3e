import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Deterministic replacement for ``time.time`` in id generation."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_kv(tmp_path):
    from kv import SQLiteKV

    kv = SQLiteKV(str(tmp_path / "kv.db"), max_connections=4)
    yield kv
    kv.close()


@pytest.fixture
def remote_store(temp_kv):
    from remote_store import RemotePartitionedStore

    return RemotePartitionedStore(temp_kv)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def record_store(clock):
    from bootstrap import initial_payload
    from record_store import RecordStore

    return RecordStore.from_payload(initial_payload(), clock=clock)


@pytest.fixture
def local_cache(tmp_path):
    from local_cache import LocalDurableCache

    return LocalDurableCache(tmp_path / "cache" / "backup.json")


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch, tmp_path):
    for name in (
        "KV_URL",
        "GITHUB_PAT",
        "GITHUB_API_URL",
        "API_BASE_URL",
        "SYNC_DEBOUNCE_SECONDS",
        "MIRROR_TIMEOUT_SECONDS",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LOCAL_CACHE_PATH", str(tmp_path / "default-cache.json"))
