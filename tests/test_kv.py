import pytest

from env_validation import ConfigurationError
from kv import CorruptValueError, RedisKV, SQLiteKV, kv_from_env, kv_from_url


def test_sqlite_kv_roundtrips_json_values(temp_kv):
    temp_kv.set("data:users", [{"id": 1, "fullName": "Ünïcode User"}])

    assert temp_kv.get("data:users") == [{"id": 1, "fullName": "Ünïcode User"}]
    assert temp_kv.get("missing") is None
    assert temp_kv.mget("data:users", "missing") == [[{"id": 1, "fullName": "Ünïcode User"}], None]


def test_sqlite_kv_set_overwrites_whole_value(temp_kv):
    temp_kv.set("data:settings", {"githubOwner": "acme", "logo": "x"})
    temp_kv.set("data:settings", {"githubOwner": "other"})

    assert temp_kv.get("data:settings") == {"githubOwner": "other"}


def test_sqlite_transaction_applies_sets_and_deletes_together(temp_kv):
    temp_kv.set("legacy", {"users": []})

    temp_kv.transaction({"a": 1, "b": [2]}, deletes=["legacy"])

    assert temp_kv.mget("a", "b", "legacy") == [1, [2], None]


def test_unserializable_value_aborts_transaction_before_any_write(temp_kv):
    temp_kv.set("a", "original")

    with pytest.raises(TypeError):
        temp_kv.transaction({"a": "changed", "b": object()})

    assert temp_kv.get("a") == "original"
    assert temp_kv.get("b") is None


def test_corrupt_stored_value_raises_instead_of_reading_as_absent(temp_kv):
    with temp_kv._pool.get_connection() as con:
        con.execute("INSERT INTO kv_entries (key, value) VALUES (?, ?)", ("broken", "{not json"))
        con.commit()

    with pytest.raises(CorruptValueError, match="broken"):
        temp_kv.get("broken")
    with pytest.raises(CorruptValueError):
        temp_kv.mget("missing", "broken")


class _FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def set(self, key, value):
        self.ops.append(("set", key, value))

    def delete(self, key):
        self.ops.append(("delete", key))

    def execute(self):
        for op in self.ops:
            if op[0] == "set":
                self.store[op[1]] = op[2]
            else:
                self.store.pop(op[1], None)


class _FakeRedis:
    def __init__(self):
        self.data = {}
        self.pipelines = []

    def get(self, key):
        return self.data.get(key)

    def mget(self, keys):
        return [self.data.get(key) for key in keys]

    def set(self, key, value):
        self.data[key] = value

    def delete(self, key):
        self.data.pop(key, None)

    def pipeline(self, transaction=True):
        assert transaction is True
        pipe = _FakePipeline(self.data)
        self.pipelines.append(pipe)
        return pipe


def test_redis_kv_uses_a_transactional_pipeline():
    client = _FakeRedis()
    kv = RedisKV(client=client)
    client.data["old"] = '"x"'

    kv.transaction({"data:users": [1], "data:quizzes": []}, deletes=["old"])

    assert len(client.pipelines) == 1
    assert kv.mget("data:users", "data:quizzes", "old") == [[1], [], None]


def test_kv_from_url_selects_backend(tmp_path):
    kv = kv_from_url(f"sqlite:///{tmp_path / 'store.db'}")
    try:
        assert isinstance(kv, SQLiteKV)
    finally:
        kv.close()

    with pytest.raises(ConfigurationError):
        kv_from_url("memcached://localhost")
    with pytest.raises(ConfigurationError):
        kv_from_url("sqlite:///")


def test_kv_from_env_is_none_without_kv_url():
    assert kv_from_env() is None
