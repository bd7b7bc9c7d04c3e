import pytest

from db_pool import SQLiteConnectionPool


def test_pool_reuses_connections_and_rolls_back_uncommitted_work(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "nested" / "kv.db"), max_connections=2)
    with pool.get_connection() as con:
        con.execute("CREATE TABLE t (v TEXT)")
        con.commit()
        first = con

    with pool.get_connection() as con:
        assert con is first
        con.execute("INSERT INTO t VALUES ('left open')")

    with pool.get_connection() as con:
        assert con.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
    pool.close_all()


def test_pool_never_opens_more_than_its_limit(tmp_path):
    pool = SQLiteConnectionPool(str(tmp_path / "kv.db"), max_connections=2)

    with pool.get_connection() as a, pool.get_connection() as b:
        assert a is not b
        assert pool._opened == 2
    pool.close_all()
    assert pool._opened == 0


def test_pool_requires_a_positive_limit(tmp_path):
    with pytest.raises(ValueError):
        SQLiteConnectionPool(str(tmp_path / "kv.db"), max_connections=0)
