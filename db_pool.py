"""Bounded pool of SQLite connections backing :class:`kv.SQLiteKV`."""
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from queue import Empty, Queue
from typing import Generator

logger = logging.getLogger(__name__)

class SQLiteConnectionPool:
    """Hands out at most ``max_connections`` connections to one database file.

    FastAPI runs sync handlers on worker threads, so connections are opened
    with ``check_same_thread=False``; a connection has a single borrower at a
    time. Whatever a borrower leaves uncommitted is rolled back on return.
    """

    def __init__(self, database: str, max_connections: int = 5):
        if max_connections < 1:
            raise ValueError("max_connections must be at least 1")
        self.database = database
        self.max_connections = max_connections
        self._idle: Queue[sqlite3.Connection] = Queue(maxsize=max_connections)
        self._lock = threading.Lock()
        self._opened = 0
        if database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.database, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        return conn

    def _checkout(self) -> sqlite3.Connection:
        try:
            return self._idle.get(block=False)
        except Empty:
            pass
        with self._lock:
            if self._opened < self.max_connections:
                connection = self._open()
                self._opened += 1
                logger.debug("Opened SQLite connection %d/%d for %s", self._opened, self.max_connections, self.database)
                return connection
        return self._idle.get(block=True)

    def _discard(self, connection: sqlite3.Connection) -> None:
        connection.close()
        with self._lock:
            self._opened -= 1

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        connection = self._checkout()
        try:
            yield connection
        finally:
            try:
                connection.rollback()
            except sqlite3.Error as exc:
                logger.error("Dropping broken SQLite connection: %s", exc)
                self._discard(connection)
            else:
                self._idle.put(connection)

    def close_all(self) -> None:
        """Close every idle connection."""
        while True:
            try:
                connection = self._idle.get(block=False)
            except Empty:
                break
            self._discard(connection)
