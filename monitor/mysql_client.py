"""MySQL collaborator: short-lived connections with explicit timeouts."""
import time
import logging
from contextlib import contextmanager

import pymysql
from pymysql.cursors import DictCursor

from utils.errors import CollaboratorError

logger = logging.getLogger("mysqlwatch.mysql")


class MySQLClient:
    """Thin wrapper around PyMySQL.

    Every call opens its own connection so polls running on different worker
    threads never share one (PyMySQL connections are not thread-safe).
    """

    def __init__(self, host="127.0.0.1", port=3306, user="monitor", password="",
                 database=None, connect_timeout=5, query_timeout=10, unix_socket=None):
        self.host = host
        self.port = int(port)
        self.user = user
        self.password = password
        self.database = database
        self.connect_timeout = connect_timeout
        self.query_timeout = query_timeout
        self.unix_socket = unix_socket

    @classmethod
    def from_config(cls, config):
        db = config.get("database", {})
        return cls(
            host=db.get("host", "127.0.0.1"),
            port=db.get("port", 3306),
            user=db.get("user", "monitor"),
            password=db.get("password", ""),
            database=db.get("database"),
            connect_timeout=db.get("connect_timeout", 5),
            query_timeout=db.get("query_timeout", 10),
            unix_socket=db.get("unix_socket"),
        )

    @contextmanager
    def _connection(self, timeout=None):
        timeout = timeout or self.query_timeout
        try:
            conn = pymysql.connect(
                host=self.host,
                port=self.port,
                user=self.user,
                password=self.password,
                database=self.database,
                unix_socket=self.unix_socket,
                connect_timeout=self.connect_timeout,
                read_timeout=timeout,
                write_timeout=timeout,
                autocommit=True,
                cursorclass=DictCursor,
            )
        except pymysql.MySQLError as e:
            raise CollaboratorError(f"cannot connect to {self.host}:{self.port}: {e}",
                                    code=_error_code(e)) from e
        try:
            yield conn
        finally:
            conn.close()

    def query(self, sql, params=None, timeout=None):
        """Run a read-only statement and return rows as dicts."""
        with self._connection(timeout) as conn:
            try:
                with conn.cursor() as cur:
                    start = time.monotonic()
                    cur.execute(sql, params)
                    rows = list(cur.fetchall())
                    logger.debug(f"{sql!r} → {len(rows)} rows ({int((time.monotonic() - start) * 1000)}ms)")
                    return rows
            except pymysql.MySQLError as e:
                raise CollaboratorError(f"query failed: {e}", statement=sql, code=_error_code(e)) from e

    def execute(self, sql, params=None, timeout=None):
        """Run a mutating statement; returns the affected row count."""
        with self._connection(timeout) as conn:
            try:
                with conn.cursor() as cur:
                    affected = cur.execute(sql, params)
                    logger.info(f"Executed {sql!r} params={params!r}")
                    return affected
            except pymysql.MySQLError as e:
                raise CollaboratorError(f"statement failed: {e}", statement=sql, code=_error_code(e)) from e

    def ping(self):
        """Check reachability; returns version and latency."""
        start = time.monotonic()
        rows = self.query("SELECT VERSION() AS version")
        latency = int((time.monotonic() - start) * 1000)
        return {"reachable": True, "latency_ms": latency, "version": rows[0]["version"] if rows else None}


def _error_code(exc):
    if exc.args and isinstance(exc.args[0], int):
        return exc.args[0]
    return None
