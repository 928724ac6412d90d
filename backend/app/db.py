from contextlib import contextmanager

from psycopg.rows import dict_row

# psycopg3 connection pooling lives in a separate package.
from psycopg_pool import ConnectionPool


class Database:
    """
    Owns the connection pool. Constructed once per process and opened/closed
    explicitly by the app (startup/shutdown) or the worker service.
    """

    def __init__(self, conninfo: str, *, min_size: int = 1, max_size: int = 10):
        # Keep row_factory=dict_row so handlers can address columns by name.
        self._pool = ConnectionPool(
            conninfo=conninfo,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row},
            open=False,
        )

    def open(self) -> None:
        self._pool.open()

    def close(self) -> None:
        self._pool.close()

    @contextmanager
    def connection(self):
        # The pool commits on success, rolls back on exception and takes the
        # connection back either way.
        with self._pool.connection() as conn:
            yield conn

    def ping(self) -> bool:
        with self.connection() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT 1 AS ok")
                return bool(cur.fetchone())
