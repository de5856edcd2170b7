"""
Thread-safe PostgreSQL connection pool.

psycopg2's ThreadedConnectionPool raises PoolError as soon as maxconn connections are
checked out. Message delivery threads would rather wait briefly for a free slot, so
BlockingConnectionPool gates getconn() with a semaphore sized to maxconn.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from psycopg2 import pool as pg_pool

logger = logging.getLogger(__name__)


class BlockingConnectionPool(pg_pool.ThreadedConnectionPool):
    def __init__(self, minconn: int, maxconn: int, *args: Any, **kwargs: Any) -> None:
        self._slots = threading.BoundedSemaphore(maxconn)
        super().__init__(minconn, maxconn, *args, **kwargs)

    def getconn(self, key: Any = None, *, timeout: Optional[float] = None) -> Any:
        """Check out a connection, waiting up to `timeout` seconds for a free slot."""
        if not self._slots.acquire(timeout=timeout):
            raise pg_pool.PoolError(f"no free connection within {timeout}s")
        try:
            return super().getconn(key)
        except BaseException:
            self._slots.release()
            raise

    def putconn(self, conn: Any = None, key: Any = None, close: bool = False) -> None:
        try:
            super().putconn(conn, key, close)
        finally:
            self._slots.release()

    @contextmanager
    def connection(self, timeout: Optional[float] = None) -> Iterator[Any]:
        """
        Borrow a connection for one unit of work.

        Any exception rolls back the open transaction. Connections found closed afterwards
        (server went away) are discarded instead of returned to the pool.
        """
        conn = self.getconn(timeout=timeout)
        try:
            yield conn
        except BaseException:
            if not conn.closed:
                try:
                    conn.rollback()
                except Exception as exc:
                    logger.debug("Rollback failed, discarding connection: %s", exc)
            raise
        finally:
            if self.closed:
                # pool was closed underneath us (shutdown); nothing to return to
                conn.close()
                self._slots.release()
            else:
                try:
                    self.putconn(conn, close=bool(conn.closed))
                except pg_pool.PoolError:
                    # closed between the check and putconn; the slot is already released
                    if not self.closed:
                        raise
                    conn.close()
