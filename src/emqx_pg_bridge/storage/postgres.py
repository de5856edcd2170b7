"""
PostgreSQL storage sink.

Decodes each inbound payload into a TelemetryRecord and appends it as one row:

    INSERT INTO <table> (imei, lat, lng, gps_ts, uptime, csq, vbat, up_vbat, ip, receivetime)
    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)

Malformed payloads are skipped with a warning. Failed inserts raise StoragePersistFailed and
are never retried or buffered.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import psycopg2
from psycopg2 import pool as pg_pool
from psycopg2 import sql

from emqx_pg_bridge.config import PostgresConfig
from emqx_pg_bridge.errors import PayloadMalformed, StoragePersistFailed, StorageUnavailable
from emqx_pg_bridge.records import COLUMNS, decode_record
from emqx_pg_bridge.storage.pool import BlockingConnectionPool

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10
INSERT_TIMEOUT_S = 5.0

# TCP keepalive probing for connections that go quiet between or during inserts
KEEPALIVE_IDLE_S = 5
KEEPALIVE_INTERVAL_S = 1
KEEPALIVE_COUNT = 3


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def build_insert(table: str) -> sql.Composed:
    """Parameterised single-row insert for `table` ('name' or 'schema.name')."""
    return sql.SQL("INSERT INTO {table} ({columns}) VALUES ({values})").format(
        table=sql.Identifier(*table.split(".")),
        columns=sql.SQL(", ").join(sql.Identifier(c) for c in COLUMNS),
        values=sql.SQL(", ").join(sql.Placeholder() for _ in COLUMNS),
    )


class PostgresSink:
    """
    Storage sink backed by a pooled PostgreSQL connection.

    Implements the MessageHandler protocol; handle() is safe to call from several delivery
    threads at once, the pool being the only shared resource.
    """

    def __init__(
        self,
        pool: Any,
        table: str,
        *,
        insert_timeout_s: float = INSERT_TIMEOUT_S,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._pool = pool
        self.table = table
        self.insert_timeout_s = insert_timeout_s
        self._clock = clock
        self._insert = build_insert(table)
        self._closed = False

    @classmethod
    def open(
        cls,
        cfg: PostgresConfig,
        *,
        connect_timeout_s: int = CONNECT_TIMEOUT_S,
        insert_timeout_s: float = INSERT_TIMEOUT_S,
    ) -> "PostgresSink":
        """
        Create the pool and probe it with SELECT 1.

        Connection establishment is capped at connect_timeout_s; every statement on pooled
        connections is capped at insert_timeout_s by the server. The server cannot enforce
        that on a half-open socket, so the client side also gives up on unacknowledged
        writes after insert_timeout_s (tcp_user_timeout) and probes idle peers with TCP
        keepalives. Raises StorageUnavailable.
        """
        statement_timeout_ms = int(insert_timeout_s * 1000)
        pool: Optional[BlockingConnectionPool] = None
        try:
            pool = BlockingConnectionPool(
                cfg.pool_min,
                cfg.pool_max,
                cfg.dsn(),
                connect_timeout=connect_timeout_s,
                options=f"-c statement_timeout={statement_timeout_ms}",
                tcp_user_timeout=statement_timeout_ms,
                keepalives=1,
                keepalives_idle=KEEPALIVE_IDLE_S,
                keepalives_interval=KEEPALIVE_INTERVAL_S,
                keepalives_count=KEEPALIVE_COUNT,
                application_name="emqx-pg-bridge",
            )
            with pool.connection(timeout=connect_timeout_s) as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
                    cur.fetchone()
                conn.rollback()
        except (psycopg2.Error, pg_pool.PoolError) as exc:
            if pool is not None and not pool.closed:
                pool.closeall()
            raise StorageUnavailable(
                f"PostgreSQL {cfg.host}:{cfg.port}/{cfg.database} unavailable: {exc}"
            ) from exc

        logger.info(
            "PostgreSQL connected host=%s port=%s database=%s table=%s",
            cfg.host,
            cfg.port,
            cfg.database,
            cfg.table,
        )
        return cls(pool, cfg.table, insert_timeout_s=insert_timeout_s)

    def handle(self, topic: str, payload: bytes) -> None:
        try:
            record = decode_record(payload)
        except PayloadMalformed as exc:
            logger.warning("Skipping malformed payload topic=%s err=%s", topic, exc)
            return

        row = record.to_row(self._clock())
        try:
            with self._pool.connection(timeout=self.insert_timeout_s) as conn:
                with conn.cursor() as cur:
                    cur.execute(self._insert, row)
                conn.commit()
        except (psycopg2.Error, pg_pool.PoolError) as exc:
            raise StoragePersistFailed(
                f"insert into {self.table} failed imei={record.imei}: {exc}"
            ) from exc

        logger.debug(
            "Saved imei=%s lat=%s lng=%s", record.imei, record.lat, record.lng
        )

    def close(self) -> None:
        """Release the pool. Idempotent; in-flight inserts are not awaited."""
        if self._closed:
            return
        self._closed = True
        if not self._pool.closed:
            self._pool.closeall()
        logger.info("PostgreSQL connection pool closed")
