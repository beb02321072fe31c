from __future__ import annotations

import logging
import threading
import time
from typing import Any, Dict, Iterator, List, Optional, Sequence

import pymysql
import pymysql.cursors
from pymysql.constants import CLIENT
from pymysql.converters import escape_string

from db_sync.config import ConnectionConfig

LOG = logging.getLogger(__name__)


class NamedConnection:
    """
    One MySQL connection plus the name it is reported under.

    In round robin one connection is the source of its own replicator and a
    target of every peer. `lock` is reentrant so a caller can hold it across a
    whole transaction while the methods below take it per statement.
    """

    def __init__(self, name: str, conn, config: Optional[ConnectionConfig] = None):
        self.name = name
        self.conn = conn
        self.config = config
        self.lock = threading.RLock()

    def __repr__(self) -> str:
        return f"NamedConnection({self.name!r})"

    def query(self, sql: str, params: Sequence[Any] | None = None) -> List[Dict[str, Any]]:
        t0 = time.perf_counter()
        with self.lock, self.conn.cursor(pymysql.cursors.DictCursor) as c:
            c.execute(sql, params)
            rows = list(c.fetchall())
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("[%s] %s params=%r -> %d row(s) (%.3fs)", self.name, sql, params, len(rows), time.perf_counter() - t0)
        return rows

    def stream(self, sql: str, params: Sequence[Any] | None = None) -> Iterator[Dict[str, Any]]:
        """Unbuffered SELECT; the connection stays locked until the iterator is exhausted or closed."""
        with self.lock, self.conn.cursor(pymysql.cursors.SSDictCursor) as c:
            LOG.debug("[%s] streaming %s params=%r", self.name, sql, params)
            c.execute(sql, params)
            for row in c:
                yield row

    def execute_batch(self, sql: str) -> None:
        """Run a multi-statement string and drain every result set (errors surface here)."""
        with self.lock, self.conn.cursor() as c:
            c.execute(sql)
            while c.nextset():
                pass

    def close(self) -> None:
        with self.lock:
            try:
                self.conn.close()
            except pymysql.err.Error:
                LOG.debug("Connection %s was already closed", self.name, exc_info=True)
        LOG.info("Closed connection %s", self.name)


def connect(cfg: ConnectionConfig) -> NamedConnection:
    t0 = time.perf_counter()
    LOG.info("Connecting to %s", cfg.display_name)
    conn = pymysql.connect(
        host=cfg.host,
        port=cfg.port,
        user=cfg.user,
        password=cfg.password,
        database=cfg.database,
        charset="utf8mb4",
        autocommit=True,
        client_flag=CLIENT.MULTI_STATEMENTS,
        connect_timeout=cfg.connect_timeout,
        read_timeout=cfg.read_timeout,
        write_timeout=cfg.write_timeout,
        init_command="SET time_zone = '%s'" % escape_string(cfg.time_zone),
    )
    LOG.info("Connected to %s (%.3fs)", cfg.display_name, time.perf_counter() - t0)
    return NamedConnection(cfg.display_name, conn, cfg)


def query(node: NamedConnection, sql: str, params: Sequence[Any] | None = None) -> List[Dict[str, Any]]:
    return node.query(sql, params)
