"""
Shared fixtures: an in-memory stand-in for a named MySQL connection.
"""
from __future__ import annotations

import re
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import pymysql
import pytest

from db_sync.TableDescription import TableDescription, TableSet, TableSetRegistry

_FROM_TABLE = re.compile(r"\bFROM\s+(\w+)", re.IGNORECASE)


class FakeNode:
    """
    Answers the queries the replicator issues and records everything it is sent.

    `columns` maps table -> {column: data_type}; `rows` maps table -> list of dict rows
    returned (unfiltered) by `stream`. `responses` is a list of (substring, rows) pairs
    checked first for any query or stream.
    """

    def __init__(
        self,
        name: str,
        columns: Optional[Dict[str, Dict[str, str]]] = None,
        rows: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        now: Optional[datetime] = None,
        watermark: Optional[str] = None,
        fail_batch: Optional[Callable[[str], bool]] = None,
        batch_delay: float = 0.0,
    ):
        self.name = name
        self.columns = columns or {}
        self.rows = rows or {}
        self.now = now or datetime(2024, 1, 1, 12, 0, 0, 123456)
        self.watermark = watermark
        self.has_replication_table = watermark is not None
        self.fail_batch = fail_batch
        self.batch_delay = batch_delay
        self.lock = threading.RLock()
        self.responses: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.queries: List[Tuple[str, Any]] = []
        self.streamed: List[Tuple[str, Any]] = []
        self.batches: List[str] = []
        self.batch_threads: List[int] = []
        self.closed = False

    def __repr__(self) -> str:
        return f"FakeNode({self.name!r})"

    def _scripted(self, sql: str) -> Optional[List[Dict[str, Any]]]:
        for needle, rows in self.responses:
            if needle in sql:
                return list(rows)
        return None

    def query(self, sql: str, params=None) -> List[Dict[str, Any]]:
        self.queries.append((sql, params))
        scripted = self._scripted(sql)
        if scripted is not None:
            return scripted
        if "information_schema.columns" in sql:
            return [{"name": c, "type": t} for c, t in self.columns.get(params[0], {}).items()]
        if "NOW(3)" in sql:
            return [{"now": self.now}]
        if sql.startswith("SELECT value FROM gitpod_replication"):
            if not self.has_replication_table:
                raise pymysql.err.ProgrammingError(1146, "Table 'gitpod_replication' doesn't exist")
            return [{"value": self.watermark}] if self.watermark else []
        if sql.startswith("CREATE TABLE IF NOT EXISTS gitpod_replication"):
            self.has_replication_table = True
            return []
        if sql.startswith("INSERT INTO gitpod_replication"):
            self.watermark = params[1]
            return []
        return []

    def stream(self, sql: str, params=None):
        self.streamed.append((sql, params))
        scripted = self._scripted(sql)
        if scripted is not None:
            yield from scripted
            return
        m = _FROM_TABLE.search(sql)
        yield from list(self.rows.get(m.group(1), [])) if m else []

    def execute_batch(self, sql: str) -> None:
        self.batches.append(sql)
        self.batch_threads.append(threading.get_ident())
        if self.batch_delay:
            time.sleep(self.batch_delay)
        if self.fail_batch is not None and self.fail_batch(sql):
            raise pymysql.err.OperationalError(2013, "Lost connection to MySQL server during query")

    def close(self) -> None:
        self.closed = True


NAMES_COLUMNS = {"uid": "char", "name": "char", "_lastModified": "timestamp", "_deleted": "tinyint"}

NAMES_TABLE = TableDescription(
    name="names",
    primary_keys=("uid",),
    time_column="_lastModified",
    deletion_column="_deleted",
)


def names_row(uid: str, name: str, ts: datetime, deleted: int = 0) -> Dict[str, Any]:
    return {"uid": uid, "name": name, "_lastModified": ts, "_deleted": deleted}


@pytest.fixture
def names_registry() -> TableSetRegistry:
    return TableSetRegistry([TableSet("test", [NAMES_TABLE])])


@pytest.fixture
def make_node():
    def _make(name: str = "node", **kwargs) -> FakeNode:
        kwargs.setdefault("columns", {"names": dict(NAMES_COLUMNS)})
        return FakeNode(name, **kwargs)
    return _make
