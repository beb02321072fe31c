from __future__ import annotations

import logging
import time
from contextlib import closing
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pendulum
from pymysql.converters import escape_item

from db_sync.TableDescription import TableConfigError, TableDescription, TableSetRegistry
from db_sync.period import SyncPeriod

# Module-level logger for helpers
LOG = logging.getLogger(__name__)

TIMESTAMP_TYPES = frozenset({"timestamp"})

# ============================== Helpers (module-level; stateless) ===============================

def _escape(value: Any) -> str:
    """SQL literal for a value as the MySQL driver would send it (NULL, 1/0, quoted datetimes)."""
    return escape_item(value, "utf8mb4")


def _get_column_types(node, table: str) -> Dict[str, str]:
    t0 = time.perf_counter()
    rows = node.query(
        """
        SELECT column_name AS name, data_type AS type
        FROM information_schema.columns
        WHERE table_schema = DATABASE() AND table_name = %s
        ORDER BY ordinal_position
        """,
        (table,),
    )
    cols = {r["name"]: str(r["type"]).lower() for r in rows}
    LOG.debug("Columns for %s on %s: %s (%.3fs)", table, node.name, cols, time.perf_counter() - t0)
    return cols


def _pk_clause(table: TableDescription, row: Dict[str, Any]) -> str:
    return " AND ".join(f"{c}={_escape(row[c])}" for c in table.primary_keys)


def _time_guard(table: TableDescription, row: Dict[str, Any]) -> str:
    return f"{table.time_column}<={_escape(row[table.time_column])}"


def build_deletion_statement(table: TableDescription, row: Dict[str, Any]) -> str:
    sql = f"DELETE FROM {table.name} WHERE {_pk_clause(table, row)} AND {_time_guard(table, row)};"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated DELETE: %s", sql)
    return sql


def build_insert_statement(table: TableDescription, update_columns: Sequence[str], row: Dict[str, Any]) -> str:
    cols = list(table.primary_keys) + list(update_columns)
    col_list = ",".join(cols)
    values = ",".join(_escape(row[c]) for c in cols)
    sql = f"INSERT IGNORE INTO {table.name} ({col_list}) VALUES ({values});"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated INSERT: %s", sql)
    return sql


def build_update_statement(table: TableDescription, update_columns: Sequence[str], row: Dict[str, Any]) -> Optional[str]:
    if not update_columns:
        # nothing besides the key: INSERT IGNORE already did all there is to do
        return None
    set_list = ", ".join(f"{c}={_escape(row[c])}" for c in update_columns)
    sql = f"UPDATE {table.name} SET {set_list} WHERE {_pk_clause(table, row)} AND {_time_guard(table, row)};"
    if LOG.isEnabledFor(logging.DEBUG):
        LOG.debug("Generated UPDATE: %s", sql)
    return sql


def _build_select(table: TableDescription, columns: Sequence[str], period: SyncPeriod) -> Tuple[str, List[Any]]:
    conditions: List[str] = []
    params: List[Any] = []
    if period.from_ is not None:
        conditions.append(f"{table.time_column} >= %s")
        params.append(period.from_)
    if period.to is not None:
        conditions.append(f"{table.time_column} <= %s")
        params.append(period.to)
    if table.expiry_column:
        conditions.append(f"{table.expiry_column} >= %s")
        params.append(pendulum.now("UTC").timestamp())
    where = f" WHERE {' AND '.join(conditions)}" if conditions else ""
    sql = f"SELECT {', '.join(columns)} FROM {table.name}{where}"
    return sql, params


@dataclass
class StatementBatch:
    deletions: List[str] = field(default_factory=list)
    updates: List[str] = field(default_factory=list)

    @property
    def all_statements(self) -> List[str]:
        return self.deletions + self.updates

    def __len__(self) -> int:
        return len(self.deletions) + len(self.updates)


# ============================== Change extractor (one table) ===============================

class TableUpdate:
    """Compiles the rows of one table changed within a period into SQL statements."""

    def __init__(self, table: TableDescription, source, logger: logging.Logger | None = None):
        self.table = table
        self.source = source
        self.log = logger or logging.getLogger(__name__)
        self.deletions: List[str] = []
        self.upserts: List[str] = []
        self.update_columns: List[str] = []

    def populate(self, period: SyncPeriod) -> Tuple[List[str], List[str]]:
        t0 = time.perf_counter()
        table = self.table
        self.deletions, self.upserts = [], []

        # ---- 1) introspection ----
        columns = _get_column_types(self.source, table.name)
        if not columns:
            self.log.info("Table %s does not exist on %s; skipping", table.name, self.source.name)
            return self.deletions, self.upserts

        # ---- 2) time column must be a real timestamp ----
        time_type = columns.get(table.time_column)
        if time_type is None:
            raise TableConfigError(f"Table {table.name} has no time column {table.time_column}")
        if time_type not in TIMESTAMP_TYPES:
            raise TableConfigError(
                f"Time column {table.name}.{table.time_column} must be a timestamp, found {time_type}"
            )
        missing = [c for c in table.primary_keys if c not in columns]
        if missing:
            raise TableConfigError(f"Table {table.name} is missing primary key column(s): {', '.join(missing)}")

        # ---- 3) columns carried by INSERT/UPDATE ----
        excluded = set(table.primary_keys) | set(table.ignore_columns)
        self.update_columns = [c for c in columns if c not in excluded]

        # ---- 4) stream the window ----
        sql, params = _build_select(table, list(columns), period)
        self.log.debug("Export SQL for %s: %s (params=%r)", table.name, sql, params)

        now = pendulum.now("UTC")
        rows = 0
        with closing(self.source.stream(sql, params)) as cursor:
            for row in cursor:
                rows += 1
                self._process_row(row, now)

        self.log.info(
            "Table %s: %d row(s) -> %d deletion(s), %d upsert statement(s) (%.3fs)",
            table.name, rows, len(self.deletions), len(self.upserts), time.perf_counter() - t0,
        )
        return self.deletions, self.upserts

    def _process_row(self, row: Dict[str, Any], now) -> None:
        table = self.table
        row_time = row.get(table.time_column)
        if isinstance(row_time, datetime) and pendulum.instance(row_time, tz="UTC") > now:
            self.log.warning(
                "Row in %s has %s=%s which is in the future (now=%s); clock skew between nodes?",
                table.name, table.time_column, row_time, now,
            )

        if table.deletion_column and row.get(table.deletion_column):
            self.deletions.append(build_deletion_statement(table, row))
            return

        self.upserts.append(build_insert_statement(table, self.update_columns, row))
        update = build_update_statement(table, self.update_columns, row)
        if update:
            self.upserts.append(update)


# ============================== Table-set extractor ===============================

class TableUpdateProvider:
    """Runs a TableUpdate for every table of a table set and orders the result."""

    def __init__(self, registry: TableSetRegistry, max_workers: int = 5, logger: logging.Logger | None = None):
        self.registry = registry
        self.max_workers = max_workers
        self.log = logger or logging.getLogger(__name__)

    def get_all_statements_for_all_tables(self, source, table_set_name: Optional[str], period: SyncPeriod) -> StatementBatch:
        t0 = time.perf_counter()
        table_set = self.registry.get(table_set_name)
        tables = table_set.get_sorted_tables()
        self.log.info(
            "Exporting %d table(s) of table set %s from %s", len(tables), table_set.name, source.name
        )

        updates = [TableUpdate(t, source, logger=self.log) for t in tables]
        workers = max(1, min(self.max_workers, len(updates)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="table-update") as executor:
            futures = [executor.submit(u.populate, period) for u in updates]
            # results in declared order regardless of completion order; re-raises the first failure
            results = [f.result() for f in futures]

        batch = StatementBatch()
        # dependents are deleted before what they depend on ...
        for deletions, _ in reversed(results):
            batch.deletions.extend(deletions)
        # ... and inserted after it
        for _, upserts in results:
            batch.updates.extend(upserts)

        self.log.info(
            "Table set %s: %d deletion(s), %d update(s) (%.3fs)",
            table_set.name, len(batch.deletions), len(batch.updates), time.perf_counter() - t0,
        )
        return batch
