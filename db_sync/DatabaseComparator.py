import hashlib
import logging
from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pendulum
import pymysql

from db_sync.TableDescription import TableDescription, TableSetRegistry
from db_sync.engine import _get_column_types
from db_sync.watermark import WatermarkStore, format_watermark

logger = logging.getLogger(__name__)

# ============================== Helper funcs ===============================

_EMPTY_MD5 = "d41d8cd98f00b204e9800998ecf8427e"


def _compose_where(conditions: Sequence[str]) -> str:
    if conditions:
        return " WHERE " + " AND ".join(conditions)
    return ""


def _concat_text_exprs(columns: Sequence[str]) -> str:
    parts = [f"COALESCE(CAST({c} AS CHAR), 'NULL')" for c in columns]
    return f"CONCAT_WS('||', {', '.join(parts)})"


# ============================== DatabaseComparator ===============================

class DatabaseComparator:
    """
    Compare one table between a source node and a target node.

    Only rows the replicator is expected to have shipped are compared: rows
    stamped at or before `until` (the source watermark) that have not expired.
    """

    def __init__(self, table: TableDescription):
        self.table = table
        self.mismatched_data: Dict[str, List[str]] = {}
        self.is_consistent = True

    # ---------- Filter ----------
    def _filter(self, until: Optional[datetime]) -> Tuple[str, Tuple]:
        conditions: List[str] = []
        params: List[Any] = []
        if until is not None:
            conditions.append(f"{self.table.time_column} <= %s")
            params.append(until)
        if self.table.expiry_column:
            conditions.append(f"{self.table.expiry_column} >= %s")
            params.append(pendulum.now("UTC").timestamp())
        return _compose_where(conditions), tuple(params)

    # ---------- Metadata ----------
    def get_row_count(self, node, where: str = "", params: Tuple = ()) -> int:
        try:
            rows = node.query(f"SELECT COUNT(*) AS cnt FROM {self.table.name}{where}", params)
            logger.info("Counting %s on %s with [%s] params=%s", self.table.name, node.name, where.strip() or "<none>", params)
            return int(rows[0]["cnt"]) if rows else 0
        except pymysql.MySQLError as e:
            logger.error("Error counting rows in %s on %s: %s", self.table.name, node.name, e)
            return -1

    def get_max_time(self, node, where: str = "", params: Tuple = ()) -> Optional[datetime]:
        col = self.table.time_column
        try:
            rows = node.query(f"SELECT MAX({col}) AS max_time FROM {self.table.name}{where}", params)
            return rows[0]["max_time"] if rows else None
        except pymysql.MySQLError as e:
            logger.error("Error reading MAX(%s) from %s on %s: %s", col, self.table.name, node.name, e)
            return None

    # ---------- Hashing ----------
    def generate_table_hash(self, node, where: str = "", params: Tuple = ()) -> Optional[str]:
        """MD5 over the per-row MD5s of primary key and time column, in primary key order."""
        table = self.table
        order_by = ", ".join(table.primary_keys)
        concat_cols = _concat_text_exprs([*table.primary_keys, table.time_column])
        q = f"SELECT MD5({concat_cols}) AS row_hash FROM {table.name}{where} ORDER BY {order_by}"
        digest = hashlib.md5()
        try:
            for row in node.stream(q, params):
                digest.update(row["row_hash"].encode("ascii"))
        except pymysql.MySQLError as e:
            logger.error("Error hashing %s on %s: %s", table.name, node.name, e)
            return None
        return digest.hexdigest()

    # ---------- Orchestration ----------
    def run_comparison(self, source, target, until: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Returns: {"mismatched_data": {"<table> (<src> -> <dst>)": [issues...]}, "is_consistent": bool}
        """
        table = self.table
        table_key = f"{table.name} ({source.name} -> {target.name})"
        self.mismatched_data = {table_key: []}
        issues = self.mismatched_data[table_key]

        # 1) Column schemas
        src_cols = _get_column_types(source, table.name)
        dst_cols = _get_column_types(target, table.name)
        if not src_cols or not dst_cols:
            missing_on = source.name if not src_cols else target.name
            logger.error("❌ Table %s does not exist on %s.", table.name, missing_on)
            issues.append(f"Table missing on {missing_on}")
            self.is_consistent = False
            return self._result()
        if set(src_cols) != set(dst_cols):
            logger.error("❌ Column schema mismatch for %s between %s and %s.", table.name, source.name, target.name)
            issues.append("Column schema differs between databases")
            self.is_consistent = False
            return self._result()

        where, params = self._filter(until)

        # 2) Row counts
        src_cnt = self.get_row_count(source, where, params)
        dst_cnt = self.get_row_count(target, where, params)
        logger.info("Row counts for %s -> %s: %s, %s: %s", table.name, source.name, src_cnt, target.name, dst_cnt)
        if src_cnt != dst_cnt:
            logger.error("❌ Row count mismatch: source=%s, destination=%s", src_cnt, dst_cnt)
            issues.append(f"Row count mismatch (src={src_cnt}, dst={dst_cnt})")
            self.is_consistent = False
            return self._result()

        # 3) Newest change
        src_max = self.get_max_time(source, where, params)
        dst_max = self.get_max_time(target, where, params)
        if src_max != dst_max:
            logger.error("❌ MAX(%s) mismatch for %s: source=%s, destination=%s", table.time_column, table.name, src_max, dst_max)
            issues.append(f"MAX({table.time_column}) mismatch (src={src_max}, dst={dst_max})")

        # 4) Key/time hash
        if src_cnt == 0:
            src_hash = dst_hash = _EMPTY_MD5
        else:
            src_hash = self.generate_table_hash(source, where, params)
            dst_hash = self.generate_table_hash(target, where, params)
        logger.info("Source hash: %s", src_hash)
        logger.info("Dest   hash: %s", dst_hash)
        if src_hash is None or dst_hash is None or src_hash != dst_hash:
            logger.error("❌ MISMATCH at table level for %s.", table.name)
            issues.append("Primary key / time column hash differs")

        self.is_consistent = not issues
        if self.is_consistent:
            logger.info("✅ Table %s is consistent.", table.name)
        return self._result()

    def _result(self) -> Dict[str, Any]:
        return {
            "mismatched_data": {k: list(v) for k, v in self.mismatched_data.items()},
            "is_consistent": self.is_consistent,
        }


# =====================================================================================
# Helpers: run a whole table set and summarize
# =====================================================================================

def compare_table_set(source, targets: Sequence[Any], registry: TableSetRegistry,
                      table_set_name: Optional[str] = None) -> Dict[str, Any]:
    table_set = registry.get(table_set_name)
    until = WatermarkStore(source).get()
    if until is None:
        logger.warning("No previous export on %s; comparing all rows", source.name)
    else:
        logger.info("Comparing rows up to the last export on %s (%s)", source.name, format_watermark(until))

    merged: Dict[str, List[str]] = defaultdict(list)
    for table in table_set.get_sorted_tables():
        comparer = DatabaseComparator(table)
        for target in targets:
            logger.info("▶️ Comparing table %s (%s → %s)", table.name, source.name, target.name)
            try:
                res = comparer.run_comparison(source, target, until=until)
            except pymysql.MySQLError as e:
                logger.exception("❌ Error comparing %s: %s", table.name, e)
                merged[f"{table.name} ({source.name} -> {target.name})"].append(f"ERROR: {e}")
                continue
            for tbl_key, issues in res["mismatched_data"].items():
                merged[tbl_key].extend(issues)

    merged = {tbl: sorted(set(vals)) for tbl, vals in merged.items() if vals}
    payload = {
        "mismatched_data": merged,
        "is_consistent": len(merged) == 0,
    }
    logger.info("📦 Comparison payload: %s", {"is_consistent": payload["is_consistent"], "count": len(merged)})
    return payload


def summarize_results(payload: Dict[str, Any]) -> str:
    """Logs the per-table issues and returns a one-line summary."""
    inconsistent = {tbl: details for tbl, details in payload.get("mismatched_data", {}).items() if details}

    logger.info("\n%s\n📊 CONSISTENCY CHECK SUMMARY\n%s", "=" * 50, "=" * 50)
    if not inconsistent:
        logger.info("🎉 All checked tables are consistent!")
        return "0 table(s) mismatched"

    n = len(inconsistent)
    logger.warning("🚨 Found inconsistencies in %d table(s):", n)
    for table, details in sorted(inconsistent.items()):
        logger.warning("  - Table: '%s'  (%d issue%s)", table, len(details), "" if len(details) == 1 else "s")
        for d in details:
            logger.warning("    • %s", d)
    return f"{n} table(s) mismatched"


def format_alert(source_name: str, payload: Dict[str, Any], summary: str) -> str:
    lines: List[str] = []
    for tbl, issues in sorted(payload.get("mismatched_data", {}).items()):
        issues_txt = " | ".join(issues[:10]) + ("" if len(issues) <= 10 else " | …")
        lines.append(f"- `{tbl}`: {issues_txt}")
    body = "\n".join(lines) if lines else "No details."
    return f"❗ **Database inconsistency detected**\nsource `{source_name}`\n{summary}\n{body}"
