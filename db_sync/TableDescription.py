from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from db_sync.config import ConfigError

LOG = logging.getLogger(__name__)

# ============================== Config model ===============================

@dataclass(frozen=True)
class TableDescription:
    name: str
    primary_keys: Tuple[str, ...]          # ordered; order is kept in generated SQL
    time_column: str                       # must be a `timestamp` column
    deletion_column: str | None = None     # soft-delete flag
    expiry_column: str | None = None       # epoch seconds; expired rows are not exported
    ignore_columns: Tuple[str, ...] = ()
    dependencies: Tuple[str, ...] = ()


class TableConfigError(ConfigError):
    """A table description does not match the table found in the database."""


# ============================== Table sets ===============================

class TableSet:
    """A named catalog of tables that replicate together."""

    def __init__(self, name: str, tables: List[TableDescription]):
        self.name = name
        self.tables = list(tables)

    def get_sorted_tables(self) -> List[TableDescription]:
        """
        Dependency-first order: every table comes after the tables it depends on.
        Tables without a dependency relation keep their declaration order.
        """
        by_name = {t.name: t for t in self.tables}
        visited: Dict[str, bool] = {}  # False = in progress, True = done
        result: List[TableDescription] = []

        def visit(t: TableDescription) -> None:
            state = visited.get(t.name)
            if state is True:
                return
            if state is False:
                raise ConfigError(f"Dependency cycle detected at table {t.name!r} in table set {self.name!r}")
            visited[t.name] = False
            for dep in t.dependencies:
                if dep not in by_name:
                    raise ConfigError(
                        f"Table {t.name!r} depends on unknown table {dep!r} in table set {self.name!r}"
                    )
                visit(by_name[dep])
            visited[t.name] = True
            result.append(t)

        for t in self.tables:
            visit(t)
        if LOG.isEnabledFor(logging.DEBUG):
            LOG.debug("Sorted tables for %s: %s", self.name, [t.name for t in result])
        return result


class TableSetRegistry:
    """Ordered registry of table sets built once at startup."""

    def __init__(self, table_sets: List[TableSet], default: Optional[str] = None):
        self._sets: Dict[str, TableSet] = {}
        for ts in table_sets:
            if ts.name in self._sets:
                raise ConfigError(f"Duplicate table set name: {ts.name}")
            self._sets[ts.name] = ts
        if default is None and table_sets:
            default = table_sets[0].name
        if default is not None and default not in self._sets:
            raise ConfigError(f"Default table set {default!r} is not defined")
        self.default = default

    @property
    def names(self) -> List[str]:
        return list(self._sets)

    def get(self, name: Optional[str] = None) -> TableSet:
        key = name or self.default
        if key is None:
            raise ConfigError("No table sets are registered")
        try:
            return self._sets[key]
        except KeyError:
            raise ConfigError(f"Unknown table set: {key!r} (known: {', '.join(self._sets)})") from None


# ------------------------ Catalog helpers ------------------------

def _as_tuple(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(c.strip() for c in value.split(",") if c.strip())
    return tuple(str(c) for c in value)


def _create_table_description(tbl: Dict[str, Any]) -> TableDescription:
    try:
        name = tbl["name"]
        time_column = tbl["time_column"]
    except KeyError as e:
        raise ConfigError(f"Catalog table entry {tbl!r} is missing {e.args[0]!r}") from e
    primary_keys = _as_tuple(tbl.get("primary_keys"))
    if not primary_keys:
        raise ConfigError(f"Table {name!r} needs at least one primary key column")

    return TableDescription(
        name=name,
        primary_keys=primary_keys,
        time_column=time_column,
        deletion_column=tbl.get("deletion_column") or None,
        expiry_column=tbl.get("expiry_column") or None,
        ignore_columns=_as_tuple(tbl.get("ignore_columns")),
        dependencies=_as_tuple(tbl.get("dependencies")),
    )


def registry_from_dict(catalog: Dict[str, Any]) -> TableSetRegistry:
    sets_raw = catalog.get("table_sets")
    if not isinstance(sets_raw, list):
        raise ConfigError("Catalog must contain a list of table sets under 'table_sets'")
    table_sets = []
    for ts in sets_raw:
        if not isinstance(ts, dict) or not ts.get("name"):
            raise ConfigError(f"Invalid table set entry: {ts!r}")
        tables = [_create_table_description(t) for t in ts.get("tables", [])]
        table_sets.append(TableSet(ts["name"], tables))
        LOG.info("Loaded table set %s with %d table(s)", ts["name"], len(tables))
    return TableSetRegistry(table_sets, default=catalog.get("default"))


def load_catalog(path: str | Path) -> TableSetRegistry:
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Catalog file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ConfigError(f"Catalog file {path} is empty")
    try:
        catalog = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in catalog file {path}: {e}") from e
    LOG.info("Loaded catalog from %s", path)
    return registry_from_dict(catalog)
