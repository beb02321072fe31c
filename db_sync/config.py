"""
Replicator configuration.

A JSON file describes the topology and the replication knobs; secrets can come
from the environment (a `.env` file is loaded with python-dotenv). Values set
at the root of the file act as defaults for every node:

    {
      "user": "replicator",
      "password_env": "DB_SYNC_PASSWORD",
      "source": {"host": "db-eu", "database": "gitpod"},
      "targets": [{"host": "db-us", "database": "gitpod"}],
      "table_set": "gitpod",
      "replication_log_dir": "/var/log/db-sync"
    }
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv

LOG = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).resolve().parent / "catalog.json"


class ConfigError(RuntimeError):
    """Invalid or incomplete configuration."""


# ============================== Config model ===============================

@dataclass(frozen=True)
class ConnectionConfig:
    host: str
    database: str
    user: str
    password: str = ""
    port: int = 3306
    name: str | None = None
    time_zone: str = "+00:00"
    connect_timeout: int = 10
    read_timeout: int | None = None
    write_timeout: int | None = None

    @property
    def display_name(self) -> str:
        return self.name or f"{self.host}:{self.port}/{self.database}"


@dataclass(frozen=True)
class ReplicationConfig:
    source: ConnectionConfig
    targets: List[ConnectionConfig] = field(default_factory=list)
    round_robin: bool = False
    table_set: str | None = None
    catalog_path: str = str(DEFAULT_CATALOG_PATH)
    sync_interval_seconds: int = 900
    clock_skew_offset_seconds: int = 5
    replication_log_dir: str | None = None
    log_retention_days: float = 2
    disable_transactions: bool = False
    batch_size: int = 100
    transaction_size_limit_bytes: int = 8 * 1024 * 1024
    max_workers: int = 5
    alert_webhook_url: str | None = None

    @property
    def nodes(self) -> List[ConnectionConfig]:
        return [self.source, *self.targets]


# ------------------------ Configuration helpers ------------------------

def _cfg_get(root: Dict[str, Any], node: Dict[str, Any], key: str, default=None):
    return node.get(key, root.get(key, default))


def _create_connection_config(root: Dict[str, Any], node: Dict[str, Any]) -> ConnectionConfig:
    host = _cfg_get(root, node, "host")
    database = _cfg_get(root, node, "database")
    user = _cfg_get(root, node, "user")
    missing = [k for k, v in (("host", host), ("database", database), ("user", user)) if not v]
    if missing:
        raise ConfigError(f"Connection {node!r} is missing {', '.join(missing)}")

    password = node.get("password")
    if password is None:
        password_env = _cfg_get(root, node, "password_env")
        if password_env:
            password = os.getenv(password_env)
            if password is None:
                raise ConfigError(f"Environment variable {password_env} (password for {host}) is not set")
        else:
            password = root.get("password", "")

    read_timeout = _cfg_get(root, node, "read_timeout")
    write_timeout = _cfg_get(root, node, "write_timeout")
    return ConnectionConfig(
        host=host,
        port=int(_cfg_get(root, node, "port", 3306)),
        database=database,
        user=user,
        password=password,
        name=node.get("name"),
        time_zone=_cfg_get(root, node, "time_zone", "+00:00"),
        connect_timeout=int(_cfg_get(root, node, "connect_timeout", 10)),
        read_timeout=int(read_timeout) if read_timeout is not None else None,
        write_timeout=int(write_timeout) if write_timeout is not None else None,
    )


def config_from_dict(root: Dict[str, Any], base_dir: Optional[Path] = None) -> ReplicationConfig:
    if not isinstance(root.get("source"), dict):
        raise ConfigError("Configuration needs a 'source' connection")
    targets_raw = root.get("targets", [])
    if not isinstance(targets_raw, list):
        raise ConfigError("'targets' must be a list of connections")

    source = _create_connection_config(root, root["source"])
    targets = [_create_connection_config(root, t) for t in targets_raw]
    if not targets:
        raise ConfigError("Configuration needs at least one target")
    names = [n.display_name for n in (source, *targets)]
    if len(set(names)) != len(names):
        raise ConfigError(f"Node names must be unique: {names}")

    catalog_path = root.get("catalog_path")
    if catalog_path:
        p = Path(catalog_path)
        if not p.is_absolute() and base_dir is not None:
            p = base_dir / p
        catalog_path = str(p)
    else:
        catalog_path = str(DEFAULT_CATALOG_PATH)

    cfg = ReplicationConfig(
        source=source,
        targets=targets,
        round_robin=bool(root.get("round_robin", False)),
        table_set=root.get("table_set") or None,
        catalog_path=catalog_path,
        sync_interval_seconds=int(root.get("sync_interval_seconds", 900)),
        clock_skew_offset_seconds=int(root.get("clock_skew_offset_seconds", 5)),
        replication_log_dir=root.get("replication_log_dir") or None,
        log_retention_days=float(root.get("log_retention_days", 2)),
        disable_transactions=bool(root.get("disable_transactions", False)),
        batch_size=int(root.get("batch_size", 100)),
        transaction_size_limit_bytes=int(root.get("transaction_size_limit_bytes", 8 * 1024 * 1024)),
        max_workers=int(root.get("max_workers", 5)),
        alert_webhook_url=root.get("alert_webhook_url") or os.getenv("DISCORD_WEBHOOK") or None,
    )
    if cfg.sync_interval_seconds <= 0:
        raise ConfigError("sync_interval_seconds must be positive")
    if cfg.clock_skew_offset_seconds < 0:
        raise ConfigError("clock_skew_offset_seconds must not be negative")
    if cfg.batch_size <= 0:
        raise ConfigError("batch_size must be positive")
    return cfg


def load_config(config_path: str | Path | None = None) -> ReplicationConfig:
    load_dotenv()
    if config_path is None:
        config_path = os.getenv("DB_SYNC_CONFIG", "").strip()
        if not config_path:
            raise ConfigError("No configuration file given (use --config or DB_SYNC_CONFIG)")
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")
    raw = path.read_text(encoding="utf-8").strip()
    if not raw:
        raise ConfigError(f"Configuration file {path} is empty")
    try:
        root = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in configuration file {path}: {e}") from e
    if not isinstance(root, dict):
        raise ConfigError(f"Configuration file {path} must contain a JSON object")

    cfg = config_from_dict(root, base_dir=path.parent)
    LOG.info(
        "Loaded configuration from %s: source=%s targets=%s round_robin=%s table_set=%s",
        path, cfg.source.display_name, [t.display_name for t in cfg.targets], cfg.round_robin, cfg.table_set,
    )
    return cfg
