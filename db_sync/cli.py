"""
Command line entry point.

    db-sync run -c config.json [--force] [--once]
    db-sync compare -c config.json
"""
from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

import pymysql

from db_sync.DatabaseComparator import compare_table_set, format_alert, summarize_results
from db_sync.TableDescription import load_catalog
from db_sync.alerts import send_discord_alert
from db_sync.config import ConfigError, ReplicationConfig, load_config
from db_sync.connections import NamedConnection, connect
from db_sync.engine import TableUpdateProvider
from db_sync.replication import PeriodicReplicator, ShutdownRequested, build_round_robin, start_all
from db_sync.replication_log import ReplicationLogWriter

LOG = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2


def _configure_logging(verbose: bool = False) -> None:
    level = "DEBUG" if verbose else os.getenv("DB_SYNC_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="db-sync", description="Periodic timestamp-based MySQL replication")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="replicate periodically until interrupted")
    run.add_argument("-c", "--config", help="configuration file (default: $DB_SYNC_CONFIG)")
    run.add_argument("--force", action="store_true",
                     help="ignore the previous watermark on the first run and replicate everything")
    run.add_argument("--once", action="store_true", help="run a single synchronization and exit")

    compare = sub.add_parser("compare", help="compare the table set between the source and its targets")
    compare.add_argument("-c", "--config", help="configuration file (default: $DB_SYNC_CONFIG)")
    return parser


def _connect_all(cfg: ReplicationConfig) -> List[NamedConnection]:
    nodes: List[NamedConnection] = []
    try:
        for node_cfg in cfg.nodes:
            nodes.append(connect(node_cfg))
    except Exception:
        _close_all(nodes)
        raise
    return nodes


def _close_all(nodes: List[NamedConnection]) -> None:
    for node in nodes:
        node.close()


def _build_replicators(cfg: ReplicationConfig, nodes: List[NamedConnection], shutdown: threading.Event) -> List[PeriodicReplicator]:
    registry = load_catalog(cfg.catalog_path)
    registry.get(cfg.table_set)  # unknown table set fails at startup, not on the first tick
    provider = TableUpdateProvider(registry, max_workers=cfg.max_workers)
    log_writer = None
    if cfg.replication_log_dir:
        log_writer = ReplicationLogWriter(cfg.replication_log_dir, retention_days=cfg.log_retention_days)

    if cfg.round_robin:
        return build_round_robin(cfg, nodes, provider, log_writer=log_writer, shutdown_event=shutdown)
    return [PeriodicReplicator.from_config(cfg, nodes[0], nodes[1:], provider, log_writer=log_writer,
                                           shutdown_event=shutdown)]


def _install_signal_handlers(replicators: List[PeriodicReplicator], shutdown: threading.Event) -> None:
    def _handle(signum, _frame):
        name = signal.Signals(signum).name
        if shutdown.is_set():
            LOG.warning("Received %s again; exiting now", name)
            raise SystemExit(EXIT_FAILURE)
        if any(r.running for r in replicators):
            LOG.info("Received %s; exiting after the current replication", name)
        else:
            LOG.info("Received %s; no replication running, exiting", name)
        shutdown.set()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def cmd_run(args) -> int:
    cfg = load_config(args.config)
    shutdown = threading.Event()
    nodes = _connect_all(cfg)
    replicators: List[PeriodicReplicator] = []
    try:
        replicators = _build_replicators(cfg, nodes, shutdown)
        _install_signal_handlers(replicators, shutdown)

        if args.once:
            failed = []
            for r in replicators:
                try:
                    r.synchronize(args.force)
                except ShutdownRequested:
                    return EXIT_OK
                if r.last_error is not None:
                    failed.append(r.source.name)
            if failed:
                LOG.error("Replication failed for source(s): %s", ", ".join(failed))
                return EXIT_FAILURE
            return EXIT_OK

        threads = start_all(replicators, force_initial_sync=args.force)
        for t in threads:
            # join with a timeout keeps the main thread responsive to signals
            while t.is_alive():
                t.join(0.5)
        return EXIT_OK
    finally:
        for writer in {id(r.log_writer): r.log_writer for r in replicators if r.log_writer}.values():
            writer.flush(timeout=10)
        _close_all(nodes)


def cmd_compare(args) -> int:
    cfg = load_config(args.config)
    registry = load_catalog(cfg.catalog_path)
    nodes = _connect_all(cfg)
    try:
        payload = compare_table_set(nodes[0], nodes[1:], registry, cfg.table_set)
    finally:
        _close_all(nodes)

    summary = summarize_results(payload)
    if payload["is_consistent"]:
        return EXIT_OK
    if cfg.alert_webhook_url:
        send_discord_alert(format_alert(nodes[0].name, payload, summary), cfg.alert_webhook_url)
    return EXIT_FAILURE


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    try:
        if args.command == "compare":
            return cmd_compare(args)
        return cmd_run(args)
    except ConfigError as e:
        LOG.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    except pymysql.MySQLError as e:
        LOG.error("Database error: %s", e)
        return EXIT_FAILURE


if __name__ == "__main__":
    sys.exit(main())
