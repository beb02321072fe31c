from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from typing import Any, Dict, List, Optional

import pendulum
import pymysql

from db_sync.alerts import send_discord_alert
from db_sync.config import ReplicationConfig
from db_sync.engine import StatementBatch, TableUpdateProvider
from db_sync.period import SyncPeriod, SyncPeriodCalculator
from db_sync.replication_log import ReplicationLogWriter
from db_sync.watermark import WatermarkStore, format_watermark

LOG = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_TRANSACTION_SIZE_LIMIT = 8 * 1024 * 1024


class ShutdownRequested(Exception):
    """Raised at a safe point of a tick once a shutdown was requested."""


class PeriodicReplicator:
    """
    Replicates one source node to its targets on a fixed interval.

    One tick computes the window since the last export, compiles the changed
    rows of the table set into statements, applies deletions everywhere
    (source included) and upserts to the targets, then advances the watermark.
    Ticks never overlap; a failed tick leaves the watermark alone so the next
    one retries the same window.
    """

    def __init__(
        self,
        source,
        targets: List[Any],
        provider: TableUpdateProvider,
        *,
        table_set: Optional[str] = None,
        sync_interval_seconds: int = 900,
        clock_skew_offset_seconds: int = 5,
        log_writer: Optional[ReplicationLogWriter] = None,
        disable_transactions: bool = False,
        batch_size: int = DEFAULT_BATCH_SIZE,
        transaction_size_limit_bytes: int = DEFAULT_TRANSACTION_SIZE_LIMIT,
        alert_webhook_url: Optional[str] = None,
        shutdown_event: Optional[threading.Event] = None,
        logger: logging.Logger | None = None,
    ):
        self.source = source
        self.targets = list(targets)
        self.provider = provider
        self.table_set = table_set
        self.sync_interval_seconds = sync_interval_seconds
        self.clock_skew_offset_seconds = clock_skew_offset_seconds
        self.log_writer = log_writer
        self.disable_transactions = disable_transactions
        self.batch_size = batch_size
        self.transaction_size_limit_bytes = transaction_size_limit_bytes
        self.alert_webhook_url = alert_webhook_url
        self.shutdown_event = shutdown_event or threading.Event()
        self.log = logger or logging.getLogger(__name__)

        self.watermark = WatermarkStore(source, logger=self.log)
        self.period_calculator = SyncPeriodCalculator(source, self.watermark, logger=self.log)
        self.last_result: Optional[Dict[str, Any]] = None
        self.last_error: Optional[BaseException] = None
        self._tick_lock = threading.Lock()
        self._running = False

    @classmethod
    def from_config(cls, cfg: ReplicationConfig, source, targets: List[Any], provider: TableUpdateProvider,
                    log_writer: Optional[ReplicationLogWriter] = None,
                    shutdown_event: Optional[threading.Event] = None) -> "PeriodicReplicator":
        return cls(
            source,
            targets,
            provider,
            table_set=cfg.table_set,
            sync_interval_seconds=cfg.sync_interval_seconds,
            clock_skew_offset_seconds=cfg.clock_skew_offset_seconds,
            log_writer=log_writer,
            disable_transactions=cfg.disable_transactions,
            batch_size=cfg.batch_size,
            transaction_size_limit_bytes=cfg.transaction_size_limit_bytes,
            alert_webhook_url=cfg.alert_webhook_url,
            shutdown_event=shutdown_event,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def nodes(self) -> List[Any]:
        return [self.source, *self.targets]

    # ------------------------ Scheduling ------------------------

    def start(self, force_initial_sync: bool = False) -> None:
        """Synchronize now, then every `sync_interval_seconds` until shutdown."""
        try:
            self.synchronize(force_initial_sync)
        except ShutdownRequested:
            self.log.info("Shutdown requested during initial replication from %s", self.source.name)
            return
        self.run_periodically()

    def run_periodically(self) -> None:
        interval = self.sync_interval_seconds
        self.log.info("Replicating from %s every %ds", self.source.name, interval)
        next_tick = time.monotonic() + interval
        while not self.shutdown_event.is_set():
            if self.shutdown_event.wait(max(0.0, next_tick - time.monotonic())):
                break
            now = time.monotonic()
            next_tick += interval
            if next_tick <= now:
                # a tick overran one or more intervals; those ticks are skipped, not queued
                next_tick = now + interval
            try:
                self.synchronize(False)
            except ShutdownRequested:
                break
        self.log.info("Stopped replicating from %s", self.source.name)

    def mark_last_export_date(self, when: datetime) -> str:
        """Set the watermark by hand, e.g. to start replicating from a known point."""
        return self.watermark.advance(when)

    def request_shutdown(self) -> None:
        self.shutdown_event.set()

    def _check_shutdown(self, node) -> None:
        if self.shutdown_event.is_set():
            self.log.info("Shutdown requested; not applying statements to %s", node.name)
            raise ShutdownRequested(node.name)

    # ------------------------ One tick ------------------------

    def synchronize(self, ignore_previous_watermark: bool) -> Optional[Dict[str, Any]]:
        if not self._tick_lock.acquire(blocking=False):
            self.log.warning("Replication from %s is already running, skipping this time", self.source.name)
            return None
        self._running = True
        t0 = time.perf_counter()
        self.last_error = None
        try:
            period = self.period_calculator.compute_sync_period(
                ignore_previous_watermark, self.clock_skew_offset_seconds
            )
            if period is None:
                self.log.info("Nothing to replicate from %s this time", self.source.name)
                return None

            batch = self.provider.get_all_statements_for_all_tables(self.source, self.table_set, period)
            self._write_replication_log(batch, period)

            # deletions first and everywhere, so no target can resurrect a row from a stale upsert
            self._apply_to_all(self.nodes, batch.deletions, "deletions")
            self._apply_to_all(self.targets, batch.updates, "updates")

            watermark = self.watermark.advance(period.to)
            result = {
                "source": self.source.name,
                "targets": [t.name for t in self.targets],
                "from": format_watermark(period.from_) if period.from_ else None,
                "to": watermark,
                "deletions": len(batch.deletions),
                "updates": len(batch.updates),
                "elapsed": round(time.perf_counter() - t0, 3),
            }
            self.last_result = result
            self.log.info("✅ Replication from %s finished: %s", self.source.name, result)
            return result
        except ShutdownRequested:
            self.log.info("Replication from %s interrupted by shutdown; watermark not advanced", self.source.name)
            raise
        except Exception as e:
            self.last_error = e
            self.log.error(
                "❌ Replication from %s failed; watermark not advanced, retrying on next run",
                self.source.name, exc_info=True,
            )
            return None
        finally:
            self._running = False
            self._tick_lock.release()

    def _write_replication_log(self, batch: StatementBatch, period: SyncPeriod) -> None:
        if self.log_writer is None:
            return
        try:
            end_millis = round(pendulum.instance(period.to, tz="UTC").timestamp() * 1000)
            self.log_writer.submit(self.table_set or "default", end_millis, batch.all_statements)
        except Exception:
            self.log.warning("Could not start writing the replication log", exc_info=True)

    def _apply_to_all(self, nodes: List[Any], statements: List[str], phase: str) -> None:
        if not statements or not nodes:
            self.log.debug("No %s to apply", phase)
            return
        self.log.info("Applying %d %s to %d node(s)", len(statements), phase, len(nodes))
        errors: List[BaseException] = []
        with ThreadPoolExecutor(max_workers=len(nodes), thread_name_prefix=f"apply-{phase}") as executor:
            futures = {executor.submit(self.update, node, statements, self.batch_size): node for node in nodes}
            for f in as_completed(futures):
                node = futures[f]
                try:
                    f.result()
                except ShutdownRequested as e:
                    errors.insert(0, e)
                except Exception as e:
                    self.log.error("Applying %s to %s failed: %s", phase, node.name, e)
                    errors.append(e)
        if errors:
            raise errors[0]

    # ------------------------ Batched apply ------------------------

    def update(self, node, statements: List[str], batch_size: int = DEFAULT_BATCH_SIZE) -> Dict[str, Any]:
        """
        Apply `statements` to `node` in batches of `batch_size`.

        The node's lock is held from START TRANSACTION to COMMIT/ROLLBACK: in round
        robin the same connection is a target of every peer, and another
        replicator's statements must not land inside this transaction.
        """
        self._check_shutdown(node)
        t0 = time.perf_counter()
        total_bytes = sum(len(s.encode("utf-8")) for s in statements)
        in_transaction = total_bytes < self.transaction_size_limit_bytes and not self.disable_transactions
        if not in_transaction:
            self.log.info(
                "Applying %d statement(s) (%d bytes) to %s without a transaction", len(statements), total_bytes, node.name
            )

        batches = 0
        with node.lock:
            if in_transaction:
                node.execute_batch("START TRANSACTION;")
            try:
                for i in range(0, len(statements), batch_size):
                    node.execute_batch("\n".join(statements[i:i + batch_size]))
                    batches += 1
                if in_transaction:
                    node.execute_batch("COMMIT;")
            except Exception:
                if in_transaction:
                    try:
                        node.execute_batch("ROLLBACK;")
                        self.log.error("Update of %s failed in batch %d; rolled back", node.name, batches + 1)
                    except pymysql.MySQLError:
                        self.log.error("Rollback on %s failed", node.name, exc_info=True)
                else:
                    message = (
                        f"Non-transactional update of {node.name} failed after {batches} batch(es); "
                        f"the database may be inconsistent until the next successful replication"
                    )
                    self.log.error("⚠️ %s", message)
                    if self.alert_webhook_url:
                        send_discord_alert(message, self.alert_webhook_url)
                raise

        result = {
            "node": node.name,
            "statements": len(statements),
            "batches": batches,
            "bytes": total_bytes,
            "transaction": in_transaction,
            "elapsed": round(time.perf_counter() - t0, 3),
        }
        self.log.info("Applied to %s: %s", node.name, result)
        return result


# ============================== Topologies ===============================

def build_round_robin(cfg: ReplicationConfig, nodes: List[Any], provider: TableUpdateProvider,
                      log_writer: Optional[ReplicationLogWriter] = None,
                      shutdown_event: Optional[threading.Event] = None) -> List[PeriodicReplicator]:
    """One replicator per node: that node as source, every other node as target."""
    replicators = []
    for i, node in enumerate(nodes):
        others = nodes[:i] + nodes[i + 1:]
        replicators.append(PeriodicReplicator.from_config(
            cfg, node, others, provider, log_writer=log_writer, shutdown_event=shutdown_event,
        ))
    return replicators


def start_all(replicators: List[PeriodicReplicator], force_initial_sync: bool = False) -> List[threading.Thread]:
    """
    Initial synchronizations run one after the other so the peers do not all hit
    the same targets at once; the periodic loops then run side by side.
    """
    for r in replicators:
        try:
            r.synchronize(force_initial_sync)
        except ShutdownRequested:
            LOG.info("Shutdown requested during initial replication; not starting periodic runs")
            return []

    threads = []
    for r in replicators:
        t = threading.Thread(target=r.run_periodically, name=f"replicator-{r.source.name}", daemon=True)
        t.start()
        threads.append(t)
    return threads
