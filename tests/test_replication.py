from __future__ import annotations

import threading
import time
from datetime import datetime, timezone

import pymysql
import pytest

from conftest import names_row
from db_sync.config import config_from_dict
from db_sync.engine import TableUpdateProvider
from db_sync.replication import PeriodicReplicator, ShutdownRequested, build_round_robin, start_all
from db_sync.replication_log import ReplicationLogWriter

ROW_TIME = datetime(2024, 1, 1, 11, 30)
WATERMARK = "2024-01-01T11:00:00.000Z"
# FakeNode's clock is 12:00:00.123456; minus the 5s skew offset
EXPECTED_TO = "2024-01-01T11:59:55.123Z"


@pytest.fixture
def source(make_node):
    return make_node("src", watermark=WATERMARK, rows={"names": [
        names_row("a", "Foo", ROW_TIME),
        names_row("b", "Bar", ROW_TIME, deleted=1),
    ]})


@pytest.fixture
def target(make_node):
    return make_node("dst")


@pytest.fixture
def replicator_factory(names_registry):
    def _make(source, targets, **kwargs) -> PeriodicReplicator:
        kwargs.setdefault("table_set", "test")
        return PeriodicReplicator(source, targets, TableUpdateProvider(names_registry), **kwargs)
    return _make


def _statements(batches):
    return [b for b in batches if b not in ("START TRANSACTION;", "COMMIT;", "ROLLBACK;")]


class TestSynchronize:
    def test_deletions_everywhere_updates_to_targets(self, source, target, replicator_factory) -> None:
        result = replicator_factory(source, [target]).synchronize(False)

        delete = "DELETE FROM names WHERE uid='b' AND _lastModified<='2024-01-01 11:30:00';"
        assert source.batches == ["START TRANSACTION;", delete, "COMMIT;"]
        assert target.batches[:3] == ["START TRANSACTION;", delete, "COMMIT;"]
        assert target.batches[3] == "START TRANSACTION;"
        upserts = target.batches[4].split("\n")
        assert upserts[0].startswith("INSERT IGNORE INTO names (uid,name,_lastModified,_deleted) VALUES ('a','Foo',")
        assert upserts[1].startswith("UPDATE names SET name='Foo'")
        assert target.batches[5] == "COMMIT;"

        assert source.watermark == EXPECTED_TO
        assert result["to"] == EXPECTED_TO
        assert result["from"] == "2024-01-01T11:00:00.000Z"
        assert (result["deletions"], result["updates"]) == (1, 2)

    def test_targets_never_advance_their_watermark(self, source, target, replicator_factory) -> None:
        replicator_factory(source, [target]).synchronize(False)
        assert target.watermark is None

    def test_full_resync_reads_without_lower_bound(self, source, target, replicator_factory) -> None:
        replicator_factory(source, [target]).synchronize(True)
        sql, params = source.streamed[0]
        assert ">=" not in sql
        assert len(params) == 1

    def test_empty_window_is_skipped(self, source, target, replicator_factory) -> None:
        source.watermark = "2024-01-01T11:59:58.000Z"
        assert replicator_factory(source, [target]).synchronize(False) is None
        assert source.batches == [] and target.batches == []
        assert source.watermark == "2024-01-01T11:59:58.000Z"

    def test_failure_rolls_back_and_keeps_watermark(self, source, make_node, replicator_factory) -> None:
        target = make_node("dst", fail_batch=lambda sql: sql.startswith("INSERT"))
        r = replicator_factory(source, [target])

        assert r.synchronize(False) is None
        assert target.batches[-1] == "ROLLBACK;"
        assert target.batches[-2].startswith("INSERT")
        assert "COMMIT;" not in target.batches[3:]
        assert isinstance(r.last_error, pymysql.err.OperationalError)
        assert source.watermark == WATERMARK
        assert not r.running

    def test_next_run_retries_the_same_window(self, source, make_node, replicator_factory) -> None:
        failures = iter([True])
        target = make_node("dst", fail_batch=lambda sql: sql.startswith("INSERT") and next(failures, False))
        r = replicator_factory(source, [target])

        assert r.synchronize(False) is None
        result = r.synchronize(False)
        assert result["from"] == WATERMARK
        assert r.last_error is None
        assert source.watermark == EXPECTED_TO

    def test_overlapping_runs_are_skipped(self, source, target, replicator_factory) -> None:
        r = replicator_factory(source, [target])
        r._tick_lock.acquire()
        try:
            assert r.synchronize(False) is None
        finally:
            r._tick_lock.release()
        assert source.queries == []

    def test_shutdown_before_apply(self, source, target, replicator_factory) -> None:
        shutdown = threading.Event()
        shutdown.set()
        r = replicator_factory(source, [target], shutdown_event=shutdown)

        with pytest.raises(ShutdownRequested):
            r.synchronize(False)
        assert source.batches == [] and target.batches == []
        assert source.watermark == WATERMARK

    def test_writes_replication_log(self, source, target, replicator_factory, tmp_path) -> None:
        writer = ReplicationLogWriter(tmp_path)
        replicator_factory(source, [target], log_writer=writer).synchronize(False)
        assert writer.flush(timeout=5)

        millis = round(datetime(2024, 1, 1, 11, 59, 55, 123000, tzinfo=timezone.utc).timestamp() * 1000)
        log_file = tmp_path / f"test-{millis}.sql"
        lines = log_file.read_text(encoding="utf-8").split("\n")
        assert lines[0].startswith("DELETE FROM names")
        assert [l.split(" ")[0] for l in lines[1:]] == ["INSERT", "UPDATE"]

    def test_default_log_name_without_table_set(self, source, target, replicator_factory, tmp_path) -> None:
        writer = ReplicationLogWriter(tmp_path)
        replicator_factory(source, [target], table_set=None, log_writer=writer).synchronize(False)
        writer.flush(timeout=5)
        assert [p.name.split("-")[0] for p in tmp_path.glob("*.sql")] == ["default"]

    def test_mark_last_export_date(self, source, target, replicator_factory) -> None:
        r = replicator_factory(source, [target])
        assert r.mark_last_export_date(datetime(1975, 1, 1, 0, 0, 1)) == "1975-01-01T00:00:01.000Z"
        assert source.watermark == "1975-01-01T00:00:01.000Z"


class TestUpdate:
    STATEMENTS = [f"DELETE FROM t WHERE id={i} AND ts<='2024-01-01 00:00:00';" for i in range(250)]

    def test_batches_inside_one_transaction(self, target, replicator_factory, source) -> None:
        result = replicator_factory(source, [target]).update(target, self.STATEMENTS, batch_size=100)

        assert target.batches[0] == "START TRANSACTION;"
        assert target.batches[-1] == "COMMIT;"
        body = _statements(target.batches)
        assert [len(b.split("\n")) for b in body] == [100, 100, 50]
        assert body[0].split("\n")[0] == self.STATEMENTS[0]
        assert result["batches"] == 3 and result["transaction"] is True

    def test_large_payload_skips_transaction(self, target, replicator_factory, source) -> None:
        r = replicator_factory(source, [target], transaction_size_limit_bytes=1024)
        result = r.update(target, self.STATEMENTS, batch_size=100)
        assert "START TRANSACTION;" not in target.batches
        assert len(target.batches) == 3
        assert result["transaction"] is False

    def test_disabled_transactions(self, target, replicator_factory, source) -> None:
        r = replicator_factory(source, [target], disable_transactions=True)
        r.update(target, self.STATEMENTS[:5])
        assert target.batches == ["\n".join(self.STATEMENTS[:5])]

    def test_non_transactional_failure_alerts(self, make_node, replicator_factory, source, monkeypatch) -> None:
        alerts = []
        monkeypatch.setattr("db_sync.replication.send_discord_alert", lambda msg, url=None: alerts.append((msg, url)))
        target = make_node("dst", fail_batch=lambda sql: "id=150 " in sql)
        r = replicator_factory(source, [target], disable_transactions=True, alert_webhook_url="https://hooks.example/x")

        with pytest.raises(pymysql.err.OperationalError):
            r.update(target, self.STATEMENTS, batch_size=100)
        assert len(target.batches) == 2
        assert "ROLLBACK;" not in target.batches
        assert len(alerts) == 1
        assert "dst" in alerts[0][0] and "after 1 batch(es)" in alerts[0][0]
        assert alerts[0][1] == "https://hooks.example/x"

    def test_no_alert_without_webhook(self, make_node, replicator_factory, source, monkeypatch) -> None:
        alerts = []
        monkeypatch.setattr("db_sync.replication.send_discord_alert", lambda *a, **k: alerts.append(a))
        target = make_node("dst", fail_batch=lambda sql: True)
        r = replicator_factory(source, [target], disable_transactions=True)
        with pytest.raises(pymysql.err.OperationalError):
            r.update(target, self.STATEMENTS[:3])
        assert alerts == []


class TestScheduling:
    def test_run_periodically_stops_on_shutdown(self, source, target, replicator_factory) -> None:
        shutdown = threading.Event()
        shutdown.set()
        replicator_factory(source, [target], shutdown_event=shutdown).run_periodically()
        assert source.queries == []

    def test_run_periodically_ticks(self, source, target, replicator_factory) -> None:
        shutdown = threading.Event()
        r = replicator_factory(source, [target], sync_interval_seconds=0.01, shutdown_event=shutdown)
        t = threading.Thread(target=r.run_periodically, daemon=True)
        t.start()
        deadline = time.monotonic() + 5
        while source.watermark == WATERMARK and time.monotonic() < deadline:
            time.sleep(0.01)
        shutdown.set()
        t.join(5)

        assert not t.is_alive()
        assert source.watermark == EXPECTED_TO

    def test_start_runs_initial_sync(self, source, target, replicator_factory) -> None:
        shutdown = threading.Event()
        r = replicator_factory(source, [target], shutdown_event=shutdown)
        # the loop exits shortly after the initial run
        threading.Timer(0.05, shutdown.set).start()
        r.start(force_initial_sync=True)
        assert source.watermark == EXPECTED_TO

    def test_round_robin_topology(self, make_node, names_registry) -> None:
        cfg = config_from_dict({
            "user": "u", "database": "d",
            "source": {"host": "a"}, "targets": [{"host": "b"}, {"host": "c"}],
            "round_robin": True,
        })
        nodes = [make_node("a"), make_node("b"), make_node("c")]
        replicators = build_round_robin(cfg, nodes, TableUpdateProvider(names_registry))

        assert [r.source.name for r in replicators] == ["a", "b", "c"]
        assert [[t.name for t in r.targets] for r in replicators] == [["b", "c"], ["a", "c"], ["a", "b"]]
        assert all(r.sync_interval_seconds == 900 for r in replicators)

    def test_start_all_syncs_each_peer_then_loops(self, make_node, names_registry) -> None:
        shutdown = threading.Event()
        provider = TableUpdateProvider(names_registry)
        a, b = make_node("a"), make_node("b")
        replicators = [
            PeriodicReplicator(a, [b], provider, table_set="test", shutdown_event=shutdown),
            PeriodicReplicator(b, [a], provider, table_set="test", shutdown_event=shutdown),
        ]
        threads = start_all(replicators, force_initial_sync=True)
        shutdown.set()
        for t in threads:
            t.join(5)

        assert len(threads) == 2
        assert a.watermark == EXPECTED_TO and b.watermark == EXPECTED_TO
        assert not any(t.is_alive() for t in threads)

    def test_peers_sharing_a_node_do_not_interleave_transactions(self, make_node, names_registry) -> None:
        provider = TableUpdateProvider(names_registry)
        a = make_node("a", batch_delay=0.01, rows={"names": [
            names_row("a1", "Foo", ROW_TIME), names_row("a2", "Gone", ROW_TIME, deleted=1),
        ]})
        b = make_node("b", batch_delay=0.01, rows={"names": [
            names_row("b1", "Bar", ROW_TIME), names_row("b2", "Gone", ROW_TIME, deleted=1),
        ]})
        replicators = [
            PeriodicReplicator(a, [b], provider, table_set="test"),
            PeriodicReplicator(b, [a], provider, table_set="test"),
        ]
        threads = [threading.Thread(target=r.synchronize, args=(True,)) for r in replicators]
        for t in threads:
            t.start()
        for t in threads:
            t.join(5)

        assert all(r.last_error is None for r in replicators)
        for node in (a, b):
            owner = None
            for sql, ident in zip(node.batches, node.batch_threads):
                if sql == "START TRANSACTION;":
                    assert owner is None, f"nested transaction on {node.name}"
                    owner = ident
                elif owner is not None:
                    assert ident == owner, f"foreign batch inside a transaction on {node.name}"
                    if sql in ("COMMIT;", "ROLLBACK;"):
                        owner = None
            assert owner is None
            assert node.batches.count("START TRANSACTION;") == node.batches.count("COMMIT;") == 3
