import json
import logging
import threading
from datetime import datetime, timezone

import psycopg2
import pytest

from emqx_pg_bridge.dispatcher import MessageDispatcher
from emqx_pg_bridge.errors import StoragePersistFailed, StorageUnavailable
from emqx_pg_bridge.records import COLUMNS
from emqx_pg_bridge.storage.postgres import PostgresSink, build_insert

from fakes import FakeDatabase


@pytest.fixture
def db(monkeypatch):
    fake = FakeDatabase()
    monkeypatch.setattr("psycopg2.connect", fake.connect)
    return fake


@pytest.fixture
def sink(db, pg_cfg):
    s = PostgresSink.open(pg_cfg)
    yield s
    s.close()


def _payload(imei: str, **overrides) -> bytes:
    body = {
        "imei": imei,
        "lat": 31.23,
        "lng": 121.47,
        "gps_ts": 1700000000,
        "uptime": 3600,
        "csq": 25,
        "vbat": 410,
        "up_vbat": 405,
        "ip": "10.1.2.3",
    }
    body.update(overrides)
    return json.dumps(body).encode()


def test_open_probes_database_with_bounded_timeouts(db, pg_cfg):
    s = PostgresSink.open(pg_cfg)

    args, kwargs = db.last_connect_args
    assert "dbname=telemetry" in args[0]
    assert kwargs["connect_timeout"] == 10
    assert kwargs["options"] == "-c statement_timeout=5000"
    # client-side bound for half-open sockets the server never answers on
    assert kwargs["tcp_user_timeout"] == 5000
    assert kwargs["keepalives"] == 1
    assert kwargs["keepalives_idle"] + kwargs["keepalives_interval"] * kwargs["keepalives_count"] <= 10
    assert db.connects >= 1
    s.close()


def test_open_honours_custom_insert_timeout(db, pg_cfg):
    s = PostgresSink.open(pg_cfg, insert_timeout_s=2.5)

    _, kwargs = db.last_connect_args
    assert kwargs["options"] == "-c statement_timeout=2500"
    assert kwargs["tcp_user_timeout"] == 2500
    s.close()


def test_open_raises_storage_unavailable(db, pg_cfg):
    db.fail_connect = True

    with pytest.raises(StorageUnavailable) as exc:
        PostgresSink.open(pg_cfg)

    assert "could not connect" in str(exc.value)
    assert isinstance(exc.value.__cause__, psycopg2.OperationalError)


def test_open_raises_when_probe_fails(db, pg_cfg):
    db.fail_execute = psycopg2.OperationalError("probe timeout")

    with pytest.raises(StorageUnavailable):
        PostgresSink.open(pg_cfg)


def test_scenario_payload_persists_one_row(sink, db, sample_payload):
    before = datetime.now(timezone.utc)
    sink.handle("devices/123/report", sample_payload)
    after = datetime.now(timezone.utc)

    assert len(db.rows) == 1
    row = dict(zip(COLUMNS, db.rows[0]))
    received = row.pop("receivetime")
    assert row == {
        "imei": "123",
        "lat": 1.5,
        "lng": 2.5,
        "gps_ts": 1000,
        "uptime": 50,
        "csq": 20,
        "vbat": 380,
        "up_vbat": 390,
        "ip": "10.0.0.1",
    }
    assert before <= received <= after
    assert received.tzinfo is not None


def test_clock_is_injectable(db):
    from emqx_pg_bridge.storage.pool import BlockingConnectionPool

    fixed = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    s = PostgresSink(BlockingConnectionPool(0, 1, "dbname=x"), "device_data", clock=lambda: fixed)

    s.handle("t", _payload("a"))

    assert db.rows[0][-1] == fixed
    s.close()


@pytest.mark.parametrize(
    "payload",
    [
        b'{"imei":"123","lat":1.5',
        _payload("1", lat="north"),
        b'{"lat":1.5,"lng":2.5,"gps_ts":1,"uptime":1,"csq":1,"vbat":1,"up_vbat":1,"ip":"x"}',
    ],
)
def test_malformed_payload_skipped_without_error(sink, db, payload, caplog):
    with caplog.at_level(logging.WARNING, logger="emqx_pg_bridge.storage.postgres"):
        sink.handle("devices/1/report", payload)  # returns normally

    assert db.rows == []
    assert "Skipping malformed payload" in caplog.text


@pytest.mark.parametrize("key, zero", [("ip", ""), ("up_vbat", 0), ("csq", 0), ("lat", 0.0)])
def test_payload_missing_optional_key_is_stored_with_zero_value(sink, db, sample_payload, key, zero):
    body = json.loads(sample_payload)
    del body[key]

    sink.handle("t", json.dumps(body).encode())

    assert len(db.rows) == 1
    row = dict(zip(COLUMNS, db.rows[0]))
    assert row[key] == zero
    assert row["imei"] == "123"


def test_payload_missing_imei_is_still_skipped(sink, db, sample_payload):
    body = json.loads(sample_payload)
    del body["imei"]

    sink.handle("t", json.dumps(body).encode())

    assert db.rows == []


def test_duplicate_payload_stored_twice(sink, db, sample_payload):
    sink.handle("t", sample_payload)
    sink.handle("t", sample_payload)

    assert len(db.rows) == 2
    assert db.rows[0][:9] == db.rows[1][:9]


def test_insert_failure_raises_persist_failed(sink, db):
    db.fail_execute = psycopg2.errors.NotNullViolation("null value in column")

    with pytest.raises(StoragePersistFailed) as exc:
        sink.handle("t", _payload("a"))

    assert "imei=a" in str(exc.value)
    assert db.rows == []


def test_storage_outage_then_recovery(sink, db):
    db.drop_on_execute = True
    with pytest.raises(StoragePersistFailed):
        sink.handle("t", _payload("lost"))

    db.drop_on_execute = False
    sink.handle("t", _payload("next"))

    assert [r[0] for r in db.rows] == ["next"]


def test_outage_through_dispatcher_keeps_pipeline_alive(sink, db):
    d = MessageDispatcher(sink)

    db.drop_on_execute = True
    d.dispatch("t", _payload("dropped"))
    db.drop_on_execute = False
    d.dispatch("t", _payload("kept"))

    assert [r[0] for r in db.rows] == ["kept"]


def test_concurrent_handles_store_every_row(db, pg_cfg):
    s = PostgresSink.open(pg_cfg)  # pool_max=4, fewer slots than writers
    n = 32
    barrier = threading.Barrier(n)
    errors = []

    def worker(i: int) -> None:
        barrier.wait()
        try:
            s.handle("t", _payload(f"dev-{i}", uptime=i))
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert len(db.rows) == n
    stored = {(r[0], r[4]) for r in db.rows}
    assert stored == {(f"dev-{i}", i) for i in range(n)}
    s.close()


def test_handle_after_close_raises_persist_failed(db, pg_cfg, sample_payload):
    s = PostgresSink.open(pg_cfg)
    s.close()

    with pytest.raises(StoragePersistFailed):
        s.handle("t", sample_payload)


def test_close_is_idempotent(db, pg_cfg):
    s = PostgresSink.open(pg_cfg)

    s.close()
    s.close()


def test_build_insert_structure():
    q = repr(build_insert("device_data"))

    positions = [q.index(f"Identifier('{c}')") for c in COLUMNS]
    assert positions == sorted(positions)
    assert q.count("Placeholder(") == len(COLUMNS)
    assert "INSERT INTO " in q


def test_build_insert_schema_qualified():
    q = repr(build_insert("iot.device_data"))

    assert "Identifier('iot', 'device_data')" in q
