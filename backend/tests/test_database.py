"""Tests for scene stores and the database pool.

This module contains unit tests for:
- InMemorySceneStore: transactional staging and rollback, idempotent
  inserts, lease-based claims, token-guarded completion, claim release and
  search ordering.
- PostgresSceneStore: row conversion helpers only (no running database).
- DatabasePool: lifecycle and health check against a fake psycopg2 pool.

All tests are self-contained and do not require a running database.
"""

from __future__ import annotations

import datetime
from typing import TYPE_CHECKING, Any

import psycopg2
import pytest

from imagebroker.core import errors
from imagebroker.db import database
from imagebroker.db import models as db_models

if TYPE_CHECKING:
    from conftest import SceneFactory

    from imagebroker.core import config


class FakeClock:
    """Settable clock for lease expiry."""

    def __init__(self) -> None:
        self.now = datetime.datetime(2024, 1, 1, tzinfo=datetime.UTC)

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += datetime.timedelta(seconds=seconds)


def _insert(
    store: database.InMemorySceneStore, *records: db_models.SceneRecord
) -> None:
    with store.transaction() as txn:
        for record in records:
            txn.insert_if_absent(record)


def test_insert_if_absent_is_idempotent(make_scene: SceneFactory) -> None:
    """Test that inserting an existing id leaves the stored record alone."""
    store = database.InMemorySceneStore()
    _insert(store, make_scene("A", cloud_cover=0.1))
    with store.transaction() as txn:
        assert txn.existing_ids(["A", "B"]) == {"A"}
        assert not txn.insert_if_absent(make_scene("A", cloud_cover=0.9))
    record = store.find_by_scene_id(db_models.LANDSAT, "A")
    assert record is not None
    assert record.cloud_cover == 0.1


def test_transaction_rolls_back_on_error(make_scene: SceneFactory) -> None:
    """Test that writes staged before an exception are discarded."""
    store = database.InMemorySceneStore()
    with pytest.raises(RuntimeError):
        with store.transaction() as txn:
            txn.insert_if_absent(make_scene("A"))
            raise RuntimeError("boom")
    assert store.find_by_scene_id(db_models.LANDSAT, "A") is None


def test_find_by_scene_id_checks_source(make_scene: SceneFactory) -> None:
    """Test lookups are scoped to the source."""
    store = database.InMemorySceneStore()
    _insert(store, make_scene("A"))
    assert store.find_by_scene_id("sentinel", "A") is None
    assert store.find_by_scene_id(db_models.LANDSAT, "missing") is None


def test_claim_partial_is_exclusive_until_lease_expires(
    make_scene: SceneFactory,
) -> None:
    """Test a claimed record cannot be re-claimed before its lease runs out."""
    clock = FakeClock()
    store = database.InMemorySceneStore(clock=clock)
    _insert(store, make_scene("A"), make_scene("B"))

    with store.transaction() as txn:
        first = txn.claim_partial(10, "t1", lease_seconds=60)
    with store.transaction() as txn:
        second = txn.claim_partial(10, "t2", lease_seconds=60)
    assert {record.scene_id for record in first} == {"A", "B"}
    assert second == []

    clock.advance(61)
    with store.transaction() as txn:
        third = txn.claim_partial(1, "t3", lease_seconds=60)
    assert len(third) == 1
    assert store.claim_of(third[0].scene_id)[0] == "t3"


def test_claim_partial_skips_own_expired_claims(make_scene: SceneFactory) -> None:
    """Test a pass cannot re-claim its own records once their lease expires."""
    clock = FakeClock()
    store = database.InMemorySceneStore(clock=clock)
    _insert(store, make_scene("A"))

    with store.transaction() as txn:
        assert len(txn.claim_partial(10, "t1", lease_seconds=60)) == 1
    clock.advance(61)
    with store.transaction() as txn:
        assert txn.claim_partial(10, "t1", lease_seconds=60) == []
        assert len(txn.claim_partial(10, "t2", lease_seconds=60)) == 1


def test_claim_partial_orders_newest_first(make_scene: SceneFactory) -> None:
    """Test claims favour the most recent captures."""
    store = database.InMemorySceneStore()
    _insert(
        store,
        make_scene("OLD", capture_date=datetime.datetime(2015, 1, 1)),
        make_scene("NEW", capture_date=datetime.datetime(2022, 1, 1)),
    )
    with store.transaction() as txn:
        claimed = txn.claim_partial(1, "t", lease_seconds=60)
    assert [record.scene_id for record in claimed] == ["NEW"]


def test_complete_requires_matching_token(make_scene: SceneFactory) -> None:
    """Test completion only lands for the current claim holder."""
    store = database.InMemorySceneStore()
    _insert(store, make_scene("A"))
    with store.transaction() as txn:
        (claimed,) = txn.claim_partial(1, "mine", lease_seconds=60)
    done = claimed.completed(db_models.DerivedFields(1.0, 2.0, 3.0))

    with store.transaction() as txn:
        assert not txn.complete(done, "other")
    with store.transaction() as txn:
        assert txn.complete(done, "mine")
    with store.transaction() as txn:
        assert not txn.complete(done, "mine")

    record = store.find_by_scene_id(db_models.LANDSAT, "A")
    assert record is not None
    assert record.is_complete
    assert record.derived == db_models.DerivedFields(1.0, 2.0, 3.0)
    assert store.claim_of("A") == (None, None)


def test_complete_refuses_missing_derived(make_scene: SceneFactory) -> None:
    """Test a record without derived fields is never written as complete."""
    store = database.InMemorySceneStore()
    _insert(store, make_scene("A"))
    with store.transaction() as txn:
        (claimed,) = txn.claim_partial(1, "t", lease_seconds=60)
    with pytest.raises(errors.StoreError):
        with store.transaction() as txn:
            txn.complete(claimed, "t")


def test_release_claims_counts_failures(make_scene: SceneFactory) -> None:
    """Test released records become claimable and failures are counted."""
    store = database.InMemorySceneStore()
    _insert(store, make_scene("A"), make_scene("B"))
    with store.transaction() as txn:
        txn.claim_partial(10, "t", lease_seconds=600)
    with store.transaction() as txn:
        assert txn.release_claims("other", ["A"], count_failure=True) == 0
        assert txn.release_claims("t", ["A"], count_failure=True) == 1
        assert txn.release_claims("t", ["B"], count_failure=False) == 1

    a = store.find_by_scene_id(db_models.LANDSAT, "A")
    b = store.find_by_scene_id(db_models.LANDSAT, "B")
    assert a is not None and a.failed_attempts == 1
    assert b is not None and b.failed_attempts == 0
    with store.transaction() as txn:
        assert len(txn.claim_partial(10, "t2", lease_seconds=600)) == 2


def test_search_orders_and_limits(make_scene: SceneFactory) -> None:
    """Test search returns newest capture first, ties broken by id."""
    store = database.InMemorySceneStore()
    same_day = datetime.datetime(2020, 5, 1, tzinfo=datetime.UTC)
    _insert(
        store,
        make_scene("B", capture_date=same_day),
        make_scene("A", capture_date=same_day),
        make_scene("C", capture_date=datetime.datetime(2021, 1, 1)),
        make_scene("D", capture_date=datetime.datetime(2019, 1, 1)),
    )
    found = store.search(db_models.LANDSAT, db_models.SearchFilter())
    assert [record.scene_id for record in found] == ["C", "A", "B", "D"]
    limited = store.search(db_models.LANDSAT, db_models.SearchFilter(limit=2))
    assert [record.scene_id for record in limited] == ["C", "A"]
    assert store.search("sentinel", db_models.SearchFilter()) == []


def test_postgres_row_round_trip(make_scene: SceneFactory) -> None:
    """Test _to_row/_from_row preserve a complete record."""
    record = make_scene("A").completed(db_models.DerivedFields(1.5, 130.0, 40.0))
    row: dict[str, Any] = database.PostgresSceneStore._to_row(record)
    assert row["aoi_wkt"].startswith("POLYGON")
    assert row["completeness_state"] == "complete"

    restored = database.PostgresSceneStore._from_row(row)
    assert restored.scene_id == "A"
    assert restored.is_complete
    assert restored.derived == record.derived
    assert restored.footprint.equals(record.footprint)
    assert restored.capture_date == record.capture_date


class FakeCursor:
    """Cursor recording executed SQL."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail

    def __enter__(self) -> FakeCursor:
        return self

    def __exit__(self, *args: object) -> None:
        return None

    def execute(self, sql: str, params: object = None) -> None:
        if self.fail:
            raise psycopg2.OperationalError("server closed the connection")

    def fetchone(self) -> tuple[int]:
        return (1,)


class FakeConnection:
    def __init__(self, fail: bool = False) -> None:
        self.closed = 0
        self.fail = fail

    def cursor(self, **kwargs: Any) -> FakeCursor:
        return FakeCursor(self.fail)

    def rollback(self) -> None:
        return None


class FakeThreadedPool:
    """Stand-in for psycopg2.pool.ThreadedConnectionPool."""

    instances: list[FakeThreadedPool] = []

    def __init__(self, minconn: int, maxconn: int, dsn: str) -> None:
        self.minconn = minconn
        self.maxconn = maxconn
        self.dsn = dsn
        self.fail = False
        self.returned = 0
        self.closed = False
        FakeThreadedPool.instances.append(self)

    def getconn(self) -> FakeConnection:
        return FakeConnection(self.fail)

    def putconn(self, conn: FakeConnection, close: bool = False) -> None:
        self.returned += 1

    def closeall(self) -> None:
        self.closed = True


def test_database_pool_lifecycle(
    monkeypatch: pytest.MonkeyPatch, settings: config.Settings
) -> None:
    """Test open/health_check/close against a fake connection pool."""
    monkeypatch.setattr(
        database.psycopg2.pool, "ThreadedConnectionPool", FakeThreadedPool
    )
    pool = database.DatabasePool(settings)
    pool.open()
    fake = FakeThreadedPool.instances[-1]
    assert (fake.minconn, fake.maxconn) == (
        settings.db_pool_min_size,
        settings.db_pool_max_size,
    )
    assert pool.health_check()
    assert fake.returned == 1

    fake.fail = True
    assert not pool.health_check()
    assert fake.returned == 2

    pool.close()
    assert fake.closed
    assert not pool.health_check()
    with pytest.raises(errors.StoreError):
        with pool.connection():
            pass
