"""Database helpers and stores for indexed scene records."""

from __future__ import annotations

import contextlib
import dataclasses
import datetime
import logging
import threading
from typing import TYPE_CHECKING, Protocol, TypeVar, cast

import psycopg2
import psycopg2.extensions
import psycopg2.extras
import psycopg2.pool
from shapely import wkt

from imagebroker.core import errors
from imagebroker.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable, Collection, Iterable, Iterator

    from imagebroker.core import config

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _cast(value: object, dtype: type[T]) -> T | None:  # type: ignore[misc]
    """Cast a value to a specific type, returning None if value is None."""
    if value is None:
        return None

    return cast(T, value)


class SceneTransaction(Protocol):
    """Operations available inside one transactional scope.

    Everything done through a transaction is committed together when the
    scope exits normally and rolled back when it exits with an exception.
    """

    def existing_ids(self, scene_ids: Collection[str]) -> set[str]: ...

    def insert_if_absent(self, record: db_models.SceneRecord) -> bool: ...

    def claim_partial(
        self, limit: int, token: str, lease_seconds: float
    ) -> list[db_models.SceneRecord]: ...

    def complete(self, record: db_models.SceneRecord, token: str) -> bool: ...

    def release_claims(
        self, token: str, scene_ids: Collection[str], *, count_failure: bool
    ) -> int: ...

    def find_by_scene_id(
        self, source: str, scene_id: str
    ) -> db_models.SceneRecord | None: ...


class SceneStoreProtocol(Protocol):
    """Protocol interface for persisting and querying scene records.

    Implementations provide persistence for SceneRecord objects,
    supporting both in-memory (testing) and PostgreSQL (production)
    backends.
    """

    def ping(self) -> None: ...

    def transaction(
        self,
    ) -> contextlib.AbstractContextManager[SceneTransaction]: ...

    def find_by_scene_id(
        self, source: str, scene_id: str
    ) -> db_models.SceneRecord | None: ...

    def search(
        self, source: str, search_filter: db_models.SearchFilter
    ) -> list[db_models.SceneRecord]: ...


@dataclasses.dataclass(frozen=True)
class _Row:
    record: db_models.SceneRecord
    claim_token: str | None = None
    claim_expires: datetime.datetime | None = None

    def claimable(self, now: datetime.datetime) -> bool:
        if self.record.is_complete:
            return False
        return self.claim_expires is None or self.claim_expires < now


class _InMemoryTransaction:
    """Staged writes over an InMemorySceneStore, applied on commit."""

    def __init__(self, store: InMemorySceneStore) -> None:
        self._store = store
        self._staged: dict[str, _Row] = {}

    def _row(self, scene_id: str) -> _Row | None:
        return self._staged.get(scene_id) or self._store._rows.get(scene_id)

    def _all_ids(self) -> set[str]:
        return set(self._store._rows) | set(self._staged)

    def existing_ids(self, scene_ids: Collection[str]) -> set[str]:
        return {sid for sid in scene_ids if self._row(sid) is not None}

    def insert_if_absent(self, record: db_models.SceneRecord) -> bool:
        if self._row(record.scene_id) is not None:
            return False
        self._staged[record.scene_id] = _Row(record=record)
        return True

    def claim_partial(
        self, limit: int, token: str, lease_seconds: float
    ) -> list[db_models.SceneRecord]:
        now = self._store.clock()
        candidates = [
            row
            for row in (self._row(sid) for sid in self._all_ids())
            if row is not None
            and row.claimable(now)
            and row.claim_token != token
        ]
        candidates.sort(
            key=lambda row: (row.record.capture_date, row.record.scene_id),
            reverse=True,
        )
        expires = now + datetime.timedelta(seconds=lease_seconds)
        claimed = []
        for row in candidates[:limit]:
            self._staged[row.record.scene_id] = dataclasses.replace(
                row, claim_token=token, claim_expires=expires
            )
            claimed.append(row.record)
        return claimed

    def complete(self, record: db_models.SceneRecord, token: str) -> bool:
        row = self._row(record.scene_id)
        if row is None or row.record.is_complete or row.claim_token != token:
            return False
        derived = record.derived
        if derived is None:
            raise errors.StoreError(
                "Refusing to complete a record without derived fields",
                scene_id=record.scene_id,
            )
        self._staged[record.scene_id] = _Row(
            record=row.record.completed(derived)
        )
        return True

    def release_claims(
        self, token: str, scene_ids: Collection[str], *, count_failure: bool
    ) -> int:
        released = 0
        for scene_id in scene_ids:
            row = self._row(scene_id)
            if row is None or row.claim_token != token:
                continue
            record = row.record
            if count_failure:
                record = dataclasses.replace(
                    record,
                    failed_attempts=record.failed_attempts + 1,
                    updated_at=db_models.utcnow(),
                )
            self._staged[scene_id] = _Row(record=record)
            released += 1
        return released

    def find_by_scene_id(
        self, source: str, scene_id: str
    ) -> db_models.SceneRecord | None:
        row = self._row(scene_id)
        if row is None or row.record.source != source:
            return None
        return row.record


class InMemorySceneStore(SceneStoreProtocol):
    """Simple in-memory store for tests and local development.

    Transactions are serialized by a lock held for the whole scope and
    stage their writes until commit. Data is lost when the process exits.
    """

    def __init__(
        self,
        clock: Callable[[], datetime.datetime] = db_models.utcnow,
    ) -> None:
        """Initialize an empty in-memory store.

        Args:
            clock: Source of "now" for claim leases.
        """
        self.clock = clock
        self._rows: dict[str, _Row] = {}
        self._lock = threading.Lock()

    def ping(self) -> None:
        return None

    @contextlib.contextmanager
    def transaction(self) -> Iterator[_InMemoryTransaction]:
        with self._lock:
            txn = _InMemoryTransaction(self)
            yield txn
            self._rows.update(txn._staged)

    def find_by_scene_id(
        self, source: str, scene_id: str
    ) -> db_models.SceneRecord | None:
        with self.transaction() as txn:
            return txn.find_by_scene_id(source, scene_id)

    def search(
        self, source: str, search_filter: db_models.SearchFilter
    ) -> list[db_models.SceneRecord]:
        with self._lock:
            matches = [
                row.record
                for row in self._rows.values()
                if row.record.source == source
                and search_filter.matches(row.record)
            ]
        matches.sort(key=lambda record: record.scene_id)
        matches.sort(key=lambda record: record.capture_date, reverse=True)
        return matches[: search_filter.limit]

    def all(self) -> Iterable[db_models.SceneRecord]:
        """Snapshot of every stored record."""
        with self._lock:
            return [row.record for row in self._rows.values()]

    def claim_of(self, scene_id: str) -> tuple[str | None, datetime.datetime | None]:
        """Current (claim_token, claim_expires) of a record."""
        with self._lock:
            row = self._rows[scene_id]
            return row.claim_token, row.claim_expires


class DatabasePool:
    """Process-wide PostgreSQL connection pool with an explicit lifecycle.

    Open it once at start-up, pass it to the stores that need it, check it
    periodically with health_check() and close it at shutdown.
    """

    def __init__(self, settings: config.Settings) -> None:
        self.settings = settings
        self._pool: psycopg2.pool.ThreadedConnectionPool | None = None

    def open(self) -> None:
        """Create the underlying pool.

        Raises:
            StoreError: If the initial connections cannot be opened.
        """
        if self._pool is not None:
            return
        try:
            self._pool = psycopg2.pool.ThreadedConnectionPool(
                self.settings.db_pool_min_size,
                self.settings.db_pool_max_size,
                self.settings.database_url,
            )
        except psycopg2.Error as exc:
            raise errors.StoreError("Could not open database pool") from exc
        logger.info(
            "Database pool opened (min=%d, max=%d)",
            self.settings.db_pool_min_size,
            self.settings.db_pool_max_size,
        )

    def close(self) -> None:
        if self._pool is None:
            return
        self._pool.closeall()
        self._pool = None
        logger.info("Database pool closed")

    @contextlib.contextmanager
    def connection(self) -> Iterator[psycopg2.extensions.connection]:
        """Borrow a connection, returning it to the pool afterwards.

        Raises:
            StoreError: If the pool is closed or exhausted.
        """
        if self._pool is None:
            raise errors.StoreError("Database pool is not open")
        try:
            conn = self._pool.getconn()
        except psycopg2.Error as exc:
            raise errors.StoreError("No database connection available") from exc
        try:
            yield conn
        finally:
            self._pool.putconn(conn, close=bool(conn.closed))

    def health_check(self) -> bool:
        """Run a trivial query on a pooled connection.

        Returns:
            True if the database answered, False otherwise.
        """
        try:
            with self.connection() as conn, conn.cursor() as cur:
                cur.execute("SELECT 1")
                cur.fetchone()
                conn.rollback()
        except (errors.StoreError, psycopg2.Error):
            logger.warning("Database health check failed", exc_info=True)
            return False
        return True


_COLUMNS = """
    product_id, source, capture_date, cloud_cover, scene_url,
    ST_AsText(aoi) AS aoi_wkt, off_nadir_angle, sun_azimuth, sun_elevation,
    completeness_state, failed_attempts, created_at, updated_at
"""


class _PostgresTransaction:
    """SceneTransaction bound to one cursor of one pooled connection."""

    def __init__(self, cursor: psycopg2.extensions.cursor) -> None:
        self._cur = cursor

    def existing_ids(self, scene_ids: Collection[str]) -> set[str]:
        if not scene_ids:
            return set()
        self._cur.execute(
            "SELECT product_id FROM scenes WHERE product_id = ANY(%s)",
            (list(scene_ids),),
        )
        return {str(row["product_id"]) for row in self._cur.fetchall()}

    def insert_if_absent(self, record: db_models.SceneRecord) -> bool:
        self._cur.execute(
            """
            INSERT INTO scenes (
                product_id, source, capture_date, cloud_cover, scene_url,
                aoi, off_nadir_angle, sun_azimuth, sun_elevation,
                completeness_state, failed_attempts, created_at, updated_at
            ) VALUES (%(product_id)s, %(source)s, %(capture_date)s,
                %(cloud_cover)s, %(scene_url)s,
                ST_GeomFromText(%(aoi_wkt)s, 4326), %(off_nadir_angle)s,
                %(sun_azimuth)s, %(sun_elevation)s, %(completeness_state)s,
                %(failed_attempts)s, %(created_at)s, %(updated_at)s)
            ON CONFLICT (product_id) DO NOTHING;
            """,
            PostgresSceneStore._to_row(record),
        )
        return bool(self._cur.rowcount == 1)

    def claim_partial(
        self, limit: int, token: str, lease_seconds: float
    ) -> list[db_models.SceneRecord]:
        self._cur.execute(
            f"""
            UPDATE scenes
            SET claim_token = %(token)s,
                claim_expires = now() + make_interval(secs => %(lease)s)
            WHERE product_id IN (
                SELECT product_id FROM scenes
                WHERE completeness_state = 'partial'
                  AND (claim_expires IS NULL OR claim_expires < now())
                  AND claim_token IS DISTINCT FROM %(token)s
                ORDER BY capture_date DESC, product_id DESC
                LIMIT %(limit)s
                FOR UPDATE SKIP LOCKED
            )
            RETURNING {_COLUMNS};
            """,  # noqa: S608
            {"token": token, "lease": lease_seconds, "limit": limit},
        )
        return [
            PostgresSceneStore._from_row(cast(dict[str, object], row))
            for row in self._cur.fetchall()
        ]

    def complete(self, record: db_models.SceneRecord, token: str) -> bool:
        derived = record.derived
        if derived is None:
            raise errors.StoreError(
                "Refusing to complete a record without derived fields",
                scene_id=record.scene_id,
            )
        self._cur.execute(
            """
            UPDATE scenes
            SET off_nadir_angle = %(off_nadir_angle)s,
                sun_azimuth = %(sun_azimuth)s,
                sun_elevation = %(sun_elevation)s,
                completeness_state = 'complete',
                claim_token = NULL,
                claim_expires = NULL,
                updated_at = now()
            WHERE product_id = %(product_id)s
              AND completeness_state = 'partial'
              AND claim_token = %(token)s;
            """,
            {
                "off_nadir_angle": derived.off_nadir_angle,
                "sun_azimuth": derived.sun_azimuth,
                "sun_elevation": derived.sun_elevation,
                "product_id": record.scene_id,
                "token": token,
            },
        )
        return bool(self._cur.rowcount == 1)

    def release_claims(
        self, token: str, scene_ids: Collection[str], *, count_failure: bool
    ) -> int:
        if not scene_ids:
            return 0
        self._cur.execute(
            """
            UPDATE scenes
            SET claim_token = NULL,
                claim_expires = NULL,
                failed_attempts = failed_attempts + %(increment)s,
                updated_at = now()
            WHERE product_id = ANY(%(ids)s) AND claim_token = %(token)s;
            """,
            {
                "increment": 1 if count_failure else 0,
                "ids": list(scene_ids),
                "token": token,
            },
        )
        return int(self._cur.rowcount)

    def find_by_scene_id(
        self, source: str, scene_id: str
    ) -> db_models.SceneRecord | None:
        self._cur.execute(
            f"SELECT {_COLUMNS} FROM scenes "  # noqa: S608
            "WHERE source = %s AND product_id = %s",
            (source, scene_id),
        )
        row = self._cur.fetchone()
        if row is None:
            return None
        return PostgresSceneStore._from_row(cast(dict[str, object], row))

    def search(
        self, source: str, search_filter: db_models.SearchFilter
    ) -> list[db_models.SceneRecord]:
        clauses = ["source = %(source)s"]
        params: dict[str, object] = {
            "source": source,
            "limit": search_filter.limit,
        }
        if search_filter.bbox is not None:
            clauses.append(
                "ST_Intersects(aoi, ST_MakeEnvelope("
                "%(minx)s, %(miny)s, %(maxx)s, %(maxy)s, 4326))"
            )
            minx, miny, maxx, maxy = search_filter.bbox
            params.update(minx=minx, miny=miny, maxx=maxx, maxy=maxy)
        if search_filter.acquired_after is not None:
            clauses.append("capture_date >= %(after)s")
            params["after"] = search_filter.acquired_after
        if search_filter.acquired_before is not None:
            clauses.append("capture_date <= %(before)s")
            params["before"] = search_filter.acquired_before
        if search_filter.max_cloud_cover is not None:
            clauses.append("cloud_cover <= %(max_cloud)s")
            params["max_cloud"] = search_filter.max_cloud_cover
        where = " AND ".join(clauses)
        self._cur.execute(
            f"SELECT {_COLUMNS} FROM scenes WHERE {where} "  # noqa: S608
            "ORDER BY capture_date DESC, product_id LIMIT %(limit)s",
            params,
        )
        return [
            PostgresSceneStore._from_row(cast(dict[str, object], row))
            for row in self._cur.fetchall()
        ]


class PostgresSceneStore(SceneStoreProtocol):
    """PostgreSQL/PostGIS-backed store for scene records.

    Borrows connections from a DatabasePool. Automatically creates the
    scenes table, its spatial index and enables PostGIS on initialization.
    """

    CREATE_TABLE_SQL = """
    CREATE TABLE IF NOT EXISTS scenes (
      product_id TEXT PRIMARY KEY,
      source TEXT NOT NULL DEFAULT 'landsat',
      capture_date TIMESTAMPTZ NOT NULL,
      cloud_cover DOUBLE PRECISION NOT NULL,
      scene_url TEXT NOT NULL,
      aoi geometry(Polygon, 4326) NOT NULL,
      off_nadir_angle DOUBLE PRECISION,
      sun_azimuth DOUBLE PRECISION,
      sun_elevation DOUBLE PRECISION,
      completeness_state TEXT NOT NULL DEFAULT 'partial'
        CHECK (completeness_state IN ('partial', 'complete')),
      claim_token TEXT,
      claim_expires TIMESTAMPTZ,
      failed_attempts INTEGER NOT NULL DEFAULT 0,
      created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
      CONSTRAINT scenes_complete_has_derived CHECK (
        completeness_state = 'partial' OR (
          off_nadir_angle IS NOT NULL
          AND sun_azimuth IS NOT NULL
          AND sun_elevation IS NOT NULL
        )
      )
    );
    CREATE INDEX IF NOT EXISTS scenes_aoi_gix ON scenes USING GIST (aoi);
    CREATE INDEX IF NOT EXISTS scenes_partial_idx
      ON scenes (capture_date) WHERE completeness_state = 'partial';
    """

    def __init__(self, pool: DatabasePool) -> None:
        """Initialize the store on an open pool.

        Args:
            pool: Connection pool the store borrows connections from.
        """
        self.pool = pool
        self._ensure_schema()

    def _ensure_schema(self) -> None:
        """Ensure PostGIS extension and the scenes table exist."""
        with self.transaction() as txn:
            txn._cur.execute("CREATE EXTENSION IF NOT EXISTS postgis;")
            txn._cur.execute(self.CREATE_TABLE_SQL)

    def ping(self) -> None:
        """Raise StoreError unless the database answers a trivial query."""
        if not self.pool.health_check():
            raise errors.StoreError("Scene store is unreachable")

    @contextlib.contextmanager
    def transaction(self) -> Iterator[_PostgresTransaction]:
        """Run the enclosed block in one database transaction.

        Commits when the block exits normally and rolls back otherwise.

        Raises:
            StoreError: If the database raises while the block runs or
                while committing.
        """
        try:
            with self.pool.connection() as conn:
                try:
                    with conn.cursor(
                        cursor_factory=psycopg2.extras.RealDictCursor
                    ) as cur:
                        yield _PostgresTransaction(cur)
                    conn.commit()
                except BaseException:
                    conn.rollback()
                    raise
        except psycopg2.Error as exc:
            raise errors.StoreError("Scene store transaction failed") from exc

    def find_by_scene_id(
        self, source: str, scene_id: str
    ) -> db_models.SceneRecord | None:
        with self.transaction() as txn:
            return txn.find_by_scene_id(source, scene_id)

    def search(
        self, source: str, search_filter: db_models.SearchFilter
    ) -> list[db_models.SceneRecord]:
        with self.transaction() as txn:
            return txn.search(source, search_filter)

    @staticmethod
    def _to_row(record: db_models.SceneRecord) -> dict[str, object]:
        """Convert a SceneRecord to a row dictionary for parameterized SQL.

        Args:
            record: Scene record to convert.

        Returns:
            Dictionary keyed by column name; the footprint is given as WKT.
        """
        return {
            "product_id": record.scene_id,
            "source": record.source,
            "capture_date": record.capture_date,
            "cloud_cover": record.cloud_cover,
            "scene_url": record.scene_url,
            "aoi_wkt": record.footprint.wkt,
            "off_nadir_angle": record.off_nadir_angle,
            "sun_azimuth": record.sun_azimuth,
            "sun_elevation": record.sun_elevation,
            "completeness_state": record.state.value,
            "failed_attempts": record.failed_attempts,
            "created_at": record.created_at,
            "updated_at": record.updated_at,
        }

    @staticmethod
    def _from_row(row: dict[str, object]) -> db_models.SceneRecord:
        """Convert a database row dictionary to a SceneRecord.

        Args:
            row: Dictionary from a query selecting the store's columns.

        Returns:
            SceneRecord with all fields populated.
        """
        footprint = wkt.loads(str(row["aoi_wkt"]))
        created_at = _cast(row.get("created_at"), datetime.datetime)
        updated_at = _cast(row.get("updated_at"), datetime.datetime)
        return db_models.SceneRecord(
            scene_id=str(row["product_id"]),
            source=str(row["source"]),
            capture_date=cast(datetime.datetime, row["capture_date"]),
            cloud_cover=float(cast(float, row["cloud_cover"])),
            footprint=footprint,  # type: ignore[arg-type]
            scene_url=str(row["scene_url"]),
            off_nadir_angle=_cast(row.get("off_nadir_angle"), float),
            sun_azimuth=_cast(row.get("sun_azimuth"), float),
            sun_elevation=_cast(row.get("sun_elevation"), float),
            state=db_models.CompletenessState(str(row["completeness_state"])),
            failed_attempts=int(cast(int, row.get("failed_attempts") or 0)),
            created_at=created_at or db_models.utcnow(),
            updated_at=updated_at or db_models.utcnow(),
        )


def get_scene_store(pool: DatabasePool) -> SceneStoreProtocol:
    """Factory function to create a scene store.

    Args:
        pool: Open database pool.

    Returns:
        PostgresSceneStore instance for production use.
    """
    return PostgresSceneStore(pool)
