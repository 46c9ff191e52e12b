"""
Versioned vector store.

Entries are written into a `building` version, which is invisible to
queries. `activate` seals the version into an immutable in-memory snapshot
(matrix + ANN structure) and swaps the single active-snapshot reference, so a
search reads either the old or the new version in full. SQLite keeps every
version durable until `compact` drops it.
"""

import json
import sqlite3
import threading
import time
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..core.db import connect, init_db
from ..core.errors import EmbeddingDimensionMismatch, StorageUnavailable, VersionConflict
from ..core.schema import parse_timestamp
from ..util.logging import logger
from .faiss_store import FaissHnswIndex
from .index import ExactIndex, IAnnIndex, IVectorStore, MetadataFilter, describe_filter, matches_filter
from .types import IndexEntry, SearchHit

BUILDING = "building"
ACTIVE = "active"
RETIRED = "retired"
FAILED = "failed"
COMPACTED = "compacted"

_UNSET = object()


class VersionSnapshot:
    """Immutable, searchable view of one sealed index version.

    Rows are ordered by record_id, so a lower row position also means a
    lower record_id; ties in similarity are broken on position.
    """

    def __init__(self, version: int, entries: Sequence[IndexEntry], dimension: int,
                 ann_factory: Callable[[int], IAnnIndex], ann_min_entries: int = 256,
                 filter_overfetch: int = 4):
        ordered = sorted(entries, key=lambda e: e.record_id)
        self.version = version
        self.dimension = dimension
        self.filter_overfetch = max(1, filter_overfetch)
        self.record_ids = [e.record_id for e in ordered]
        self.catalog_item_ids = [e.catalog_item_id for e in ordered]
        self.metadata = [e.metadata for e in ordered]
        self.timestamps = [e.timestamp for e in ordered]
        if ordered:
            self.matrix = np.vstack([e.vector for e in ordered]).astype(np.float32)
        else:
            self.matrix = np.zeros((0, dimension), dtype=np.float32)
        self.matrix.setflags(write=False)

        if len(ordered) > ann_min_entries:
            self.ann = ann_factory(dimension)
        else:
            self.ann = ExactIndex(dimension)
        self.ann.add(self.matrix)

    @property
    def size(self) -> int:
        return len(self.record_ids)

    def search(self, query: np.ndarray, k: int, metadata_filter: Optional[MetadataFilter] = None,
               exact: bool = False) -> List[SearchHit]:
        if k <= 0 or not self.size:
            return []

        if exact:
            candidates = self._filtered_positions(metadata_filter)
        else:
            candidates = self._ann_candidates(query, k, metadata_filter)

        if candidates.shape[0] == 0:
            return []

        # Exact re-score, then order by similarity desc and record_id asc
        scores = self.matrix[candidates] @ query
        order = np.lexsort((candidates, -scores))[:k]
        return [self._hit(int(candidates[i]), float(scores[i])) for i in order]

    def _ann_candidates(self, query: np.ndarray, k: int,
                        metadata_filter: Optional[MetadataFilter]) -> np.ndarray:
        fetch = k if metadata_filter is None else k * self.filter_overfetch
        # one extra k so boundary ties can still be ordered by record_id
        fetch = min(self.size, fetch + k)
        _, positions = self.ann.search(query, fetch)
        if metadata_filter is None:
            return positions

        kept = np.array([p for p in positions if self._matches(int(p), metadata_filter)], dtype=np.int64)
        if kept.shape[0] < k and fetch < self.size:
            # too few survived the filter; search the filtered subset exactly
            return self._filtered_positions(metadata_filter)
        return kept

    def _filtered_positions(self, metadata_filter: Optional[MetadataFilter]) -> np.ndarray:
        if metadata_filter is None:
            return np.arange(self.size, dtype=np.int64)
        return np.array(
            [p for p in range(self.size) if self._matches(p, metadata_filter)], dtype=np.int64
        )

    def _matches(self, position: int, metadata_filter: MetadataFilter) -> bool:
        return matches_filter(self.catalog_item_ids[position], self.metadata[position], metadata_filter)

    def _hit(self, position: int, score: float) -> SearchHit:
        return SearchHit(
            record_id=self.record_ids[position],
            catalog_item_id=self.catalog_item_ids[position],
            similarity_score=score,
            index_version=self.version,
            timestamp=self.timestamps[position],
            metadata=self.metadata[position],
        )


class VersionedVectorStore(IVectorStore):
    """SQLite-durable, versioned vector store with an ANN index per active version."""

    def __init__(self, db_path: str = ":memory:", dimension: int = 384, ann_backend: str = "hnsw",
                 hnsw_m: int = 32, ef_construction: int = 200, ef_search: int = 128,
                 ann_min_entries: int = 256, filter_overfetch: int = 4,
                 max_attempts: int = 3, backoff_base: float = 0.05,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Open (or create) a store.

        Args:
            db_path: SQLite file, or ":memory:"
            dimension: Dimension every stored vector must have
            ann_backend: "hnsw" (FAISS) or "exact"
            hnsw_m: HNSW graph degree
            ef_construction: HNSW build-time candidate list size
            ef_search: HNSW query-time candidate list size (recall/latency knob)
            ann_min_entries: Versions this small are always searched exactly
            filter_overfetch: Candidate multiplier for filtered ANN searches
            max_attempts: Attempts for a storage transaction before giving up
            backoff_base: Base of the exponential backoff between attempts
        """
        if ann_backend not in ("hnsw", "exact"):
            raise ValueError(f"Unknown ANN backend: {ann_backend}")
        self.db_path = db_path
        self.dimension = dimension
        self.ann_backend = ann_backend
        self.hnsw_m = hnsw_m
        self.ef_construction = ef_construction
        self.ef_search = ef_search
        self.ann_min_entries = ann_min_entries
        self.filter_overfetch = filter_overfetch
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self._sleep = sleep

        self._db_lock = threading.RLock()
        self._write_lock = threading.RLock()
        self._building: Dict[int, Dict[str, IndexEntry]] = {}
        self._active: Optional[VersionSnapshot] = None

        try:
            self.conn = connect(db_path)
            init_db(self.conn)
        except sqlite3.Error as e:
            raise StorageUnavailable(f"Cannot open vector store at {db_path}: {e}") from e
        self._load()

    # Lifecycle

    @property
    def db_lock(self) -> threading.RLock:
        """Lock guarding the shared SQLite connection."""
        return self._db_lock

    @property
    def active_version(self) -> Optional[int]:
        snapshot = self._active
        return snapshot.version if snapshot is not None else None

    def begin_version(self, base_version: Optional[int] = None) -> int:
        """
        Allocate the next version in `building` state.

        Args:
            base_version: Copy this version's entries into the new one

        Returns:
            The new version number
        """
        with self._write_lock:
            base_entries: Dict[str, IndexEntry] = {}
            if base_version is not None:
                status = self._status(base_version)
                if status not in (ACTIVE, RETIRED):
                    raise VersionConflict(
                        f"Cannot base a new version on version {base_version} ({status or 'missing'})",
                        details={"version": base_version, "status": status},
                    )
                base_entries = {e.record_id: e for e in self._load_entries(base_version)}

            def work(cursor):
                cursor.execute("SELECT COALESCE(MAX(version), 0) FROM index_versions")
                version = cursor.fetchone()[0] + 1
                cursor.execute(
                    "INSERT INTO index_versions (version, status, dimension, base_version, created_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (version, BUILDING, self.dimension, base_version, datetime.now().isoformat()),
                )
                if base_version is not None:
                    cursor.execute(
                        "INSERT INTO index_entries (version, record_id, catalog_item_id, vector, metadata, timestamp) "
                        "SELECT ?, record_id, catalog_item_id, vector, metadata, timestamp "
                        "FROM index_entries WHERE version = ?",
                        (version, base_version),
                    )
                return version

            version = self._transaction(work)
            self._building[version] = {
                record_id: _with_version(entry, version) for record_id, entry in base_entries.items()
            }

        logger.log_vector_operation("begin_version", version, {
            "base_version": base_version, "copied": len(base_entries)
        })
        return version

    def upsert(self, entries: Sequence[IndexEntry], version: int) -> None:
        """
        Add entries to a building version.

        Re-upserting a record_id within the same version replaces the prior
        entry. Sealed versions never change.
        """
        if not entries:
            return

        prepared: Dict[str, IndexEntry] = {}
        for entry in entries:
            vector = self._normalize(entry.vector)
            prepared[entry.record_id] = IndexEntry(
                record_id=entry.record_id,
                vector=vector,
                catalog_item_id=entry.catalog_item_id,
                metadata=dict(entry.metadata or {}),
                index_version=version,
                timestamp=entry.timestamp,
            )

        with self._write_lock:
            building = self._building.get(version)
            if building is None:
                status = self._status(version)
                raise VersionConflict(
                    f"Version {version} is not accepting writes ({status or 'missing'})",
                    details={"version": version, "status": status},
                )

            rows = [
                (
                    version,
                    e.record_id,
                    e.catalog_item_id,
                    e.vector.tobytes(),
                    json.dumps(e.metadata, sort_keys=True, default=str),
                    e.timestamp.isoformat() if e.timestamp else None,
                )
                for e in prepared.values()
            ]
            self._transaction(lambda cursor: cursor.executemany(
                "INSERT OR REPLACE INTO index_entries "
                "(version, record_id, catalog_item_id, vector, metadata, timestamp) VALUES (?, ?, ?, ?, ?, ?)",
                rows,
            ))
            building.update(prepared)

        logger.log_vector_operation("upsert", version, {"entries": len(prepared)})

    def activate(self, version: int, expected_active=_UNSET) -> None:
        """
        Atomically switch the version queries read.

        Args:
            version: Building version to seal, or a retained retired version
            expected_active: When given, the switch only happens if this is
                still the active version (None meaning no active version)

        Raises:
            VersionConflict: on a compare-and-swap mismatch or an unusable version
        """
        with self._write_lock:
            current = self.active_version
            if expected_active is not _UNSET and expected_active != current:
                raise VersionConflict(
                    f"Active version is {current}, expected {expected_active}",
                    details={"active": current, "expected": expected_active},
                )
            if version == current:
                return

            if version in self._building:
                entries = list(self._building[version].values())
            else:
                status = self._status(version)
                if status != RETIRED:
                    raise VersionConflict(
                        f"Version {version} cannot be activated ({status or 'missing'})",
                        details={"version": version, "status": status},
                    )
                entries = self._load_entries(version)

            if not entries:
                raise VersionConflict(f"Version {version} has no entries", details={"version": version})

            started = time.perf_counter()
            snapshot = self._seal(version, entries)
            seal_ms = (time.perf_counter() - started) * 1000

            now = datetime.now().isoformat()

            def work(cursor):
                cursor.execute(
                    "UPDATE index_versions SET status = ?, retired_at = ? WHERE status = ?",
                    (RETIRED, now, ACTIVE),
                )
                cursor.execute(
                    "UPDATE index_versions SET status = ?, activated_at = ?, retired_at = NULL WHERE version = ?",
                    (ACTIVE, now, version),
                )

            self._transaction(work)
            # single reference swap; readers hold whichever snapshot they already took
            self._active = snapshot
            self._building.pop(version, None)

        logger.log_vector_operation("activate", version, {
            "previous": current, "entries": snapshot.size, "seal_ms": round(seal_ms, 2)
        })

    def discard(self, version: int) -> None:
        """Abandon a building version and drop its entries."""
        with self._write_lock:
            if self._building.pop(version, None) is None:
                raise VersionConflict(f"Version {version} is not building", details={"version": version})

            def work(cursor):
                cursor.execute("DELETE FROM index_entries WHERE version = ?", (version,))
                cursor.execute("UPDATE index_versions SET status = ? WHERE version = ?", (FAILED, version))

            self._transaction(work)

        logger.log_vector_operation("discard", version, status="failed")

    def compact(self, retain: Iterable[int]) -> List[int]:
        """
        Drop entries of sealed versions not in `retain`.

        Building versions are never touched. In-flight searches keep the
        snapshot they started with.

        Raises:
            VersionConflict: if `retain` omits the active version
        """
        retain = set(retain)
        with self._write_lock:
            active = self.active_version
            if active is not None and active not in retain:
                raise VersionConflict(
                    f"Compaction would drop active version {active}",
                    details={"active": active, "retain": sorted(retain)},
                )

            def work(cursor):
                cursor.execute(
                    "SELECT version FROM index_versions WHERE status IN (?, ?) ORDER BY version",
                    (RETIRED, FAILED),
                )
                dropped = [row[0] for row in cursor.fetchall() if row[0] not in retain]
                for version in dropped:
                    cursor.execute("DELETE FROM index_entries WHERE version = ?", (version,))
                    cursor.execute("UPDATE index_versions SET status = ? WHERE version = ?", (COMPACTED, version))
                return dropped

            dropped = self._transaction(work)

        logger.log_vector_operation("compact", active, {"dropped": dropped, "retain": sorted(retain)})
        return dropped

    # Reads

    def search(self, vector: np.ndarray, k: int, filter: Optional[MetadataFilter] = None,
               exact: bool = False) -> List[SearchHit]:
        """
        Nearest neighbors of `vector` among the active version's entries.

        Returns:
            At most k hits ordered by similarity desc, record_id asc
        """
        snapshot = self._active
        if snapshot is None:
            return []
        query = self._normalize(vector)
        hits = snapshot.search(query, k, filter, exact=exact)
        if filter is not None:
            logger.debug(f"Filtered search {describe_filter(filter)} returned {len(hits)} hits")
        return hits

    def count(self, version: Optional[int] = None) -> int:
        """Number of entries in a version (default: the active one)."""
        snapshot = self._active
        if version is None:
            return snapshot.size if snapshot is not None else 0
        if snapshot is not None and snapshot.version == version:
            return snapshot.size
        building = self._building.get(version)
        if building is not None:
            return len(building)
        return self._transaction(lambda cursor: cursor.execute(
            "SELECT COUNT(*) FROM index_entries WHERE version = ?", (version,)
        ).fetchone()[0])

    def get_entry(self, record_id: str, version: Optional[int] = None) -> Optional[IndexEntry]:
        """Fetch one stored entry (default: from the active version)."""
        if version is None:
            version = self.active_version
            if version is None:
                return None
        building = self._building.get(version)
        if building is not None:
            return building.get(record_id)
        rows = self._transaction(lambda cursor: cursor.execute(
            "SELECT record_id, catalog_item_id, vector, metadata, timestamp FROM index_entries "
            "WHERE version = ? AND record_id = ?",
            (version, record_id),
        ).fetchall())
        return _row_to_entry(rows[0], version) if rows else None

    def versions(self) -> List[Dict[str, object]]:
        """All known versions with their status and entry counts."""
        def work(cursor):
            cursor.execute(
                "SELECT v.version, v.status, v.base_version, v.created_at, v.activated_at, v.retired_at, "
                "COUNT(e.record_id) FROM index_versions v "
                "LEFT JOIN index_entries e ON e.version = v.version "
                "GROUP BY v.version ORDER BY v.version"
            )
            return cursor.fetchall()

        return [
            {
                "version": row[0],
                "status": row[1],
                "base_version": row[2],
                "created_at": row[3],
                "activated_at": row[4],
                "retired_at": row[5],
                "record_count": row[6],
            }
            for row in self._transaction(work)
        ]

    def stats(self) -> Dict[str, object]:
        """Summary used by the admin API."""
        return {
            "active_version": self.active_version,
            "record_count": self.count(),
            "dimension": self.dimension,
            "ann_backend": self.ann_backend,
            "ef_search": self.ef_search,
            "versions": self.versions(),
        }

    def close(self):
        with self._db_lock:
            self.conn.close()

    # Internals

    def _normalize(self, vector) -> np.ndarray:
        array = np.asarray(vector, dtype=np.float32).reshape(-1)
        if array.shape[0] != self.dimension:
            raise EmbeddingDimensionMismatch(self.dimension, int(array.shape[0]))
        norm = float(np.linalg.norm(array))
        if not np.isfinite(norm) or norm == 0.0:
            raise ValueError("Cannot store or search a zero or non-finite vector")
        array = array / norm
        array.setflags(write=False)
        return array

    def _ann_factory(self, dimension: int) -> IAnnIndex:
        if self.ann_backend == "hnsw":
            return FaissHnswIndex(dimension, m=self.hnsw_m, ef_construction=self.ef_construction,
                                  ef_search=self.ef_search)
        return ExactIndex(dimension)

    def _seal(self, version: int, entries: Sequence[IndexEntry]) -> VersionSnapshot:
        return VersionSnapshot(
            version, entries, self.dimension, self._ann_factory,
            ann_min_entries=self.ann_min_entries, filter_overfetch=self.filter_overfetch,
        )

    def _status(self, version: int) -> Optional[str]:
        rows = self._transaction(lambda cursor: cursor.execute(
            "SELECT status FROM index_versions WHERE version = ?", (version,)
        ).fetchall())
        return rows[0][0] if rows else None

    def _load_entries(self, version: int) -> List[IndexEntry]:
        snapshot = self._active
        if snapshot is not None and snapshot.version == version:
            return [
                IndexEntry(
                    record_id=snapshot.record_ids[i],
                    vector=snapshot.matrix[i],
                    catalog_item_id=snapshot.catalog_item_ids[i],
                    metadata=snapshot.metadata[i],
                    index_version=version,
                    timestamp=snapshot.timestamps[i],
                )
                for i in range(snapshot.size)
            ]
        rows = self._transaction(lambda cursor: cursor.execute(
            "SELECT record_id, catalog_item_id, vector, metadata, timestamp FROM index_entries "
            "WHERE version = ? ORDER BY record_id",
            (version,),
        ).fetchall())
        entries = [_row_to_entry(row, version) for row in rows]
        for entry in entries:
            if entry.vector.shape[0] != self.dimension:
                raise EmbeddingDimensionMismatch(self.dimension, int(entry.vector.shape[0]))
        return entries

    def _load(self):
        """Restore the active version; versions a crash left building become failed."""
        def work(cursor):
            cursor.execute("UPDATE index_versions SET status = ? WHERE status = ?", (FAILED, BUILDING))
            abandoned = cursor.rowcount
            cursor.execute("SELECT version, dimension FROM index_versions WHERE status = ?", (ACTIVE,))
            return abandoned, cursor.fetchone()

        abandoned, active = self._transaction(work)
        if abandoned:
            logger.warning(f"Marked {abandoned} interrupted index version(s) as failed")
        if active is None:
            return

        version, dimension = active
        if dimension != self.dimension:
            raise EmbeddingDimensionMismatch(self.dimension, dimension)
        entries = self._load_entries(version)
        self._active = self._seal(version, entries)
        logger.log_vector_operation("load", version, {"entries": len(entries)})

    def _transaction(self, work):
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=2.0),
            retry=retry_if_exception_type(sqlite3.OperationalError),
            sleep=self._sleep,
            reraise=True,
        )
        try:
            with self._db_lock:
                return retrying(self._run_transaction, work)
        except sqlite3.Error as e:
            logger.log_vector_operation("transaction", None, {"error": str(e)}, status="failed")
            raise StorageUnavailable(f"Vector store unavailable: {e}") from e

    def _run_transaction(self, work):
        cursor = self.conn.cursor()
        try:
            result = work(cursor)
            self.conn.commit()
            return result
        except sqlite3.Error:
            self.conn.rollback()
            raise


def _with_version(entry: IndexEntry, version: int) -> IndexEntry:
    return IndexEntry(
        record_id=entry.record_id,
        vector=entry.vector,
        catalog_item_id=entry.catalog_item_id,
        metadata=entry.metadata,
        index_version=version,
        timestamp=entry.timestamp,
    )


def _row_to_entry(row, version: int) -> IndexEntry:
    record_id, catalog_item_id, blob, metadata, timestamp = row
    vector = np.frombuffer(blob, dtype=np.float32).copy()
    vector.setflags(write=False)
    return IndexEntry(
        record_id=record_id,
        vector=vector,
        catalog_item_id=catalog_item_id,
        metadata=json.loads(metadata),
        index_version=version,
        timestamp=parse_timestamp(timestamp),
    )
