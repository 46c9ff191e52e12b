"""
Offline indexing pipeline: historical records -> embeddings -> a new index
version, activated only when the run succeeds.

State machine: IDLE -> EXTRACTING -> EMBEDDING -> UPSERTING -> ACTIVATING ->
COMPLETED | FAILED. Per-record embedding failures are reported and excluded;
only fatal conditions fail the run, and a failed run never touches the
version queries are reading.
"""

import threading
import uuid
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from ..core.errors import CatalogMatchError, IndexRunFailed, IndexRunInProgress
from ..core.schema import HistoricalRecord
from ..util.logging import logger
from ..vector.embeddings import EmbeddingClient
from ..vector.store import ACTIVE, BUILDING, RETIRED, VersionedVectorStore
from ..vector.types import IndexEntry
from .feed import FeedItem, extract


class RunState(str, Enum):
    IDLE = "idle"
    EXTRACTING = "extracting"
    EMBEDDING = "embedding"
    UPSERTING = "upserting"
    ACTIVATING = "activating"
    COMPLETED = "completed"
    FAILED = "failed"


MODES = ("full", "incremental")


@dataclass
class RecordFailure:
    record_id: str
    code: str
    message: str


@dataclass
class IndexRunReport:
    """Outcome of one indexing run."""
    run_id: str
    mode: str = "full"
    state: RunState = RunState.IDLE
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    version: Optional[int] = None
    previous_version: Optional[int] = None
    received: int = 0
    rejected: int = 0
    superseded: int = 0
    embedded: int = 0
    failed: int = 0
    indexed: int = 0
    failures: List[RecordFailure] = field(default_factory=list)
    compacted: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[Dict[str, Any]] = None

    @property
    def failure_rate(self) -> float:
        attempted = self.embedded + self.failed
        return self.failed / attempted if attempted else 0.0

    def to_dict(self) -> Dict[str, Any]:
        """Convert report to dictionary for serialization."""
        data = {
            "run_id": self.run_id,
            "mode": self.mode,
            "state": self.state.value,
            "created_at": self.created_at.isoformat(),
            "version": self.version,
            "previous_version": self.previous_version,
            "received": self.received,
            "rejected": self.rejected,
            "superseded": self.superseded,
            "embedded": self.embedded,
            "failed": self.failed,
            "indexed": self.indexed,
            "failure_rate": round(self.failure_rate, 4),
            "failures": [f.__dict__ for f in self.failures],
            "compacted": self.compacted,
            "warnings": self.warnings,
            "error": self.error,
        }
        if self.started_at:
            data["started_at"] = self.started_at.isoformat()
        if self.completed_at:
            data["completed_at"] = self.completed_at.isoformat()
            if self.started_at:
                data["duration_sec"] = round((self.completed_at - self.started_at).total_seconds(), 3)
        return data


class IndexingPipeline:
    """Builds and activates index versions from extraction feed snapshots."""

    def __init__(self, store: VersionedVectorStore, client: EmbeddingClient, batch_size: int = 64,
                 concurrency: int = 4, max_failure_rate: float = 0.1, auto_compact: bool = False,
                 retain_versions: int = 2, history_size: int = 50):
        if not 0.0 <= max_failure_rate <= 1.0:
            raise ValueError("max_failure_rate must be within [0, 1]")
        if retain_versions < 1:
            raise ValueError("retain_versions must be >= 1")
        self.store = store
        self.client = client
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.max_failure_rate = max_failure_rate
        self.auto_compact = auto_compact
        self.retain_versions = retain_versions
        self.history_size = history_size

        self._run_lock = threading.Lock()
        self._state = RunState.IDLE
        self._reports: "OrderedDict[str, IndexRunReport]" = OrderedDict()
        self._reports_lock = threading.Lock()
        self._background = ThreadPoolExecutor(max_workers=1, thread_name_prefix="indexing")

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def last_report(self) -> Optional[IndexRunReport]:
        with self._reports_lock:
            return next(reversed(self._reports.values()), None)

    def get_report(self, run_id: str) -> Optional[IndexRunReport]:
        with self._reports_lock:
            return self._reports.get(run_id)

    def run(self, feed: Iterable[FeedItem], mode: str = "full") -> IndexRunReport:
        """
        Run one indexing pass synchronously.

        Args:
            feed: HistoricalRecords or raw feed mappings
            mode: "full" builds from the feed alone; "incremental" starts
                from the active version's entries

        Returns:
            The run report; check `state` for COMPLETED or FAILED

        Raises:
            IndexRunInProgress: another run holds this pipeline
        """
        return self._run(feed, self._new_report(mode))

    def submit(self, feed: Iterable[FeedItem], mode: str = "full") -> str:
        """Queue a run on the background worker; returns its run id."""
        report = self._new_report(mode)
        self._background.submit(self._run_in_background, feed, report)
        logger.log_index_run(report.run_id, "queued", {"mode": mode})
        return report.run_id

    def shutdown(self, wait: bool = True):
        self._background.shutdown(wait=wait)

    def _new_report(self, mode: str) -> IndexRunReport:
        if mode not in MODES:
            raise ValueError(f"mode must be one of: {MODES}")
        report = IndexRunReport(run_id=uuid.uuid4().hex[:12], mode=mode)
        with self._reports_lock:
            self._reports[report.run_id] = report
            while len(self._reports) > self.history_size:
                self._reports.popitem(last=False)
        return report

    def _run_in_background(self, feed, report: IndexRunReport):
        try:
            self._run(feed, report)
        except Exception as e:
            error = e if isinstance(e, CatalogMatchError) else IndexRunFailed(
                f"Indexing run aborted: {e}", details={"cause": type(e).__name__}
            )
            report.state = RunState.FAILED
            report.error = error.to_dict()
            report.completed_at = datetime.now()
            logger.log_index_run(report.run_id, RunState.FAILED.value, {"error": error.code})

    def _run(self, feed, report: IndexRunReport) -> IndexRunReport:
        if not self._run_lock.acquire(blocking=False):
            raise IndexRunInProgress("An indexing run is already in progress")
        try:
            report.started_at = datetime.now()
            self._execute(feed, report)
        finally:
            report.completed_at = datetime.now()
            self._state = RunState.IDLE
            self._run_lock.release()
        return report

    def _transition(self, report: IndexRunReport, state: RunState, details: Dict[str, Any] = None):
        self._state = state
        report.state = state
        logger.log_index_run(report.run_id, state.value, details)

    def _execute(self, feed, report: IndexRunReport):
        version = None
        try:
            self._transition(report, RunState.EXTRACTING, {"mode": report.mode})
            records = self._extract(feed, report)

            previous = self.store.active_version
            report.previous_version = previous
            base = previous if report.mode == "incremental" else None
            version = self.store.begin_version(base_version=base)
            report.version = version

            self._transition(report, RunState.EMBEDDING, {"version": version, "records": len(records)})
            entries = self._embed(records, report)

            if report.failure_rate > self.max_failure_rate:
                raise IndexRunFailed(
                    f"Embedding failure rate {report.failure_rate:.1%} exceeds {self.max_failure_rate:.1%}",
                    details={"failed": report.failed, "embedded": report.embedded},
                )

            self._transition(report, RunState.UPSERTING, {"version": version, "entries": len(entries)})
            for start in range(0, len(entries), self.batch_size):
                self.store.upsert(entries[start:start + self.batch_size], version)
            report.indexed = self.store.count(version)
            if report.indexed == 0:
                raise IndexRunFailed("No records were indexed", details={"received": report.received})

            self._transition(report, RunState.ACTIVATING, {"version": version, "indexed": report.indexed})
            self.store.activate(version, expected_active=previous)
        except Exception as e:
            error = e if isinstance(e, IndexRunFailed) else IndexRunFailed(
                f"Indexing run aborted: {e}",
                details={"cause": getattr(e, "code", type(e).__name__)},
            )
            report.error = error.to_dict()
            try:
                self._abandon(version)
            finally:
                self._transition(report, RunState.FAILED, {"version": version, "error": error.message})
            return

        # the new version is live from here on; later problems are warnings
        if self.auto_compact:
            try:
                report.compacted = self.compact()
            except CatalogMatchError as e:
                report.warnings.append(f"Compaction skipped: {e.code}: {e.message}")
                logger.warning(f"Compaction after run {report.run_id} failed: {e.message}")

        self._transition(report, RunState.COMPLETED, {
            "version": version,
            "indexed": report.indexed,
            "failed": report.failed,
            "compacted": report.compacted,
            "warnings": len(report.warnings),
        })

    def _extract(self, feed, report: IndexRunReport) -> List[HistoricalRecord]:
        extraction = extract(feed)
        report.received = extraction.received
        report.superseded = extraction.superseded

        records = []
        for record_id, message in extraction.rejected:
            report.failures.append(RecordFailure(record_id, "INVALID_RECORD", message))
            logger.log_record_failure(report.run_id, record_id, "INVALID_RECORD", message)
        report.rejected = len(extraction.rejected)

        for record in extraction.records:
            try:
                normalized = self.client.prepare(record.text)
            except CatalogMatchError as e:
                report.rejected += 1
                report.failures.append(RecordFailure(record.id, e.code, e.message))
                continue
            records.append(record.model_copy(update={"text": normalized}))
        return records

    def _embed(self, records: List[HistoricalRecord], report: IndexRunReport) -> List[IndexEntry]:
        batches = [records[i:i + self.batch_size] for i in range(0, len(records), self.batch_size)]
        entries: List[IndexEntry] = []
        if not batches:
            return entries

        with ThreadPoolExecutor(max_workers=min(self.concurrency, len(batches)),
                                thread_name_prefix="embed") as executor:
            futures = {
                executor.submit(self.client.embed_batch, [r.text for r in batch], True): batch
                for batch in batches
            }
            try:
                for future in as_completed(futures):
                    batch = futures[future]
                    for record, outcome in zip(batch, future.result()):
                        if isinstance(outcome, Exception):
                            self._record_failure(report, record.id, outcome)
                            continue
                        report.embedded += 1
                        entries.append(IndexEntry(
                            record_id=record.id,
                            vector=outcome,
                            catalog_item_id=record.catalog_item_id,
                            metadata=dict(record.metadata),
                            timestamp=record.timestamp,
                        ))
            except Exception:
                for pending in futures:
                    pending.cancel()
                raise

        entries.sort(key=lambda e: e.record_id)
        return entries

    def _record_failure(self, report: IndexRunReport, record_id: str, error: Exception):
        code = getattr(error, "code", type(error).__name__)
        message = getattr(error, "message", str(error))
        report.failed += 1
        report.failures.append(RecordFailure(record_id, code, message))
        logger.log_record_failure(report.run_id, record_id, code, message)

    def compact(self, retain: Optional[Iterable[int]] = None) -> List[int]:
        """
        Drop retired and failed versions.

        Args:
            retain: Versions to keep (default: the newest `retain_versions`
                sealed versions plus the active one)
        """
        if retain is None:
            sealed = sorted(
                v["version"] for v in self.store.versions() if v["status"] in (ACTIVE, RETIRED)
            )
            retain = set(sealed[-self.retain_versions:])
            if self.store.active_version is not None:
                retain.add(self.store.active_version)
        return self.store.compact(retain)

    def _abandon(self, version: Optional[int]):
        if version is None:
            return
        try:
            statuses = {v["version"]: v["status"] for v in self.store.versions()}
            if statuses.get(version) == BUILDING:
                self.store.discard(version)
        except CatalogMatchError as e:
            # the store marks leftover building versions failed when it is reopened
            logger.error(f"Could not discard failed index version {version}: {e.message}")
