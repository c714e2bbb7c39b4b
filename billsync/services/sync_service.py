"""Outbox replay against the remote store, plus the pull path and a background worker."""
from __future__ import annotations

import json
import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from billsync.core.config import settings
from billsync.errors import (
    Conflict,
    NotFound,
    PermanentSyncFailure,
    StorageFailure,
    TransientSyncFailure,
    ValidationError,
)
from billsync.locks import KeyedLock
from billsync.models import SyncQueueEntry
from billsync.remote import RemoteStore
from billsync.services.entity_store import LocalEntityStore, row_to_dict
from billsync.time_utils import utcnow

log = logging.getLogger(__name__)

LOCAL_ONLY_FIELDS = ("is_synced", "deleted", "items")
PULL_TABLES = ("stores", "employees", "products", "customers", "invoices")

EntityKey = Tuple[str, str]


@dataclass
class SyncWarning:
    entry_id: int
    entity_type: str
    entity_id: str
    action: str
    message: str
    retry_count: int = 0


@dataclass
class SyncReport:
    processed: int = 0
    failed: int = 0
    blocked: int = 0
    deferred: int = 0
    pulled: int = 0
    skipped: bool = False
    warnings: List[SyncWarning] = field(default_factory=list)

    def merge(self, other: "SyncReport") -> None:
        self.processed += other.processed
        self.failed += other.failed
        self.blocked += other.blocked
        self.deferred += other.deferred
        self.pulled += other.pulled
        self.warnings.extend(other.warnings)


def remote_row(payload: Mapping[str, Any]) -> Dict[str, Any]:
    """Strip local bookkeeping from a queued payload before it goes remote."""
    return {key: value for key, value in payload.items() if key not in LOCAL_ONLY_FIELDS}


def _entry_dict(obj: SyncQueueEntry) -> Dict[str, Any]:
    row = row_to_dict(obj)
    row["payload"] = json.loads(obj.data) if obj.data else {}
    return row


class SyncQueue:
    """Durable FIFO of pending remote writes (table ``sync_queue``)."""

    def __init__(self, store: LocalEntityStore):
        self._store = store

    def pending(self, entity_type: Optional[str] = None, entity_id: Optional[str] = None) -> List[Dict[str, Any]]:
        stmt = select(SyncQueueEntry).where(SyncQueueEntry.status == "pending")
        if entity_type is not None:
            stmt = stmt.where(SyncQueueEntry.entity_type == entity_type)
        if entity_id is not None:
            stmt = stmt.where(SyncQueueEntry.entity_id == entity_id)
        stmt = stmt.order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
        with self._store.transaction() as session:
            return [_entry_dict(obj) for obj in session.execute(stmt).scalars()]

    def blocked(self) -> List[Dict[str, Any]]:
        stmt = (
            select(SyncQueueEntry)
            .where(SyncQueueEntry.status == "blocked")
            .order_by(SyncQueueEntry.created_at, SyncQueueEntry.id)
        )
        with self._store.transaction() as session:
            return [_entry_dict(obj) for obj in session.execute(stmt).scalars()]

    def blocked_entities(self) -> set:
        stmt = select(SyncQueueEntry.entity_type, SyncQueueEntry.entity_id).where(
            SyncQueueEntry.status == "blocked"
        )
        with self._store.transaction() as session:
            return {(etype, eid) for etype, eid in session.execute(stmt)}

    def get(self, entry_id: int) -> Optional[Dict[str, Any]]:
        with self._store.transaction() as session:
            obj = session.get(SyncQueueEntry, entry_id)
            return _entry_dict(obj) if obj is not None else None

    def count(self, status: Optional[str] = None) -> int:
        stmt = select(func.count()).select_from(SyncQueueEntry)
        if status is not None:
            stmt = stmt.where(SyncQueueEntry.status == status)
        with self._store.transaction() as session:
            return session.execute(stmt).scalar_one()

    def _update(self, entry_id: int, **values) -> Dict[str, Any]:
        with self._store.transaction() as session:
            obj = session.get(SyncQueueEntry, entry_id)
            if obj is None:
                raise NotFound(f"Sync queue entry {entry_id} not found")
            for key, value in values.items():
                setattr(obj, key, value)
            session.flush()
            return _entry_dict(obj)

    def record_failure(self, entry_id: int, error: str, next_attempt_at: datetime) -> Dict[str, Any]:
        with self._store.transaction() as session:
            obj = session.get(SyncQueueEntry, entry_id)
            if obj is None:
                raise NotFound(f"Sync queue entry {entry_id} not found")
            obj.retry_count += 1
            obj.last_error = error
            obj.next_attempt_at = next_attempt_at
            session.flush()
            return _entry_dict(obj)

    def block(self, entry_id: int, error: str, retry_count: Optional[int] = None) -> Dict[str, Any]:
        values: Dict[str, Any] = {"status": "blocked", "last_error": error, "next_attempt_at": None}
        if retry_count is not None:
            values["retry_count"] = retry_count
        return self._update(entry_id, **values)

    def release(self, entry_id: int) -> Dict[str, Any]:
        """Put a blocked entry back in line with a fresh retry budget."""
        entry = self._update(entry_id, status="pending", retry_count=0, next_attempt_at=None)
        log.info("Released sync entry %s (%s %s/%s)", entry_id, entry["action"], entry["entity_type"], entry["entity_id"])
        return entry

    def discard(self, entry_id: int) -> None:
        """Drop an entry on explicit operator request. The local row stays unsynced."""
        with self._store.transaction() as session:
            obj = session.get(SyncQueueEntry, entry_id)
            if obj is None:
                raise NotFound(f"Sync queue entry {entry_id} not found")
            log.warning(
                "Discarding sync entry %s (%s %s/%s) on request",
                entry_id,
                obj.action,
                obj.entity_type,
                obj.entity_id,
            )
            session.delete(obj)


    def complete(self, entry_id: int, *, session: Optional[Session] = None) -> None:
        """Remove an entry the remote store has confirmed."""
        stmt = sa_delete(SyncQueueEntry).where(SyncQueueEntry.id == entry_id)
        if session is not None:
            session.execute(stmt)
            return
        with self._store.transaction() as own:
            own.execute(stmt)


class Reconciler:
    """
    Replays the sync queue against a remote store and mirrors remote rows back.

    Entries for one entity are applied strictly in creation order under a
    per-entity lock; different entities may be drained in parallel. Failures
    never remove an entry: transient ones are rescheduled with exponential
    backoff, permanent ones (or transient ones past ``max_retries``) are
    blocked and announced as ``SyncWarning``.
    """

    def __init__(
        self,
        store: LocalEntityStore,
        remote: RemoteStore,
        *,
        queue: Optional[SyncQueue] = None,
        locks: Optional[KeyedLock] = None,
        max_retries: int = settings.SYNC_MAX_RETRIES,
        backoff_base: float = settings.SYNC_BACKOFF_BASE,
        backoff_max: float = settings.SYNC_BACKOFF_MAX,
        max_workers: int = settings.SYNC_WORKERS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._remote = remote
        self.queue = queue or SyncQueue(store)
        self._locks = locks or store.locks
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.max_workers = max(1, int(max_workers))
        self._clock = clock
        self._listeners: List[Callable[[SyncWarning], None]] = []
        self._drain_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Warnings
    def on_warning(self, listener: Callable[[SyncWarning], None]) -> Callable[[], None]:
        """Subscribe to sync warnings; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _warn(self, entry: Mapping[str, Any], message: str, retry_count: int, report: SyncReport) -> None:
        warning = SyncWarning(
            entry_id=entry["id"],
            entity_type=entry["entity_type"],
            entity_id=entry["entity_id"],
            action=entry["action"],
            message=message,
            retry_count=retry_count,
        )
        report.warnings.append(warning)
        log.warning(
            "Sync blocked for %s %s/%s (entry %s): %s",
            warning.action,
            warning.entity_type,
            warning.entity_id,
            warning.entry_id,
            message,
        )
        for listener in list(self._listeners):
            try:
                listener(warning)
            except Exception:
                log.exception("Sync warning listener %r failed", listener)

    def backoff_seconds(self, retry_count: int) -> float:
        return min(self.backoff_base * 2 ** max(retry_count - 1, 0), self.backoff_max)

    # ------------------------------------------------------------------
    # Remote application
    def _upsert(self, collection: str, row_id: str, row: Mapping[str, Any], action: str) -> None:
        if action == "create":
            try:
                self._remote.create(collection, row)
            except Conflict:
                log.debug("%s/%s already exists remotely; updating instead", collection, row_id)
                self._remote.update(collection, row_id, row)
        else:
            try:
                self._remote.update(collection, row_id, row)
            except NotFound:
                log.debug("%s/%s missing remotely; creating instead", collection, row_id)
                self._remote.create(collection, row)

    def _delete_remote(self, collection: str, row_id: str) -> None:
        try:
            self._remote.delete(collection, row_id)
        except NotFound:
            log.debug("%s/%s already gone remotely", collection, row_id)

    def _replace_remote_items(self, invoice_id: str, items: List[Mapping[str, Any]]) -> None:
        wanted = {item["id"] for item in items}
        for existing in self._remote.query("invoice_items", {"invoice_id": invoice_id}):
            if existing.get("id") not in wanted:
                self._delete_remote("invoice_items", existing["id"])
        for item in items:
            self._upsert("invoice_items", item["id"], remote_row(item), "create")

    def _apply(self, entry: Mapping[str, Any]) -> None:
        table = self._store.table_for(entry["entity_type"])
        entity_id = entry["entity_id"]
        payload = entry["payload"]

        if entry["action"] == "delete":
            if entry["entity_type"] == "invoice":
                for existing in self._remote.query("invoice_items", {"invoice_id": entity_id}):
                    self._delete_remote("invoice_items", existing["id"])
            self._delete_remote(table.name, entity_id)
            return

        self._upsert(table.name, entity_id, remote_row(payload), entry["action"])
        if entry["entity_type"] == "invoice" and "items" in payload:
            self._replace_remote_items(entity_id, payload["items"])

    def _finish(self, entry: Mapping[str, Any]) -> None:
        """Drop a confirmed entry; settle the local row once nothing else is queued for it."""
        table = self._store.table_for(entry["entity_type"])
        entity_id = entry["entity_id"]
        with self._store.locks.hold((table.name, entity_id)):
            with self._store.transaction() as session:
                self.queue.complete(entry["id"], session=session)
                remaining = session.execute(
                    select(func.count())
                    .select_from(SyncQueueEntry)
                    .where(
                        SyncQueueEntry.entity_type == entry["entity_type"],
                        SyncQueueEntry.entity_id == entity_id,
                    )
                ).scalar_one()
                if remaining:
                    return
                obj = session.get(table.model, entity_id)
                if obj is None:
                    return
                if obj.deleted:
                    table._purge(session, entity_id)
                    log.debug("Purged %s/%s after remote delete", table.name, entity_id)
                else:
                    table.mark_synced(session, entity_id)

    def _process(self, entry: Dict[str, Any], now: datetime, report: SyncReport) -> bool:
        """Apply one entry. Returns False when the rest of the entity's group must wait."""
        try:
            self._apply(entry)
        except (TransientSyncFailure, NotFound, Conflict) as exc:
            # NotFound/Conflict come from a create/update fallback racing another writer
            retry = entry["retry_count"] + 1
            if retry > self.max_retries:
                self.queue.block(entry["id"], str(exc), retry_count=retry)
                report.blocked += 1
                self._warn(entry, f"gave up after {retry} attempts: {exc}", retry, report)
            else:
                delay = self.backoff_seconds(retry)
                self.queue.record_failure(entry["id"], str(exc), now + timedelta(seconds=delay))
                report.failed += 1
                log.info(
                    "Sync of %s %s/%s failed (attempt %s), retrying in %ss: %s",
                    entry["action"],
                    entry["entity_type"],
                    entry["entity_id"],
                    retry,
                    delay,
                    exc,
                )
            return False
        except (PermanentSyncFailure, ValueError) as exc:
            self.queue.block(entry["id"], str(exc))
            report.blocked += 1
            self._warn(entry, str(exc), entry["retry_count"], report)
            return False
        self._finish(entry)
        report.processed += 1
        return True

    def _drain_group(
        self,
        key: EntityKey,
        entries: List[Dict[str, Any]],
        now: datetime,
        *,
        honour_backoff: bool = True,
    ) -> SyncReport:
        report = SyncReport()
        entity_type, entity_id = key
        with self._locks.hold(("sync", entity_type, entity_id)):
            for index, entry in enumerate(entries):
                due = entry.get("next_attempt_at")
                if honour_backoff and due is not None and due > now:
                    report.deferred += len(entries) - index
                    break
                if not self._process(entry, now, report):
                    report.deferred += len(entries) - index - 1
                    break
        return report

    @staticmethod
    def _group(entries: List[Dict[str, Any]]) -> "OrderedDict[EntityKey, List[Dict[str, Any]]]":
        groups: "OrderedDict[EntityKey, List[Dict[str, Any]]]" = OrderedDict()
        for entry in entries:
            groups.setdefault((entry["entity_type"], entry["entity_id"]), []).append(entry)
        return groups

    # ------------------------------------------------------------------
    # Public API
    def drain(self, now: Optional[datetime] = None) -> SyncReport:
        if not self._drain_guard.acquire(blocking=False):
            log.info("Sync drain already in progress; skipping")
            return SyncReport(skipped=True)
        try:
            now = now or self._clock()
            groups = self._group(self.queue.pending())
            held = self.queue.blocked_entities()
            report = SyncReport()
            runnable = []
            for key, entries in groups.items():
                if key in held:
                    # an earlier entry for this entity needs manual attention
                    report.deferred += len(entries)
                else:
                    runnable.append((key, entries))

            if self.max_workers > 1 and len(runnable) > 1:
                with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="billsync-drain") as pool:
                    futures = [pool.submit(self._drain_group, key, entries, now) for key, entries in runnable]
                    for future in futures:
                        report.merge(future.result())
            else:
                for key, entries in runnable:
                    report.merge(self._drain_group(key, entries, now))

            if report.processed or report.failed or report.blocked:
                log.info(
                    "Sync drain: %s applied, %s retrying, %s blocked, %s waiting",
                    report.processed,
                    report.failed,
                    report.blocked,
                    report.deferred,
                )
            return report
        finally:
            self._drain_guard.release()

    def sync_entity(self, entity_type: str, entity_id: str) -> SyncReport:
        """Push one entity's queued changes now, ignoring backoff."""
        self._store.table_for(entity_type)
        key = (entity_type, entity_id)
        if key in self.queue.blocked_entities():
            return SyncReport(deferred=len(self.queue.pending(entity_type, entity_id)))
        entries = self.queue.pending(entity_type, entity_id)
        if not entries:
            return SyncReport()
        return self._drain_group(key, entries, self._clock(), honour_backoff=False)

    def pull(self, user_id: str) -> int:
        """Mirror the user's remote rows locally. Returns how many rows were written."""
        merged = 0
        for name in PULL_TABLES:
            table = getattr(self._store, name)
            for row in self._remote.query(name, {"user_id": user_id}):
                try:
                    applied = table.merge_remote(row)
                    if applied and name == "invoices":
                        items = self._remote.query("invoice_items", {"invoice_id": row["id"]})
                        self._store.replace_invoice_items(row["id"], items)
                except (StorageFailure, ValidationError) as exc:
                    log.warning("Skipping remote %s row %s: %s", name, row.get("id"), exc)
                    continue
                if applied:
                    merged += 1
        log.info("Pulled %s rows for user %s", merged, user_id)
        return merged

    def sync_all(self, user_id: Optional[str] = None) -> SyncReport:
        report = self.drain()
        if user_id:
            report.pulled = self.pull(user_id)
        return report


class SyncWorker(threading.Thread):
    """
    Background loop that runs ``sync_all`` every ``interval`` seconds.

    ``trigger()`` wakes it early (connectivity regained, login). ``can_sync``
    gates each cycle (offline, no session). ``stop()`` ends the loop after the
    current cycle; anything not yet pushed stays queued.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        *,
        interval: float = settings.SYNC_INTERVAL,
        user_id: Callable[[], Optional[str]] = lambda: None,
        can_sync: Callable[[], bool] = lambda: True,
    ):
        super().__init__(name="billsync-sync", daemon=True)
        self._reconciler = reconciler
        self._interval = interval
        self._user_id = user_id
        self._can_sync = can_sync
        self._wake = threading.Event()
        self._stopping = threading.Event()
        self.cycles = 0

    def trigger(self) -> None:
        self._wake.set()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stopping.set()
        self._wake.set()
        if self.is_alive():
            self.join(timeout)

    def run_once(self) -> Optional[SyncReport]:
        if not self._can_sync():
            log.debug("Sync skipped: not allowed right now")
            return None
        report = self._reconciler.sync_all(self._user_id())
        self.cycles += 1
        return report

    def run(self) -> None:
        log.info("Sync worker started (interval=%ss)", self._interval)
        while not self._stopping.is_set():
            try:
                self.run_once()
            except Exception:
                log.exception("Sync cycle failed")
            self._wake.wait(self._interval)
            self._wake.clear()
        log.info("Sync worker stopped")
