"""Local mirror of billing entities with an outbox of pending remote writes."""
from __future__ import annotations

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import delete as sa_delete
from sqlalchemy import inspect as sa_inspect
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from billsync.db import SessionLocal
from billsync.errors import NotFound, StorageFailure, ValidationError
from billsync.locks import KeyedLock, default_locks
from billsync.models import (
    Customer,
    Employee,
    Invoice,
    InvoiceItem,
    Product,
    Store,
    SyncQueueEntry,
)
from billsync.security import new_id
from billsync.time_utils import parse_iso_datetime, to_utc_z, utcnow

log = logging.getLogger(__name__)

SYNC_ACTIONS = ("create", "update", "delete")


def row_to_dict(obj) -> Dict[str, Any]:
    return {attr.key: getattr(obj, attr.key) for attr in sa_inspect(obj).mapper.column_attrs}


def to_payload(value: Any) -> Any:
    """Make a row (or list of rows) JSON-safe: datetimes become ISO-8601 'Z' strings."""
    if isinstance(value, datetime):
        return to_utc_z(value)
    if isinstance(value, Mapping):
        return {key: to_payload(val) for key, val in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_payload(val) for val in value]
    return value


class QueryResult:
    """Lazy, finite, restartable view over matching rows.

    Nothing is read until iteration starts. Rows are fetched in primary-key
    pages, each page in its own short session, so a consumer may write to the
    store while iterating. Every new iteration re-reads the table.
    """

    def __init__(
        self,
        table: "EntityTable",
        conditions: Sequence[Any],
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        batch_size: int = 200,
    ):
        self._table = table
        self._conditions = list(conditions)
        self._predicate = predicate
        self._batch_size = batch_size

    def __iter__(self) -> Iterator[Dict[str, Any]]:
        model = self._table.model
        last_id = None
        while True:
            stmt = select(model).where(*self._conditions)
            if last_id is not None:
                stmt = stmt.where(model.id > last_id)
            stmt = stmt.order_by(model.id).limit(self._batch_size)
            with self._table.store.transaction() as session:
                page = [row_to_dict(obj) for obj in session.execute(stmt).scalars()]
            for row in page:
                if self._predicate is None or self._predicate(row):
                    yield row
            if len(page) < self._batch_size:
                return
            last_id = page[-1]["id"]

    def all(self) -> List[Dict[str, Any]]:
        return list(self)

    def first(self) -> Optional[Dict[str, Any]]:
        return next(iter(self), None)

    def count(self) -> int:
        return sum(1 for _ in self)


class EntityTable:
    """Keyed access to one mirrored entity table."""

    def __init__(
        self,
        store: "LocalEntityStore",
        model,
        name: str,
        *,
        entity_type: Optional[str] = None,
        indexes: Iterable[str] = (),
        owner_fields: Sequence[str] = ("user_id",),
    ):
        self.store = store
        self.model = model
        self.name = name
        self.entity_type = entity_type
        self.indexes = frozenset(indexes)
        self.owner_fields = tuple(owner_fields)
        self._columns = {attr.key for attr in sa_inspect(model).column_attrs}
        self.soft_delete = "deleted" in self._columns

    # ------------------------------------------------------------------
    # Helpers
    def _prepare(self, entity: Mapping[str, Any]) -> Dict[str, Any]:
        data = {key: value for key, value in dict(entity).items() if key in self._columns}
        if not data.get("id"):
            data["id"] = new_id()
        for key in ("created_at", "updated_at"):
            if key not in self._columns:
                continue
            if data.get(key) in (None, ""):
                data.pop(key, None)
            else:
                data[key] = parse_iso_datetime(data[key])
        if "updated_at" in self._columns and "updated_at" not in data:
            data["updated_at"] = utcnow()
        return data

    def _check_action(self, sync_action: Optional[str]) -> None:
        if sync_action is None:
            return
        if sync_action not in SYNC_ACTIONS:
            raise ValueError(f"Unknown sync action: {sync_action!r}")
        if not self.entity_type:
            raise ValueError(f"{self.name} is not tracked by the sync queue")

    def _check_owner(self, current, data: Mapping[str, Any]) -> None:
        for field in self.owner_fields:
            stored = getattr(current, field)
            incoming = data.get(field)
            if stored is not None and incoming is not None and incoming != stored:
                raise ValidationError(
                    f"{field} of {self.name}/{current.id} cannot change after creation",
                    {field: "immutable"},
                )

    def _put(
        self,
        session: Session,
        data: Dict[str, Any],
        sync_action: Optional[str],
        *,
        enqueue: bool = True,
    ) -> Tuple[Dict[str, Any], bool]:
        """Upsert inside ``session``. Returns (stored row, whether the write applied)."""
        current = session.get(self.model, data["id"])
        if current is None:
            if "created_at" in self._columns:
                data.setdefault("created_at", data.get("updated_at") or utcnow())
            if sync_action and "is_synced" in self._columns:
                data["is_synced"] = False
            obj = self.model(**data)
            session.add(obj)
        else:
            self._check_owner(current, data)
            incoming = data.get("updated_at")
            stored = getattr(current, "updated_at", None)
            if incoming is not None and stored is not None and incoming < stored:
                log.debug(
                    "Ignoring stale write to %s/%s (%s older than %s)",
                    self.name,
                    current.id,
                    incoming,
                    stored,
                )
                return row_to_dict(current), False
            for key, value in data.items():
                setattr(current, key, value)
            if sync_action and "is_synced" in self._columns:
                current.is_synced = False
            obj = current
        session.flush()
        row = row_to_dict(obj)
        if sync_action and enqueue:
            self.store._enqueue(session, self.entity_type, row["id"], sync_action, row)
        return row, True

    # ------------------------------------------------------------------
    # Public API
    def get(self, entity_id: str, *, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        with self.store.transaction() as session:
            obj = session.get(self.model, entity_id)
            if obj is None:
                return None
            if self.soft_delete and obj.deleted and not include_deleted:
                return None
            return row_to_dict(obj)

    def put(self, entity: Mapping[str, Any], *, sync_action: Optional[str] = None) -> Dict[str, Any]:
        """Upsert one entity, last-writer-wins on ``updated_at``.

        With ``sync_action`` the row is flagged unsynced and a queue entry is
        written in the same transaction.
        """
        self._check_action(sync_action)
        data = self._prepare(entity)
        with self.store.locks.hold((self.name, data["id"])):
            with self.store.transaction() as session:
                row, _ = self._put(session, data, sync_action)
        return row

    def query(
        self,
        index: Optional[str] = None,
        value: Any = None,
        predicate: Optional[Callable[[Dict[str, Any]], bool]] = None,
        *,
        include_deleted: bool = False,
        batch_size: int = 200,
    ) -> QueryResult:
        conditions = []
        if index is not None:
            if index not in self.indexes:
                raise ValueError(f"{self.name} has no index on {index!r}")
            column = getattr(self.model, index)
            conditions.append(column.is_(None) if value is None else column == value)
        if self.soft_delete and not include_deleted:
            conditions.append(self.model.deleted.is_(False))
        return QueryResult(self, conditions, predicate, batch_size)

    def delete(self, entity_id: str, *, sync: bool = True) -> Optional[Dict[str, Any]]:
        """Soft-delete a row (physical delete for tables without a deletion flag)."""
        with self.store.locks.hold((self.name, entity_id)):
            with self.store.transaction() as session:
                obj = session.get(self.model, entity_id)
                if obj is None or (self.soft_delete and obj.deleted):
                    raise NotFound(f"{self.name}/{entity_id} not found")
                if not self.soft_delete:
                    session.delete(obj)
                    return None
                obj.deleted = True
                obj.updated_at = utcnow()
                tracked = sync and self.entity_type is not None
                if tracked:
                    obj.is_synced = False
                session.flush()
                if tracked:
                    self.store._enqueue(session, self.entity_type, entity_id, "delete", {"id": entity_id})
                return row_to_dict(obj)

    def purge(self, entity_id: str) -> bool:
        """Physically remove a row; an invoice takes its items with it."""
        with self.store.locks.hold((self.name, entity_id)):
            with self.store.transaction() as session:
                return self._purge(session, entity_id)

    def _purge(self, session: Session, entity_id: str) -> bool:
        obj = session.get(self.model, entity_id)
        if obj is None:
            return False
        if self.model is Invoice:
            session.execute(sa_delete(InvoiceItem).where(InvoiceItem.invoice_id == entity_id))
        session.delete(obj)
        session.flush()
        return True

    def mark_synced(self, session: Session, entity_id: str) -> None:
        if "is_synced" not in self._columns:
            return
        session.execute(
            update(self.model).where(self.model.id == entity_id).values(is_synced=True)
        )

    def merge_remote(self, remote_row: Mapping[str, Any]) -> bool:
        """Mirror a row pulled from the remote store.

        Rows with local changes still waiting in the queue are left alone;
        otherwise last-writer-wins applies. Returns True when the row was written.
        """
        data = self._prepare(remote_row)
        if "is_synced" in self._columns:
            data["is_synced"] = True
        if self.soft_delete:
            data["deleted"] = False
        with self.store.locks.hold((self.name, data["id"])):
            with self.store.transaction() as session:
                current = session.get(self.model, data["id"])
                if current is not None and "is_synced" in self._columns and not current.is_synced:
                    return False
                _, applied = self._put(session, data, None)
                return applied


class LocalEntityStore:
    """Durable local mirror of stores, employees, products, customers and invoices."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal, *, locks: Optional[KeyedLock] = None):
        self._session_factory = session_factory
        self.locks = locks or default_locks
        self.stores = EntityTable(
            self, Store, "stores",
            indexes=("user_id", "store_code", "is_synced", "deleted"),
        )
        self.employees = EntityTable(
            self, Employee, "employees",
            indexes=("user_id", "store_id", "employee_code", "is_synced", "deleted"),
            owner_fields=("user_id", "store_id"),
        )
        self.products = EntityTable(
            self, Product, "products",
            entity_type="product",
            indexes=("user_id", "store_id", "sku", "is_synced", "deleted"),
            owner_fields=("user_id", "store_id"),
        )
        self.customers = EntityTable(
            self, Customer, "customers",
            entity_type="customer",
            indexes=("user_id", "store_id", "is_synced", "deleted"),
            owner_fields=("user_id", "store_id"),
        )
        self.invoices = EntityTable(
            self, Invoice, "invoices",
            entity_type="invoice",
            indexes=("user_id", "store_id", "customer_id", "invoice_number", "is_synced", "deleted"),
            owner_fields=("user_id", "store_id"),
        )
        self.invoice_items = EntityTable(
            self, InvoiceItem, "invoice_items",
            indexes=("invoice_id", "product_id"),
            owner_fields=("invoice_id",),
        )
        self._tracked = {
            table.entity_type: table
            for table in (self.products, self.customers, self.invoices)
        }

    # ------------------------------------------------------------------
    # Helpers
    @contextmanager
    def transaction(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageFailure(f"Local store error: {exc}") from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _enqueue(self, session: Session, entity_type: str, entity_id: str, action: str, row: Mapping[str, Any]) -> None:
        entry = SyncQueueEntry(
            entity_type=entity_type,
            entity_id=entity_id,
            action=action,
            data=json.dumps(to_payload(row), ensure_ascii=False),
            created_at=utcnow(),
            retry_count=0,
            status="pending",
        )
        session.add(entry)
        log.debug("Queued %s %s/%s", action, entity_type, entity_id)

    @staticmethod
    def _items_for(session: Session, invoice_id: str) -> List[Dict[str, Any]]:
        stmt = (
            select(InvoiceItem)
            .where(InvoiceItem.invoice_id == invoice_id)
            .order_by(InvoiceItem.created_at, InvoiceItem.id)
        )
        return [row_to_dict(obj) for obj in session.execute(stmt).scalars()]

    def _replace_items(self, session: Session, invoice_id: str, items: Iterable[Mapping[str, Any]]) -> int:
        session.execute(sa_delete(InvoiceItem).where(InvoiceItem.invoice_id == invoice_id))
        base = utcnow()
        count = 0
        for item in items:
            item_data = self.invoice_items._prepare({**dict(item), "invoice_id": invoice_id})
            # keep entry order stable for listing
            item_data.setdefault("created_at", base + timedelta(microseconds=count))
            session.add(InvoiceItem(**item_data))
            count += 1
        session.flush()
        return count

    # ------------------------------------------------------------------
    # Public API
    def table_for(self, entity_type: str) -> EntityTable:
        try:
            return self._tracked[entity_type]
        except KeyError:
            raise ValueError(f"Unknown entity type: {entity_type!r}") from None

    def save_invoice(
        self,
        invoice: Mapping[str, Any],
        items: Optional[Iterable[Mapping[str, Any]]] = None,
        *,
        sync_action: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Write an invoice and (when given) replace its items in one transaction.

        The queued payload carries the items so the reconciler can mirror them.
        Returns the invoice row with an ``items`` list.
        """
        self.invoices._check_action(sync_action)
        data = self.invoices._prepare(invoice)
        with self.locks.hold((self.invoices.name, data["id"])):
            with self.transaction() as session:
                row, applied = self.invoices._put(session, data, sync_action, enqueue=False)
                if applied and items is not None:
                    self._replace_items(session, row["id"], items)
                item_rows = self._items_for(session, row["id"])
                if applied and sync_action:
                    self._enqueue(session, "invoice", row["id"], sync_action, {**row, "items": item_rows})
                return {**row, "items": item_rows}

    def invoice_with_items(self, invoice_id: str, *, include_deleted: bool = False) -> Optional[Dict[str, Any]]:
        with self.transaction() as session:
            obj = session.get(Invoice, invoice_id)
            if obj is None or (obj.deleted and not include_deleted):
                return None
            return {**row_to_dict(obj), "items": self._items_for(session, invoice_id)}

    def replace_invoice_items(self, invoice_id: str, items: Iterable[Mapping[str, Any]]) -> int:
        """Mirror remote items for an invoice without touching the outbox."""
        with self.locks.hold((self.invoices.name, invoice_id)):
            with self.transaction() as session:
                return self._replace_items(session, invoice_id, items)
