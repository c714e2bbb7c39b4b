"""Application commands for products, customers and invoices."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from billsync.errors import NotFound, ValidationError
from billsync.gst import calculate_line_item, summarize_invoice
from billsync.security import new_id
from billsync.services.entity_store import EntityTable, LocalEntityStore
from billsync.services.identifier_service import InvoiceNumberGenerator
from billsync.services.session_service import DbMode, ModeManager, SessionContext, SessionManager
from billsync.services.sync_service import Reconciler
from billsync.time_utils import iso_date, utcnow
from billsync.validators import (
    INVOICE_STATUSES,
    validate_customer_form,
    validate_invoice_form,
    validate_product_form,
)

log = logging.getLogger(__name__)

PRODUCT_FIELDS = (
    "name", "description", "sku", "category", "price", "cost_price",
    "stock_quantity", "unit", "hsn_code", "gst_rate", "is_active",
)
CUSTOMER_FIELDS = (
    "name", "email", "phone", "gstin", "billing_address", "shipping_address", "notes",
)
_NUMERIC = {"price", "cost_price", "stock_quantity", "gst_rate"}


def _pick(data: Mapping[str, Any], fields: Iterable[str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for key in fields:
        if key not in data:
            continue
        value = data[key]
        if isinstance(value, str):
            value = value.strip()
        if key in _NUMERIC and value not in (None, ""):
            value = float(value)
        elif key in _NUMERIC:
            continue
        out[key] = value
    return out


class BillingService:
    """Billing commands for the signed-in user.

    Every command takes the caller's ``SessionContext`` and refuses to run on an
    expired one. Writes go to the local store with an outbox entry; in
    remote-direct mode the entity is pushed right away and any failure is left
    to the reconciler's warnings.
    """

    def __init__(
        self,
        store: LocalEntityStore,
        sessions: SessionManager,
        *,
        modes: Optional[ModeManager] = None,
        reconciler: Optional[Reconciler] = None,
        numbers: Optional[InvoiceNumberGenerator] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._sessions = sessions
        self._modes = modes
        self._reconciler = reconciler
        self._numbers = numbers or InvoiceNumberGenerator(store, clock=clock)
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    def _owned(self, table: EntityTable, ctx: SessionContext, entity_id: str) -> Dict[str, Any]:
        row = table.get(entity_id)
        if row is None or row.get("user_id") != ctx.user_id:
            raise NotFound(f"{table.name}/{entity_id} not found")
        return row

    def _in_scope(self, ctx: SessionContext):
        def check(row: Mapping[str, Any]) -> bool:
            return not ctx.store_id or row.get("store_id") in (None, ctx.store_id)

        return check

    def _push(self, ctx: SessionContext, entity_type: str, entity_id: str) -> bool:
        """Push immediately when the command runs remote-direct. Returns True if pushed cleanly."""
        if self._modes is None or self._reconciler is None:
            return False
        if self._modes.mode_for(ctx) is not DbMode.REMOTE_DIRECT:
            return False
        report = self._reconciler.sync_entity(entity_type, entity_id)
        return not (report.failed or report.blocked or report.deferred)

    def _create(self, ctx, table: EntityTable, fields, validator, data) -> Dict[str, Any]:
        self._sessions.check(ctx)
        ok, errors = validator(data)
        if not ok:
            raise ValidationError(f"Invalid {table.entity_type}", errors)
        row = {
            **_pick(data, fields),
            "id": new_id(),
            "user_id": ctx.user_id,
            "store_id": ctx.store_id,
        }
        saved = table.put(row, sync_action="create")
        if self._push(ctx, table.entity_type, saved["id"]):
            return table.get(saved["id"]) or saved
        return saved

    def _update(self, ctx, table: EntityTable, fields, validator, entity_id, changes) -> Dict[str, Any]:
        self._sessions.check(ctx)
        current = self._owned(table, ctx, entity_id)
        ok, errors = validator({**current, **changes})
        if not ok:
            raise ValidationError(f"Invalid {table.entity_type}", errors)
        patch = _pick(changes, fields)
        saved = table.put({**patch, "id": entity_id, "updated_at": utcnow()}, sync_action="update")
        if self._push(ctx, table.entity_type, entity_id):
            return table.get(entity_id) or saved
        return saved

    def _delete(self, ctx, table: EntityTable, entity_id) -> None:
        self._sessions.check(ctx)
        self._owned(table, ctx, entity_id)
        table.delete(entity_id)
        self._push(ctx, table.entity_type, entity_id)

    def _list(self, ctx, table: EntityTable, key: str) -> List[Dict[str, Any]]:
        self._sessions.check(ctx)
        rows = table.query("user_id", ctx.user_id, self._in_scope(ctx)).all()
        return sorted(rows, key=lambda r: (r.get(key) or ""))

    # ------------------------------------------------------------------
    # Products
    def create_product(self, ctx: SessionContext, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._create(ctx, self._store.products, PRODUCT_FIELDS, validate_product_form, data)

    def update_product(self, ctx: SessionContext, product_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        return self._update(ctx, self._store.products, PRODUCT_FIELDS, validate_product_form, product_id, changes)

    def delete_product(self, ctx: SessionContext, product_id: str) -> None:
        self._delete(ctx, self._store.products, product_id)

    def list_products(self, ctx: SessionContext) -> List[Dict[str, Any]]:
        return self._list(ctx, self._store.products, "name")

    # ------------------------------------------------------------------
    # Customers
    def create_customer(self, ctx: SessionContext, data: Mapping[str, Any]) -> Dict[str, Any]:
        return self._create(ctx, self._store.customers, CUSTOMER_FIELDS, validate_customer_form, data)

    def update_customer(self, ctx: SessionContext, customer_id: str, changes: Mapping[str, Any]) -> Dict[str, Any]:
        return self._update(ctx, self._store.customers, CUSTOMER_FIELDS, validate_customer_form, customer_id, changes)

    def delete_customer(self, ctx: SessionContext, customer_id: str) -> None:
        self._delete(ctx, self._store.customers, customer_id)

    def list_customers(self, ctx: SessionContext) -> List[Dict[str, Any]]:
        return self._list(ctx, self._store.customers, "name")

    # ------------------------------------------------------------------
    # Invoices
    def create_invoice(
        self,
        ctx: SessionContext,
        data: Mapping[str, Any],
        items: List[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        """Number, price and persist a new invoice with its line items."""
        self._sessions.check(ctx)
        if not ctx.store_id:
            raise ValidationError("Select a store before billing", {"store_id": "required"})
        ok, errors = validate_invoice_form({**data, "items": items})
        if not ok:
            raise ValidationError("Invalid invoice", errors)

        customer_id = data.get("customer_id")
        if customer_id:
            self._owned(self._store.customers, ctx, customer_id)

        is_gst = bool(data.get("is_gst_invoice", True))
        same_state = bool(data.get("is_same_state", True))
        lines = []
        for item in items:
            rate = float(item.get("gst_rate") or 0) if is_gst else 0.0
            qty = float(item["quantity"])
            price = float(item["unit_price"])
            discount = float(item.get("discount_percent") or 0)
            line = calculate_line_item(qty, price, discount, rate)
            lines.append(
                {
                    "id": new_id(),
                    "product_id": item.get("product_id"),
                    "description": str(item["description"]).strip(),
                    "quantity": qty,
                    "unit_price": price,
                    "discount_percent": discount,
                    "gst_rate": rate,
                    "hsn_code": item.get("hsn_code"),
                    "line_total": line["line_total"],
                    "gst_amount": line["gst_amount"],
                }
            )
        totals = summarize_invoice(lines, is_gst_invoice=is_gst, is_same_state=same_state)

        invoice = {
            "id": new_id(),
            "user_id": ctx.user_id,
            "store_id": ctx.store_id,
            "customer_id": customer_id,
            "employee_code": ctx.employee_code,
            "invoice_number": self._numbers.generate(ctx.store_id, ctx.employee_code),
            "invoice_date": iso_date(data.get("invoice_date") or self._clock()),
            "due_date": iso_date(data.get("due_date")),
            "status": data.get("status") or "draft",
            "is_gst_invoice": is_gst,
            "is_same_state": same_state,
            "notes": data.get("notes"),
            "terms": data.get("terms"),
            **totals,
        }
        saved = self._store.save_invoice(invoice, lines, sync_action="create")
        log.info("Invoice %s created (%s)", saved["invoice_number"], saved["total_amount"])
        self._deduct_stock(ctx, lines)
        if self._push(ctx, "invoice", saved["id"]):
            return self._store.invoice_with_items(saved["id"]) or saved
        return saved

    def _deduct_stock(self, ctx: SessionContext, lines: Iterable[Mapping[str, Any]]) -> None:
        """Lower stock of the billed products, never below zero."""
        sold: Dict[str, float] = {}
        for line in lines:
            if line.get("product_id"):
                sold[line["product_id"]] = sold.get(line["product_id"], 0.0) + line["quantity"]

        products = self._store.products
        for product_id, quantity in sold.items():
            with self._store.locks.hold((products.name, product_id)):
                product = products.get(product_id)
                if product is None or product.get("user_id") != ctx.user_id:
                    log.warning("Stock not updated: product %s not found", product_id)
                    continue
                stock = max(0.0, float(product.get("stock_quantity") or 0) - quantity)
                products.put(
                    {"id": product_id, "stock_quantity": stock, "updated_at": utcnow()},
                    sync_action="update",
                )
            log.debug("Stock of %s: %s -> %s", product_id, product.get("stock_quantity"), stock)
            self._push(ctx, "product", product_id)

    def update_invoice_status(self, ctx: SessionContext, invoice_id: str, status: str) -> Dict[str, Any]:
        self._sessions.check(ctx)
        if status not in INVOICE_STATUSES:
            raise ValidationError(
                f"Status must be one of {', '.join(INVOICE_STATUSES)}",
                {"status": "invalid"},
            )
        self._owned(self._store.invoices, ctx, invoice_id)
        saved = self._store.save_invoice(
            {"id": invoice_id, "status": status, "updated_at": utcnow()},
            sync_action="update",
        )
        if self._push(ctx, "invoice", invoice_id):
            return self._store.invoice_with_items(invoice_id) or saved
        return saved

    def delete_invoice(self, ctx: SessionContext, invoice_id: str) -> None:
        self._delete(ctx, self._store.invoices, invoice_id)

    def get_invoice(self, ctx: SessionContext, invoice_id: str) -> Dict[str, Any]:
        self._sessions.check(ctx)
        self._owned(self._store.invoices, ctx, invoice_id)
        invoice = self._store.invoice_with_items(invoice_id)
        if invoice is None:
            raise NotFound(f"invoices/{invoice_id} not found")
        return invoice

    def list_invoices(self, ctx: SessionContext, status: Optional[str] = None) -> List[Dict[str, Any]]:
        self._sessions.check(ctx)
        scope = self._in_scope(ctx)
        rows = self._store.invoices.query(
            "user_id",
            ctx.user_id,
            lambda r: scope(r) and (status is None or r.get("status") == status),
        ).all()
        return sorted(rows, key=lambda r: r.get("created_at") or utcnow(), reverse=True)
