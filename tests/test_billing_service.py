from dataclasses import replace
from datetime import datetime

import pytest
from sqlalchemy import select

from billsync.errors import NotFound, SessionExpired, ValidationError
from billsync.models import SyncQueueEntry
from billsync.services.billing_service import BillingService
from billsync.services.session_service import ModeManager, SessionManager
from billsync.services.sync_service import Reconciler

NOW = datetime(2025, 1, 5, 14, 30, 0)


@pytest.fixture()
def billing(store, shop):
    sessions = SessionManager(store, secret="test-secret")
    service = BillingService(store, sessions, clock=lambda: NOW)
    owner = sessions.save_session("owner-1", "owner@example.com", "admin", store_id="store-1")
    return service, owner


def _queued(store):
    with store.transaction() as session:
        return [
            (e.entity_type, e.action)
            for e in session.execute(select(SyncQueueEntry).order_by(SyncQueueEntry.id)).scalars()
        ]


def test_create_product_queues_create(billing, store):
    service, owner = billing
    product = service.create_product(owner, {"name": " Rice ", "price": "120", "gst_rate": 5})
    assert product["name"] == "Rice"
    assert product["price"] == 120.0
    assert product["store_id"] == "store-1"
    assert product["is_synced"] is False
    assert _queued(store) == [("product", "create")]


def test_create_product_validation(billing):
    service, owner = billing
    with pytest.raises(ValidationError) as excinfo:
        service.create_product(owner, {"name": "", "price": 0})
    assert set(excinfo.value.errors) == {"name", "price"}


def test_update_and_list_products(billing, store):
    service, owner = billing
    rice = service.create_product(owner, {"name": "Rice", "price": 120})
    service.create_product(owner, {"name": "Atta", "price": 60})
    service.update_product(owner, rice["id"], {"price": 130})
    assert store.products.get(rice["id"])["price"] == 130.0
    assert [p["name"] for p in service.list_products(owner)] == ["Atta", "Rice"]
    assert _queued(store)[-1] == ("product", "update")


def test_update_rejects_invalid_changes(billing):
    service, owner = billing
    rice = service.create_product(owner, {"name": "Rice", "price": 120})
    with pytest.raises(ValidationError):
        service.update_product(owner, rice["id"], {"price": -1})


def test_delete_product(billing, store):
    service, owner = billing
    rice = service.create_product(owner, {"name": "Rice", "price": 120})
    service.delete_product(owner, rice["id"])
    assert service.list_products(owner) == []
    with pytest.raises(NotFound):
        service.delete_product(owner, rice["id"])


def test_other_users_rows_are_invisible(billing, store):
    service, owner = billing
    store.products.put({"id": "foreign", "user_id": "owner-2", "name": "Tea", "price": 10})
    assert service.list_products(owner) == []
    with pytest.raises(NotFound):
        service.update_product(owner, "foreign", {"price": 20})


def test_customers(billing):
    service, owner = billing
    with pytest.raises(ValidationError):
        service.create_customer(owner, {"name": "Asha", "phone": "123"})
    customer = service.create_customer(owner, {"name": "Asha", "phone": "98765 43210"})
    service.update_customer(owner, customer["id"], {"gstin": "27AAPFU0939F1ZV"})
    assert service.list_customers(owner)[0]["gstin"] == "27AAPFU0939F1ZV"
    service.delete_customer(owner, customer["id"])
    assert service.list_customers(owner) == []


def test_create_invoice_intra_state(billing, store):
    service, owner = billing
    invoice = service.create_invoice(
        owner,
        {"is_same_state": True},
        [
            {"description": "Rice", "quantity": 2, "unit_price": 100, "gst_rate": 5},
            {"description": "Oil", "quantity": 1, "unit_price": 200, "gst_rate": 18, "discount_percent": 10},
        ],
    )
    assert invoice["invoice_number"] == "MBL1-ADMN-20250105143000-001"
    assert invoice["invoice_date"] == "2025-01-05"
    assert invoice["subtotal"] == 400.0
    assert invoice["discount_amount"] == 20.0
    # 200 @ 5% = 10, 180 @ 18% = 32.4
    assert invoice["cgst_amount"] == 21.2
    assert invoice["sgst_amount"] == 21.2
    assert invoice["igst_amount"] == 0.0
    assert invoice["total_amount"] == 422.4
    assert [i["line_total"] for i in invoice["items"]] == [210.0, 212.4]
    assert _queued(store) == [("invoice", "create")]


def test_create_invoice_inter_state_and_non_gst(billing):
    service, owner = billing
    items = [{"description": "Rice", "quantity": 1, "unit_price": 100, "gst_rate": 12}]
    igst = service.create_invoice(owner, {"is_same_state": False}, items)
    assert igst["igst_amount"] == 12.0
    assert igst["cgst_amount"] == 0.0
    plain = service.create_invoice(owner, {"is_gst_invoice": False}, items)
    assert plain["total_amount"] == 100.0
    assert plain["invoice_number"].endswith("-002")


def test_create_invoice_validation(billing):
    service, owner = billing
    with pytest.raises(ValidationError) as excinfo:
        service.create_invoice(owner, {}, [])
    assert "items" in excinfo.value.errors
    with pytest.raises(NotFound):
        service.create_invoice(
            owner,
            {"customer_id": "missing"},
            [{"description": "Rice", "quantity": 1, "unit_price": 10}],
        )


def test_employee_invoice_carries_employee_code(billing, store):
    service, owner = billing
    staff = replace(owner, role="employee", employee_code="MB01")
    invoice = service.create_invoice(staff, {}, [{"description": "Rice", "quantity": 1, "unit_price": 10}])
    assert invoice["invoice_number"].startswith("MBL1-MB01-")
    assert invoice["employee_code"] == "MB01"
    assert invoice["user_id"] == "owner-1"


def test_invoice_status_and_delete(billing, store):
    service, owner = billing
    invoice = service.create_invoice(owner, {}, [{"description": "Rice", "quantity": 1, "unit_price": 10}])
    updated = service.update_invoice_status(owner, invoice["id"], "paid")
    assert updated["status"] == "paid"
    assert len(updated["items"]) == 1
    with pytest.raises(ValidationError):
        service.update_invoice_status(owner, invoice["id"], "archived")
    assert [i["id"] for i in service.list_invoices(owner, status="paid")] == [invoice["id"]]
    service.delete_invoice(owner, invoice["id"])
    with pytest.raises(NotFound):
        service.get_invoice(owner, invoice["id"])
    assert _queued(store) == [("invoice", "create"), ("invoice", "update"), ("invoice", "delete")]


def test_expired_context_is_refused(billing):
    service, owner = billing
    expired = replace(owner, expires_at=0)
    with pytest.raises(SessionExpired):
        service.create_product(expired, {"name": "Rice", "price": 10})
    with pytest.raises(SessionExpired):
        service.list_invoices(expired)


def test_remote_direct_pushes_immediately(store, shop, remote):
    sessions = SessionManager(store, secret="test-secret")
    reconciler = Reconciler(store, remote)
    modes = ModeManager(sessions, remote_authenticated=lambda: True, mode_flag="remote")
    service = BillingService(store, sessions, modes=modes, reconciler=reconciler, clock=lambda: NOW)
    owner = sessions.save_session("owner-1", "owner@example.com", "admin", store_id="store-1")

    product = service.create_product(owner, {"name": "Rice", "price": 10})
    assert product["is_synced"] is True
    assert product["id"] in remote.tables["products"]
    assert reconciler.queue.count() == 0

    staff = replace(owner, role="employee", employee_code="MB01")
    local_only = service.create_product(staff, {"name": "Salt", "price": 5})
    assert local_only["is_synced"] is False
    assert reconciler.queue.count() == 1


def test_invoice_lowers_stock_of_billed_products(billing, store):
    service, owner = billing
    rice = service.create_product(owner, {"name": "Rice", "price": 50, "stock_quantity": 10})
    salt = service.create_product(owner, {"name": "Salt", "price": 20, "stock_quantity": 1})
    service.create_invoice(
        owner,
        {},
        [
            {"product_id": rice["id"], "description": "Rice", "quantity": 3, "unit_price": 50},
            {"product_id": rice["id"], "description": "Rice (loose)", "quantity": 2, "unit_price": 50},
            {"product_id": salt["id"], "description": "Salt", "quantity": 5, "unit_price": 20},
            {"description": "Carry bag", "quantity": 1, "unit_price": 5},
        ],
    )
    assert store.products.get(rice["id"])["stock_quantity"] == 5.0
    assert store.products.get(salt["id"])["stock_quantity"] == 0.0
    assert _queued(store)[-3:] == [("invoice", "create"), ("product", "update"), ("product", "update")]


def test_invoice_for_unknown_product_still_saves(billing, store):
    service, owner = billing
    invoice = service.create_invoice(
        owner, {}, [{"product_id": "gone", "description": "Tea", "quantity": 1, "unit_price": 10}]
    )
    assert store.invoices.get(invoice["id"]) is not None
    assert _queued(store) == [("invoice", "create")]


@pytest.mark.parametrize(
    "changes, field",
    [
        ({"price": "abc"}, "price"),
        ({"cost_price": "n/a"}, "cost_price"),
        ({"stock_quantity": "lots"}, "stock_quantity"),
    ],
)
def test_update_rejects_non_numeric_values(billing, changes, field):
    service, owner = billing
    rice = service.create_product(owner, {"name": "Rice", "price": 120})
    with pytest.raises(ValidationError) as excinfo:
        service.update_product(owner, rice["id"], changes)
    assert field in excinfo.value.errors


def test_create_product_rejects_bad_cost_price(billing):
    service, owner = billing
    with pytest.raises(ValidationError) as excinfo:
        service.create_product(owner, {"name": "Rice", "price": 10, "cost_price": "n/a"})
    assert set(excinfo.value.errors) == {"cost_price"}


@pytest.mark.parametrize(
    "item_field, value",
    [("gst_rate", "abc"), ("gst_rate", 150), ("discount_percent", "ten"), ("discount_percent", -5)],
)
def test_create_invoice_rejects_bad_item_rates(billing, item_field, value):
    service, owner = billing
    item = {"description": "Rice", "quantity": 1, "unit_price": 10, item_field: value}
    with pytest.raises(ValidationError) as excinfo:
        service.create_invoice(owner, {}, [item])
    assert f"items[0].{item_field}" in excinfo.value.errors
