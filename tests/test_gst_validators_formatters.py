from datetime import datetime

import pytest

from billsync.formatters import (
    format_currency,
    format_date,
    format_date_time,
    format_phone_number,
    truncate_text,
)
from billsync.gst import calculate_gst, calculate_line_item, round_to_two, summarize_invoice
from billsync.validators import (
    validate_customer_form,
    validate_email,
    validate_gstin,
    validate_invoice_form,
    validate_phone_number,
    validate_product_form,
)


def test_round_to_two_rounds_half_up():
    assert round_to_two(0.125) == 0.13
    assert round_to_two(2.004) == 2.0
    assert round_to_two("10") == 10.0


def test_calculate_gst_intra_state():
    result = calculate_gst(1000, 18, is_same_state=True)
    assert result["cgst"] == 90.0
    assert result["sgst"] == 90.0
    assert result["igst"] == 0.0
    assert result["total_amount"] == 1180.0


def test_calculate_gst_inter_state():
    result = calculate_gst(1000, 12, is_same_state=False)
    assert result["igst"] == 120.0
    assert result["cgst"] == result["sgst"] == 0.0


def test_calculate_gst_inclusive_extracts_tax():
    result = calculate_gst(118, 18, is_same_state=True, is_inclusive=True)
    assert result["taxable_amount"] == 100.0
    assert result["total_gst"] == 18.0
    assert result["total_amount"] == 118.0


def test_line_item_applies_discount_before_tax():
    line = calculate_line_item(2, 100, discount_percent=10, gst_rate=5)
    assert line["discount_amount"] == 20.0
    assert line["taxable_amount"] == 180.0
    assert line["gst_amount"] == 9.0
    assert line["line_total"] == 189.0


def test_summarize_splits_odd_paise():
    # 0.05 of GST cannot be halved evenly
    totals = summarize_invoice([{"quantity": 1, "unit_price": 1, "gst_rate": 5}])
    assert totals["cgst_amount"] == 0.03
    assert totals["sgst_amount"] == 0.02
    assert totals["total_amount"] == 1.05


def test_simple_validators():
    assert validate_email("a@b.co")
    assert not validate_email("not-an-email")
    assert validate_gstin("27AAPFU0939F1ZV")
    assert not validate_gstin("27AAPFU0939F1Z")
    assert validate_phone_number("98765 43210")
    assert not validate_phone_number("12345")


def test_product_form_errors():
    ok, errors = validate_product_form({"name": "Rice", "price": 10, "gst_rate": 120, "stock_quantity": -1})
    assert not ok
    assert set(errors) == {"gst_rate", "stock_quantity"}
    assert validate_product_form({"name": "Rice", "price": "10"}) == (True, {})


def test_customer_form_errors():
    ok, errors = validate_customer_form({"name": " ", "email": "x", "gstin": "bad"})
    assert not ok
    assert set(errors) == {"name", "email", "gstin"}


def test_invoice_form_errors():
    ok, errors = validate_invoice_form(
        {"items": [{"description": "", "quantity": 0, "unit_price": -1}], "status": "void"}
    )
    assert not ok
    assert set(errors) == {
        "items[0].quantity",
        "items[0].unit_price",
        "items[0].description",
        "status",
    }


@pytest.mark.parametrize(
    "amount, expected",
    [
        (1234567.5, "₹12,34,567.50"),
        (999, "₹999.00"),
        (-1500, "-₹1,500.00"),
        (None, "₹0.00"),
    ],
)
def test_format_currency_uses_indian_grouping(amount, expected):
    assert format_currency(amount) == expected


def test_format_dates():
    assert format_date("2025-01-05") == "5 Jan 2025"
    assert format_date_time(datetime(2025, 1, 5, 14, 30)) == "5 Jan 2025, 02:30 pm"


def test_format_phone_number():
    assert format_phone_number("9876543210") == "+91 98765 43210"
    assert format_phone_number("12345") == "12345"


def test_truncate_text():
    assert truncate_text("Basmati rice", 7) == "Basmati..."
    assert truncate_text("Rice", 7) == "Rice"


def test_invoice_form_checks_item_rates():
    ok, errors = validate_invoice_form(
        {"items": [{"description": "Rice", "quantity": 1, "unit_price": 10, "gst_rate": "x", "discount_percent": 101}]}
    )
    assert not ok
    assert set(errors) == {"items[0].gst_rate", "items[0].discount_percent"}
    assert validate_product_form({"name": "Rice", "price": 10, "cost_price": -1})[1] == {
        "cost_price": "Cost price cannot be negative"
    }
