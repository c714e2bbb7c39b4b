"""GST helpers for line items and invoice totals."""
from __future__ import annotations

import math
from typing import Dict, Iterable, Mapping


def round_to_two(num: float) -> float:
    """Round half up to two decimals (0.125 -> 0.13)."""
    return math.floor(float(num) * 100 + 0.5) / 100


def _num(value, default: float = 0.0) -> float:
    if value in (None, ""):
        return default
    return float(value)


def calculate_gst(
    amount: float,
    gst_rate: float,
    is_same_state: bool,
    is_inclusive: bool = False,
) -> Dict[str, float]:
    """Split GST on ``amount`` into CGST+SGST (intra-state) or IGST (inter-state).

    With ``is_inclusive`` the amount already contains GST and the tax is
    extracted from it instead of added on top.
    """
    amount = _num(amount)
    gst_rate = _num(gst_rate)
    if is_inclusive:
        taxable = amount / (1 + gst_rate / 100)
        total_gst = amount - taxable
    else:
        taxable = amount
        total_gst = amount * gst_rate / 100

    cgst = sgst = igst = 0.0
    if is_same_state:
        cgst = total_gst / 2
        sgst = total_gst / 2
    else:
        igst = total_gst

    return {
        "taxable_amount": round_to_two(taxable),
        "cgst": round_to_two(cgst),
        "sgst": round_to_two(sgst),
        "igst": round_to_two(igst),
        "total_gst": round_to_two(total_gst),
        "total_amount": round_to_two(taxable + total_gst),
    }


def calculate_line_item(
    quantity: float,
    unit_price: float,
    discount_percent: float = 0.0,
    gst_rate: float = 0.0,
) -> Dict[str, float]:
    subtotal = _num(quantity) * _num(unit_price)
    discount = subtotal * _num(discount_percent) / 100
    taxable = subtotal - discount
    gst_amount = taxable * _num(gst_rate) / 100
    return {
        "subtotal": round_to_two(subtotal),
        "discount_amount": round_to_two(discount),
        "taxable_amount": round_to_two(taxable),
        "gst_amount": round_to_two(gst_amount),
        "line_total": round_to_two(taxable + gst_amount),
    }


def summarize_invoice(
    items: Iterable[Mapping[str, object]],
    *,
    is_gst_invoice: bool = True,
    is_same_state: bool = True,
) -> Dict[str, float]:
    """Aggregate line items into the monetary fields stored on an invoice.

    Non-GST invoices carry no tax components and total to the taxable amount.
    """
    subtotal = discount = taxable = gst_total = 0.0
    for item in items:
        line = calculate_line_item(
            item.get("quantity", 1),
            item.get("unit_price", 0),
            item.get("discount_percent", 0),
            item.get("gst_rate", 0) if is_gst_invoice else 0,
        )
        subtotal += line["subtotal"]
        discount += line["discount_amount"]
        taxable += line["taxable_amount"]
        gst_total += line["gst_amount"]

    cgst = sgst = igst = 0.0
    if is_gst_invoice:
        if is_same_state:
            cgst = round_to_two(gst_total / 2)
            sgst = round_to_two(gst_total - cgst)
        else:
            igst = round_to_two(gst_total)

    return {
        "subtotal": round_to_two(subtotal),
        "discount_amount": round_to_two(discount),
        "cgst_amount": cgst,
        "sgst_amount": sgst,
        "igst_amount": igst,
        "total_amount": round_to_two(taxable + cgst + sgst + igst),
    }
