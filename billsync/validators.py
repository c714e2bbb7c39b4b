import re
from typing import Dict, Mapping, Tuple

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
GSTIN_RE = re.compile(r"^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$")
PHONE_RE = re.compile(r"^[0-9]{10}$")

INVOICE_STATUSES = ("draft", "sent", "paid", "cancelled")


def validate_email(email: str) -> bool:
    return bool(EMAIL_RE.match((email or "").strip()))


def validate_gstin(gstin: str) -> bool:
    return bool(GSTIN_RE.match((gstin or "").strip()))


def validate_phone_number(phone: str) -> bool:
    digits = re.sub(r"\D", "", phone or "")
    return bool(PHONE_RE.match(digits))


def _as_float(value):
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def validate_product_form(data: Mapping[str, object]) -> Tuple[bool, Dict[str, str]]:
    errors: Dict[str, str] = {}

    if not str(data.get("name") or "").strip():
        errors["name"] = "Product name is required"

    price = _as_float(data.get("price"))
    if price is None or price <= 0:
        errors["price"] = "Price must be greater than 0"

    cost = data.get("cost_price")
    if cost not in (None, ""):
        cost_val = _as_float(cost)
        if cost_val is None or cost_val < 0:
            errors["cost_price"] = "Cost price cannot be negative"

    stock = data.get("stock_quantity")
    if stock not in (None, ""):
        stock_val = _as_float(stock)
        if stock_val is None or stock_val < 0:
            errors["stock_quantity"] = "Stock quantity cannot be negative"

    gst_rate = data.get("gst_rate")
    if gst_rate not in (None, ""):
        rate = _as_float(gst_rate)
        if rate is None or rate < 0 or rate > 100:
            errors["gst_rate"] = "GST rate must be between 0 and 100"

    return not errors, errors


def validate_customer_form(data: Mapping[str, object]) -> Tuple[bool, Dict[str, str]]:
    errors: Dict[str, str] = {}

    if not str(data.get("name") or "").strip():
        errors["name"] = "Customer name is required"
    email = str(data.get("email") or "").strip()
    if email and not validate_email(email):
        errors["email"] = "Invalid email format"
    phone = str(data.get("phone") or "").strip()
    if phone and not validate_phone_number(phone):
        errors["phone"] = "Phone number must have 10 digits"
    gstin = str(data.get("gstin") or "").strip().upper()
    if gstin and not validate_gstin(gstin):
        errors["gstin"] = "Invalid GSTIN"

    return not errors, errors


def validate_invoice_form(data: Mapping[str, object]) -> Tuple[bool, Dict[str, str]]:
    errors: Dict[str, str] = {}

    items = data.get("items") or []
    if not items:
        errors["items"] = "At least one line item is required"
    else:
        for idx, item in enumerate(items):
            qty = _as_float(item.get("quantity"))
            if qty is None or qty <= 0:
                errors[f"items[{idx}].quantity"] = "Quantity must be greater than 0"
            price = _as_float(item.get("unit_price"))
            if price is None or price < 0:
                errors[f"items[{idx}].unit_price"] = "Unit price cannot be negative"
            rate = item.get("gst_rate")
            if rate not in (None, ""):
                rate_val = _as_float(rate)
                if rate_val is None or rate_val < 0 or rate_val > 100:
                    errors[f"items[{idx}].gst_rate"] = "GST rate must be between 0 and 100"
            discount = item.get("discount_percent")
            if discount not in (None, ""):
                discount_val = _as_float(discount)
                if discount_val is None or discount_val < 0 or discount_val > 100:
                    errors[f"items[{idx}].discount_percent"] = "Discount must be between 0 and 100"
            if not str(item.get("description") or "").strip():
                errors[f"items[{idx}].description"] = "Description is required"

    status = data.get("status")
    if status and status not in INVOICE_STATUSES:
        errors["status"] = f"Status must be one of {', '.join(INVOICE_STATUSES)}"

    return not errors, errors
