import datetime
import re

from billsync.time_utils import parse_iso_datetime


def _group_indian(digits: str) -> str:
    """'1234567' -> '12,34,567'"""
    if len(digits) <= 3:
        return digits
    head, tail = digits[:-3], digits[-3:]
    head = re.sub(r"(\d)(?=(\d{2})+$)", r"\1,", head)
    return f"{head},{tail}"


def format_currency(amount: float, currency: str = "₹") -> str:
    value = float(amount or 0)
    sign = "-" if value < 0 else ""
    whole, frac = f"{abs(value):.2f}".split(".")
    return f"{sign}{currency}{_group_indian(whole)}.{frac}"


def _to_datetime(value) -> datetime.datetime:
    if isinstance(value, datetime.datetime):
        return value
    if isinstance(value, datetime.date):
        return datetime.datetime(value.year, value.month, value.day)
    return parse_iso_datetime(value)


def format_date(value) -> str:
    """Return dates like '5 Jan 2025'."""
    d = _to_datetime(value)
    return f"{d.day} {d.strftime('%b %Y')}"


def format_date_time(value) -> str:
    """Return timestamps like '5 Jan 2025, 02:30 pm'."""
    d = _to_datetime(value)
    return f"{format_date(d)}, {d.strftime('%I:%M')} {d.strftime('%p').lower()}"


def format_phone_number(phone: str) -> str:
    cleaned = re.sub(r"\D", "", phone or "")
    if len(cleaned) == 10:
        return f"+91 {cleaned[:5]} {cleaned[5:]}"
    return phone


def truncate_text(text: str, length: int) -> str:
    return f"{text[:length]}..." if len(text) > length else text
