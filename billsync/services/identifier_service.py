"""Human-readable identifiers: invoice numbers and per-store employee codes."""
from __future__ import annotations

import logging
import random
import re
import string
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional, Set

from sqlalchemy import select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError

from billsync.errors import NotFound, SequenceExhausted, StorageFailure, ValidationError
from billsync.locks import KeyedLock
from billsync.models import Employee, InvoiceSequence
from billsync.services.entity_store import LocalEntityStore, row_to_dict
from billsync.time_utils import utcnow

log = logging.getLogger(__name__)

DEFAULT_EMPLOYEE_CODE = "ADMN"
MAX_DAILY_SEQUENCE = 999
_CAS_ATTEMPTS = 10
_CODE_ALPHABET = string.ascii_uppercase + string.digits


def pad_code(value: Optional[str], width: int = 4) -> str:
    """Upper-case, cut to ``width`` and right-pad with 'X'."""
    return str(value or "").strip().upper()[:width].ljust(width, "X")


class InvoiceNumberGenerator:
    """
    Issues ``STORE4-EMP4-YYYYMMDDHHMMSS-SEQ3`` numbers.

    The three-digit part is a per-store, per-day counter persisted in
    ``invoice_sequences``. The increment runs under a per-key lock and is
    committed with a compare-and-swap update, so two callers never observe the
    same value. A consumed value is never handed out again, even if the invoice
    it was meant for is never saved.
    """

    def __init__(
        self,
        store: LocalEntityStore,
        *,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self._store = store
        self._locks = locks or store.locks
        self._clock = clock

    def _next_sequence(self, store_id: str, day: str) -> int:
        key = f"{store_id}-{day}"
        with self._locks.hold(("invoice_sequences", key)):
            for _ in range(_CAS_ATTEMPTS):
                with self._store.transaction() as session:
                    session.execute(
                        sqlite_insert(InvoiceSequence)
                        .values(id=key, store_id=store_id, date=day, sequence=0)
                        .on_conflict_do_nothing()
                    )
                    current = session.execute(
                        select(InvoiceSequence.sequence).where(InvoiceSequence.id == key)
                    ).scalar_one()
                    nxt = current + 1
                    if nxt > MAX_DAILY_SEQUENCE:
                        raise SequenceExhausted(
                            f"Daily invoice limit reached ({MAX_DAILY_SEQUENCE}) for store {store_id} on {day}"
                        )
                    result = session.execute(
                        update(InvoiceSequence)
                        .where(InvoiceSequence.id == key, InvoiceSequence.sequence == current)
                        .values(sequence=nxt)
                    )
                    if result.rowcount == 1:
                        return nxt
                log.debug("Sequence %s moved under us, retrying", key)
        raise StorageFailure(f"Could not advance invoice sequence {key}")

    def generate(self, store_id: str, employee_code: Optional[str] = None) -> str:
        if not store_id:
            raise ValidationError("Store ID is required", {"store_id": "required"})
        store_row = self._store.stores.get(store_id)
        if store_row is None:
            raise NotFound(f"Store not found: {store_id}")

        store_code = pad_code(store_row["store_code"])
        emp_code = pad_code(employee_code or DEFAULT_EMPLOYEE_CODE)
        now = self._clock()
        sequence = self._next_sequence(store_id, now.strftime("%Y%m%d"))
        return f"{store_code}-{emp_code}-{now.strftime('%Y%m%d%H%M%S')}-{sequence:03d}"


class EmployeeCodeGenerator:
    """
    Picks 4-character employee codes unique within a store.

    Order of preference: store prefix + 01..99, then the first three
    alphanumerics of the name + 0..9, then a random code. Only the first two
    are checked against existing employees exhaustively; the random fallback
    avoids known codes for a bounded number of draws and is logged.
    """

    RANDOM_ATTEMPTS = 20

    def __init__(
        self,
        store: LocalEntityStore,
        *,
        locks: Optional[KeyedLock] = None,
        rng: Optional[random.Random] = None,
    ):
        self._store = store
        self._locks = locks or store.locks
        self._rng = rng or random.Random()

    def _taken(self, store_id: str) -> Set[str]:
        with self._store.transaction() as session:
            rows = session.execute(
                select(Employee.employee_code).where(Employee.store_id == store_id)
            ).scalars()
            return {code.upper() for code in rows if code}

    def _candidate(self, store_code: str, name: str, taken: Set[str]) -> str:
        prefix = pad_code(store_code, 2)
        for i in range(1, 100):
            code = f"{prefix}{i:02d}"
            if code not in taken:
                return code

        name_part = pad_code(re.sub(r"[^A-Z0-9]", "", (name or "").upper()), 3)
        for i in range(10):
            code = f"{name_part}{i}"
            if code not in taken:
                return code

        code = ""
        for _ in range(self.RANDOM_ATTEMPTS):
            code = "".join(self._rng.choice(_CODE_ALPHABET) for _ in range(4))
            if code not in taken:
                break
        log.warning(
            "Employee codes exhausted for prefix %s and name %r; using random code %s",
            prefix,
            name,
            code,
        )
        return code

    def generate(self, store_id: str, name: str) -> str:
        store_row = self._store.stores.get(store_id)
        if store_row is None:
            raise NotFound(f"Store not found: {store_id}")
        with self._locks.hold(("employee_codes", store_id)):
            return self._candidate(store_row["store_code"], name, self._taken(store_id))

    def reserve(self, store_id: str, name: str, employee: Mapping[str, Any]) -> Dict[str, Any]:
        """Generate a code and insert ``employee`` with it while holding the store lock.

        The ``uq_employees_store_code`` constraint re-checks uniqueness; a clash
        (another process, or an unlucky random code) surfaces as ``ValidationError``.
        """
        store_row = self._store.stores.get(store_id)
        if store_row is None:
            raise NotFound(f"Store not found: {store_id}")
        with self._locks.hold(("employee_codes", store_id)):
            code = self._candidate(store_row["store_code"], name, self._taken(store_id))
            data = self._store.employees._prepare(
                {**dict(employee), "store_id": store_id, "name": name, "employee_code": code}
            )
            data.setdefault("created_at", data.get("updated_at") or utcnow())
            try:
                with self._store.transaction() as session:
                    obj = Employee(**data)
                    session.add(obj)
                    session.flush()
                    return row_to_dict(obj)
            except StorageFailure as exc:
                if isinstance(exc.__cause__, IntegrityError):
                    raise ValidationError(
                        f"Employee code {code} is already taken in store {store_id}",
                        {"employee_code": "duplicate"},
                    ) from exc
                raise
