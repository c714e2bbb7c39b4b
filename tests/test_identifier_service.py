import logging
import random
import threading
from datetime import datetime

import pytest

from billsync.errors import NotFound, SequenceExhausted
from billsync.models import InvoiceSequence
from billsync.services.identifier_service import (
    EmployeeCodeGenerator,
    InvoiceNumberGenerator,
    pad_code,
)
from conftest import add_shop

NOW = datetime(2025, 1, 5, 14, 30, 0)


def _fixed(moment):
    return lambda: moment


def test_pad_code():
    assert pad_code("mbl1") == "MBL1"
    assert pad_code("ab") == "ABXX"
    assert pad_code("storefront") == "STOR"
    assert pad_code(None) == "XXXX"


def test_first_invoices_of_the_day(store, shop):
    generator = InvoiceNumberGenerator(store, clock=_fixed(NOW))
    numbers = [generator.generate("store-1") for _ in range(3)]
    assert numbers == [
        "MBL1-ADMN-20250105143000-001",
        "MBL1-ADMN-20250105143000-002",
        "MBL1-ADMN-20250105143000-003",
    ]


def test_employee_code_is_normalised(store, shop):
    generator = InvoiceNumberGenerator(store, clock=_fixed(NOW))
    assert generator.generate("store-1", "e7") == "MBL1-E7XX-20250105143000-001"


def test_sequence_resets_on_a_new_day(store, shop):
    moments = iter([NOW, NOW, datetime(2025, 1, 6, 8, 0, 0)])
    generator = InvoiceNumberGenerator(store, clock=lambda: next(moments))
    generator.generate("store-1")
    generator.generate("store-1")
    assert generator.generate("store-1") == "MBL1-ADMN-20250106080000-001"


def test_sequences_are_per_store(store, shop):
    add_shop(store, store_id="store-2", code="gk")
    generator = InvoiceNumberGenerator(store, clock=_fixed(NOW))
    generator.generate("store-1")
    assert generator.generate("store-2").endswith("GKXX-ADMN-20250105143000-001")


def test_daily_cap(store, shop):
    with store.transaction() as session:
        session.add(InvoiceSequence(id="store-1-20250105", store_id="store-1", date="20250105", sequence=998))
    generator = InvoiceNumberGenerator(store, clock=_fixed(NOW))
    assert generator.generate("store-1").endswith("-999")
    with pytest.raises(SequenceExhausted):
        generator.generate("store-1")
    with store.transaction() as session:
        assert session.get(InvoiceSequence, "store-1-20250105").sequence == 999


def test_unknown_store(store):
    with pytest.raises(NotFound):
        InvoiceNumberGenerator(store).generate("missing")


def test_concurrent_generation_never_repeats(file_store):
    add_shop(file_store)
    generator = InvoiceNumberGenerator(file_store, clock=_fixed(NOW))
    results = []
    guard = threading.Lock()

    def worker():
        for _ in range(5):
            number = generator.generate("store-1")
            with guard:
                results.append(number)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(results) == 40
    assert len(set(results)) == 40
    assert sorted(int(n.rsplit("-", 1)[1]) for n in results) == list(range(1, 41))


def _add_employee(store, code, index):
    store.employees.put(
        {
            "id": f"emp-{code}-{index}",
            "user_id": "owner-1",
            "store_id": "store-1",
            "employee_code": code,
            "name": f"Staff {index}",
        }
    )


def test_employee_codes_follow_store_prefix(store, shop):
    generator = EmployeeCodeGenerator(store)
    first = generator.reserve("store-1", "Asha", {"user_id": "owner-1"})
    second = generator.reserve("store-1", "Ravi", {"user_id": "owner-1"})
    assert first["employee_code"] == "MB01"
    assert second["employee_code"] == "MB02"
    assert generator.generate("store-1", "Meena") == "MB03"


def test_employee_code_name_fallback(store, shop):
    for i in range(1, 100):
        _add_employee(store, f"MB{i:02d}", i)
    generator = EmployeeCodeGenerator(store)
    assert generator.generate("store-1", "a.s-h!a") == "ASH0"
    _add_employee(store, "ASH0", 100)
    assert generator.generate("store-1", "Ash") == "ASH1"
    assert generator.generate("store-1", "Al") == "ALX0"


def test_employee_code_random_fallback_avoids_known_codes(store, shop, caplog):
    for i in range(1, 100):
        _add_employee(store, f"MB{i:02d}", i)
    for i in range(10):
        _add_employee(store, f"ASH{i}", 200 + i)
    generator = EmployeeCodeGenerator(store, rng=random.Random(7))
    with caplog.at_level(logging.WARNING):
        code = generator.generate("store-1", "Asha")
    taken = {f"MB{i:02d}" for i in range(1, 100)} | {f"ASH{i}" for i in range(10)}
    assert len(code) == 4
    assert code not in taken
    assert "random code" in caplog.text


def test_employee_code_unknown_store(store):
    with pytest.raises(NotFound):
        EmployeeCodeGenerator(store).generate("missing", "Asha")
