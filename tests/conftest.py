import threading
from collections import defaultdict

import pytest

from billsync.db import Base, make_engine, make_session_factory
from billsync.errors import Conflict, NotFound
from billsync.locks import KeyedLock
from billsync.services.entity_store import LocalEntityStore


class FakeRemoteStore:
    """In-process remote store with failure injection."""

    def __init__(self):
        self.tables = defaultdict(dict)
        self.calls = []
        self.user = None
        self._failures = []
        self._lock = threading.Lock()

    def fail_next(self, exc, method=None, collection=None, times=1):
        for _ in range(times):
            self._failures.append((method, collection, exc))

    def _record(self, method, collection, row_id=None):
        with self._lock:
            self.calls.append((method, collection, row_id))
            for index, (m, c, exc) in enumerate(self._failures):
                if (m is None or m == method) and (c is None or c == collection):
                    del self._failures[index]
                    raise exc

    def create(self, collection, row):
        self._record("create", collection, row.get("id"))
        with self._lock:
            if row["id"] in self.tables[collection]:
                raise Conflict(f"{collection}/{row['id']} exists")
            self.tables[collection][row["id"]] = dict(row)
            return dict(row)

    def update(self, collection, row_id, patch):
        self._record("update", collection, row_id)
        with self._lock:
            if row_id not in self.tables[collection]:
                raise NotFound(f"{collection}/{row_id} missing")
            self.tables[collection][row_id].update(patch)
            return dict(self.tables[collection][row_id])

    def delete(self, collection, row_id):
        self._record("delete", collection, row_id)
        with self._lock:
            if self.tables[collection].pop(row_id, None) is None:
                raise NotFound(f"{collection}/{row_id} missing")

    def query(self, collection, filters=None, order_by=None):
        self._record("query", collection)
        with self._lock:
            rows = [dict(r) for r in self.tables[collection].values()]
        return [r for r in rows if all(r.get(k) == v for k, v in (filters or {}).items())]

    def get(self, collection, row_id):
        row = self.tables[collection].get(row_id)
        return dict(row) if row else None

    def current_user(self):
        return self.user


def _build_store(url):
    engine = make_engine(url)
    Base.metadata.create_all(bind=engine)
    return engine, LocalEntityStore(make_session_factory(engine), locks=KeyedLock())


@pytest.fixture()
def store():
    engine, local_store = _build_store("sqlite:///:memory:")
    yield local_store
    engine.dispose()


@pytest.fixture()
def file_store(tmp_path):
    """File-backed store for tests that write from several threads."""
    engine, local_store = _build_store(f"sqlite:///{tmp_path / 'billsync.sqlite3'}")
    yield local_store
    engine.dispose()


@pytest.fixture()
def remote():
    return FakeRemoteStore()


def add_shop(local_store, store_id="store-1", code="mbl1", user_id="owner-1"):
    return local_store.stores.put(
        {"id": store_id, "user_id": user_id, "name": "Main Bazaar", "store_code": code}
    )


@pytest.fixture()
def shop(store):
    return add_shop(store)
