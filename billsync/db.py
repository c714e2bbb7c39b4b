# billsync/db.py
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from billsync.core.config import DATABASE_URL


def make_engine(url: str = DATABASE_URL):
    """Create a SQLite engine with the local-store pragmas applied per connection."""
    kwargs = {
        "connect_args": {"check_same_thread": False, "timeout": 30},
        "future": True,
    }
    if url in ("sqlite://", "sqlite:///:memory:"):
        # one shared connection, otherwise every checkout sees an empty database
        kwargs["poolclass"] = StaticPool
    engine = create_engine(url, **kwargs)

    @event.listens_for(engine, "connect")
    def _set_pragmas(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA synchronous=NORMAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
        cursor.close()

    return engine


# Create the SQLite engine (one file per env via DATABASE_URL)
engine = make_engine(DATABASE_URL)

# Session factory
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def make_session_factory(bind):
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


# Base class for models
class Base(DeclarativeBase):
    pass
