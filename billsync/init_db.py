from billsync.db import engine, Base
from billsync.db_migrations import run_migrations
from billsync import models  # noqa: F401  registers every mirrored table

Base.metadata.create_all(bind=engine)
version = run_migrations(engine)
print(f"Tables created at -> {engine.url.database} (schema v{version})")
