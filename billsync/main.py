import argparse
import logging
import sys
import time

from billsync.core.config import settings
from billsync.db import engine
from billsync.db_migrations import get_schema_version, run_migrations
from billsync.errors import BillingError
from billsync.remote import RestRemoteStore
from billsync.services.entity_store import LocalEntityStore
from billsync.services.sync_service import Reconciler, SyncQueue, SyncWorker

log = logging.getLogger("billsync")


def _remote():
    if not settings.REMOTE_URL:
        raise SystemExit("REMOTE_URL is not set; nothing to sync against.")
    return RestRemoteStore()


def cmd_info(args, store: LocalEntityStore) -> int:
    queue = SyncQueue(store)
    with engine.connect() as conn:
        version = get_schema_version(conn)
    print(f"BillSync environment: {settings.ENV}")
    print(f"App Name: {settings.APP_NAME}")
    print(f"Debug: {settings.DEBUG}")
    print(f"Database: {settings.DATABASE_URL} (schema v{version})")
    print(f"Mode flag: {settings.DB_MODE}")
    print(f"Sync queue: {queue.count('pending')} pending, {queue.count('blocked')} blocked")
    return 0


def cmd_init_db(args, store: LocalEntityStore) -> int:
    version = run_migrations(engine)
    print(f"Tables ready at -> {engine.url.database} (schema v{version})")
    return 0


def cmd_sync(args, store: LocalEntityStore) -> int:
    reconciler = Reconciler(store, _remote())
    reconciler.on_warning(lambda w: print(f"! {w.action} {w.entity_type}/{w.entity_id}: {w.message}"))
    if not args.loop:
        report = reconciler.sync_all(args.user)
        print(
            f"applied={report.processed} retrying={report.failed} blocked={report.blocked} "
            f"waiting={report.deferred} pulled={report.pulled}"
        )
        return 1 if report.blocked else 0

    worker = SyncWorker(reconciler, user_id=lambda: args.user)
    worker.start()
    try:
        while worker.is_alive():
            time.sleep(1)
    except KeyboardInterrupt:
        print("Stopping sync worker...")
    finally:
        worker.stop(timeout=settings.REMOTE_TIMEOUT)
    return 0


def cmd_queue(args, store: LocalEntityStore) -> int:
    queue = SyncQueue(store)
    entries = queue.blocked() if args.blocked else queue.pending()
    if not entries:
        print("Queue is empty.")
        return 0
    for entry in entries:
        line = (
            f"{entry['id']:>6}  {entry['created_at']:%Y-%m-%d %H:%M:%S}  {entry['action']:<6} "
            f"{entry['entity_type']}/{entry['entity_id']}  retries={entry['retry_count']}"
        )
        if entry.get("last_error"):
            line += f"  last_error={entry['last_error']}"
        print(line)
    return 0


def cmd_retry(args, store: LocalEntityStore) -> int:
    entry = SyncQueue(store).release(args.entry_id)
    print(f"Entry {entry['id']} re-queued.")
    return 0


def cmd_discard(args, store: LocalEntityStore) -> int:
    SyncQueue(store).discard(args.entry_id)
    print(f"Entry {args.entry_id} discarded.")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="billsync", description="Offline-first billing data layer")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("info", help="show environment and queue status").set_defaults(func=cmd_info)
    sub.add_parser("init-db", help="create or upgrade the local database").set_defaults(func=cmd_init_db)

    sync = sub.add_parser("sync", help="push queued changes and pull remote rows")
    sync.add_argument("--loop", action="store_true", help="keep syncing every SYNC_INTERVAL seconds")
    sync.add_argument("--user", help="user id whose remote rows should be pulled")
    sync.set_defaults(func=cmd_sync)

    queue = sub.add_parser("queue", help="list sync queue entries")
    queue.add_argument("--blocked", action="store_true", help="list blocked entries instead of pending ones")
    queue.set_defaults(func=cmd_queue)

    retry = sub.add_parser("retry", help="re-queue a blocked entry")
    retry.add_argument("entry_id", type=int)
    retry.set_defaults(func=cmd_retry)

    discard = sub.add_parser("discard", help="drop a queue entry for good")
    discard.add_argument("entry_id", type=int)
    discard.set_defaults(func=cmd_discard)
    return parser


def run(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    parser = build_parser()
    args = parser.parse_args(argv)
    if not getattr(args, "func", None):
        args = parser.parse_args(["info"])
    run_migrations(engine)
    try:
        return args.func(args, LocalEntityStore())
    except BillingError as exc:
        log.error("%s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(run())
