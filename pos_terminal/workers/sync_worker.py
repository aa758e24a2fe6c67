#!/usr/bin/env python3
"""
Standalone sync worker.

Runs the same loop the API process starts on a background thread, for
deployments where the UI and the sync process are separate: probe the ledger,
drain queued sales in commit order, and pull catalog deltas every few passes.
"""

import argparse
import sys
import threading
import traceback

from pos_terminal.app.clients import RemoteLedgerClient
from pos_terminal.app.clock import SystemClock
from pos_terminal.app.config import settings
from pos_terminal.app.db import LocalStore
from pos_terminal.app.errors import StoreCorrupted, SyncError
from pos_terminal.app.logs import json_log
from pos_terminal.app.sync import SyncEngine


def build_engine(db_path: str, ledger_url: str) -> SyncEngine:
    store = LocalStore(db_path).open()
    ledger = RemoteLedgerClient(ledger_url, settings.device_id, settings.device_token, settings.http_timeout)
    return SyncEngine(store, ledger, SystemClock(), synced_history=settings.synced_history)


def run_once(engine: SyncEngine, pull_catalog: bool = True) -> dict:
    before = engine.store.count_pending()
    out = {"online": engine.probe(), "sent": 0, "remaining": None, "catalog": None}
    if out["online"]:
        res = engine.drain()
        # Counted from the queue: the reconnect inside probe() may already have drained it.
        out["sent"] = max(0, before - res.remaining)
        out["remaining"] = res.remaining
        if pull_catalog:
            try:
                out["catalog"] = engine.pull_catalog()
            except SyncError as ex:
                json_log("warning", "worker.catalog.error", error=ex.message)
    else:
        out["remaining"] = engine.store.count_pending()
    return out


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=settings.db_path)
    parser.add_argument("--ledger-url", default=settings.ledger_url)
    parser.add_argument("--interval", type=float, default=settings.sync_interval)
    parser.add_argument("--catalog-every", type=int, default=5, help="Pull catalog deltas every N passes")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args()

    if not args.ledger_url:
        json_log("error", "worker.config.error", error="missing ledger url (POS_LEDGER_URL or --ledger-url)")
        sys.exit(2)

    try:
        engine = build_engine(args.db, args.ledger_url)
    except StoreCorrupted as ex:
        json_log("error", "worker.store.corrupted", db=args.db, error=ex.message)
        sys.exit(3)

    if args.once:
        try:
            out = run_once(engine)
        except Exception as ex:
            json_log("error", "worker.sync.error", error=str(ex))
            traceback.print_exc(file=sys.stderr)
            sys.exit(1)
        json_log("info", "worker.sync.pass", **out)
        return

    stop = threading.Event()
    json_log("info", "worker.started", db=args.db, interval=args.interval)
    try:
        engine.run_forever(stop, interval=args.interval, catalog_every=args.catalog_every)
    except KeyboardInterrupt:
        stop.set()
        json_log("info", "worker.stopped")


if __name__ == "__main__":
    main()
