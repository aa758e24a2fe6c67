"""
Sync engine: drains locally committed sales to the remote ledger and pulls
catalog deltas.

Sales are posted strictly in commit order. A failed post ends the pass and the
sale stays at the head of the queue; there is no retry ceiling. Only a positive
acknowledgment (including "duplicate, here is the original result") removes a
sale from the queue.
"""

import sys
import threading
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

from pydantic import ValidationError as ModelValidationError

from .catalog import Catalog
from .clock import Clock
from .db import LocalStore, StoreTx
from .errors import LedgerUnavailable, StoreCorrupted, SyncError
from .logs import json_log
from .models import AppliedDiscount, CustomerProfile, LedgerReceipt, PendingSale, Product, SyncStatus


class Ledger(Protocol):
    def post_sale(self, sale: PendingSale) -> LedgerReceipt: ...

    def health(self, timeout: float = 0.8) -> dict: ...

    def catalog_delta(self, since: Optional[str]) -> dict: ...


@dataclass
class DrainResult:
    sent: int = 0
    remaining: int = 0
    error: Optional[str] = None
    skipped: bool = False


class SyncEngine:
    def __init__(
        self,
        store: LocalStore,
        ledger: Optional[Ledger],
        clock: Clock,
        catalog: Optional[Catalog] = None,
        synced_history: int = 100,
    ):
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self.catalog = catalog or Catalog(store)
        self.synced_history = synced_history
        self._online = False
        self._last_error: Optional[str] = None
        self._state_lock = threading.Lock()
        self._drain_lock = threading.Lock()
        self._wake = threading.Event()

    # Queue

    def enqueue(self, sale: PendingSale, tx: Optional[StoreTx] = None) -> int:
        """Append to the local queue. Never touches the network."""
        body = sale.model_dump(mode="json")
        if tx is None:
            with self.store.transaction() as own:
                seq = own.append_pending(sale.idempotency_key, body)
        else:
            seq = tx.append_pending(sale.idempotency_key, body)
        json_log("info", "sync.enqueued", seq=seq, idempotency_key=sale.idempotency_key, total=sale.totals.total)
        return seq

    def request_drain(self) -> None:
        """Ask the background loop for a pass as soon as possible."""
        self._wake.set()

    def drain(self) -> DrainResult:
        if self.ledger is None:
            return DrainResult(remaining=self.store.count_pending(), skipped=True)
        if not self._drain_lock.acquire(blocking=False):
            return DrainResult(remaining=self.store.count_pending(), skipped=True)
        try:
            return self._drain_pass()
        finally:
            self._drain_lock.release()

    def _drain_pass(self) -> DrainResult:
        sent = 0
        while True:
            with self.store.transaction() as tx:
                queued = tx.peek_pending()
            if queued is None:
                break
            try:
                sale = PendingSale.model_validate(queued.body)
            except ModelValidationError as ex:
                self.store.mark_fault(f"unreadable queued sale seq={queued.seq}: {ex}")
                raise StoreCorrupted(f"unreadable queued sale seq={queued.seq}") from ex

            try:
                receipt = self.ledger.post_sale(sale)
            except SyncError as ex:
                with self.store.transaction() as tx:
                    tx.record_pending_failure(queued.seq, ex.message)
                    remaining = tx.count_pending()
                with self._state_lock:
                    self._last_error = ex.message
                    if isinstance(ex, LedgerUnavailable):
                        self._online = False
                json_log(
                    "warning",
                    "sync.drain.failed",
                    seq=queued.seq,
                    idempotency_key=queued.idempotency_key,
                    attempt=queued.attempt_count + 1,
                    error=ex.message,
                    remaining=remaining,
                )
                return DrainResult(sent=sent, remaining=remaining, error=ex.message)

            with self.store.transaction() as tx:
                tx.ack_pending(queued, receipt.sale_id, receipt.sale_number, keep=self.synced_history)
            sent += 1
            json_log(
                "info",
                "sync.drain.sent",
                seq=queued.seq,
                idempotency_key=queued.idempotency_key,
                sale_id=receipt.sale_id,
                duplicate=receipt.duplicate,
            )

        self._touch_last_sync()
        with self._state_lock:
            self._last_error = None
            self._online = True
        if sent:
            json_log("info", "sync.drain.done", sent=sent)
        return DrainResult(sent=sent, remaining=0)

    # Connectivity

    @property
    def online(self) -> bool:
        with self._state_lock:
            return self._online

    def set_online(self, online: bool) -> Optional[DrainResult]:
        """Record connectivity; the offline -> online edge triggers a drain."""
        with self._state_lock:
            was_online = self._online
            self._online = bool(online)
        if online and not was_online:
            json_log("info", "sync.online")
            return self.drain()
        if not online and was_online:
            json_log("warning", "sync.offline")
        return None

    def probe(self) -> bool:
        if self.ledger is None:
            return False
        res = self.ledger.health()
        ok = bool(res.get("ok"))
        if not ok:
            with self._state_lock:
                self._last_error = res.get("error") or self._last_error
        self.set_online(ok)
        return ok

    # Status (local reads only)

    def last_sync_at(self) -> Optional[datetime]:
        rec = self.store.get("sync_state", "last_sync_at")
        if not rec or not rec.body.get("value"):
            return None
        return datetime.fromisoformat(rec.body["value"])

    def status(self) -> SyncStatus:
        with self._state_lock:
            online = self._online
            last_error = self._last_error
        return SyncStatus(
            online=online,
            pending_count=self.store.count_pending(),
            last_sync_at=self.last_sync_at(),
            last_error=last_error,
        )

    def _touch_last_sync(self, tx: Optional[StoreTx] = None) -> None:
        body = {"value": self.clock.now().isoformat()}
        if tx is not None:
            tx.upsert("sync_state", "last_sync_at", body)
            return
        with self.store.transaction() as own:
            own.upsert("sync_state", "last_sync_at", body)

    # Catalog

    def pull_catalog(self) -> dict:
        """Apply catalog changes since the stored cursor. Raises SyncError when the ledger is unreachable."""
        if self.ledger is None:
            raise LedgerUnavailable("ledger url is not configured")
        cursor_rec = self.store.get("sync_state", "catalog_cursor")
        since = cursor_rec.body.get("value") if cursor_rec else None
        data = self.ledger.catalog_delta(since)

        products = [Product.model_validate(p) for p in data.get("products") or []]
        customers = [CustomerProfile.model_validate(c) for c in data.get("customers") or []]
        discounts = [AppliedDiscount.model_validate(d) for d in data.get("discounts") or []]
        next_cursor = data.get("next_cursor") or since

        with self.store.transaction() as tx:
            out = {
                "products": self.catalog.upsert_products(tx, products),
                "customers": self.catalog.upsert_customers(tx, customers),
                "discounts": self.catalog.upsert_discounts(tx, discounts),
            }
            if next_cursor:
                tx.upsert("sync_state", "catalog_cursor", {"value": next_cursor})
            self._touch_last_sync(tx)
        json_log("info", "sync.catalog.pulled", since=since, next_cursor=next_cursor, **out)
        return {**out, "since": since, "next_cursor": next_cursor}

    # Background loop

    def tick(self, pull_catalog: bool = False) -> None:
        if not self.probe():
            return
        self.drain()
        if pull_catalog:
            try:
                self.pull_catalog()
            except SyncError as ex:
                json_log("warning", "sync.catalog.failed", error=ex.message)

    def run_forever(self, stop: threading.Event, interval: float = 60.0, catalog_every: int = 5) -> None:
        passes = 0
        while not stop.is_set():
            try:
                self.tick(pull_catalog=(passes % max(1, catalog_every) == 0))
            except Exception as ex:
                # Never crash the sync loop; sales stay queued locally.
                json_log("error", "sync.loop.error", error=str(ex))
                traceback.print_exc(file=sys.stderr)
            passes += 1
            self._wake.wait(timeout=interval)
            self._wake.clear()
