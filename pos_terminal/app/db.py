"""
Local durable store (SQLite).

Keyed collections hold one JSON body per key plus a version counter; writers pass
the version they read and a mismatch raises StaleRecord. The sales queue is an
append-only table ordered by an AUTOINCREMENT sequence, so drain order equals
commit order.

All writes go through `LocalStore.transaction()`: an in-process lock plus
`BEGIN IMMEDIATE` serializes writers, and a nested `transaction()` on the same
thread joins the outer one.
"""

import json
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional

from .errors import StaleRecord, StoreCorrupted, ValidationError
from .logs import json_log

KEYED_COLLECTIONS = (
    "cart",
    "held_orders",
    "cash_sessions",
    "pending_payments",
    "receipts",
    "sync_state",
    "settings",
    "catalog_products",
    "catalog_barcodes",
    "catalog_customers",
    "catalog_discounts",
)

_KEYED_DDL = """
CREATE TABLE IF NOT EXISTS {name} (
  key TEXT PRIMARY KEY,
  version INTEGER NOT NULL,
  body TEXT NOT NULL,
  updated_at TEXT NOT NULL
);
"""

SCHEMA = "".join(_KEYED_DDL.format(name=n) for n in KEYED_COLLECTIONS) + """
CREATE TABLE IF NOT EXISTS pending_sales (
  seq INTEGER PRIMARY KEY AUTOINCREMENT,
  idempotency_key TEXT NOT NULL UNIQUE,
  body TEXT NOT NULL,
  created_at TEXT NOT NULL,
  attempt_count INTEGER NOT NULL DEFAULT 0,
  last_attempt_at TEXT,
  last_error TEXT
);
CREATE TABLE IF NOT EXISTS synced_sales (
  idempotency_key TEXT PRIMARY KEY,
  seq INTEGER NOT NULL,
  sale_id TEXT NOT NULL,
  sale_number TEXT,
  body TEXT NOT NULL,
  synced_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS admin_sessions (
  token TEXT PRIMARY KEY,
  expires_at TEXT NOT NULL
);
"""


class DuplicateSale(ValidationError):
    status_code = 409
    code = "duplicate_sale"


@dataclass
class Record:
    key: str
    version: int
    body: dict


@dataclass
class QueuedSale:
    seq: int
    idempotency_key: str
    body: dict
    created_at: str
    attempt_count: int
    last_error: Optional[str]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _check_collection(name: str) -> str:
    if name not in KEYED_COLLECTIONS:
        raise ValueError(f"unknown collection: {name}")
    return name


def _decode(raw: str, where: str) -> dict:
    try:
        body = json.loads(raw)
    except ValueError as ex:
        raise StoreCorrupted(f"unreadable record in {where}: {ex}") from ex
    if not isinstance(body, dict):
        raise StoreCorrupted(f"unreadable record in {where}: expected object")
    return body


def _encode(body: dict) -> str:
    return json.dumps(body, default=str, separators=(",", ":"))


class StoreTx:
    """Operations bound to one open SQLite transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    # Keyed collections

    def get(self, collection: str, key: str) -> Optional[Record]:
        table = _check_collection(collection)
        row = self.conn.execute(f"SELECT key, version, body FROM {table} WHERE key = ?", (key,)).fetchone()
        if not row:
            return None
        return Record(key=row["key"], version=int(row["version"]), body=_decode(row["body"], f"{table}/{key}"))

    def list(self, collection: str) -> List[Record]:
        table = _check_collection(collection)
        rows = self.conn.execute(f"SELECT key, version, body FROM {table} ORDER BY key ASC").fetchall()
        return [Record(key=r["key"], version=int(r["version"]), body=_decode(r["body"], f"{table}/{r['key']}")) for r in rows]

    def put(self, collection: str, key: str, body: dict, expected_version: Optional[int]) -> Record:
        """
        Versioned write. `expected_version=None` creates the record and fails if it
        already exists; otherwise the stored version must equal `expected_version`.
        """
        table = _check_collection(collection)
        if expected_version is None:
            try:
                self.conn.execute(
                    f"INSERT INTO {table} (key, version, body, updated_at) VALUES (?, 1, ?, ?)",
                    (key, _encode(body), _now_iso()),
                )
            except sqlite3.IntegrityError as ex:
                raise StaleRecord(f"{table}/{key} already exists", collection=table, key=key) from ex
            return Record(key=key, version=1, body=body)

        cur = self.conn.execute(
            f"UPDATE {table} SET version = version + 1, body = ?, updated_at = ? WHERE key = ? AND version = ?",
            (_encode(body), _now_iso(), key, expected_version),
        )
        if cur.rowcount != 1:
            raise StaleRecord(
                f"{table}/{key} changed since version {expected_version}",
                collection=table,
                key=key,
                expected_version=expected_version,
            )
        return Record(key=key, version=expected_version + 1, body=body)

    def upsert(self, collection: str, key: str, body: dict) -> Record:
        """Last-writer-wins write for caches and bookkeeping (catalog, sync state)."""
        table = _check_collection(collection)
        self.conn.execute(
            f"""
            INSERT INTO {table} (key, version, body, updated_at) VALUES (?, 1, ?, ?)
            ON CONFLICT(key) DO UPDATE SET version = {table}.version + 1, body = excluded.body, updated_at = excluded.updated_at
            """,
            (key, _encode(body), _now_iso()),
        )
        row = self.conn.execute(f"SELECT version FROM {table} WHERE key = ?", (key,)).fetchone()
        return Record(key=key, version=int(row["version"]), body=body)

    def delete(self, collection: str, key: str, expected_version: Optional[int] = None) -> bool:
        table = _check_collection(collection)
        if expected_version is None:
            cur = self.conn.execute(f"DELETE FROM {table} WHERE key = ?", (key,))
            return cur.rowcount > 0
        cur = self.conn.execute(f"DELETE FROM {table} WHERE key = ? AND version = ?", (key, expected_version))
        if cur.rowcount != 1:
            raise StaleRecord(f"{table}/{key} changed since version {expected_version}", collection=table, key=key)
        return True

    # Sales queue

    def append_pending(self, idempotency_key: str, body: dict) -> int:
        try:
            cur = self.conn.execute(
                "INSERT INTO pending_sales (idempotency_key, body, created_at) VALUES (?, ?, ?)",
                (idempotency_key, _encode(body), _now_iso()),
            )
        except sqlite3.IntegrityError as ex:
            raise DuplicateSale("sale already committed", idempotency_key=idempotency_key) from ex
        return int(cur.lastrowid)

    def peek_pending(self) -> Optional[QueuedSale]:
        rows = self.list_pending(limit=1)
        return rows[0] if rows else None

    def list_pending(self, limit: int = 100) -> List[QueuedSale]:
        rows = self.conn.execute(
            """
            SELECT seq, idempotency_key, body, created_at, attempt_count, last_error
            FROM pending_sales
            ORDER BY seq ASC
            LIMIT ?
            """,
            (int(limit),),
        ).fetchall()
        return [
            QueuedSale(
                seq=int(r["seq"]),
                idempotency_key=r["idempotency_key"],
                body=_decode(r["body"], f"pending_sales/{r['seq']}"),
                created_at=r["created_at"],
                attempt_count=int(r["attempt_count"]),
                last_error=r["last_error"],
            )
            for r in rows
        ]

    def count_pending(self) -> int:
        row = self.conn.execute("SELECT COUNT(1) AS n FROM pending_sales").fetchone()
        return int(row["n"] if row else 0)

    def pending_credit_totals(self) -> Dict[str, int]:
        """Unsynced credit sale totals per customer. Remote balances do not include these yet."""
        out: Dict[str, int] = {}
        for r in self.conn.execute("SELECT seq, body FROM pending_sales ORDER BY seq ASC"):
            body = _decode(r["body"], f"pending_sales/{r['seq']}")
            customer_id = body.get("customer_id")
            if body.get("payment_method") != "credit" or not customer_id:
                continue
            out[customer_id] = out.get(customer_id, 0) + int((body.get("totals") or {}).get("total") or 0)
        return out

    def record_pending_failure(self, seq: int, error: str) -> None:
        self.conn.execute(
            """
            UPDATE pending_sales
            SET attempt_count = attempt_count + 1, last_attempt_at = ?, last_error = ?
            WHERE seq = ?
            """,
            (_now_iso(), (error or "")[:2000], seq),
        )

    def ack_pending(self, queued: QueuedSale, sale_id: str, sale_number: Optional[str], keep: int) -> None:
        """Move an acknowledged sale to the synced history and trim the history to `keep` rows."""
        synced_at = _now_iso()
        body = {**queued.body, "sale_id": sale_id, "sale_number": sale_number, "synced_at": synced_at}
        self.conn.execute(
            """
            INSERT INTO synced_sales (idempotency_key, seq, sale_id, sale_number, body, synced_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(idempotency_key) DO NOTHING
            """,
            (queued.idempotency_key, queued.seq, sale_id, sale_number, _encode(body), synced_at),
        )
        self.conn.execute("DELETE FROM pending_sales WHERE seq = ?", (queued.seq,))
        self.conn.execute(
            """
            DELETE FROM synced_sales
            WHERE idempotency_key NOT IN (
              SELECT idempotency_key FROM synced_sales ORDER BY seq DESC LIMIT ?
            )
            """,
            (max(0, int(keep)),),
        )

    def list_synced(self, limit: int = 50) -> List[dict]:
        rows = self.conn.execute("SELECT body FROM synced_sales ORDER BY seq DESC LIMIT ?", (int(limit),)).fetchall()
        return [_decode(r["body"], "synced_sales") for r in rows]

    # Admin sessions

    def clean_expired_sessions(self) -> None:
        self.conn.execute("DELETE FROM admin_sessions WHERE expires_at < ?", (_now_iso(),))

    def add_session(self, token: str, expires_at: str) -> None:
        self.conn.execute("INSERT INTO admin_sessions (token, expires_at) VALUES (?, ?)", (token, expires_at))

    def has_session(self, token: str) -> bool:
        row = self.conn.execute("SELECT 1 FROM admin_sessions WHERE token = ? LIMIT 1", (token,)).fetchone()
        return row is not None


class LocalStore:
    def __init__(self, path: str):
        self.path = path
        self._lock = threading.RLock()
        self._local = threading.local()
        self.fault: Optional[str] = None

    @property
    def fault_marker_path(self) -> str:
        return self.path + ".fault"

    @property
    def halted(self) -> bool:
        return bool(self.fault)

    def connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA synchronous=FULL")
        return conn

    def open(self) -> "LocalStore":
        """Create the schema and run an integrity check; a failed check halts the store."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        if os.path.exists(self.fault_marker_path):
            with open(self.fault_marker_path, "r", encoding="utf-8") as f:
                self.fault = f.read().strip() or "store flagged as corrupted"
            json_log("error", "store.halted", path=self.path, reason=self.fault)
            return self
        try:
            conn = self.connect()
            try:
                self._check_integrity(conn)
                conn.execute("PRAGMA journal_mode=WAL")
                conn.executescript(SCHEMA)
            finally:
                conn.close()
        except sqlite3.DatabaseError as ex:
            self.mark_fault(f"open failed: {ex}")
            raise StoreCorrupted(str(ex)) from ex
        json_log("info", "store.opened", path=self.path)
        return self

    def _check_integrity(self, conn: sqlite3.Connection) -> None:
        rows = conn.execute("PRAGMA integrity_check").fetchall()
        result = [str(r[0]) for r in rows]
        if result != ["ok"]:
            raise sqlite3.DatabaseError("integrity check failed: " + "; ".join(result[:5]))

    def mark_fault(self, reason: str) -> None:
        self.fault = reason or "store flagged as corrupted"
        with open(self.fault_marker_path, "w", encoding="utf-8") as f:
            f.write(self.fault)
        json_log("error", "store.fault", path=self.path, reason=self.fault)

    def clear_fault(self) -> None:
        """Operator acknowledgment after manual repair. Re-runs the integrity check first."""
        conn = self.connect()
        try:
            self._check_integrity(conn)
            conn.executescript(SCHEMA)
        except sqlite3.DatabaseError as ex:
            raise StoreCorrupted(str(ex)) from ex
        finally:
            conn.close()
        if os.path.exists(self.fault_marker_path):
            os.remove(self.fault_marker_path)
        json_log("warning", "store.fault_cleared", path=self.path, previous=self.fault)
        self.fault = None

    @contextmanager
    def transaction(self) -> Iterator[StoreTx]:
        current = getattr(self._local, "tx", None)
        if current is not None:
            yield current
            return

        with self._lock:
            conn = self.connect()
            tx = StoreTx(conn)
            self._local.tx = tx
            try:
                conn.execute("BEGIN IMMEDIATE")
                yield tx
                conn.execute("COMMIT")
            except StoreCorrupted as ex:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                self.mark_fault(ex.message)
                raise
            except sqlite3.DatabaseError as ex:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                # Plain DatabaseError (not Integrity/Operational) means a damaged file.
                if type(ex) is sqlite3.DatabaseError:
                    self.mark_fault(str(ex))
                    raise StoreCorrupted(str(ex)) from ex
                raise
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
            finally:
                self._local.tx = None
                conn.close()

    # Shortcuts for single reads

    def get(self, collection: str, key: str) -> Optional[Record]:
        with self.transaction() as tx:
            return tx.get(collection, key)

    def list(self, collection: str) -> List[Record]:
        with self.transaction() as tx:
            return tx.list(collection)

    def count_pending(self) -> int:
        with self.transaction() as tx:
            return tx.count_pending()

    def get_setting(self, key: str, default: Any = None) -> Any:
        rec = self.get("settings", key)
        return rec.body.get("value", default) if rec else default

    def set_setting(self, key: str, value: Any) -> None:
        with self.transaction() as tx:
            tx.upsert("settings", key, {"value": value})
