"""
Cash drawer session for one business day.

NoSession -> Open -> Closed. Closing freezes expected balance and variance on
the record; nothing recomputes them afterwards.
"""

from datetime import date, tzinfo
from typing import List, Optional

from .clock import Clock, business_date
from .db import LocalStore, StoreTx
from .errors import NoOpenSession, SessionAlreadyOpen, SessionClosed, ValidationError
from .logs import json_log
from .models import CashMovement, CashSession


def expected_balance(session: CashSession) -> int:
    cash_in = sum(m.amount for m in session.movements if m.direction == "in")
    cash_out = sum(m.amount for m in session.movements if m.direction == "out")
    return session.opening_balance + cash_in - cash_out


def _assert_non_negative(amount: int, label: str) -> None:
    if amount < 0:
        raise ValidationError(f"{label} must be >= 0", **{label: amount})


class CashSessionManager:
    def __init__(self, store: LocalStore, clock: Clock, tz: Optional[tzinfo] = None, default_opening_balance: int = 0):
        self.store = store
        self.clock = clock
        self.tz = tz
        self.default_opening_balance = default_opening_balance

    def today(self) -> date:
        return business_date(self.clock, self.tz)

    def _load(self, tx: StoreTx, day: date):
        rec = tx.get("cash_sessions", day.isoformat())
        if not rec:
            return None, None
        return CashSession.model_validate(rec.body), rec.version

    def current(self) -> Optional[CashSession]:
        with self.store.transaction() as tx:
            session, _ = self._load(tx, self.today())
        return session

    def state(self) -> str:
        session = self.current()
        if session is None:
            return "no_session"
        return session.status

    def history(self, limit: int = 30) -> List[CashSession]:
        records = sorted(self.store.list("cash_sessions"), key=lambda r: r.key, reverse=True)
        return [CashSession.model_validate(r.body) for r in records[:limit]]

    def open_session(self, opening_balance: int, opened_by: Optional[str] = None, notes: Optional[str] = None) -> CashSession:
        _assert_non_negative(opening_balance, "opening_balance")
        day = self.today()
        with self.store.transaction() as tx:
            existing, _ = self._load(tx, day)
            if existing is not None:
                if existing.status == "closed":
                    raise SessionClosed("cash session for today is already closed", session_date=day.isoformat())
                raise SessionAlreadyOpen("a cash session already exists for today", session_date=day.isoformat())
            session = CashSession(
                session_date=day,
                opening_balance=opening_balance,
                opened_at=self.clock.now(),
                opened_by=opened_by,
                notes=notes,
            )
            tx.put("cash_sessions", day.isoformat(), session.model_dump(mode="json"), None)
        json_log("info", "cash.session.opened", session_date=day, opening_balance=opening_balance, opened_by=opened_by)
        return session

    def record_cash_movement(self, direction: str, amount: int, reason: str, recorded_by: Optional[str] = None) -> CashSession:
        if direction not in {"in", "out"}:
            raise ValidationError("direction must be 'in' or 'out'", direction=direction)
        if amount <= 0:
            raise ValidationError("amount must be > 0", amount=amount)
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required")
        day = self.today()
        with self.store.transaction() as tx:
            session, version = self._load(tx, day)
            if session is None:
                raise NoOpenSession("no cash session open for today", session_date=day.isoformat())
            self._assert_open(session)
            session.movements.append(
                CashMovement(
                    direction=direction,
                    amount=amount,
                    reason=reason,
                    kind="manual",
                    recorded_by=recorded_by,
                    recorded_at=self.clock.now(),
                )
            )
            tx.put("cash_sessions", day.isoformat(), session.model_dump(mode="json"), version)
        json_log("info", "cash.movement", session_date=day, direction=direction, amount=amount, reason=reason)
        return session

    def assert_can_take_cash(self) -> None:
        """Fail fast before a cash sale is persisted if today's drawer is already closed."""
        session = self.current()
        if session is not None:
            self._assert_open(session)

    def record_cash_sale(self, tx: StoreTx, reference: str, amount: int, recorded_by: Optional[str] = None) -> CashSession:
        """
        Add a cash sale to today's drawer inside the caller's transaction, opening
        the session with the default float if none exists yet.
        """
        day = self.today()
        session, version = self._load(tx, day)
        if session is None:
            session = CashSession(
                session_date=day,
                opening_balance=self.default_opening_balance,
                opened_at=self.clock.now(),
                opened_by=recorded_by,
                notes="opened automatically on first cash sale",
            )
            json_log("info", "cash.session.auto_opened", session_date=day)
        self._assert_open(session)
        if amount > 0:
            session.movements.append(
                CashMovement(
                    direction="in",
                    amount=amount,
                    reason="cash sale",
                    kind="sale",
                    reference=reference,
                    recorded_by=recorded_by,
                    recorded_at=self.clock.now(),
                )
            )
        tx.put("cash_sessions", day.isoformat(), session.model_dump(mode="json"), version)
        return session

    def close_session(self, counted_balance: int, closed_by: Optional[str] = None, notes: Optional[str] = None) -> CashSession:
        _assert_non_negative(counted_balance, "counted_balance")
        day = self.today()
        with self.store.transaction() as tx:
            session, version = self._load(tx, day)
            if session is None:
                raise NoOpenSession("no cash session open for today", session_date=day.isoformat())
            self._assert_open(session)
            expected = expected_balance(session)
            session.status = "closed"
            session.closed_at = self.clock.now()
            session.closed_by = closed_by
            session.counted_balance = counted_balance
            session.expected_balance = expected
            session.variance = counted_balance - expected
            if notes:
                session.notes = notes
            tx.put("cash_sessions", day.isoformat(), session.model_dump(mode="json"), version)
        json_log(
            "info",
            "cash.session.closed",
            session_date=day,
            expected=session.expected_balance,
            counted=counted_balance,
            variance=session.variance,
        )
        return session

    @staticmethod
    def _assert_open(session: CashSession) -> None:
        if session.status == "closed":
            raise SessionClosed("cannot modify a closed session", session_date=session.session_date.isoformat())
