import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt

from .db import LocalStore
from .errors import ValidationError

LOOPBACK_HOSTS = {"127.0.0.1", "::1", "localhost"}


def is_loopback(ip: Optional[str]) -> bool:
    return (ip or "").strip() in LOOPBACK_HOSTS


def admin_pin_required(client_ip: Optional[str], require_admin_pin: bool) -> bool:
    # LAN-exposed requests always need an admin session; loopback only when forced.
    if require_admin_pin:
        return True
    return not is_loopback(client_ip)


def hash_pin(pin: str) -> str:
    return bcrypt.hashpw(pin.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_pin(pin: str, hashed: Optional[str]) -> bool:
    pin = (pin or "").strip()
    if not pin or not hashed:
        return False
    try:
        return bcrypt.checkpw(pin.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


def hash_session_token(token: str) -> str:
    # Stored one-way so a copied database does not carry live sessions.
    return "sha256:" + hashlib.sha256(token.encode("utf-8")).hexdigest()


class AdminAuth:
    """Local admin PIN and short-lived unlock sessions kept in the terminal store."""

    def __init__(self, store: LocalStore, session_hours: int = 12):
        self.store = store
        hours = int(session_hours or 12)
        self.session_hours = hours if 0 < hours <= 24 * 14 else 12

    @property
    def pin_configured(self) -> bool:
        return bool(self.store.get_setting("admin_pin_hash"))

    def set_pin(self, pin: str) -> None:
        pin = (pin or "").strip()
        if len(pin) < 4 or not pin.isdigit():
            raise ValidationError("pin must be at least 4 digits")
        self.store.set_setting("admin_pin_hash", hash_pin(pin))

    def unlock(self, pin: str) -> Optional[dict]:
        if not verify_pin(pin, self.store.get_setting("admin_pin_hash")):
            return None
        token = secrets.token_urlsafe(32)
        expires_at = (datetime.now(timezone.utc) + timedelta(hours=self.session_hours)).isoformat()
        with self.store.transaction() as tx:
            tx.clean_expired_sessions()
            tx.add_session(hash_session_token(token), expires_at)
        return {"token": token, "expires_at": expires_at}

    def validate(self, token: Optional[str]) -> bool:
        token = (token or "").strip()
        if not token:
            return False
        with self.store.transaction() as tx:
            tx.clean_expired_sessions()
            return tx.has_session(hash_session_token(token))
