import os
from decimal import Decimal, InvalidOperation
from typing import Optional


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.getenv(name) or "").strip()
    try:
        return Decimal(raw or default)
    except InvalidOperation:
        return Decimal(default)


def _truthy(raw: Optional[str]) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def __init__(self) -> None:
        self.env = _env_str("POS_ENV", "local")
        self.api_version = _env_str("POS_VERSION", "0.1.0")
        self.db_path = _env_str("POS_DB_PATH", os.path.join(os.getcwd(), "pos_terminal.sqlite"))

        self.terminal_id = _env_str("POS_TERMINAL_ID", "terminal-1")
        self.merchant_id = _env_str("POS_MERCHANT_ID", "merchant-1")
        self.currency = _env_str("POS_CURRENCY", "XAF").upper()
        # IANA zone used to decide which business day a sale or cash session belongs to.
        self.timezone = _env_str("POS_TIMEZONE", "UTC")

        # Remote ledger (sales sink + catalog source). Empty disables background sync.
        self.ledger_url = _env_str("POS_LEDGER_URL").rstrip("/")
        self.device_id = _env_str("POS_DEVICE_ID")
        self.device_token = _env_str("POS_DEVICE_TOKEN")
        self.http_timeout = _env_float("POS_HTTP_TIMEOUT_SECONDS", 10.0)
        self.sync_interval = _env_float("POS_SYNC_INTERVAL_SECONDS", 60.0)
        self.synced_history = _env_int("POS_SYNCED_HISTORY", 100)

        # Mobile money provider.
        self.provider_url = _env_str("POS_PROVIDER_URL").rstrip("/")
        self.provider_key = _env_str("POS_PROVIDER_KEY")
        self.return_url = _env_str("POS_RETURN_URL", "http://127.0.0.1:7070/payment/return")
        self.momo_fee_percent = _env_decimal("POS_MOMO_FEE_PERCENT", "2")
        self.momo_fee_flat = _env_int("POS_MOMO_FEE_FLAT", 0)
        self.poll_interval = _env_float("POS_POLL_INTERVAL_SECONDS", 2.0)
        self.poll_max_seconds = _env_float("POS_POLL_MAX_SECONDS", 300.0)
        self.qr_max_wait_seconds = _env_float("POS_QR_MAX_WAIT_SECONDS", 15 * 60.0)
        # Background polling of redirect and QR payments until they resolve or time out.
        self.watch_payments = _truthy(os.getenv("POS_WATCH_PAYMENTS", "1"))
        self.nfc_enabled = _truthy(os.getenv("POS_NFC_ENABLED"))

        self.tax_enabled = _truthy(os.getenv("POS_TAX_ENABLED"))
        self.tax_rate = _env_decimal("POS_TAX_RATE", "0")
        self.tax_label = _env_str("POS_TAX_LABEL", "VAT")

        self.hold_ttl_hours = _env_int("POS_HOLD_TTL_HOURS", 24)

        # Admin PIN is always required for non-loopback clients.
        self.require_admin_pin = _truthy(os.getenv("POS_REQUIRE_ADMIN_PIN"))
        self.admin_session_hours = _env_int("POS_ADMIN_SESSION_HOURS", 12)

        self.host = _env_str("POS_HOST", "127.0.0.1")
        self.port = _env_int("POS_PORT", 7070)


settings = Settings()
