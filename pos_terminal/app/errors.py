"""
Domain error taxonomy.

Every error carries an HTTP status and a stable machine code so the API layer
can map it without knowing the concrete class.
"""


class PosError(Exception):
    status_code = 400
    code = "pos_error"

    def __init__(self, message: str = "", **details):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details


class ValidationError(PosError):
    code = "validation_error"


class CartNotEmpty(ValidationError):
    status_code = 409
    code = "cart_not_empty"


class NotFound(PosError):
    status_code = 404
    code = "not_found"


class StaleRecord(PosError):
    """A versioned write lost a race against another writer."""

    status_code = 409
    code = "stale_record"


# Payments

class PaymentError(PosError):
    status_code = 402
    code = "payment_error"


class InsufficientPayment(PaymentError):
    code = "insufficient_payment"


class CreditLimitExceeded(PaymentError):
    code = "credit_limit_exceeded"


class DiscountNotApplicable(PaymentError):
    status_code = 400
    code = "discount_not_applicable"


class MethodUnavailable(PaymentError):
    status_code = 409
    code = "method_unavailable"


class VerificationRejected(PaymentError):
    code = "verification_rejected"


class PaymentNotCompleted(PaymentError):
    status_code = 409
    code = "payment_not_completed"


class InvalidPaymentTransition(PaymentError):
    status_code = 409
    code = "invalid_payment_transition"


class ProviderError(PaymentError):
    """Payment provider unreachable or returned an error."""

    status_code = 502
    code = "provider_error"

    def __init__(self, message: str = "", retryable: bool = True, **details):
        super().__init__(message, **details)
        self.retryable = retryable


# Sync (never surfaced as a sale failure)

class SyncError(PosError):
    status_code = 502
    code = "sync_error"


class LedgerUnavailable(SyncError):
    code = "ledger_unavailable"


class LedgerRejected(SyncError):
    code = "ledger_rejected"

    def __init__(self, message: str = "", status: int = 0, body: str = "", **details):
        super().__init__(message, **details)
        self.status = status
        self.body = body


# Cash drawer

class SessionError(PosError):
    status_code = 409
    code = "session_error"


class SessionAlreadyOpen(SessionError):
    code = "session_already_open"


class SessionClosed(SessionError):
    code = "session_closed"


class NoOpenSession(SessionError):
    code = "no_open_session"


# Held orders

class HeldOrderNotFound(NotFound):
    code = "held_order_not_found"


class AlreadyResumed(PosError):
    status_code = 409
    code = "already_resumed"


class HeldOrderExpired(PosError):
    status_code = 410
    code = "held_order_expired"


# Fatal

class StoreCorrupted(PosError):
    status_code = 503
    code = "store_corrupted"


class TerminalHalted(PosError):
    status_code = 503
    code = "terminal_halted"


# Local auth

class AuthRequired(PosError):
    status_code = 401
    code = "pos_auth_required"
