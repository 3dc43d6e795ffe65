"""
Error taxonomy for the signal service.

Every error carries the HTTP status it maps to and a message that is safe to
show to the caller. Routes never build error bodies by hand; main.py renders
any SignalGateError as {"success": false, "error": message}.
"""
from typing import Optional


class SignalGateError(Exception):
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None, **extra):
        self.message = message or self.default_message
        self.extra = extra
        super().__init__(self.message)


class ValidationError(SignalGateError):
    """Bad symbol / agent / body. Raised before any payment is touched."""
    status_code = 400
    default_message = "Invalid request"


class PaymentRejected(SignalGateError):
    """Proof present but malformed or refused by the facilitator."""
    status_code = 402
    default_message = "Invalid payment"


class SettlementFailed(SignalGateError):
    """Proof verified but the transfer could not be finalized."""
    status_code = 502
    default_message = "Payment settlement failed"


class UpstreamUnavailable(SignalGateError):
    """Facilitator, price feed or recommendation engine unreachable."""
    status_code = 503
    default_message = "Upstream service unavailable"


class IntegrityError(SignalGateError):
    """A stored receipt no longer hashes to its own key."""
    status_code = 500
    default_message = "Receipt integrity check failed"


class StorageUnavailable(SignalGateError):
    status_code = 503
    default_message = "Storage unavailable"


class NotFound(SignalGateError):
    status_code = 404
    default_message = "Not found"
