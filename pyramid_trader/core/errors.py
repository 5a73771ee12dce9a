"""Error taxonomy.

Transport failures are retried on the next tick. Exchange rejections surface
as failed actions. Both count toward the consecutive-error ceiling.
Authentication failures invalidate credentials and are not counted.
Invariant violations abort an action before any network call.
"""


class TraderError(Exception):
    """Base class for controller errors."""


class GatewayError(TraderError):
    """Raised by the execution gateway."""

    def __init__(self, message: str, operation: str = "", code=None):
        super().__init__(message)
        self.operation = operation
        self.code = code


class TransportError(GatewayError):
    """Timeout, connection reset, malformed response or rate limit."""


class ExchangeRejection(GatewayError):
    """The exchange understood the request and refused it."""


class AuthenticationFailure(ExchangeRejection):
    """Invalid or revoked API credentials."""


class InvariantViolation(TraderError):
    """Order parameters failed validation (quantity, notional, finiteness)."""
