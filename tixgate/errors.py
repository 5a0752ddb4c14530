from typing import Optional


class TixgateError(Exception):
    """Base class for errors raised by the engine."""


class PoolNotFound(TixgateError):
    def __init__(self, pool_id: str):
        super().__init__(f"unknown inventory pool: {pool_id}")
        self.pool_id = pool_id


class InsufficientInventory(TixgateError):
    """Definitive sold-out outcome. Never retried."""

    def __init__(self, pool_id: str, requested: int,
                 remaining: Optional[int] = None):
        super().__init__(
            f"not enough capacity in pool {pool_id} "
            f"(requested {requested}, remaining {remaining})"
        )
        self.pool_id = pool_id
        self.requested = requested
        self.remaining = remaining


class LockTimeout(TixgateError):
    """Transient contention that outlasted the retry budget."""


class CheckoutRejected(TixgateError):
    """The cart itself is invalid (bad quantity, inactive pool, ...)."""


class PaymentGatewayError(TixgateError):
    """The payment provider could not create a checkout session."""
