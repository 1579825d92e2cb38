from __future__ import annotations


class SniperError(Exception):
    """Base class for every error raised or returned by the engine."""


class TransportError(SniperError):
    """Transient network failure (dropped socket, timeout). Retryable."""


class UnsupportedCapabilityError(SniperError):
    """The transport cannot do what was asked, e.g. push subscriptions over HTTP."""


class FeedError(SniperError):
    """The event feed could not be kept alive after bounded reconnects."""


class RestartBudgetExceeded(SniperError):
    pass


class ReadError(SniperError):
    def __init__(self, pool_address: str, message: str):
        super().__init__(f"{pool_address}: {message}")
        self.pool_address = pool_address


class ValidationError(SniperError):
    pass


class SigningError(SniperError):
    pass


class RejectionError(SniperError):
    """The node refused the transaction (revert on estimate, bad nonce, no funds)."""


class InclusionTimeoutError(SniperError):
    def __init__(self, tx_hash: str, attempts: int):
        super().__init__(f"{tx_hash} not included after {attempts} attempts")
        self.tx_hash = tx_hash
        self.attempts = attempts
