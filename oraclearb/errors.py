# oraclearb/errors.py


class ArbError(Exception):
    """Base class for every error raised by the engine."""


class ConfigError(ArbError):
    """Missing or invalid configuration. Fatal at startup."""


class FeedDisconnected(ArbError):
    """The oracle stream dropped. The listener reconnects on its own."""


class StaleData(ArbError):
    """Market or oracle data is too old or incomplete to act on."""


class ExchangeUnavailable(ArbError):
    """Network or HTTP failure talking to the exchange."""


class InvalidInstrument(ArbError):
    """The exchange does not know the requested token."""


class OrderRejected(ArbError):
    """The exchange refused an order or a cancel request."""


class UnhedgedInventoryFailure(ArbError):
    """
    Entry filled but no exit legs could be established.
    Real open exposure; always logged at CRITICAL.
    """

    def __init__(self, position_id: str, message: str):
        super().__init__(f"[{position_id}] {message}")
        self.position_id = position_id


class OrderNotFound(ArbError):
    """The exchange has no record of an order the engine is tracking. Not retried."""
