"""
Custom exception hierarchy for the cash-and-carry engine.

Hierarchy:

    CashCarryError (base)
    ├── ConfigurationError       missing credentials / bad settings, fail fast
    ├── OperationalError         transient/retryable (exchange, network, timeouts)
    │   ├── ExchangeError        exchange returned code != "0"
    │   │   └── AuthenticationError
    │   ├── UpstreamNonJSONError
    │   └── OracleError
    ├── DataError                bad input or business rejection, skip instrument
    │   ├── InstrumentNotFoundError
    │   └── OrderExecutionError
    │       └── InsufficientFundsError
    └── InvariantError           hedge safety violation, halt
        ├── HedgeIntegrityError
        └── UnhedgedPositionError

Rules:
    - ConfigurationError: surface to the operator, never retry.
    - OperationalError: catch and retry/backoff, continue loop.
    - DataError: catch, log, skip this instrument, continue loop.
    - InvariantError: catch, trigger kill switch, stop trading.
"""
from typing import Optional


class CashCarryError(Exception):
    """Base exception for all engine errors."""
    pass


class ConfigurationError(CashCarryError):
    """Required configuration (usually credentials) is missing or invalid."""
    pass


# ============ OPERATIONAL (transient, retryable) ============

class OperationalError(CashCarryError):
    """Transient/retryable error: exchange API, network, timeouts."""
    pass


class ExchangeError(OperationalError):
    """
    The exchange answered with a non-success code.

    ``sub_code`` / ``sub_message`` carry the per-item detail OKX puts in
    ``data[0].sCode`` / ``data[0].sMsg`` (e.g. order rejections).
    """

    def __init__(
        self,
        code: str,
        message: str,
        sub_code: Optional[str] = None,
        sub_message: Optional[str] = None,
    ):
        self.code = str(code)
        self.message = message
        self.sub_code = sub_code
        self.sub_message = sub_message
        detail = f"OKX error {self.code}: {message}"
        if sub_code:
            detail += f" ({sub_code}: {sub_message})"
        super().__init__(detail)


class AuthenticationError(ExchangeError):
    """Signature, key or passphrase rejected by the exchange."""
    pass


class UpstreamNonJSONError(OperationalError):
    """The upstream (exchange or signing proxy) returned a non-JSON body."""

    def __init__(self, status: int, content_type: str, snippet: str = ""):
        self.status = status
        self.content_type = content_type
        self.snippet = snippet
        super().__init__(
            f"Upstream returned non-JSON response (status={status}, content_type={content_type})"
        )


class OracleError(OperationalError):
    """The advisory oracle could not be reached or returned garbage."""
    pass


# ============ DATA (bad input, skip instrument) ============

class DataError(CashCarryError):
    """Bad data or business rejection: skip this instrument, don't halt."""
    pass


class InstrumentNotFoundError(DataError):
    """Instrument metadata is not available for the requested id."""
    pass


class OrderExecutionError(DataError):
    """Raised when order placement or execution fails."""
    pass


class InsufficientFundsError(OrderExecutionError):
    """Budget or balance cannot cover the minimum tradable size."""
    pass


# ============ INVARIANT (safety violation, halt) ============

class InvariantError(CashCarryError):
    """Safety invariant violated. Treatment: trigger kill switch, stop trading."""
    pass


class HedgeIntegrityError(InvariantError):
    """Spot and swap legs deviate beyond the configured threshold."""
    pass


class UnhedgedPositionError(InvariantError):
    """A leg is exposed and automated recovery failed. Manual intervention required."""

    def __init__(self, inst_id: str, message: str):
        self.inst_id = inst_id
        super().__init__(f"{inst_id}: {message}")
