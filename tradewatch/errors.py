"""
Error taxonomy for the trade / alert / portfolio core.

Every error carries a stable machine-readable ``code``. Domain errors are
expected outcomes of user input and map to 4xx responses; infrastructure
errors mean the operation aborted cleanly and may be retried by the caller.
HTTP mapping lives in ``api_server``; nothing here imports a web framework.
"""

from __future__ import annotations

from typing import Iterable, Optional


class TradewatchError(Exception):
    """Base error for everything raised by the core."""

    code = "TRADEWATCH_ERROR"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(self.message)


class ValidationError(TradewatchError):
    """Bad input shape or range. Raised before any I/O happens."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str) -> None:
        super().__init__(f"Invalid {field}: {reason}")
        self.field = field
        self.reason = reason


# ---------------------------------------------------------------- domain


class DomainError(TradewatchError):
    code = "DOMAIN_ERROR"


class InvalidCryptocurrency(DomainError):
    code = "INVALID_CRYPTOCURRENCY"

    def __init__(self, symbol: str) -> None:
        super().__init__(f"Invalid cryptocurrency: {symbol}")
        self.symbol = symbol


class InsufficientBalance(DomainError):
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, symbol: str, requested: float, available: float) -> None:
        super().__init__(
            f"Insufficient balance for {symbol}: requested {requested}, available {available}"
        )
        self.symbol = symbol
        self.requested = requested
        self.available = available


class UserNotFound(DomainError):
    code = "USER_NOT_FOUND"

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User not found: {user_id}")
        self.user_id = user_id


class DuplicateAlert(DomainError):
    code = "DUPLICATE_ALERT"

    def __init__(self, symbol: str, target_price: float, condition: str) -> None:
        super().__init__(
            f"Duplicate alert already exists: {symbol} {condition} {target_price}"
        )
        self.symbol = symbol
        self.target_price = target_price
        self.condition = condition


class AlertNotFound(DomainError):
    code = "ALERT_NOT_FOUND"

    def __init__(self, alert_id: int) -> None:
        super().__init__(f"Alert not found: {alert_id}")
        self.alert_id = alert_id


class AlertAlreadyInactive(DomainError):
    code = "ALERT_ALREADY_INACTIVE"

    def __init__(self, alert_id: int) -> None:
        super().__init__(f"Alert already inactive: {alert_id}")
        self.alert_id = alert_id


class ConcurrentModification(DomainError):
    code = "CONCURRENT_MODIFICATION"

    def __init__(self, entity: str, entity_id: int) -> None:
        super().__init__(f"{entity} {entity_id} was modified concurrently")
        self.entity = entity
        self.entity_id = entity_id


class TradeNotFound(DomainError):
    code = "TRADE_NOT_FOUND"

    def __init__(self, trade_id: int) -> None:
        super().__init__(f"Trade not found: {trade_id}")
        self.trade_id = trade_id


# -------------------------------------------------------- infrastructure


class InfrastructureError(TradewatchError):
    code = "INFRASTRUCTURE_ERROR"


class QuoteUnavailable(InfrastructureError):
    code = "QUOTE_UNAVAILABLE"

    def __init__(self, symbols: Iterable[str], reason: Optional[str] = None) -> None:
        self.symbols = sorted(set(symbols))
        message = f"No fresh quote for {', '.join(self.symbols)}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class StorageError(InfrastructureError):
    code = "STORAGE_ERROR"

    def __init__(self, operation: str, reason: str) -> None:
        super().__init__(f"Storage failure during {operation}: {reason}")
        self.operation = operation
        self.reason = reason
