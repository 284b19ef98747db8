"""
StockPulse Error Taxonomy

Every failure the inventory core can surface carries a stable machine-readable
``code``, a ``kind`` (validation, domain, not_found, consistency, concurrency,
integration) and a ``retryable`` flag. The HTTP layer maps ``kind`` to a
status code; the Stock Engine retries only ``ConcurrencyConflict``.

    InventoryError
    +-- ValidationError        InvalidDelta, SameWarehouse, UnknownMethod
    +-- DomainError            InsufficientStock, InsufficientAvailable, AlreadyTerminal
    +-- NotFound               UnknownRow
    +-- ConsistencyError       InsufficientLayers
    +-- ConcurrencyConflict
    +-- IntegrationError       StoreError, PushSendError
"""

from typing import Any


class InventoryError(Exception):
    """Base class for all inventory core errors."""

    code: str = "INVENTORY_ERROR"
    kind: str = "internal"
    retryable: bool = False

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **({"details": self.details} if self.details else {}),
        }


# ─── Validation ──────────────────────────────────────────────────────────────


class ValidationError(InventoryError):
    code = "VALIDATION_ERROR"
    kind = "validation"


class InvalidDelta(ValidationError):
    code = "INVALID_DELTA"


class SameWarehouse(ValidationError):
    code = "SAME_WAREHOUSE_TRANSFER"


class UnknownMethod(ValidationError):
    code = "UNKNOWN_COSTING_METHOD"


# ─── Domain ──────────────────────────────────────────────────────────────────


class DomainError(InventoryError):
    code = "DOMAIN_ERROR"
    kind = "domain"


class InsufficientStock(DomainError):
    code = "INSUFFICIENT_STOCK"


class InsufficientAvailable(DomainError):
    code = "INSUFFICIENT_AVAILABLE_STOCK"


class AlreadyTerminal(DomainError):
    code = "ALREADY_TERMINAL"


# ─── Lookup ──────────────────────────────────────────────────────────────────


class NotFound(InventoryError):
    code = "NOT_FOUND"
    kind = "not_found"


class UnknownRow(NotFound):
    code = "INVENTORY_ROW_NOT_FOUND"


# ─── Consistency ─────────────────────────────────────────────────────────────


class ConsistencyError(InventoryError):
    code = "CONSISTENCY_ERROR"
    kind = "consistency"


class InsufficientLayers(ConsistencyError):
    code = "INSUFFICIENT_COST_LAYERS"


# ─── Concurrency ─────────────────────────────────────────────────────────────


class ConcurrencyConflict(InventoryError):
    code = "CONCURRENT_UPDATE_ERROR"
    kind = "concurrency"
    retryable = True


# ─── Integration ─────────────────────────────────────────────────────────────


class IntegrationError(InventoryError):
    code = "INTEGRATION_ERROR"
    kind = "integration"


class StoreError(IntegrationError):
    code = "STORE_ERROR"
    retryable = True


class PushSendError(IntegrationError):
    code = "PUSH_SEND_ERROR"
    retryable = True
