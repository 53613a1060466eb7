"""
Unified base exception classes for all services.

Inventory errors extend ServiceError so routers can translate any of them
into an HTTP response through `status_code` without knowing the concrete type.
"""
from typing import Optional


class ServiceError(Exception):
    """Base exception for all service-layer errors."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(self.message)


class InventoryError(ServiceError):
    """Base exception for stock ledger and reservation errors."""


class InvalidRequestError(InventoryError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class NotFoundError(InventoryError):
    def __init__(self, message: str):
        super().__init__(message, 404)


class VariantNotFoundError(NotFoundError):
    def __init__(self, variant_id: int):
        self.variant_id = variant_id
        super().__init__(f"Stock line for variant {variant_id} not found")


class ReservationNotFoundError(NotFoundError):
    def __init__(self, reservation_id: str, detail: Optional[str] = None):
        self.reservation_id = reservation_id
        message = f"Reservation {reservation_id} not found"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InsufficientStockError(InventoryError):
    """Requested quantity exceeds what is available. Recoverable: the caller may retry with less."""

    def __init__(self, variant_id: int, requested: int, available: int):
        self.variant_id = variant_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for variant {variant_id}: requested {requested}, available {available}",
            409,
        )


class ReservationExpiredError(InventoryError):
    """Operation attempted after the hold ran out. Recoverable by reserving again."""

    def __init__(self, reservation_id: str):
        self.reservation_id = reservation_id
        super().__init__(f"Reservation {reservation_id} has expired", 410)


class PartialMismatchError(InventoryError):
    """Commit quantity is inconsistent with the hold; needs manual reconciliation."""

    def __init__(self, reservation_id: str, requested: int, reserved: int):
        self.reservation_id = reservation_id
        self.requested = requested
        self.reserved = reserved
        super().__init__(
            f"Cannot commit {requested} units for reservation {reservation_id}: only {reserved} reserved",
            422,
        )


class LockTimeoutError(InventoryError):
    def __init__(self, variant_id: int, timeout: float):
        self.variant_id = variant_id
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout}s waiting for variant {variant_id}", 503)
