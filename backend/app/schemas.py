from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Optional, List
from datetime import datetime

from backend.app.core.constants import MAX_CART_SESSION_ID_LENGTH, MAX_SERIALS_PER_REQUEST


# --- Остатки (stock ledger) ---
class StockLineCreate(BaseModel):
    variant_id: int = Field(gt=0)
    total_quantity: int = Field(default=0, ge=0)
    sku: Optional[str] = Field(default=None, max_length=100)


class StockAdjust(BaseModel):
    delta: int
    reason: str = Field(min_length=1, max_length=255)

    @field_validator("delta")
    @classmethod
    def non_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("delta must not be 0")
        return v


class SerialNumbersRegister(BaseModel):
    serial_numbers: List[str] = Field(min_length=1, max_length=MAX_SERIALS_PER_REQUEST)


class SerialNumberResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    serial_number: str
    variant_id: int
    status: str
    reservation_id: Optional[str] = None


class StockLineResponse(BaseModel):
    variant_id: int
    sku: Optional[str] = None
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    sold_quantity: int
    is_serialized: bool = False


class InventoryAvailabilityResponse(BaseModel):
    variant_id: int
    sku: Optional[str] = None
    total_quantity: int
    available_quantity: int
    reserved_quantity: int
    sold_quantity: int
    # Units held by the caller's own cart session
    reserved_by_current_session: int = 0


class VariantReservationStats(BaseModel):
    variant_id: int
    active_reservations: int
    reserved_units: int


class ReservationStatsResponse(BaseModel):
    active_reservations: int
    reserved_units: int
    variants: List[VariantReservationStats] = []


# --- Резервирование (cart reservations) ---
class CartReservationRequest(BaseModel):
    variant_id: int = Field(gt=0)
    quantity: int = Field(gt=0)
    cart_session_id: str = Field(min_length=1, max_length=MAX_CART_SESSION_ID_LENGTH)
    ttl_seconds: Optional[int] = Field(default=None, gt=0)
    # Optional: specific units to hold; otherwise the service picks them
    serial_numbers: Optional[List[str]] = None


class ReservationExtend(BaseModel):
    ttl_seconds: Optional[int] = Field(default=None, gt=0)


class ReservationCommit(BaseModel):
    quantity: Optional[int] = Field(default=None, gt=0)


class CartReservationResponse(BaseModel):
    reservation_id: Optional[str] = None
    variant_id: int
    quantity: int
    serial_numbers: List[str] = []
    cart_session_id: str
    reserved_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    success: bool
    message: str


class ReservationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    variant_id: int
    cart_session_id: str
    quantity: int
    status: str
    serial_numbers: List[str] = []
    created_at: datetime
    expires_at: datetime
    committed_at: Optional[datetime] = None
    committed_quantity: Optional[int] = None
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None


class SessionReleaseResponse(BaseModel):
    cart_session_id: str
    released_quantity: int


class SweepResponse(BaseModel):
    expired: int
