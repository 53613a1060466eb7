from fastapi import APIRouter, Depends, HTTPException
from typing import List, Optional

from backend.app.api.deps import get_stock_ledger
from backend.app.core.exceptions import ServiceError
from backend.app.core.logging import get_logger
from backend.app.models.stock import StockLine
from backend.app.schemas import (
    InventoryAvailabilityResponse,
    ReservationStatsResponse,
    SerialNumberResponse,
    SerialNumbersRegister,
    StockAdjust,
    StockLineCreate,
    StockLineResponse,
)
from backend.app.services.stock import StockLedger

router = APIRouter()
logger = get_logger(__name__)


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.message)


def _stock_line_out(line: StockLine) -> StockLineResponse:
    return StockLineResponse(
        variant_id=line.variant_id,
        sku=line.sku,
        total_quantity=line.total_quantity,
        available_quantity=line.available_quantity,
        reserved_quantity=line.reserved_quantity,
        sold_quantity=line.sold_quantity,
        is_serialized=line.is_serialized,
    )


@router.get("/stats", response_model=ReservationStatsResponse)
async def get_reservation_stats(ledger: StockLedger = Depends(get_stock_ledger)):
    """Active holds and reserved units, for monitoring. Declared before /{variant_id}."""
    return await ledger.reservation_stats()


@router.get("/{variant_id}", response_model=InventoryAvailabilityResponse)
async def get_availability(
    variant_id: int,
    cart_session_id: Optional[str] = None,
    ledger: StockLedger = Depends(get_stock_ledger),
):
    """Real-time availability of a variant; pass cart_session_id to see your own holds."""
    try:
        return await ledger.availability(variant_id, cart_session_id=cart_session_id)
    except ServiceError as e:
        _handle_service_error(e)


@router.post("", response_model=StockLineResponse, status_code=201)
async def create_stock_line(
    data: StockLineCreate,
    ledger: StockLedger = Depends(get_stock_ledger),
):
    try:
        line = await ledger.create_stock_line(data.variant_id, data.total_quantity, sku=data.sku)
    except ServiceError as e:
        _handle_service_error(e)
    return _stock_line_out(line)


@router.post("/{variant_id}/adjust", response_model=StockLineResponse)
async def adjust_stock(
    variant_id: int,
    data: StockAdjust,
    ledger: StockLedger = Depends(get_stock_ledger),
):
    """Receive (delta > 0) or write off (delta < 0) units."""
    try:
        line = await ledger.adjust_total(variant_id, data.delta, data.reason)
    except ServiceError as e:
        _handle_service_error(e)
    return _stock_line_out(line)


@router.post("/{variant_id}/serials", response_model=List[SerialNumberResponse], status_code=201)
async def register_serials(
    variant_id: int,
    data: SerialNumbersRegister,
    ledger: StockLedger = Depends(get_stock_ledger),
):
    try:
        return await ledger.register_serials(variant_id, data.serial_numbers)
    except ServiceError as e:
        _handle_service_error(e)


@router.get("/{variant_id}/serials", response_model=List[SerialNumberResponse])
async def list_serials(
    variant_id: int,
    status: Optional[str] = None,
    ledger: StockLedger = Depends(get_stock_ledger),
):
    try:
        return await ledger.list_serials(variant_id, status=status)
    except ServiceError as e:
        _handle_service_error(e)
