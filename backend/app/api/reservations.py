from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from typing import List, Optional

from backend.app.api.deps import get_reservation_service
from backend.app.core.exceptions import InsufficientStockError, ServiceError
from backend.app.core.logging import bind_log_context, get_logger
from backend.app.models.reservation import Reservation
from backend.app.schemas import (
    CartReservationRequest,
    CartReservationResponse,
    ReservationCommit,
    ReservationExtend,
    ReservationResponse,
    SessionReleaseResponse,
)
from backend.app.services.reservations import ReservationService

router = APIRouter()
logger = get_logger(__name__)


def _handle_service_error(e: ServiceError):
    """Convert service exceptions to HTTP exceptions."""
    raise HTTPException(status_code=e.status_code, detail=e.message)


def _reservation_out(reservation: Reservation) -> ReservationResponse:
    return ReservationResponse.model_validate(reservation)


@router.post("", response_model=CartReservationResponse, status_code=201)
async def reserve_for_cart(
    data: CartReservationRequest,
    service: ReservationService = Depends(get_reservation_service),
):
    """Hold stock for a cart. On failure the body says why (success=false)."""
    bind_log_context(cart_session_id=data.cart_session_id, variant_id=data.variant_id)
    try:
        reservation = await service.reserve(
            variant_id=data.variant_id,
            quantity=data.quantity,
            cart_session_id=data.cart_session_id,
            ttl_seconds=data.ttl_seconds,
            serial_numbers=data.serial_numbers,
        )
    except InsufficientStockError as e:
        body = CartReservationResponse(
            variant_id=data.variant_id,
            quantity=0,
            cart_session_id=data.cart_session_id,
            success=False,
            message=e.message,
        )
        return JSONResponse(status_code=e.status_code, content=body.model_dump(mode="json"))
    except ServiceError as e:
        _handle_service_error(e)

    return CartReservationResponse(
        reservation_id=reservation.id,
        variant_id=reservation.variant_id,
        quantity=reservation.quantity,
        serial_numbers=reservation.serial_numbers,
        cart_session_id=reservation.cart_session_id,
        reserved_at=reservation.created_at,
        expires_at=reservation.expires_at,
        success=True,
        message="Reserved",
    )


@router.get("/session/{cart_session_id}", response_model=List[ReservationResponse])
async def list_session_reservations(
    cart_session_id: str,
    active_only: bool = True,
    service: ReservationService = Depends(get_reservation_service),
):
    reservations = await service.list_for_session(cart_session_id, active_only=active_only)
    return [_reservation_out(r) for r in reservations]


@router.delete("/session/{cart_session_id}", response_model=SessionReleaseResponse)
async def release_session(
    cart_session_id: str,
    variant_id: Optional[int] = None,
    quantity: Optional[int] = Query(default=None, gt=0),
    service: ReservationService = Depends(get_reservation_service),
):
    """Release every hold of a cart (or `quantity` units of one variant)."""
    bind_log_context(cart_session_id=cart_session_id, variant_id=variant_id)
    try:
        released = await service.release_session(cart_session_id, variant_id=variant_id, quantity=quantity)
    except ServiceError as e:
        _handle_service_error(e)
    return SessionReleaseResponse(cart_session_id=cart_session_id, released_quantity=released)


@router.get("/{reservation_id}", response_model=ReservationResponse)
async def get_reservation(
    reservation_id: str,
    service: ReservationService = Depends(get_reservation_service),
):
    try:
        reservation = await service.get(reservation_id)
    except ServiceError as e:
        _handle_service_error(e)
    return _reservation_out(reservation)


@router.post("/{reservation_id}/extend", response_model=ReservationResponse)
async def extend_reservation(
    reservation_id: str,
    data: Optional[ReservationExtend] = None,
    service: ReservationService = Depends(get_reservation_service),
):
    ttl_seconds = data.ttl_seconds if data else None
    try:
        reservation = await service.extend(reservation_id, ttl_seconds=ttl_seconds)
    except ServiceError as e:
        _handle_service_error(e)
    return _reservation_out(reservation)


@router.post("/{reservation_id}/commit", response_model=ReservationResponse)
async def commit_reservation(
    reservation_id: str,
    data: Optional[ReservationCommit] = None,
    service: ReservationService = Depends(get_reservation_service),
):
    """Called by checkout once payment succeeded."""
    bind_log_context(reservation_id=reservation_id)
    quantity = data.quantity if data else None
    try:
        reservation = await service.commit(reservation_id, quantity=quantity)
    except ServiceError as e:
        logger.warning("Commit refused", reservation_id=reservation_id, error=e.message)
        _handle_service_error(e)
    return _reservation_out(reservation)


@router.delete("/{reservation_id}", response_model=ReservationResponse)
async def release_reservation(
    reservation_id: str,
    service: ReservationService = Depends(get_reservation_service),
):
    """Remove from cart / cancel. Safe to repeat."""
    bind_log_context(reservation_id=reservation_id)
    try:
        reservation = await service.release(reservation_id)
    except ServiceError as e:
        _handle_service_error(e)
    return _reservation_out(reservation)
