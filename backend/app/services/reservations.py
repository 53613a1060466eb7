"""Cart reservations: time-bounded holds on variant stock.

Every mutation follows the same shape: find the variant, enter
variant_transaction (per-variant lock + commit/rollback), lock the stock line
row and only then the reservation row, re-read the reservation inside the
lock and decide from that fresh state. Because the
expiry sweeper goes through the same path, commit/extend and expiry on one
reservation are mutually exclusive: whichever takes the lock first wins and
the other sees the final status.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.clock import utcnow
from backend.app.core.constants import (
    CHANGE_EXPIRED,
    CHANGE_RELEASED,
    CHANGE_RESERVED,
    CHANGE_SOLD,
    MAX_CART_SESSION_ID_LENGTH,
    RELEASE_CART_REMOVAL,
    RELEASE_EXPIRED,
    RELEASE_PARTIAL_COMMIT,
    RESERVATION_ACTIVE,
    RESERVATION_COMMITTED,
    RESERVATION_EXPIRED,
    RESERVATION_RELEASED,
    SERIAL_AVAILABLE,
    SERIAL_RESERVED,
    SERIAL_SOLD,
)
from backend.app.core.exceptions import (
    InsufficientStockError,
    InvalidRequestError,
    PartialMismatchError,
    ReservationExpiredError,
    ReservationNotFoundError,
)
from backend.app.core.locks import VariantLockRegistry, get_variant_locks
from backend.app.core.logging import get_logger
from backend.app.core.metrics import (
    reservations_committed_total,
    reservations_created_total,
    reservations_rejected_total,
    reservations_released_total,
)
from backend.app.core.settings import get_settings
from backend.app.models.reservation import Reservation
from backend.app.models.stock import SerialNumber, StockLine
from backend.app.services.events import InventoryEventBus, InventoryUpdateEvent, get_event_bus
from backend.app.services.stock import StockLedger, check_invariants, variant_transaction

logger = get_logger(__name__)


class ReservationService:
    def __init__(
        self,
        session: AsyncSession,
        locks: Optional[VariantLockRegistry] = None,
        events: Optional[InventoryEventBus] = None,
        default_ttl_seconds: Optional[int] = None,
        max_ttl_seconds: Optional[int] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session = session
        self.locks = locks or get_variant_locks()
        self.events = events or get_event_bus()
        self.ledger = StockLedger(session, locks=self.locks, events=self.events)
        if default_ttl_seconds is None or max_ttl_seconds is None:
            settings = get_settings()
            default_ttl_seconds = default_ttl_seconds or settings.RESERVATION_TTL_SECONDS
            max_ttl_seconds = max_ttl_seconds or settings.MAX_RESERVATION_TTL_SECONDS
        self.default_ttl_seconds = default_ttl_seconds
        self.max_ttl_seconds = max_ttl_seconds
        self.clock = clock

    # --- Helpers ---

    def _ttl(self, ttl_seconds: Optional[int]) -> timedelta:
        if ttl_seconds is None:
            return timedelta(seconds=self.default_ttl_seconds)
        if ttl_seconds <= 0:
            raise InvalidRequestError("ttl_seconds must be positive")
        if ttl_seconds > self.max_ttl_seconds:
            raise InvalidRequestError(f"ttl_seconds must not exceed {self.max_ttl_seconds}")
        return timedelta(seconds=ttl_seconds)

    async def _variant_of(self, reservation_id: str) -> int:
        result = await self.session.execute(
            select(Reservation.variant_id).where(Reservation.id == reservation_id)
        )
        variant_id = result.scalar_one_or_none()
        if variant_id is None:
            raise ReservationNotFoundError(reservation_id)
        return variant_id

    async def _lock_reservation(self, reservation_id: str) -> Reservation:
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    async def _pick_units(
        self,
        variant_id: int,
        quantity: int,
        serial_numbers: Optional[Sequence[str]],
    ) -> List[SerialNumber]:
        """Select concrete available units: the named ones, or the first `quantity` by serial."""
        query = select(SerialNumber).where(SerialNumber.variant_id == variant_id)
        if serial_numbers:
            result = await self.session.execute(
                query.where(SerialNumber.serial_number.in_(serial_numbers)).with_for_update()
            )
            units = list(result.scalars().all())
            unknown = sorted(set(serial_numbers) - {u.serial_number for u in units})
            if unknown:
                raise InvalidRequestError(
                    f"Serial numbers not registered for variant {variant_id}: {', '.join(unknown)}"
                )
            free = [u for u in units if u.status == SERIAL_AVAILABLE]
            if len(free) < quantity:
                raise InsufficientStockError(variant_id, quantity, len(free))
            return sorted(free, key=lambda u: u.serial_number)

        result = await self.session.execute(
            query.where(SerialNumber.status == SERIAL_AVAILABLE)
            .order_by(SerialNumber.serial_number)
            .limit(quantity)
            .with_for_update()
        )
        units = list(result.scalars().all())
        if len(units) < quantity:
            # Counters said yes but the units are not there: refuse rather than oversell
            logger.error(
                "Serial units out of sync with stock line",
                variant_id=variant_id,
                requested=quantity,
                found=len(units),
            )
            raise InsufficientStockError(variant_id, quantity, len(units))
        return units

    def _free_units(self, reservation: Reservation, count: int) -> None:
        """Return the last `count` bound units of a reservation to the available pool."""
        if count <= 0 or not reservation.serial_units:
            return
        for unit in list(reservation.serial_units)[-count:]:
            unit.status = SERIAL_AVAILABLE
            reservation.serial_units.remove(unit)

    def _release_locked(
        self,
        line: StockLine,
        reservation: Reservation,
        reason: str,
        final_status: str,
        now: datetime,
    ) -> InventoryUpdateEvent:
        previous_available = line.available_quantity
        line.reserved_quantity -= reservation.quantity
        check_invariants(line)
        self._free_units(reservation, reservation.quantity)
        reservation.status = final_status
        reservation.released_at = now
        reservation.release_reason = reason
        return InventoryUpdateEvent(
            variant_id=line.variant_id,
            change_type=CHANGE_EXPIRED if final_status == RESERVATION_EXPIRED else CHANGE_RELEASED,
            previous_available=previous_available,
            new_available=line.available_quantity,
            quantity=reservation.quantity,
            reservation_id=reservation.id,
            cart_session_id=reservation.cart_session_id,
            reason=reason,
            occurred_at=now,
        )

    # --- Reads ---

    async def get(self, reservation_id: str) -> Reservation:
        result = await self.session.execute(
            select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        reservation = result.scalar_one_or_none()
        if reservation is None:
            raise ReservationNotFoundError(reservation_id)
        return reservation

    async def list_for_session(self, cart_session_id: str, active_only: bool = True) -> List[Reservation]:
        query = select(Reservation).where(Reservation.cart_session_id == cart_session_id)
        if active_only:
            query = query.where(Reservation.status == RESERVATION_ACTIVE)
        result = await self.session.execute(
            query.order_by(Reservation.created_at, Reservation.id).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def find_expired(self, now: Optional[datetime] = None, limit: int = 500) -> List[str]:
        """Ids of active reservations whose hold ran out, oldest expiry first."""
        now = now or self.clock()
        result = await self.session.execute(
            select(Reservation.id)
            .where(
                Reservation.status == RESERVATION_ACTIVE,
                Reservation.expires_at <= now,
            )
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    # --- Mutations ---

    async def reserve(
        self,
        variant_id: int,
        quantity: int,
        cart_session_id: str,
        ttl_seconds: Optional[int] = None,
        serial_numbers: Optional[Sequence[str]] = None,
    ) -> Reservation:
        """
        Hold `quantity` units of a variant for a cart session.

        All or nothing: either the full quantity is reserved or
        InsufficientStockError is raised and no counter changes.
        """
        if quantity < 1:
            raise InvalidRequestError("Quantity must be >= 1")
        if not cart_session_id or len(cart_session_id) > MAX_CART_SESSION_ID_LENGTH:
            raise InvalidRequestError(
                f"cart_session_id is required and must be at most {MAX_CART_SESSION_ID_LENGTH} characters"
            )
        ttl = self._ttl(ttl_seconds)
        if serial_numbers:
            if len(set(serial_numbers)) != len(serial_numbers):
                raise InvalidRequestError("Duplicate serial numbers in request")
            if len(serial_numbers) != quantity:
                raise InvalidRequestError("Number of serial numbers must equal quantity")

        try:
            async with variant_transaction(self.session, self.locks, variant_id):
                line = await self.ledger.lock_stock_line(variant_id)
                available = line.available_quantity
                if quantity > available:
                    raise InsufficientStockError(variant_id, quantity, available)
                if serial_numbers and not line.is_serialized:
                    raise InvalidRequestError(f"Variant {variant_id} is not tracked by serial number")

                now = self.clock()
                reservation = Reservation(
                    id=str(uuid4()),
                    variant_id=variant_id,
                    cart_session_id=cart_session_id,
                    quantity=quantity,
                    status=RESERVATION_ACTIVE,
                    created_at=now,
                    expires_at=now + ttl,
                    # Counted variants bind no units; an unset collection would lazy-load after commit
                    serial_units=[],
                )
                if line.is_serialized:
                    for unit in await self._pick_units(variant_id, quantity, serial_numbers):
                        unit.status = SERIAL_RESERVED
                        reservation.serial_units.append(unit)
                line.reserved_quantity += quantity
                check_invariants(line)
                self.session.add(reservation)
                event = InventoryUpdateEvent(
                    variant_id=variant_id,
                    change_type=CHANGE_RESERVED,
                    previous_available=available,
                    new_available=line.available_quantity,
                    quantity=quantity,
                    reservation_id=reservation.id,
                    cart_session_id=cart_session_id,
                    occurred_at=now,
                )
        except InsufficientStockError as e:
            reservations_rejected_total.labels(reason="insufficient_stock").inc()
            logger.info(
                "Reservation rejected",
                variant_id=variant_id,
                requested=quantity,
                available=e.available,
                cart_session_id=cart_session_id,
            )
            raise

        reservations_created_total.inc()
        logger.info(
            "Stock reserved",
            reservation_id=reservation.id,
            variant_id=variant_id,
            quantity=quantity,
            cart_session_id=cart_session_id,
            expires_at=reservation.expires_at.isoformat(),
        )
        await self.events.publish(event)
        return reservation

    async def extend(self, reservation_id: str, ttl_seconds: Optional[int] = None) -> Reservation:
        """Push expires_at to now + ttl. Only live (active, unexpired) holds can be extended."""
        ttl = self._ttl(ttl_seconds)
        variant_id = await self._variant_of(reservation_id)
        async with variant_transaction(self.session, self.locks, variant_id):
            await self.ledger.lock_stock_line(variant_id)
            reservation = await self._lock_reservation(reservation_id)
            now = self.clock()
            if reservation.status == RESERVATION_EXPIRED:
                raise ReservationExpiredError(reservation_id)
            if reservation.status != RESERVATION_ACTIVE:
                raise ReservationNotFoundError(reservation_id, f"reservation is {reservation.status}")
            if reservation.is_expired(now):
                raise ReservationExpiredError(reservation_id)
            reservation.expires_at = now + ttl

        logger.info(
            "Reservation extended",
            reservation_id=reservation_id,
            expires_at=reservation.expires_at.isoformat(),
        )
        return reservation

    async def release(self, reservation_id: str, reason: str = RELEASE_CART_REMOVAL) -> Reservation:
        """
        Give the units back. Idempotent: a reservation that is already released,
        expired or committed is returned unchanged. Holds past their expiry that
        the sweeper has not reached yet are released normally.
        """
        variant_id = await self._variant_of(reservation_id)
        event = None
        async with variant_transaction(self.session, self.locks, variant_id):
            line = await self.ledger.lock_stock_line(variant_id)
            reservation = await self._lock_reservation(reservation_id)
            if reservation.status == RESERVATION_ACTIVE:
                event = self._release_locked(line, reservation, reason, RESERVATION_RELEASED, self.clock())

        if event is None:
            logger.info("Release skipped", reservation_id=reservation_id, status=reservation.status)
            return reservation
        reservations_released_total.labels(reason=reason).inc()
        logger.info(
            "Reservation released",
            reservation_id=reservation_id,
            variant_id=variant_id,
            quantity=reservation.quantity,
            reason=reason,
        )
        await self.events.publish(event)
        return reservation

    async def release_session(
        self,
        cart_session_id: str,
        variant_id: Optional[int] = None,
        quantity: Optional[int] = None,
        reason: str = RELEASE_CART_REMOVAL,
    ) -> int:
        """
        Release a cart session's holds, optionally only for one variant and
        only `quantity` units of it (newest holds shrink first). Returns the
        number of units released.
        """
        if quantity is not None:
            if variant_id is None:
                raise InvalidRequestError("variant_id is required when releasing a quantity")
            if quantity < 1:
                raise InvalidRequestError("Quantity must be >= 1")

        reservations = await self.list_for_session(cart_session_id)
        by_variant: Dict[int, List[str]] = {}
        for reservation in reservations:
            if variant_id is None or reservation.variant_id == variant_id:
                by_variant.setdefault(reservation.variant_id, []).append(reservation.id)

        released_units = 0
        for vid, reservation_ids in by_variant.items():
            remaining = quantity
            events: List[InventoryUpdateEvent] = []
            async with variant_transaction(self.session, self.locks, vid):
                line = await self.ledger.lock_stock_line(vid)
                now = self.clock()
                for rid in reversed(reservation_ids):
                    if remaining is not None and remaining <= 0:
                        break
                    reservation = await self._lock_reservation(rid)
                    if reservation.status != RESERVATION_ACTIVE:
                        continue
                    if remaining is None or remaining >= reservation.quantity:
                        released = reservation.quantity
                        events.append(self._release_locked(line, reservation, reason, RESERVATION_RELEASED, now))
                    else:
                        released = remaining
                        previous_available = line.available_quantity
                        reservation.quantity -= released
                        line.reserved_quantity -= released
                        check_invariants(line)
                        self._free_units(reservation, released)
                        events.append(InventoryUpdateEvent(
                            variant_id=vid,
                            change_type=CHANGE_RELEASED,
                            previous_available=previous_available,
                            new_available=line.available_quantity,
                            quantity=released,
                            reservation_id=reservation.id,
                            cart_session_id=cart_session_id,
                            reason=reason,
                            occurred_at=now,
                        ))
                    released_units += released
                    if remaining is not None:
                        remaining -= released

            for event in events:
                reservations_released_total.labels(reason=reason).inc()
                await self.events.publish(event)

        logger.info(
            "Cart session released",
            cart_session_id=cart_session_id,
            variant_id=variant_id,
            units=released_units,
        )
        return released_units

    async def commit(self, reservation_id: str, quantity: Optional[int] = None) -> Reservation:
        """
        Convert a hold into a sale (called by checkout on successful payment).

        Committing fewer units than held sells those and returns the rest to
        available stock. Retrying a commit that already went through with the
        same quantity returns the committed reservation.
        """
        if quantity is not None and quantity < 1:
            raise InvalidRequestError("Quantity must be >= 1")
        variant_id = await self._variant_of(reservation_id)
        events: List[InventoryUpdateEvent] = []
        async with variant_transaction(self.session, self.locks, variant_id):
            line = await self.ledger.lock_stock_line(variant_id)
            reservation = await self._lock_reservation(reservation_id)
            now = self.clock()
            if reservation.status == RESERVATION_COMMITTED:
                if quantity is not None and quantity != reservation.committed_quantity:
                    raise PartialMismatchError(reservation_id, quantity, reservation.committed_quantity or 0)
                return reservation
            if reservation.status == RESERVATION_EXPIRED:
                raise ReservationExpiredError(reservation_id)
            if reservation.status != RESERVATION_ACTIVE:
                raise ReservationNotFoundError(reservation_id, f"reservation is {reservation.status}")
            if reservation.is_expired(now):
                raise ReservationExpiredError(reservation_id)

            sold = reservation.quantity if quantity is None else quantity
            if sold > reservation.quantity:
                raise PartialMismatchError(reservation_id, sold, reservation.quantity)
            remainder = reservation.quantity - sold

            previous_available = line.available_quantity
            self._free_units(reservation, remainder)
            for unit in reservation.serial_units:
                unit.status = SERIAL_SOLD
            line.reserved_quantity -= reservation.quantity
            self.ledger.commit_sale(line, sold)
            reservation.status = RESERVATION_COMMITTED
            reservation.committed_at = now
            reservation.committed_quantity = sold

            events.append(InventoryUpdateEvent(
                variant_id=variant_id,
                change_type=CHANGE_SOLD,
                previous_available=previous_available,
                new_available=previous_available,
                quantity=sold,
                reservation_id=reservation_id,
                cart_session_id=reservation.cart_session_id,
                occurred_at=now,
            ))
            if remainder:
                events.append(InventoryUpdateEvent(
                    variant_id=variant_id,
                    change_type=CHANGE_RELEASED,
                    previous_available=previous_available,
                    new_available=line.available_quantity,
                    quantity=remainder,
                    reservation_id=reservation_id,
                    cart_session_id=reservation.cart_session_id,
                    reason=RELEASE_PARTIAL_COMMIT,
                    occurred_at=now,
                ))

        reservations_committed_total.inc()
        if remainder:
            reservations_released_total.labels(reason=RELEASE_PARTIAL_COMMIT).inc()
        logger.info(
            "Reservation committed",
            reservation_id=reservation_id,
            variant_id=variant_id,
            sold=sold,
            returned=remainder,
        )
        for event in events:
            await self.events.publish(event)
        return reservation

    async def expire(self, reservation_id: str, now: Optional[datetime] = None) -> bool:
        """
        Expire one reservation if it is still active and past expires_at.
        Returns False when a concurrent commit/extend/release got there first.
        """
        variant_id = await self._variant_of(reservation_id)
        event = None
        async with variant_transaction(self.session, self.locks, variant_id):
            line = await self.ledger.lock_stock_line(variant_id)
            reservation = await self._lock_reservation(reservation_id)
            now = now or self.clock()
            if reservation.status == RESERVATION_ACTIVE and reservation.is_expired(now):
                event = self._release_locked(line, reservation, RELEASE_EXPIRED, RESERVATION_EXPIRED, now)

        if event is None:
            return False
        reservations_released_total.labels(reason=RELEASE_EXPIRED).inc()
        logger.info(
            "Reservation expired",
            reservation_id=reservation_id,
            variant_id=variant_id,
            quantity=reservation.quantity,
            expired_at=reservation.expires_at.isoformat(),
        )
        await self.events.publish(event)
        return True
