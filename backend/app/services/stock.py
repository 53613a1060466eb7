"""Stock ledger: per-variant counters (total, reserved, sold) and serialized units."""
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

from sqlalchemy import func, select, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.constants import (
    CHANGE_ADJUSTED,
    LOCK_NOT_AVAILABLE_SQLSTATE,
    MAX_SERIALS_PER_REQUEST,
    RESERVATION_ACTIVE,
    SERIAL_AVAILABLE,
)
from backend.app.core.exceptions import (
    InvalidRequestError,
    InventoryError,
    LockTimeoutError,
    VariantNotFoundError,
)
from backend.app.core.locks import VariantLockRegistry, get_variant_locks
from backend.app.core.logging import get_logger
from backend.app.core.metrics import variant_lock_timeouts_total
from backend.app.models.reservation import Reservation
from backend.app.models.stock import SerialNumber, StockLine
from backend.app.services.events import InventoryEventBus, InventoryUpdateEvent, get_event_bus

logger = get_logger(__name__)


@asynccontextmanager
async def variant_transaction(
    session: AsyncSession,
    locks: VariantLockRegistry,
    variant_id: int,
) -> AsyncIterator[None]:
    """
    Critical section for one variant: lock, mutate, commit.

    The lock is taken before any row is touched and released only after the
    commit or rollback finished. Any exception raised inside the block,
    cancellation included, rolls the whole transaction back, so a caller that
    gives up half way never leaves partial state behind.
    """
    async with locks.hold(variant_id):
        try:
            await _bound_row_lock_wait(session, locks.timeout)
            yield
            await session.commit()
        except DBAPIError as e:
            await session.rollback()
            if not is_lock_not_available(e):
                raise
            variant_lock_timeouts_total.inc()
            logger.warning("Row lock timeout", variant_id=variant_id, timeout=locks.timeout)
            raise LockTimeoutError(variant_id, locks.timeout) from e
        except BaseException:
            await session.rollback()
            raise


async def _bound_row_lock_wait(session: AsyncSession, timeout: float) -> None:
    # Another worker process may hold the row; PostgreSQL would otherwise wait forever
    if session.get_bind().dialect.name == "postgresql":
        await session.execute(text(f"SET LOCAL lock_timeout = '{max(1, int(timeout * 1000))}ms'"))


def is_lock_not_available(error: DBAPIError) -> bool:
    """True for PostgreSQL's lock_not_available (SQLSTATE 55P03)."""
    orig = error.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    return code == LOCK_NOT_AVAILABLE_SQLSTATE


def check_invariants(line: StockLine) -> None:
    """Refuse to persist counters that break 0 <= reserved + sold <= total."""
    if line.reserved_quantity < 0 or line.sold_quantity < 0:
        raise InventoryError(
            f"Stock ledger for variant {line.variant_id} would go negative "
            f"(reserved={line.reserved_quantity}, sold={line.sold_quantity})",
            500,
        )
    if line.reserved_quantity + line.sold_quantity > line.total_quantity:
        raise InventoryError(
            f"Stock ledger for variant {line.variant_id} would exceed total "
            f"(total={line.total_quantity}, reserved={line.reserved_quantity}, sold={line.sold_quantity})",
            500,
        )


class StockLedger:
    def __init__(
        self,
        session: AsyncSession,
        locks: Optional[VariantLockRegistry] = None,
        events: Optional[InventoryEventBus] = None,
    ):
        self.session = session
        self.locks = locks or get_variant_locks()
        self.events = events or get_event_bus()

    # --- Reads ---

    async def get_stock_line(self, variant_id: int) -> StockLine:
        # populate_existing: never answer from a stale identity-map copy
        result = await self.session.execute(
            select(StockLine)
            .where(StockLine.variant_id == variant_id)
            .execution_options(populate_existing=True)
        )
        line = result.scalar_one_or_none()
        if line is None:
            raise VariantNotFoundError(variant_id)
        return line

    async def lock_stock_line(self, variant_id: int) -> StockLine:
        """Load the stock line with a row lock. Call only inside variant_transaction."""
        result = await self.session.execute(
            select(StockLine)
            .where(StockLine.variant_id == variant_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        line = result.scalar_one_or_none()
        if line is None:
            raise VariantNotFoundError(variant_id)
        return line

    async def availability(self, variant_id: int, cart_session_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Current counters for a variant.

        reserved_by_current_session is the number of units held by the given
        cart session's active reservations (0 when no session is given).
        """
        line = await self.get_stock_line(variant_id)
        reserved_by_session = 0
        if cart_session_id:
            result = await self.session.execute(
                select(func.coalesce(func.sum(Reservation.quantity), 0)).where(
                    Reservation.variant_id == variant_id,
                    Reservation.cart_session_id == cart_session_id,
                    Reservation.status == RESERVATION_ACTIVE,
                )
            )
            reserved_by_session = int(result.scalar_one())
        return {
            "variant_id": line.variant_id,
            "sku": line.sku,
            "total_quantity": line.total_quantity,
            "available_quantity": line.available_quantity,
            "reserved_quantity": line.reserved_quantity,
            "sold_quantity": line.sold_quantity,
            "reserved_by_current_session": reserved_by_session,
        }

    async def reservation_stats(self) -> Dict[str, Any]:
        """Active holds and the units they keep out of stock, per variant and overall."""
        result = await self.session.execute(
            select(
                Reservation.variant_id,
                func.count(Reservation.id),
                func.coalesce(func.sum(Reservation.quantity), 0),
            )
            .where(Reservation.status == RESERVATION_ACTIVE)
            .group_by(Reservation.variant_id)
            .order_by(Reservation.variant_id)
        )
        variants = [
            {"variant_id": variant_id, "active_reservations": int(count), "reserved_units": int(units)}
            for variant_id, count, units in result.all()
        ]
        return {
            "active_reservations": sum(v["active_reservations"] for v in variants),
            "reserved_units": sum(v["reserved_units"] for v in variants),
            "variants": variants,
        }

    async def list_serials(self, variant_id: int, status: Optional[str] = None) -> List[SerialNumber]:
        await self.get_stock_line(variant_id)
        query = select(SerialNumber).where(SerialNumber.variant_id == variant_id)
        if status:
            query = query.where(SerialNumber.status == status)
        result = await self.session.execute(query.order_by(SerialNumber.serial_number))
        return list(result.scalars().all())

    # --- Writers of total / sold ---

    async def create_stock_line(
        self,
        variant_id: int,
        total_quantity: int = 0,
        sku: Optional[str] = None,
    ) -> StockLine:
        if total_quantity < 0:
            raise InvalidRequestError("total_quantity must be >= 0")
        async with variant_transaction(self.session, self.locks, variant_id):
            existing = await self.session.get(StockLine, variant_id)
            if existing is not None:
                raise InvalidRequestError(f"Stock line for variant {variant_id} already exists")
            line = StockLine(
                variant_id=variant_id,
                sku=sku,
                total_quantity=total_quantity,
                reserved_quantity=0,
                sold_quantity=0,
                is_serialized=False,
            )
            self.session.add(line)
        logger.info("Stock line created", variant_id=variant_id, total_quantity=total_quantity, sku=sku)
        return line

    async def adjust_total(self, variant_id: int, delta: int, reason: str) -> StockLine:
        """Receive (+) or write off (-) units of a non-serialized variant."""
        if delta == 0:
            raise InvalidRequestError("delta must not be 0")
        if not reason or not reason.strip():
            raise InvalidRequestError("Reason is required for stock adjustments")

        async with variant_transaction(self.session, self.locks, variant_id):
            line = await self.lock_stock_line(variant_id)
            if line.is_serialized:
                raise InvalidRequestError(
                    f"Variant {variant_id} is serialized; register or retire serial units instead"
                )
            previous_available = line.available_quantity
            if delta < 0 and -delta > previous_available:
                raise InvalidRequestError(
                    f"Cannot remove {-delta} units from variant {variant_id}: only {previous_available} unreserved"
                )
            line.total_quantity += delta
            check_invariants(line)
            event = InventoryUpdateEvent(
                variant_id=variant_id,
                change_type=CHANGE_ADJUSTED,
                previous_available=previous_available,
                new_available=line.available_quantity,
                quantity=delta,
                reason=reason,
            )

        logger.info("Stock adjusted", variant_id=variant_id, delta=delta, reason=reason, total=line.total_quantity)
        await self.events.publish(event)
        return line

    async def register_serials(self, variant_id: int, serials: Iterable[str]) -> List[SerialNumber]:
        """Add serialized units; total_quantity grows by the number of units added."""
        values = [s.strip() for s in serials if s and s.strip()]
        if not values:
            raise InvalidRequestError("At least one serial number is required")
        if len(values) > MAX_SERIALS_PER_REQUEST:
            raise InvalidRequestError(f"At most {MAX_SERIALS_PER_REQUEST} serial numbers per request")
        if len(set(values)) != len(values):
            raise InvalidRequestError("Duplicate serial numbers in request")

        async with variant_transaction(self.session, self.locks, variant_id):
            line = await self.lock_stock_line(variant_id)
            if not line.is_serialized and line.total_quantity > 0:
                # Counted stock has no concrete units to bind; mixing the two would desync totals
                raise InvalidRequestError(
                    f"Variant {variant_id} already tracks {line.total_quantity} units without serial numbers"
                )
            result = await self.session.execute(
                select(SerialNumber.serial_number).where(SerialNumber.serial_number.in_(values))
            )
            taken = sorted(result.scalars().all())
            if taken:
                raise InvalidRequestError(f"Serial numbers already registered: {', '.join(taken)}")

            previous_available = line.available_quantity
            units = [
                SerialNumber(serial_number=value, variant_id=variant_id, status=SERIAL_AVAILABLE)
                for value in values
            ]
            self.session.add_all(units)
            line.is_serialized = True
            line.total_quantity += len(units)
            check_invariants(line)
            event = InventoryUpdateEvent(
                variant_id=variant_id,
                change_type=CHANGE_ADJUSTED,
                previous_available=previous_available,
                new_available=line.available_quantity,
                quantity=len(units),
                reason="serials_registered",
            )

        logger.info("Serial numbers registered", variant_id=variant_id, count=len(units))
        await self.events.publish(event)
        return units

    def commit_sale(self, line: StockLine, quantity: int) -> None:
        """
        Record `quantity` units as sold. The caller holds the variant lock and
        has already taken the units out of reserved_quantity.
        """
        line.sold_quantity += quantity
        check_invariants(line)
