"""
Concurrent access to one variant: many carts racing for the same units,
commit racing expiry, and the bounded lock wait.
"""
import asyncio
import pytest

from backend.app.core.constants import RESERVATION_ACTIVE, SERIAL_RESERVED
from backend.app.core.exceptions import InsufficientStockError, LockTimeoutError, ReservationExpiredError
from backend.app.core.locks import VariantLockRegistry
from backend.app.models.stock import StockLine
from backend.app.services.expiry import ExpirySweeper
from backend.app.services.reservations import ReservationService
from backend.app.services.stock import StockLedger
from backend.tests.conftest import COUNTED_ID, SERIAL_ID, TEST_TTL_SECONDS, read_line


async def _reserve_in_own_session(session_factory, make_service, variant_id, quantity, cart_session_id):
    async with session_factory() as session:
        service = make_service(session)
        try:
            reservation = await service.reserve(variant_id, quantity, cart_session_id)
            return reservation.id
        except InsufficientStockError:
            return None


@pytest.mark.asyncio
async def test_concurrent_reserves_never_oversell(counted_line: StockLine, session_factory, make_service):
    """12 carts want 1 unit each and only 10 exist."""
    results = await asyncio.gather(*[
        _reserve_in_own_session(session_factory, make_service, COUNTED_ID, 1, f"cart-{i}")
        for i in range(12)
    ])

    winners = [r for r in results if r is not None]
    assert len(winners) == 10
    assert len(set(winners)) == 10

    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 10
    assert line.available_quantity == 0


@pytest.mark.asyncio
async def test_concurrent_mixed_quantities(counted_line: StockLine, session_factory, make_service):
    quantities = [4, 4, 4, 3]
    results = await asyncio.gather(*[
        _reserve_in_own_session(session_factory, make_service, COUNTED_ID, q, f"cart-{i}")
        for i, q in enumerate(quantities)
    ])

    held = sum(q for q, r in zip(quantities, results) if r is not None)
    assert held <= 10
    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == held
    assert line.reserved_quantity + line.sold_quantity <= line.total_quantity
    # whatever is left is smaller than every rejected request
    for q, r in zip(quantities, results):
        if r is None:
            assert q > line.available_quantity


@pytest.mark.asyncio
async def test_concurrent_serialized_units_not_double_bound(serialized_line: StockLine, session_factory, make_service, locks, event_bus):
    results = await asyncio.gather(*[
        _reserve_in_own_session(session_factory, make_service, SERIAL_ID, 1, f"cart-{i}")
        for i in range(5)
    ])
    assert len([r for r in results if r is not None]) == 3

    async with session_factory() as session:
        reserved = await StockLedger(session, locks=locks, events=event_bus).list_serials(
            SERIAL_ID, status=SERIAL_RESERVED
        )
    assert len(reserved) == 3
    assert len({u.reservation_id for u in reserved}) == 3


@pytest.mark.asyncio
async def test_cancelled_reserve_leaves_no_partial_state(counted_line, session_factory, make_service, locks):
    """A reserve cancelled while waiting for the lock changes nothing."""
    async with locks.hold(COUNTED_ID):
        task = asyncio.create_task(
            _reserve_in_own_session(session_factory, make_service, COUNTED_ID, 3, "cart-a")
        )
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    assert not locks.is_locked(COUNTED_ID)
    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 0
    assert line.available_quantity == 10


@pytest.mark.asyncio
async def test_commit_racing_expiry(counted_line, session_factory, make_service, locks, event_bus, clock):
    """Commit and sweep on the same hold: exactly one of them wins."""
    async with session_factory() as session:
        reservation = await make_service(session).reserve(COUNTED_ID, 2, "cart-a")
        reservation_id = reservation.id
        deadline = reservation.expires_at

    async def commit():
        async with session_factory() as session:
            return await make_service(session).commit(reservation_id)

    # checkout still sees a live hold while the sweeper already considers it stale
    clock.advance(TEST_TTL_SECONDS - 1)
    sweeper = ExpirySweeper(session_factory, locks=locks, events=event_bus, clock=clock)
    committed, expired = await asyncio.gather(
        commit(),
        sweeper.sweep_once(now=deadline),
        return_exceptions=True,
    )

    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 0
    if expired == 1:
        assert isinstance(committed, ReservationExpiredError)
        assert line.sold_quantity == 0
        assert line.available_quantity == 10
    else:
        assert expired == 0
        assert committed.id == reservation_id
        assert line.sold_quantity == 2
        assert line.available_quantity == 8


@pytest.mark.asyncio
async def test_lock_timeout_when_variant_busy(counted_line, session_factory, event_bus):
    busy = VariantLockRegistry(timeout=0.05)

    def service_for(session):
        return ReservationService(
            session,
            locks=busy,
            events=event_bus,
            default_ttl_seconds=TEST_TTL_SECONDS,
            max_ttl_seconds=TEST_TTL_SECONDS,
        )

    async with busy.hold(COUNTED_ID):
        async with session_factory() as session:
            with pytest.raises(LockTimeoutError) as exc:
                await service_for(session).reserve(COUNTED_ID, 1, "cart-a")
    assert exc.value.status_code == 503

    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 0

    async with session_factory() as session:
        reservation = await service_for(session).reserve(COUNTED_ID, 1, "cart-a")
        assert reservation.status == RESERVATION_ACTIVE
