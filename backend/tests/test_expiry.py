"""
Tests for the expiry sweeper: one-off passes, failure isolation and the
background loop.
"""
import asyncio
import pytest
from datetime import timedelta

from backend.app.core.constants import CHANGE_EXPIRED, RELEASE_EXPIRED, RESERVATION_COMMITTED, RESERVATION_EXPIRED
from backend.app.core.exceptions import ReservationExpiredError
from backend.app.services.expiry import ExpirySweeper
from backend.app.services.reservations import ReservationService
from backend.tests.conftest import COUNTED_ID, TEST_TTL_SECONDS, read_line


@pytest.fixture
def sweeper(session_factory, locks, event_bus, clock) -> ExpirySweeper:
    return ExpirySweeper(
        session_factory,
        interval_seconds=0.05,
        batch_size=10,
        locks=locks,
        events=event_bus,
        clock=clock,
    )


@pytest.mark.asyncio
async def test_sweep_releases_expired_holds(reservation_service, counted_line, sweeper, session_factory, clock, recorder):
    stale = await reservation_service.reserve(COUNTED_ID, 4, "cart-a", ttl_seconds=60)
    stale_id = stale.id
    await reservation_service.reserve(COUNTED_ID, 2, "cart-b")

    assert await sweeper.sweep_once() == 0

    clock.advance(61)
    assert await sweeper.sweep_once() == 1

    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 2
    assert line.available_quantity == 8

    swept = await reservation_service.get(stale_id)
    assert swept.status == RESERVATION_EXPIRED
    assert swept.release_reason == RELEASE_EXPIRED
    (event,) = recorder.of_type(CHANGE_EXPIRED)
    assert event.reservation_id == stale_id
    assert event.quantity == 4


@pytest.mark.asyncio
async def test_sweep_with_explicit_now(reservation_service, counted_line, sweeper, clock):
    await reservation_service.reserve(COUNTED_ID, 1, "cart-a")
    await reservation_service.reserve(COUNTED_ID, 1, "cart-b")

    later = clock.now + timedelta(seconds=TEST_TTL_SECONDS)
    assert await sweeper.sweep_once(now=later) == 2
    assert await sweeper.sweep_once(now=later) == 0


@pytest.mark.asyncio
async def test_sweep_respects_batch_size(reservation_service, counted_line, session_factory, locks, event_bus, clock):
    for i in range(3):
        await reservation_service.reserve(COUNTED_ID, 1, f"cart-{i}")
    clock.advance(TEST_TTL_SECONDS)

    small = ExpirySweeper(session_factory, batch_size=2, locks=locks, events=event_bus, clock=clock)
    assert await small.sweep_once() == 2
    assert await small.sweep_once() == 1


@pytest.mark.asyncio
async def test_commit_after_sweep_fails(reservation_service, counted_line, sweeper, session_factory, clock):
    reservation = await reservation_service.reserve(COUNTED_ID, 3, "cart-a")
    reservation_id = reservation.id
    clock.advance(TEST_TTL_SECONDS + 1)
    await sweeper.sweep_once()

    with pytest.raises(ReservationExpiredError):
        await reservation_service.commit(reservation_id)

    line = await read_line(session_factory, COUNTED_ID)
    assert line.sold_quantity == 0
    assert line.available_quantity == 10


@pytest.mark.asyncio
async def test_sweep_skips_committed_hold(reservation_service, counted_line, sweeper, session_factory, clock):
    """A hold committed before the sweeper reaches it stays sold."""
    reservation = await reservation_service.reserve(COUNTED_ID, 3, "cart-a")
    reservation_id = reservation.id
    await reservation_service.commit(reservation_id)
    clock.advance(TEST_TTL_SECONDS + 1)

    assert await sweeper.sweep_once() == 0
    assert (await reservation_service.get(reservation_id)).status == RESERVATION_COMMITTED
    line = await read_line(session_factory, COUNTED_ID)
    assert line.sold_quantity == 3


@pytest.mark.asyncio
async def test_sweep_continues_past_failure(reservation_service, counted_line, sweeper, session_factory, clock, monkeypatch):
    first = await reservation_service.reserve(COUNTED_ID, 1, "cart-a")
    first_id = first.id
    clock.advance(1)
    await reservation_service.reserve(COUNTED_ID, 2, "cart-b")
    clock.advance(TEST_TTL_SECONDS)

    original_expire = ReservationService.expire

    async def flaky_expire(self, reservation_id, now=None):
        if reservation_id == first_id:
            raise RuntimeError("connection reset")
        return await original_expire(self, reservation_id, now=now)

    monkeypatch.setattr(ReservationService, "expire", flaky_expire)

    assert await sweeper.sweep_once() == 1
    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 1

    monkeypatch.setattr(ReservationService, "expire", original_expire)
    assert await sweeper.sweep_once() == 1
    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 0


@pytest.mark.asyncio
async def test_background_loop_start_stop(reservation_service, counted_line, sweeper, session_factory, clock):
    await reservation_service.reserve(COUNTED_ID, 5, "cart-a")
    clock.advance(TEST_TTL_SECONDS)

    sweeper.start()
    assert sweeper.running
    try:
        for _ in range(50):
            line = await read_line(session_factory, COUNTED_ID)
            if line.reserved_quantity == 0:
                break
            await asyncio.sleep(0.05)
    finally:
        await sweeper.stop()

    assert not sweeper.running
    line = await read_line(session_factory, COUNTED_ID)
    assert line.available_quantity == 10


@pytest.mark.asyncio
async def test_stop_without_start(sweeper):
    await sweeper.stop()
    assert not sweeper.running


@pytest.mark.asyncio
async def test_drain_clears_backlog_beyond_batch_size(reservation_service, counted_line, session_factory, locks, event_bus, clock):
    for i in range(5):
        await reservation_service.reserve(COUNTED_ID, 1, f"cart-{i}")
    clock.advance(TEST_TTL_SECONDS)

    small = ExpirySweeper(session_factory, batch_size=2, locks=locks, events=event_bus, clock=clock)
    assert await small.drain() == 5

    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 0
    assert await small.drain() == 0


@pytest.mark.asyncio
async def test_background_loop_drains_full_batches(reservation_service, counted_line, session_factory, locks, event_bus, clock):
    for i in range(4):
        await reservation_service.reserve(COUNTED_ID, 1, f"cart-{i}")
    clock.advance(TEST_TTL_SECONDS)

    # Interval far longer than the test: everything must go in the first wake-up
    slow = ExpirySweeper(session_factory, interval_seconds=3600, batch_size=1, locks=locks, events=event_bus, clock=clock)
    slow.start()
    try:
        for _ in range(50):
            line = await read_line(session_factory, COUNTED_ID)
            if line.reserved_quantity == 0:
                break
            await asyncio.sleep(0.05)
    finally:
        await slow.stop()

    line = await read_line(session_factory, COUNTED_ID)
    assert line.reserved_quantity == 0
