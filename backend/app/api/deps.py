from typing import AsyncGenerator
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from backend.app.core.database import async_session
from backend.app.core.locks import VariantLockRegistry, get_variant_locks
from backend.app.services.events import InventoryEventBus, get_event_bus
from backend.app.services.reservations import ReservationService
from backend.app.services.stock import StockLedger


# One session per request; services commit their own transactions
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return async_session


def get_locks() -> VariantLockRegistry:
    return get_variant_locks()


def get_events() -> InventoryEventBus:
    return get_event_bus()


def get_stock_ledger(
    session: AsyncSession = Depends(get_session),
    locks: VariantLockRegistry = Depends(get_locks),
    events: InventoryEventBus = Depends(get_events),
) -> StockLedger:
    return StockLedger(session, locks=locks, events=events)


def get_reservation_service(
    session: AsyncSession = Depends(get_session),
    locks: VariantLockRegistry = Depends(get_locks),
    events: InventoryEventBus = Depends(get_events),
) -> ReservationService:
    return ReservationService(session, locks=locks, events=events)
