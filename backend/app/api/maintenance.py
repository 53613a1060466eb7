from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.api.deps import get_events, get_locks, get_session_factory
from backend.app.core.locks import VariantLockRegistry
from backend.app.core.settings import get_settings
from backend.app.schemas import SweepResponse
from backend.app.services.events import InventoryEventBus
from backend.app.services.expiry import ExpirySweeper

router = APIRouter()


@router.post("/sweep", response_model=SweepResponse)
async def run_sweep(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    locks: VariantLockRegistry = Depends(get_locks),
    events: InventoryEventBus = Depends(get_events),
):
    """Run one expiry pass now (for external schedulers or operators)."""
    sweeper = ExpirySweeper(
        session_factory,
        batch_size=get_settings().SWEEP_BATCH_SIZE,
        locks=locks,
        events=events,
    )
    expired = await sweeper.sweep_once()
    return SweepResponse(expired=expired)
