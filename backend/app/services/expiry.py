"""Expiry sweeper: reclaims holds whose TTL ran out.

Runs as an asyncio task next to the request handlers (started from the
FastAPI lifespan) and can also be triggered on demand through the
maintenance endpoint. Each expiry goes through ReservationService.expire, so
it takes the same per-variant lock as reserve/commit/extend.
"""
import asyncio
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.locks import VariantLockRegistry, get_variant_locks
from backend.app.core.logging import get_logger
from backend.app.core.metrics import sweeper_expired_total, sweeper_runs_total
from backend.app.services.events import InventoryEventBus, get_event_bus
from backend.app.services.reservations import ReservationService

logger = get_logger(__name__)


class ExpirySweeper:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        interval_seconds: float = 300.0,
        batch_size: int = 500,
        locks: Optional[VariantLockRegistry] = None,
        events: Optional[InventoryEventBus] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self.locks = locks or get_variant_locks()
        self.events = events or get_event_bus()
        self.clock = clock
        self._task: Optional[asyncio.Task] = None

    def _service(self, session: AsyncSession) -> ReservationService:
        kwargs = {"clock": self.clock} if self.clock else {}
        return ReservationService(session, locks=self.locks, events=self.events, **kwargs)

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        """
        Expire every active reservation past its expiry (up to batch_size).
        A failure on one reservation is logged and the pass moves on.
        Returns the number of reservations expired.
        """
        async with self.session_factory() as session:
            expired_ids = await self._service(session).find_expired(now=now, limit=self.batch_size)

        if not expired_ids:
            logger.debug("Sweeper: no expired reservations")
            return 0

        expired_count = 0
        for reservation_id in expired_ids:
            # Fresh session per reservation: one failure must not poison the rest
            async with self.session_factory() as session:
                try:
                    if await self._service(session).expire(reservation_id, now=now):
                        expired_count += 1
                except Exception as e:
                    logger.error(
                        "Sweeper: failed to expire reservation",
                        reservation_id=reservation_id,
                        error=str(e),
                    )

        sweeper_expired_total.inc(expired_count)
        logger.info("Sweeper: pass complete", candidates=len(expired_ids), expired=expired_count)
        return expired_count

    async def drain(self, now: Optional[datetime] = None) -> int:
        """
        Run passes back to back while they come back full, so a backlog larger
        than batch_size is cleared now instead of one batch per interval.
        Stops at the first short pass (failures included).
        """
        total = 0
        while True:
            expired = await self.sweep_once(now=now)
            total += expired
            if expired < self.batch_size:
                return total
            logger.info("Sweeper: batch full, sweeping again", batch_size=self.batch_size)

    async def _run(self) -> None:
        logger.info("Sweeper started", interval_seconds=self.interval_seconds)
        while True:
            try:
                await self.drain()
                sweeper_runs_total.labels(outcome="ok").inc()
            except Exception as e:
                sweeper_runs_total.labels(outcome="error").inc()
                logger.error("Sweeper: unexpected error", error=str(e))
            await asyncio.sleep(self.interval_seconds)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="reservation-expiry-sweeper")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Sweeper stopped")

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
