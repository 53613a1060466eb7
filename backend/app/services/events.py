"""In-process inventory change notifications.

Services publish an InventoryUpdateEvent after their transaction commits, so
subscribers (cache invalidation, push updates to open carts, audit sinks)
never observe a change that was rolled back.
"""
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field

from backend.app.core.clock import utcnow
from backend.app.core.logging import get_logger

logger = get_logger(__name__)


class InventoryUpdateEvent(BaseModel):
    variant_id: int
    change_type: str
    previous_available: int
    new_available: int
    quantity: int
    reservation_id: Optional[str] = None
    cart_session_id: Optional[str] = None
    reason: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utcnow)


EventHandler = Callable[[InventoryUpdateEvent], Awaitable[None]]


class InventoryEventBus:
    def __init__(self):
        self._handlers: List[EventHandler] = []

    def subscribe(self, handler: EventHandler) -> None:
        if handler not in self._handlers:
            self._handlers.append(handler)

    def unsubscribe(self, handler: EventHandler) -> None:
        if handler in self._handlers:
            self._handlers.remove(handler)

    async def publish(self, event: Optional[InventoryUpdateEvent]) -> None:
        """Deliver to every subscriber. A failing subscriber is logged and skipped."""
        if event is None:
            return
        for handler in list(self._handlers):
            try:
                await handler(event)
            except Exception as e:
                logger.error(
                    "Inventory event handler failed",
                    handler=getattr(handler, "__name__", repr(handler)),
                    change_type=event.change_type,
                    variant_id=event.variant_id,
                    error=str(e),
                )


async def log_inventory_event(event: InventoryUpdateEvent) -> None:
    logger.info(
        "Inventory updated",
        change_type=event.change_type,
        variant_id=event.variant_id,
        previous_available=event.previous_available,
        new_available=event.new_available,
        quantity=event.quantity,
        reservation_id=event.reservation_id,
        reason=event.reason,
    )


_event_bus: Optional[InventoryEventBus] = None


def get_event_bus() -> InventoryEventBus:
    """Process-wide event bus (singleton)."""
    global _event_bus
    if _event_bus is None:
        _event_bus = InventoryEventBus()
    return _event_bus
