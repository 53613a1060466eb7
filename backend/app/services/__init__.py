# backend/app/services/__init__.py
"""
Stock ledger, cart reservations and the expiry sweeper.
Routers stay thin; every state change goes through these classes.
"""

from backend.app.services.stock import StockLedger, variant_transaction
from backend.app.services.reservations import ReservationService
from backend.app.services.expiry import ExpirySweeper
from backend.app.services.events import InventoryEventBus, InventoryUpdateEvent, get_event_bus

__all__ = [
    "StockLedger",
    "variant_transaction",
    "ReservationService",
    "ExpirySweeper",
    "InventoryEventBus",
    "InventoryUpdateEvent",
    "get_event_bus",
]
