"""Time-bounded cart holds against a stock line."""
from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship
from datetime import datetime
from typing import List, Optional
from uuid import uuid4
from backend.app.core.base import Base
from backend.app.core.clock import utcnow
from backend.app.core.constants import RESERVATION_ACTIVE
from backend.app.models.stock import SerialNumber


def _new_reservation_id() -> str:
    return str(uuid4())


class Reservation(Base):
    """
    A hold on `quantity` units of a variant for one cart session.

    Rows are kept after the hold ends (committed / released / expired) as an
    audit trail; only active rows count toward StockLine.reserved_quantity.
    """
    __tablename__ = 'reservations'
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_reservation_id)
    variant_id: Mapped[int] = mapped_column(ForeignKey('stock_lines.variant_id'), nullable=False)
    cart_session_id: Mapped[str] = mapped_column(String(128), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=RESERVATION_ACTIVE, server_default=RESERVATION_ACTIVE)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    committed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    committed_quantity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    released_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    release_reason: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    serial_units: Mapped[List[SerialNumber]] = relationship(
        SerialNumber,
        order_by=SerialNumber.serial_number,
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint('quantity > 0', name='ck_reservation_quantity_positive'),
        Index('ix_reservations_status_expires_at', 'status', 'expires_at'),
        Index('ix_reservations_cart_session_id', 'cart_session_id'),
        Index('ix_reservations_variant_status', 'variant_id', 'status'),
    )

    @property
    def serial_numbers(self) -> List[str]:
        return [unit.serial_number for unit in self.serial_units]

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
