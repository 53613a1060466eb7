"""Stock ledger models: per-variant counters and serialized units."""
from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from datetime import datetime
from typing import Optional
from backend.app.core.base import Base
from backend.app.core.clock import utcnow
from backend.app.core.constants import SERIAL_AVAILABLE


class StockLine(Base):
    """Counters for one sellable variant. available = total - reserved - sold."""
    __tablename__ = 'stock_lines'
    variant_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    sku: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    total_quantity: Mapped[int] = mapped_column(Integer, default=0, server_default='0')
    reserved_quantity: Mapped[int] = mapped_column(Integer, default=0, server_default='0')
    sold_quantity: Mapped[int] = mapped_column(Integer, default=0, server_default='0')
    # Set once serial units are registered; reservations then bind concrete units
    is_serialized: Mapped[bool] = mapped_column(Boolean, default=False, server_default='0')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        CheckConstraint('reserved_quantity >= 0', name='ck_stock_reserved_non_negative'),
        CheckConstraint('sold_quantity >= 0', name='ck_stock_sold_non_negative'),
        CheckConstraint(
            'reserved_quantity + sold_quantity <= total_quantity',
            name='ck_stock_within_total',
        ),
        Index('ix_stock_lines_sku', 'sku'),
    )

    @property
    def available_quantity(self) -> int:
        return self.total_quantity - self.reserved_quantity - self.sold_quantity


class SerialNumber(Base):
    """One physical unit of a serialized variant (e.g. a single laptop)."""
    __tablename__ = 'serial_numbers'
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    serial_number: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    variant_id: Mapped[int] = mapped_column(ForeignKey('stock_lines.variant_id'), nullable=False)
    status: Mapped[str] = mapped_column(String(20), default=SERIAL_AVAILABLE, server_default=SERIAL_AVAILABLE)
    reservation_id: Mapped[Optional[str]] = mapped_column(ForeignKey('reservations.id'), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    __table_args__ = (
        Index('ix_serial_numbers_variant_status', 'variant_id', 'status'),
        Index('ix_serial_numbers_reservation_id', 'reservation_id'),
    )
