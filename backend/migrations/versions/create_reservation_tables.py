"""create_reservation_tables: stock_lines, reservations, serial_numbers

Revision ID: create_reservation_tables
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = 'create_reservation_tables'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'stock_lines',
        sa.Column('variant_id', sa.Integer(), autoincrement=False, nullable=False),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('total_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reserved_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sold_quantity', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_serialized', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('variant_id', name='pk_stock_lines'),
        sa.CheckConstraint('reserved_quantity >= 0', name='ck_stock_reserved_non_negative'),
        sa.CheckConstraint('sold_quantity >= 0', name='ck_stock_sold_non_negative'),
        sa.CheckConstraint('reserved_quantity + sold_quantity <= total_quantity', name='ck_stock_within_total'),
    )
    op.create_index('ix_stock_lines_sku', 'stock_lines', ['sku'])

    op.create_table(
        'reservations',
        sa.Column('id', sa.String(36), nullable=False),
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('stock_lines.variant_id', name='fk_reservations_variant_id_stock_lines'), nullable=False),
        sa.Column('cart_session_id', sa.String(128), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('expires_at', sa.DateTime(), nullable=False),
        sa.Column('committed_at', sa.DateTime(), nullable=True),
        sa.Column('committed_quantity', sa.Integer(), nullable=True),
        sa.Column('released_at', sa.DateTime(), nullable=True),
        sa.Column('release_reason', sa.String(50), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_reservations'),
        sa.CheckConstraint('quantity > 0', name='ck_reservation_quantity_positive'),
    )
    op.create_index('ix_reservations_status_expires_at', 'reservations', ['status', 'expires_at'])
    op.create_index('ix_reservations_cart_session_id', 'reservations', ['cart_session_id'])
    op.create_index('ix_reservations_variant_status', 'reservations', ['variant_id', 'status'])

    op.create_table(
        'serial_numbers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('serial_number', sa.String(100), nullable=False),
        sa.Column('variant_id', sa.Integer(), sa.ForeignKey('stock_lines.variant_id', name='fk_serial_numbers_variant_id_stock_lines'), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='available'),
        sa.Column('reservation_id', sa.String(36), sa.ForeignKey('reservations.id', name='fk_serial_numbers_reservation_id_reservations'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_serial_numbers'),
        sa.UniqueConstraint('serial_number', name='uq_serial_numbers_serial_number'),
    )
    op.create_index('ix_serial_numbers_variant_status', 'serial_numbers', ['variant_id', 'status'])
    op.create_index('ix_serial_numbers_reservation_id', 'serial_numbers', ['reservation_id'])


def downgrade() -> None:
    op.drop_index('ix_serial_numbers_reservation_id', table_name='serial_numbers')
    op.drop_index('ix_serial_numbers_variant_status', table_name='serial_numbers')
    op.drop_table('serial_numbers')
    op.drop_index('ix_reservations_variant_status', table_name='reservations')
    op.drop_index('ix_reservations_cart_session_id', table_name='reservations')
    op.drop_index('ix_reservations_status_expires_at', table_name='reservations')
    op.drop_table('reservations')
    op.drop_index('ix_stock_lines_sku', table_name='stock_lines')
    op.drop_table('stock_lines')
