"""create product and inventory ledger tables

Revision ID: 3c1f9a7d2e64
Revises: 
Create Date: 2026-10-19 10:12:31.402117

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3c1f9a7d2e64'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade():
    op.create_table(
        'product',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('category', sa.String(length=128), nullable=True),
        sa.Column('base_price', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('stock_qty', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint('name', name='product_name_key'),
        sa.CheckConstraint('stock_qty >= 0', name='ck_product_stock_qty_non_negative'),
    )
    op.create_index('ix_product_public_id', 'product', ['public_id'], unique=True)
    op.create_index('ix_product_category', 'product', ['category'])

    op.create_table(
        'inventoryledgerentry',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('public_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Integer(), sa.ForeignKey('product.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('transaction_type', sa.String(length=16), nullable=False),
        sa.Column('entry_kind', sa.String(length=16), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('previous_quantity', sa.Integer(), nullable=False),
        sa.Column('new_quantity', sa.Integer(), nullable=False),
        sa.Column('reason', sa.String(length=500), nullable=False),
        sa.Column('actor_id', sa.String(length=128), nullable=False),
        sa.Column('order_id', sa.String(length=128), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reference_entry_id', sa.Integer(),
                  sa.ForeignKey('inventoryledgerentry.id', ondelete='RESTRICT'), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint('quantity >= 0', name='ck_ledger_quantity_non_negative'),
        sa.CheckConstraint('previous_quantity >= 0', name='ck_ledger_previous_quantity_non_negative'),
        sa.CheckConstraint('new_quantity >= 0', name='ck_ledger_new_quantity_non_negative'),
    )
    op.create_index('ix_inventoryledgerentry_public_id', 'inventoryledgerentry', ['public_id'], unique=True)
    op.create_index('ix_inventoryledgerentry_reference_entry_id', 'inventoryledgerentry', ['reference_entry_id'])
    op.create_index('ix_ledger_product_created_at', 'inventoryledgerentry', ['product_id', 'created_at'])
    op.create_index('ix_ledger_order_id', 'inventoryledgerentry', ['order_id'])
    op.create_index('ix_ledger_entry_kind', 'inventoryledgerentry', ['entry_kind'])
    op.create_index('ix_ledger_actor_id', 'inventoryledgerentry', ['actor_id'])


def downgrade():
    op.drop_index('ix_ledger_actor_id', table_name='inventoryledgerentry')
    op.drop_index('ix_ledger_entry_kind', table_name='inventoryledgerentry')
    op.drop_index('ix_ledger_order_id', table_name='inventoryledgerentry')
    op.drop_index('ix_ledger_product_created_at', table_name='inventoryledgerentry')
    op.drop_index('ix_inventoryledgerentry_reference_entry_id', table_name='inventoryledgerentry')
    op.drop_index('ix_inventoryledgerentry_public_id', table_name='inventoryledgerentry')
    op.drop_table('inventoryledgerentry')

    op.drop_index('ix_product_category', table_name='product')
    op.drop_index('ix_product_public_id', table_name='product')
    op.drop_table('product')
