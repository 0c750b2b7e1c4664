"""ownership ledger

Revision ID: 20261019_ownership_ledger
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the ownership tracking tables:
- ownership_records: one lot per (product, branch, source) with owned/paid
  fractions, explicit lifecycle status and an optimistic version stamp
- ownership_movements: append-only deltas with post-movement snapshots
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_ownership_ledger'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # ownership_records: lots of partially-paid stock
    # ============================================================================
    op.create_table(
        'ownership_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('branch_id', sa.Integer(), nullable=False),
        sa.Column('source_type', sa.String(length=16), nullable=False),
        sa.Column('supplier_id', sa.Integer(), nullable=True),
        sa.Column('purchase_order_id', sa.Integer(), nullable=True),
        sa.Column('customer_purchase_id', sa.Integer(), nullable=True),
        sa.Column('total_quantity', sa.Numeric(18, 3), nullable=False),
        sa.Column('total_weight', sa.Numeric(18, 3), nullable=False),
        sa.Column('owned_quantity', sa.Numeric(18, 3), nullable=False),
        sa.Column('owned_weight', sa.Numeric(18, 3), nullable=False),
        sa.Column('consumed_quantity', sa.Numeric(18, 3), nullable=False, server_default='0'),
        sa.Column('consumed_weight', sa.Numeric(18, 3), nullable=False, server_default='0'),
        sa.Column('ownership_percentage', sa.Numeric(5, 4), nullable=False),
        sa.Column('total_cost', sa.Numeric(18, 2), nullable=False),
        sa.Column('amount_paid', sa.Numeric(18, 2), nullable=False),
        sa.Column('outstanding_amount', sa.Numeric(18, 2), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='CREATED'),
        sa.Column('consolidated_into_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(
            ['consolidated_into_id'], ['ownership_records.id'],
            name='fk_ownership_records_consolidated_into_id_ownership_records'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_ownership_records'),
        sa.CheckConstraint('total_quantity >= 0', name='ck_ownership_total_quantity_non_negative'),
        sa.CheckConstraint('owned_quantity >= 0', name='ck_ownership_owned_quantity_non_negative'),
        sa.CheckConstraint('owned_quantity <= total_quantity', name='ck_ownership_owned_quantity_bounded'),
        sa.CheckConstraint('owned_weight >= 0', name='ck_ownership_owned_weight_non_negative'),
        sa.CheckConstraint('owned_weight <= total_weight', name='ck_ownership_owned_weight_bounded'),
        sa.CheckConstraint('consumed_quantity >= 0', name='ck_ownership_consumed_quantity_non_negative'),
        sa.CheckConstraint(
            'owned_quantity + consumed_quantity <= total_quantity', name='ck_ownership_consumed_quantity_bounded'
        ),
        sa.CheckConstraint('consumed_weight >= 0', name='ck_ownership_consumed_weight_non_negative'),
        sa.CheckConstraint(
            'owned_weight + consumed_weight <= total_weight', name='ck_ownership_consumed_weight_bounded'
        ),
        sa.CheckConstraint('amount_paid >= 0', name='ck_ownership_amount_paid_non_negative'),
        sa.CheckConstraint('amount_paid <= total_cost', name='ck_ownership_amount_paid_bounded'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ownership_records_product_id', 'ownership_records', ['product_id'])
    op.create_index('ix_ownership_records_branch_id', 'ownership_records', ['branch_id'])
    op.create_index('ix_ownership_records_supplier_id', 'ownership_records', ['supplier_id'])
    op.create_index('ix_ownership_records_purchase_order_id', 'ownership_records', ['purchase_order_id'])
    op.create_index('ix_ownership_records_customer_purchase_id', 'ownership_records', ['customer_purchase_id'])
    op.create_index('ix_ownership_records_status', 'ownership_records', ['status'])
    op.create_index('ix_ownership_records_consolidated_into_id', 'ownership_records', ['consolidated_into_id'])
    op.create_index('ix_ownership_records_received_at', 'ownership_records', ['received_at'])
    op.create_index('ix_ownership_product_branch', 'ownership_records', ['product_id', 'branch_id'])
    op.create_index(
        'ix_ownership_product_branch_supplier', 'ownership_records', ['product_id', 'branch_id', 'supplier_id']
    )
    op.create_index('ix_ownership_branch_status', 'ownership_records', ['branch_id', 'status'])

    # ============================================================================
    # ownership_movements: append-only audit of every ownership change
    # ============================================================================
    op.create_table(
        'ownership_movements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('record_id', sa.Integer(), nullable=False),
        sa.Column('movement_type', sa.String(length=16), nullable=False),
        sa.Column('quantity_change', sa.Numeric(18, 3), nullable=False),
        sa.Column('weight_change', sa.Numeric(18, 3), nullable=False),
        sa.Column('amount_change', sa.Numeric(18, 2), nullable=False),
        sa.Column('owned_quantity_after', sa.Numeric(18, 3), nullable=False),
        sa.Column('owned_weight_after', sa.Numeric(18, 3), nullable=False),
        sa.Column('amount_paid_after', sa.Numeric(18, 2), nullable=False),
        sa.Column('ownership_percentage_after', sa.Numeric(5, 4), nullable=False),
        sa.Column('related_record_id', sa.Integer(), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('note', sa.String(length=255), nullable=True),
        sa.Column('actor_user_id', sa.Integer(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(
            ['record_id'], ['ownership_records.id'],
            name='fk_ownership_movements_record_id_ownership_records'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_ownership_movements'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_ownership_movements_record_id', 'ownership_movements', ['record_id'])
    op.create_index('ix_ownership_movements_movement_type', 'ownership_movements', ['movement_type'])
    op.create_index('ix_ownership_movements_related_record_id', 'ownership_movements', ['related_record_id'])
    op.create_index('ix_ownership_movements_reference', 'ownership_movements', ['reference'])
    op.create_index('ix_ownership_movements_occurred_at', 'ownership_movements', ['occurred_at'])
    op.create_index('ix_ownership_movements_record_occurred', 'ownership_movements', ['record_id', 'occurred_at'])


def downgrade():
    op.drop_table('ownership_movements')
    op.drop_table('ownership_records')
