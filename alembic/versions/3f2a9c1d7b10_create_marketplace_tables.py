"""create_marketplace_tables

Revision ID: 3f2a9c1d7b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f2a9c1d7b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


subscription_plan_enum = sa.Enum(
    'free', 'basic', 'standard', 'premium', name='subscription_plan_enum'
)
subscription_status_enum = sa.Enum(
    'active', 'expired', 'cancelled', name='subscription_status_enum'
)
deactivation_reason_enum = sa.Enum(
    'plan_limit', 'out_of_stock', 'manual', name='product_deactivation_reason_enum'
)
ORDER_STATUSES = ('pending', 'processing', 'shipped', 'delivered', 'cancelled')
PAYMENT_STATUSES = ('pending', 'paid', 'failed', 'refunded')
payment_method_enum = sa.Enum(
    'card', 'bank_transfer', 'ussd', 'qr', 'mobile_money', 'transfer',
    name='payment_method_enum',
)
audit_event_enum = sa.Enum(
    'verification_started', 'verification_success', 'verification_failed',
    'amount_mismatch', 'duplicate_detected', 'order_created', 'rate_limit_hit',
    'payment_initialized', 'gateway_error', 'webhook_received',
    'webhook_charge_success', 'webhook_charge_failed', 'webhook_rate_limit_hit',
    'webhook_amount_mismatch', 'webhook_invalid_signature',
    'webhook_processing_failed', 'duplicate_order_updated',
    'subscription_updated', 'subscription_downgraded', 'inventory_debited',
    'inventory_restored_successfully', 'inventory_restoration_failed',
    'refund_processed', 'visibility_enforced',
    name='payment_audit_event_enum',
)


def upgrade() -> None:
    """Upgrade schema - Create marketplace settlement tables."""

    # Create stores table
    op.create_table(
        'stores',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('owner_user_id', sa.String(length=255), nullable=False),
        sa.Column('subscription_plan', subscription_plan_enum, nullable=False),
        sa.Column('product_limit', sa.Integer(), nullable=True),
        sa.Column('subscription_status', subscription_status_enum, nullable=False),
        sa.Column('subscription_start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('subscription_expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_payment_reference', sa.String(length=128), nullable=True),
        sa.Column('last_payment_amount_kobo', sa.BigInteger(), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_stores'),
    )
    op.create_index('ix_stores_owner_user_id', 'stores', ['owner_user_id'])

    # Create products table
    op.create_table(
        'products',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('store_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_kobo', sa.BigInteger(), nullable=False),
        sa.Column('inventory_quantity', sa.Integer(), server_default='0', nullable=False),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true(), nullable=False),
        sa.Column('is_deleted', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('deactivated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deactivation_reason', deactivation_reason_enum, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('inventory_quantity >= 0', name='ck_products_non_negative_stock'),
        sa.CheckConstraint('price_kobo >= 0', name='ck_products_non_negative_price'),
        sa.ForeignKeyConstraint(
            ['store_id'], ['stores.id'],
            name='fk_products_store_id_stores', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_products'),
    )
    op.create_index('ix_products_created_at', 'products', ['created_at'])
    op.create_index(
        'ix_products_store_visibility', 'products', ['store_id', 'is_active', 'is_deleted']
    )

    # Create main_orders table (reference is the settlement idempotency key)
    op.create_table(
        'main_orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_number', sa.String(length=32), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('total_kobo', sa.BigInteger(), nullable=False),
        sa.Column('delivery_fee_kobo', sa.BigInteger(), nullable=False),
        sa.Column('grand_total_kobo', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.Enum(*ORDER_STATUSES, name='main_order_status_enum'), nullable=False),
        sa.Column(
            'payment_status',
            sa.Enum(*PAYMENT_STATUSES, name='main_order_payment_status_enum'),
            nullable=False,
        ),
        sa.Column('payment_method', payment_method_enum, nullable=False),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('shipping_info', sa.JSON(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            'grand_total_kobo = total_kobo + delivery_fee_kobo',
            name='ck_main_orders_grand_total_balances',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_main_orders'),
    )
    op.create_index('ix_main_orders_order_number', 'main_orders', ['order_number'], unique=True)
    op.create_index('ix_main_orders_reference', 'main_orders', ['reference'], unique=True)
    op.create_index('ix_main_orders_user_id', 'main_orders', ['user_id'])

    # Create orders table (one per store per checkout)
    op.create_table(
        'orders',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('main_order_id', sa.Uuid(), nullable=False),
        sa.Column('store_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=False),
        sa.Column('total_kobo', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.Enum(*ORDER_STATUSES, name='order_status_enum'), nullable=False),
        sa.Column(
            'payment_status',
            sa.Enum(*PAYMENT_STATUSES, name='order_payment_status_enum'),
            nullable=False,
        ),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inventory_debited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('inventory_restored_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['main_order_id'], ['main_orders.id'],
            name='fk_orders_main_order_id_main_orders', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(['store_id'], ['stores.id'], name='fk_orders_store_id_stores'),
        sa.PrimaryKeyConstraint('id', name='pk_orders'),
    )
    op.create_index('ix_orders_store_id', 'orders', ['store_id'])
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])
    op.create_index('ix_orders_reference', 'orders', ['reference'])

    # Create order_items table
    op.create_table(
        'order_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('order_id', sa.Uuid(), nullable=False),
        sa.Column('product_id', sa.Uuid(), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('price_at_purchase_kobo', sa.BigInteger(), nullable=False),
        sa.CheckConstraint('quantity > 0', name='ck_order_items_positive_quantity'),
        sa.ForeignKeyConstraint(
            ['order_id'], ['orders.id'],
            name='fk_order_items_order_id_orders', ondelete='CASCADE',
        ),
        sa.ForeignKeyConstraint(
            ['product_id'], ['products.id'], name='fk_order_items_product_id_products'
        ),
        sa.PrimaryKeyConstraint('id', name='pk_order_items'),
    )

    # Create payment_audit_events table (append-only, purged after retention)
    op.create_table(
        'payment_audit_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.String(length=255), nullable=True),
        sa.Column('event', audit_event_enum, nullable=False),
        sa.Column('amount_kobo', sa.BigInteger(), nullable=True),
        sa.Column('expected_amount_kobo', sa.BigInteger(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=64), nullable=True),
        sa.Column('user_agent', sa.String(length=512), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id', name='pk_payment_audit_events'),
    )
    op.create_index('ix_payment_audit_events_reference', 'payment_audit_events', ['reference'])
    op.create_index('ix_payment_audit_events_user_id', 'payment_audit_events', ['user_id'])
    op.create_index('ix_payment_audit_events_timestamp', 'payment_audit_events', ['timestamp'])
    op.create_index(
        'ix_payment_audit_events_event_timestamp',
        'payment_audit_events',
        ['event', 'timestamp'],
    )


def downgrade() -> None:
    """Downgrade schema - Drop marketplace settlement tables."""
    op.drop_table('payment_audit_events')
    op.drop_table('order_items')
    op.drop_table('orders')
    op.drop_table('main_orders')
    op.drop_table('products')
    op.drop_table('stores')

    bind = op.get_bind()
    for name in (
        'payment_audit_event_enum',
        'payment_method_enum',
        'order_payment_status_enum',
        'order_status_enum',
        'main_order_payment_status_enum',
        'main_order_status_enum',
        'product_deactivation_reason_enum',
        'subscription_status_enum',
        'subscription_plan_enum',
    ):
        sa.Enum(name=name).drop(bind, checkfirst=True)
