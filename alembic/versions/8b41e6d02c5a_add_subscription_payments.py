"""add_subscription_payments

Revision ID: 8b41e6d02c5a
Revises: 3f2a9c1d7b10
Create Date: 2026-10-19 14:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '8b41e6d02c5a'
down_revision: Union[str, Sequence[str], None] = '3f2a9c1d7b10'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema - Record every applied subscription payment."""
    subscription_plan_enum = postgresql.ENUM(
        'free', 'basic', 'standard', 'premium',
        name='subscription_plan_enum', create_type=False,
    )
    op.create_table(
        'subscription_payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('reference', sa.String(length=128), nullable=False),
        sa.Column('store_id', sa.Uuid(), nullable=False),
        sa.Column('plan', subscription_plan_enum, nullable=False),
        sa.Column('amount_kobo', sa.BigInteger(), nullable=False),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(
            ['store_id'], ['stores.id'],
            name='fk_subscription_payments_store_id_stores', ondelete='CASCADE',
        ),
        sa.PrimaryKeyConstraint('id', name='pk_subscription_payments'),
    )
    op.create_index(
        'ix_subscription_payments_reference',
        'subscription_payments',
        ['reference'],
        unique=True,
    )
    op.create_index(
        'ix_subscription_payments_store_id', 'subscription_payments', ['store_id']
    )

    # Backfill the references already applied to stores
    op.execute(
        """
        INSERT INTO subscription_payments
            (id, reference, store_id, plan, amount_kobo, paid_at, created_at)
        SELECT gen_random_uuid(), last_payment_reference, id, subscription_plan,
               COALESCE(last_payment_amount_kobo, 0),
               COALESCE(last_payment_date, updated_at), now()
        FROM stores
        WHERE last_payment_reference IS NOT NULL
        """
    )


def downgrade() -> None:
    """Downgrade schema - Drop subscription_payments."""
    op.drop_index('ix_subscription_payments_store_id', table_name='subscription_payments')
    op.drop_index('ix_subscription_payments_reference', table_name='subscription_payments')
    op.drop_table('subscription_payments')
