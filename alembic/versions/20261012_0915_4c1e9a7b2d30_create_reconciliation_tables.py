"""create_reconciliation_tables

Revision ID: 4c1e9a7b2d30
Revises:
Create Date: 2026-10-12 09:15:02.118734

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '4c1e9a7b2d30'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'orders',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('customer_email', sa.TEXT(), nullable=True),
        sa.Column('customer_name', sa.TEXT(), nullable=True),
        sa.Column('total', sa.NUMERIC(12, 2), nullable=True),
        sa.Column('status', sa.TEXT(), server_default='pending', nullable=False),
        sa.Column('gateway_payment_id', sa.TEXT(), nullable=True),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('notified_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_orders_gateway_payment', 'orders', ['gateway_payment_id'])
    op.create_index('idx_orders_status', 'orders', ['status'])

    op.create_table(
        'gifts',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('plan_name', sa.TEXT(), nullable=True),
        sa.Column('duration', sa.INTEGER(), server_default='1', nullable=False),
        sa.Column('giver_name', sa.TEXT(), nullable=False),
        sa.Column('giver_email', sa.TEXT(), nullable=True),
        sa.Column('recipient_name', sa.TEXT(), nullable=False),
        sa.Column('recipient_email', sa.TEXT(), nullable=False),
        sa.Column('message', sa.TEXT(), nullable=True),
        sa.Column('send_immediate', sa.BOOLEAN(), server_default=sa.true(), nullable=False),
        sa.Column('payment_status', sa.TEXT(), server_default='pending', nullable=False),
        sa.Column('status', sa.TEXT(), server_default='pending', nullable=False),
        sa.Column('gateway_payment_id', sa.TEXT(), nullable=True),
        sa.Column('payment_details', sa.JSON(), nullable=True),
        sa.Column('notified_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_gifts_payment_status', 'gifts', ['payment_status'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('subscriber_email', sa.TEXT(), nullable=True),
        sa.Column('subscriber_name', sa.TEXT(), nullable=True),
        sa.Column('plan_name', sa.TEXT(), nullable=True),
        sa.Column('status', sa.TEXT(), server_default='pending', nullable=False),
        sa.Column('gateway_subscription_id', sa.TEXT(), nullable=True),
        sa.Column('gateway_details', sa.JSON(), nullable=True),
        sa.Column('started_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('notified_at', sa.TIMESTAMP(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        # One gateway-side identifier per subscription
        sa.UniqueConstraint('gateway_subscription_id', name='uq_subscriptions_gateway_id'),
    )

    op.create_table(
        'processed_notifications',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('notification_key', sa.TEXT(), nullable=False),
        sa.Column('first_seen_at', sa.TIMESTAMP(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('notification_key', name='uq_processed_notifications_key'),
    )
    op.create_index(
        'idx_processed_notifications_expires', 'processed_notifications', ['expires_at']
    )


def downgrade() -> None:
    op.drop_index('idx_processed_notifications_expires', table_name='processed_notifications')
    op.drop_table('processed_notifications')
    op.drop_table('subscriptions')
    op.drop_index('idx_gifts_payment_status', table_name='gifts')
    op.drop_table('gifts')
    op.drop_index('idx_orders_status', table_name='orders')
    op.drop_index('idx_orders_gateway_payment', table_name='orders')
    op.drop_table('orders')
