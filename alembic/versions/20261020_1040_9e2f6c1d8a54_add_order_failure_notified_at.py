"""add_order_failure_notified_at

Revision ID: 9e2f6c1d8a54
Revises: 4c1e9a7b2d30
Create Date: 2026-10-20 10:40:17.402911

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '9e2f6c1d8a54'
down_revision = '4c1e9a7b2d30'
branch_labels = None
depends_on = None


def upgrade() -> None:
    # One-shot flag for the payment rejected email
    op.add_column('orders', sa.Column('failure_notified_at', sa.TIMESTAMP(timezone=True), nullable=True))


def downgrade() -> None:
    op.drop_column('orders', 'failure_notified_at')
