"""add payment_method to payments

Revision ID: 0002_payment_method
Revises: 0001_subscription_engine
Create Date: 2026-10-19 15:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0002_payment_method'
down_revision = '0001_subscription_engine'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column('payments', sa.Column(
        'payment_method', sa.String(50), nullable=True,
        comment='決済手段 (card 等、承認時に記録)',
    ))


def downgrade() -> None:
    op.drop_column('payments', 'payment_method')
