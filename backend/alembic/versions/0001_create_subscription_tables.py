"""create subscription engine tables

Revision ID: 0001_subscription_engine
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_subscription_engine'
down_revision = None
branch_labels = None
depends_on = None

PLAN_TYPES = ('FREE', 'BASIC', 'PREMIUM', 'ENTERPRISE')
BILLING_CYCLES = ('MONTHLY', 'YEARLY')


def upgrade() -> None:
    # tenants (外部管理テーブルのミラー)
    op.create_table(
        'tenants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('name', sa.String(255), nullable=False, comment='事業者名'),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('plan_type', sa.String(20), nullable=False, server_default='FREE', comment='有効プランのミラー (アクセス判定用)'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenants_email', 'tenants', ['email'])

    # subscriptions
    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('plan_type', sa.Enum(*PLAN_TYPES, name='plan_type'), nullable=False, server_default='FREE'),
        sa.Column(
            'status',
            sa.Enum('ACTIVE', 'PAYMENT_FAILED', 'PENDING_DOWNGRADE_PAYMENT', 'SUSPENDED', 'CANCELLED', name='subscription_status'),
            nullable=False,
            server_default='ACTIVE',
        ),
        sa.Column('billing_cycle', sa.Enum(*BILLING_CYCLES, name='billing_cycle'), nullable=False, server_default='MONTHLY'),
        sa.Column('price_amount', sa.Integer(), nullable=False, server_default='0', comment='請求額 (通貨単位)'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='jpy'),
        sa.Column('start_date', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(), nullable=True, comment='次回請求日 (FREEはNULL)'),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='保留中操作メタデータ (スキーマレス)'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1', comment='楽観ロック用バージョン'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_subscriptions_tenant_id', 'subscriptions', ['tenant_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_next_billing_date', 'subscriptions', ['next_billing_date'])

    # payments
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('plan_type', sa.Enum(*PLAN_TYPES, name='payment_plan_type'), nullable=False, comment='この決済で購入するプラン'),
        sa.Column(
            'kind',
            sa.Enum('subscription', 'renewal', 'plan_upgrade', 'plan_downgrade', name='payment_kind'),
            nullable=False,
            server_default='subscription',
            comment='決済種別タグ (アップグレード/ダウングレード判別用)',
        ),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='jpy'),
        sa.Column('billing_cycle', sa.Enum(*BILLING_CYCLES, name='payment_billing_cycle'), nullable=False, server_default='MONTHLY'),
        sa.Column(
            'status',
            sa.Enum('PENDING', 'APPROVED', 'REJECTED', 'CANCELLED', 'REFUNDED', name='payment_status'),
            nullable=False,
            server_default='PENDING',
        ),
        sa.Column('gateway_order_id', sa.String(255), nullable=True, comment='Checkout Session ID'),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True, comment='PaymentIntent ID'),
        sa.Column('checkout_url', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('failure_notified_at', sa.DateTime(), nullable=True, comment='決済失敗通知済み日時'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_order_id'),
    )
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])

    # plan_changes (監査ログ)
    op.create_table(
        'plan_changes',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('from_plan', sa.String(20), nullable=False),
        sa.Column('to_plan', sa.String(20), nullable=False),
        sa.Column('reason', sa.String(50), nullable=False, comment='upgrade / downgrade / subscription_cancelled'),
        sa.Column('effective_date', sa.DateTime(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_plan_changes_tenant_id', 'plan_changes', ['tenant_id'])
    op.create_index('ix_plan_changes_subscription_id', 'plan_changes', ['subscription_id'])

    # processed_gateway_events (Webhook冪等性)
    op.create_table(
        'processed_gateway_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('gateway_payment_id', sa.String(255), nullable=True),
        sa.Column('processed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_processed_gateway_events_event_id', 'processed_gateway_events', ['event_id'], unique=True)


def downgrade() -> None:
    op.drop_index('ix_processed_gateway_events_event_id', table_name='processed_gateway_events')
    op.drop_table('processed_gateway_events')
    op.drop_index('ix_plan_changes_subscription_id', table_name='plan_changes')
    op.drop_index('ix_plan_changes_tenant_id', table_name='plan_changes')
    op.drop_table('plan_changes')
    op.drop_index('ix_payments_created_at', table_name='payments')
    op.drop_index('ix_payments_status', table_name='payments')
    op.drop_index('ix_payments_subscription_id', table_name='payments')
    op.drop_table('payments')
    op.drop_index('ix_subscriptions_next_billing_date', table_name='subscriptions')
    op.drop_index('ix_subscriptions_status', table_name='subscriptions')
    op.drop_index('ix_subscriptions_tenant_id', table_name='subscriptions')
    op.drop_table('subscriptions')
    op.drop_index('ix_tenants_email', table_name='tenants')
    op.drop_table('tenants')
