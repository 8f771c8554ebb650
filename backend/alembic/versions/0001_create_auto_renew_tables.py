"""create auto renew tables

Revision ID: 0001_create_auto_renew_tables
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '0001_create_auto_renew_tables'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # auto_renew_subscriptions テーブル (ウォレットごとに有効な購読は最大1件)
    op.create_table(
        'auto_renew_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('wallet_address', sa.String(64), nullable=False),
        sa.Column('plan_type', sa.Integer(), nullable=False, comment='1=月額, 2=四半期, 3=年額'),
        sa.Column('amount_usdc', sa.Numeric(18, 6), nullable=False, comment='請求額 (USDC)'),
        sa.Column('period_seconds', sa.Integer(), nullable=False, comment='請求周期 (秒)'),
        sa.Column('next_payment_at', sa.BigInteger(), nullable=False, comment='次回請求日時 (UNIX秒)'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('payment_account_ref', sa.String(255), nullable=True, comment='決済側アカウント参照 (PDA等)'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_auto_renew_subscriptions_wallet_address', 'auto_renew_subscriptions', ['wallet_address'])
    op.create_index('ix_auto_renew_subscriptions_due', 'auto_renew_subscriptions', ['is_active', 'next_payment_at'])

    # auto_renew_payment_logs テーブル (請求結果、追記のみ)
    op.create_table(
        'auto_renew_payment_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('success', sa.Boolean(), nullable=False),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('plan_type', sa.Integer(), nullable=False, comment='この請求で適用されたプラン'),
        sa.Column('plan_change_applied', sa.Boolean(), nullable=False, comment='この請求でプラン変更を確定したか'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['auto_renew_subscriptions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_auto_renew_payment_logs_subscription_id', 'auto_renew_payment_logs', ['subscription_id'])
    op.create_index('ix_auto_renew_payment_logs_transaction_id', 'auto_renew_payment_logs', ['transaction_id'])
    op.create_index('ix_auto_renew_payment_logs_created_at', 'auto_renew_payment_logs', ['created_at'])

    # system_logs テーブル (監査ログ)
    op.create_table(
        'system_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('level', sa.String(20), nullable=False, comment='INFO/WARNING/ERROR/CRITICAL'),
        sa.Column('event_type', sa.String(100), nullable=False, comment='イベント種別'),
        sa.Column('wallet_address', sa.String(64), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('details', sa.JSON(), nullable=True, comment='詳細データ'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['auto_renew_subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_system_logs_level', 'system_logs', ['level'])
    op.create_index('ix_system_logs_event_type', 'system_logs', ['event_type'])
    op.create_index('ix_system_logs_wallet_address', 'system_logs', ['wallet_address'])
    op.create_index('ix_system_logs_subscription_id', 'system_logs', ['subscription_id'])
    op.create_index('ix_system_logs_created_at', 'system_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('system_logs')
    op.drop_table('auto_renew_payment_logs')
    op.drop_table('auto_renew_subscriptions')
