"""Create billing engine tables

Revision ID: 7c2e9a41d0b3
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '7c2e9a41d0b3'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('customer_tokens',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('account_id', sa.String(length=36), nullable=False),
        sa.Column('purpose', sa.String(length=50), nullable=False),
        sa.Column('gateway_token', sa.String(length=64), nullable=False),
        sa.Column('card_last4', sa.String(length=4), nullable=True),
        sa.Column('card_brand', sa.String(length=50), nullable=True),
        sa.Column('card_expiry_month', sa.Integer(), nullable=True),
        sa.Column('card_expiry_year', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('1')),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_token')
    )
    op.create_index('ix_customer_tokens_account_id', 'customer_tokens', ['account_id'])
    op.create_index('ix_customer_tokens_account_active', 'customer_tokens', ['account_id', 'purpose', 'is_active'])

    op.create_table('recurring_schedules',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('account_id', sa.String(length=36), nullable=False),
        sa.Column('customer_token_id', sa.String(length=36), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('cadence', sa.String(length=20), nullable=False),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cycle_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_billing_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_failed_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('claimed_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claim_token', sa.String(length=36), nullable=True),
        sa.Column('in_flight_transaction_id', sa.String(length=36), nullable=True),
        sa.Column('last_processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_transaction_id', sa.String(length=36), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.ForeignKeyConstraint(['customer_token_id'], ['customer_tokens.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_recurring_schedules_account_id', 'recurring_schedules', ['account_id'])
    op.create_index('ix_recurring_schedules_due', 'recurring_schedules', ['status', 'next_billing_date'])

    op.create_table('billing_transactions',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('account_id', sa.String(length=36), nullable=False),
        sa.Column('schedule_id', sa.String(length=36), nullable=True),
        sa.Column('customer_token_id', sa.String(length=36), nullable=False),
        sa.Column('amount', sa.Numeric(precision=10, scale=2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(length=64), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=False),
        sa.Column('response_code', sa.String(length=10), nullable=True),
        sa.Column('response_message', sa.Text(), nullable=True),
        sa.Column('fraud_action', sa.String(length=50), nullable=True),
        sa.Column('fraud_score', sa.Numeric(precision=5, scale=2), nullable=True),
        sa.Column('billing_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('billing_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('raw_response', sa.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.CheckConstraint('retry_count <= max_retries', name='ck_transactions_retry_count'),
        sa.ForeignKeyConstraint(['customer_token_id'], ['customer_tokens.id'], ),
        sa.ForeignKeyConstraint(['schedule_id'], ['recurring_schedules.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('gateway_transaction_id'),
        sa.UniqueConstraint('reference')
    )
    op.create_index('ix_billing_transactions_account_id', 'billing_transactions', ['account_id'])
    op.create_index('ix_billing_transactions_schedule_id', 'billing_transactions', ['schedule_id'])
    op.create_index('ix_billing_transactions_status', 'billing_transactions', ['status'])
    op.create_index('ix_billing_transactions_next_retry_at', 'billing_transactions', ['next_retry_at'])

    op.create_table('webhook_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(length=64), nullable=True),
        sa.Column('customer_token', sa.String(length=64), nullable=True),
        sa.Column('reference', sa.String(length=64), nullable=True),
        sa.Column('raw_payload', sa.Text(), nullable=True),
        sa.Column('event_data', sa.JSON(), nullable=True),
        sa.Column('source_ip', sa.String(length=45), nullable=True),
        sa.Column('headers', sa.JSON(), nullable=True),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.text('0')),
        sa.Column('outcome', sa.String(length=30), nullable=True),
        sa.Column('processing_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_webhook_events_dedup', 'webhook_events', ['gateway_transaction_id', 'event_type', 'outcome'])
    op.create_index('ix_webhook_events_pending', 'webhook_events', ['processed', 'next_attempt_at'])


def downgrade():
    op.drop_index('ix_webhook_events_pending', table_name='webhook_events')
    op.drop_index('ix_webhook_events_dedup', table_name='webhook_events')
    op.drop_table('webhook_events')

    op.drop_index('ix_billing_transactions_next_retry_at', table_name='billing_transactions')
    op.drop_index('ix_billing_transactions_status', table_name='billing_transactions')
    op.drop_index('ix_billing_transactions_schedule_id', table_name='billing_transactions')
    op.drop_index('ix_billing_transactions_account_id', table_name='billing_transactions')
    op.drop_table('billing_transactions')

    op.drop_index('ix_recurring_schedules_due', table_name='recurring_schedules')
    op.drop_index('ix_recurring_schedules_account_id', table_name='recurring_schedules')
    op.drop_table('recurring_schedules')

    op.drop_index('ix_customer_tokens_account_active', table_name='customer_tokens')
    op.drop_index('ix_customer_tokens_account_id', table_name='customer_tokens')
    op.drop_table('customer_tokens')
