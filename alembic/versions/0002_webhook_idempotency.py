"""
Idempotency keys for processed webhook events

Revision ID: 0002_webhook_idempotency
Revises: 0001_billing_core
Create Date: 2026-10-19 10:30:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_webhook_idempotency'
down_revision = '0001_billing_core'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'processed_webhook_events',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('idempotency_key', sa.String(length=255), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=True),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_processed_webhook_events_idempotency_key', 'processed_webhook_events', ['idempotency_key'], unique=True)

    # renewal sweep: wallet-billed rows due for renewal
    op.create_index('ix_mailbox_subscriptions_payment_renews', 'mailbox_subscriptions', ['payment_method', 'renews_on'])


def downgrade() -> None:
    op.drop_index('ix_mailbox_subscriptions_payment_renews', table_name='mailbox_subscriptions')
    op.drop_table('processed_webhook_events')
