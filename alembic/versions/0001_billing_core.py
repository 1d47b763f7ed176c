"""
Billing core schema: users, wallet, plans, subscriptions, domains, mailboxes, ledger

Revision ID: 0001_billing_core
Revises: 
Create Date: 2026-10-19 10:00:00
"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_billing_core'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # users / payment-provider linkage / api keys
    op.create_table(
        'users',
        sa.Column('id', sa.String(length=128), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('country', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_email', 'users', ['email'])

    op.create_table(
        'stripe_customers',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('stripe_customer_id', sa.String(length=128), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_stripe_customers_user_id', 'stripe_customers', ['user_id'], unique=True)
    op.create_index('ix_stripe_customers_stripe_customer_id', 'stripe_customers', ['stripe_customer_id'], unique=True)

    op.create_table(
        'api_keys',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('api_key', sa.String(length=128), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_api_keys_api_key', 'api_keys', ['api_key'], unique=True)
    op.create_index('ix_api_keys_user_id', 'api_keys', ['user_id'])

    # wallet
    op.create_table(
        'wallets',
        sa.Column('wallet_id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('balance', sa.Numeric(12, 2), nullable=False),
        sa.Column('auto_topup', sa.Boolean(), nullable=False),
        sa.Column('last_topped_up_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('balance >= 0', name='ck_wallets_balance_non_negative'),
    )
    op.create_index('ix_wallets_user_id', 'wallets', ['user_id'], unique=True)

    op.create_table(
        'wallet_transactions',
        sa.Column('transaction_id', sa.String(length=64), primary_key=True),
        sa.Column('wallet_id', sa.String(length=64), sa.ForeignKey('wallets.wallet_id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('txn_time', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_wallet_transactions_wallet_id', 'wallet_transactions', ['wallet_id'])

    # catalog
    op.create_table(
        'plans',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price_monthly', sa.Numeric(10, 2), nullable=False),
        sa.Column('price_per_additional_mailbox', sa.Numeric(10, 2), nullable=False),
        sa.Column('included_mailboxes', sa.Integer(), nullable=False),
        sa.Column('duration', sa.Integer(), nullable=False),
        sa.Column('stripe_price_id_monthly', sa.String(length=128), nullable=True),
        sa.Column('stripe_price_id_yearly', sa.String(length=128), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )

    op.create_table(
        'specific_user_prices',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('product', sa.String(length=32), nullable=False),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_specific_user_prices_email', 'specific_user_prices', ['email'])

    # quota
    op.create_table(
        'mailbox_subscriptions',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('external_id', sa.String(length=128), nullable=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('kind', sa.String(length=16), nullable=False),
        sa.Column('plan_id', sa.String(length=64), sa.ForeignKey('plans.id'), nullable=True),
        sa.Column('mailbox_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('number_of_mailboxes', sa.Integer(), nullable=False),
        sa.Column('number_of_used_mailbox', sa.Integer(), nullable=False),
        sa.Column('price_per_mailbox', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('billing_date', sa.DateTime(), nullable=True),
        sa.Column('renews_on', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('number_of_used_mailbox >= 0', name='ck_mailbox_subscriptions_used_non_negative'),
    )
    op.create_index('ix_mailbox_subscriptions_external_id', 'mailbox_subscriptions', ['external_id'], unique=True)
    op.create_index('ix_mailbox_subscriptions_user_id', 'mailbox_subscriptions', ['user_id'])
    op.create_index('ix_mailbox_subscriptions_status', 'mailbox_subscriptions', ['status'])
    op.create_index('ix_mailbox_subscriptions_renews_on', 'mailbox_subscriptions', ['renews_on'])
    op.create_index('ix_mailbox_subscriptions_created_at', 'mailbox_subscriptions', ['created_at'])

    # domains
    op.create_table(
        'domains',
        sa.Column('domain_id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('domain_name', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('domain_source', sa.String(length=32), nullable=False),
        sa.Column('mailbox_count', sa.Integer(), nullable=False),
        sa.Column('purchased_on', sa.DateTime(), nullable=True),
        sa.Column('renews_on', sa.DateTime(), nullable=True),
        sa.Column('redirect_url', sa.String(length=1024), nullable=True),
        sa.Column('external_provider', sa.String(length=64), nullable=True),
        sa.Column('ext_username', sa.String(length=255), nullable=True),
        sa.Column('ext_password', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('user_id', 'domain_name', name='uq_domains_user_domain'),
    )
    op.create_index('ix_domains_user_id', 'domains', ['user_id'])
    op.create_index('ix_domains_domain_name', 'domains', ['domain_name'])

    # mailboxes and exports
    op.create_table(
        'mailbox_exports',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('mailbox_type', sa.String(length=32), nullable=False),
        sa.Column('platform', sa.String(length=64), nullable=False),
        sa.Column('mailbox_count', sa.Integer(), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_mailbox_exports_user_id', 'mailbox_exports', ['user_id'])

    op.create_table(
        'mailboxes',
        sa.Column('mailbox_id', sa.String(length=64), primary_key=True),
        sa.Column('domain_id', sa.String(length=64), sa.ForeignKey('domains.domain_id'), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('subscription_id', sa.String(length=64), sa.ForeignKey('mailbox_subscriptions.id'), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('username', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=255), nullable=True),
        sa.Column('last_name', sa.String(length=255), nullable=True),
        sa.Column('name', sa.String(length=512), nullable=True),
        sa.Column('recovery_email', sa.String(length=255), nullable=True),
        sa.Column('forwarding_email', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('export_id', sa.String(length=64), sa.ForeignKey('mailbox_exports.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_mailboxes_email', 'mailboxes', ['email'], unique=True)
    op.create_index('ix_mailboxes_domain_id', 'mailboxes', ['domain_id'])
    op.create_index('ix_mailboxes_user_id', 'mailboxes', ['user_id'])
    op.create_index('ix_mailboxes_subscription_id', 'mailboxes', ['subscription_id'])

    op.create_table(
        'prewarm_mailboxes',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('first_name', sa.String(length=255), nullable=True),
        sa.Column('last_name', sa.String(length=255), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('user_id', sa.String(length=128), nullable=True),
        sa.Column('subscription_id', sa.String(length=64), sa.ForeignKey('mailbox_subscriptions.id'), nullable=True),
        sa.Column('export_id', sa.String(length=64), sa.ForeignKey('mailbox_exports.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_prewarm_mailboxes_email', 'prewarm_mailboxes', ['email'], unique=True)
    op.create_index('ix_prewarm_mailboxes_status', 'prewarm_mailboxes', ['status'])
    op.create_index('ix_prewarm_mailboxes_user_id', 'prewarm_mailboxes', ['user_id'])
    op.create_index('ix_prewarm_mailboxes_subscription_id', 'prewarm_mailboxes', ['subscription_id'])

    op.create_table(
        'prewarm_selections',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('emails', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_prewarm_selections_user_id', 'prewarm_selections', ['user_id'])

    # payment ledger, orders and worker jobs
    op.create_table(
        'transaction_history',
        sa.Column('id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payment_provider', sa.String(length=16), nullable=False),
        sa.Column('reference_id', sa.String(length=255), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_transaction_history_user_id', 'transaction_history', ['user_id'])
    op.create_index('ix_transaction_history_checkout_session_id', 'transaction_history', ['checkout_session_id'], unique=True)

    op.create_table(
        'orders',
        sa.Column('order_id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('order_type', sa.String(length=32), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=8), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('reference_id', sa.String(length=255), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_orders_user_id', 'orders', ['user_id'])

    op.create_table(
        'jobs',
        sa.Column('job_id', sa.String(length=64), primary_key=True),
        sa.Column('user_id', sa.String(length=128), nullable=False),
        sa.Column('job_type', sa.String(length=64), nullable=False),
        sa.Column('order_type', sa.String(length=32), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_jobs_user_id', 'jobs', ['user_id'])


def downgrade() -> None:
    op.drop_table('jobs')
    op.drop_table('orders')
    op.drop_table('transaction_history')
    op.drop_table('prewarm_selections')
    op.drop_table('prewarm_mailboxes')
    op.drop_table('mailboxes')
    op.drop_table('mailbox_exports')
    op.drop_table('domains')
    op.drop_table('mailbox_subscriptions')
    op.drop_table('specific_user_prices')
    op.drop_table('plans')
    op.drop_table('wallet_transactions')
    op.drop_table('wallets')
    op.drop_table('api_keys')
    op.drop_table('stripe_customers')
    op.drop_table('users')
