"""Initial schema for the billing ledger

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.execute("CREATE EXTENSION IF NOT EXISTS pgcrypto;")

    # currencies
    currencies = op.create_table(
        'currencies',
        sa.Column('id', sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column('code', sa.String(8), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('minor_unit', sa.Integer(), nullable=False, server_default=sa.text('2')),
    )
    op.bulk_insert(currencies, [
        {'code': 'USD', 'description': 'US Dollar', 'minor_unit': 2},
        {'code': 'VND', 'description': 'Vietnamese Dong', 'minor_unit': 0},
        {'code': 'EUR', 'description': 'Euro', 'minor_unit': 2},
    ])

    # conversion_rates (append-only history, one is_latest row per code)
    op.create_table(
        'conversion_rates',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('from_code', sa.String(8), nullable=False, server_default=sa.text("'USD'")),
        sa.Column('to_code', sa.String(8), nullable=False),
        sa.Column('rate', sa.Numeric(24, 10), nullable=False),
        sa.Column('source', sa.Text(), nullable=True),
        sa.Column('is_latest', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_conversion_rates_to_code_created', 'conversion_rates', ['to_code', 'created_at'])
    op.create_index('ux_conversion_rates_latest', 'conversion_rates', ['to_code'], unique=True, postgresql_where=sa.text('is_latest'))

    # wallets
    op.create_table(
        'wallets',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('currency_id', sa.Integer(), sa.ForeignKey('currencies.id'), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
        sa.Column('total_deposited', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
        sa.Column('total_spent', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('user_id', 'currency_id', name='uq_wallets_user_currency'),
        sa.CheckConstraint('balance >= 0', name='ck_wallets_balance_non_negative'),
    )

    # token_packages
    op.create_table(
        'token_packages',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('slug', sa.String(64), nullable=False, unique=True),
        sa.Column('name', sa.Text(), nullable=False),
        sa.Column('price_cents', sa.BigInteger(), nullable=False),
        sa.Column('input_tokens', sa.BigInteger(), nullable=False),
        sa.Column('output_tokens', sa.BigInteger(), nullable=False),
        sa.Column('validity_days', sa.Integer(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default=sa.text('0')),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # promo_codes
    op.create_table(
        'promo_codes',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('code', sa.String(64), nullable=False, unique=True),
        sa.Column('discount_percent', sa.Integer(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.text('true')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('discount_percent BETWEEN 0 AND 100', name='ck_promo_codes_discount'),
    )

    # transactions
    op.create_table(
        'transactions',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(16), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(8), nullable=False),
        sa.Column('provider', sa.String(32), nullable=True),
        sa.Column('provider_ref', sa.Text(), nullable=True),
        sa.Column('match_key', sa.Text(), nullable=True),
        sa.Column('gateway_txn_id', sa.Text(), nullable=True),
        sa.Column('payment_url', sa.Text(), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        sa.Column('package_id', sa.Uuid(), sa.ForeignKey('token_packages.id'), nullable=True),
        sa.Column('promo_code_id', sa.Uuid(), sa.ForeignKey('promo_codes.id'), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'provider_ref', name='uq_transactions_provider_ref'),
    )
    op.create_index('idx_transactions_user_created', 'transactions', ['user_id', 'created_at'])
    op.create_index('idx_transactions_status_created', 'transactions', ['status', 'created_at'])
    op.create_index('idx_transactions_match_key', 'transactions', ['match_key'])

    # user_token_balances
    op.create_table(
        'user_token_balances',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('package_id', sa.Uuid(), sa.ForeignKey('token_packages.id'), nullable=False),
        sa.Column('transaction_id', sa.Uuid(), sa.ForeignKey('transactions.id'), nullable=True, unique=True),
        sa.Column('input_tokens_remaining', sa.BigInteger(), nullable=False),
        sa.Column('output_tokens_remaining', sa.BigInteger(), nullable=False),
        sa.Column('is_exhausted', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.CheckConstraint('input_tokens_remaining >= 0 AND output_tokens_remaining >= 0', name='ck_token_balances_non_negative'),
    )
    op.create_index('idx_token_balances_user_created', 'user_token_balances', ['user_id', 'created_at'])

    # billing_accounts
    op.create_table(
        'billing_accounts',
        sa.Column('user_id', sa.Uuid(), primary_key=True),
        sa.Column('payg_enabled', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )

    # usage_logs
    op.create_table(
        'usage_logs',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('feature', sa.String(32), nullable=False),
        sa.Column('input_tokens', sa.BigInteger(), nullable=False),
        sa.Column('output_tokens', sa.BigInteger(), nullable=False),
        sa.Column('source', sa.String(16), nullable=False),
        sa.Column('balance_id', sa.Uuid(), nullable=True),
        sa.Column('cost_cents', sa.BigInteger(), nullable=False, server_default=sa.text('0')),
        sa.Column('input_meta', sa.JSON(), nullable=True),
        sa.Column('output_meta', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_usage_logs_user_created', 'usage_logs', ['user_id', 'created_at'])

    # webhook_logs
    op.create_table(
        'webhook_logs',
        sa.Column('id', sa.Uuid(), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(32), nullable=False),
        sa.Column('event_type', sa.Text(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=True),
        sa.Column('status', sa.String(32), nullable=False, server_default=sa.text("'received'")),
        sa.Column('matched_transaction_id', sa.Uuid(), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('idx_webhook_logs_provider_created', 'webhook_logs', ['provider', 'created_at'])
    op.create_index('idx_webhook_logs_status', 'webhook_logs', ['status'])

    # usage_logs is append-only
    op.execute("""
    CREATE OR REPLACE FUNCTION prevent_update_delete() RETURNS trigger LANGUAGE plpgsql AS $$
    BEGIN
      RAISE EXCEPTION 'append-only table: updates/deletes are not allowed';
      RETURN NULL;
    END;
    $$;
    """)
    op.execute("CREATE TRIGGER trg_usage_logs_prevent_update_delete BEFORE UPDATE OR DELETE ON usage_logs FOR EACH ROW EXECUTE FUNCTION prevent_update_delete();")


def downgrade():
    op.execute("DROP TRIGGER IF EXISTS trg_usage_logs_prevent_update_delete ON usage_logs;")
    op.execute("DROP FUNCTION IF EXISTS prevent_update_delete();")

    op.drop_index('idx_webhook_logs_status', table_name='webhook_logs')
    op.drop_index('idx_webhook_logs_provider_created', table_name='webhook_logs')
    op.drop_table('webhook_logs')

    op.drop_index('idx_usage_logs_user_created', table_name='usage_logs')
    op.drop_table('usage_logs')

    op.drop_table('billing_accounts')

    op.drop_index('idx_token_balances_user_created', table_name='user_token_balances')
    op.drop_table('user_token_balances')

    op.drop_index('idx_transactions_match_key', table_name='transactions')
    op.drop_index('idx_transactions_status_created', table_name='transactions')
    op.drop_index('idx_transactions_user_created', table_name='transactions')
    op.drop_table('transactions')

    op.drop_table('promo_codes')
    op.drop_table('token_packages')
    op.drop_table('wallets')

    op.drop_index('ux_conversion_rates_latest', table_name='conversion_rates')
    op.drop_index('ix_conversion_rates_to_code_created', table_name='conversion_rates')
    op.drop_table('conversion_rates')

    op.drop_table('currencies')
