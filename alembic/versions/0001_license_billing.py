"""license billing schema

Revision ID: 0001_license_billing
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '0001_license_billing'
down_revision = None
branch_labels = None
depends_on = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), 'postgresql')


def upgrade():
    op.create_table(
        'licenses',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('guid', sa.BigInteger(), nullable=False),
        sa.Column('tenant_id', sa.Integer(), nullable=False),
        sa.Column('license_type', sa.String(length=50), nullable=False),
        sa.Column('billing_cycle_months', sa.Integer(), nullable=False),
        sa.Column('base_price_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('minimum_seats', sa.Integer(), nullable=False),
        sa.Column('billing_currency_code', sa.String(length=3), nullable=False),
        sa.Column('billing_country_code', sa.String(length=3), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('next_renewal_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_licenses_id'), 'licenses', ['id'], unique=False)
    op.create_index(op.f('ix_licenses_guid'), 'licenses', ['guid'], unique=True)
    op.create_index(op.f('ix_licenses_tenant_id'), 'licenses', ['tenant_id'], unique=False)
    op.create_index(op.f('ix_licenses_status'), 'licenses', ['status'], unique=False)
    op.create_index('idx_licenses_tenant_status', 'licenses', ['tenant_id', 'status'], unique=False)
    op.create_index('idx_licenses_period_end', 'licenses', ['current_period_end'], unique=False)

    op.create_table(
        'license_adjustments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('guid', sa.BigInteger(), nullable=False),
        sa.Column('license_id', sa.Integer(), nullable=False),
        sa.Column('adjustment_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('employees_added_count', sa.Integer(), nullable=False),
        sa.Column('months_remaining', sa.Numeric(6, 2), nullable=False),
        sa.Column('price_per_employee_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('subtotal_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('subtotal_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('tax_amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('total_amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('billing_currency_code', sa.String(length=3), nullable=False),
        sa.Column('exchange_rate_used', sa.Numeric(18, 6), nullable=False),
        sa.Column('tax_rules_applied', _json(), nullable=False),
        sa.Column('payment_status', sa.String(length=20), nullable=False),
        sa.Column('payment_due_immediately', sa.Boolean(), nullable=False),
        sa.Column('invoice_sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['license_id'], ['licenses.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_license_adjustments_id'), 'license_adjustments', ['id'], unique=False)
    op.create_index(op.f('ix_license_adjustments_guid'), 'license_adjustments', ['guid'], unique=True)
    op.create_index(op.f('ix_license_adjustments_license_id'), 'license_adjustments', ['license_id'], unique=False)
    op.create_index(op.f('ix_license_adjustments_payment_status'), 'license_adjustments', ['payment_status'], unique=False)
    op.create_index(op.f('ix_license_adjustments_created_at'), 'license_adjustments', ['created_at'], unique=False)
    op.create_index('idx_license_adjustments_currency_status', 'license_adjustments',
                    ['billing_currency_code', 'payment_status'], unique=False)

    op.create_table(
        'license_seats',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('license_id', sa.Integer(), nullable=False),
        sa.Column('adjustment_id', sa.Integer(), nullable=True),
        sa.Column('seat_count', sa.Integer(), nullable=False),
        sa.Column('source', sa.String(length=30), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['license_id'], ['licenses.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['adjustment_id'], ['license_adjustments.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_license_seats_id'), 'license_seats', ['id'], unique=False)
    op.create_index(op.f('ix_license_seats_license_id'), 'license_seats', ['license_id'], unique=False)

    op.create_table(
        'billing_cycles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('guid', sa.BigInteger(), nullable=False),
        sa.Column('license_id', sa.Integer(), nullable=False),
        sa.Column('period_start', sa.DateTime(timezone=True), nullable=False),
        sa.Column('period_end', sa.DateTime(timezone=True), nullable=False),
        sa.Column('base_employee_count', sa.Integer(), nullable=False),
        sa.Column('final_employee_count', sa.Integer(), nullable=False),
        sa.Column('base_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('adjustments_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('subtotal_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('base_amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('adjustments_amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('subtotal_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('tax_amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('total_amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('billing_currency_code', sa.String(length=3), nullable=False),
        sa.Column('exchange_rate_used', sa.Numeric(18, 6), nullable=False),
        sa.Column('tax_rules_applied', _json(), nullable=False),
        sa.Column('billing_status', sa.String(length=20), nullable=False),
        sa.Column('payment_due_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('invoice_generated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.ForeignKeyConstraint(['license_id'], ['licenses.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_billing_cycles_id'), 'billing_cycles', ['id'], unique=False)
    op.create_index(op.f('ix_billing_cycles_guid'), 'billing_cycles', ['guid'], unique=True)
    op.create_index(op.f('ix_billing_cycles_license_id'), 'billing_cycles', ['license_id'], unique=False)
    op.create_index(op.f('ix_billing_cycles_billing_status'), 'billing_cycles', ['billing_status'], unique=False)
    op.create_index(op.f('ix_billing_cycles_payment_due_date'), 'billing_cycles', ['payment_due_date'], unique=False)
    op.create_index('idx_billing_cycles_license_period', 'billing_cycles', ['license_id', 'period_start'], unique=False)
    op.create_index('idx_billing_cycles_status_due', 'billing_cycles', ['billing_status', 'payment_due_date'], unique=False)
    op.create_index('idx_billing_cycles_currency', 'billing_cycles', ['billing_currency_code'], unique=False)

    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('guid', sa.BigInteger(), nullable=False),
        sa.Column('billing_cycle_id', sa.Integer(), nullable=True),
        sa.Column('adjustment_id', sa.Integer(), nullable=True),
        sa.Column('payment_method', sa.String(length=30), nullable=False),
        sa.Column('payment_reference', sa.String(length=100), nullable=False),
        sa.Column('amount_usd', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_local', sa.Numeric(18, 2), nullable=False),
        sa.Column('exchange_rate_used', sa.Numeric(18, 6), nullable=False),
        sa.Column('currency_code', sa.String(length=3), nullable=False),
        sa.Column('transaction_status', sa.String(length=20), nullable=False),
        sa.Column('initiated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('gateway_response', _json(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.CheckConstraint('(billing_cycle_id IS NULL) <> (adjustment_id IS NULL)',
                           name='ck_payment_transactions_single_parent'),
        sa.ForeignKeyConstraint(['billing_cycle_id'], ['billing_cycles.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['adjustment_id'], ['license_adjustments.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_payment_transactions_id'), 'payment_transactions', ['id'], unique=False)
    op.create_index(op.f('ix_payment_transactions_guid'), 'payment_transactions', ['guid'], unique=True)
    op.create_index(op.f('ix_payment_transactions_billing_cycle_id'), 'payment_transactions', ['billing_cycle_id'], unique=False)
    op.create_index(op.f('ix_payment_transactions_adjustment_id'), 'payment_transactions', ['adjustment_id'], unique=False)
    op.create_index(op.f('ix_payment_transactions_payment_reference'), 'payment_transactions', ['payment_reference'], unique=True)
    op.create_index(op.f('ix_payment_transactions_transaction_status'), 'payment_transactions', ['transaction_status'], unique=False)
    op.create_index('idx_payment_transactions_status_initiated', 'payment_transactions',
                    ['transaction_status', 'initiated_at'], unique=False)

    op.create_table(
        'tax_rules',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('country_code', sa.String(length=3), nullable=False),
        sa.Column('tax_type', sa.String(length=30), nullable=False),
        sa.Column('tax_name', sa.String(length=100), nullable=False),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False),
        sa.Column('applies_to', sa.String(length=50), nullable=False),
        sa.Column('required_tax_number', sa.Boolean(), nullable=False),
        sa.Column('effective_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('expiry_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('tax_rate >= 0 AND tax_rate <= 100', name='ck_tax_rules_rate_range'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_tax_rules_id'), 'tax_rules', ['id'], unique=False)
    op.create_index(op.f('ix_tax_rules_country_code'), 'tax_rules', ['country_code'], unique=False)
    op.create_index('idx_tax_rules_lookup', 'tax_rules', ['country_code', 'tax_type', 'applies_to', 'active'], unique=False)


def downgrade():
    op.drop_index('idx_tax_rules_lookup', table_name='tax_rules')
    op.drop_index(op.f('ix_tax_rules_country_code'), table_name='tax_rules')
    op.drop_index(op.f('ix_tax_rules_id'), table_name='tax_rules')
    op.drop_table('tax_rules')

    op.drop_index('idx_payment_transactions_status_initiated', table_name='payment_transactions')
    op.drop_index(op.f('ix_payment_transactions_transaction_status'), table_name='payment_transactions')
    op.drop_index(op.f('ix_payment_transactions_payment_reference'), table_name='payment_transactions')
    op.drop_index(op.f('ix_payment_transactions_adjustment_id'), table_name='payment_transactions')
    op.drop_index(op.f('ix_payment_transactions_billing_cycle_id'), table_name='payment_transactions')
    op.drop_index(op.f('ix_payment_transactions_guid'), table_name='payment_transactions')
    op.drop_index(op.f('ix_payment_transactions_id'), table_name='payment_transactions')
    op.drop_table('payment_transactions')

    op.drop_index('idx_billing_cycles_currency', table_name='billing_cycles')
    op.drop_index('idx_billing_cycles_status_due', table_name='billing_cycles')
    op.drop_index('idx_billing_cycles_license_period', table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_payment_due_date'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_billing_status'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_license_id'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_guid'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_id'), table_name='billing_cycles')
    op.drop_table('billing_cycles')

    op.drop_index(op.f('ix_license_seats_license_id'), table_name='license_seats')
    op.drop_index(op.f('ix_license_seats_id'), table_name='license_seats')
    op.drop_table('license_seats')

    op.drop_index('idx_license_adjustments_currency_status', table_name='license_adjustments')
    op.drop_index(op.f('ix_license_adjustments_created_at'), table_name='license_adjustments')
    op.drop_index(op.f('ix_license_adjustments_payment_status'), table_name='license_adjustments')
    op.drop_index(op.f('ix_license_adjustments_license_id'), table_name='license_adjustments')
    op.drop_index(op.f('ix_license_adjustments_guid'), table_name='license_adjustments')
    op.drop_index(op.f('ix_license_adjustments_id'), table_name='license_adjustments')
    op.drop_table('license_adjustments')

    op.drop_index('idx_licenses_period_end', table_name='licenses')
    op.drop_index('idx_licenses_tenant_status', table_name='licenses')
    op.drop_index(op.f('ix_licenses_status'), table_name='licenses')
    op.drop_index(op.f('ix_licenses_tenant_id'), table_name='licenses')
    op.drop_index(op.f('ix_licenses_guid'), table_name='licenses')
    op.drop_index(op.f('ix_licenses_id'), table_name='licenses')
    op.drop_table('licenses')
