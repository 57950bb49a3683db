"""Initial database schema

Revision ID: 001
Revises: 
Create Date: 2026-10-19 09:00:00.000000

"""
from datetime import datetime, timezone

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

SCHEMA_VERSION = 1

ORDER_STATUSES = (
    'pending', 'submitted', 'in_progress', 'quoted', 'quote_viewed', 'quote_accepted',
    'invoiced', 'paid', 'completed', 'delivered', 'cancelled',
)


def _in_clause(column, values):
    quoted = ", ".join(f"'{value}'" for value in values)
    return f"{column} IN ({quoted})"


def upgrade() -> None:
    # Schema version stamp checked at startup
    op.create_table('schema_version',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('applied_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )

    # Create orders table
    op.create_table('orders',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('contact_name', sa.String(length=128), nullable=False),
        sa.Column('contact_email', sa.String(length=255), nullable=False),
        sa.Column('contact_phone', sa.String(length=32), nullable=True),
        sa.Column('service_type', sa.String(length=64), nullable=True),
        sa.Column('package_name', sa.String(length=128), nullable=True),
        sa.Column('add_ons', sa.JSON(), nullable=True),
        sa.Column('subtotal', sa.Integer(), nullable=False),
        sa.Column('tax_amount', sa.Integer(), nullable=False),
        sa.Column('total_amount', sa.Integer(), nullable=False),
        sa.Column('jurisdiction', sa.String(length=2), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(_in_clause('status', ORDER_STATUSES), name='ck_orders_status'),
        sa.CheckConstraint(
            'subtotal >= 0 AND tax_amount >= 0 AND total_amount >= 0', name='ck_orders_amounts'
        )
    )
    op.create_index('ix_orders_status', 'orders', ['status'])

    # Create order_status_history table (append-only)
    op.create_table('order_status_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('previous_status', sa.String(length=32), nullable=True),
        sa.Column('new_status', sa.String(length=32), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_order_status_history_order_id', 'order_status_history', ['order_id'])

    # Create invoices table
    op.create_table('invoices',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(length=64), nullable=False),
        sa.Column('external_reference', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('is_manual', sa.Boolean(), nullable=False),
        sa.Column('subtotal_minor_units', sa.Integer(), nullable=False),
        sa.Column('tax_minor_units', sa.Integer(), nullable=False),
        sa.Column('amount_minor_units', sa.Integer(), nullable=False),
        sa.Column('jurisdiction', sa.String(length=2), nullable=False),
        sa.Column('snapshot', sa.JSON(), nullable=False),
        sa.Column('issue_date', sa.Date(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number'),
        sa.UniqueConstraint('external_reference'),
        sa.CheckConstraint(
            _in_clause('status', ('draft', 'sent', 'paid', 'cancelled')), name='ck_invoices_status'
        ),
        sa.CheckConstraint('amount_minor_units >= 0', name='ck_invoices_amount')
    )
    op.create_index('ix_invoices_order_id', 'invoices', ['order_id'])
    op.create_index('ix_invoices_due_date', 'invoices', ['due_date'])
    op.create_index('ix_invoices_status_due', 'invoices', ['status', 'due_date'])

    # Create payments table
    op.create_table('payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('external_reference', sa.String(length=255), nullable=False),
        sa.Column('amount_minor_units', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('failure_reason', sa.Text(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('external_reference', name='uq_payments_external_reference'),
        sa.CheckConstraint(
            _in_clause('status', ('succeeded', 'refunded', 'failed')), name='ck_payments_status'
        ),
        sa.CheckConstraint(
            _in_clause('payment_method', ('card', 'cash', 'check', 'wire', 'other')),
            name='ck_payments_method'
        )
    )
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])

    # Create manual_completions table (duplicate-submission guard)
    op.create_table('manual_completions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('amount_minor_units', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('order_id', name='uq_manual_completions_order')
    )

    # Create processed_webhook_events table (idempotency keys)
    op.create_table('processed_webhook_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('event_id', name='uq_processed_webhook_events_event')
    )

    # Create reminder_logs table (append-only)
    op.create_table('reminder_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=False),
        sa.Column('reminder_type', sa.String(length=16), nullable=False),
        sa.Column('days_until_due', sa.Integer(), nullable=False),
        sa.Column('recipient', sa.String(length=255), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('sent_on', sa.Date(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            _in_clause('reminder_type', ('upcoming', 'due_today', 'overdue')),
            name='ck_reminder_logs_type'
        ),
        sa.CheckConstraint(_in_clause('status', ('sent', 'failed')), name='ck_reminder_logs_status')
    )
    op.create_index('ix_reminder_logs_order_id', 'reminder_logs', ['order_id'])
    op.create_index('ix_reminder_logs_order_sent_on', 'reminder_logs', ['order_id', 'sent_on'])

    # Create reminder_pauses table
    op.create_table('reminder_pauses',
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('paused_by', sa.String(length=64), nullable=False),
        sa.Column('paused_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.PrimaryKeyConstraint('order_id')
    )

    # Create sequence_counters table
    op.create_table('sequence_counters',
        sa.Column('name', sa.String(length=64), nullable=False),
        sa.Column('current_value', sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint('name')
    )

    # Create typed settings singletons
    op.create_table('tax_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('default_jurisdiction', sa.String(length=2), nullable=False),
        sa.Column('include_in_price', sa.Boolean(), nullable=False),
        sa.Column('auto_apply_tax', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('id = 1', name='ck_tax_settings_singleton')
    )

    op.create_table('invoice_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_name', sa.String(length=255), nullable=False),
        sa.Column('company_address', sa.Text(), nullable=True),
        sa.Column('company_phone', sa.String(length=32), nullable=True),
        sa.Column('company_email', sa.String(length=255), nullable=True),
        sa.Column('payment_terms_days', sa.Integer(), nullable=False),
        sa.Column('invoice_prefix', sa.String(length=16), nullable=False),
        sa.Column('starting_number', sa.Integer(), nullable=False),
        sa.Column('default_notes', sa.Text(), nullable=True),
        sa.Column('auto_send_on_quote_accept', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('id = 1', name='ck_invoice_settings_singleton'),
        sa.CheckConstraint('payment_terms_days >= 1', name='ck_invoice_settings_terms')
    )

    op.create_table('reminder_settings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('days_before', sa.JSON(), nullable=False),
        sa.Column('days_after', sa.JSON(), nullable=False),
        sa.Column('max_reminders', sa.Integer(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('id = 1', name='ck_reminder_settings_singleton'),
        sa.CheckConstraint('max_reminders >= 1', name='ck_reminder_settings_max')
    )

    # Create audit_logs table (append-only)
    op.create_table('audit_logs',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('action', sa.String(length=64), nullable=False),
        sa.Column('actor_id', sa.String(length=64), nullable=False),
        sa.Column('target_type', sa.String(length=32), nullable=False),
        sa.Column('target_id', sa.String(length=64), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_target', 'audit_logs', ['target_type', 'target_id'])

    # Stamp the schema version
    schema_version = sa.table('schema_version',
        sa.column('id', sa.Integer),
        sa.column('version', sa.Integer),
        sa.column('applied_at', sa.DateTime)
    )
    op.bulk_insert(schema_version, [
        {'id': 1, 'version': SCHEMA_VERSION, 'applied_at': datetime.now(timezone.utc).replace(tzinfo=None)}
    ])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('reminder_settings')
    op.drop_table('invoice_settings')
    op.drop_table('tax_settings')
    op.drop_table('sequence_counters')
    op.drop_table('reminder_pauses')
    op.drop_table('reminder_logs')
    op.drop_table('processed_webhook_events')
    op.drop_table('manual_completions')
    op.drop_table('payments')
    op.drop_table('invoices')
    op.drop_table('order_status_history')
    op.drop_table('orders')
    op.drop_table('schema_version')
