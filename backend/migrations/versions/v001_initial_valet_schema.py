"""initial valet schema

Revision ID: v001_initial
Revises:
Create Date: 2026-10-17 00:00:00.000000

Creates the complete valet schema:
- locations: valet stands with embedded tier schedules
- tickets: one engagement per vehicle, with optimistic version counter
- message_templates / messages: SMS history (append-only)
- payments: hosted-link payments and refunds against a ticket
- audit_logs: append-only record of state changes
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'v001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    # ============================================================================
    # locations
    # ============================================================================
    op.create_table(
        'locations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('identifier', sa.String(length=64), nullable=False),
        sa.Column('overnight_rate_cents', sa.Integer(), nullable=False),
        sa.Column('overnight_in_out_allowed', sa.Boolean(), nullable=False, server_default='1'),
        sa.Column('tax_rate_bps', sa.Integer(), nullable=False, server_default='2325'),
        sa.Column('revenue_share_bps', sa.Integer(), nullable=False, server_default='500'),
        sa.Column('pricing_tiers', sa.JSON(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_locations_identifier', 'locations', ['identifier'], unique=True)

    # ============================================================================
    # tickets
    # ============================================================================
    op.create_table(
        'tickets',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('location_id', sa.Integer(), nullable=False),
        sa.Column('ticket_number', sa.String(length=50), nullable=False),
        sa.Column('customer_name', sa.String(length=120), nullable=False),
        sa.Column('customer_phone', sa.String(length=30), nullable=False),
        sa.Column('customer_phone_e164', sa.String(length=20), nullable=True),
        sa.Column('vehicle_make', sa.String(length=80), nullable=False),
        sa.Column('vehicle_model', sa.String(length=80), nullable=False),
        sa.Column('vehicle_color', sa.String(length=60), nullable=True),
        sa.Column('license_plate', sa.String(length=40), nullable=True),
        sa.Column('parking_location', sa.String(length=80), nullable=True),
        sa.Column('rate_type', sa.String(length=16), nullable=False),
        sa.Column('in_out_privileges', sa.Boolean(), nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='CHECKED_IN'),
        sa.Column('vehicle_status', sa.String(length=16), nullable=False, server_default='WITH_US'),
        sa.Column('check_in_time', sa.DateTime(), nullable=False),
        sa.Column('check_out_time', sa.DateTime(), nullable=True),
        sa.Column('duration_hours', sa.Integer(), nullable=True),
        sa.Column('duration_days', sa.Integer(), nullable=True),
        sa.Column('will_return', sa.Boolean(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['location_id'], ['locations.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_tickets_location_id', 'tickets', ['location_id'])
    op.create_index('ix_tickets_customer_phone', 'tickets', ['customer_phone'])
    op.create_index('ix_tickets_status', 'tickets', ['status'])
    op.create_index('ix_tickets_vehicle_status', 'tickets', ['vehicle_status'])
    op.create_index('ix_tickets_check_in_time', 'tickets', ['check_in_time'])
    op.create_index('ix_tickets_location_number', 'tickets', ['location_id', 'ticket_number'])
    op.create_index('ix_tickets_status_phone', 'tickets', ['status', 'customer_phone_e164'])

    # ============================================================================
    # message_templates / messages
    # ============================================================================
    op.create_table(
        'message_templates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ticket_id', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('delivery_status', sa.String(length=16), nullable=False, server_default='SENT'),
        sa.Column('template_id', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['template_id'], ['message_templates.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_messages_ticket_id', 'messages', ['ticket_id'])
    op.create_index('ix_messages_sent_at', 'messages', ['sent_at'])
    op.create_index('ix_messages_ticket_sent', 'messages', ['ticket_id', 'sent_at'])

    # ============================================================================
    # payments
    # ============================================================================
    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ticket_id', sa.Integer(), nullable=False),
        sa.Column('amount_cents', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=24), nullable=False, server_default='PENDING'),
        sa.Column('provider_link_id', sa.String(length=128), nullable=True),
        sa.Column('link_url', sa.String(length=512), nullable=True),
        sa.Column('refund_amount_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('refunded_at', sa.DateTime(), nullable=True),
        sa.Column('provider_refund_id', sa.String(length=128), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('refund_amount_cents >= 0', name='ck_payments_refund_non_negative'),
        sa.CheckConstraint('refund_amount_cents <= amount_cents', name='ck_payments_refund_le_amount'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_payments_ticket_id', 'payments', ['ticket_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_provider_link_id', 'payments', ['provider_link_id'])
    op.create_index('ix_payments_created_at', 'payments', ['created_at'])

    # ============================================================================
    # audit_logs
    # ============================================================================
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('ticket_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(length=32), nullable=False),
        sa.Column('actor', sa.String(length=120), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('occurred_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_audit_logs_ticket_id', 'audit_logs', ['ticket_id'])
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_occurred_at', 'audit_logs', ['occurred_at'])
    op.create_index('ix_audit_logs_ticket_occurred', 'audit_logs', ['ticket_id', 'occurred_at'])


def downgrade():
    op.drop_table('audit_logs')
    op.drop_table('payments')
    op.drop_table('messages')
    op.drop_table('message_templates')
    op.drop_table('tickets')
    op.drop_table('locations')
