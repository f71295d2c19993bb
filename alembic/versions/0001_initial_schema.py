"""Initial schema: jobs, marketplace sync, orders, tickets and outbound deliveries.

Revision ID: 0001_initial_schema
Revises:
Create Date: 2026-10-18

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_initial_schema'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # jobs
    # ==========================================================================
    op.create_table(
        'jobs',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('status', sa.String(20), server_default='pending', nullable=False),
        sa.Column('attempts', sa.Integer(), server_default='0', nullable=False),
        sa.Column('max_attempts', sa.Integer(), server_default='8', nullable=False),
        sa.Column('next_run_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('locked_by', sa.String(100), nullable=True),
        sa.Column('locked_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(255), nullable=True),
        *_timestamps(),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(
        'idx_jobs_claimable',
        'jobs',
        ['status', 'next_run_at'],
        postgresql_where=sa.text("status IN ('pending', 'retry')"),
    )
    op.create_index('idx_jobs_tenant', 'jobs', ['tenant_id', 'created_at'])
    op.create_index('idx_jobs_status_updated', 'jobs', ['status', 'updated_at'])
    op.create_index(
        'uq_job_idempotency',
        'jobs',
        ['idempotency_key'],
        unique=True,
        postgresql_where=sa.text('idempotency_key IS NOT NULL'),
    )

    # ==========================================================================
    # marketplace_connections + sync_states
    # ==========================================================================
    op.create_table(
        'marketplace_connections',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('status', sa.String(20), server_default='connected', nullable=False),
        sa.Column('seller_id', sa.String(64), nullable=True),
        sa.Column('marketplace_id', sa.String(32), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', name='uq_marketplace_connection_tenant'),
    )

    op.create_table(
        'sync_states',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('system', sa.String(50), nullable=False),
        sa.Column('cursor', sa.String(64), nullable=True),
        sa.Column('last_polled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('backfill_status', sa.String(20), server_default='not_started', nullable=False),
        sa.Column('backfill_days', sa.Integer(), nullable=True),
        sa.Column('backfill_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('initial_backfill_done_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'system', name='uq_sync_state_tenant_system'),
    )

    op.create_table(
        'tenant_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('system', sa.String(50), nullable=False),
        sa.Column('secret', sa.Text(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'system', name='uq_tenant_credential_system'),
    )

    # ==========================================================================
    # orders + order_items
    # ==========================================================================
    op.create_table(
        'orders',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('connection_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('external_order_id', sa.String(64), nullable=False),
        sa.Column('order_ref', sa.String(16), nullable=False),
        sa.Column('status', sa.String(20), server_default='PENDING', nullable=False),
        sa.Column('external_status', sa.String(40), nullable=True),
        sa.Column('delivery_status', sa.String(20), server_default='PREPARING', nullable=False),
        sa.Column('carrier', sa.String(100), nullable=True),
        sa.Column('fulfillment_channel', sa.String(20), nullable=True),
        sa.Column('purchase_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_update_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('buyer_email', sa.String(255), nullable=True),
        sa.Column('buyer_name', sa.String(255), nullable=True),
        sa.Column('order_total', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.Column('ship_city', sa.String(100), nullable=True),
        sa.Column('ship_country', sa.String(2), nullable=True),
        sa.Column('raw', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(['connection_id'], ['marketplace_connections.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('tenant_id', 'external_order_id', name='uq_order_external'),
    )
    op.create_index('idx_orders_tenant_updated', 'orders', ['tenant_id', 'last_update_date'])

    op.create_table(
        'order_items',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('order_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('external_item_id', sa.String(64), nullable=False),
        sa.Column('sku', sa.String(100), nullable=True),
        sa.Column('asin', sa.String(20), nullable=True),
        sa.Column('title', sa.String(500), nullable=True),
        sa.Column('quantity', sa.Integer(), server_default='0', nullable=False),
        sa.Column('quantity_shipped', sa.Integer(), server_default='0', nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=True),
        sa.Column('currency', sa.String(3), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_order_items_order_id', 'order_items', ['order_id'])

    # ==========================================================================
    # tickets, ticket_messages, outbound_deliveries
    # ==========================================================================
    op.create_table(
        'tickets',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('connection_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('subject', sa.String(500), nullable=True),
        sa.Column('customer_handle', sa.String(255), nullable=True),
        sa.Column('external_order_id', sa.String(64), nullable=True),
        sa.Column('last_inbound_message_id', sa.String(255), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['connection_id'], ['marketplace_connections.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tickets_tenant_id', 'tickets', ['tenant_id'])

    op.create_table(
        'ticket_messages',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('ticket_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('direction', sa.String(10), server_default='outbound', nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('external_message_id', sa.String(255), nullable=True),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ticket_messages_ticket_id', 'ticket_messages', ['ticket_id'])

    op.create_table(
        'outbound_deliveries',
        sa.Column('id', postgresql.UUID(as_uuid=True), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('tenant_id', sa.String(64), nullable=False),
        sa.Column('connection_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('ticket_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), server_default='queued', nullable=False),
        sa.Column('attempt_count', sa.Integer(), server_default='0', nullable=False),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('claimed_by', sa.String(100), nullable=True),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('target_address', sa.String(255), nullable=True),
        sa.Column('external_order_id', sa.String(64), nullable=True),
        sa.Column('subject', sa.String(500), nullable=True),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('content_hash', sa.String(64), nullable=False),
        sa.Column('dedupe_key', sa.String(128), nullable=False),
        sa.Column('last_error', sa.String(500), nullable=True),
        sa.Column('trace', postgresql.JSONB(), server_default=sa.text("'{}'::jsonb"), nullable=False),
        sa.Column('external_message_id', sa.String(255), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['connection_id'], ['marketplace_connections.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['ticket_id'], ['tickets.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['message_id'], ['ticket_messages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dedupe_key', name='uq_outbound_delivery_content'),
    )
    op.create_index(
        'idx_outbound_claimable',
        'outbound_deliveries',
        ['status', 'next_retry_at', 'created_at'],
        postgresql_where=sa.text("status = 'queued'"),
    )


def downgrade() -> None:
    op.drop_index('idx_outbound_claimable', table_name='outbound_deliveries')
    op.drop_table('outbound_deliveries')
    op.drop_index('ix_ticket_messages_ticket_id', table_name='ticket_messages')
    op.drop_table('ticket_messages')
    op.drop_index('ix_tickets_tenant_id', table_name='tickets')
    op.drop_table('tickets')
    op.drop_index('ix_order_items_order_id', table_name='order_items')
    op.drop_table('order_items')
    op.drop_index('idx_orders_tenant_updated', table_name='orders')
    op.drop_table('orders')
    op.drop_table('tenant_credentials')
    op.drop_table('sync_states')
    op.drop_table('marketplace_connections')
    op.drop_index('uq_job_idempotency', table_name='jobs')
    op.drop_index('idx_jobs_status_updated', table_name='jobs')
    op.drop_index('idx_jobs_tenant', table_name='jobs')
    op.drop_index('idx_jobs_claimable', table_name='jobs')
    op.drop_table('jobs')
