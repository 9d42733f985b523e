"""Add Meta CAPI outbox tables

Revision ID: 20261016_000001
Revises:
Create Date: 2026-10-16

WHAT:
    Creates the tenant, CAPI configuration, credential, outbox and health
    tables used by server-side conversion delivery.

WHY:
    Conversions are persisted before delivery (outbox pattern) so Meta
    outages, expired tokens and worker crashes never lose an event.
    - (organization_id, event_id) and (organization_id, dedupe_key) are
      unique so re-ingestion upserts instead of duplicating.
    - (status, next_retry_at) backs the due-event selection of every pass.

REFERENCES:
    - app/models.py:ConversionEvent
    - app/services/capi_outbox_processor.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261016_000001'
down_revision = None
branch_labels = None
depends_on = None


conversion_status = sa.Enum('pending', 'retrying', 'sent', 'failed', name='conversionstatusenum')
privacy_mode = sa.Enum('conservative', 'standard', 'aggressive', name='privacymodeenum')
credential_format = sa.Enum('plaintext', 'encrypted', name='credentialformatenum')


def upgrade() -> None:
    op.create_table(
        'organizations',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'meta_capi_config',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False, unique=True),
        sa.Column('pixel_id', sa.String(), nullable=False),
        sa.Column('is_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('privacy_mode', privacy_mode, nullable=False, server_default='conservative'),
        sa.Column('allowed_fields', sa.JSON(), nullable=True),
        sa.Column('test_event_code', sa.String(), nullable=True),
        sa.Column('donation_event_name', sa.String(), nullable=False, server_default='Purchase'),
        sa.Column('upstream_owns_conversion', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        'client_api_credentials',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('platform', sa.String(), nullable=False, server_default='meta_capi'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('storage_format', credential_format, nullable=False, server_default='encrypted'),
        sa.Column('credentials', sa.JSON(), nullable=True),
        sa.Column('encrypted_credentials', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rotated_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_client_api_credentials_organization_id', 'client_api_credentials', ['organization_id'])

    op.create_table(
        'meta_conversion_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), nullable=False),
        sa.Column('event_id', sa.String(), nullable=False),
        sa.Column('dedupe_key', sa.String(), nullable=False),
        sa.Column('source_type', sa.String(), nullable=True),
        sa.Column('source_id', sa.String(), nullable=True),
        sa.Column('event_name', sa.String(), nullable=False, server_default='Purchase'),
        sa.Column('event_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('event_source_url', sa.String(), nullable=True),
        sa.Column('user_data_hashed', sa.JSON(), nullable=False),
        sa.Column('custom_data', sa.JSON(), nullable=False),
        sa.Column('fbp', sa.String(), nullable=True),
        sa.Column('fbc', sa.String(), nullable=True),
        sa.Column('external_id', sa.String(), nullable=True),
        sa.Column('pixel_id', sa.String(), nullable=True),
        sa.Column('is_enrichment_only', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('match_score', sa.Integer(), nullable=True),
        sa.Column('match_quality', sa.String(), nullable=True),
        sa.Column('status', conversion_status, nullable=False, server_default='pending'),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('lease_token', sa.String(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_status_code', sa.Integer(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('meta_response', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('organization_id', 'event_id', name='uq_conversion_event_org_event_id'),
        sa.UniqueConstraint('organization_id', 'dedupe_key', name='uq_conversion_event_org_dedupe_key'),
    )
    op.create_index('ix_meta_conversion_events_organization_id', 'meta_conversion_events', ['organization_id'])
    op.create_index('ix_conversion_events_status_next_retry', 'meta_conversion_events', ['status', 'next_retry_at'])

    op.create_table(
        'capi_health_stats',
        sa.Column('organization_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('organizations.id'), primary_key=True),
        sa.Column('total_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('window_started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('window_sent', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('window_failed', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('last_error_kind', sa.String(), nullable=True),
        sa.Column('last_success_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_failure_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_table('capi_health_stats')
    op.drop_index('ix_conversion_events_status_next_retry', table_name='meta_conversion_events')
    op.drop_index('ix_meta_conversion_events_organization_id', table_name='meta_conversion_events')
    op.drop_table('meta_conversion_events')
    op.drop_index('ix_client_api_credentials_organization_id', table_name='client_api_credentials')
    op.drop_table('client_api_credentials')
    op.drop_table('meta_capi_config')
    op.drop_table('organizations')

    bind = op.get_bind()
    credential_format.drop(bind, checkfirst=True)
    privacy_mode.drop(bind, checkfirst=True)
    conversion_status.drop(bind, checkfirst=True)
