"""Baseline migration - mailbox connections, leads, messages, stage artifacts

Revision ID: 0001_baseline
Revises:
Create Date: 2026-10-18

Creates every table the ingestion and reply pipeline needs.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


JSON = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
TS = sa.DateTime(timezone=True)


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    columns = [sa.Column('created_at', TS, nullable=False, server_default=sa.func.now())]
    if updated:
        columns.append(sa.Column('updated_at', TS, nullable=False, server_default=sa.func.now()))
    return columns


def upgrade() -> None:
    """Create pipeline tables."""

    # ==========================================================================
    # Agents and listings
    # ==========================================================================
    op.create_table(
        'agents',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('email', sa.String(320), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255)),
        sa.Column('brand_name', sa.String(255)),
        sa.Column('signature', sa.Text()),
        sa.Column('language', sa.String(10), nullable=False, server_default='de'),
        sa.Column('tone_notes', sa.Text()),
        sa.Column('autosend_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )

    op.create_table(
        'properties',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('agent_id', sa.Uuid(), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(255)),
        sa.Column('uri', sa.Text()),
        sa.Column('street_address', sa.String(255)),
        sa.Column('city', sa.String(120)),
        sa.Column('neighbourhood', sa.String(120)),
        sa.Column('price', sa.Numeric(12, 2)),
        sa.Column('rooms', sa.Numeric(4, 1)),
        sa.Column('size_sqm', sa.Integer()),
        sa.Column('available_from', sa.Date()),
        sa.Column('furnished', sa.Boolean()),
        sa.Column('pets_allowed', sa.Boolean()),
        sa.Column('description', sa.Text()),
        *_timestamps(updated=False),
    )
    op.create_index('idx_properties_agent_city', 'properties', ['agent_id', 'city'])
    op.create_index('idx_properties_agent_uri', 'properties', ['agent_id', 'uri'])

    # ==========================================================================
    # Mailbox connections
    # ==========================================================================
    op.create_table(
        'connections',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('agent_id', sa.Uuid(), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('mailbox_address', sa.String(320), nullable=False),
        sa.Column('access_token_encrypted', sa.Text()),
        sa.Column('refresh_token_encrypted', sa.Text()),
        sa.Column('token_expires_at', TS),
        sa.Column('sync_cursor', sa.Text()),
        sa.Column('watch_expiration', TS),
        sa.Column('subscription_id', sa.String(255)),
        sa.Column('status', sa.String(30), nullable=False, server_default='connected'),
        sa.Column('last_error', sa.Text()),
        sa.Column('last_sync_at', TS),
        sa.Column('last_backfill_at', TS),
        *_timestamps(),
        sa.UniqueConstraint('agent_id', 'provider', name='uq_connections_agent_provider'),
    )
    op.create_index('idx_connections_mailbox', 'connections', ['provider', 'mailbox_address'])
    op.create_index('idx_connections_subscription', 'connections', ['subscription_id'])

    # ==========================================================================
    # Leads and messages
    # ==========================================================================
    op.create_table(
        'leads',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('agent_id', sa.Uuid(), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_thread_id', sa.String(255), nullable=False),
        sa.Column('conversation_id', sa.String(255)),
        sa.Column('email', sa.String(320)),
        sa.Column('name', sa.String(255)),
        sa.Column('subject', sa.Text()),
        sa.Column('email_type', sa.String(30)),
        sa.Column('last_message_at', TS),
        sa.Column('last_message_preview', sa.Text()),
        sa.Column(
            'active_property_id',
            sa.Uuid(),
            sa.ForeignKey('properties.id', ondelete='SET NULL'),
        ),
        sa.Column('suggested_property_ids', JSON, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('agent_id', 'provider_thread_id', name='uq_leads_agent_thread'),
    )
    op.create_index('idx_leads_agent_last_message', 'leads', ['agent_id', 'last_message_at'])

    op.create_table(
        'messages',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('agent_id', sa.Uuid(), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('lead_id', sa.Uuid(), sa.ForeignKey('leads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('sender', sa.String(10), nullable=False),
        sa.Column('subject', sa.Text()),
        sa.Column('text', sa.Text()),
        sa.Column('snippet', sa.Text()),
        sa.Column('from_address', sa.String(320)),
        sa.Column('to_address', sa.String(320)),
        sa.Column('provider_message_id', sa.String(255)),
        sa.Column('provider_thread_id', sa.String(255)),
        sa.Column('rfc_message_id', sa.Text()),
        sa.Column(
            'reply_to_message_id',
            sa.Uuid(),
            sa.ForeignKey('messages.id', ondelete='SET NULL'),
        ),
        sa.Column('draft_revision', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attachments', JSON, nullable=False),
        sa.Column('timestamp', TS, nullable=False),
        sa.Column('status', sa.String(30), nullable=False),
        sa.Column('approval_required', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('email_type', sa.String(30)),
        sa.Column('classification_confidence', sa.Float()),
        sa.Column('send_status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('send_locked_at', TS),
        sa.Column('send_error', sa.Text()),
        sa.Column('sent_at', TS),
        *_timestamps(),
    )
    op.create_index(
        'uq_messages_provider_message_id', 'messages', ['provider_message_id'], unique=True
    )
    op.create_index('idx_messages_status_timestamp', 'messages', ['status', 'timestamp'])
    op.create_index('idx_messages_lead_timestamp', 'messages', ['lead_id', 'timestamp'])

    # ==========================================================================
    # Stage artifacts (write-once, unique per subject + version)
    # ==========================================================================
    op.create_table(
        'message_classifications',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('agent_id', sa.Uuid(), sa.ForeignKey('agents.id', ondelete='CASCADE'), nullable=False),
        sa.Column('provider_message_id', sa.String(255), nullable=False),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='SET NULL')),
        sa.Column('model_version', sa.String(50), nullable=False),
        sa.Column('decision', sa.String(30), nullable=False),
        sa.Column('email_type', sa.String(30), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('signals', JSON, nullable=False),
        *_timestamps(updated=False),
        sa.UniqueConstraint(
            'provider_message_id', 'model_version', name='uq_classifications_message_version'
        ),
    )

    op.create_table(
        'message_intents',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prompt_version', sa.String(50), nullable=False),
        sa.Column('intent', sa.String(40), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('entities', JSON, nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('model', sa.String(100)),
        *_timestamps(updated=False),
        sa.UniqueConstraint('message_id', 'prompt_version', name='uq_intents_message_version'),
    )

    op.create_table(
        'message_routes',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('lead_id', sa.Uuid(), sa.ForeignKey('leads.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prompt_version', sa.String(50), nullable=False),
        sa.Column('route', sa.String(40), nullable=False),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('reason', sa.Text()),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('model', sa.String(100)),
        *_timestamps(updated=False),
        sa.UniqueConstraint('message_id', 'prompt_version', name='uq_routes_message_version'),
    )

    op.create_table(
        'message_drafts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prompt_version', sa.String(50), nullable=False),
        sa.Column('draft_message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='SET NULL')),
        sa.Column('outcome', sa.String(40)),
        *_timestamps(updated=False),
        sa.UniqueConstraint('message_id', 'prompt_version', name='uq_drafts_message_version'),
    )

    op.create_table(
        'message_qas',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prompt_version', sa.String(50), nullable=False),
        sa.Column('verdict', sa.String(10), nullable=False),
        sa.Column('score', sa.Float()),
        sa.Column('reason', sa.Text()),
        sa.Column('model', sa.String(100)),
        *_timestamps(updated=False),
        sa.UniqueConstraint('message_id', 'prompt_version', name='uq_qas_message_version'),
    )

    op.create_table(
        'message_rewrites',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('message_id', sa.Uuid(), sa.ForeignKey('messages.id', ondelete='CASCADE'), nullable=False),
        sa.Column('prompt_version', sa.String(50), nullable=False),
        sa.Column('previous_text', sa.Text()),
        sa.Column('outcome', sa.String(40), nullable=False),
        sa.Column('reason', sa.Text()),
        *_timestamps(updated=False),
        sa.UniqueConstraint('message_id', 'prompt_version', name='uq_rewrites_message_version'),
    )

    # ==========================================================================
    # Prompts and jobs
    # ==========================================================================
    op.create_table(
        'ai_prompts',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('key', sa.String(100), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('system_prompt', sa.Text(), nullable=False),
        sa.Column('user_prompt', sa.Text(), nullable=False),
        sa.Column('temperature', sa.Float()),
        sa.Column('max_tokens', sa.Integer()),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(updated=False),
        sa.UniqueConstraint('key', 'version', name='uq_ai_prompts_key_version'),
    )
    op.create_index('idx_ai_prompts_key_active', 'ai_prompts', ['key', 'is_active'])

    op.create_table(
        'jobs',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('agent_id', sa.Uuid(), sa.ForeignKey('agents.id', ondelete='CASCADE')),
        sa.Column('job_type', sa.String(50), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('run_at', TS, nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('last_error', sa.Text()),
        sa.Column('created_at', TS, nullable=False, server_default=sa.func.now()),
        sa.Column('completed_at', TS),
        sa.Column('idempotency_key', sa.String(255)),
    )
    op.create_index('idx_jobs_pending', 'jobs', ['status', 'run_at'])
    op.create_index('uq_job_idempotency', 'jobs', ['idempotency_key'], unique=True)


def downgrade() -> None:
    for table in (
        'jobs',
        'ai_prompts',
        'message_rewrites',
        'message_qas',
        'message_drafts',
        'message_routes',
        'message_intents',
        'message_classifications',
        'messages',
        'leads',
        'connections',
        'properties',
        'agents',
    ):
        op.drop_table(table)
