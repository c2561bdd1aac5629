"""initial

Revision ID: 001_initial
Revises:
Create Date: 2024-06-01 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Companies
    op.create_table('companies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('slug', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='trial'),
        sa.Column('credit_balance', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('allow_negative_balance', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('trial_credits_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('features_enabled', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug')
    )

    # Properties
    op.create_table('properties',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('timezone', sa.String(), nullable=False, server_default='Australia/Sydney'),
        sa.Column('address_text', sa.String(), nullable=True),
        sa.Column('support_phone_e164', sa.String(), nullable=True),
        sa.Column('support_email', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_properties_company_id'), 'properties', ['company_id'], unique=False)
    op.create_index(op.f('ix_properties_support_phone_e164'), 'properties', ['support_phone_e164'], unique=False)
    op.create_index(op.f('ix_properties_support_email'), 'properties', ['support_email'], unique=False)

    # Property Settings
    op.create_table('property_settings',
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('auto_reply_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sms_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('email_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('schedule_t3_time', sa.String(length=5), nullable=False, server_default='10:00'),
        sa.Column('schedule_t1_time', sa.String(length=5), nullable=False, server_default='16:00'),
        sa.Column('schedule_day_of_time', sa.String(length=5), nullable=False, server_default='09:00'),
        sa.Column('checkin_time', sa.String(length=5), nullable=False, server_default='14:00'),
        sa.Column('checkout_time', sa.String(length=5), nullable=False, server_default='10:00'),
        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('property_id')
    )

    # Automation Settings
    op.create_table('automation_settings',
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('auto_reply_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('confidence_threshold', sa.Float(), nullable=False, server_default='0.7'),
        sa.Column('quiet_hours_start', sa.String(length=5), nullable=False, server_default='22:00'),
        sa.Column('quiet_hours_end', sa.String(length=5), nullable=False, server_default='08:00'),
        sa.Column('escalation_intents', sa.JSON(), nullable=False),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('company_id')
    )

    # Stays
    op.create_table('stays',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=False),
        sa.Column('guest_name', sa.String(), nullable=False),
        sa.Column('guest_phone_e164', sa.String(), nullable=True),
        sa.Column('guest_email', sa.String(), nullable=True),
        sa.Column('checkin_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('checkout_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='booked'),
        sa.Column('preferred_channel', sa.String(), nullable=False, server_default='sms'),
        sa.Column('notes_internal', sa.Text(), nullable=True),
        sa.Column('is_placeholder', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_stays_property_id'), 'stays', ['property_id'], unique=False)
    op.create_index(op.f('ix_stays_guest_phone_e164'), 'stays', ['guest_phone_e164'], unique=False)
    op.create_index(op.f('ix_stays_guest_email'), 'stays', ['guest_email'], unique=False)
    op.create_index('uq_stays_placeholder_phone', 'stays', ['property_id', 'guest_phone_e164'], unique=True,
                    postgresql_where=sa.text('is_placeholder'), sqlite_where=sa.text('is_placeholder'))
    op.create_index('uq_stays_placeholder_email', 'stays', ['property_id', 'guest_email'], unique=True,
                    postgresql_where=sa.text('is_placeholder'), sqlite_where=sa.text('is_placeholder'))

    # Threads
    op.create_table('threads',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('stay_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='open'),
        sa.Column('last_message_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_channel', sa.String(), nullable=True),
        sa.Column('assigned_user_id', sa.Integer(), nullable=True),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['stay_id'], ['stays.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stay_id')
    )
    op.create_index(op.f('ix_threads_status'), 'threads', ['status'], unique=False)

    # Messages
    op.create_table('messages',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('thread_id', sa.Integer(), nullable=False),
        sa.Column('sequence', sa.Integer(), nullable=False),
        sa.Column('direction', sa.String(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('kind', sa.String(), nullable=False, server_default='guest'),
        sa.Column('rule_key', sa.String(), nullable=True),
        sa.Column('from_addr', sa.String(), nullable=True),
        sa.Column('to_addr', sa.String(), nullable=True),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('body_text', sa.Text(), nullable=False),
        sa.Column('provider', sa.String(), nullable=True),
        sa.Column('provider_message_id', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=False, server_default='queued'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('send_after', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credits_deducted', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['thread_id'], ['threads.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider_message_id'),
        sa.UniqueConstraint('thread_id', 'sequence', name='uq_message_thread_sequence')
    )
    op.create_index(op.f('ix_messages_send_after'), 'messages', ['send_after'], unique=False)

    # Credit ledger
    op.create_table('credit_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(), nullable=False),
        sa.Column('reference_type', sa.String(), nullable=True),
        sa.Column('reference_id', sa.Integer(), nullable=True),
        sa.Column('description', sa.String(), nullable=True),
        sa.Column('balance_after', sa.Integer(), nullable=False),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('created_by', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', 'idempotency_key', name='uq_credit_txn_idempotency')
    )
    op.create_index('ix_credit_txn_company_created', 'credit_transactions', ['company_id', 'created_at'], unique=False)

    op.create_table('credit_config',
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('description', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('key')
    )

    # Templates
    op.create_table('templates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=True),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('rule_key', sa.String(), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id', 'channel', 'rule_key', 'version', name='uq_template_version')
    )

    # Reminder markers
    op.create_table('reminder_jobs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('stay_id', sa.Integer(), nullable=False),
        sa.Column('rule_key', sa.String(), nullable=False),
        sa.Column('channel', sa.String(), nullable=False),
        sa.Column('send_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('status', sa.String(), nullable=False, server_default='sending'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('message_id', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['stay_id'], ['stays.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stay_id', 'rule_key', 'channel', name='uq_reminder_stay_rule_channel')
    )

    # Suggestion drafts
    op.create_table('suggestion_drafts',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('thread_id', sa.Integer(), nullable=False),
        sa.Column('message_id', sa.Integer(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['thread_id'], ['threads.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['message_id'], ['messages.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_suggestion_drafts_thread_id'), 'suggestion_drafts', ['thread_id'], unique=False)

    # Notification integrations
    op.create_table('integration_configs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('property_id', sa.Integer(), nullable=True),
        sa.Column('name', sa.String(), nullable=False, server_default='telegram'),
        sa.Column('telegram_chat_ids', sa.JSON(), nullable=False),
        sa.Column('rate_limit_per_min', sa.Integer(), nullable=False, server_default='60'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notify_on_auto_reply', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['property_id'], ['properties.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_integration_configs_company_id'), 'integration_configs', ['company_id'], unique=False)

    op.create_table('integration_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('config_id', sa.Integer(), nullable=True),
        sa.Column('company_id', sa.Integer(), nullable=False),
        sa.Column('thread_id', sa.Integer(), nullable=True),
        sa.Column('kind', sa.String(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('recipients', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['config_id'], ['integration_configs.id'], ondelete='SET NULL'),
        sa.ForeignKeyConstraint(['company_id'], ['companies.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['thread_id'], ['threads.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_integration_logs_company_id'), 'integration_logs', ['company_id'], unique=False)

    # Default credit costs
    op.bulk_insert(
        sa.table('credit_config',
            sa.column('key', sa.String()),
            sa.column('value', sa.Integer()),
            sa.column('description', sa.String()),
        ),
        [
            {'key': 'sms_ai_cost', 'value': 2, 'description': 'Automated SMS (auto-reply, reminder)'},
            {'key': 'sms_manual_cost', 'value': 1, 'description': 'Staff SMS reply'},
            {'key': 'email_ai_cost', 'value': 1, 'description': 'Automated email'},
            {'key': 'email_manual_cost', 'value': 1, 'description': 'Staff email reply'},
            {'key': 'trial_credits', 'value': 200, 'description': 'Credits granted to new trial companies'},
        ]
    )


def downgrade() -> None:
    op.drop_index(op.f('ix_integration_logs_company_id'), table_name='integration_logs')
    op.drop_table('integration_logs')
    op.drop_index(op.f('ix_integration_configs_company_id'), table_name='integration_configs')
    op.drop_table('integration_configs')
    op.drop_index(op.f('ix_suggestion_drafts_thread_id'), table_name='suggestion_drafts')
    op.drop_table('suggestion_drafts')
    op.drop_table('reminder_jobs')
    op.drop_table('templates')
    op.drop_table('credit_config')
    op.drop_index('ix_credit_txn_company_created', table_name='credit_transactions')
    op.drop_table('credit_transactions')
    op.drop_index(op.f('ix_messages_send_after'), table_name='messages')
    op.drop_table('messages')
    op.drop_index(op.f('ix_threads_status'), table_name='threads')
    op.drop_table('threads')
    op.drop_index('uq_stays_placeholder_email', table_name='stays')
    op.drop_index('uq_stays_placeholder_phone', table_name='stays')
    op.drop_index(op.f('ix_stays_guest_email'), table_name='stays')
    op.drop_index(op.f('ix_stays_guest_phone_e164'), table_name='stays')
    op.drop_index(op.f('ix_stays_property_id'), table_name='stays')
    op.drop_table('stays')
    op.drop_table('automation_settings')
    op.drop_table('property_settings')
    op.drop_index(op.f('ix_properties_support_email'), table_name='properties')
    op.drop_index(op.f('ix_properties_support_phone_e164'), table_name='properties')
    op.drop_index(op.f('ix_properties_company_id'), table_name='properties')
    op.drop_table('properties')
    op.drop_table('companies')
