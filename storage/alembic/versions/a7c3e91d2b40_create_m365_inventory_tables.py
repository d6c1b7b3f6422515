"""create_m365_inventory_tables

Revision ID: a7c3e91d2b40
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP


# revision identifiers, used by Alembic.
revision = 'a7c3e91d2b40'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('graph_user_id', sa.String(64), nullable=False),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('email', sa.String(320), nullable=True),
        sa.Column('user_principal_name', sa.String(320), nullable=True),
        sa.Column('job_title', sa.String(255), nullable=True),
        sa.Column('department', sa.String(255), nullable=True),
        sa.Column('office_location', sa.String(255), nullable=True),
        sa.Column('account_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_date_time', TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_synced_at', TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint('graph_user_id', name='uq_users_graph_user_id')
    )
    op.create_index('idx_users_user_principal_name', 'users', ['user_principal_name'])
    op.create_index('idx_users_account_enabled', 'users', ['account_enabled'])

    op.create_table(
        'licenses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku_id', sa.String(64), nullable=False),
        sa.Column('sku_part_number', sa.String(255), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('total_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('consumed_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('available_units', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('capability_status', sa.String(50), nullable=True),
        sa.Column('applies_to', sa.String(50), nullable=True),
        sa.Column('service_plans', JSONB(), nullable=True),
        sa.Column('last_synced_at', TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint('sku_id', name='uq_licenses_sku_id')
    )
    op.create_index('idx_licenses_sku_part_number', 'licenses', ['sku_part_number'])

    op.create_table(
        'user_licenses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('license_id', sa.Integer(), sa.ForeignKey('licenses.id', ondelete='CASCADE'), nullable=False),
        sa.Column('sku_id', sa.String(64), nullable=False),
        sa.Column('last_synced_at', TIMESTAMP(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'sku_id', name='uq_user_licenses_user_sku')
    )
    op.create_index('idx_user_licenses_user_id', 'user_licenses', ['user_id'])
    op.create_index('idx_user_licenses_license_id', 'user_licenses', ['license_id'])

    op.create_table(
        'mailbox_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('graph_user_id', sa.String(320), nullable=True),
        sa.Column('display_name', sa.String(255), nullable=True),
        sa.Column('storage_used_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('item_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('issue_warning_quota_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('prohibit_send_quota_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('prohibit_send_receive_quota_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('deleted_date', sa.Date(), nullable=True),
        sa.Column('created_date', sa.Date(), nullable=True),
        sa.Column('last_activity_date', sa.Date(), nullable=True),
        sa.Column('report_period', sa.String(10), nullable=False, server_default='D7'),
        sa.Column('report_date', sa.Date(), nullable=False),
        sa.Column('report_refresh_date', sa.Date(), nullable=True),
        sa.Column('updated_at', TIMESTAMP(timezone=True), nullable=True, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('user_id', 'report_date', name='uq_mailbox_usage_user_report_date'),
        sa.CheckConstraint('storage_used_bytes >= 0', name='ck_mailbox_usage_storage_non_negative'),
        sa.CheckConstraint('item_count >= 0', name='ck_mailbox_usage_items_non_negative')
    )
    op.create_index('idx_mailbox_usage_report_date', 'mailbox_usage', ['report_date'])
    op.create_index('idx_mailbox_usage_user_id', 'mailbox_usage', ['user_id'])

    op.create_table(
        'onedrive_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('graph_user_id', sa.String(320), nullable=True),
        sa.Column('owner_display_name', sa.String(255), nullable=True),
        sa.Column('site_url', sa.Text(), nullable=True),
        sa.Column('storage_used_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('storage_allocated_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('file_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('active_file_count', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('is_deleted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('last_activity_date', sa.Date(), nullable=True),
        sa.Column('report_period', sa.String(10), nullable=False, server_default='D7'),
        sa.Column('report_date', sa.Date(), nullable=False),
        sa.Column('report_refresh_date', sa.Date(), nullable=True),
        sa.Column('updated_at', TIMESTAMP(timezone=True), nullable=True, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('user_id', 'report_date', name='uq_onedrive_usage_user_report_date'),
        sa.CheckConstraint('storage_used_bytes >= 0', name='ck_onedrive_usage_storage_non_negative'),
        sa.CheckConstraint('file_count >= 0', name='ck_onedrive_usage_files_non_negative')
    )
    op.create_index('idx_onedrive_usage_report_date', 'onedrive_usage', ['report_date'])
    op.create_index('idx_onedrive_usage_user_id', 'onedrive_usage', ['user_id'])

    op.create_table(
        'sync_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sync_type', sa.String(32), nullable=False),
        sa.Column('status', sa.String(16), nullable=False),
        sa.Column('records_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('completed_at', TIMESTAMP(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.CheckConstraint("status IN ('success', 'error', 'partial')", name='ck_sync_logs_status')
    )
    op.create_index('idx_sync_logs_started_at', 'sync_logs', ['started_at'])
    op.create_index('idx_sync_logs_sync_type', 'sync_logs', ['sync_type'])

    op.create_table(
        'sku_product_mappings',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('sku_part_number', sa.String(255), nullable=False),
        sa.Column('product_name', sa.String(255), nullable=False),
        sa.Column('source', sa.String(50), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', TIMESTAMP(timezone=True), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', TIMESTAMP(timezone=True), nullable=True, server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.UniqueConstraint('sku_part_number', name='uq_sku_product_mappings_sku_part_number')
    )
    op.create_index('idx_sku_product_mappings_active', 'sku_product_mappings', ['is_active'])


def downgrade():
    op.drop_index('idx_sku_product_mappings_active', 'sku_product_mappings')
    op.drop_table('sku_product_mappings')
    op.drop_index('idx_sync_logs_sync_type', 'sync_logs')
    op.drop_index('idx_sync_logs_started_at', 'sync_logs')
    op.drop_table('sync_logs')
    op.drop_index('idx_onedrive_usage_user_id', 'onedrive_usage')
    op.drop_index('idx_onedrive_usage_report_date', 'onedrive_usage')
    op.drop_table('onedrive_usage')
    op.drop_index('idx_mailbox_usage_user_id', 'mailbox_usage')
    op.drop_index('idx_mailbox_usage_report_date', 'mailbox_usage')
    op.drop_table('mailbox_usage')
    op.drop_index('idx_user_licenses_license_id', 'user_licenses')
    op.drop_index('idx_user_licenses_user_id', 'user_licenses')
    op.drop_table('user_licenses')
    op.drop_index('idx_licenses_sku_part_number', 'licenses')
    op.drop_table('licenses')
    op.drop_index('idx_users_account_enabled', 'users')
    op.drop_index('idx_users_user_principal_name', 'users')
    op.drop_table('users')
