from sqlalchemy import (
    Column, Integer, String, DateTime, Date, Text, ForeignKey,
    UniqueConstraint, Index, CheckConstraint, BigInteger, Boolean, JSON
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

from common.util import utcnow

# Create the base class for all models
Base = declarative_base()

# Create metadata instance
metadata = Base.metadata

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), 'postgresql')


class User(Base):
    """Directory user - one row per Graph user, never deleted by sync"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    graph_user_id = Column(String(64), nullable=False)
    display_name = Column(String(255), nullable=True)
    email = Column(String(320), nullable=True)
    user_principal_name = Column(String(320), nullable=True)
    job_title = Column(String(255), nullable=True)
    department = Column(String(255), nullable=True)
    office_location = Column(String(255), nullable=True)
    account_enabled = Column(Boolean, nullable=False, default=True)
    created_date_time = Column(DateTime(timezone=True), nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('graph_user_id', name='uq_users_graph_user_id'),
        Index('idx_users_user_principal_name', 'user_principal_name'),
        Index('idx_users_account_enabled', 'account_enabled'),
    )

    # Relationships
    licenses = relationship("UserLicense", back_populates="user")
    mailbox_usage = relationship("MailboxUsage", back_populates="user")
    onedrive_usage = relationship("OneDriveUsage", back_populates="user")


class License(Base):
    """Subscribed SKU - authoritative snapshot of unit counts"""
    __tablename__ = 'licenses'

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku_id = Column(String(64), nullable=False)
    sku_part_number = Column(String(255), nullable=True)
    display_name = Column(String(255), nullable=True)
    total_units = Column(Integer, nullable=False, default=0)
    consumed_units = Column(Integer, nullable=False, default=0)
    available_units = Column(Integer, nullable=False, default=0)
    capability_status = Column(String(50), nullable=True)
    applies_to = Column(String(50), nullable=True)
    service_plans = Column(JSONType, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('sku_id', name='uq_licenses_sku_id'),
        Index('idx_licenses_sku_part_number', 'sku_part_number'),
    )

    # Relationships
    assignments = relationship("UserLicense", back_populates="license")


class UserLicense(Base):
    """License assignment - replaced wholesale per user on every sync"""
    __tablename__ = 'user_licenses'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    license_id = Column(Integer, ForeignKey('licenses.id', ondelete='CASCADE'), nullable=False)
    sku_id = Column(String(64), nullable=False)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('user_id', 'sku_id', name='uq_user_licenses_user_sku'),
        Index('idx_user_licenses_user_id', 'user_id'),
        Index('idx_user_licenses_license_id', 'license_id'),
    )

    # Relationships
    user = relationship("User", back_populates="licenses")
    license = relationship("License", back_populates="assignments")


class MailboxUsage(Base):
    """Mailbox usage report row - one per user per report date"""
    __tablename__ = 'mailbox_usage'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    graph_user_id = Column(String(320), nullable=True)  # UPN as reported
    display_name = Column(String(255), nullable=True)
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    item_count = Column(BigInteger, nullable=False, default=0)
    issue_warning_quota_bytes = Column(BigInteger, nullable=False, default=0)
    prohibit_send_quota_bytes = Column(BigInteger, nullable=False, default=0)
    prohibit_send_receive_quota_bytes = Column(BigInteger, nullable=False, default=0)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_date = Column(Date, nullable=True)
    created_date = Column(Date, nullable=True)
    last_activity_date = Column(Date, nullable=True)
    report_period = Column(String(10), nullable=False, default='D7')
    report_date = Column(Date, nullable=False)
    report_refresh_date = Column(Date, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'report_date', name='uq_mailbox_usage_user_report_date'),
        CheckConstraint('storage_used_bytes >= 0', name='ck_mailbox_usage_storage_non_negative'),
        CheckConstraint('item_count >= 0', name='ck_mailbox_usage_items_non_negative'),
        Index('idx_mailbox_usage_report_date', 'report_date'),
        Index('idx_mailbox_usage_user_id', 'user_id'),
    )

    # Relationships
    user = relationship("User", back_populates="mailbox_usage")


class OneDriveUsage(Base):
    """OneDrive usage report row - one per user per report date"""
    __tablename__ = 'onedrive_usage'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    graph_user_id = Column(String(320), nullable=True)  # owner UPN as reported
    owner_display_name = Column(String(255), nullable=True)
    site_url = Column(Text, nullable=True)
    storage_used_bytes = Column(BigInteger, nullable=False, default=0)
    storage_allocated_bytes = Column(BigInteger, nullable=False, default=0)
    file_count = Column(BigInteger, nullable=False, default=0)
    active_file_count = Column(BigInteger, nullable=False, default=0)
    is_deleted = Column(Boolean, nullable=False, default=False)
    last_activity_date = Column(Date, nullable=True)
    report_period = Column(String(10), nullable=False, default='D7')
    report_date = Column(Date, nullable=False)
    report_refresh_date = Column(Date, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=utcnow)

    __table_args__ = (
        UniqueConstraint('user_id', 'report_date', name='uq_onedrive_usage_user_report_date'),
        CheckConstraint('storage_used_bytes >= 0', name='ck_onedrive_usage_storage_non_negative'),
        CheckConstraint('file_count >= 0', name='ck_onedrive_usage_files_non_negative'),
        Index('idx_onedrive_usage_report_date', 'report_date'),
        Index('idx_onedrive_usage_user_id', 'user_id'),
    )

    # Relationships
    user = relationship("User", back_populates="onedrive_usage")


class SyncLog(Base):
    """Sync log table - append-only history of sync step and run outcomes"""
    __tablename__ = 'sync_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    sync_type = Column(String(32), nullable=False)  # 'full', 'users', 'licenses', ...
    status = Column(String(16), nullable=False)  # 'success', 'error', 'partial'
    records_synced = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)

    __table_args__ = (
        CheckConstraint("status IN ('success', 'error', 'partial')", name='ck_sync_logs_status'),
        Index('idx_sync_logs_started_at', 'started_at'),
        Index('idx_sync_logs_sync_type', 'sync_type'),
    )


class SkuProductMapping(Base):
    """SKU part number to product name lookup, maintained by hand or import"""
    __tablename__ = 'sku_product_mappings'

    id = Column(Integer, primary_key=True, autoincrement=True)
    sku_part_number = Column(String(255), nullable=False)
    product_name = Column(String(255), nullable=False)
    source = Column(String(50), nullable=True)  # 'microsoft_csv', 'manual', ...
    is_active = Column(Boolean, nullable=False, default=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint('sku_part_number', name='uq_sku_product_mappings_sku_part_number'),
        Index('idx_sku_product_mappings_active', 'is_active'),
    )
