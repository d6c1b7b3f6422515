"""M365 record to storage row mapping."""

from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional, Tuple

from .models import MailboxUsageRow, OneDriveUsageRow, SkuRecord, UserRecord


def normalize_user(user: UserRecord, synced_at: datetime) -> Dict[str, Any]:
    """Map a Graph user onto the users table columns."""
    return {
        'graph_user_id': user.graph_user_id,
        'display_name': user.display_name,
        'email': user.email,
        'user_principal_name': user.user_principal_name,
        'job_title': user.job_title,
        'department': user.department,
        'office_location': user.office_location,
        'account_enabled': user.account_enabled,
        'created_date_time': user.created_date_time,
        'last_synced_at': synced_at,
    }


def normalize_license(sku: SkuRecord, display_name: str, synced_at: datetime) -> Dict[str, Any]:
    """Map a subscribed SKU onto the licenses table columns.

    Graph carries no friendly name, so ``display_name`` comes from the
    SKU name resolver.
    """
    return {
        'sku_id': sku.sku_id,
        'sku_part_number': sku.sku_part_number,
        'display_name': display_name,
        'total_units': sku.enabled_units,
        'consumed_units': sku.consumed_units,
        'available_units': sku.available_units,
        'capability_status': sku.capability_status,
        'applies_to': sku.applies_to,
        'service_plans': sku.service_plans,
        'last_synced_at': synced_at,
    }


def normalize_user_license(user_id: int, license_id: int, sku_id: str, synced_at: datetime) -> Dict[str, Any]:
    return {
        'user_id': user_id,
        'license_id': license_id,
        'sku_id': sku_id,
        'last_synced_at': synced_at,
    }


def normalize_mailbox_usage(row: MailboxUsageRow, user_id: int, report_date: date,
                            synced_at: datetime) -> Dict[str, Any]:
    """Map a mailbox report row onto the mailbox_usage table columns."""
    return {
        'user_id': user_id,
        'graph_user_id': row.user_principal_name,
        'display_name': row.display_name,
        'storage_used_bytes': row.storage_used_bytes,
        'item_count': row.item_count,
        'issue_warning_quota_bytes': row.issue_warning_quota_bytes,
        'prohibit_send_quota_bytes': row.prohibit_send_quota_bytes,
        'prohibit_send_receive_quota_bytes': row.prohibit_send_receive_quota_bytes,
        'is_deleted': row.is_deleted,
        'deleted_date': row.deleted_date,
        'created_date': row.created_date,
        'last_activity_date': row.last_activity_date,
        'report_period': row.report_period,
        'report_date': report_date,
        'report_refresh_date': row.report_refresh_date,
        'updated_at': synced_at,
    }


def normalize_onedrive_usage(row: OneDriveUsageRow, user_id: int, report_date: date,
                             synced_at: datetime) -> Dict[str, Any]:
    """Map a OneDrive report row onto the onedrive_usage table columns."""
    return {
        'user_id': user_id,
        'graph_user_id': row.owner_principal_name,
        'owner_display_name': row.owner_display_name,
        'site_url': row.site_url,
        'storage_used_bytes': row.storage_used_bytes,
        'storage_allocated_bytes': row.storage_allocated_bytes,
        'file_count': row.file_count,
        'active_file_count': row.active_file_count,
        'is_deleted': row.is_deleted,
        'last_activity_date': row.last_activity_date,
        'report_period': row.report_period,
        'report_date': report_date,
        'report_refresh_date': row.report_refresh_date,
        'updated_at': synced_at,
    }


def build_identity_map(users: Iterable[Tuple[int, str, Optional[str], Optional[str]]]) -> Dict[str, int]:
    """Build the principal lookup used to attach report rows to users.

    Args:
        users: ``(id, graph_user_id, email, user_principal_name)`` tuples

    Returns:
        Dict keyed by graph user id, lower-cased email and lower-cased UPN
    """
    identity: Dict[str, int] = {}
    for user_id, graph_user_id, email, upn in users:
        if graph_user_id:
            identity[graph_user_id] = user_id
        if email:
            identity[email.lower()] = user_id
        if upn:
            identity[upn.lower()] = user_id
    return identity


def resolve_principal(identity: Dict[str, int], principal: Optional[str]) -> Optional[int]:
    """Find the user id for a report principal name, or None when unknown."""
    if not principal:
        return None
    return identity.get(principal) or identity.get(principal.lower())
