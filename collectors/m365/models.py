"""Typed records for Microsoft Graph responses and usage report rows."""

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from common.util import (
    parse_bool, parse_graph_datetime, parse_report_date, to_int_clamped, utcnow
)

# Refresh the bearer token this long before it actually expires
TOKEN_EXPIRY_BUFFER = timedelta(minutes=5)


@dataclass
class Credential:
    """Bearer token from the client-credentials exchange."""

    access_token: str
    expires_at: datetime

    @classmethod
    def from_token_response(cls, payload: Dict[str, Any], now: Optional[datetime] = None) -> 'Credential':
        now = now or utcnow()
        expires_in = to_int_clamped(payload.get('expires_in'), default=3600)
        return cls(
            access_token=payload['access_token'],
            expires_at=now + timedelta(seconds=expires_in),
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        return now >= self.expires_at - TOKEN_EXPIRY_BUFFER

    @property
    def authorization_header(self) -> str:
        return f"Bearer {self.access_token}"


@dataclass
class UserRecord:
    """A directory user as returned by GET /users."""

    graph_user_id: str
    display_name: Optional[str] = None
    mail: Optional[str] = None
    user_principal_name: Optional[str] = None
    job_title: Optional[str] = None
    department: Optional[str] = None
    office_location: Optional[str] = None
    account_enabled: bool = True
    created_date_time: Optional[datetime] = None
    assigned_sku_ids: List[str] = field(default_factory=list)

    @classmethod
    def from_graph(cls, payload: Dict[str, Any]) -> 'UserRecord':
        assigned = payload.get('assignedLicenses') or []
        account_enabled = payload.get('accountEnabled')
        return cls(
            graph_user_id=payload['id'],
            display_name=payload.get('displayName'),
            mail=payload.get('mail'),
            user_principal_name=payload.get('userPrincipalName'),
            job_title=payload.get('jobTitle'),
            department=payload.get('department'),
            office_location=payload.get('officeLocation'),
            account_enabled=True if account_enabled is None else bool(account_enabled),
            created_date_time=parse_graph_datetime(payload.get('createdDateTime')),
            assigned_sku_ids=[lic['skuId'] for lic in assigned if lic.get('skuId')],
        )

    @property
    def email(self) -> Optional[str]:
        return self.mail or self.user_principal_name


@dataclass
class SkuRecord:
    """A subscribed SKU as returned by GET /subscribedSkus."""

    sku_id: str
    sku_part_number: Optional[str] = None
    enabled_units: int = 0
    consumed_units: int = 0
    capability_status: Optional[str] = None
    applies_to: Optional[str] = None
    service_plans: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_graph(cls, payload: Dict[str, Any]) -> 'SkuRecord':
        prepaid = payload.get('prepaidUnits') or {}
        return cls(
            sku_id=payload['skuId'],
            sku_part_number=payload.get('skuPartNumber'),
            enabled_units=to_int_clamped(prepaid.get('enabled')),
            consumed_units=to_int_clamped(payload.get('consumedUnits')),
            capability_status=payload.get('capabilityStatus'),
            applies_to=payload.get('appliesTo'),
            service_plans=[
                {
                    'servicePlanId': plan.get('servicePlanId'),
                    'servicePlanName': plan.get('servicePlanName'),
                    'provisioningStatus': plan.get('provisioningStatus'),
                }
                for plan in payload.get('servicePlans') or []
            ],
        )

    @property
    def available_units(self) -> int:
        return self.enabled_units - self.consumed_units


@dataclass
class MailboxUsageRow:
    """One row of the getMailboxUsageDetail report."""

    user_principal_name: str
    display_name: Optional[str] = None
    is_deleted: bool = False
    deleted_date: Optional[date] = None
    created_date: Optional[date] = None
    last_activity_date: Optional[date] = None
    item_count: int = 0
    storage_used_bytes: int = 0
    issue_warning_quota_bytes: int = 0
    prohibit_send_quota_bytes: int = 0
    prohibit_send_receive_quota_bytes: int = 0
    report_refresh_date: Optional[date] = None
    report_period: str = 'D7'

    @classmethod
    def from_csv_row(cls, row: Dict[str, str]) -> 'MailboxUsageRow':
        return cls(
            user_principal_name=(row.get('User Principal Name') or '').strip(),
            display_name=row.get('Display Name') or None,
            is_deleted=parse_bool(row.get('Is Deleted')),
            deleted_date=parse_report_date(row.get('Deleted Date')),
            created_date=parse_report_date(row.get('Created Date')),
            last_activity_date=parse_report_date(row.get('Last Activity Date')),
            item_count=to_int_clamped(row.get('Item Count')),
            storage_used_bytes=to_int_clamped(row.get('Storage Used (Byte)')),
            issue_warning_quota_bytes=to_int_clamped(row.get('Issue Warning Quota (Byte)')),
            prohibit_send_quota_bytes=to_int_clamped(row.get('Prohibit Send Quota (Byte)')),
            prohibit_send_receive_quota_bytes=to_int_clamped(row.get('Prohibit Send/Receive Quota (Byte)')
                                                             or row.get('Prohibit Send Receive Quota (Byte)')),
            report_refresh_date=parse_report_date(row.get('Report Refresh Date')),
            report_period=(row.get('Report Period') or 'D7').strip() or 'D7',
        )


@dataclass
class OneDriveUsageRow:
    """One row of the getOneDriveUsageAccountDetail report."""

    owner_principal_name: str
    owner_display_name: Optional[str] = None
    site_url: Optional[str] = None
    is_deleted: bool = False
    last_activity_date: Optional[date] = None
    file_count: int = 0
    active_file_count: int = 0
    storage_used_bytes: int = 0
    storage_allocated_bytes: int = 0
    report_refresh_date: Optional[date] = None
    report_period: str = 'D7'

    @classmethod
    def from_csv_row(cls, row: Dict[str, str]) -> 'OneDriveUsageRow':
        return cls(
            owner_principal_name=(row.get('Owner Principal Name') or '').strip(),
            owner_display_name=row.get('Owner Display Name') or None,
            site_url=row.get('Site URL') or None,
            is_deleted=parse_bool(row.get('Is Deleted')),
            last_activity_date=parse_report_date(row.get('Last Activity Date')),
            file_count=to_int_clamped(row.get('File Count')),
            active_file_count=to_int_clamped(row.get('Active File Count')),
            storage_used_bytes=to_int_clamped(row.get('Storage Used (Byte)')),
            storage_allocated_bytes=to_int_clamped(row.get('Storage Allocated (Byte)')),
            report_refresh_date=parse_report_date(row.get('Report Refresh Date')),
            report_period=(row.get('Report Period') or 'D7').strip() or 'D7',
        )
