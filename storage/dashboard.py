"""
Read-only dashboard queries over the synced M365 tables.

Functions raise on storage errors; the HTTP layer decides how to degrade.
"Current" usage always means each user's row with the latest report_date.
"""
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional, Type, Union

from sqlalchemy import func
from sqlalchemy.orm import Session

from common.util import utcnow

from .schema import License, MailboxUsage, OneDriveUsage, User, UserLicense

UsageModel = Union[Type[MailboxUsage], Type[OneDriveUsage]]

BYTE_UNITS = ['B', 'KB', 'MB', 'GB', 'TB']
BYTES_PER_TB = 1024 ** 4


def format_bytes(num_bytes: Optional[int]) -> str:
    """Format a byte count for display, e.g. 1536 -> '1.5 KB'."""
    if not num_bytes or num_bytes <= 0:
        return '0 B'
    value = float(num_bytes)
    index = 0
    while value >= 1024 and index < len(BYTE_UNITS) - 1:
        value /= 1024
        index += 1
    return f"{value:.1f} {BYTE_UNITS[index]}"


def format_last_active(value: Optional[Union[date, datetime]], now: Optional[datetime] = None) -> str:
    """Relative age such as '3 hours ago' or '2 weeks ago'."""
    if value is None:
        return 'Never'
    now = now or utcnow()
    if not isinstance(value, datetime):
        value = datetime(value.year, value.month, value.day, tzinfo=now.tzinfo)
    elif value.tzinfo is None and now.tzinfo is not None:
        value = value.replace(tzinfo=now.tzinfo)

    minutes = max(int((now - value).total_seconds() // 60), 0)
    hours = minutes // 60
    days = hours // 24

    if minutes < 60:
        amount, unit = minutes, 'minute'
    elif hours < 24:
        amount, unit = hours, 'hour'
    elif days < 7:
        amount, unit = days, 'day'
    else:
        amount, unit = days // 7, 'week'
    return f"{amount} {unit}{'' if amount == 1 else 's'} ago"


def _latest_usage_query(session: Session, model: UsageModel):
    """Rows of ``model`` holding each user's latest report_date."""
    latest = (
        session.query(model.user_id, func.max(model.report_date).label('report_date'))
        .group_by(model.user_id)
        .subquery()
    )
    return session.query(model).join(
        latest,
        (model.user_id == latest.c.user_id) & (model.report_date == latest.c.report_date),
    )


def get_latest_usage_bytes(session: Session, model: UsageModel) -> Dict[int, int]:
    """user_id -> storage_used_bytes from each user's latest report."""
    return {row.user_id: row.storage_used_bytes or 0 for row in _latest_usage_query(session, model)}


def _license_names(session: Session, resolve_name: Optional[Callable[[Optional[str]], str]] = None) -> Dict[int, str]:
    names = {}
    for license in session.query(License).all():
        name = license.display_name
        if not name and license.sku_part_number and resolve_name:
            name = resolve_name(license.sku_part_number)
        names[license.id] = name or license.sku_part_number or 'Unknown License'
    return names


def get_dashboard_stats(session: Session) -> Dict[str, int]:
    """Headline counts: enabled users, consumed license units and current storage totals."""
    total_users = (
        session.query(func.count(User.id))
        .filter(User.account_enabled.is_(True))
        .scalar()
    )
    active_licenses = session.query(func.coalesce(func.sum(License.consumed_units), 0)).scalar()

    return {
        'totalUsers': total_users or 0,
        'activeLicenses': int(active_licenses or 0),
        'totalMailboxBytes': sum(get_latest_usage_bytes(session, MailboxUsage).values()),
        'totalOneDriveBytes': sum(get_latest_usage_bytes(session, OneDriveUsage).values()),
    }


def get_license_summary(session: Session) -> Dict[str, int]:
    """Total purchased and consumed units across all SKUs."""
    total, used = session.query(
        func.coalesce(func.sum(License.total_units), 0),
        func.coalesce(func.sum(License.consumed_units), 0),
    ).one()
    return {'total': int(total), 'used': int(used)}


def get_license_overview(session: Session,
                         resolve_name: Optional[Callable[[Optional[str]], str]] = None) -> List[Dict[str, Any]]:
    """
    Per-license unit counts.

    ``used`` is Graph's consumed count; ``actualUsers`` counts the synced
    assignment rows.
    """
    assigned = dict(
        session.query(UserLicense.license_id, func.count(UserLicense.id))
        .group_by(UserLicense.license_id)
        .all()
    )
    names = _license_names(session, resolve_name)

    overview = [
        {
            'id': license.id,
            'name': names[license.id],
            'skuPartNumber': license.sku_part_number,
            'total': license.total_units or 0,
            'used': license.consumed_units or 0,
            'actualUsers': assigned.get(license.id, 0),
            'available': license.available_units or 0,
        }
        for license in session.query(License).all()
    ]
    overview.sort(key=lambda item: item['name'].lower())
    return overview


def _format_user(user: User) -> Dict[str, Any]:
    return {
        'id': user.id,
        'name': user.display_name or user.email or 'Unknown',
        'email': user.email or user.user_principal_name or '',
        'role': user.job_title or 'User',
        'department': user.department or '',
        'status': 'active' if user.account_enabled else 'inactive',
    }


def get_users_by_license(session: Session, license_id: int) -> List[Dict[str, Any]]:
    """Users holding an assignment of the given license, by display name."""
    users = (
        session.query(User)
        .join(UserLicense, UserLicense.user_id == User.id)
        .filter(UserLicense.license_id == license_id)
        .order_by(User.display_name.asc())
        .all()
    )
    return [_format_user(user) for user in users]


def get_users_with_usage(session: Session, limit: int = 100,
                         resolve_name: Optional[Callable[[Optional[str]], str]] = None,
                         now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Users with their license names and current mailbox/OneDrive usage."""
    users = session.query(User).order_by(User.display_name.asc()).limit(limit).all()
    mailbox = get_latest_usage_bytes(session, MailboxUsage)
    onedrive = get_latest_usage_bytes(session, OneDriveUsage)
    names = _license_names(session, resolve_name)

    user_licenses = defaultdict(list)
    for user_id, license_id in session.query(UserLicense.user_id, UserLicense.license_id).all():
        user_licenses[user_id].append(names.get(license_id, 'Unknown License'))

    results = []
    for user in users:
        entry = _format_user(user)
        entry.update({
            'licenses': user_licenses.get(user.id, []),
            'mailbox': format_bytes(mailbox.get(user.id)),
            'mailboxBytes': mailbox.get(user.id, 0),
            'onedrive': format_bytes(onedrive.get(user.id)),
            'onedriveBytes': onedrive.get(user.id, 0),
            'lastActive': format_last_active(user.last_synced_at, now),
        })
        results.append(entry)
    return results


def _months_back(today: date, months: int) -> date:
    month_index = today.year * 12 + today.month - 1 - months
    year, month = divmod(month_index, 12)
    return date(year, month + 1, 1)


def get_usage_by_month(session: Session, model: UsageModel, months: int = 6,
                       today: Optional[date] = None) -> List[Dict[str, Any]]:
    """
    Monthly storage totals for charting.

    For each month the largest value reported per user is summed, so a user
    reported daily is not counted thirty times.

    Returns:
        list: ``{'month': 'YYYY-MM', 'bytes': int, 'usageTB': float}``, oldest first
    """
    today = today or utcnow().date()
    start = _months_back(today, months - 1)
    rows = (
        session.query(model.user_id, model.report_date, model.storage_used_bytes)
        .filter(model.report_date >= start, model.report_date <= today)
        .all()
    )

    per_month: Dict[str, Dict[int, int]] = defaultdict(dict)
    for user_id, report_date, used in rows:
        if not used:
            continue
        month_users = per_month[report_date.strftime('%Y-%m')]
        if used > month_users.get(user_id, 0):
            month_users[user_id] = used

    chart = []
    for month in sorted(per_month)[-months:]:
        total = sum(per_month[month].values())
        chart.append({'month': month, 'bytes': total, 'usageTB': total / BYTES_PER_TB})
    return chart


def get_top_usage(session: Session, model: UsageModel, limit: int = 4) -> List[Dict[str, Any]]:
    """Largest current usage rows with their share of the largest one."""
    display_attr = model.display_name if model is MailboxUsage else model.owner_display_name
    rows = (
        _latest_usage_query(session, model)
        .join(User, User.id == model.user_id)
        .with_entities(model.storage_used_bytes, display_attr, User.display_name)
        .order_by(model.storage_used_bytes.desc())
        .limit(limit)
        .all()
    )
    if not rows:
        return []

    largest = rows[0][0] or 1
    return [
        {
            'user': user_name or report_name or 'Unknown',
            'size': format_bytes(used),
            'bytes': used or 0,
            'percent': (used or 0) / largest,
        }
        for used, report_name, user_name in rows
    ]


def get_usage_overview(session: Session, model: UsageModel, months: int = 6,
                       top: int = 4, today: Optional[date] = None) -> Dict[str, Any]:
    """Chart data, top accounts and current total for one usage table."""
    return {
        'chartData': get_usage_by_month(session, model, months, today),
        'topUsage': get_top_usage(session, model, top),
        'totalUsage': sum(get_latest_usage_bytes(session, model).values()),
    }


def get_mailboxes_with_usage(session: Session, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Current mailbox row per user with quota percentage, largest first."""
    results = []
    for usage in _latest_usage_query(session, MailboxUsage).all():
        user = usage.user
        quota = usage.prohibit_send_receive_quota_bytes or usage.prohibit_send_quota_bytes or 0
        used = usage.storage_used_bytes or 0
        results.append({
            'id': usage.id,
            'userId': usage.user_id,
            'userName': (user.display_name or user.email) if user else (usage.display_name or 'Unknown'),
            'userEmail': (user.email or user.user_principal_name or '') if user else '',
            'storageUsed': format_bytes(used),
            'storageUsedBytes': used,
            'itemCount': usage.item_count or 0,
            'quota': format_bytes(quota) if quota else 'Unlimited',
            'quotaBytes': quota,
            'usagePercent': min(used / quota * 100, 100) if quota else 0,
            'lastActivity': format_last_active(usage.last_activity_date, now),
            'reportDate': usage.report_date.isoformat(),
            'isDeleted': bool(usage.is_deleted),
        })
    results.sort(key=lambda item: item['storageUsedBytes'], reverse=True)
    return results


def get_onedrives_with_usage(session: Session, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    """Current OneDrive row per user with allocation percentage, largest first."""
    results = []
    for usage in _latest_usage_query(session, OneDriveUsage).all():
        user = usage.user
        quota = usage.storage_allocated_bytes or 0
        used = usage.storage_used_bytes or 0
        results.append({
            'id': usage.id,
            'userId': usage.user_id,
            'userName': (user.display_name or user.email) if user else (usage.owner_display_name or 'Unknown'),
            'userEmail': (user.email or user.user_principal_name or '') if user else '',
            'storageUsed': format_bytes(used),
            'storageUsedBytes': used,
            'fileCount': usage.file_count or 0,
            'activeFileCount': usage.active_file_count or 0,
            'quota': format_bytes(quota) if quota else 'Unlimited',
            'quotaBytes': quota,
            'usagePercent': min(used / quota * 100, 100) if quota else 0,
            'lastActivity': format_last_active(usage.last_activity_date, now),
            'reportDate': usage.report_date.isoformat(),
            'isDeleted': bool(usage.is_deleted),
            'siteUrl': usage.site_url,
        })
    results.sort(key=lambda item: item['storageUsedBytes'], reverse=True)
    return results
