"""Sync run logging utilities.

The sync log is an append-only audit trail: one row per sync step and one
per overall run. Rows are never updated or deleted.
"""

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from common.db import session_scope
from common.logging import get_logger
from storage.schema import SyncLog

logger = get_logger(__name__)

SYNC_STATUSES = ('success', 'error', 'partial')


def _duration_ms(started_at: Optional[datetime], completed_at: Optional[datetime]) -> Optional[int]:
    if not started_at or not completed_at:
        return None
    return int((completed_at - started_at).total_seconds() * 1000)


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def record_sync(
    session_factory: Callable[[], Session],
    sync_type: str,
    status: str,
    records_synced: int,
    error_message: Optional[str] = None,
    started_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
) -> int:
    """
    Record one sync step or run.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        sync_type: 'full', 'users', 'licenses', 'user-licenses', 'mailbox', 'onedrive'
        status: 'success', 'error' or 'partial'
        records_synced: Number of records written
        error_message: Optional error description
        started_at: When the step/run started
        completed_at: When the step/run finished

    Returns:
        int: ID of the inserted sync log row
    """
    if status not in SYNC_STATUSES:
        raise ValueError(f"Invalid sync status: {status}")

    with session_scope(session_factory) as session:
        entry = SyncLog(
            sync_type=sync_type,
            status=status,
            records_synced=records_synced,
            error_message=error_message,
            started_at=started_at,
            completed_at=completed_at,
            duration_ms=_duration_ms(started_at, completed_at),
        )
        session.add(entry)
        session.flush()
        entry_id = entry.id

    logger.info(
        f"Recorded {sync_type} sync: {status}",
        sync_type=sync_type,
        status=status,
        records_synced=records_synced,
    )
    return entry_id


def get_recent_sync_logs(session_factory: Callable[[], Session], limit: int = 10) -> List[Dict[str, Any]]:
    """
    Get the most recent sync log rows, newest first.

    Args:
        session_factory: Callable returning a new SQLAlchemy session
        limit: Maximum number of rows

    Returns:
        list: Sync log rows as dictionaries
    """
    with session_scope(session_factory) as session:
        rows = (
            session.query(SyncLog)
            .order_by(SyncLog.started_at.desc(), SyncLog.id.desc())
            .limit(limit)
            .all()
        )
        return [
            {
                'id': row.id,
                'sync_type': row.sync_type,
                'status': row.status,
                'records_synced': row.records_synced,
                'error_message': row.error_message,
                'started_at': _isoformat(row.started_at),
                'completed_at': _isoformat(row.completed_at),
                'duration_ms': row.duration_ms,
            }
            for row in rows
        ]


class SyncRunLog:
    """Run log bound to a session factory, as handed to the orchestrator."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def record(self, sync_type: str, status: str, records_synced: int,
               error_message: Optional[str] = None,
               started_at: Optional[datetime] = None,
               completed_at: Optional[datetime] = None) -> int:
        return record_sync(
            self.session_factory, sync_type, status, records_synced,
            error_message, started_at, completed_at
        )

    def recent(self, limit: int = 10) -> List[Dict[str, Any]]:
        return get_recent_sync_logs(self.session_factory, limit)
