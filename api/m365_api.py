"""
M365 API Endpoints

Provides REST API endpoints for:
1. Sync trigger - Run a full or single-step sync (POST /api/sync)
2. Sync status - Recent sync log rows (GET /api/sync)
3. License summary and per-license user lists
4. Dashboard data - Stats, users, licenses, mailbox and OneDrive usage
"""

from datetime import datetime, timezone
from functools import wraps
from typing import Any, Callable, Optional

from flask import Blueprint, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from collectors.m365.errors import (
    AuthError, ConfigError, SyncAuthorizationError, SyncInProgressError
)
from collectors.m365.sync import get_orchestrator, run_sync
from common.db import get_session_factory
from common.job_logging import get_recent_sync_logs
from common.logging import get_logger
from storage import dashboard
from storage.schema import MailboxUsage, OneDriveUsage

logger = get_logger(__name__)

# Create Blueprint for M365 API
m365_api = Blueprint('m365_api', __name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _error(message: str, status: int, **extra: Any):
    body = {'success': False, 'error': message, 'timestamp': _timestamp()}
    body.update(extra)
    return jsonify(body), status


def degrade_to_empty(default: Any):
    """
    Turn storage failures in a read endpoint into an empty payload.

    Args:
        default: Body returned instead, or a callable building it
    """
    def decorator(func: Callable):
        @wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except SQLAlchemyError as e:
                logger.error(f"{request.path} failed, returning empty data: {e}")
                return jsonify(default() if callable(default) else default)
        return wrapper
    return decorator


def _provided_secret() -> Optional[str]:
    auth_header = request.headers.get('Authorization', '')
    if auth_header.startswith('Bearer '):
        return auth_header[len('Bearer '):].strip() or None
    return request.args.get('secret')


def _resolve_name(sku_part_number: Optional[str]) -> str:
    return get_orchestrator().resolver.resolve_product_name(sku_part_number)


@m365_api.route('/api/sync', methods=['POST'])
def trigger_sync():
    """
    Run a sync against Microsoft Graph.

    Query Parameters:
        type (optional): full (default), users, licenses, user-licenses, mailbox, onedrive
        secret (optional): Trigger secret when not sent as a Bearer token

    Returns:
        JSON response with per-step results; 200 even when some steps failed
    """
    sync_type = request.args.get('type', 'full')

    try:
        result = run_sync(sync_type, secret=_provided_secret())
    except SyncAuthorizationError:
        return jsonify({'success': False, 'error': 'Unauthorized'}), 401
    except SyncInProgressError as e:
        return _error(str(e), 409)
    except (AuthError, ConfigError) as e:
        logger.error(f"Sync error: {e}")
        return _error(str(e), 500)
    except ValueError as e:
        return _error(str(e), 400)
    except Exception as e:
        logger.exception(f"Sync failed unexpectedly: {e}")
        return _error(str(e), 500)

    return jsonify(result.to_dict()), 200


@m365_api.route('/api/sync', methods=['GET'])
def get_sync_status():
    """
    Get the most recent sync log rows, newest first.

    Query Parameters:
        limit (optional): Number of rows (default: 10, max: 100)
    """
    limit = request.args.get('limit', 10, type=int)
    if limit < 1 or limit > 100:
        limit = 10

    try:
        logs = get_recent_sync_logs(get_session_factory(), limit)
    except SQLAlchemyError as e:
        logger.error(f"Failed to read sync logs: {e}")
        return _error('Failed to read sync logs', 500)

    return jsonify({
        'success': True,
        'recentLogs': logs,
        'timestamp': _timestamp(),
    })


@m365_api.route('/api/license-summary', methods=['GET'])
@degrade_to_empty({'total': 0, 'used': 0})
def get_license_summary():
    """Total and consumed license units across all SKUs."""
    with get_session_factory()() as session:
        return jsonify(dashboard.get_license_summary(session))


@m365_api.route('/api/license-users', methods=['GET'])
def get_license_users():
    """
    Users assigned to one license.

    Query Parameters:
        licenseId (required): License row id
    """
    license_id = request.args.get('licenseId', type=int)
    if license_id is None:
        return jsonify({'error': 'License ID is required'}), 400
    return _license_users(license_id)


@degrade_to_empty({'users': []})
def _license_users(license_id: int):
    with get_session_factory()() as session:
        return jsonify({'users': dashboard.get_users_by_license(session, license_id)})


@m365_api.route('/api/dashboard/stats', methods=['GET'])
@degrade_to_empty({'totalUsers': 0, 'activeLicenses': 0, 'totalMailboxBytes': 0, 'totalOneDriveBytes': 0})
def get_dashboard_stats():
    with get_session_factory()() as session:
        return jsonify(dashboard.get_dashboard_stats(session))


@m365_api.route('/api/dashboard/users', methods=['GET'])
@degrade_to_empty({'users': []})
def get_dashboard_users():
    """Users with license names and current storage usage."""
    limit = request.args.get('limit', 100, type=int)
    if limit < 1 or limit > 1000:
        limit = 100

    with get_session_factory()() as session:
        users = dashboard.get_users_with_usage(session, limit=limit, resolve_name=_resolve_name)
        return jsonify({'users': users})


@m365_api.route('/api/dashboard/licenses', methods=['GET'])
@degrade_to_empty({'licenses': []})
def get_dashboard_licenses():
    with get_session_factory()() as session:
        return jsonify({'licenses': dashboard.get_license_overview(session, resolve_name=_resolve_name)})


@m365_api.route('/api/dashboard/mailbox-usage', methods=['GET'])
@degrade_to_empty({'chartData': [], 'topUsage': [], 'totalUsage': 0})
def get_mailbox_usage():
    with get_session_factory()() as session:
        return jsonify(dashboard.get_usage_overview(session, MailboxUsage))


@m365_api.route('/api/dashboard/onedrive-usage', methods=['GET'])
@degrade_to_empty({'chartData': [], 'topUsage': [], 'totalUsage': 0})
def get_onedrive_usage():
    with get_session_factory()() as session:
        return jsonify(dashboard.get_usage_overview(session, OneDriveUsage))


@m365_api.route('/api/dashboard/mailboxes', methods=['GET'])
@degrade_to_empty({'mailboxes': []})
def get_mailboxes():
    """Current mailbox row per user, largest first."""
    with get_session_factory()() as session:
        return jsonify({'mailboxes': dashboard.get_mailboxes_with_usage(session)})


@m365_api.route('/api/dashboard/onedrives', methods=['GET'])
@degrade_to_empty({'onedrives': []})
def get_onedrives():
    """Current OneDrive row per user, largest first."""
    with get_session_factory()() as session:
        return jsonify({'onedrives': dashboard.get_onedrives_with_usage(session)})
