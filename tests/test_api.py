"""
Tests for the M365 REST API endpoints
"""
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from api.api_server import create_app
from collectors.m365.errors import AuthError, SyncAuthorizationError, SyncInProgressError
from collectors.m365.models import Credential, UserRecord
from collectors.m365.sync import StepResult, SyncRunResult, build_orchestrator
from common.config import config
from common.job_logging import record_sync
from storage.schema import License, User, UserLicense

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def client(session_factory):
    """Flask test client wired to the SQLite session factory"""
    app = create_app()
    app.config['TESTING'] = True
    with patch('api.m365_api.get_session_factory', return_value=session_factory):
        with app.test_client() as client:
            yield client


def storage_down():
    return OperationalError('SELECT', {}, Exception('could not connect to server'))


class TestSyncTrigger:
    """Test POST /api/sync"""

    def test_successful_run(self, client):
        result = SyncRunResult(
            sync_type='users',
            results={'users': StepResult(success=True, records_synced=2)},
            timestamp=NOW,
        )
        with patch('api.m365_api.run_sync', return_value=result) as mock_run:
            response = client.post('/api/sync?type=users')

        assert response.status_code == 200
        assert response.get_json() == {
            'success': True,
            'syncType': 'users',
            'results': {'users': {'success': True, 'recordsSynced': 2}},
            'timestamp': NOW.isoformat(),
        }
        mock_run.assert_called_once_with('users', secret=None)

    def test_partial_run_is_still_200(self, client):
        result = SyncRunResult(
            sync_type='full',
            results={
                'users': StepResult(success=True, records_synced=2),
                'mailbox': StepResult(success=False, records_synced=0, error='HTTP 500'),
            },
            timestamp=NOW,
        )
        with patch('api.m365_api.run_sync', return_value=result):
            response = client.post('/api/sync')

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is False
        assert data['results']['mailbox']['error'] == 'HTTP 500'

    def test_defaults_to_full(self, client):
        with patch('api.m365_api.run_sync') as mock_run:
            mock_run.return_value = SyncRunResult(sync_type='full', results={}, timestamp=NOW)
            client.post('/api/sync')
        assert mock_run.call_args[0][0] == 'full'

    def test_secret_from_bearer_header(self, client):
        with patch('api.m365_api.run_sync') as mock_run:
            mock_run.return_value = SyncRunResult(sync_type='full', results={}, timestamp=NOW)
            client.post('/api/sync', headers={'Authorization': 'Bearer s3cret'})
        assert mock_run.call_args[1]['secret'] == 's3cret'

    def test_secret_from_query(self, client):
        with patch('api.m365_api.run_sync') as mock_run:
            mock_run.return_value = SyncRunResult(sync_type='full', results={}, timestamp=NOW)
            client.post('/api/sync?secret=q-secret')
        assert mock_run.call_args[1]['secret'] == 'q-secret'

    def test_unauthorized(self, client):
        with patch('api.m365_api.run_sync', side_effect=SyncAuthorizationError('Unauthorized')):
            response = client.post('/api/sync', headers={'Authorization': 'Bearer wrong'})

        assert response.status_code == 401
        assert response.get_json() == {'success': False, 'error': 'Unauthorized'}

    def test_unknown_type(self, client):
        with patch('api.m365_api.run_sync', side_effect=ValueError('Unknown sync type: bogus')):
            response = client.post('/api/sync?type=bogus')

        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_run_in_progress(self, client):
        with patch('api.m365_api.run_sync', side_effect=SyncInProgressError('already running')):
            response = client.post('/api/sync')

        assert response.status_code == 409
        assert response.get_json()['error'] == 'already running'

    def test_auth_failure(self, client):
        with patch('api.m365_api.run_sync', side_effect=AuthError('Failed to get access token: bad')):
            response = client.post('/api/sync')

        assert response.status_code == 500
        data = response.get_json()
        assert data['success'] is False
        assert data['error'] == 'Failed to get access token: bad'
        assert 'timestamp' in data

    def test_unexpected_error_returns_json(self, client):
        with patch('api.m365_api.run_sync', side_effect=storage_down()):
            response = client.post('/api/sync')

        assert response.status_code == 500
        data = response.get_json()
        assert data['success'] is False
        assert 'could not connect to server' in data['error']
        assert 'timestamp' in data

    def test_unreachable_storage_still_returns_json(self, client):
        """A sync against a store that cannot be opened answers with a structured body"""
        broken_factory = sessionmaker(bind=create_engine('sqlite:////nonexistent_dir/m365.db'))
        api = Mock()
        api.get_credential.return_value = Credential(access_token='tok', expires_at=NOW + timedelta(hours=1))
        api.fetch_users.return_value = [UserRecord(graph_user_id='user-1', display_name='Ann Lee')]
        orchestrator = build_orchestrator(session_factory=broken_factory, api=api)

        with patch('collectors.m365.sync.get_orchestrator', return_value=orchestrator), \
                patch.object(config.sync, 'cron_secret', None):
            response = client.post('/api/sync?type=users')

        assert response.is_json
        data = response.get_json()
        assert 'success' in data
        if response.status_code == 200:
            assert data['results']['users']['recordsSynced'] == 0
        else:
            assert response.status_code == 500
            assert data['success'] is False


class TestSyncStatus:
    """Test GET /api/sync"""

    def test_recent_logs(self, client, session_factory):
        record_sync(session_factory, 'users', 'success', 5, started_at=NOW, completed_at=NOW)

        response = client.get('/api/sync')

        assert response.status_code == 200
        data = response.get_json()
        assert data['success'] is True
        assert data['recentLogs'][0]['sync_type'] == 'users'
        assert data['recentLogs'][0]['records_synced'] == 5

    def test_storage_failure(self, client):
        with patch('api.m365_api.get_recent_sync_logs', side_effect=storage_down()):
            response = client.get('/api/sync')
        assert response.status_code == 500


class TestDashboardEndpoints:
    """Test read endpoints and their empty fallbacks"""

    @pytest.fixture
    def seeded(self, session_factory):
        session = session_factory()
        user = User(graph_user_id='user-1', display_name='Ann Lee', account_enabled=True)
        license = License(sku_id='sku-e3', sku_part_number='ENTERPRISEPACK', display_name='Microsoft 365 E3',
                          total_units=10, consumed_units=4, available_units=6)
        session.add_all([user, license])
        session.flush()
        session.add(UserLicense(user_id=user.id, license_id=license.id, sku_id='sku-e3'))
        session.commit()
        license_id = license.id
        session.close()
        return license_id

    def test_license_summary(self, client, seeded):
        response = client.get('/api/license-summary')
        assert response.get_json() == {'total': 10, 'used': 4}

    def test_license_users(self, client, seeded):
        response = client.get(f'/api/license-users?licenseId={seeded}')
        assert [user['name'] for user in response.get_json()['users']] == ['Ann Lee']

    def test_license_users_requires_id(self, client):
        response = client.get('/api/license-users')
        assert response.status_code == 400
        assert response.get_json() == {'error': 'License ID is required'}

    def test_dashboard_stats(self, client, seeded):
        data = client.get('/api/dashboard/stats').get_json()
        assert data['totalUsers'] == 1
        assert data['activeLicenses'] == 4

    def test_dashboard_users(self, client, seeded):
        with patch('api.m365_api.get_orchestrator'):
            data = client.get('/api/dashboard/users').get_json()
        assert data['users'][0]['licenses'] == ['Microsoft 365 E3']

    def test_dashboard_licenses(self, client, seeded):
        with patch('api.m365_api.get_orchestrator'):
            data = client.get('/api/dashboard/licenses').get_json()
        assert data['licenses'][0]['actualUsers'] == 1

    def test_usage_endpoints_empty(self, client):
        for path in ('/api/dashboard/mailbox-usage', '/api/dashboard/onedrive-usage'):
            data = client.get(path).get_json()
            assert data['chartData'] == []
            assert data['totalUsage'] == 0

    def test_stats_degrade_to_empty(self, client):
        with patch('api.m365_api.dashboard.get_dashboard_stats', side_effect=storage_down()):
            response = client.get('/api/dashboard/stats')

        assert response.status_code == 200
        assert response.get_json() == {
            'totalUsers': 0, 'activeLicenses': 0, 'totalMailboxBytes': 0, 'totalOneDriveBytes': 0
        }

    def test_license_users_degrade_to_empty(self, client):
        with patch('api.m365_api.dashboard.get_users_by_license', side_effect=storage_down()):
            response = client.get('/api/license-users?licenseId=1')
        assert response.get_json() == {'users': []}

    def test_mailboxes_degrade_to_empty(self, client):
        with patch('api.m365_api.dashboard.get_mailboxes_with_usage', side_effect=storage_down()):
            assert client.get('/api/dashboard/mailboxes').get_json() == {'mailboxes': []}


class TestHealth:
    """Test health check"""

    def test_health(self, client):
        with patch('api.api_server.check_db_connection', return_value=True):
            response = client.get('/api/health')

        data = response.get_json()
        assert response.status_code == 200
        assert data['status'] == 'healthy'
        assert data['database'] == 'connected'
