"""
Tests for the Microsoft Graph API client
"""
import pytest
import requests
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock, patch

from collectors.m365.api import GraphAPI, parse_report_csv
from collectors.m365.errors import AuthError, FetchError
from collectors.m365.models import Credential, SkuRecord, UserRecord
from common.config import GraphConfig

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)

MAILBOX_HEADER = (
    'Report Refresh Date,User Principal Name,Display Name,Is Deleted,Deleted Date,'
    'Created Date,Last Activity Date,Item Count,Storage Used (Byte),'
    'Issue Warning Quota (Byte),Prohibit Send Quota (Byte),'
    'Prohibit Send/Receive Quota (Byte),Report Period'
)

ONEDRIVE_HEADER = (
    'Report Refresh Date,Site URL,Owner Display Name,Owner Principal Name,Is Deleted,'
    'Last Activity Date,File Count,Active File Count,Storage Used (Byte),'
    'Storage Allocated (Byte),Report Period'
)


def make_response(status_code=200, json_data=None, text=''):
    response = Mock()
    response.status_code = status_code
    response.ok = 200 <= status_code < 300
    response.json.return_value = json_data if json_data is not None else {}
    response.text = text
    return response


def graph_user(index, sku_ids=()):
    return {
        'id': f'user-{index}',
        'displayName': f'User {index}',
        'mail': f'user{index}@contoso.com',
        'userPrincipalName': f'user{index}@contoso.com',
        'accountEnabled': True,
        'assignedLicenses': [{'skuId': sku_id} for sku_id in sku_ids],
    }


@pytest.fixture
def graph_config():
    return GraphConfig(tenant_id='tenant-1', client_id='client-1', client_secret='secret-1')


@pytest.fixture
def api(graph_config):
    return GraphAPI(graph_config=graph_config, report_period='D7', clock=lambda: NOW)


@pytest.fixture
def cred():
    return Credential(access_token='token-abc', expires_at=NOW + timedelta(hours=1))


class TestAuthentication:
    """Test client-credentials token exchange"""

    def test_authenticate_posts_client_credentials(self, api):
        """Token request uses the tenant URL, app credentials and Graph scope"""
        with patch('collectors.m365.api.requests.post') as mock_post:
            mock_post.return_value = make_response(200, {'access_token': 'tok', 'expires_in': 3600})

            cred = api.authenticate()

            assert cred.access_token == 'tok'
            assert cred.expires_at == NOW + timedelta(seconds=3600)
            url = mock_post.call_args[0][0]
            assert url == 'https://login.microsoftonline.com/tenant-1/oauth2/v2.0/token'
            data = mock_post.call_args[1]['data']
            assert data['grant_type'] == 'client_credentials'
            assert data['scope'] == 'https://graph.microsoft.com/.default'
            assert mock_post.call_args[1]['timeout'] == 30

    def test_authenticate_surfaces_error_body(self, api):
        """A rejected token request carries the endpoint's body verbatim"""
        body = '{"error":"invalid_client","error_description":"AADSTS7000215"}'
        with patch('collectors.m365.api.requests.post') as mock_post:
            mock_post.return_value = make_response(401, text=body)

            with pytest.raises(AuthError) as exc_info:
                api.authenticate()

            assert str(exc_info.value) == f"Failed to get access token: {body}"

    def test_authenticate_missing_credentials(self):
        """Missing credentials fail before any request is made"""
        api = GraphAPI(graph_config=GraphConfig(tenant_id='t', client_id=None, client_secret=None))
        with patch('collectors.m365.api.requests.post') as mock_post:
            with pytest.raises(AuthError, match='MICROSOFT_GRAPH_CLIENT_ID'):
                api.authenticate()
            mock_post.assert_not_called()

    def test_authenticate_transport_failure(self, api):
        with patch('collectors.m365.api.requests.post', side_effect=requests.ConnectionError('refused')):
            with pytest.raises(AuthError):
                api.authenticate()

    def test_get_credential_is_cached_until_near_expiry(self, graph_config):
        """Token is reused, then refreshed within five minutes of expiry"""
        clock = Mock(return_value=NOW)
        api = GraphAPI(graph_config=graph_config, clock=clock)

        with patch('collectors.m365.api.requests.post') as mock_post:
            mock_post.return_value = make_response(200, {'access_token': 'tok', 'expires_in': 3600})

            api.get_credential()
            clock.return_value = NOW + timedelta(minutes=50)
            api.get_credential()
            assert mock_post.call_count == 1

            clock.return_value = NOW + timedelta(minutes=56)
            api.get_credential()
            assert mock_post.call_count == 2


class TestFetchUsers:
    """Test paginated user fetching"""

    def test_follows_next_link_and_stops_on_last_page(self, api, cred):
        """150 users over two pages yield exactly 150 records and two requests"""
        next_link = 'https://graph.microsoft.com/v1.0/users?$skiptoken=abc'
        page_one = make_response(200, {
            'value': [graph_user(i) for i in range(100)],
            '@odata.nextLink': next_link,
        })
        page_two = make_response(200, {'value': [graph_user(i) for i in range(100, 150)]})

        with patch('collectors.m365.api.requests.get', side_effect=[page_one, page_two]) as mock_get:
            users = api.fetch_users(cred)

        assert len(users) == 150
        assert mock_get.call_count == 2
        assert mock_get.call_args_list[1][0][0] == next_link
        assert mock_get.call_args_list[1][1]['params'] is None
        first_params = mock_get.call_args_list[0][1]['params']
        assert 'assignedLicenses' in first_params['$select']
        assert mock_get.call_args_list[0][1]['headers']['Authorization'] == 'Bearer token-abc'

    def test_maps_graph_fields(self, api, cred):
        payload = graph_user(1, sku_ids=['sku-a', 'sku-b'])
        payload['mail'] = None
        payload['createdDateTime'] = '2024-01-31T08:15:00Z'

        with patch('collectors.m365.api.requests.get', return_value=make_response(200, {'value': [payload]})):
            users = api.fetch_users(cred)

        user = users[0]
        assert isinstance(user, UserRecord)
        assert user.graph_user_id == 'user-1'
        assert user.email == 'user1@contoso.com'
        assert user.assigned_sku_ids == ['sku-a', 'sku-b']
        assert user.created_date_time == datetime(2024, 1, 31, 8, 15, tzinfo=timezone.utc)

    def test_failed_page_raises(self, api, cred):
        """A failure mid-pagination discards earlier pages"""
        page_one = make_response(200, {
            'value': [graph_user(1)],
            '@odata.nextLink': 'https://graph.microsoft.com/v1.0/users?$skiptoken=x',
        })
        page_two = make_response(503, text='Service Unavailable')

        with patch('collectors.m365.api.requests.get', side_effect=[page_one, page_two]):
            with pytest.raises(FetchError) as exc_info:
                api.fetch_users(cred)

        assert exc_info.value.status_code == 503
        assert exc_info.value.retryable is True

    def test_timeout_is_retryable(self, api, cred):
        with patch('collectors.m365.api.requests.get', side_effect=requests.Timeout('slow')):
            with pytest.raises(FetchError) as exc_info:
                api.fetch_users(cred)

        assert exc_info.value.retryable is True


class TestFetchSubscribedSkus:
    """Test subscribed SKU fetching"""

    def test_unit_counts(self, api, cred):
        payload = {'value': [
            {
                'skuId': 'sku-e3',
                'skuPartNumber': 'ENTERPRISEPACK',
                'consumedUnits': 18,
                'prepaidUnits': {'enabled': 25, 'suspended': 0},
                'capabilityStatus': 'Enabled',
                'appliesTo': 'User',
            },
            {'skuId': 'sku-free', 'skuPartNumber': 'FLOW_FREE', 'consumedUnits': 3},
        ]}
        with patch('collectors.m365.api.requests.get', return_value=make_response(200, payload)):
            skus = api.fetch_subscribed_skus(cred)

        assert all(isinstance(sku, SkuRecord) for sku in skus)
        assert skus[0].enabled_units == 25
        assert skus[0].available_units == 7
        assert skus[1].enabled_units == 0

    def test_client_error_is_not_retryable(self, api, cred):
        with patch('collectors.m365.api.requests.get', return_value=make_response(400, text='bad')):
            with pytest.raises(FetchError) as exc_info:
                api.fetch_subscribed_skus(cred)

        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False


class TestUsageReports:
    """Test mailbox and OneDrive report fetching"""

    def test_mailbox_report_rows(self, api, cred):
        csv_text = (
            '\ufeff' + MAILBOX_HEADER + '\n'
            '2026-10-18,ann@contoso.com,"Smith, Ann",False,,2020-05-01,2026-10-17,'
            '1200,5368709120,52848103424,53687091200,107374182400,7\n'
        )
        with patch('collectors.m365.api.requests.get', return_value=make_response(200, text=csv_text)) as mock_get:
            rows = api.fetch_mailbox_usage_report(cred)

        assert "getMailboxUsageDetail(period='D7')" in mock_get.call_args[0][0]
        assert len(rows) == 1
        row = rows[0]
        assert row.user_principal_name == 'ann@contoso.com'
        assert row.display_name == 'Smith, Ann'
        assert row.storage_used_bytes == 5368709120
        assert row.item_count == 1200
        assert row.prohibit_send_receive_quota_bytes == 107374182400
        assert row.is_deleted is False
        assert row.report_refresh_date.isoformat() == '2026-10-18'

    def test_onedrive_report_rows(self, api, cred):
        csv_text = (
            ONEDRIVE_HEADER + '\n'
            '2026-10-18,https://contoso-my.sharepoint.com/personal/bob,Bob,bob@contoso.com,'
            'False,2026-10-10,340,12,,1099511627776,7\n'
        )
        with patch('collectors.m365.api.requests.get', return_value=make_response(200, text=csv_text)):
            rows = api.fetch_onedrive_usage_report(cred)

        assert rows[0].owner_principal_name == 'bob@contoso.com'
        assert rows[0].file_count == 340
        assert rows[0].storage_used_bytes == 0
        assert rows[0].storage_allocated_bytes == 1099511627776

    @pytest.mark.parametrize('status_code', [401, 403])
    def test_permission_denied_returns_empty(self, api, cred, status_code):
        """Missing report permission degrades to an empty result"""
        with patch('collectors.m365.api.requests.get', return_value=make_response(status_code, text='Forbidden')):
            assert api.fetch_mailbox_usage_report(cred) == []
            assert api.fetch_onedrive_usage_report(cred) == []

    def test_server_error_raises(self, api, cred):
        with patch('collectors.m365.api.requests.get', return_value=make_response(500, text='oops')):
            with pytest.raises(FetchError) as exc_info:
                api.fetch_mailbox_usage_report(cred)

        assert exc_info.value.status_code == 500
        assert exc_info.value.retryable is True

    def test_throttled_is_retryable(self, api, cred):
        with patch('collectors.m365.api.requests.get', return_value=make_response(429, text='slow down')):
            with pytest.raises(FetchError) as exc_info:
                api.fetch_onedrive_usage_report(cred)

        assert exc_info.value.retryable is True


class TestParseReportCsv:
    """Test usage report CSV parsing"""

    def test_quoted_comma_stays_one_field(self):
        rows = parse_report_csv('Name,Count\n"Smith, John",5\n')
        assert rows == [{'Name': 'Smith, John', 'Count': '5'}]

    def test_doubled_quotes_are_literal(self):
        rows = parse_report_csv('Name,Count\n"The ""Boss""",1\n')
        assert rows[0]['Name'] == 'The "Boss"'

    def test_quoted_newline(self):
        rows = parse_report_csv('Name,Count\n"Line one\nLine two",2\n')
        assert rows[0]['Name'] == 'Line one\nLine two'

    def test_bom_and_header_whitespace(self):
        rows = parse_report_csv('\ufeff Name , Count \nann,3\n')
        assert rows == [{'Name': 'ann', 'Count': '3'}]

    def test_field_values_trimmed(self):
        rows = parse_report_csv('Display Name,Site URL\n  Ann Lee ,"https://contoso-my.sharepoint.com/personal/ann "\n')
        assert rows == [{'Display Name': 'Ann Lee', 'Site URL': 'https://contoso-my.sharepoint.com/personal/ann'}]

    def test_mismatched_rows_and_blank_lines_dropped(self):
        rows = parse_report_csv('A,B\n1,2\n\n3\n4,5,6\n7,8\n')
        assert rows == [{'A': '1', 'B': '2'}, {'A': '7', 'B': '8'}]

    def test_empty_input(self):
        assert parse_report_csv('') == []
