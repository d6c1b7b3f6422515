"""Microsoft Graph API client for a single tenant."""

import csv
import io
import requests
from typing import Any, Callable, Dict, Iterator, List, Optional
from datetime import datetime

from common.config import GraphConfig, config
from common.logging import get_logger
from common.util import utcnow

from .errors import AuthError, DegradedFetch, FetchError
from .models import Credential, MailboxUsageRow, OneDriveUsageRow, SkuRecord, UserRecord

logger = get_logger(__name__)

USER_SELECT_FIELDS = (
    'id,displayName,mail,userPrincipalName,jobTitle,department,'
    'officeLocation,accountEnabled,createdDateTime,assignedLicenses'
)

MAILBOX_REPORT_ENDPOINT = "/reports/getMailboxUsageDetail(period='{period}')"
ONEDRIVE_REPORT_ENDPOINT = "/reports/getOneDriveUsageAccountDetail(period='{period}')"

# Report endpoints answer these when the app lacks Reports.Read.All
DEGRADED_STATUS_CODES = (401, 403)


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


def parse_report_csv(text: str) -> List[Dict[str, str]]:
    """Parse a Graph usage report CSV into dicts keyed by header name.

    Quoted fields may contain commas, doubled quotes and newlines. Rows whose
    field count does not match the header are dropped.
    """
    if not text:
        return []
    if text.startswith('\ufeff'):
        text = text[1:]

    reader = csv.reader(io.StringIO(text))
    headers = None
    rows = []
    for fields in reader:
        if not fields or all(not value.strip() for value in fields):
            continue
        if headers is None:
            headers = [name.strip() for name in fields]
            continue
        if len(fields) != len(headers):
            logger.debug(f"Dropping report row with {len(fields)} fields, expected {len(headers)}")
            continue
        rows.append({name: value.strip() for name, value in zip(headers, fields)})
    return rows


class GraphAPI:
    """Client for Microsoft Graph API using app-only (client credentials) auth."""

    def __init__(self, graph_config: Optional[GraphConfig] = None,
                 report_period: Optional[str] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.graph_config = graph_config or config.graph
        self.report_period = report_period or config.sync.report_period
        self.clock = clock
        self._credential: Optional[Credential] = None

    @property
    def timeout(self) -> int:
        return self.graph_config.timeout

    def authenticate(self) -> Credential:
        """Exchange the app credentials for a bearer token.

        Raises:
            AuthError: credentials missing, endpoint unreachable or non-2xx
        """
        missing = self.graph_config.missing_credentials()
        if missing:
            raise AuthError(f"Missing Microsoft Graph API credentials: {', '.join(missing)}")

        url = self.graph_config.token_url_template.format(tenant_id=self.graph_config.tenant_id)
        data = {
            'grant_type': 'client_credentials',
            'client_id': self.graph_config.client_id,
            'client_secret': self.graph_config.client_secret,
            'scope': self.graph_config.scope,
        }

        logger.debug("Requesting Graph access token", tenant_id=self.graph_config.tenant_id)
        try:
            response = requests.post(url, data=data, timeout=self.timeout)
        except requests.RequestException as e:
            logger.error(f"Token request failed: {e}")
            raise AuthError(f"Failed to get access token: {e}") from e

        if not response.ok:
            logger.error("Token request rejected", status_code=response.status_code)
            raise AuthError(f"Failed to get access token: {response.text}")

        try:
            credential = Credential.from_token_response(response.json(), now=self.clock())
        except (ValueError, KeyError) as e:
            raise AuthError(f"Failed to get access token: malformed token response ({e})") from e

        self._credential = credential
        return credential

    def get_credential(self) -> Credential:
        """Return the cached credential, refreshing it near expiry."""
        if self._credential is None or self._credential.is_expired(self.clock()):
            return self.authenticate()
        return self._credential

    def _get(self, cred: Credential, url: str, params: Optional[Dict[str, str]] = None,
             accept_json: bool = True) -> requests.Response:
        headers = {'Authorization': cred.authorization_header}
        if accept_json:
            headers['Accept'] = 'application/json'

        logger.debug("Graph GET", url=url)
        try:
            return requests.get(url, headers=headers, params=params, timeout=self.timeout)
        except requests.Timeout as e:
            raise FetchError(f"Graph request timed out: {url}", retryable=True) from e
        except requests.RequestException as e:
            raise FetchError(f"Graph request failed: {url}: {e}", retryable=True) from e

    def _raise_for_status(self, response: requests.Response, what: str) -> None:
        if response.ok:
            return
        status = response.status_code
        raise FetchError(
            f"Failed to fetch {what}: HTTP {status} {response.text}",
            status_code=status,
            retryable=_is_retryable_status(status),
        )

    def _get_paginated(self, cred: Credential, endpoint: str,
                       params: Optional[Dict[str, str]] = None) -> Iterator[Dict[str, Any]]:
        url = f"{self.graph_config.base_url}{endpoint}"

        while url:
            response = self._get(cred, url, params)
            self._raise_for_status(response, endpoint)
            data = response.json()

            for item in data.get('value', []):
                yield item

            # nextLink already carries the query string
            url = data.get('@odata.nextLink')
            params = None

    def fetch_users(self, cred: Credential) -> List[UserRecord]:
        """Fetch every directory user with their assigned licenses.

        A failure on any page discards the pages already read.
        """
        params = {
            '$select': USER_SELECT_FIELDS,
            '$top': str(self.graph_config.page_size),
        }
        users = [UserRecord.from_graph(item) for item in self._get_paginated(cred, '/users', params)]
        logger.info(f"Fetched {len(users)} users from Graph")
        return users

    def fetch_subscribed_skus(self, cred: Credential) -> List[SkuRecord]:
        """Fetch the tenant's subscribed SKUs with unit counts."""
        url = f"{self.graph_config.base_url}/subscribedSkus"
        response = self._get(cred, url)
        self._raise_for_status(response, '/subscribedSkus')
        skus = [SkuRecord.from_graph(item) for item in response.json().get('value', [])]
        logger.info(f"Fetched {len(skus)} subscribed SKUs from Graph")
        return skus

    def _fetch_report(self, cred: Credential, endpoint_template: str) -> List[Dict[str, str]]:
        endpoint = endpoint_template.format(period=self.report_period)
        url = f"{self.graph_config.base_url}{endpoint}"
        response = self._get(cred, url, accept_json=False)

        if response.status_code in DEGRADED_STATUS_CODES:
            raise DegradedFetch(endpoint, response.status_code)
        self._raise_for_status(response, endpoint)

        return parse_report_csv(response.text)

    def fetch_mailbox_usage_report(self, cred: Credential) -> List[MailboxUsageRow]:
        """Fetch the mailbox usage detail report.

        Returns an empty list when the app is not permitted to read reports.
        """
        try:
            rows = self._fetch_report(cred, MAILBOX_REPORT_ENDPOINT)
        except DegradedFetch as e:
            logger.warning(f"Mailbox usage report unavailable, returning no rows: {e}",
                           status_code=e.status_code)
            return []
        return [MailboxUsageRow.from_csv_row(row) for row in rows]

    def fetch_onedrive_usage_report(self, cred: Credential) -> List[OneDriveUsageRow]:
        """Fetch the OneDrive account usage detail report.

        Returns an empty list when the app is not permitted to read reports.
        """
        try:
            rows = self._fetch_report(cred, ONEDRIVE_REPORT_ENDPOINT)
        except DegradedFetch as e:
            logger.warning(f"OneDrive usage report unavailable, returning no rows: {e}",
                           status_code=e.status_code)
            return []
        return [OneDriveUsageRow.from_csv_row(row) for row in rows]
