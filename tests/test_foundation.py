"""
Test foundation components
"""
import pytest
import os
from datetime import date, datetime, timezone
from unittest.mock import patch

from common.config import config, ConfigError, DatabaseConfig, GraphConfig, SyncConfig
from common.db import session_scope
from common.logging import setup_logging, get_logger, log_context
from common.util import parse_bool, parse_graph_datetime, parse_report_date, to_int_clamped, upsert
from storage.schema import SkuProductMapping

GRAPH_ENV = {
    'MICROSOFT_GRAPH_TENANT_ID': 'tenant',
    'MICROSOFT_GRAPH_CLIENT_ID': 'client',
    'MICROSOFT_GRAPH_CLIENT_SECRET': 'secret',
}


class TestConfig:
    """Test configuration management"""

    def test_database_config(self):
        assert isinstance(config.database, DatabaseConfig)
        assert config.database.url

    def test_graph_config(self):
        """Test Microsoft Graph configuration"""
        assert isinstance(config.graph, GraphConfig)
        assert config.graph.base_url.startswith("https://")
        assert config.graph.scope == "https://graph.microsoft.com/.default"
        assert config.graph.timeout == 30
        assert config.graph.page_size == 100

    def test_sync_config(self):
        assert isinstance(config.sync, SyncConfig)
        assert config.sync.sku_cache_ttl_seconds == 300

    @patch.dict(os.environ, GRAPH_ENV)
    def test_config_validation(self):
        """Test configuration validation"""
        # Reload config with new environment variables
        from common.config import Config
        test_config = Config()
        # Should not raise an exception
        test_config.validate()

    @patch.dict(os.environ, {'MICROSOFT_GRAPH_CLIENT_SECRET': ''})
    def test_config_validation_missing_keys(self):
        """Test configuration validation with missing keys"""
        from common.config import Config
        with pytest.raises(ConfigError, match="MICROSOFT_GRAPH_CLIENT_SECRET"):
            Config().validate_graph()

    @patch.dict(os.environ, {'CORS_ORIGINS': 'https://a.example.com, https://b.example.com,'})
    def test_cors_origins_split(self):
        from common.config import Config
        assert Config().app.cors_origins == ['https://a.example.com', 'https://b.example.com']


class TestLogging:
    """Test logging setup"""

    def test_logging_setup(self):
        """Test logging setup"""
        setup_logging()
        logger = get_logger("test")
        assert logger is not None

        # Test logging works
        logger.info("Test message")

    def test_log_context_binds_and_resets(self):
        import structlog
        with log_context(sync_type='full', step='users'):
            assert structlog.contextvars.get_contextvars() == {'sync_type': 'full', 'step': 'users'}
            with log_context(step='licenses'):
                assert structlog.contextvars.get_contextvars()['step'] == 'licenses'
            assert structlog.contextvars.get_contextvars()['step'] == 'users'
        assert structlog.contextvars.get_contextvars() == {}


class TestUtil:
    """Test value parsing helpers"""

    @pytest.mark.parametrize('value,expected', [
        ('1024', 1024),
        (2048, 2048),
        ('12.7', 12),
        ('', 0),
        (None, 0),
        ('n/a', 0),
        ('-5', 0),
        (-1, 0),
        ('1e400', 0),
        ('inf', 0),
        ('nan', 0),
        (float('inf'), 0),
    ])
    def test_to_int_clamped(self, value, expected):
        assert to_int_clamped(value) == expected

    def test_overflowing_report_cell_clamps_to_zero(self):
        from collectors.m365.models import MailboxUsageRow
        row = MailboxUsageRow.from_csv_row({
            'User Principal Name': 'ann@contoso.com',
            'Storage Used (Byte)': '1e400',
            'Item Count': '12',
        })
        assert row.storage_used_bytes == 0
        assert row.item_count == 12

    def test_to_int_clamped_default(self):
        assert to_int_clamped('', default=7) == 7
        assert to_int_clamped('', default=-3) == 0

    def test_parse_bool(self):
        assert parse_bool('True') is True
        assert parse_bool('false') is False
        assert parse_bool(None) is False
        assert parse_bool(True) is True

    def test_parse_report_date(self):
        assert parse_report_date('2026-10-18') == date(2026, 10, 18)
        assert parse_report_date('2026-10-18T09:30:00Z') == date(2026, 10, 18)
        assert parse_report_date('') is None
        assert parse_report_date('yesterday') is None

    def test_parse_graph_datetime(self):
        parsed = parse_graph_datetime('2026-01-31T08:15:00Z')
        assert parsed == datetime(2026, 1, 31, 8, 15, tzinfo=timezone.utc)
        assert parse_graph_datetime(None) is None
        assert parse_graph_datetime('garbage') is None


class TestDatabaseHelpers:
    """Test upsert and session handling against SQLite"""

    def test_upsert_inserts_then_updates(self, session_factory):
        with session_scope(session_factory) as session:
            upsert(session, SkuProductMapping,
                   {'sku_part_number': 'SPB', 'product_name': 'Old Name', 'is_active': True,
                    'created_at': datetime.now(timezone.utc)},
                   index_elements=['sku_part_number'])
        with session_scope(session_factory) as session:
            upsert(session, SkuProductMapping,
                   {'sku_part_number': 'SPB', 'product_name': 'New Name', 'is_active': True,
                    'created_at': datetime.now(timezone.utc)},
                   index_elements=['sku_part_number'], update_columns=['product_name'])

        session = session_factory()
        rows = session.query(SkuProductMapping).all()
        assert len(rows) == 1
        assert rows[0].product_name == 'New Name'
        session.close()

    def test_session_scope_rolls_back(self, session_factory):
        with pytest.raises(RuntimeError):
            with session_scope(session_factory) as session:
                session.add(SkuProductMapping(sku_part_number='SPB', product_name='Lost'))
                session.flush()
                raise RuntimeError('boom')

        session = session_factory()
        assert session.query(SkuProductMapping).count() == 0
        session.close()
