"""
Unit tests for the host-facing exporter and failure alerts

Tests verify:
- open_data never raises for sync errors
- Disabled tables are skipped without touching the database
- Discord alert payloads and delivery failures
"""

from unittest.mock import MagicMock, Mock, patch

import requests

from grid_pg_sync.alerts import DISCORD_LIMIT, _truncate_for_discord, send_discord_alert
from grid_pg_sync.errors import ConfigurationError, WriteError
from grid_pg_sync.exporter import ExportResult, GridExporter


class TestGridExporter:

    def setup_method(self):
        self.engine = Mock()
        self.alert = Mock()
        self.exporter = GridExporter(engine=self.engine, alert=self.alert)

    def test_success(self, orders_grid, make_config):
        self.engine.export.return_value = {"rows_written": 2}

        result = self.exporter.open_data(orders_grid, make_config())

        assert result == ExportResult(True, details={"rows_written": 2})
        self.alert.assert_not_called()

    def test_failure_becomes_result(self, orders_grid, make_config):
        self.engine.export.side_effect = WriteError(
            "There was a problem exporting. Table=public.orders Err=boom", table="public.orders"
        )

        result = self.exporter.open_data(orders_grid, make_config())

        assert result.succeeded is False
        assert result.message == "There was a problem exporting. Table=public.orders Err=boom"
        message = self.alert.call_args[0][0]
        assert "public.orders" in message and "Err=boom" in message

    def test_disabled_table_is_skipped(self, orders_grid, make_config):
        result = self.exporter.open_data(orders_grid, make_config(table_enabled=False, table_name=""))

        assert result.succeeded
        self.engine.export.assert_not_called()

    def test_from_settings_with_bad_mode(self, orders_grid):
        result = self.exporter.open_data_from_settings(
            orders_grid, {"ConnectionString": "host=db"},
            {"DatabaseTableName": "public.orders", "DataExportType": "Sideways"},
        )

        assert result.succeeded is False
        assert "Data Export Type" in result.message
        self.engine.export.assert_not_called()

    def test_from_settings(self, orders_grid):
        self.engine.export.return_value = {}

        self.exporter.open_data_from_settings(
            orders_grid, {"ConnectionString": "host=db"},
            {"DatabaseTableName": "public.orders"}, {"Name": {"EnableColumnExport": False}},
        )

        cfg = self.engine.export.call_args[0][0]
        assert cfg.destination == "public.orders"
        assert cfg.is_column_enabled("name") is False

    def test_configuration_error_from_engine(self, orders_grid, make_config):
        self.engine.export.side_effect = ConfigurationError("Include Schema with Table Name (e.g. SchemaName.TableName)")

        result = self.exporter.open_data(orders_grid, make_config(table_name="orders"))

        assert result.message.startswith("Include Schema")

    def test_data_summary(self):
        assert GridExporter.get_data_summary({"DatabaseTableName": "public.orders"}) == (
            "Exporting to PostgreSQL : public.orders table"
        )
        assert GridExporter.get_data_summary({}) is None


class TestDiscordAlert:

    def test_no_webhook(self, monkeypatch):
        monkeypatch.delenv("GRID_PG_SYNC_DISCORD_WEBHOOK", raising=False)
        with patch("grid_pg_sync.alerts.requests.post") as post:
            assert send_discord_alert("hello") is False
        post.assert_not_called()

    def test_posts_to_webhook(self, monkeypatch):
        monkeypatch.setenv("GRID_PG_SYNC_DISCORD_WEBHOOK", "https://discord.test/hook")
        with patch("grid_pg_sync.alerts.requests.post") as post:
            post.return_value = MagicMock(status_code=204)
            assert send_discord_alert("export failed") is True

        post.assert_called_once_with(
            "https://discord.test/hook",
            json={"content": "export failed", "username": "Grid Export Alert"},
            timeout=10,
        )

    def test_network_error_is_swallowed(self):
        with patch("grid_pg_sync.alerts.requests.post", side_effect=requests.ConnectionError("down")):
            assert send_discord_alert("x", webhook_url="https://discord.test/hook") is False

    def test_rejected(self):
        with patch("grid_pg_sync.alerts.requests.post") as post:
            post.return_value = MagicMock(status_code=400, text="bad")
            assert send_discord_alert("x", webhook_url="https://discord.test/hook") is False

    def test_truncation(self):
        text = _truncate_for_discord("a" * 5000)
        assert len(text) <= DISCORD_LIMIT
        assert text.endswith("(truncated)")
        assert _truncate_for_discord("short") == "short"
