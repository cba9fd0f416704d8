"""Tests for the stock-agent CLI."""

import json

import httpx
import pytest
from typer.testing import CliRunner

from stock_agent import cli
from stock_agent.cli import app
from stock_agent.service import StockDataService
from tests.fixtures.listings import EQUITY_URL

runner = CliRunner()


@pytest.fixture
def cli_service(monkeypatch, exchange, app_config, no_sleep):
    """Point every CLI command at the fake exchange and a tmp workspace."""

    def build():
        return StockDataService(config=app_config, client=exchange.client(), sleep=no_sleep)

    monkeypatch.setattr(cli, "_build_service", build)
    return exchange


class TestCLIStructure:
    """Test the CLI command group structure."""

    def test_cli_help(self):
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "stocks" in result.stdout
        assert "sources" in result.stdout
        assert "admin" in result.stdout

    def test_stocks_group_help(self):
        result = runner.invoke(app, ["stocks", "--help"])
        assert result.exit_code == 0
        for command in ("fetch", "refresh", "search", "get"):
            assert command in result.stdout

    def test_sources_group_help(self):
        result = runner.invoke(app, ["sources", "--help"])
        assert result.exit_code == 0
        for command in ("discover", "classify", "validate"):
            assert command in result.stdout

    def test_admin_group_help(self):
        result = runner.invoke(app, ["admin", "--help"])
        assert result.exit_code == 0
        for command in ("cache-status", "clear-cache", "health", "config"):
            assert command in result.stdout


class TestStocksCommands:
    """Test stocks command invocation against the fake exchange."""

    def test_fetch(self, cli_service):
        result = runner.invoke(app, ["stocks", "fetch"])

        assert result.exit_code == 0
        assert "Fetched 14 securities" in result.stdout

    def test_fetch_json(self, cli_service):
        result = runner.invoke(app, ["stocks", "fetch", "--json"])

        assert result.exit_code == 0
        summary = json.loads(result.stdout)
        assert summary["success"] is True
        assert summary["count"] == 14
        assert "stocks" not in summary

    def test_fetch_failure_exits_nonzero(self, cli_service):
        cli_service.add(EQUITY_URL, httpx.Response(500))

        result = runner.invoke(app, ["stocks", "fetch"])

        assert result.exit_code == 1
        assert "Fetch failed" in result.stdout

    def test_get(self, cli_service):
        result = runner.invoke(app, ["stocks", "get", "infy"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["symbol"] == "INFY"
        assert data["lookup_source"] == "LIVE_FETCH"

    def test_get_unknown(self, cli_service):
        result = runner.invoke(app, ["stocks", "get", "NOPE"])

        assert result.exit_code == 1
        assert "not found" in result.stdout

    def test_search_json(self, cli_service):
        result = runner.invoke(app, ["stocks", "search", "TCS", "--exact", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert [s["symbol"] for s in data["stocks"]] == ["TCS"]

    def test_search_table(self, cli_service):
        result = runner.invoke(app, ["stocks", "search", "tata", "--limit", "5"])

        assert result.exit_code == 0
        assert "TCS" in result.stdout


class TestSourcesCommands:
    """Test discovery commands."""

    def test_discover(self, cli_service):
        result = runner.invoke(app, ["sources", "discover"])

        assert result.exit_code == 0
        assert "discovered" in result.stdout

    def test_classify_explicit_url(self, cli_service):
        result = runner.invoke(app, ["sources", "classify", EQUITY_URL])

        assert result.exit_code == 0
        assert "must_use" in result.stdout

    def test_validate(self, cli_service):
        result = runner.invoke(app, ["sources", "validate"])

        assert result.exit_code == 0

    def test_validate_reports_broken_url(self, cli_service):
        cli_service.add(EQUITY_URL, httpx.Response(404))

        result = runner.invoke(app, ["sources", "validate"])

        assert result.exit_code == 1


class TestAdminCommands:
    """Test admin command invocation."""

    def test_cache_status(self, cli_service):
        result = runner.invoke(app, ["admin", "cache-status"])

        assert result.exit_code == 0
        assert "CSV cache" in result.stdout

    def test_clear_cache(self, cli_service):
        runner.invoke(app, ["stocks", "fetch"])

        result = runner.invoke(app, ["admin", "clear-cache", "--yes"])

        assert result.exit_code == 0
        assert "Removed 5 cache entries" in result.stdout

    def test_clear_cache_declined(self, cli_service, app_config):
        runner.invoke(app, ["stocks", "fetch"])

        result = runner.invoke(app, ["admin", "clear-cache"], input="n\n")

        assert result.exit_code == 0
        assert "Removed" not in result.stdout
        assert (app_config.ingestion.cache_dir / "nse_equity.csv").exists()

    def test_health(self, cli_service):
        result = runner.invoke(app, ["admin", "health"])

        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "healthy"

    def test_config(self):
        result = runner.invoke(app, ["admin", "config"])

        assert result.exit_code == 0
        assert "Max retries" in result.stdout
        assert "Discovery TTL" in result.stdout


def test_main_returns_exit_code(cli_service, monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda *args: None)

    assert cli.main(["admin", "config"]) == 0
    assert cli.main(["stocks", "get", "NOPE"]) == 1
