"""
Tests for the CLI interface.
"""
import os
import tempfile
from datetime import datetime
from unittest.mock import patch, MagicMock

import pytest
import yaml
from typer.testing import CliRunner

from scent_resolver.cli.main import app, EXIT_CODE_PASS, EXIT_CODE_FAIL
from scent_resolver.core.orchestrator import (
    CompletionResult,
    HealthReport,
    NormalizationOutcome,
    ProviderHealth,
    ResolutionOrchestrator,
)
from scent_resolver.core.types import (
    CompletionSuggestion,
    NormalizationResult,
    ProviderIdentity,
    SuggestionKind,
)
from scent_resolver.errors import DailyLimitExceeded, ProviderUnavailable

runner = CliRunner()

NOW = datetime(2026, 3, 15, 12, 0, 0)


@pytest.fixture
def mock_orchestrator():
    """Replace the orchestrator the CLI builds with a mock."""
    with patch('scent_resolver.cli.main._build_orchestrator') as mock_build:
        orchestrator = MagicMock(spec=ResolutionOrchestrator)
        mock_build.return_value = orchestrator
        yield orchestrator


@pytest.fixture
def temp_db():
    """Path to a database file in a throwaway directory."""
    temp_dir = tempfile.mkdtemp()
    yield os.path.join(temp_dir, "test.db")
    import shutil
    shutil.rmtree(temp_dir, ignore_errors=True)


def _completion_result(cached=False):
    return CompletionResult(
        query="ソヴァ",
        kind=SuggestionKind.FRAGRANCE,
        language="ja",
        provider=ProviderIdentity.OPENAI,
        suggestions=[
            CompletionSuggestion(
                display_text="ソヴァージュ",
                display_text_en="Sauvage",
                brand_name="ディオール",
                brand_name_en="Dior",
                confidence=0.95,
                kind=SuggestionKind.FRAGRANCE,
                source_provider=ProviderIdentity.OPENAI,
            )
        ],
        cost_estimate=0.00045,
        timing_ms=812,
        created_at=NOW,
        cached=cached,
    )


class TestResolutionCommands:
    """Test commands that call providers."""

    def test_complete(self, mock_orchestrator):
        mock_orchestrator.complete.return_value = _completion_result()

        result = runner.invoke(app, ["complete", "ソヴァ", "--limit", "5", "--user", "user-1"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Sauvage" in result.output
        assert "$0.000450" in result.output
        mock_orchestrator.complete.assert_awaited_once_with("ソヴァ", "fragrance", 5, "ja", None, "user-1")
        mock_orchestrator.aclose.assert_awaited_once()

    def test_complete_cached(self, mock_orchestrator):
        mock_orchestrator.complete.return_value = _completion_result(cached=True)

        result = runner.invoke(app, ["complete", "ソヴァ"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "(cached)" in result.output

    def test_limit_error_is_localized(self, mock_orchestrator):
        mock_orchestrator.complete.side_effect = DailyLimitExceeded("Daily AI usage limit exceeded ($1.00)")

        result = runner.invoke(app, ["complete", "ソヴァ", "--language", "en", "--user", "user-1"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "daily_limit_exceeded" in result.output
        assert "Daily AI usage limit exceeded" in result.output
        mock_orchestrator.aclose.assert_awaited_once()

    def test_unavailable_provider(self, mock_orchestrator):
        mock_orchestrator.complete.side_effect = ProviderUnavailable("gemini")

        result = runner.invoke(app, ["complete", "ソヴァ", "--provider", "gemini"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "provider_unavailable" in result.output

    def test_normalize_pair(self, mock_orchestrator):
        mock_orchestrator.normalize.return_value = NormalizationOutcome(
            result=NormalizationResult(
                normalized_brand_local="ディオール",
                normalized_brand_roman="Dior",
                normalized_name_local="ソヴァージュ",
                normalized_name_roman="Sauvage",
                confidence_score=0.9,
                concentration_type="EDT",
                launch_year=2015,
            ),
            provider=ProviderIdentity.ANTHROPIC,
            cost_estimate=0.0028,
            timing_ms=900,
            quality_score=0.8125,
            created_at=NOW,
        )

        result = runner.invoke(app, ["normalize", "dior", "sauvage"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "2015" in result.output
        assert "anthropic" in result.output
        mock_orchestrator.normalize.assert_awaited_once_with("dior", "sauvage", None, "ja", None)
        mock_orchestrator.normalize_from_input.assert_not_called()

    def test_normalize_free_text(self, mock_orchestrator):
        mock_orchestrator.normalize_from_input.side_effect = ProviderUnavailable("openai")

        result = runner.invoke(app, ["normalize", "dior sauvage"])

        assert result.exit_code == EXIT_CODE_FAIL
        mock_orchestrator.normalize_from_input.assert_awaited_once_with("dior sauvage", None, "ja", None)


class TestStatusCommands:
    """Test provider listing and health."""

    def test_providers_without_keys(self, mock_orchestrator):
        mock_orchestrator.list_providers.return_value = {"providers": [], "default": None}

        result = runner.invoke(app, ["providers"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No provider is configured" in result.output

    def test_health_degraded(self, mock_orchestrator):
        mock_orchestrator.health_check.return_value = HealthReport(
            providers={
                "openai": ProviderHealth(status="healthy", latency_ms=210),
                "anthropic": ProviderHealth(status="unhealthy", error="upstream_error"),
            },
            overall_status="degraded",
        )

        result = runner.invoke(app, ["health"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "210ms" in result.output
        assert "degraded" in result.output

    def test_health_critical_fails(self, mock_orchestrator):
        mock_orchestrator.health_check.return_value = HealthReport(providers={}, overall_status="critical")

        result = runner.invoke(app, ["health"])

        assert result.exit_code == EXIT_CODE_FAIL


class TestLedgerCommands:
    """Test commands that read the local database."""

    def test_init(self, temp_db):
        result = runner.invoke(app, ["--db", temp_db, "init"])

        assert result.exit_code == EXIT_CODE_PASS
        assert os.path.exists(temp_db)

    def test_usage_empty(self, temp_db):
        result = runner.invoke(app, ["--db", temp_db, "usage", "--user", "nobody"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No usage recorded for nobody" in result.output

    def test_usage_after_seeding(self, temp_db):
        seeded = runner.invoke(app, ["--db", temp_db, "seed-demo"])
        assert seeded.exit_code == EXIT_CODE_PASS
        assert "56 usage records" in seeded.output

        result = runner.invoke(app, ["--db", temp_db, "usage", "--user", "demo-user"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total:" in result.output

    def test_usage_invalid_month(self, temp_db):
        result = runner.invoke(app, ["--db", temp_db, "usage", "--user", "demo-user", "--month", "March"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "invalid_argument" in result.output

    def test_limits_ok(self, temp_db):
        result = runner.invoke(app, ["--db", temp_db, "limits", "--user", "nobody"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "ok" in result.output

    def test_feedback_summary(self, temp_db):
        runner.invoke(app, ["--db", temp_db, "seed-demo"])

        result = runner.invoke(app, ["--db", temp_db, "feedback", "--operation", "completion"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Total events: 4" in result.output
        assert "Helpful rate: 75%" in result.output

    def test_feedback_unknown_operation(self, temp_db):
        result = runner.invoke(app, ["--db", temp_db, "feedback", "--operation", "translation"])

        assert result.exit_code == EXIT_CODE_FAIL


class TestConfigErrors:
    """Test configuration failures."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_missing_config_file(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "missing.yml"), "providers"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_invalid_config(self):
        config_path = os.path.join(self.temp_dir, "config.yml")
        with open(config_path, 'w') as f:
            yaml.dump({"limits": {"daily_cost": -1}}, f)

        result = runner.invoke(app, ["--config", config_path, "providers"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "daily_cost must be > 0" in result.output
