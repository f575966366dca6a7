"""
Unit tests for the resolution orchestrator.

Providers are replaced with in-process fakes; the ledger and feedback store use a temporary SQLite database.
"""

import os
import sqlite3
import tempfile
from datetime import datetime
from unittest.mock import MagicMock

import pytest

from scent_resolver.config.loader import BatchSettings, LimitSettings, ResolverConfig
from scent_resolver.core.canonical import InMemoryMasterCatalog
from scent_resolver.core.feedback import FeedbackService
from scent_resolver.core.ledger import CostLedger
from scent_resolver.core.orchestrator import ResolutionOrchestrator
from scent_resolver.core.token_counter import TokenUsage
from scent_resolver.core.types import (
    AttributeSuggestion,
    CompletionSuggestion,
    NormalizationResult,
    NoteSuggestion,
    NotesSuggestion,
    ProviderIdentity,
    SuggestionKind,
)
from scent_resolver.errors import (
    DailyLimitExceeded,
    InvalidArgument,
    NoProviderAvailable,
    ProviderUnavailable,
    ResolverError,
    UpstreamError,
)
from scent_resolver.providers.base import (
    AttributesResponse,
    CallMetrics,
    CompletionResponse,
    NormalizationResponse,
    NotesResponse,
)
from scent_resolver.providers.registry import ProviderRegistry
from scent_resolver.storage.feedback_repository import FeedbackRepository
from scent_resolver.storage.models import OperationType
from scent_resolver.storage.repository import UsageRepository, initialize_schema

NOW = datetime(2026, 3, 15, 12, 0, 0)

NAMES = [
    ("ソヴァージュ", "Sauvage", 0.6),
    ("ソヴァージュ エリクシール", "Sauvage Elixir", 0.95),
    ("ファーレンハイト", "Fahrenheit", 0.4),
    ("オム", "Dior Homme", 0.8),
    ("デューン", "Dune", 0.3),
    ("プワゾン", "Poison", 0.7),
    ("アディクト", "Addict", 0.5),
]


class FakeAdapter:
    """In-process adapter that answers every operation with canned data."""

    def __init__(self, identity, cost=0.001):
        self.identity = identity
        self.cost = cost
        self.error = None
        self.calls = []
        self.ping_latency = 42

    def _metrics(self):
        return CallMetrics(
            provider=self.identity,
            model=f"{self.identity.value}-model",
            usage=TokenUsage(100, 50),
            cost_estimate=self.cost,
            timing_ms=120,
        )

    def _called(self, operation, *args):
        self.calls.append((operation,) + args)
        if self.error is not None:
            raise self.error

    async def complete(self, query, options):
        self._called("complete", query, options)
        suggestions = [
            CompletionSuggestion(
                display_text=ja,
                display_text_en=en,
                brand_name="ディオール",
                brand_name_en="Dior",
                confidence=confidence,
                kind=options.kind,
                source_provider=self.identity,
            )
            for ja, en, confidence in NAMES
        ]
        return CompletionResponse(suggestions=suggestions, metrics=self._metrics())

    async def normalize(self, brand, name, options):
        self._called("normalize", brand, name, options)
        return NormalizationResponse(
            result=NormalizationResult(
                normalized_brand_local="ディオール",
                normalized_brand_roman="Dior",
                normalized_name_local="ソヴァージュ",
                normalized_name_roman="Sauvage",
                confidence_score=0.9,
                concentration_type="eau de toilette",
                launch_year=2015,
                provider=self.identity,
            ),
            metrics=self._metrics(),
        )

    async def normalize_text(self, text, options):
        self._called("normalize_text", text, options)
        return (await self.normalize("", text, options))

    async def suggest_notes(self, brand, name, options):
        self._called("notes", brand, name, options)
        notes = NotesSuggestion(
            top=[NoteSuggestion("bergamot", "strong", 0.9, "citrus")],
            middle=[NoteSuggestion("lavender", "medium", 0.7, "green")],
            base=[NoteSuggestion("ambroxan", "strong", 0.8, "other")],
            confidence_score=0.8,
        )
        return NotesResponse(notes=notes, metrics=self._metrics())

    async def suggest_attributes(self, name, options):
        self._called("attributes", name, options)
        attributes = AttributeSuggestion(
            seasons=["summer"], occasions=["daily"], time_of_day=["day"], age_groups=["20s"],
            confidence_score=0.7,
        )
        return AttributesResponse(attributes=attributes, metrics=self._metrics())

    async def ping(self):
        self._called("ping")
        return self.ping_latency

    async def aclose(self):
        pass


class OrchestratorTestCase:
    """Orchestrator wired to fake OpenAI and Anthropic adapters."""

    limits = LimitSettings()

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)

        self.config = ResolverConfig(
            db_path=self.db_path,
            limits=self.limits,
            batch=BatchSettings(max_complete=3, max_normalize=3, max_notes=3, max_concurrency=2),
        ).with_api_keys(openai="o-key", anthropic="a-key")

        self.adapters = {identity: FakeAdapter(identity) for identity in ProviderIdentity}
        factories = {
            identity: (lambda settings, rates, backoff, adapter=adapter: adapter)
            for identity, adapter in self.adapters.items()
        }
        self.repository = UsageRepository(self.db_path)
        self.feedback = FeedbackService(FeedbackRepository(self.db_path))
        self.sink = []
        self.orchestrator = ResolutionOrchestrator(
            ProviderRegistry(self.config, factories),
            ledger=CostLedger(self.repository, self.config.limits),
            feedback=self.feedback,
            catalog=InMemoryMasterCatalog(
                brands={"b1": ("ディオール", "Dior")},
                fragrances={"f1": ("b1", "ソヴァージュ", "Sauvage")},
            ),
            record_sink=self.sink.append,
            clock=lambda: NOW,
        )

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @property
    def openai(self):
        return self.adapters[ProviderIdentity.OPENAI]

    @property
    def anthropic(self):
        return self.adapters[ProviderIdentity.ANTHROPIC]


class TestComplete(OrchestratorTestCase):
    """Test completion requests."""

    @pytest.mark.asyncio
    async def test_limit_and_ordering(self):
        result = await self.orchestrator.complete("ソヴァ", limit=5)

        confidences = [s.confidence for s in result.suggestions]
        assert len(result.suggestions) == 5
        assert confidences == sorted(confidences, reverse=True)
        assert result.suggestions[0].display_text == "ソヴァージュ エリクシール"
        assert result.provider is ProviderIdentity.OPENAI
        assert result.cached is False
        assert result.to_dict()["metadata"]["timestamp"] == NOW.isoformat()

    @pytest.mark.asyncio
    async def test_second_request_is_cached(self):
        first = await self.orchestrator.complete("ソヴァ", user_id="user-1")
        second = await self.orchestrator.complete(" ソヴァ ", user_id="user-1")

        assert len(self.openai.calls) == 1
        assert second.cached is True
        assert second.cost_estimate == 0.0
        assert second.suggestions == first.suggestions
        assert len(self.repository.get_records("user-1")) == 1

    @pytest.mark.asyncio
    async def test_different_limit_is_not_cached(self):
        await self.orchestrator.complete("ソヴァ", limit=3)
        await self.orchestrator.complete("ソヴァ", limit=4)
        assert len(self.openai.calls) == 2

    @pytest.mark.asyncio
    async def test_usage_is_recorded(self):
        result = await self.orchestrator.complete("ソヴァ", limit=2, user_id="user-1")

        records = self.repository.get_records("user-1")
        assert len(records) == 1
        assert records[0].operation == "completion"
        assert records[0].provider == "openai"
        assert records[0].cost_estimate == 0.001
        assert records[0].confidence == pytest.approx(
            sum(s.confidence for s in result.suggestions) / 2
        )

    @pytest.mark.asyncio
    async def test_brand_kind_is_passed_through(self):
        await self.orchestrator.complete("dio", kind="brand")
        options = self.openai.calls[0][2]
        assert options.kind is SuggestionKind.BRAND

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs", [
        {"language": "fr"},
        {"limit": 0},
        {"limit": 21},
        {"limit": True},
        {"kind": "perfume"},
    ])
    async def test_invalid_arguments(self, kwargs):
        with pytest.raises(InvalidArgument):
            await self.orchestrator.complete("ソヴァ", **kwargs)
        assert self.openai.calls == []

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self):
        with pytest.raises(InvalidArgument):
            await self.orchestrator.complete("   ")

    @pytest.mark.asyncio
    async def test_exemplars_are_included(self):
        self.feedback.record_selection("ソヴァ", "completion", {"text": "ソヴァージュ"}, relevance_score=0.95)

        await self.orchestrator.complete("ブルー")

        examples = self.openai.calls[0][2].examples
        assert [(e.query, e.selected_text) for e in examples] == [("ソヴァ", "ソヴァージュ")]

    @pytest.mark.asyncio
    async def test_exemplar_failure_is_tolerated(self, caplog):
        feedback = MagicMock()
        feedback.few_shot_examples.side_effect = sqlite3.OperationalError("database is locked")
        self.orchestrator.feedback = feedback

        result = await self.orchestrator.complete("ソヴァ")

        assert result.suggestions
        assert self.openai.calls[0][2].examples == ()
        assert "Could not load few-shot examples" in caplog.text


class TestProviderSelection(OrchestratorTestCase):
    """Test explicit selection, defaults and fallback."""

    @pytest.mark.asyncio
    async def test_explicit_provider(self):
        result = await self.orchestrator.complete("ソヴァ", provider="anthropic")
        assert result.provider is ProviderIdentity.ANTHROPIC
        assert self.openai.calls == []

    @pytest.mark.asyncio
    async def test_explicit_unconfigured_provider(self):
        with pytest.raises(ProviderUnavailable):
            await self.orchestrator.complete("ソヴァ", provider="gemini")
        assert all(adapter.calls == [] for adapter in self.adapters.values())

    @pytest.mark.asyncio
    async def test_explicit_provider_failure_does_not_fall_back(self):
        self.anthropic.error = UpstreamError("anthropic", 500)
        with pytest.raises(UpstreamError):
            await self.orchestrator.complete("ソヴァ", provider="anthropic")
        assert self.openai.calls == []

    @pytest.mark.asyncio
    async def test_auto_mode_falls_back_once(self, caplog):
        self.openai.error = UpstreamError("openai", 503)

        result = await self.orchestrator.complete("ソヴァ", user_id="user-1")

        assert result.provider is ProviderIdentity.ANTHROPIC
        assert len(self.openai.calls) == 1
        assert len(self.anthropic.calls) == 1
        assert "falling back to anthropic" in caplog.text
        assert [r.provider for r in self.repository.get_records("user-1")] == ["anthropic"]

    @pytest.mark.asyncio
    async def test_fallback_result_is_cached(self):
        self.openai.error = UpstreamError("openai", 503)

        await self.orchestrator.complete("ソヴァ")
        second = await self.orchestrator.complete("ソヴァ")

        assert second.cached is True
        assert second.provider is ProviderIdentity.ANTHROPIC
        assert len(self.openai.calls) == 1
        assert len(self.anthropic.calls) == 1

    @pytest.mark.asyncio
    async def test_explicit_provider_ignores_other_cache_entries(self):
        self.openai.error = UpstreamError("openai", 503)
        await self.orchestrator.complete("ソヴァ")
        self.openai.error = None

        result = await self.orchestrator.complete("ソヴァ", provider="openai")

        assert result.cached is False
        assert result.provider is ProviderIdentity.OPENAI
        assert len(self.openai.calls) == 2

    @pytest.mark.asyncio
    async def test_fallback_failure_surfaces_last_error(self):
        self.openai.error = UpstreamError("openai", 503)
        self.anthropic.error = UpstreamError("anthropic", 502)

        with pytest.raises(UpstreamError) as exc_info:
            await self.orchestrator.complete("ソヴァ")
        assert exc_info.value.provider == "anthropic"

    @pytest.mark.asyncio
    async def test_invalid_argument_is_not_retried_elsewhere(self):
        self.openai.error = InvalidArgument("bad")
        with pytest.raises(InvalidArgument):
            await self.orchestrator.complete("ソヴァ")
        assert self.anthropic.calls == []

    @pytest.mark.asyncio
    async def test_no_provider_available(self):
        orchestrator = ResolutionOrchestrator(ProviderRegistry(ResolverConfig(db_path=self.db_path)))
        with pytest.raises(NoProviderAvailable):
            await orchestrator.complete("ソヴァ")

    def test_list_providers(self):
        assert self.orchestrator.list_providers() == {
            "providers": ["openai", "anthropic"],
            "default": "openai",
        }


class TestLimits(OrchestratorTestCase):
    """Test limit enforcement ahead of provider calls."""

    limits = LimitSettings(daily_cost=0.01, monthly_cost=1.0, requests_per_window=2)

    @pytest.mark.asyncio
    async def test_daily_limit_blocks_provider_call(self):
        self.orchestrator.ledger.record_usage("user-1", "openai", "gpt-4o-mini", "completion", 10, 10, 0.02)

        with pytest.raises(DailyLimitExceeded):
            await self.orchestrator.complete("ソヴァ", user_id="user-1")

        assert self.openai.calls == []
        assert len(self.repository.get_records("user-1")) == 1

    @pytest.mark.asyncio
    async def test_anonymous_requests_skip_limits(self):
        self.orchestrator.ledger.record_usage(None, "openai", "gpt-4o-mini", "completion", 10, 10, 0.02)
        result = await self.orchestrator.complete("ソヴァ")
        assert result.suggestions

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        await self.orchestrator.complete("a", user_id="user-1")
        await self.orchestrator.complete("b", user_id="user-1")
        with pytest.raises(ResolverError) as exc_info:
            await self.orchestrator.complete("c", user_id="user-1")
        assert exc_info.value.code == "rate_limit_exceeded"
        assert len(self.openai.calls) == 2


class TestNormalize(OrchestratorTestCase):
    """Test normalization and confirmation."""

    @pytest.mark.asyncio
    async def test_normalize_cleans_and_matches(self):
        outcome = await self.orchestrator.normalize("dior", "sauvage", user_id="user-1")

        assert outcome.result.concentration_type == "EDT"
        assert outcome.result.matched_brand_id == "b1"
        assert outcome.result.matched_fragrance_id == "f1"
        assert outcome.result.master_match == 1.0
        assert 0 < outcome.quality_score <= 1

        record = self.repository.get_records("user-1")[0]
        assert record.operation == "normalization"
        assert record.master_match == 1.0

    @pytest.mark.asyncio
    async def test_normalize_from_free_text(self):
        outcome = await self.orchestrator.normalize_from_input("ディオール ソヴァージュ", language="en")
        assert outcome.result.normalized_name_roman == "Sauvage"
        assert self.openai.calls[0][0] == "normalize_text"

    @pytest.mark.asyncio
    async def test_missing_name_rejected(self):
        with pytest.raises(InvalidArgument, match="name"):
            await self.orchestrator.normalize("dior", None)

    @pytest.mark.asyncio
    async def test_confirm_hands_record_to_sink(self):
        outcome = await self.orchestrator.normalize("dior", "sauvage")

        record = self.orchestrator.confirm_normalization(outcome, "dior sauvage", user_id="user-1")

        assert self.sink == [record]
        assert record.brand.name_en == "Dior"
        assert record.name_ja == "ソヴァージュ"
        patterns = self.feedback.successful_patterns("dior sauvage", OperationType.NORMALIZATION)
        assert patterns[0].selected_text == "ソヴァージュ"


class TestNotesAndAttributes(OrchestratorTestCase):
    """Test note and attribute suggestions."""

    @pytest.mark.asyncio
    async def test_notes(self):
        outcome = await self.orchestrator.suggest_notes("Dior", "Sauvage", note_limit=3)
        assert outcome.confidence_score == 0.8
        assert [n.name for n in outcome.notes.top] == ["bergamot"]
        assert self.openai.calls[0][3].note_limit == 3

    @pytest.mark.asyncio
    async def test_notes_are_requested_without_exemplars(self):
        self.feedback.record_selection("ソヴァ", "completion", {"text": "ソヴァージュ"}, relevance_score=0.95)

        await self.orchestrator.suggest_notes("Dior", "Sauvage")

        assert self.openai.calls[0][3].examples == ()

    @pytest.mark.asyncio
    async def test_note_limit_bounds(self):
        with pytest.raises(InvalidArgument):
            await self.orchestrator.suggest_notes("Dior", "Sauvage", note_limit=11)

    @pytest.mark.asyncio
    async def test_attributes_are_cached(self):
        await self.orchestrator.suggest_attributes("Sauvage")
        outcome = await self.orchestrator.suggest_attributes("sauvage")
        assert outcome.cached is True
        assert outcome.attributes.seasons == ["summer"]
        assert len(self.openai.calls) == 1


class TestBatches(OrchestratorTestCase):
    """Test batch operations."""

    @pytest.mark.asyncio
    async def test_failed_item_does_not_fail_batch(self):
        result = await self.orchestrator.batch_complete(["ソヴァ", "  ", "ブルー"], language="en")

        assert [item.status for item in result.results] == ["success", "failure", "success"]
        assert result.results[1].error == {
            "code": "invalid_argument",
            "message": "The request contains invalid input",
        }
        assert result.successful_count == 2
        assert result.success_rate == 66.67
        assert result.total_cost_estimate == 0.002

    @pytest.mark.asyncio
    async def test_results_keep_input_order(self):
        result = await self.orchestrator.batch_complete(["a", "b", "c"])
        assert [item.input for item in result.results] == ["a", "b", "c"]
        assert [item.result.query for item in result.results] == ["a", "b", "c"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("queries", [[], "ソヴァ", ["a", "b", "c", "d"]])
    async def test_invalid_batches(self, queries):
        with pytest.raises(InvalidArgument):
            await self.orchestrator.batch_complete(queries)

    @pytest.mark.asyncio
    async def test_batch_normalize_rejects_malformed_items(self):
        result = await self.orchestrator.batch_normalize([
            {"brand": "dior", "name": "sauvage"},
            "dior sauvage",
            {"brand": "dior"},
        ])
        assert [item.status for item in result.results] == ["success", "failure", "failure"]
        assert result.results[1].error["message"] == "入力内容が正しくありません"

    @pytest.mark.asyncio
    async def test_provider_errors_become_item_failures(self):
        self.anthropic.error = UpstreamError("anthropic", 500)
        result = await self.orchestrator.batch_suggest_notes(
            [{"brand": "Dior", "name": "Sauvage"}], provider="anthropic"
        )
        assert result.results[0].error["code"] == "upstream_error"
        assert result.success_rate == 0.0


class TestHealthCheck(OrchestratorTestCase):
    """Test provider probes."""

    @pytest.mark.asyncio
    async def test_all_healthy(self):
        report = await self.orchestrator.health_check()
        assert report.overall_status == "healthy"
        assert report.providers["openai"].latency_ms == 42
        assert set(report.providers) == {"openai", "anthropic"}

    @pytest.mark.asyncio
    async def test_degraded(self):
        self.anthropic.error = UpstreamError("anthropic", 500)
        report = await self.orchestrator.health_check()
        assert report.overall_status == "degraded"
        assert report.to_dict()["providers"]["anthropic"] == {"status": "unhealthy", "error": "upstream_error"}

    @pytest.mark.asyncio
    async def test_unconfigured_provider_is_critical(self):
        report = await self.orchestrator.health_check("gemini")
        assert report.providers["gemini"].status == "unavailable"
        assert report.overall_status == "critical"

    @pytest.mark.asyncio
    async def test_nothing_configured_is_critical(self):
        orchestrator = ResolutionOrchestrator(ProviderRegistry(ResolverConfig(db_path=self.db_path)))
        report = await orchestrator.health_check()
        assert report.providers == {}
        assert report.overall_status == "critical"


class TestRecordFeedback(OrchestratorTestCase):
    """Test feedback acknowledgement and validation."""

    def test_selection_acknowledged(self):
        ack = self.orchestrator.record_feedback(
            "selected",
            "ソヴァ",
            offered=[{"text": "ソヴァージュ"}],
            chosen={"text": "ソヴァージュ"},
            relevance_score=0.9,
            user_id="user-1",
            session_id="session-1",
        )
        assert ack == {"recorded": True, "session_id": "session-1", "action": "selected"}

    def test_rejection_gets_session_id(self):
        ack = self.orchestrator.record_feedback("rejection", "xyz")
        assert ack["action"] == "rejected"
        assert ack["session_id"]

    def test_modification(self):
        ack = self.orchestrator.record_feedback(
            "modified", "no5", operation_type="normalization", chosen={"text": "No.5"}, final_input="No.5 L'Eau"
        )
        assert ack["action"] == "modified"

    @pytest.mark.parametrize("action, kwargs", [
        ("clicked", {}),
        ("selected", {}),
        ("modified", {"chosen": {"text": "No.5"}}),
        ("rejected", {"operation_type": "translation"}),
        ("rejected", {"foo": "bar"}),
        ("selected", {"chosen": {"text": "x"}, "relevance_score": "high"}),
        ("selected", {"chosen": {"text": "x"}, "relevance_score": 1.5}),
    ])
    def test_invalid_feedback(self, action, kwargs):
        with pytest.raises(InvalidArgument):
            self.orchestrator.record_feedback(action, "query", **kwargs)

    def test_without_feedback_store(self):
        self.orchestrator.feedback = None
        with pytest.raises(ResolverError):
            self.orchestrator.record_feedback("rejected", "query")


class TestFromConfig:
    """Test wiring from configuration."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @pytest.mark.asyncio
    async def test_creates_schema(self):
        db_path = os.path.join(self.temp_dir, "resolver.db")
        orchestrator = ResolutionOrchestrator.from_config(ResolverConfig(db_path=db_path))

        assert os.path.exists(db_path)
        assert orchestrator.list_providers() == {"providers": [], "default": None}
        await orchestrator.aclose()
