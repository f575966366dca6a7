"""
Resolution orchestrator.

Runs each public operation through intake, limit checks, caching, provider invocation with bounded fallback, post-processing and usage recording.
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, TypeVar, Union

from ..config.loader import ResolverConfig
from ..errors import (
    InvalidArgument,
    NoProviderAvailable,
    ProviderError,
    ProviderUnavailable,
    ResolverError,
    error_payload,
)
from ..providers.base import CallMetrics, ProviderAdapter, RequestOptions
from ..providers.registry import ProviderRegistry
from ..storage.feedback_repository import FeedbackRepository
from ..storage.models import OperationType, UserAction
from ..storage.repository import UsageRepository, initialize_schema
from .cache import ResultCache, fingerprint
from .canonical import CanonicalFragranceRecord, MasterCatalog, match_master_data, to_canonical_record
from .efficiency import quality_score
from .feedback import FeedbackService
from .ledger import CostLedger
from .limits import enforce_limits
from .postprocess import clean_normalization, rank_suggestions
from .sanitize import sanitize_text
from .types import (
    AttributeSuggestion,
    CompletionSuggestion,
    Exemplar,
    NormalizationResult,
    NotesSuggestion,
    ProviderIdentity,
    SuggestionKind,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

LANGUAGES = ("ja", "en")
MAX_COMPLETION_LIMIT = 20
MAX_NOTE_LIMIT = 10
DEFAULT_NOTE_LIMIT = 8

FEEDBACK_ACTIONS = {
    "selected": UserAction.SELECTED,
    "selection": UserAction.SELECTED,
    "rejected": UserAction.REJECTED,
    "rejection": UserAction.REJECTED,
    "modified": UserAction.MODIFIED,
    "modification": UserAction.MODIFIED,
}

FEEDBACK_CONTEXT_KEYS = frozenset({
    "user_id", "session_id", "provider", "model", "request_params", "context_data", "user_notes",
})


@dataclass(frozen=True)
class CompletionResult:
    query: str
    kind: SuggestionKind
    language: str
    provider: ProviderIdentity
    suggestions: List[CompletionSuggestion]
    cost_estimate: float
    timing_ms: int
    created_at: datetime
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "suggestions": [s.to_dict() for s in self.suggestions],
            "provider": self.provider.value,
            "cost_estimate": self.cost_estimate,
            "timing_ms": self.timing_ms,
            "cached": self.cached,
            "metadata": {
                "query": self.query,
                "type": self.kind.value,
                "language": self.language,
                "provider": self.provider.value,
                "timestamp": self.created_at.isoformat(),
            },
        }


@dataclass(frozen=True)
class NormalizationOutcome:
    result: NormalizationResult
    provider: ProviderIdentity
    cost_estimate: float
    timing_ms: int
    quality_score: float
    created_at: datetime
    cached: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data = self.result.to_dict()
        data.update({
            "cost_estimate": self.cost_estimate,
            "timing_ms": self.timing_ms,
            "quality_score": self.quality_score,
            "cached": self.cached,
            "timestamp": self.created_at.isoformat(),
        })
        return data


@dataclass(frozen=True)
class NotesOutcome:
    notes: NotesSuggestion
    provider: ProviderIdentity
    cost_estimate: float
    created_at: datetime
    cached: bool = False

    @property
    def confidence_score(self) -> float:
        return self.notes.confidence_score

    def to_dict(self) -> Dict[str, Any]:
        return {
            "notes": {tier: [vars(n) for n in getattr(self.notes, tier)] for tier in ("top", "middle", "base")},
            "confidence_score": self.notes.confidence_score,
            "provider": self.provider.value,
            "cost_estimate": self.cost_estimate,
            "cached": self.cached,
        }


@dataclass(frozen=True)
class AttributesOutcome:
    attributes: AttributeSuggestion
    provider: ProviderIdentity
    cost_estimate: float
    created_at: datetime
    cached: bool = False


@dataclass(frozen=True)
class BatchItem:
    """Outcome of one batch entry: ``result`` on success, ``error`` otherwise."""
    index: int
    input: Any
    status: str
    result: Optional[Any] = None
    error: Optional[Dict[str, str]] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "success"


@dataclass(frozen=True)
class BatchResult:
    results: List[BatchItem]
    total_cost_estimate: float

    @property
    def successful_count(self) -> int:
        return sum(1 for item in self.results if item.succeeded)

    @property
    def success_rate(self) -> float:
        """Share of successful items as a percentage."""
        if not self.results:
            return 0.0
        return round(self.successful_count / len(self.results) * 100, 2)


@dataclass(frozen=True)
class ProviderHealth:
    status: str
    latency_ms: Optional[int] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class HealthReport:
    providers: Dict[str, ProviderHealth]
    overall_status: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "providers": {
                name: {k: v for k, v in vars(health).items() if v is not None}
                for name, health in self.providers.items()
            },
            "overall_status": self.overall_status,
        }


class ResolutionOrchestrator:
    """Hub for every public resolution operation.

    Args:
        registry: Provider registry
        ledger: Cost ledger; limit checks and usage recording are skipped without one
        feedback: Feedback service used for exemplars and user reactions
        config: Configuration; defaults to the registry's
        cache: Result cache; one sized from configuration is created otherwise
        catalog: Master catalog used to match normalizations
        record_sink: Receives canonical records of confirmed normalizations
        clock: Source of result timestamps
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        ledger: Optional[CostLedger] = None,
        feedback: Optional[FeedbackService] = None,
        config: Optional[ResolverConfig] = None,
        cache: Optional[ResultCache] = None,
        catalog: Optional[MasterCatalog] = None,
        record_sink: Optional[Callable[[CanonicalFragranceRecord], None]] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.registry = registry
        self.ledger = ledger
        self.feedback = feedback
        self.config = config or registry.config
        self.cache = cache or ResultCache(self.config.cache.max_entries)
        self.catalog = catalog
        self.record_sink = record_sink
        self.clock = clock

    @classmethod
    def from_config(
        cls,
        config: ResolverConfig,
        catalog: Optional[MasterCatalog] = None,
        record_sink: Optional[Callable[[CanonicalFragranceRecord], None]] = None
    ) -> "ResolutionOrchestrator":
        """Wire an orchestrator to SQLite stores at ``config.db_path``."""
        initialize_schema(config.db_path)
        return cls(
            registry=ProviderRegistry(config),
            ledger=CostLedger(UsageRepository(config.db_path), config.limits, config.efficiency),
            feedback=FeedbackService(FeedbackRepository(config.db_path)),
            config=config,
            catalog=catalog,
            record_sink=record_sink,
        )

    async def aclose(self) -> None:
        await self.registry.aclose()

    # Intake

    @staticmethod
    def _language(language: str) -> str:
        if language not in LANGUAGES:
            raise InvalidArgument(f"language must be one of {list(LANGUAGES)}")
        return language

    @staticmethod
    def _bounded(value: Any, low: int, high: int, name: str) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or not low <= value <= high:
            raise InvalidArgument(f"{name} must be an integer between {low} and {high}")
        return value

    # Pipeline stages

    def _check_limits(self, user_id: Optional[str]) -> None:
        if user_id is None or self.ledger is None:
            return
        enforce_limits(self.ledger, user_id)

    def _candidates(self, provider: Optional[Union[str, ProviderIdentity]]) -> Tuple[List[ProviderIdentity], bool]:
        """Providers to try, in order, and whether the choice was explicit.

        An explicit provider is the only candidate. Otherwise the default
        (or the first available) comes first, followed by one fallback.
        """
        available = self.registry.list_available()
        if provider is not None:
            identity = ProviderIdentity.parse(provider)
            if identity not in available:
                raise ProviderUnavailable(identity.value)
            return [identity], True

        if not available:
            raise NoProviderAvailable("No AI provider is configured")
        default = self.registry.get_default()
        if default is not None:
            available = [default] + [p for p in available if p is not default]
        return available[:2], False

    def _exemplars(self, operation_type: OperationType) -> Tuple[Exemplar, ...]:
        if self.feedback is None or self.config.exemplar_limit == 0:
            return ()
        try:
            return tuple(self.feedback.few_shot_examples(operation_type, self.config.exemplar_limit))
        except Exception:
            logger.warning("Could not load few-shot examples for %s", operation_type.value, exc_info=True)
            return ()

    async def _invoke(
        self,
        candidates: List[ProviderIdentity],
        explicit: bool,
        call: Callable[[ProviderAdapter], Awaitable[T]]
    ) -> Tuple[ProviderIdentity, T]:
        for position, identity in enumerate(candidates):
            try:
                adapter = self.registry.create(identity)
                return identity, await call(adapter)
            except (ProviderError, ProviderUnavailable) as exc:
                if explicit or position == len(candidates) - 1:
                    raise
                logger.warning(
                    "Provider %s failed with %s; falling back to %s",
                    identity.value, exc.code, candidates[position + 1].value,
                )
        raise NoProviderAvailable("No AI provider is configured")

    def _record_usage(
        self,
        user_id: Optional[str],
        operation: str,
        metrics: CallMetrics,
        confidence: Optional[float] = None,
        master_match: Optional[float] = None
    ) -> None:
        if self.ledger is None:
            return
        self.ledger.record_usage(
            user_id,
            metrics.provider.value,
            metrics.model,
            operation,
            metrics.usage.input_tokens,
            metrics.usage.output_tokens,
            metrics.cost_estimate,
            response_time_ms=metrics.timing_ms,
            confidence=confidence,
            master_match=master_match,
        )

    async def _resolve(
        self,
        operation: str,
        params: Dict[str, Any],
        provider: Optional[Union[str, ProviderIdentity]],
        user_id: Optional[str],
        ttl: float,
        options: Callable[[], RequestOptions],
        invoke: Callable[[ProviderAdapter, RequestOptions], Awaitable[Any]],
        finish: Callable[[ProviderIdentity, Any], Any]
    ) -> Any:
        """Shared request flow.

        Limit check, cache lookup, request options (completion and
        normalization fetch exemplars here), invocation with fallback,
        then ``finish`` (post-processing and usage recording) and cache
        fill under the provider that actually answered.

        Every candidate's entry is looked up in order, so a result served
        by the fallback is found again while the default keeps failing.
        """
        self._check_limits(user_id)
        candidates, explicit = self._candidates(provider)

        for identity in candidates:
            cached = self.cache.get(fingerprint(operation, identity.value, **params))
            if cached is not None:
                return replace(cached, cached=True, cost_estimate=0.0)

        request_options = options()
        identity, response = await self._invoke(
            candidates, explicit, lambda adapter: invoke(adapter, request_options)
        )
        outcome = finish(identity, response)
        self.cache.set(fingerprint(operation, identity.value, **params), outcome, ttl)
        return outcome

    # Public operations

    async def complete(
        self,
        query: str,
        kind: Union[str, SuggestionKind] = SuggestionKind.FRAGRANCE,
        limit: int = 10,
        language: str = "ja",
        provider: Optional[Union[str, ProviderIdentity]] = None,
        user_id: Optional[str] = None
    ) -> CompletionResult:
        """Live completion suggestions for a partially typed name."""
        query = sanitize_text(query)
        kind = SuggestionKind.parse(kind)
        language = self._language(language)
        limit = self._bounded(limit, 1, MAX_COMPLETION_LIMIT, "limit")

        def finish(identity, response):
            suggestions = rank_suggestions(response.suggestions, limit, query)
            confidence = (
                sum(s.confidence for s in suggestions) / len(suggestions) if suggestions else None
            )
            self._record_usage(user_id, "completion", response.metrics, confidence=confidence)
            return CompletionResult(
                query=query,
                kind=kind,
                language=language,
                provider=identity,
                suggestions=suggestions,
                cost_estimate=response.metrics.cost_estimate,
                timing_ms=response.metrics.timing_ms,
                created_at=self.clock(),
            )

        return await self._resolve(
            "complete",
            {"query": query, "kind": kind.value, "language": language, "limit": limit},
            provider,
            user_id,
            self.config.cache.completion_ttl,
            lambda: RequestOptions(
                kind=kind, limit=limit, language=language,
                examples=self._exemplars(OperationType.COMPLETION),
            ),
            lambda adapter, options: adapter.complete(query, options),
            finish,
        )

    async def batch_complete(
        self,
        queries: Sequence[str],
        kind: Union[str, SuggestionKind] = SuggestionKind.FRAGRANCE,
        language: str = "ja",
        provider: Optional[Union[str, ProviderIdentity]] = None,
        user_id: Optional[str] = None,
        limit: int = 10
    ) -> BatchResult:
        """Run ``complete`` for each query; per-item failures do not fail the batch."""
        return await self._run_batch(
            queries,
            self.config.batch.max_complete,
            "queries",
            language,
            lambda query: self.complete(query, kind, limit, language, provider, user_id),
        )

    async def _normalize(
        self,
        operation: str,
        params: Dict[str, Any],
        language: str,
        provider: Optional[Union[str, ProviderIdentity]],
        user_id: Optional[str],
        invoke: Callable[[ProviderAdapter, RequestOptions], Awaitable[Any]]
    ) -> NormalizationOutcome:
        def finish(identity, response):
            result = clean_normalization(response.result)
            if self.catalog is not None:
                result = match_master_data(result, self.catalog)
            self._record_usage(
                user_id,
                "normalization",
                response.metrics,
                confidence=result.confidence_score,
                master_match=result.master_match if self.catalog is not None else None,
            )
            return NormalizationOutcome(
                result=result,
                provider=identity,
                cost_estimate=response.metrics.cost_estimate,
                timing_ms=response.metrics.timing_ms,
                quality_score=quality_score(
                    result.confidence_score,
                    result.master_match,
                    response.metrics.timing_ms,
                    identity.value,
                    self.config.efficiency,
                ),
                created_at=self.clock(),
            )

        return await self._resolve(
            operation,
            params,
            provider,
            user_id,
            self.config.cache.normalization_ttl,
            lambda: RequestOptions(language=language, examples=self._exemplars(OperationType.NORMALIZATION)),
            invoke,
            finish,
        )

    async def normalize(
        self,
        brand: str,
        name: str,
        provider: Optional[Union[str, ProviderIdentity]] = None,
        language: str = "ja",
        user_id: Optional[str] = None
    ) -> NormalizationOutcome:
        """Canonical multilingual record for a brand/fragrance pair."""
        brand = sanitize_text(brand, "brand")
        name = sanitize_text(name, "name")
        language = self._language(language)
        return await self._normalize(
            "normalize",
            {"query": f"{brand}\x1f{name}", "language": language},
            language,
            provider,
            user_id,
            lambda adapter, options: adapter.normalize(brand, name, options),
        )

    async def normalize_from_input(
        self,
        text: str,
        provider: Optional[Union[str, ProviderIdentity]] = None,
        language: str = "ja",
        user_id: Optional[str] = None
    ) -> NormalizationOutcome:
        """Canonical record from one free-text field holding brand and name."""
        text = sanitize_text(text, "input")
        language = self._language(language)
        return await self._normalize(
            "normalize_text",
            {"query": text, "language": language},
            language,
            provider,
            user_id,
            lambda adapter, options: adapter.normalize_text(text, options),
        )

    async def batch_normalize(
        self,
        items: Sequence[Mapping[str, str]],
        provider: Optional[Union[str, ProviderIdentity]] = None,
        language: str = "ja",
        user_id: Optional[str] = None
    ) -> BatchResult:
        """Normalize each ``{"brand", "name"}`` item independently."""
        async def run(item):
            if not isinstance(item, Mapping):
                raise InvalidArgument("each item must have 'brand' and 'name'")
            return await self.normalize(item.get("brand"), item.get("name"), provider, language, user_id)

        return await self._run_batch(items, self.config.batch.max_normalize, "items", language, run)

    async def suggest_notes(
        self,
        brand: str,
        name: str,
        provider: Optional[Union[str, ProviderIdentity]] = None,
        language: str = "ja",
        note_limit: int = DEFAULT_NOTE_LIMIT,
        user_id: Optional[str] = None
    ) -> NotesOutcome:
        """Top/middle/base notes for a fragrance."""
        brand = sanitize_text(brand, "brand")
        name = sanitize_text(name, "name")
        language = self._language(language)
        note_limit = self._bounded(note_limit, 1, MAX_NOTE_LIMIT, "note_limit")

        def finish(identity, response):
            self._record_usage(user_id, "notes", response.metrics, confidence=response.notes.confidence_score)
            return NotesOutcome(
                notes=response.notes,
                provider=identity,
                cost_estimate=response.metrics.cost_estimate,
                created_at=self.clock(),
            )

        return await self._resolve(
            "notes",
            {"query": f"{brand}\x1f{name}", "language": language, "limit": note_limit},
            provider,
            user_id,
            self.config.cache.notes_ttl,
            lambda: RequestOptions(language=language, note_limit=note_limit),
            lambda adapter, options: adapter.suggest_notes(brand, name, options),
            finish,
        )

    async def batch_suggest_notes(
        self,
        items: Sequence[Mapping[str, str]],
        provider: Optional[Union[str, ProviderIdentity]] = None,
        language: str = "ja",
        note_limit: int = DEFAULT_NOTE_LIMIT,
        user_id: Optional[str] = None
    ) -> BatchResult:
        async def run(item):
            if not isinstance(item, Mapping):
                raise InvalidArgument("each item must have 'brand' and 'name'")
            return await self.suggest_notes(
                item.get("brand"), item.get("name"), provider, language, note_limit, user_id
            )

        return await self._run_batch(items, self.config.batch.max_notes, "items", language, run)

    async def suggest_attributes(
        self,
        name: str,
        provider: Optional[Union[str, ProviderIdentity]] = None,
        language: str = "ja",
        user_id: Optional[str] = None
    ) -> AttributesOutcome:
        """Seasons, occasions, time of day and age groups for a fragrance."""
        name = sanitize_text(name, "name")
        language = self._language(language)

        def finish(identity, response):
            self._record_usage(
                user_id, "attributes", response.metrics, confidence=response.attributes.confidence_score
            )
            return AttributesOutcome(
                attributes=response.attributes,
                provider=identity,
                cost_estimate=response.metrics.cost_estimate,
                created_at=self.clock(),
            )

        return await self._resolve(
            "attributes",
            {"query": name, "language": language},
            provider,
            user_id,
            self.config.cache.attributes_ttl,
            lambda: RequestOptions(language=language),
            lambda adapter, options: adapter.suggest_attributes(name, options),
            finish,
        )

    async def _run_batch(
        self,
        items: Sequence[Any],
        max_items: int,
        label: str,
        language: str,
        run_item: Callable[[Any], Awaitable[Any]]
    ) -> BatchResult:
        """Run items concurrently, at most ``batch.max_concurrency`` at a time."""
        if isinstance(items, (str, bytes)) or not isinstance(items, Sequence) or not items:
            raise InvalidArgument(f"{label} must be a non-empty list")
        if len(items) > max_items:
            raise InvalidArgument(f"at most {max_items} {label} are allowed per batch")

        semaphore = asyncio.Semaphore(self.config.batch.max_concurrency)

        async def guarded(index: int, item: Any) -> BatchItem:
            async with semaphore:
                try:
                    outcome = await run_item(item)
                except ResolverError as exc:
                    return BatchItem(index=index, input=item, status="failure", error=error_payload(exc, language))
                return BatchItem(index=index, input=item, status="success", result=outcome)

        results = await asyncio.gather(*(guarded(index, item) for index, item in enumerate(items)))
        total = sum(item.result.cost_estimate for item in results if item.result is not None)
        return BatchResult(results=list(results), total_cost_estimate=round(total, 6))

    def list_providers(self) -> Dict[str, Any]:
        """Available providers and the one auto-selection would use first."""
        available = self.registry.list_available()
        default = self.registry.get_default() or (available[0] if available else None)
        return {
            "providers": [identity.value for identity in available],
            "default": default.value if default else None,
        }

    async def health_check(self, provider: Optional[Union[str, ProviderIdentity]] = None) -> HealthReport:
        """Probe providers with a minimal request.

        Overall status is critical when no provider is healthy, degraded
        when only some are, healthy otherwise.
        """
        if provider is not None:
            targets = [ProviderIdentity.parse(provider)]
        else:
            targets = self.registry.list_available()

        async def probe(identity: ProviderIdentity) -> ProviderHealth:
            try:
                latency = await self.registry.create(identity).ping()
            except ProviderUnavailable as exc:
                return ProviderHealth(status="unavailable", error=exc.code)
            except ResolverError as exc:
                logger.warning("Health check failed for %s: %s", identity.value, exc)
                return ProviderHealth(status="unhealthy", error=exc.code)
            return ProviderHealth(status="healthy", latency_ms=latency)

        results = await asyncio.gather(*(probe(identity) for identity in targets))
        providers = {identity.value: health for identity, health in zip(targets, results)}

        healthy = sum(1 for health in providers.values() if health.status == "healthy")
        if healthy == 0:
            overall = "critical"
        elif healthy < len(providers):
            overall = "degraded"
        else:
            overall = "healthy"
        return HealthReport(providers=providers, overall_status=overall)

    def record_feedback(
        self,
        action: Union[str, UserAction],
        query: str,
        operation_type: str = OperationType.COMPLETION.value,
        offered: Sequence[Dict[str, Any]] = (),
        chosen: Optional[Dict[str, Any]] = None,
        final_input: Optional[str] = None,
        relevance_score: Optional[float] = None,
        was_helpful: Optional[bool] = None,
        **context: Any
    ) -> Dict[str, Any]:
        """Store a selection, rejection or modification.

        ``context`` may carry user_id, session_id, provider, model,
        request_params, context_data and user_notes.

        Returns:
            Acknowledgement with the session id the event was filed under

        Raises:
            InvalidArgument: If the action or payload is invalid
        """
        if self.feedback is None:
            raise ResolverError("feedback store is not configured")
        query = sanitize_text(query)
        if isinstance(action, UserAction):
            user_action = action
        else:
            user_action = FEEDBACK_ACTIONS.get(str(action).strip().lower())
            if user_action is None:
                raise InvalidArgument(f"unknown feedback action: {action!r}")
        unknown = set(context) - FEEDBACK_CONTEXT_KEYS
        if unknown:
            raise InvalidArgument(f"unknown feedback fields: {sorted(unknown)}")

        try:
            if user_action is UserAction.SELECTED:
                if not chosen:
                    raise InvalidArgument("a selection needs the chosen suggestion")
                event = self.feedback.record_selection(
                    query, operation_type, chosen, offered, relevance_score, final_input, **context
                )
            elif user_action is UserAction.REJECTED:
                event = self.feedback.record_rejection(query, operation_type, offered, final_input, **context)
            else:
                if not chosen or not final_input:
                    raise InvalidArgument("a modification needs the original suggestion and the final input")
                event = self.feedback.record_modification(
                    query, operation_type, chosen, final_input, offered, was_helpful, relevance_score, **context
                )
        except (TypeError, ValueError) as exc:
            raise InvalidArgument(str(exc)) from exc

        return {"recorded": True, "session_id": event.session_id, "action": event.user_action.value}

    def confirm_normalization(
        self,
        outcome: NormalizationOutcome,
        query: str,
        user_id: Optional[str] = None,
        session_id: Optional[str] = None,
        relevance_score: Optional[float] = 1.0
    ) -> CanonicalFragranceRecord:
        """Accept a normalization: log the selection and hand its record to the sink."""
        result = outcome.result
        record = to_canonical_record(result)
        if self.feedback is not None:
            self.feedback.record_selection(
                sanitize_text(query),
                OperationType.NORMALIZATION.value,
                {
                    "text": result.normalized_name_local,
                    "text_en": result.normalized_name_roman,
                    "brand_name": result.normalized_brand_local,
                    "brand_name_en": result.normalized_brand_roman,
                },
                relevance_score=relevance_score,
                user_id=user_id,
                session_id=session_id,
                provider=outcome.provider.value,
            )
        if self.record_sink is not None:
            self.record_sink(record)
        return record
