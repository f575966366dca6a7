"""
Provider adapter interface.

Uniform AI-operation contract implemented once per LLM provider.
"""

import logging
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, ClassVar, Dict, Iterator, List, Mapping, Optional, Tuple

import httpx

from ..config.loader import ProviderSettings
from ..core.backoff import BackoffPolicy, retry_rate_limited
from ..core.postprocess import (
    DEFAULT_NORMALIZATION_CONFIDENCE,
    clamp_confidence,
    filter_attributes,
    process_notes,
)
from ..core.pricing import RateTable, calculate_cost
from ..core.token_counter import TokenUsage
from ..core.types import (
    AttributeSuggestion,
    CompletionSuggestion,
    Exemplar,
    NormalizationResult,
    NotesSuggestion,
    ProviderIdentity,
    SuggestionKind,
)
from ..errors import InvalidArgument, MalformedResponse, ProviderUnavailable, RateLimited, UpstreamError
from .parsing import coerce_bool, coerce_str, coerce_year, extract_json, require_object
from .prompts import COMPLETION_TOOL, NORMALIZATION_TOOL, PromptBuilder, ToolSpec

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawReply:
    """Provider reply reduced to what the shared parsing needs.

    ``payload`` holds decoded tool arguments when the provider returned a
    tool call; otherwise the JSON is extracted from ``text``.
    """
    payload: Optional[Any]
    text: str
    usage: TokenUsage
    model: str


@dataclass(frozen=True)
class CallMetrics:
    """Cost and timing of one adapter operation."""
    provider: ProviderIdentity
    model: str
    usage: TokenUsage
    cost_estimate: float
    timing_ms: int


@dataclass(frozen=True)
class RequestOptions:
    kind: SuggestionKind = SuggestionKind.FRAGRANCE
    limit: int = 10
    language: str = "ja"
    note_limit: int = 8
    examples: Tuple[Exemplar, ...] = ()


@dataclass(frozen=True)
class CompletionResponse:
    suggestions: List[CompletionSuggestion]
    metrics: CallMetrics


@dataclass(frozen=True)
class NormalizationResponse:
    result: NormalizationResult
    metrics: CallMetrics


@dataclass(frozen=True)
class NotesResponse:
    notes: NotesSuggestion
    metrics: CallMetrics


@dataclass(frozen=True)
class AttributesResponse:
    attributes: AttributeSuggestion
    metrics: CallMetrics


class ProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement only the wire protocol (``_send_tool`` and
    ``_send_text``); prompt building, retries, parsing and costing are
    shared so every provider honours the same contract.

    Args:
        settings: Provider settings with credentials already resolved
        rates: Rate table used for cost estimates
        backoff: Retry policy for HTTP 429 responses
        prompts: Prompt builder

    Raises:
        ProviderUnavailable: If the settings carry no credentials
    """

    identity: ClassVar[ProviderIdentity]

    completion_max_tokens = 1000
    normalization_max_tokens = 800
    notes_max_tokens = 800
    attributes_max_tokens = 600

    def __init__(
        self,
        settings: ProviderSettings,
        rates: RateTable,
        backoff: Optional[BackoffPolicy] = None,
        prompts: Optional[PromptBuilder] = None
    ):
        if not settings.is_configured:
            raise ProviderUnavailable(self.identity.value, f"{self.identity.value} API key is not configured")
        self.settings = settings
        self.model = settings.model
        self.rates = rates
        self.backoff = backoff or BackoffPolicy()
        self.prompts = prompts or PromptBuilder()

    @property
    def provider_name(self) -> str:
        return self.identity.value

    @abstractmethod
    async def _send_tool(self, prompt: str, tool: ToolSpec, max_tokens: int, temperature: float) -> RawReply:
        """Send a prompt that must be answered by calling ``tool``."""

    @abstractmethod
    async def _send_text(self, prompt: str, max_tokens: int, temperature: float) -> RawReply:
        """Send a plain prompt and return the text answer."""

    async def aclose(self) -> None:
        """Release network resources held by the adapter."""

    @contextmanager
    def _decoding(self, raw: Any = None) -> Iterator[None]:
        """Report unexpected shapes in a provider reply as ``MalformedResponse``."""
        try:
            yield
        except (AttributeError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.debug("%s reply could not be decoded: %s", self.provider_name, exc)
            raise MalformedResponse(self.provider_name, raw) from exc

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        return calculate_cost(self.rates, model, TokenUsage(input_tokens, output_tokens))

    async def _call(self, send: Callable[[], Awaitable[RawReply]]) -> Tuple[RawReply, CallMetrics]:
        started = time.perf_counter()
        reply = await retry_rate_limited(send, self.backoff)
        metrics = CallMetrics(
            provider=self.identity,
            model=reply.model,
            usage=reply.usage,
            cost_estimate=self.calculate_cost(reply.model, reply.usage.input_tokens, reply.usage.output_tokens),
            timing_ms=int((time.perf_counter() - started) * 1000),
        )
        return reply, metrics

    def _structured(self, reply: RawReply) -> Dict[str, Any]:
        payload = reply.payload if reply.payload is not None else extract_json(reply.text, self.provider_name)
        return require_object(payload, self.provider_name)

    async def complete(self, query: str, options: RequestOptions) -> CompletionResponse:
        """Completion candidates for a partially typed name."""
        prompt = self.prompts.completion(query, options.kind, options.limit, options.language, options.examples)
        reply, metrics = await self._call(
            lambda: self._send_tool(prompt, COMPLETION_TOOL, self.completion_max_tokens, 0.1)
        )
        items = self._structured(reply).get("suggestions")
        if not isinstance(items, list):
            raise MalformedResponse(self.provider_name, reply.payload or reply.text)

        suggestions = []
        with self._decoding(items):
            for item in items:
                suggestion = self._suggestion(item, options.kind)
                if suggestion is not None:
                    suggestions.append(suggestion)
        return CompletionResponse(suggestions=suggestions, metrics=metrics)

    def _suggestion(self, item: Any, default_kind: SuggestionKind) -> Optional[CompletionSuggestion]:
        if not isinstance(item, Mapping):
            return None
        text = coerce_str(item.get("text") or item.get("display_text"))
        if not text:
            return None
        try:
            kind = SuggestionKind.parse(item.get("type") or default_kind)
        except InvalidArgument:
            kind = default_kind
        return CompletionSuggestion(
            display_text=text,
            display_text_en=coerce_str(item.get("text_en")) or text,
            brand_name=coerce_str(item.get("brand_name")),
            brand_name_en=coerce_str(item.get("brand_name_en")),
            confidence=clamp_confidence(item.get("confidence")),
            kind=kind,
            source_provider=self.identity,
            rationale=coerce_str(item.get("rationale_brief")),
        )

    async def normalize(self, brand: str, name: str, options: RequestOptions) -> NormalizationResponse:
        """Canonical bilingual record for a brand/fragrance pair."""
        prompt = self.prompts.normalization(brand, name, options.language, options.examples)
        return await self._normalize(prompt, brand, name)

    async def normalize_text(self, text: str, options: RequestOptions) -> NormalizationResponse:
        """Canonical record from a single free-text entry holding brand and name."""
        prompt = self.prompts.free_text_normalization(text, options.language, options.examples)
        return await self._normalize(prompt, "", text)

    async def _normalize(self, prompt: str, brand: str, name: str) -> NormalizationResponse:
        reply, metrics = await self._call(
            lambda: self._send_tool(prompt, NORMALIZATION_TOOL, self.normalization_max_tokens, 0.1)
        )
        payload = self._structured(reply)
        with self._decoding(payload):
            result = self._normalization(payload, brand, name)
        return NormalizationResponse(result=result, metrics=metrics)

    def _normalization(self, payload: Dict[str, Any], brand: str, name: str) -> NormalizationResult:
        brand_local = coerce_str(payload.get("brand_name")) or brand
        name_local = coerce_str(payload.get("text")) or name
        if not brand_local or not name_local:
            raise MalformedResponse(self.provider_name, payload)
        confidence = payload.get("confidence")

        return NormalizationResult(
            normalized_brand_local=brand_local,
            normalized_brand_roman=coerce_str(payload.get("brand_name_en")) or brand_local,
            normalized_name_local=name_local,
            normalized_name_roman=coerce_str(payload.get("text_en")) or name_local,
            confidence_score=(
                DEFAULT_NORMALIZATION_CONFIDENCE if confidence is None
                else clamp_confidence(confidence, DEFAULT_NORMALIZATION_CONFIDENCE)
            ),
            concentration_type=coerce_str(payload.get("concentration_type")) or None,
            launch_year=coerce_year(payload.get("launch_year")),
            family=coerce_str(payload.get("fragrance_family")) or None,
            descriptions={
                locale: coerce_str(payload.get(f"description_{locale}"))
                for locale in ("ja", "en")
                if coerce_str(payload.get(f"description_{locale}"))
            },
            exists=coerce_bool(payload.get("exists")),
            rationale=coerce_str(payload.get("rationale_brief")),
            provider=self.identity,
        )

    async def suggest_notes(self, brand: str, name: str, options: RequestOptions) -> NotesResponse:
        """Top/middle/base note pyramid for a fragrance."""
        prompt = self.prompts.notes(brand, name, options.note_limit, options.language)
        reply, metrics = await self._call(lambda: self._send_text(prompt, self.notes_max_tokens, 0.2))
        payload = self._structured(reply)
        raw_notes = payload.get("notes", payload)
        if not isinstance(raw_notes, Mapping):
            raise MalformedResponse(self.provider_name, payload)
        with self._decoding(payload):
            notes = process_notes(raw_notes, options.note_limit)
        return NotesResponse(notes=notes, metrics=metrics)

    async def suggest_attributes(self, name: str, options: RequestOptions) -> AttributesResponse:
        """Seasons, occasions, time of day and age groups suited to a fragrance."""
        prompt = self.prompts.attributes(name, options.language)
        reply, metrics = await self._call(lambda: self._send_text(prompt, self.attributes_max_tokens, 0.2))
        payload = self._structured(reply)
        raw = payload.get("attributes", payload)
        if not isinstance(raw, Mapping):
            raise MalformedResponse(self.provider_name, payload)
        with self._decoding(payload):
            attributes = filter_attributes(raw, payload.get("confidence_score"))
        return AttributesResponse(attributes=attributes, metrics=metrics)

    async def ping(self) -> int:
        """Send a minimal request and return its latency in milliseconds."""
        started = time.perf_counter()
        await self._send_text(self.prompts.health_probe(), 5, 0.0)
        return int((time.perf_counter() - started) * 1000)


def _retry_after(headers: Mapping[str, str]) -> Optional[float]:
    value = headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except ValueError:
        return None


class HttpProviderAdapter(ProviderAdapter):
    """Adapter that talks JSON over HTTP with ``httpx``.

    Args:
        http_client: Optional shared client; one is created (and owned) otherwise
    """

    def __init__(
        self,
        settings: ProviderSettings,
        rates: RateTable,
        backoff: Optional[BackoffPolicy] = None,
        prompts: Optional[PromptBuilder] = None,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        super().__init__(settings, rates, backoff, prompts)
        self._owns_client = http_client is None
        self.http = http_client or httpx.AsyncClient(timeout=settings.timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _post_json(self, url: str, headers: Dict[str, str], body: Dict[str, Any]) -> Dict[str, Any]:
        """POST a JSON body and decode the JSON reply.

        Raises:
            RateLimited: On HTTP 429
            UpstreamError: On transport failure or any other non-2xx status
            MalformedResponse: If the body is not a JSON object
        """
        try:
            response = await self.http.post(url, headers=headers, json=body)
        except httpx.HTTPError as exc:
            raise UpstreamError(self.provider_name, None, str(exc)) from exc

        if response.status_code == 429:
            raise RateLimited(self.provider_name, _retry_after(response.headers))
        if not response.is_success:
            logger.debug("%s returned %s: %s", self.provider_name, response.status_code, response.text[:500])
            raise UpstreamError(self.provider_name, response.status_code, response.text)

        try:
            data = response.json()
        except ValueError:
            raise MalformedResponse(self.provider_name, response.text[:500])
        return require_object(data, self.provider_name)
