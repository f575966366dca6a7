"""
Domain types for the resolution pipeline.

Immutable value objects exchanged between adapters, the orchestrator and callers.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import InvalidArgument, UnknownProvider


class ProviderIdentity(Enum):
    """Supported LLM providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: Any) -> "ProviderIdentity":
        """Resolve a provider from its name.

        Raises:
            UnknownProvider: If the name is not a supported provider
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise UnknownProvider(str(value))


class SuggestionKind(Enum):
    """What a completion suggestion refers to."""
    BRAND = "brand"
    FRAGRANCE = "fragrance"

    @classmethod
    def parse(cls, value: Any) -> "SuggestionKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise InvalidArgument(f"type must be 'brand' or 'fragrance', got {value!r}")


def _check_confidence(value: float, name: str) -> None:
    if not 0.0 <= value <= 1.0:
        raise ValueError(f"{name} must be between 0 and 1, got {value}")


@dataclass(frozen=True)
class CompletionSuggestion:
    """A single completion candidate.

    Display text and brand are kept separate: ``display_text`` never repeats
    ``brand_name``. Brand suggestions leave the brand fields empty since the
    suggestion itself is the brand.
    """
    display_text: str
    display_text_en: str
    brand_name: str
    brand_name_en: str
    confidence: float
    kind: SuggestionKind
    source_provider: ProviderIdentity
    rationale: str = ""
    similarity_score: Optional[float] = None  # display text vs. query
    adjusted_confidence: Optional[float] = None  # confidence weighted by similarity

    def __post_init__(self):
        if not self.display_text:
            raise ValueError("display_text is required")
        _check_confidence(self.confidence, "confidence")
        for name in ("similarity_score", "adjusted_confidence"):
            if getattr(self, name) is not None:
                _check_confidence(getattr(self, name), name)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["kind"] = self.kind.value
        data["source_provider"] = self.source_provider.value
        return data


@dataclass(frozen=True)
class NormalizationResult:
    """Canonical multilingual form of a brand/fragrance pair."""
    normalized_brand_local: str
    normalized_brand_roman: str
    normalized_name_local: str
    normalized_name_roman: str
    confidence_score: float
    concentration_type: Optional[str] = None
    launch_year: Optional[int] = None
    family: Optional[str] = None
    descriptions: Dict[str, str] = field(default_factory=dict)
    exists: Optional[bool] = None
    rationale: str = ""
    provider: Optional[ProviderIdentity] = None
    matched_brand_id: Optional[str] = None
    matched_fragrance_id: Optional[str] = None
    master_match: float = 0.0

    def __post_init__(self):
        _check_confidence(self.confidence_score, "confidence_score")
        _check_confidence(self.master_match, "master_match")

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["provider"] = self.provider.value if self.provider else None
        return data


@dataclass(frozen=True)
class NoteSuggestion:
    """One scent note with its perceived intensity."""
    name: str
    intensity: str
    confidence: float
    category: Optional[str] = None

    def __post_init__(self):
        _check_confidence(self.confidence, "confidence")


@dataclass(frozen=True)
class NotesSuggestion:
    """Note pyramid suggested for a fragrance."""
    top: List[NoteSuggestion]
    middle: List[NoteSuggestion]
    base: List[NoteSuggestion]
    confidence_score: float

    def __post_init__(self):
        _check_confidence(self.confidence_score, "confidence_score")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class AttributeSuggestion:
    """Usage attributes suggested for a fragrance."""
    seasons: List[str]
    occasions: List[str]
    time_of_day: List[str]
    age_groups: List[str]
    confidence_score: float

    def __post_init__(self):
        _check_confidence(self.confidence_score, "confidence_score")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class Exemplar:
    """A past successful query/selection pair used as a few-shot example."""
    query: str
    selected_text: str
    relevance_score: float
