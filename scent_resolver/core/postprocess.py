"""
Result post-processing.

Separates, deduplicates and ranks suggestions; applies canonical rewrites to normalization and note output.
"""

import html
import re
import unicodedata
from dataclasses import replace
from typing import Any, Iterable, List, Mapping, Optional

from .canonical import similarity
from .sanitize import normalize_key
from .types import (
    AttributeSuggestion,
    CompletionSuggestion,
    NormalizationResult,
    NoteSuggestion,
    NotesSuggestion,
    SuggestionKind,
)
from .vocabulary import (
    AGE_GROUPS,
    BRAND_RULES,
    CONCENTRATION_RULES,
    FRAGRANCE_NAME_RULES,
    INTENSITY_ALIASES,
    INTENSITY_LEVELS,
    NOTE_NAME_ALIASES,
    NOTE_TIERS,
    OCCASIONS,
    SEASONS,
    TIME_OF_DAY,
    note_category,
)

DEFAULT_NORMALIZATION_CONFIDENCE = 0.75
DEFAULT_NOTE_CONFIDENCE = 0.5

_SEPARATOR_CHARS = " \t-–—・/|:：,、"


def clamp_confidence(value: Any, default: float = 0.0) -> float:
    """Coerce a provider-reported confidence into [0, 1]."""
    if isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(0.0, min(1.0, number))


def display_key(text: str) -> str:
    """Deduplication key for display text."""
    return normalize_key(unicodedata.normalize("NFKC", text))


def _strip_brand(text: str, brand: str) -> str:
    """Blank out every case-insensitive occurrence of ``brand`` in ``text``.

    Matching runs on the casefolded text, where one character may fold to
    several ("ß" to "ss"); each folded position remembers the original
    character it came from, and those characters are removed.
    """
    needle = brand.casefold()
    if not needle:
        return text
    folded = []
    owners = []
    for index, char in enumerate(text):
        for piece in char.casefold():
            folded.append(piece)
            owners.append(index)
    haystack = "".join(folded)
    start = haystack.find(needle)
    if start == -1:
        return text

    removed = set()
    while start != -1:
        removed.update(owners[start:start + len(needle)])
        start = haystack.find(needle, start + len(needle))
    stripped = "".join(" " if index in removed else char for index, char in enumerate(text))
    return re.sub(r"\s+", " ", stripped).strip(_SEPARATOR_CHARS)


def separate_brand(suggestion: CompletionSuggestion) -> Optional[CompletionSuggestion]:
    """Remove the brand from a suggestion's display text.

    Brand suggestions drop their brand fields instead. Returns None when
    nothing but the brand was left to display.
    """
    if suggestion.kind is SuggestionKind.BRAND:
        if not suggestion.brand_name and not suggestion.brand_name_en:
            return suggestion
        return replace(suggestion, brand_name="", brand_name_en="")

    display_text = _strip_brand(suggestion.display_text, suggestion.brand_name)
    display_text = _strip_brand(display_text, suggestion.brand_name_en)
    display_text_en = _strip_brand(suggestion.display_text_en, suggestion.brand_name_en)
    display_text_en = _strip_brand(display_text_en, suggestion.brand_name)
    if not display_text:
        return None
    return replace(suggestion, display_text=display_text, display_text_en=display_text_en)


def annotate_similarity(suggestion: CompletionSuggestion, query: str) -> CompletionSuggestion:
    """Attach the display text's similarity to the query and the confidence weighted by it.

    ``adjusted_confidence = confidence * (0.7 + 0.3 * similarity)``
    """
    score = similarity(query, suggestion.display_text)
    return replace(
        suggestion,
        similarity_score=round(score, 3),
        adjusted_confidence=round(suggestion.confidence * (0.7 + 0.3 * score), 3),
    )


def rank_suggestions(
    suggestions: Iterable[CompletionSuggestion],
    limit: int,
    query: str = ""
) -> List[CompletionSuggestion]:
    """Separate, deduplicate and order suggestions.

    Duplicates (by normalized display text) keep their first occurrence.
    Sorting is by the provider's confidence and stable, so equal
    confidences keep the provider's order. With a ``query`` each result
    is annotated by ``annotate_similarity``.
    """
    seen = set()
    unique = []
    for suggestion in suggestions:
        separated = separate_brand(suggestion)
        if separated is None:
            continue
        key = display_key(separated.display_text)
        if key in seen:
            continue
        seen.add(key)
        unique.append(separated)
    ranked = sorted(unique, key=lambda s: -s.confidence)[:limit]
    if query:
        ranked = [annotate_similarity(suggestion, query) for suggestion in ranked]
    return ranked


def canonical_brand(name: str) -> str:
    """Apply brand spelling rules to a cleaned brand name."""
    cleaned = clean_text(name)
    return BRAND_RULES.get(cleaned.casefold(), cleaned)


def canonical_fragrance_name(name: str) -> str:
    cleaned = clean_text(name)
    for pattern, replacement in FRAGRANCE_NAME_RULES:
        cleaned = re.sub(pattern, replacement, cleaned, flags=re.IGNORECASE)
    return cleaned


def canonical_concentration(value: Any) -> Optional[str]:
    if not value:
        return None
    key = clean_text(str(value)).casefold()
    return CONCENTRATION_RULES.get(key, clean_text(str(value)))


def clean_text(value: Any) -> str:
    """Decode HTML entities and collapse whitespace."""
    if value is None:
        return ""
    return re.sub(r"\s+", " ", html.unescape(str(value))).strip()


def clean_normalization(result: NormalizationResult) -> NormalizationResult:
    """Rewrite a provider's normalization into canonical spelling."""
    return replace(
        result,
        normalized_brand_local=canonical_brand(result.normalized_brand_local),
        normalized_brand_roman=canonical_brand(result.normalized_brand_roman),
        normalized_name_local=canonical_fragrance_name(result.normalized_name_local),
        normalized_name_roman=canonical_fragrance_name(result.normalized_name_roman),
        concentration_type=canonical_concentration(result.concentration_type),
        family=clean_text(result.family) or None,
        descriptions={
            locale: clean_text(text) for locale, text in result.descriptions.items() if clean_text(text)
        },
    )


def _note_name(raw: Any) -> str:
    name = clean_text(raw).lower()
    return NOTE_NAME_ALIASES.get(name, name)


def _intensity(raw: Any) -> str:
    value = clean_text(raw).lower().replace("-", "_")
    if value in INTENSITY_LEVELS:
        return value
    return INTENSITY_ALIASES.get(value.replace("_", " "), "moderate")


def process_notes(raw_notes: Mapping[str, Any], note_limit: int) -> NotesSuggestion:
    """Build a note pyramid from a provider's loosely structured notes.

    Each tier is deduplicated, sorted by confidence and cut to ``note_limit``.
    The overall confidence is the mean confidence of the kept notes.
    """
    tiers = {}
    for tier in NOTE_TIERS:
        items = raw_notes.get(tier) or []
        if not isinstance(items, list):
            items = [items]
        notes = {}
        for item in items:
            if isinstance(item, Mapping):
                name = _note_name(item.get("name"))
                intensity = _intensity(item.get("intensity"))
                confidence = clamp_confidence(item.get("confidence"), DEFAULT_NOTE_CONFIDENCE)
            else:
                name = _note_name(item)
                intensity = "moderate"
                confidence = DEFAULT_NOTE_CONFIDENCE
            if not name or name in notes:
                continue
            notes[name] = NoteSuggestion(
                name=name,
                intensity=intensity,
                confidence=confidence,
                category=note_category(name),
            )
        tiers[tier] = sorted(notes.values(), key=lambda n: -n.confidence)[:note_limit]

    kept = [note for tier in NOTE_TIERS for note in tiers[tier]]
    overall = round(sum(n.confidence for n in kept) / len(kept), 2) if kept else 0.0
    return NotesSuggestion(
        top=tiers["top"],
        middle=tiers["middle"],
        base=tiers["base"],
        confidence_score=overall,
    )


def _vocabulary_filter(values: Any, allowed: Iterable[str]) -> List[str]:
    if not isinstance(values, list):
        values = [values] if values else []
    allowed = list(allowed)
    kept = []
    for value in values:
        key = clean_text(value).lower()
        if key in allowed and key not in kept:
            kept.append(key)
    return kept


def filter_attributes(raw: Mapping[str, Any], confidence: Any) -> AttributeSuggestion:
    """Keep only attribute values from the closed vocabularies."""
    return AttributeSuggestion(
        seasons=_vocabulary_filter(raw.get("seasons"), SEASONS),
        occasions=_vocabulary_filter(raw.get("occasions"), OCCASIONS),
        time_of_day=_vocabulary_filter(raw.get("time_of_day"), TIME_OF_DAY),
        age_groups=_vocabulary_filter(raw.get("age_groups"), AGE_GROUPS),
        confidence_score=clamp_confidence(confidence, DEFAULT_NOTE_CONFIDENCE),
    )
