"""
Prompt construction.

Builds provider-independent prompts and the tool schemas used for structured output.
"""

from dataclasses import dataclass
from typing import Any, Dict, Sequence

from ..core.types import Exemplar, SuggestionKind
from ..core.vocabulary import AGE_GROUPS, INTENSITY_LEVELS, OCCASIONS, SEASONS, TIME_OF_DAY

LANGUAGE_NAMES = {"ja": "Japanese", "en": "English"}


def _language_name(language: str) -> str:
    return LANGUAGE_NAMES.get(language, "English")


@dataclass(frozen=True)
class ToolSpec:
    """A function/tool the model is forced to call, described by JSON Schema."""
    name: str
    description: str
    parameters: Dict[str, Any]


_SUGGESTION_ITEM = {
    "type": "object",
    "properties": {
        "text": {"type": "string", "description": "Display text in the requested language, without the brand"},
        "text_en": {"type": "string", "description": "Display text in English/romanized form, without the brand"},
        "brand_name": {"type": "string", "description": "Brand name in the requested language"},
        "brand_name_en": {"type": "string", "description": "Brand name in English/romanized form"},
        "confidence": {"type": "number", "description": "Relevance between 0 and 1"},
        "type": {"type": "string", "enum": ["brand", "fragrance"]},
        "rationale_brief": {"type": "string"},
    },
    "required": ["text", "text_en", "confidence", "type"],
}

COMPLETION_TOOL = ToolSpec(
    name="suggest_fragrances",
    description="Return completion candidates for a partially typed brand or fragrance name.",
    parameters={
        "type": "object",
        "properties": {
            "suggestions": {"type": "array", "items": _SUGGESTION_ITEM},
        },
        "required": ["suggestions"],
    },
)

NORMALIZATION_TOOL = ToolSpec(
    name="normalize_fragrance",
    description="Return the canonical bilingual record for a brand and fragrance.",
    parameters={
        "type": "object",
        "properties": {
            "brand_name": {"type": "string", "description": "Official brand name in the requested language"},
            "brand_name_en": {"type": "string", "description": "Official brand name, romanized"},
            "text": {"type": "string", "description": "Official fragrance name in the requested language"},
            "text_en": {"type": "string", "description": "Official fragrance name, romanized"},
            "concentration_type": {"type": "string", "enum": ["EDP", "EDT", "EDC", "Parfum", "Extrait", "Other"]},
            "launch_year": {"type": "integer"},
            "fragrance_family": {"type": "string"},
            "confidence": {"type": "number", "description": "Certainty between 0 and 1"},
            "exists": {"type": "boolean", "description": "Whether this fragrance is known to exist"},
            "description_ja": {"type": "string"},
            "description_en": {"type": "string"},
            "rationale_brief": {"type": "string"},
        },
        "required": ["brand_name", "brand_name_en", "text", "text_en", "confidence"],
    },
)


class PromptBuilder:
    """Renders prompts for each pipeline operation.

    Prompt wording is shared by every provider; adapters differ only in how
    the prompt and tool are sent over the wire.
    """

    def _examples(self, examples: Sequence[Exemplar]) -> str:
        if not examples:
            return ""
        lines = ["Examples of choices users found helpful:"]
        for number, example in enumerate(examples, start=1):
            lines.append(
                f'- Example {number}: input "{example.query}" -> chosen '
                f'"{example.selected_text}" (relevance: {example.relevance_score:.2f})'
            )
        return "\n".join(lines) + "\n\n"

    def completion(
        self,
        query: str,
        kind: SuggestionKind,
        limit: int,
        language: str,
        examples: Sequence[Exemplar] = ()
    ) -> str:
        target = "perfume brands" if kind is SuggestionKind.BRAND else "fragrances (perfume products)"
        return (
            f"You are an expert in perfumery helping a user type the name of {target}.\n"
            f"{self._examples(examples)}"
            f'Input so far: "{query}"\n\n'
            f"Return exactly {limit} candidates that the user most likely means, "
            f"ordered from most to least likely.\n"
            f"Rules:\n"
            f"- `text` is written in {_language_name(language)}; `text_en` is the English or romanized form.\n"
            f"- Keep brand and product separate: never repeat the brand inside `text` or `text_en`.\n"
            f"- For brand candidates leave `brand_name` and `brand_name_en` empty.\n"
            f"- `confidence` is your relevance estimate between 0 and 1.\n"
            f"- Only suggest products and brands that actually exist."
        )

    def normalization(
        self,
        brand: str,
        name: str,
        language: str,
        examples: Sequence[Exemplar] = ()
    ) -> str:
        return (
            "You are a fragrance catalog editor. Normalize the user's entry into the "
            "official brand and product names.\n"
            f"{self._examples(examples)}"
            f'Brand as typed: "{brand}"\n'
            f'Fragrance as typed: "{name}"\n\n'
            f"Rules:\n"
            f"- `brand_name` and `text` are the official names written in {_language_name(language)}.\n"
            f"- `brand_name_en` and `text_en` are the official romanized names.\n"
            f"- Do not include the brand in the fragrance name or the concentration in either name.\n"
            f"- Set `exists` to false if you do not know this product.\n"
            f"- `confidence` reflects how sure you are that the result is correct."
        )

    def free_text_normalization(
        self,
        text: str,
        language: str,
        examples: Sequence[Exemplar] = ()
    ) -> str:
        return (
            "You are a fragrance catalog editor. The user typed a brand and a fragrance "
            "in a single field; split and normalize it into official names.\n"
            f"{self._examples(examples)}"
            f'Input: "{text}"\n\n'
            f"Rules:\n"
            f"- `brand_name` and `text` are written in {_language_name(language)}; "
            f"`brand_name_en` and `text_en` are romanized.\n"
            f"- Keep the brand out of the fragrance name.\n"
            f"- Lower `confidence` when the split between brand and fragrance is uncertain."
        )

    def notes(self, brand: str, name: str, note_limit: int, language: str) -> str:
        return (
            f'List the scent notes of "{name}" by {brand}.\n'
            f"Answer with JSON only, in this shape:\n"
            '{"notes": {"top": [{"name": "...", "intensity": "...", "confidence": 0.0}], '
            '"middle": [...], "base": [...]}, "confidence_score": 0.0}\n'
            f"Rules:\n"
            f"- At most {note_limit} notes per tier, most characteristic first.\n"
            f"- Note names in English, lower case.\n"
            f"- intensity is one of: {', '.join(INTENSITY_LEVELS)}.\n"
            f"- confidence values are between 0 and 1.\n"
            f"- Reply in {_language_name(language)} only inside free-text fields; keys stay in English."
        )

    def attributes(self, name: str, language: str) -> str:
        return (
            f'Describe when "{name}" is best worn.\n'
            "Answer with JSON only, in this shape:\n"
            '{"attributes": {"seasons": [], "occasions": [], "time_of_day": [], "age_groups": []}, '
            '"confidence_score": 0.0}\n'
            f"Allowed seasons: {', '.join(SEASONS)}.\n"
            f"Allowed occasions: {', '.join(OCCASIONS)}.\n"
            f"Allowed time_of_day: {', '.join(TIME_OF_DAY)}.\n"
            f"Allowed age_groups: {', '.join(AGE_GROUPS)}.\n"
            f"Use only the allowed values. confidence_score is between 0 and 1."
        )

    def health_probe(self) -> str:
        return 'Reply with the single word "ok".'


SYSTEM_PROMPT = (
    "You are a perfumery expert who knows brands and fragrances sold in Japan and worldwide. "
    "Always answer in the requested structured format."
)
