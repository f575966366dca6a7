"""
Canonical fragrance records and master-data matching.

Converts normalization results to the record shape handed to the fragrance store, and matches them against known master data.
"""

from dataclasses import dataclass, replace
from difflib import SequenceMatcher
from typing import Dict, Optional, Protocol, Tuple

from .sanitize import normalize_key
from .types import NormalizationResult, ProviderIdentity

BRAND_MATCH_THRESHOLD = 0.6
FRAGRANCE_MATCH_THRESHOLD = 0.7


@dataclass(frozen=True)
class CanonicalBrand:
    name_ja: str
    name_en: str


@dataclass(frozen=True)
class CanonicalFragranceRecord:
    """Brand/fragrance record in the persistence layer's shape."""
    brand: CanonicalBrand
    name_ja: str
    name_en: str
    confidence_score: float
    concentration_type: Optional[str] = None
    launch_year: Optional[int] = None
    family: Optional[str] = None
    description_ja: Optional[str] = None
    description_en: Optional[str] = None


def to_canonical_record(result: NormalizationResult) -> CanonicalFragranceRecord:
    """Local-language fields map to ``*_ja``, romanized fields to ``*_en``."""
    return CanonicalFragranceRecord(
        brand=CanonicalBrand(
            name_ja=result.normalized_brand_local,
            name_en=result.normalized_brand_roman,
        ),
        name_ja=result.normalized_name_local,
        name_en=result.normalized_name_roman,
        confidence_score=result.confidence_score,
        concentration_type=result.concentration_type,
        launch_year=result.launch_year,
        family=result.family,
        description_ja=result.descriptions.get("ja"),
        description_en=result.descriptions.get("en"),
    )


def from_canonical_record(
    record: CanonicalFragranceRecord,
    provider: Optional[ProviderIdentity] = None
) -> NormalizationResult:
    descriptions = {}
    if record.description_ja:
        descriptions["ja"] = record.description_ja
    if record.description_en:
        descriptions["en"] = record.description_en
    return NormalizationResult(
        normalized_brand_local=record.brand.name_ja,
        normalized_brand_roman=record.brand.name_en,
        normalized_name_local=record.name_ja,
        normalized_name_roman=record.name_en,
        confidence_score=record.confidence_score,
        concentration_type=record.concentration_type,
        launch_year=record.launch_year,
        family=record.family,
        descriptions=descriptions,
        provider=provider,
    )


@dataclass(frozen=True)
class MasterMatch:
    record_id: str
    name: str
    score: float


class MasterCatalog(Protocol):
    """Lookup interface onto the fragrance/brand master store."""

    def find_brand(self, name_ja: str, name_en: str) -> Optional[MasterMatch]:
        ...

    def find_fragrance(self, brand_id: str, name_ja: str, name_en: str) -> Optional[MasterMatch]:
        ...


def similarity(left: str, right: str) -> float:
    """Similarity ratio in [0, 1] of two names, ignoring case and spacing."""
    left, right = normalize_key(left), normalize_key(right)
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


class InMemoryMasterCatalog:
    """Master catalog held in memory, matched by name similarity.

    Args:
        brands: ``{brand_id: (name_ja, name_en)}``
        fragrances: ``{fragrance_id: (brand_id, name_ja, name_en)}``
    """

    def __init__(
        self,
        brands: Dict[str, Tuple[str, str]],
        fragrances: Optional[Dict[str, Tuple[str, str, str]]] = None
    ):
        self.brands = brands
        self.fragrances = fragrances or {}

    @staticmethod
    def _best(candidates, names, threshold: float) -> Optional[MasterMatch]:
        best = None
        for record_id, record_names in candidates:
            pairs = [(name, known) for name in names if name for known in record_names if known]
            if not pairs:
                continue
            score = max(similarity(name, known) for name, known in pairs)
            if score > threshold and (best is None or score > best.score):
                best = MasterMatch(record_id=record_id, name=record_names[-1], score=round(score, 4))
        return best

    def find_brand(self, name_ja: str, name_en: str) -> Optional[MasterMatch]:
        return self._best(self.brands.items(), (name_ja, name_en), BRAND_MATCH_THRESHOLD)

    def find_fragrance(self, brand_id: str, name_ja: str, name_en: str) -> Optional[MasterMatch]:
        candidates = [
            (fragrance_id, (ja, en))
            for fragrance_id, (owner, ja, en) in self.fragrances.items()
            if owner == brand_id
        ]
        return self._best(candidates, (name_ja, name_en), FRAGRANCE_MATCH_THRESHOLD)


def match_master_data(result: NormalizationResult, catalog: MasterCatalog) -> NormalizationResult:
    """Attach master-data ids and a match strength to a normalization.

    ``master_match`` is 0.5 per matched side (brand, fragrance).
    """
    brand = catalog.find_brand(result.normalized_brand_local, result.normalized_brand_roman)
    if brand is None:
        return replace(result, matched_brand_id=None, matched_fragrance_id=None, master_match=0.0)
    fragrance = catalog.find_fragrance(
        brand.record_id, result.normalized_name_local, result.normalized_name_roman
    )
    return replace(
        result,
        matched_brand_id=brand.record_id,
        matched_fragrance_id=fragrance.record_id if fragrance else None,
        master_match=0.5 + (0.5 if fragrance else 0.0),
    )
