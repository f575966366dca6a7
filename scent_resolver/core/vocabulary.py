"""
Fragrance vocabularies and normalization rule tables.

Closed value sets for notes and attributes plus the rewrite rules applied to provider output.
"""

from typing import Dict, List, Tuple

NOTE_TIERS = ("top", "middle", "base")

NOTE_CATEGORIES: Dict[str, List[str]] = {
    "citrus": ["bergamot", "lemon", "orange", "grapefruit", "lime", "mandarin", "yuzu", "neroli"],
    "floral": ["rose", "jasmine", "lily", "iris", "violet", "peony", "tuberose", "ylang-ylang", "orange blossom"],
    "woody": ["sandalwood", "cedar", "vetiver", "patchouli", "oud", "guaiac wood", "birch"],
    "oriental": ["vanilla", "amber", "musk", "incense", "benzoin", "labdanum", "tonka bean"],
    "fresh": ["mint", "eucalyptus", "marine", "ozone", "water", "cucumber", "green tea"],
    "spicy": ["black pepper", "pink pepper", "cinnamon", "cardamom", "clove", "nutmeg", "ginger", "saffron"],
    "fruity": ["apple", "pear", "peach", "blackcurrant", "raspberry", "plum", "fig", "coconut"],
    "green": ["grass", "leaves", "galbanum", "basil", "rosemary", "lavender", "sage"],
    "gourmand": ["chocolate", "caramel", "honey", "coffee", "almond", "praline", "tonka"],
}

INTENSITY_LEVELS = ("light", "moderate", "strong", "very_strong")

INTENSITY_ALIASES: Dict[str, str] = {
    "weak": "light",
    "mild": "light",
    "soft": "light",
    "medium": "moderate",
    "heavy": "strong",
    "intense": "very_strong",
    "powerful": "very_strong",
    "very strong": "very_strong",
}

NOTE_NAME_ALIASES: Dict[str, str] = {
    "bergamotte": "bergamot",
    "rosa": "rose",
    "sandal": "sandalwood",
    "vanille": "vanilla",
    "jasmin": "jasmine",
    "cedarwood": "cedar",
    "white musk": "musk",
    "tonka": "tonka bean",
}

SEASONS = ("spring", "summer", "autumn", "winter")
OCCASIONS = ("casual", "business", "formal", "date", "party", "daily")
TIME_OF_DAY = ("morning", "afternoon", "evening", "night")
AGE_GROUPS = ("teens", "20s", "30s", "40s", "50s+")

# Brand spellings mapped to their canonical form. Keys are matched case-insensitively.
BRAND_RULES: Dict[str, str] = {
    "ディオール": "Dior",
    "dior": "Dior",
    "christian dior": "Dior",
    "シャネル": "CHANEL",
    "chanel": "CHANEL",
    "グッチ": "Gucci",
    "gucci": "Gucci",
    "エルメス": "Hermès",
    "hermes": "Hermès",
    "ysl": "Yves Saint Laurent",
    "イヴ・サンローラン": "Yves Saint Laurent",
    "tf": "Tom Ford",
    "トムフォード": "Tom Ford",
    "トム・フォード": "Tom Ford",
}

# Ordered (pattern, replacement) rewrites applied to fragrance names.
FRAGRANCE_NAME_RULES: List[Tuple[str, str]] = [
    (r"\(tm\)", "™"),
    (r"\(r\)", "®"),
    (r"\bNo\.?\s*(\d+)", r"No.\1"),
]

CONCENTRATION_RULES: Dict[str, str] = {
    "edp": "EDP",
    "eau de parfum": "EDP",
    "edt": "EDT",
    "eau de toilette": "EDT",
    "edc": "EDC",
    "cologne": "EDC",
    "eau de cologne": "EDC",
    "parfum": "Parfum",
    "extrait": "Extrait",
    "extrait de parfum": "Extrait",
    "other": "Other",
}


def note_category(name: str) -> str:
    """Category of a note name, or "other" when unknown."""
    key = name.lower()
    for category, notes in NOTE_CATEGORIES.items():
        if key in notes:
            return category
    for category, notes in NOTE_CATEGORIES.items():
        if any(note in key for note in notes):
            return category
    return "other"
