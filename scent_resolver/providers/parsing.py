"""
Response decoding helpers.

Extracts JSON from provider text that may be wrapped in markdown fences or prose.
"""

import json
import re
from typing import Any, Dict, Optional

from ..errors import MalformedResponse

_FENCED_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL | re.IGNORECASE)
_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
_ARRAY_RE = re.compile(r"\[.*\]", re.DOTALL)

MIN_LAUNCH_YEAR = 1700
MAX_LAUNCH_YEAR = 2100


def extract_json(text: str, provider: str) -> Any:
    """Decode the JSON value in a provider's text output.

    Tries, in order: each fenced block, the whole text, the outermost
    ``{...}`` span, the outermost ``[...]`` span.

    Raises:
        MalformedResponse: If no candidate decodes
    """
    text = (text or "").strip()
    candidates = [block.strip() for block in _FENCED_RE.findall(text)]
    candidates.append(text)
    for pattern in (_OBJECT_RE, _ARRAY_RE):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(0))

    for candidate in candidates:
        if not candidate:
            continue
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise MalformedResponse(provider, text[:500])


def require_object(payload: Any, provider: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise MalformedResponse(provider, payload)
    return payload


def coerce_year(value: Any) -> Optional[int]:
    """A plausible launch year, or None."""
    if isinstance(value, bool) or value is None:
        return None
    try:
        year = int(str(value).strip()[:4])
    except ValueError:
        return None
    if MIN_LAUNCH_YEAR <= year <= MAX_LAUNCH_YEAR:
        return year
    return None


def coerce_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None
