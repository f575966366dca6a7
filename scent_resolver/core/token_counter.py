"""
Token usage reported by providers.

Normalizes the differing usage shapes of each provider into one value type.
"""

from dataclasses import dataclass
from typing import Any, Optional


@dataclass(frozen=True)
class TokenUsage:
    """Input/output token counts for a single provider call."""
    input_tokens: int
    output_tokens: int

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens

    @classmethod
    def from_counts(cls, input_tokens: Optional[Any], output_tokens: Optional[Any]) -> "TokenUsage":
        """Build usage from loosely typed counts, treating missing values as zero."""
        return cls(int(input_tokens or 0), int(output_tokens or 0))
