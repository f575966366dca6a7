"""
LLM provider adapters.

One adapter per provider behind a common interface, plus the registry that builds them.
"""

from .base import ProviderAdapter, RequestOptions
from .registry import ProviderRegistry

__all__ = ["ProviderAdapter", "ProviderRegistry", "RequestOptions"]
