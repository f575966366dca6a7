"""
scent_resolver - AI resolution pipeline for fragrance input.

Completion, normalization and note suggestion over interchangeable LLM providers.
"""

__version__ = "0.1.0"
