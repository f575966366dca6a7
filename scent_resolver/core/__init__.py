"""
Core modules for the resolution pipeline.

This package contains orchestration, caching, cost and limit bookkeeping,
feedback handling and result post-processing.
"""
