# Re-exports the two in-memory caches and their key helpers.
from .pattern_cache import (
    IterationCategory,
    PatternCache,
    PatternHint,
    detect_iteration_pattern,
    summarize_change,
)
from .response_cache import ResponseCache, code_fingerprint, generate_cache_key

__all__ = [
    "IterationCategory",
    "PatternCache",
    "PatternHint",
    "ResponseCache",
    "code_fingerprint",
    "detect_iteration_pattern",
    "generate_cache_key",
    "summarize_change",
]
