"""
Core building blocks shared by every tier.
"""

from .errors import (
    IndexUnavailable,
    MemoryPipelineError,
    ParseError,
    ProviderError,
    ValidationError,
)

__all__ = [
    "MemoryPipelineError",
    "ValidationError",
    "ProviderError",
    "IndexUnavailable",
    "ParseError",
]
