"""Error types raised by hybridlm.

All of them subclass ``ValueError`` so callers that only guard against bad
arguments keep working.
"""

from __future__ import annotations


class HybridLMError(ValueError):
    """Base class for hybridlm errors."""


class ConfigurationError(HybridLMError):
    """Invalid model configuration; raised while constructing, never in forward."""


class CacheShapeError(HybridLMError):
    """A cache slot does not fit the layer it is threaded into."""


class TokenIndexError(HybridLMError):
    """A token id falls outside ``[0, vocab_size)``."""


__all__ = [
    "HybridLMError",
    "ConfigurationError",
    "CacheShapeError",
    "TokenIndexError",
]
