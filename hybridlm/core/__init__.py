"""Shared runtime utilities reused across hybridlm blocks."""

from .cache import CacheParameters, CacheSlot, KVCache, MambaCache
from .config import ConfigBase
from .conv import depthwise_conv1d_causal
from .errors import CacheShapeError, ConfigurationError, HybridLMError, TokenIndexError
from .mode import KernelMode, select_mode
from .pattern import BlockType, parse_pattern

__all__ = [
    "BlockType",
    "parse_pattern",
    "CacheParameters",
    "CacheSlot",
    "KVCache",
    "MambaCache",
    "ConfigBase",
    "depthwise_conv1d_causal",
    "HybridLMError",
    "ConfigurationError",
    "CacheShapeError",
    "TokenIndexError",
    "KernelMode",
    "select_mode",
]
