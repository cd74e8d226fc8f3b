"""Block registry: pattern tag -> block builder.

Builders take the model configuration and ``nnx.Rngs`` and return the token
mixer for one layer. ``hybridlm.models`` registers one builder per
``BlockType``; layers resolve their builder once, at construction.
"""

from __future__ import annotations

from typing import Callable, Dict

import flax.nnx as nnx

from hybridlm.core.errors import ConfigurationError
from hybridlm.core.pattern import BlockType

BlockBuilder = Callable[..., nnx.Module]

BLOCK_REGISTRY: Dict[BlockType, BlockBuilder] = {}


def register_block(block_type: BlockType) -> Callable[[BlockBuilder], BlockBuilder]:
    """Decorator registering ``builder(config, rngs)`` for ``block_type``."""

    def decorator(builder: BlockBuilder) -> BlockBuilder:
        if block_type in BLOCK_REGISTRY:
            raise ConfigurationError(f"Block type {block_type.name} is already registered")
        BLOCK_REGISTRY[block_type] = builder
        return builder

    return decorator


def get_block_builder(block_type: BlockType) -> BlockBuilder:
    try:
        return BLOCK_REGISTRY[block_type]
    except KeyError:
        raise ConfigurationError(f"No block registered for {block_type.name}") from None


__all__ = [
    "BLOCK_REGISTRY",
    "get_block_builder",
    "register_block",
]
