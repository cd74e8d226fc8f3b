"""Layer-type pattern parsing.

A hybrid pattern assigns one block type per layer with a single character:

    M  Mamba2 state-space mixer
    *  causal self-attention
    -  dense feed-forward (MLP)
    E  sparse mixture of experts

Example:
    >>> parse_pattern("M*-E")
    (<BlockType.MAMBA: 'M'>, <BlockType.ATTENTION: '*'>, <BlockType.MLP: '-'>, <BlockType.MOE: 'E'>)
"""

from __future__ import annotations

from enum import Enum
from typing import Optional, Tuple

from .errors import ConfigurationError


class BlockType(Enum):
    """Block kind selected by a pattern character."""
    MAMBA = "M"
    ATTENTION = "*"
    MLP = "-"
    MOE = "E"

    @property
    def is_stateful(self) -> bool:
        """Whether layers of this type own a cache slot during generation."""
        return self in (BlockType.MAMBA, BlockType.ATTENTION)


_BY_CHAR = {member.value: member for member in BlockType}


def parse_pattern(pattern: str, num_layers: Optional[int] = None) -> Tuple[BlockType, ...]:
    """Decodes a pattern string into one ``BlockType`` per layer.

    Args:
        pattern: Pattern string such as ``"M-M-M*-E"``.
        num_layers: Expected layer count. When given, the pattern length must match.
    Returns:
        Tuple of block types, same length as ``pattern``.
    Raises:
        ConfigurationError: On an unknown character or a length mismatch.
    """

    if not isinstance(pattern, str) or not pattern:
        raise ConfigurationError(f"Pattern must be a non-empty string, got {pattern!r}")

    block_types = []
    for idx, char in enumerate(pattern):
        block_type = _BY_CHAR.get(char)
        if block_type is None:
            raise ConfigurationError(
                f"Unknown block type {char!r} at index {idx} of pattern {pattern!r}. "
                f"Supported: {sorted(_BY_CHAR)}"
            )
        block_types.append(block_type)

    if num_layers is not None and len(block_types) != num_layers:
        raise ConfigurationError(
            f"Pattern {pattern!r} has {len(block_types)} layers but num_hidden_layers={num_layers}"
        )
    return tuple(block_types)


__all__ = ["BlockType", "parse_pattern"]
