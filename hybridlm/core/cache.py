"""Per-layer generation caches.

Two structurally different states sit behind one slot type:

- ``MambaCache``: fixed-size convolution history plus the SSM state matrix.
  Replaced wholesale on every call; its shape never grows.
- ``KVCache``: key/value history that grows along the sequence axis on
  every call.

Stateless layers (dense MLP, MoE) hold ``None`` in their slot. Cache objects
are mutable and are threaded by reference through each forward call, so one
object carries a layer's state for the whole generation session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

import jax
import jax.numpy as jnp

from .errors import CacheShapeError
from .pattern import BlockType

Array = jax.Array


@dataclass
class CacheParameters:
    """Knobs for ``HybridLM.new_cache``.

    Attributes:
        batch_size: When set, Mamba states are allocated eagerly as zeros for
            this batch size. When None they are allocated lazily (as zeros) on
            the first forward call, sized from its input.
        dtype: Dtype of the allocated states.
    """
    batch_size: Optional[int] = None
    dtype: jnp.dtype = jnp.float32


@dataclass
class MambaCache:
    """Recurrent state of a Mamba2 layer.

    Attributes:
        conv_state: Last ``conv_kernel - 1`` conv inputs [batch, kernel-1, conv_dim]
        ssm_state: SSM state matrix [batch, num_heads, head_dim, state_size]
    """
    conv_state: Optional[Array] = None
    ssm_state: Optional[Array] = None
    block_type: BlockType = field(default=BlockType.MAMBA, init=False, repr=False)

    @classmethod
    def zeros(
        cls,
        batch_size: int,
        conv_kernel: int,
        conv_dim: int,
        num_heads: int,
        head_dim: int,
        state_size: int,
        dtype: jnp.dtype = jnp.float32,
    ) -> "MambaCache":
        """Create zero-initialized state."""
        return cls(
            conv_state=jnp.zeros((batch_size, max(0, conv_kernel - 1), conv_dim), dtype=dtype),
            ssm_state=jnp.zeros((batch_size, num_heads, head_dim, state_size), dtype=dtype),
        )

    @property
    def is_empty(self) -> bool:
        return self.conv_state is None and self.ssm_state is None

    def ensure(
        self,
        conv_shape: Tuple[int, ...],
        ssm_shape: Tuple[int, ...],
        dtype: jnp.dtype,
    ) -> Tuple[Array, Array]:
        """Returns (conv_state, ssm_state), allocating zeros on first use.

        Raises:
            CacheShapeError: If stored state does not match the expected shapes.
        """
        if self.conv_state is None:
            self.conv_state = jnp.zeros(conv_shape, dtype=dtype)
        if self.ssm_state is None:
            self.ssm_state = jnp.zeros(ssm_shape, dtype=dtype)
        if tuple(self.conv_state.shape) != tuple(conv_shape):
            raise CacheShapeError(
                f"Mamba conv_state has shape {tuple(self.conv_state.shape)}, "
                f"layer expects {tuple(conv_shape)}"
            )
        if tuple(self.ssm_state.shape) != tuple(ssm_shape):
            raise CacheShapeError(
                f"Mamba ssm_state has shape {tuple(self.ssm_state.shape)}, "
                f"layer expects {tuple(ssm_shape)}"
            )
        return self.conv_state, self.ssm_state

    def update(self, conv_state: Array, ssm_state: Array) -> None:
        """Replace both states in place."""
        self.conv_state = conv_state
        self.ssm_state = ssm_state


@dataclass
class KVCache:
    """Growing key/value history of an attention layer.

    Attributes:
        keys: Cached keys [batch, offset, n_kv_heads, head_dim], None until first call.
        values: Cached values [batch, offset, n_kv_heads, head_dim], None until first call.
    """
    keys: Optional[Array] = None
    values: Optional[Array] = None
    block_type: BlockType = field(default=BlockType.ATTENTION, init=False, repr=False)

    @property
    def is_empty(self) -> bool:
        return self.keys is None

    @property
    def offset(self) -> int:
        """Number of positions already cached."""
        return 0 if self.keys is None else self.keys.shape[1]

    def update_and_fetch(self, keys: Array, values: Array) -> Tuple[Array, Array]:
        """Append new keys/values and return the full history.

        Args:
            keys: New keys [batch, seq_len, n_kv_heads, head_dim]
            values: New values [batch, seq_len, n_kv_heads, head_dim]
        Returns:
            Tuple of (keys, values) covering every position seen so far.
        Raises:
            CacheShapeError: If batch, head count or head dim differ from the history.
        """
        if self.keys is None:
            self.keys, self.values = keys, values
            return self.keys, self.values

        cached = (self.keys.shape[0],) + tuple(self.keys.shape[2:])
        incoming = (keys.shape[0],) + tuple(keys.shape[2:])
        if cached != incoming:
            raise CacheShapeError(
                f"KV cache holds [batch, n_kv_heads, head_dim]={list(cached)}, "
                f"got {list(incoming)}"
            )
        self.keys = jnp.concatenate([self.keys, keys], axis=1)
        self.values = jnp.concatenate([self.values, values], axis=1)
        return self.keys, self.values


CacheSlot = Union[MambaCache, KVCache, None]


__all__ = ["CacheParameters", "CacheSlot", "KVCache", "MambaCache"]
