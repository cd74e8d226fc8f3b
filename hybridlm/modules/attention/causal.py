"""Causal self-attention for the hybrid attention layers.

Dense O(n²) attention with grouped key/value heads and no positional
encoding; position information comes from the Mamba layers around it.
Incremental decoding appends to a ``KVCache`` in place.
"""

from __future__ import annotations

import math
from typing import Optional

import jax
import jax.numpy as jnp
import flax.nnx as nnx

from hybridlm.core.cache import KVCache
from hybridlm.core.errors import ConfigurationError

Array = jax.Array


def causal_mask(seq_len: int, kv_len: int, offset: int = 0) -> Array:
    """Boolean mask [seq_len, kv_len]; query i sees key j iff j <= offset + i.

    ``offset`` is the number of positions cached before this call, so the
    mask is expressed in global sequence positions.
    """
    query_pos = offset + jnp.arange(seq_len)[:, None]
    key_pos = jnp.arange(kv_len)[None, :]
    return key_pos <= query_pos


class CausalSelfAttention(nnx.Module):
    """Multi-head causal self-attention with GQA/MQA support.
    
    Implements scaled dot-product attention with causal masking:
        Attention(Q, K, V) = softmax(QK^T / sqrt(d_k) + mask) @ V
    
    Args:
        hidden_size: Model dimension.
        n_heads: Number of query heads.
        n_kv_heads: Number of key/value heads; must divide ``n_heads``.
        head_dim: Dimension per head (default: hidden_size // n_heads).
        bias: Whether to use bias in projections.
        rngs: Random number generators.
    """
    
    def __init__(
        self,
        hidden_size: int,
        n_heads: int,
        *,
        n_kv_heads: Optional[int] = None,
        head_dim: Optional[int] = None,
        bias: bool = False,
        rngs: nnx.Rngs,
    ):
        self.hidden_size = hidden_size
        self.n_heads = n_heads
        self.n_kv_heads = n_kv_heads or n_heads
        self.head_dim = head_dim or (hidden_size // n_heads)
        
        if n_heads % self.n_kv_heads != 0:
            raise ConfigurationError(
                f"n_heads ({n_heads}) must be divisible by n_kv_heads ({self.n_kv_heads})"
            )
        self.n_rep = n_heads // self.n_kv_heads  # Repetition factor for GQA
        self.scale = 1.0 / math.sqrt(self.head_dim)
        
        self.q_proj = nnx.Linear(hidden_size, n_heads * self.head_dim, use_bias=bias, rngs=rngs)
        self.k_proj = nnx.Linear(hidden_size, self.n_kv_heads * self.head_dim, use_bias=bias, rngs=rngs)
        self.v_proj = nnx.Linear(hidden_size, self.n_kv_heads * self.head_dim, use_bias=bias, rngs=rngs)
        self.o_proj = nnx.Linear(n_heads * self.head_dim, hidden_size, use_bias=bias, rngs=rngs)
    
    def __call__(self, x: Array, cache: Optional[KVCache] = None) -> Array:
        """Forward pass.
        
        Args:
            x: Input tensor of shape [batch, seq_len, hidden_size]
            cache: Optional KV cache; new keys/values are appended to it in place.
            
        Returns:
            Output tensor with the same shape as x.
        """
        batch_size, seq_len, _ = x.shape
        
        q = self.q_proj(x).reshape(batch_size, seq_len, self.n_heads, self.head_dim)
        k = self.k_proj(x).reshape(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        v = self.v_proj(x).reshape(batch_size, seq_len, self.n_kv_heads, self.head_dim)
        
        if cache is not None:
            offset = cache.offset
            k_full, v_full = cache.update_and_fetch(k, v)  # [batch, offset + seq, n_kv_heads, head_dim]
        else:
            offset = 0
            k_full, v_full = k, v
        
        if self.n_rep > 1:
            k_full = jnp.repeat(k_full, self.n_rep, axis=2)
            v_full = jnp.repeat(v_full, self.n_rep, axis=2)
        
        scores = jnp.einsum("bqhd,bkhd->bhqk", q, k_full) * self.scale  # [batch, n_heads, seq_q, seq_kv]
        mask = causal_mask(seq_len, k_full.shape[1], offset)
        scores = jnp.where(mask[None, None, :, :], scores, jnp.finfo(scores.dtype).min)
        attn_weights = jax.nn.softmax(scores.astype(jnp.float32), axis=-1).astype(v_full.dtype)
        
        attn_output = jnp.einsum("bhqk,bkhd->bqhd", attn_weights, v_full)
        attn_output = attn_output.reshape(batch_size, seq_len, self.n_heads * self.head_dim)
        
        return self.o_proj(attn_output)
    
    def init_cache(
        self,
        batch_size: Optional[int] = None,
        dtype: jnp.dtype = jnp.float32,
    ) -> KVCache:
        """Fresh, empty KV cache; it takes its shape from the first call."""
        return KVCache()
