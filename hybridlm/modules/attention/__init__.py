"""Attention blocks (dense causal attention with grouped KV heads)."""

from .causal import CausalSelfAttention, causal_mask

__all__ = [
    "CausalSelfAttention",
    "causal_mask",
]
