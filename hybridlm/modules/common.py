"""Common building blocks shared by every hybrid layer type.

- RMSNorm: pre-norm used in front of every block and at the model output
- MLP: dense feed-forward (squared-ReLU by default, SwiGLU-style when gated)
- Embedding: token lookup with optional weight tying
"""

from __future__ import annotations

import math
from typing import Callable

import jax
import jax.numpy as jnp
import flax.nnx as nnx

from hybridlm.core.errors import ConfigurationError, TokenIndexError

Array = jax.Array


# -----------------------------------------------------------------------------
# Normalization
# -----------------------------------------------------------------------------

class RMSNorm(nnx.Module):
    """Root Mean Square Layer Normalization.
    
    Args:
        dim: Hidden dimension to normalize.
        eps: Small constant for numerical stability.
        rngs: Random number generators (unused, for API consistency).
    """
    
    def __init__(self, dim: int, *, eps: float = 1e-6, rngs: nnx.Rngs):
        self.eps = eps
        self.weight = nnx.Param(jnp.ones((dim,)))
    
    def __call__(self, x: Array) -> Array:
        """Apply RMS normalization over the last axis.
        
        The statistics are computed in float32 and cast back to the input dtype.
        """
        dtype = x.dtype
        x32 = x.astype(jnp.float32)
        rms = jnp.sqrt(jnp.mean(x32 ** 2, axis=-1, keepdims=True) + self.eps)
        return (x32 / rms * self.weight.value).astype(dtype)


# -----------------------------------------------------------------------------
# Feed-Forward Networks
# -----------------------------------------------------------------------------

class MLP(nnx.Module):
    """Position-wise feed-forward network.
    
    Plain:  x -> up_proj -> act -> down_proj
    Gated:  x -> [act(gate_proj) * up_proj] -> down_proj
    
    The hybrid dense layers and the MoE shared expert use the plain
    squared-ReLU form; the gated form is the SwiGLU-style three-matrix variant.
    
    Args:
        hidden_size: Input/output dimension.
        intermediate_size: Hidden layer dimension.
        activation: Activation function name ("relu2", "silu", "gelu", "relu").
        use_gating: Whether to add a gate projection.
        bias: Whether to use bias in linear layers.
        rngs: Random number generators.
    """
    
    def __init__(
        self,
        hidden_size: int,
        intermediate_size: int,
        *,
        activation: str = "relu2",
        use_gating: bool = False,
        bias: bool = False,
        rngs: nnx.Rngs,
    ):
        self.use_gating = use_gating
        self.activation = get_activation(activation)
        
        if use_gating:
            self.gate_proj = nnx.Linear(hidden_size, intermediate_size, use_bias=bias, rngs=rngs)
        else:
            self.gate_proj = None
        self.up_proj = nnx.Linear(hidden_size, intermediate_size, use_bias=bias, rngs=rngs)
        self.down_proj = nnx.Linear(intermediate_size, hidden_size, use_bias=bias, rngs=rngs)
    
    def __call__(self, x: Array) -> Array:
        """Forward pass.
        
        Args:
            x: Input tensor of shape [batch, seq, hidden_size]
            
        Returns:
            Output tensor of shape [batch, seq, hidden_size]
        """
        if self.gate_proj is not None:
            hidden = self.activation(self.gate_proj(x)) * self.up_proj(x)
        else:
            hidden = self.activation(self.up_proj(x))
        
        return self.down_proj(hidden)


# -----------------------------------------------------------------------------
# Embeddings
# -----------------------------------------------------------------------------

class Embedding(nnx.Module):
    """Token embedding layer with optional weight tying.
    
    Args:
        vocab_size: Size of vocabulary.
        embed_dim: Embedding dimension.
        rngs: Random number generators.
    """
    
    def __init__(self, vocab_size: int, embed_dim: int, *, rngs: nnx.Rngs):
        self.vocab_size = vocab_size
        self.embed_dim = embed_dim
        scale = 1.0 / math.sqrt(embed_dim)
        self.weight = nnx.Param(
            jax.random.normal(rngs.params(), (vocab_size, embed_dim)) * scale
        )
    
    def check_ids(self, token_ids: Array) -> None:
        """Host-side validation of token IDs.
        
        Reads the id range back from the device, so it runs outside any
        traced function. ``HybridLM.__call__`` calls it before the lookup.
        
        Raises:
            TokenIndexError: If ids are not integers or fall outside [0, vocab_size).
        """
        token_ids = jnp.asarray(token_ids)
        if not jnp.issubdtype(token_ids.dtype, jnp.integer):
            raise TokenIndexError(f"token ids must be integers, got dtype {token_ids.dtype}")
        if token_ids.size:
            low, high = int(token_ids.min()), int(token_ids.max())
            if low < 0 or high >= self.vocab_size:
                raise TokenIndexError(
                    f"token ids must lie in [0, {self.vocab_size}); got range [{low}, {high}]"
                )
    
    def __call__(self, token_ids: Array) -> Array:
        """Look up embeddings for token IDs.
        
        Pure gather, safe to trace; range checking lives in ``check_ids``.
        
        Args:
            token_ids: Integer tensor of shape [batch, seq]
            
        Returns:
            Embeddings of shape [batch, seq, embed_dim]
        """
        return self.weight.value[token_ids]
    
    def unembed(self, hidden: Array) -> Array:
        """Project hidden states to vocabulary logits (weight tying)."""
        return hidden @ self.weight.value.T


# -----------------------------------------------------------------------------
# Utilities
# -----------------------------------------------------------------------------

def relu2(x: Array) -> Array:
    """Squared ReLU."""
    return jnp.square(jax.nn.relu(x))


def get_activation(name: str) -> Callable[[Array], Array]:
    """Get activation function by name."""
    activations = {
        "relu2": relu2,
        "silu": jax.nn.silu,
        "swish": jax.nn.silu,  # Alias
        "gelu": jax.nn.gelu,
        "relu": jax.nn.relu,
    }
    if name not in activations:
        raise ConfigurationError(
            f"Unknown activation '{name}'. Choose from: {list(activations.keys())}"
        )
    return activations[name]
