"""Neural network building blocks for hybridlm.

Block families, one per pattern character:
- ssm/: Mamba2 mixer (``M``)
- attention/: causal self-attention with grouped KV heads (``*``)
- common.MLP: dense feed-forward (``-``)
- moe/: routed experts plus shared expert (``E``)

Stateful mixers share the call signature ``__call__(x, cache=None) -> y``
and update the cache in place; stateless ones take ``__call__(x) -> y``.
"""

from .common import MLP, RMSNorm, Embedding, get_activation, relu2
from .attention import CausalSelfAttention
from .ssm import Mamba2Mixer, RMSNormGated
from .moe import MoEBlock, SwitchMLP, TopKRouter

__all__ = [
    # Common
    "MLP",
    "RMSNorm",
    "Embedding",
    "get_activation",
    "relu2",
    
    # Attention
    "CausalSelfAttention",
    
    # SSM
    "Mamba2Mixer",
    "RMSNormGated",
    
    # Mixture of experts
    "MoEBlock",
    "SwitchMLP",
    "TopKRouter",
]
