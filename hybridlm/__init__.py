"""hybridlm: pattern-driven hybrid Mamba/attention/MoE language model in JAX.

Each layer is one of four block types chosen by a pattern string
(``M`` Mamba2, ``*`` attention, ``-`` MLP, ``E`` mixture of experts).
A per-layer cache makes token-at-a-time decoding after a prefill match a
single pass over the whole sequence.

Example:
    from hybridlm import create_model
    
    model = create_model("nemotron-h-tiny", rngs=nnx.Rngs(0))
    cache = model.new_cache()
    logits = model(prompt_ids, cache=cache)
    logits = model(next_ids, cache=cache)
"""

from hybridlm.models import (
    HybridConfig,
    HybridLayer,
    HybridLM,
    create_model,
    NEMOTRON_H_TINY,
    NEMOTRON_H_SMALL,
)

from hybridlm.core import (
    BlockType,
    parse_pattern,
    CacheParameters,
    CacheSlot,
    KVCache,
    MambaCache,
    HybridLMError,
    ConfigurationError,
    CacheShapeError,
    TokenIndexError,
)

# Module-level exports
from hybridlm.modules.attention import CausalSelfAttention
from hybridlm.modules.ssm import Mamba2Mixer
from hybridlm.modules.moe import MoEBlock
from hybridlm.modules.common import MLP, RMSNorm, Embedding

__version__ = "0.1.0"

__all__ = [
    # Models
    "HybridConfig",
    "HybridLayer",
    "HybridLM",
    "create_model",
    "NEMOTRON_H_TINY",
    "NEMOTRON_H_SMALL",
    
    # Pattern and caches
    "BlockType",
    "parse_pattern",
    "CacheParameters",
    "CacheSlot",
    "KVCache",
    "MambaCache",
    
    # Errors
    "HybridLMError",
    "ConfigurationError",
    "CacheShapeError",
    "TokenIndexError",
    
    # Modules
    "CausalSelfAttention",
    "Mamba2Mixer",
    "MoEBlock",
    "MLP",
    "RMSNorm",
    "Embedding",
]
