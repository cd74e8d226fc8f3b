"""Hybrid language model with pattern-driven block composition.

Every layer is a pre-norm residual block whose token mixer is picked by one
character of ``hybrid_override_pattern``:

    M  Mamba2 state-space mixer       (cache: MambaCache)
    *  causal self-attention          (cache: KVCache)
    -  dense feed-forward MLP         (no cache)
    E  sparse mixture of experts      (no cache)

Example:
    config = HybridConfig(
        vocab_size=100,
        hidden_size=64,
        num_hidden_layers=4,
        ...
        hybrid_override_pattern="M*-E",
    )
    model = HybridLM(config, rngs=nnx.Rngs(0))

    cache = model.new_cache()
    logits = model(prompt, cache=cache)      # prefill
    logits = model(next_token, cache=cache)  # decode, cache updated in place
"""

from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple, Union

import jax
import jax.numpy as jnp
import flax.nnx as nnx

from hybridlm.core import (
    BlockType,
    CacheParameters,
    CacheShapeError,
    CacheSlot,
    ConfigBase,
    ConfigurationError,
    parse_pattern,
)
from hybridlm.modules.attention import CausalSelfAttention
from hybridlm.modules.common import MLP, Embedding, RMSNorm, get_activation
from hybridlm.modules.moe import MoEBlock
from hybridlm.modules.ssm import Mamba2Mixer
from hybridlm.registry import get_block_builder, register_block

Array = jax.Array

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Configuration
# -----------------------------------------------------------------------------

@dataclass
class HybridConfig(ConfigBase):
    """Configuration of a hybrid Mamba/attention/MLP/MoE model.

    Core Parameters:
        vocab_size: Vocabulary size for embeddings.
        hidden_size: Model hidden dimension.
        num_hidden_layers: Number of layers; must equal the pattern length.
        hybrid_override_pattern: One character per layer from {M, *, -, E}.
        layer_norm_epsilon: RMSNorm epsilon.

    Attention Parameters:
        num_attention_heads: Number of query heads.
        num_key_value_heads: Number of KV heads (GQA); must divide the query heads.
        head_dim: Per-head dimension. None = hidden_size // num_attention_heads.
        attention_bias: Bias on q/k/v/o projections.

    Mamba2 Parameters:
        mamba_num_heads: Number of SSM heads.
        mamba_head_dim: Dimension per SSM head.
        ssm_state_size: SSM state dimension.
        conv_kernel: Causal convolution kernel width.
        n_groups: Number of B/C groups; must divide mamba_num_heads.
        use_conv_bias: Bias on the depthwise convolution.
        use_bias: Bias on the Mamba in/out projections.
        mamba_hidden_act: Activation after the convolution.
        time_step_limit: Clamp range for the discretized time step.
        chunk_size: Chunk size of the SSD prefill scan.

    MLP / MoE Parameters:
        intermediate_size: Dense MLP hidden dimension.
        moe_intermediate_size: Routed expert hidden dimension.
        moe_shared_expert_intermediate_size: Shared expert hidden dimension.
        n_routed_experts: Number of routed experts.
        num_experts_per_tok: Experts selected per token.
        n_group: Expert groups for group-limited routing.
        topk_group: Groups kept per token.
        norm_topk_prob: Renormalize the selected expert weights.
        routed_scaling_factor: Multiplier on routed expert weights.
        mlp_hidden_act: Activation of the MLP and experts.
        mlp_bias: Bias on MLP and expert projections.

    Output:
        tie_word_embeddings: Reuse the embedding matrix as the LM head.
    """
    # Core
    vocab_size: int
    hidden_size: int
    num_hidden_layers: int

    # Attention
    num_attention_heads: int
    num_key_value_heads: int

    # Mamba2
    mamba_num_heads: int
    mamba_head_dim: int
    ssm_state_size: int
    conv_kernel: int
    n_groups: int

    # MLP / MoE
    intermediate_size: int
    moe_intermediate_size: int
    moe_shared_expert_intermediate_size: int
    n_routed_experts: int
    num_experts_per_tok: int

    hybrid_override_pattern: str
    layer_norm_epsilon: float

    # Expert grouping
    n_group: int
    topk_group: int

    # Optional
    head_dim: Optional[int] = None
    attention_bias: bool = False
    use_conv_bias: bool = True
    use_bias: bool = False
    mamba_hidden_act: str = "silu"
    time_step_limit: Tuple[float, float] = (0.0, float("inf"))
    chunk_size: int = 256
    mlp_hidden_act: str = "relu2"
    mlp_bias: bool = False
    norm_topk_prob: bool = True
    routed_scaling_factor: float = 1.0
    tie_word_embeddings: bool = False

    def __post_init__(self):
        """Fill derived parameters and validate."""
        if self.head_dim is None and isinstance(self.num_attention_heads, int) and self.num_attention_heads > 0:
            self.head_dim = self.hidden_size // self.num_attention_heads
        self.time_step_limit = tuple(self.time_step_limit)
        self.validate()

    def validate(self) -> None:
        """Raise ``ConfigurationError`` if the configuration is unusable."""
        self._require_positive((
            "vocab_size", "hidden_size", "num_hidden_layers",
            "num_attention_heads", "num_key_value_heads", "head_dim",
            "mamba_num_heads", "mamba_head_dim", "ssm_state_size", "conv_kernel", "n_groups",
            "intermediate_size", "moe_intermediate_size", "moe_shared_expert_intermediate_size",
            "n_routed_experts", "num_experts_per_tok", "n_group", "topk_group", "chunk_size",
        ))
        parse_pattern(self.hybrid_override_pattern, self.num_hidden_layers)

        if not self.layer_norm_epsilon > 0:
            raise ConfigurationError(
                f"layer_norm_epsilon must be positive, got {self.layer_norm_epsilon!r}"
            )
        if self.num_attention_heads % self.num_key_value_heads != 0:
            raise ConfigurationError(
                f"num_attention_heads ({self.num_attention_heads}) must be divisible by "
                f"num_key_value_heads ({self.num_key_value_heads})"
            )
        if self.mamba_num_heads % self.n_groups != 0:
            raise ConfigurationError(
                f"mamba_num_heads ({self.mamba_num_heads}) must be divisible by n_groups ({self.n_groups})"
            )
        if self.num_experts_per_tok > self.n_routed_experts:
            raise ConfigurationError(
                f"num_experts_per_tok ({self.num_experts_per_tok}) exceeds "
                f"n_routed_experts ({self.n_routed_experts})"
            )
        if self.n_routed_experts % self.n_group != 0:
            raise ConfigurationError(
                f"n_routed_experts ({self.n_routed_experts}) must be divisible by n_group ({self.n_group})"
            )
        if self.topk_group > self.n_group:
            raise ConfigurationError(
                f"topk_group ({self.topk_group}) exceeds n_group ({self.n_group})"
            )
        if len(self.time_step_limit) != 2 or self.time_step_limit[0] > self.time_step_limit[1]:
            raise ConfigurationError(f"Invalid time_step_limit {self.time_step_limit!r}")
        get_activation(self.mamba_hidden_act)
        get_activation(self.mlp_hidden_act)

    def get_block_types(self) -> Tuple[BlockType, ...]:
        """Decode the pattern into one block type per layer."""
        return parse_pattern(self.hybrid_override_pattern, self.num_hidden_layers)


# Test-sized model with every block type
NEMOTRON_H_TINY = HybridConfig(
    vocab_size=100,
    hidden_size=64,
    num_hidden_layers=5,
    num_attention_heads=4,
    num_key_value_heads=2,
    mamba_num_heads=4,
    mamba_head_dim=16,
    ssm_state_size=16,
    conv_kernel=4,
    n_groups=2,
    intermediate_size=128,
    moe_intermediate_size=64,
    moe_shared_expert_intermediate_size=64,
    n_routed_experts=4,
    num_experts_per_tok=2,
    hybrid_override_pattern="M*M-E",
    layer_norm_epsilon=1e-5,
    n_group=2,
    topk_group=1,
)

# Mamba-heavy stack: one attention layer per eight, MoE in place of dense FFNs
NEMOTRON_H_SMALL = HybridConfig(
    vocab_size=32000,
    hidden_size=1024,
    num_hidden_layers=24,
    num_attention_heads=16,
    num_key_value_heads=4,
    mamba_num_heads=32,
    mamba_head_dim=64,
    ssm_state_size=128,
    conv_kernel=4,
    n_groups=8,
    intermediate_size=4096,
    moe_intermediate_size=1024,
    moe_shared_expert_intermediate_size=2048,
    n_routed_experts=32,
    num_experts_per_tok=4,
    hybrid_override_pattern="MEMEM*ME" * 3,
    layer_norm_epsilon=1e-5,
    n_group=4,
    topk_group=2,
    routed_scaling_factor=2.5,
)


# -----------------------------------------------------------------------------
# Block Builders
# -----------------------------------------------------------------------------

@register_block(BlockType.MAMBA)
def _build_mamba(config: HybridConfig, rngs: nnx.Rngs) -> Mamba2Mixer:
    return Mamba2Mixer(
        hidden_size=config.hidden_size,
        num_heads=config.mamba_num_heads,
        head_dim=config.mamba_head_dim,
        state_size=config.ssm_state_size,
        n_groups=config.n_groups,
        conv_kernel=config.conv_kernel,
        use_conv_bias=config.use_conv_bias,
        use_bias=config.use_bias,
        activation=config.mamba_hidden_act,
        chunk_size=config.chunk_size,
        time_step_limit=config.time_step_limit,
        norm_eps=config.layer_norm_epsilon,
        rngs=rngs,
    )


@register_block(BlockType.ATTENTION)
def _build_attention(config: HybridConfig, rngs: nnx.Rngs) -> CausalSelfAttention:
    return CausalSelfAttention(
        hidden_size=config.hidden_size,
        n_heads=config.num_attention_heads,
        n_kv_heads=config.num_key_value_heads,
        head_dim=config.head_dim,
        bias=config.attention_bias,
        rngs=rngs,
    )


@register_block(BlockType.MLP)
def _build_mlp(config: HybridConfig, rngs: nnx.Rngs) -> MLP:
    return MLP(
        config.hidden_size,
        config.intermediate_size,
        activation=config.mlp_hidden_act,
        use_gating=False,
        bias=config.mlp_bias,
        rngs=rngs,
    )


@register_block(BlockType.MOE)
def _build_moe(config: HybridConfig, rngs: nnx.Rngs) -> MoEBlock:
    return MoEBlock(
        config.hidden_size,
        config.moe_intermediate_size,
        config.moe_shared_expert_intermediate_size,
        config.n_routed_experts,
        config.num_experts_per_tok,
        n_group=config.n_group,
        topk_group=config.topk_group,
        norm_topk_prob=config.norm_topk_prob,
        routed_scaling_factor=config.routed_scaling_factor,
        activation=config.mlp_hidden_act,
        bias=config.mlp_bias,
        rngs=rngs,
    )


# -----------------------------------------------------------------------------
# Layer
# -----------------------------------------------------------------------------

class HybridLayer(nnx.Module):
    """Pre-norm residual layer: x + mixer(norm(x)).

    The mixer is built once from ``block_type``. Stateful mixers (Mamba2,
    attention) receive the layer's cache slot; stateless ones (MLP, MoE)
    must be given an empty slot.

    Args:
        block_type: Block kind of this layer.
        config: Model configuration.
        layer_idx: Position of the layer, used in error messages.
        rngs: Random number generators.
    """

    def __init__(
        self,
        block_type: BlockType,
        config: HybridConfig,
        *,
        layer_idx: int = 0,
        rngs: nnx.Rngs,
    ):
        self.block_type = block_type
        self.layer_idx = layer_idx
        self.stateful = block_type.is_stateful
        self.norm = RMSNorm(config.hidden_size, eps=config.layer_norm_epsilon, rngs=rngs)
        self.mixer = get_block_builder(block_type)(config, rngs)

    def __call__(self, x: Array, cache: CacheSlot = None) -> Array:
        """Forward pass.

        Args:
            x: Input tensor [batch, seq, hidden_size]
            cache: This layer's cache slot; mutated in place when stateful.

        Returns:
            Output tensor [batch, seq, hidden_size].

        Raises:
            CacheShapeError: If the slot's kind does not match this layer.
        """
        if cache is not None and getattr(cache, "block_type", None) is not self.block_type:
            raise CacheShapeError(
                f"Layer {self.layer_idx} ({self.block_type.name}) got a "
                f"{type(cache).__name__} cache slot"
            )

        hidden = self.norm(x)
        if self.stateful:
            hidden = self.mixer(hidden, cache)
        else:
            hidden = self.mixer(hidden)
        return x + hidden

    def init_cache(self, parameters: CacheParameters) -> CacheSlot:
        """Fresh cache slot for this layer; None for stateless layers."""
        if not self.stateful:
            return None
        return self.mixer.init_cache(parameters.batch_size, parameters.dtype)


# -----------------------------------------------------------------------------
# Language Model
# -----------------------------------------------------------------------------

class HybridLM(nnx.Module):
    """Hybrid language model.

    Architecture:
        tokens -> Embedding -> [HybridLayer] * L -> RMSNorm -> LM Head -> logits

    Args:
        config: Model configuration.
        rngs: Random number generators.
    """

    def __init__(self, config: HybridConfig, rngs: nnx.Rngs):
        self.config = config
        self.layer_types = config.get_block_types()

        self.embed = Embedding(config.vocab_size, config.hidden_size, rngs=rngs)
        self.layers = [
            HybridLayer(block_type, config, layer_idx=i, rngs=rngs)
            for i, block_type in enumerate(self.layer_types)
        ]
        self.norm = RMSNorm(config.hidden_size, eps=config.layer_norm_epsilon, rngs=rngs)

        if config.tie_word_embeddings:
            self.lm_head = None  # Will use embed.unembed()
        else:
            self.lm_head = nnx.Linear(
                config.hidden_size, config.vocab_size, use_bias=False, rngs=rngs
            )

        # 0 for Mamba layers, the KV head count for every other layer type
        self._kv_heads = tuple(
            0 if block_type is BlockType.MAMBA else config.num_key_value_heads
            for block_type in self.layer_types
        )

        counts = Counter(block_type.name for block_type in self.layer_types)
        logger.debug(
            "Built HybridLM: pattern=%s layers=%d %s",
            config.hybrid_override_pattern, len(self.layers), dict(counts),
        )

    @property
    def kv_heads(self) -> Tuple[int, ...]:
        """Per-layer KV head count used for cache planning."""
        return self._kv_heads

    @property
    def vocabulary_size(self) -> int:
        return self.config.vocab_size

    def __call__(
        self,
        input_ids: Array,
        cache: Optional[Sequence[CacheSlot]] = None,
    ) -> Array:
        """Forward pass.

        Args:
            input_ids: Token IDs [batch, seq_len].
            cache: Optional per-layer cache slots from ``new_cache``. Stateful
                slots are updated in place. None runs every layer statelessly.

        Returns:
            Logits [batch, seq_len, vocab_size].

        Raises:
            TokenIndexError: If a token id falls outside [0, vocab_size).
            CacheShapeError: If the cache does not fit this model.
        """
        input_ids = jnp.asarray(input_ids)
        if input_ids.ndim != 2:
            raise ValueError(f"input_ids must be [batch, seq_len], got shape {input_ids.shape}")
        if cache is not None and len(cache) != len(self.layers):
            raise CacheShapeError(
                f"Cache has {len(cache)} slots but the model has {len(self.layers)} layers"
            )

        self.embed.check_ids(input_ids)
        hidden = self.embed(input_ids)

        for i, layer in enumerate(self.layers):
            hidden = layer(hidden, cache[i] if cache is not None else None)

        hidden = self.norm(hidden)

        if self.lm_head is not None:
            return self.lm_head(hidden)
        return self.embed.unembed(hidden)

    def new_cache(self, parameters: Optional[CacheParameters] = None) -> List[CacheSlot]:
        """Fresh generation cache: one slot per layer.

        Mamba layers get a ``MambaCache`` whose zero state is allocated lazily
        on first use (eagerly when ``parameters.batch_size`` is set), attention
        layers an empty ``KVCache``, MLP and MoE layers ``None``.
        """
        if parameters is None:
            parameters = CacheParameters()
        cache = [layer.init_cache(parameters) for layer in self.layers]
        logger.debug(
            "New cache: %d slots, %d stateful",
            len(cache), sum(slot is not None for slot in cache),
        )
        return cache

    def count_params(self) -> int:
        """Count total number of parameters."""
        params = nnx.state(self, nnx.Param)
        return sum(leaf.size for leaf in jax.tree_util.tree_leaves(params))


# -----------------------------------------------------------------------------
# Factory Function
# -----------------------------------------------------------------------------

PRESETS = {
    "nemotron-h-tiny": NEMOTRON_H_TINY,
    "nemotron-h-small": NEMOTRON_H_SMALL,
}


def create_model(
    model_type: Union[str, HybridConfig],
    *,
    rngs: Optional[nnx.Rngs] = None,
    **kwargs,
) -> Union[HybridLM, Tuple[HybridConfig, type]]:
    """Create model from preset name or configuration.

    Args:
        model_type: "nemotron-h-tiny", "nemotron-h-small", "custom", or a HybridConfig.
        rngs: Optional Flax NNx random number generators. If provided,
              returns an instantiated model. Otherwise returns (config, class).
        **kwargs: Override config parameters (only for string model_type).

    Example:
        config, Model = create_model("nemotron-h-tiny", hybrid_override_pattern="M*", num_hidden_layers=2)
        model = Model(config, rngs=nnx.Rngs(0))
    """
    if isinstance(model_type, HybridConfig):
        config = model_type
    elif model_type in PRESETS:
        preset = PRESETS[model_type]
        config_dict = preset.to_dict()
        # head_dim was derived from the preset dims; re-derive it from the overrides
        if "head_dim" not in kwargs and preset.head_dim == preset.hidden_size // preset.num_attention_heads:
            config_dict["head_dim"] = None
        config_dict.update(kwargs)
        config = HybridConfig.from_dict(config_dict)
    elif model_type == "custom":
        config = HybridConfig(**kwargs)
    else:
        raise ConfigurationError(
            f"Unknown model type '{model_type}'. "
            f"Choose from: {list(PRESETS.keys())}, 'custom', or pass a HybridConfig"
        )

    if rngs is not None:
        return HybridLM(config, rngs=rngs)

    return config, HybridLM
