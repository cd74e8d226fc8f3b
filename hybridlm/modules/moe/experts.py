"""Routed experts and the MoE block."""

from __future__ import annotations

import math
from typing import Optional

import jax
import jax.numpy as jnp
import flax.nnx as nnx

from hybridlm.modules.common import MLP, get_activation
from hybridlm.modules.moe.router import TopKRouter

Array = jax.Array


class SwitchMLP(nnx.Module):
    """A bank of independent two-matrix FFN experts with stacked weights.

    Args:
        hidden_size: Input/output dimension.
        intermediate_size: Per-expert hidden dimension.
        n_experts: Number of experts.
        activation: Activation function name.
        bias: Whether experts carry biases.
        rngs: Random number generators.
    """

    def __init__(
        self,
        hidden_size: int,
        intermediate_size: int,
        n_experts: int,
        *,
        activation: str = "relu2",
        bias: bool = False,
        rngs: nnx.Rngs,
    ):
        self.activation = get_activation(activation)
        self.up_weight = nnx.Param(
            jax.random.normal(rngs.params(), (n_experts, hidden_size, intermediate_size))
            / math.sqrt(hidden_size)
        )
        self.down_weight = nnx.Param(
            jax.random.normal(rngs.params(), (n_experts, intermediate_size, hidden_size))
            / math.sqrt(intermediate_size)
        )
        if bias:
            self.up_bias = nnx.Param(jnp.zeros((n_experts, intermediate_size)))
            self.down_bias = nnx.Param(jnp.zeros((n_experts, hidden_size)))
        else:
            self.up_bias = None
            self.down_bias = None

    def __call__(self, x: Array, indices: Array) -> Array:
        """Run every token through its selected experts.

        Args:
            x: Tokens [n_tokens, hidden_size]
            indices: Selected experts [n_tokens, top_k]

        Returns:
            Per-expert outputs [n_tokens, top_k, hidden_size]
        """
        up = self.up_weight.value[indices]  # [n_tokens, top_k, hidden, intermediate]
        hidden = jnp.einsum("th,tkhi->tki", x, up)
        if self.up_bias is not None:
            hidden = hidden + self.up_bias.value[indices]
        hidden = self.activation(hidden)

        down = self.down_weight.value[indices]  # [n_tokens, top_k, intermediate, hidden]
        out = jnp.einsum("tki,tkih->tkh", hidden, down)
        if self.down_bias is not None:
            out = out + self.down_bias.value[indices]
        return out


class MoEBlock(nnx.Module):
    """Sparse mixture of experts plus an always-on shared expert.

    y = sum_k w_k * expert_{i_k}(x) + shared_expert(x)

    Args:
        hidden_size: Model dimension.
        intermediate_size: Routed expert hidden dimension.
        shared_intermediate_size: Shared expert hidden dimension.
        n_experts: Number of routed experts.
        top_k: Experts selected per token.
        n_group: Expert groups for group-limited routing.
        topk_group: Groups kept per token.
        norm_topk_prob: Renormalize selected weights.
        routed_scaling_factor: Multiplier on routed weights.
        activation: Expert activation.
        bias: Whether expert projections use bias.
        rngs: Random number generators.
    """

    def __init__(
        self,
        hidden_size: int,
        intermediate_size: int,
        shared_intermediate_size: int,
        n_experts: int,
        top_k: int,
        *,
        n_group: int = 1,
        topk_group: int = 1,
        norm_topk_prob: bool = True,
        routed_scaling_factor: float = 1.0,
        activation: str = "relu2",
        bias: bool = False,
        rngs: nnx.Rngs,
    ):
        self.router = TopKRouter(
            hidden_size,
            n_experts,
            top_k,
            n_group=n_group,
            topk_group=topk_group,
            norm_topk_prob=norm_topk_prob,
            routed_scaling_factor=routed_scaling_factor,
            rngs=rngs,
        )
        self.experts = SwitchMLP(
            hidden_size, intermediate_size, n_experts,
            activation=activation, bias=bias, rngs=rngs,
        )
        self.shared_experts = MLP(
            hidden_size, shared_intermediate_size,
            activation=activation, use_gating=False, bias=bias, rngs=rngs,
        )

    def __call__(self, x: Array, *, router_output: Optional[tuple] = None) -> Array:
        """Forward pass.

        Args:
            x: Input tensor [batch, seq, hidden_size]
            router_output: Precomputed (indices, weights) to bypass the router.

        Returns:
            Output tensor [batch, seq, hidden_size]
        """
        batch_size, seq_len, hidden_size = x.shape
        tokens = x.reshape(batch_size * seq_len, hidden_size)

        if router_output is None:
            indices, weights = self.router(tokens)
        else:
            indices, weights = router_output
            indices = indices.reshape(batch_size * seq_len, indices.shape[-1])
            weights = weights.reshape(batch_size * seq_len, weights.shape[-1])

        expert_out = self.experts(tokens, indices)  # [tokens, top_k, hidden]
        routed = jnp.sum(expert_out * weights[..., None].astype(expert_out.dtype), axis=1)
        out = routed + self.shared_experts(tokens)
        return out.reshape(batch_size, seq_len, hidden_size).astype(x.dtype)
