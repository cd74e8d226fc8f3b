"""Top-k expert router with grouped selection.

Scores are per-expert sigmoids. A learned correction bias steers which
experts are picked but not how much they weigh. Selection is limited to the
best ``topk_group`` of ``n_group`` expert groups, where a group is ranked by
the sum of its two best corrected scores.
"""

from __future__ import annotations

import logging
from typing import Tuple

import jax
import jax.numpy as jnp
import flax.nnx as nnx

from hybridlm.core.errors import ConfigurationError

Array = jax.Array

logger = logging.getLogger(__name__)


def group_limited_scores(scores: Array, n_group: int, topk_group: int) -> Array:
    """Masks experts outside the ``topk_group`` best groups with -inf.

    Args:
        scores: Selection scores [..., n_experts].
        n_group: Number of contiguous expert groups.
        topk_group: Number of groups kept per token.
    Returns:
        Scores of the same shape with dropped groups set to -inf.
    """
    if n_group <= 1:
        return scores
    n_experts = scores.shape[-1]
    grouped = scores.reshape(scores.shape[:-1] + (n_group, n_experts // n_group))
    top_per_group, _ = jax.lax.top_k(grouped, min(2, grouped.shape[-1]))
    group_scores = jnp.sum(top_per_group, axis=-1)  # [..., n_group]
    _, kept_groups = jax.lax.top_k(group_scores, topk_group)
    group_mask = jnp.any(jax.nn.one_hot(kept_groups, n_group, dtype=jnp.bool_), axis=-2)
    masked = jnp.where(group_mask[..., None], grouped, -jnp.inf)
    return masked.reshape(scores.shape)


class TopKRouter(nnx.Module):
    """Sigmoid router that picks ``top_k`` experts per token.

    Args:
        hidden_size: Token dimension.
        n_experts: Number of routed experts.
        top_k: Experts selected per token.
        n_group: Number of expert groups for group-limited selection.
        topk_group: Groups kept per token.
        norm_topk_prob: Renormalize the selected weights to sum to 1.
        routed_scaling_factor: Multiplier applied to the final weights.
        rngs: Random number generators.
    """

    def __init__(
        self,
        hidden_size: int,
        n_experts: int,
        top_k: int,
        *,
        n_group: int = 1,
        topk_group: int = 1,
        norm_topk_prob: bool = True,
        routed_scaling_factor: float = 1.0,
        rngs: nnx.Rngs,
    ):
        if top_k > n_experts:
            raise ConfigurationError(f"top_k ({top_k}) exceeds n_experts ({n_experts})")
        if n_experts % n_group != 0:
            raise ConfigurationError(
                f"n_experts ({n_experts}) must be divisible by n_group ({n_group})"
            )
        if topk_group > n_group:
            raise ConfigurationError(f"topk_group ({topk_group}) exceeds n_group ({n_group})")
        if n_group > 1 and topk_group * (n_experts // n_group) < top_k:
            raise ConfigurationError(
                f"{topk_group} kept group(s) of {n_experts // n_group} experts "
                f"cannot supply top_k={top_k} experts"
            )

        self.n_experts = n_experts
        self.top_k = top_k
        self.n_group = n_group
        self.topk_group = topk_group
        self.norm_topk_prob = norm_topk_prob
        self.routed_scaling_factor = routed_scaling_factor

        self.gate = nnx.Linear(hidden_size, n_experts, use_bias=False, rngs=rngs)
        self.e_score_correction_bias = nnx.Param(jnp.zeros((n_experts,)))

        logger.debug(
            "TopKRouter: %d experts, top_k=%d, %d group(s) keep %d",
            n_experts, top_k, n_group, topk_group,
        )

    def __call__(self, x: Array) -> Tuple[Array, Array]:
        """Route tokens.

        Args:
            x: Tokens [..., hidden_size]

        Returns:
            Tuple of (expert indices [..., top_k] int32, weights [..., top_k] float32).
        """
        logits = self.gate(x).astype(jnp.float32)
        scores = jax.nn.sigmoid(logits)

        selection = scores + self.e_score_correction_bias.value
        selection = group_limited_scores(selection, self.n_group, self.topk_group)
        # lax.top_k puts the lower index first on ties
        _, indices = jax.lax.top_k(selection, self.top_k)

        weights = jnp.take_along_axis(scores, indices, axis=-1)
        if self.top_k > 1 and self.norm_topk_prob:
            weights = weights / (jnp.sum(weights, axis=-1, keepdims=True) + 1e-20)
        weights = weights * self.routed_scaling_factor
        return indices, weights
