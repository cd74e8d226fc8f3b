"""Pytest hooks for hybridlm."""

from __future__ import annotations

import sys
from pathlib import Path

import jax
import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:  # pragma: no cover - test bootstrap
    sys.path.insert(0, str(PROJECT_ROOT))

jax.config.update("jax_platform_name", "cpu")


@pytest.fixture
def make_config():
    """Factory for small test configurations; the layer count follows the pattern."""
    from hybridlm import HybridConfig

    def _make(pattern: str = "M*M-E", **overrides) -> HybridConfig:
        params = dict(
            vocab_size=100,
            hidden_size=64,
            num_hidden_layers=len(pattern),
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
            hybrid_override_pattern=pattern,
            layer_norm_epsilon=1e-5,
            n_group=2,
            topk_group=1,
        )
        params.update(overrides)
        return HybridConfig(**params)

    return _make
