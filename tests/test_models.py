"""End-to-end tests for the pattern-driven hybrid model."""

import pytest
import jax
import jax.numpy as jnp
import numpy as np
import flax.nnx as nnx

from hybridlm import (
    BlockType,
    CacheParameters,
    CacheShapeError,
    ConfigurationError,
    HybridConfig,
    HybridLM,
    KVCache,
    MambaCache,
    Embedding,
    NEMOTRON_H_TINY,
    TokenIndexError,
    create_model,
)
from hybridlm.registry import BLOCK_REGISTRY, register_block
from tests.helpers.parity import assert_prefill_decode_parity


def _tokens(batch: int, seq_len: int, seed: int = 0, vocab: int = 100):
    return jax.random.randint(jax.random.PRNGKey(seed), (batch, seq_len), 0, vocab, dtype=jnp.int32)


def _state_arrays(slot):
    if isinstance(slot, MambaCache):
        return [slot.conv_state, slot.ssm_state]
    if isinstance(slot, KVCache):
        return [slot.keys, slot.values]
    return []


class TestForward:
    """Shape tests across block compositions."""
    
    @pytest.mark.parametrize("pattern", ["M*M-E", "MMM", "***", "M-*", "ME*", "M-E*M-E*"])
    def test_logits_shape(self, make_config, pattern):
        model = HybridLM(make_config(pattern), rngs=nnx.Rngs(0))
        logits = model(jnp.array([[1, 2, 3, 4, 5]]))
        
        assert logits.shape == (1, 5, 100)
        assert bool(jnp.all(jnp.isfinite(logits)))
    
    def test_batched(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        logits = model(jnp.array([[1, 2, 3], [4, 5, 6]]))
        
        assert logits.shape == (2, 3, 100)
    
    def test_batch_rows_independent(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        ids = _tokens(2, 6)
        
        both = model(ids)
        first = model(ids[:1])
        np.testing.assert_allclose(both[:1], first, rtol=1e-4, atol=1e-4)
    
    def test_tied_embeddings(self, make_config):
        model = HybridLM(make_config(tie_word_embeddings=True), rngs=nnx.Rngs(0))
        
        assert model.lm_head is None
        assert model(jnp.array([[1, 2]])).shape == (1, 2, 100)
    
    def test_rejects_flat_input(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        with pytest.raises(ValueError, match="batch, seq_len"):
            model(jnp.array([1, 2, 3]))
    
    def test_count_params(self, make_config):
        small = HybridLM(make_config("M"), rngs=nnx.Rngs(0))
        large = HybridLM(make_config("MM"), rngs=nnx.Rngs(0))
        
        assert 0 < small.count_params() < large.count_params()


class TestModelProperties:
    """Tests for kv_heads, vocabulary size and layer types."""
    
    def test_kv_heads_alternating(self, make_config):
        model = HybridLM(make_config("M*M*"), rngs=nnx.Rngs(0))
        assert model.kv_heads == (0, 2, 0, 2)
    
    def test_kv_heads_uniform_for_stateless_layers(self, make_config):
        model = HybridLM(make_config("M*-E"), rngs=nnx.Rngs(0))
        assert model.kv_heads == (0, 2, 2, 2)
    
    def test_vocabulary_size(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        assert model.vocabulary_size == 100
    
    def test_layer_types(self, make_config):
        model = HybridLM(make_config("M*-E"), rngs=nnx.Rngs(0))
        assert model.layer_types == (
            BlockType.MAMBA, BlockType.ATTENTION, BlockType.MLP, BlockType.MOE,
        )


class TestCache:
    """Tests for per-layer cache creation and mutation."""
    
    @pytest.mark.parametrize("pattern", ["M*M-E", "MMM", "***", "-E-", "M-E*M-E*"])
    def test_slot_counts(self, make_config, pattern):
        model = HybridLM(make_config(pattern), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        
        assert len(cache) == len(pattern)
        assert sum(slot is not None for slot in cache) == sum(c in "M*" for c in pattern)
    
    def test_slot_kinds(self, make_config):
        model = HybridLM(make_config("M*-E"), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        
        assert isinstance(cache[0], MambaCache)
        assert isinstance(cache[1], KVCache)
        assert cache[2] is None
        assert cache[3] is None
    
    def test_lazy_then_primed(self, make_config):
        model = HybridLM(make_config("M*"), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        assert cache[0].is_empty and cache[1].is_empty
        
        model(jnp.array([[1, 2, 3]]), cache=cache)
        
        assert cache[0].conv_state.shape == (1, 3, model.layers[0].mixer.conv_dim)
        assert cache[0].ssm_state.shape == (1, 4, 16, 16)
        assert cache[1].offset == 3
    
    def test_eager_allocation(self, make_config):
        model = HybridLM(make_config("M*"), rngs=nnx.Rngs(0))
        cache = model.new_cache(CacheParameters(batch_size=2))
        
        assert not cache[0].is_empty
        assert cache[0].ssm_state.shape == (2, 4, 16, 16)
        assert bool(jnp.all(cache[0].ssm_state == 0))
        assert cache[1].is_empty
    
    def test_incremental_step(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        
        model(jnp.array([[1, 2, 3, 4]]), cache=cache)
        logits = model(jnp.array([[5]]), cache=cache)
        
        assert logits.shape == (1, 1, 100)
        assert cache[1].offset == 5
    
    def test_no_cache_is_stateless(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        ids = _tokens(1, 5)
        
        first = model(ids)
        second = model(ids)
        np.testing.assert_array_equal(first, second)
    
    @pytest.mark.parametrize("pattern", ["M*-E", "M", "*"])
    def test_empty_sequence_leaves_cache_unchanged(self, make_config, pattern):
        model = HybridLM(make_config(pattern), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        model(jnp.array([[1, 2, 3]]), cache=cache)
        before = [_state_arrays(slot) for slot in cache]

        logits = model(jnp.zeros((1, 0), dtype=jnp.int32), cache=cache)

        assert logits.shape == (1, 0, 100)
        for slot, saved in zip(cache, before):
            for old, new in zip(saved, _state_arrays(slot)):
                np.testing.assert_array_equal(old, new)

    def test_empty_sequence_then_decode(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        ids = _tokens(1, 5, seed=13)
        full = model(ids)

        cache = model.new_cache()
        first = model(ids[:, :4], cache=cache)
        model(ids[:, :0], cache=cache)
        last = model(ids[:, 4:], cache=cache)

        np.testing.assert_allclose(
            jnp.concatenate([first, last], axis=1), full, rtol=1e-4, atol=1e-4
        )

    def test_cache_changes_next_output(self, make_config):
        """A primed cache makes the same token produce different logits."""
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        model(jnp.array([[7, 8, 9]]), cache=cache)
        
        with_history = model(jnp.array([[1]]), cache=cache)
        without = model(jnp.array([[1]]))
        assert not np.allclose(with_history, without)


class TestPrefillDecodeParity:
    """Prefill then token-by-token decoding must match a single full pass."""
    
    @pytest.mark.parametrize("pattern", ["MMM", "***", "M-*", "ME*", "M*M-E", "M-E*M-E*"])
    def test_parity(self, make_config, pattern):
        model = HybridLM(make_config(pattern), rngs=nnx.Rngs(0))
        assert_prefill_decode_parity(model, _tokens(1, 10), prefill_len=6)
    
    def test_parity_batched(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(1))
        assert_prefill_decode_parity(model, _tokens(2, 8, seed=3), prefill_len=3)
    
    def test_parity_from_single_token(self, make_config):
        model = HybridLM(make_config(), rngs=nnx.Rngs(2))
        assert_prefill_decode_parity(model, _tokens(1, 6, seed=5), prefill_len=1)
    
    def test_parity_with_small_chunks(self, make_config):
        """Prefill spanning several SSD chunks."""
        model = HybridLM(make_config("M*M", chunk_size=4), rngs=nnx.Rngs(0))
        assert_prefill_decode_parity(model, _tokens(1, 14, seed=7), prefill_len=11)
    
    def test_parity_with_eager_cache(self, make_config):
        model = HybridLM(make_config("M*"), rngs=nnx.Rngs(0))
        ids = _tokens(1, 7, seed=11)
        full = model(ids)
        
        cache = model.new_cache(CacheParameters(batch_size=1))
        outputs = [model(ids[:, :4], cache=cache)]
        for t in range(4, 7):
            outputs.append(model(ids[:, t:t+1], cache=cache))
        
        np.testing.assert_allclose(jnp.concatenate(outputs, axis=1), full, rtol=1e-4, atol=1e-4)


class TestErrors:
    """Error taxonomy: configuration, cache shape and token index."""
    
    def test_pattern_length_mismatch(self, make_config):
        with pytest.raises(ConfigurationError, match="layers"):
            make_config("M*M", num_hidden_layers=4)
    
    def test_unknown_pattern_char(self, make_config):
        with pytest.raises(ConfigurationError, match="'X'"):
            make_config("MX*")
    
    def test_too_many_experts_per_token(self, make_config):
        with pytest.raises(ConfigurationError, match="num_experts_per_tok"):
            make_config(num_experts_per_tok=5)
    
    @pytest.mark.parametrize("field", ["hidden_size", "vocab_size", "ssm_state_size", "conv_kernel"])
    def test_non_positive_dims(self, make_config, field):
        with pytest.raises(ConfigurationError, match=field):
            make_config(**{field: 0})
    
    def test_head_divisibility(self, make_config):
        with pytest.raises(ConfigurationError, match="num_key_value_heads"):
            make_config(num_key_value_heads=3)
    
    def test_mamba_groups(self, make_config):
        with pytest.raises(ConfigurationError, match="n_groups"):
            make_config(n_groups=3)
    
    def test_expert_groups(self, make_config):
        with pytest.raises(ConfigurationError, match="n_group"):
            make_config(n_group=3)
    
    def test_non_positive_epsilon(self, make_config):
        with pytest.raises(ConfigurationError, match="layer_norm_epsilon"):
            make_config(layer_norm_epsilon=0.0)
    
    def test_configuration_error_is_value_error(self, make_config):
        with pytest.raises(ValueError):
            make_config("Q")
    
    @pytest.mark.parametrize("token", [100, -1])
    def test_token_out_of_range(self, make_config, token):
        model = HybridLM(make_config(), rngs=nnx.Rngs(0))
        with pytest.raises(TokenIndexError):
            model(jnp.array([[1, token]]))
    
    def test_swapped_cache_slots(self, make_config):
        model = HybridLM(make_config("M*"), rngs=nnx.Rngs(0))
        cache = model.new_cache()
        cache = [cache[1], cache[0]]
        
        with pytest.raises(CacheShapeError):
            model(jnp.array([[1, 2]]), cache=cache)
    
    def test_cache_given_to_stateless_layer(self, make_config):
        model = HybridLM(make_config("M-"), rngs=nnx.Rngs(0))
        cache = [MambaCache(), KVCache()]
        
        with pytest.raises(CacheShapeError, match="MLP"):
            model(jnp.array([[1, 2]]), cache=cache)
    
    def test_cache_length_mismatch(self, make_config):
        model = HybridLM(make_config("M*M"), rngs=nnx.Rngs(0))
        cache = model.new_cache()[:2]
        
        with pytest.raises(CacheShapeError, match="slots"):
            model(jnp.array([[1]]), cache=cache)
    
    def test_cache_from_other_model(self, make_config):
        model = HybridLM(make_config("M*"), rngs=nnx.Rngs(0))
        other = HybridLM(make_config("M*", ssm_state_size=8), rngs=nnx.Rngs(0))
        cache = other.new_cache()
        other(jnp.array([[1, 2]]), cache=cache)
        
        with pytest.raises(CacheShapeError, match="Mamba"):
            model(jnp.array([[3]]), cache=cache)
    
    def test_batch_size_mismatch(self, make_config):
        model = HybridLM(make_config("M*"), rngs=nnx.Rngs(0))
        cache = model.new_cache(CacheParameters(batch_size=2))
        
        with pytest.raises(CacheShapeError):
            model(jnp.array([[1, 2]]), cache=cache)


class TestConfigAndFactory:
    """Tests for presets, overrides and dict round trips."""
    
    def test_tiny_preset_has_every_block(self):
        assert set(NEMOTRON_H_TINY.get_block_types()) == set(BlockType)
    
    def test_create_model_preset(self):
        model = create_model("nemotron-h-tiny", rngs=nnx.Rngs(0))
        assert isinstance(model, HybridLM)
        assert model(jnp.array([[1, 2, 3]])).shape == (1, 3, 100)
    
    def test_create_model_overrides(self):
        config, cls = create_model(
            "nemotron-h-tiny", hybrid_override_pattern="M*", num_hidden_layers=2,
        )
        assert cls is HybridLM
        assert config.num_hidden_layers == 2
        assert config.hidden_size == NEMOTRON_H_TINY.hidden_size
    
    def test_create_model_custom(self, make_config):
        params = make_config("M-").to_dict()
        config, _ = create_model("custom", **params)
        assert config.hybrid_override_pattern == "M-"
    
    def test_unknown_preset(self):
        with pytest.raises(ConfigurationError, match="Unknown model type"):
            create_model("nemotron-h-huge")
    
    def test_dict_round_trip(self, make_config):
        config = make_config()
        restored = HybridConfig.from_dict(config.to_dict())
        assert restored == config
    
    def test_from_dict_rejects_unknown_fields(self, make_config):
        data = make_config().to_dict()
        data["rope_theta"] = 10000.0
        with pytest.raises(ConfigurationError, match="rope_theta"):
            HybridConfig.from_dict(data)
    
    def test_block_registry(self):
        assert set(BLOCK_REGISTRY) == set(BlockType)
        with pytest.raises(ConfigurationError, match="already registered"):
            register_block(BlockType.MAMBA)(lambda config, rngs: None)

    @pytest.mark.parametrize(
        "overrides, expected",
        [
            (dict(hidden_size=128), 32),
            (dict(num_attention_heads=2, num_key_value_heads=2), 32),
            (dict(hidden_size=128, head_dim=8), 8),
        ],
    )
    def test_preset_override_rederives_head_dim(self, overrides, expected):
        config, _ = create_model("nemotron-h-tiny", **overrides)
        assert config.head_dim == expected

    def test_preset_override_builds_matching_attention(self):
        model = create_model("nemotron-h-tiny", hidden_size=128, rngs=nnx.Rngs(0))
        attention = model.layers[1].mixer

        assert attention.head_dim == 32
        assert model(jnp.array([[1, 2, 3]])).shape == (1, 3, 100)

    def test_head_dim_default(self, make_config):
        assert make_config().head_dim == 16
        assert make_config(head_dim=8).head_dim == 8


class TestEmbedding:
    """Tests for token lookup and id validation."""

    def test_check_ids_rejects_out_of_range(self):
        embed = Embedding(10, 8, rngs=nnx.Rngs(0))
        embed.check_ids(jnp.array([[0, 9]]))

        with pytest.raises(TokenIndexError, match=r"\[0, 10\)"):
            embed.check_ids(jnp.array([[3, 10]]))

    def test_check_ids_rejects_float_ids(self):
        embed = Embedding(10, 8, rngs=nnx.Rngs(0))
        with pytest.raises(TokenIndexError, match="integers"):
            embed.check_ids(jnp.array([[1.0]]))

    def test_lookup_is_traceable(self):
        embed = Embedding(10, 8, rngs=nnx.Rngs(0))
        ids = jnp.array([[1, 2, 3]])

        lookup = nnx.jit(lambda module, token_ids: module(token_ids))
        np.testing.assert_allclose(lookup(embed, ids), embed(ids), rtol=1e-6)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
