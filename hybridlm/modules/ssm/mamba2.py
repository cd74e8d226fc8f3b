"""Mamba2 mixer with State Space Duality (SSD).

Implements the Mamba2 token mixer (Dao & Gu, 2024) used by the ``M`` layers:
- Multi-head SSM structure (parallel heads like attention)
- Chunk-parallel SSD scan for prefill, single recurrence step for decode
- Grouped B/C states (n_groups)
- Gated, group-wise RMSNorm after the SSM

The mixer carries no pre-norm or residual; ``HybridLayer`` wraps it.
This is a pure JAX reference implementation.
"""

from __future__ import annotations

import math
from typing import Optional, Tuple

import jax
import jax.numpy as jnp
import flax.nnx as nnx

from hybridlm.core.cache import MambaCache
from hybridlm.core.conv import depthwise_conv1d_causal
from hybridlm.core.errors import ConfigurationError
from hybridlm.core.mode import KernelMode, select_mode
from hybridlm.modules.common import get_activation

Array = jax.Array


# -----------------------------------------------------------------------------
# Gated RMSNorm
# -----------------------------------------------------------------------------

class RMSNormGated(nnx.Module):
    """Group-wise RMSNorm with SiLU gating.

    The normalized dimension is split into ``n_groups`` groups of
    ``dim // n_groups`` channels, each normalized with its own statistics.

    Args:
        dim: Hidden dimension to normalize.
        n_groups: Number of normalization groups; must divide ``dim``.
        eps: Small constant for numerical stability.
        norm_before_gate: If True, normalize then gate. If False, gate then normalize.
        rngs: Random number generators.
    """

    def __init__(
        self,
        dim: int,
        *,
        n_groups: int = 1,
        eps: float = 1e-5,
        norm_before_gate: bool = False,
        rngs: nnx.Rngs,
    ):
        if dim % n_groups != 0:
            raise ConfigurationError(f"dim ({dim}) must be divisible by n_groups ({n_groups})")
        self.eps = eps
        self.n_groups = n_groups
        self.norm_before_gate = norm_before_gate
        self.weight = nnx.Param(jnp.ones((dim,)))

    def _norm(self, x: Array) -> Array:
        grouped = x.reshape(x.shape[:-1] + (self.n_groups, x.shape[-1] // self.n_groups))
        rms = jnp.sqrt(jnp.mean(grouped ** 2, axis=-1, keepdims=True) + self.eps)
        return (grouped / rms).reshape(x.shape) * self.weight.value

    def __call__(self, x: Array, gate: Array) -> Array:
        """Apply gated RMS normalization.

        Args:
            x: Input tensor of shape [..., dim]
            gate: Gate tensor of shape [..., dim]

        Returns:
            Gated normalized tensor of same shape.
        """
        gate_act = jax.nn.silu(gate.astype(jnp.float32))
        x = x.astype(jnp.float32)
        if self.norm_before_gate:
            return self._norm(x) * gate_act
        return self._norm(x * gate_act)


# -----------------------------------------------------------------------------
# SSD (State Space Duality) Kernels - Pure JAX Reference
# -----------------------------------------------------------------------------

def discretize_dt(
    dt: Array,
    dt_bias: Optional[Array] = None,
    dt_limit: Tuple[float, float] = (0.0, float("inf")),
) -> Array:
    """softplus(dt + dt_bias) clamped to ``dt_limit``."""
    if dt_bias is not None:
        dt = dt + dt_bias
    dt = jax.nn.softplus(dt)
    return jnp.clip(dt, dt_limit[0], dt_limit[1])


def segment_sum(input_tensor: Array) -> Array:
    """Compute segment sum for SSD algorithm.

    result[..., i, j] = sum(input[..., j+1 : i+1]) for i >= j, -inf above
    the diagonal, so ``exp(result)`` is the causal decay between positions.

    Args:
        input_tensor: Shape [..., chunk_size]

    Returns:
        Segment sum matrix of shape [..., chunk_size, chunk_size]
    """
    chunk_size = input_tensor.shape[-1]
    expanded = jnp.broadcast_to(input_tensor[..., None], input_tensor.shape + (chunk_size,))

    mask_below = jnp.tril(jnp.ones((chunk_size, chunk_size), dtype=bool), k=-1)
    cumsum = jnp.cumsum(jnp.where(mask_below, expanded, 0.0), axis=-2)

    mask_lower = jnp.tril(jnp.ones((chunk_size, chunk_size), dtype=bool), k=0)
    return jnp.where(mask_lower, cumsum, -jnp.inf)


def ssd_chunk_scan(
    hidden_states: Array,   # [batch, seq, num_heads, head_dim]
    dt: Array,              # [batch, seq, num_heads]
    A: Array,               # [num_heads]
    B: Array,               # [batch, seq, n_groups, state_size]
    C: Array,               # [batch, seq, n_groups, state_size]
    D: Array,               # [num_heads]
    *,
    chunk_size: int = 256,
    ssm_state: Optional[Array] = None,  # [batch, num_heads, head_dim, state_size]
    dt_bias: Optional[Array] = None,    # [num_heads]
    dt_limit: Tuple[float, float] = (0.0, float("inf")),
) -> Tuple[Array, Array]:
    """SSD chunk-based scan.

    Uses the quadratic form within chunks and a linear recurrence between
    chunks, seeded with ``ssm_state``.

    Returns:
        Tuple of (output [batch, seq, num_heads, head_dim],
                  final_state [batch, num_heads, head_dim, state_size])
    """
    batch_size, seq_len, num_heads, head_dim = hidden_states.shape
    n_groups, state_size = B.shape[-2], B.shape[-1]
    dtype = hidden_states.dtype

    dt = discretize_dt(dt, dt_bias, dt_limit)

    # [batch, seq, n_groups, state_size] -> [batch, seq, num_heads, state_size]
    heads_per_group = num_heads // n_groups
    B = jnp.repeat(B, heads_per_group, axis=2)
    C = jnp.repeat(C, heads_per_group, axis=2)

    if ssm_state is None:
        ssm_state = jnp.zeros((batch_size, num_heads, head_dim, state_size), dtype=dtype)

    if seq_len == 0:
        return jnp.zeros((batch_size, 0, num_heads, head_dim), dtype=dtype), ssm_state

    chunk_size = max(1, min(chunk_size, seq_len))
    pad_size = (chunk_size - seq_len % chunk_size) % chunk_size

    def pad_along_seq(x):
        if pad_size == 0:
            return x
        pad_width = [(0, 0)] * x.ndim
        pad_width[1] = (0, pad_size)
        return jnp.pad(x, pad_width)

    D_residual = pad_along_seq(hidden_states * D[None, None, :, None])
    hidden_discrete = pad_along_seq(hidden_states * dt[..., None])
    A_dt = pad_along_seq(A[None, None, :] * dt)  # [batch, seq, num_heads]
    B = pad_along_seq(B)
    C = pad_along_seq(C)

    padded_len = seq_len + pad_size
    num_chunks = padded_len // chunk_size

    # b=batch, n=num_chunks, l/k/c=chunk positions, h=heads, d=head_dim, s=state
    hidden_chunks = hidden_discrete.reshape(batch_size, num_chunks, chunk_size, num_heads, head_dim)
    A_dt_chunks = A_dt.reshape(batch_size, num_chunks, chunk_size, num_heads)
    B_chunks = B.reshape(batch_size, num_chunks, chunk_size, num_heads, state_size)
    C_chunks = C.reshape(batch_size, num_chunks, chunk_size, num_heads, state_size)
    D_res_chunks = D_residual.reshape(batch_size, num_chunks, chunk_size, num_heads, head_dim)

    A_dt_perm = A_dt_chunks.transpose(0, 1, 3, 2)  # [batch, nc, heads, cs]
    A_cumsum = jnp.cumsum(A_dt_perm, axis=-1)

    # 1. Intra-chunk (diagonal blocks)
    L = jnp.exp(segment_sum(A_dt_perm))  # [batch, nc, heads, cs, cs]
    G = jnp.einsum("bnlhs,bnkhs->bnhlk", C_chunks, B_chunks)
    hidden_perm = hidden_chunks.transpose(0, 1, 3, 2, 4)  # [batch, nc, heads, cs, dim]
    Y_diag = jnp.einsum("bnhlk,bnhkd->bnhld", G * L, hidden_perm)

    # 2. State at the end of each chunk
    decay_states = jnp.exp(A_cumsum[..., -1:] - A_cumsum)  # [batch, nc, heads, cs]
    B_decay = B_chunks * decay_states.transpose(0, 1, 3, 2)[..., None]
    states = jnp.einsum("bnchs,bnchd->bnhds", B_decay, hidden_chunks)

    # 3. Chunk-to-chunk recurrence, seeded with the incoming state
    states_with_init = jnp.concatenate([ssm_state[:, None].astype(states.dtype), states], axis=1)
    A_chunk_end = jnp.pad(A_cumsum[..., -1], ((0, 0), (1, 0), (0, 0)))  # [batch, nc+1, heads]
    decay_chunk = jnp.exp(segment_sum(A_chunk_end.transpose(0, 2, 1)))  # [batch, heads, nc+1, nc+1]
    decay_chunk = decay_chunk.transpose(0, 2, 3, 1)  # [batch, nc+1, nc+1, heads]
    new_states = jnp.einsum("bnmh,bmhds->bnhds", decay_chunk, states_with_init)

    chunk_states = new_states[:, :-1]
    final_ssm_state = new_states[:, -1]

    # 4. State -> output (off-diagonal blocks)
    Y_off = jnp.einsum("bnchs,bnhds->bnchd", C_chunks, chunk_states)
    Y_off = Y_off * jnp.exp(A_cumsum).transpose(0, 1, 3, 2)[..., None]

    Y = Y_diag.transpose(0, 1, 3, 2, 4) + Y_off + D_res_chunks
    output = Y.reshape(batch_size, padded_len, num_heads, head_dim)[:, :seq_len]

    return output, final_ssm_state


def ssd_recurrent_step(
    hidden_state: Array,     # [batch, num_heads, head_dim]
    dt: Array,               # [batch, num_heads]
    A: Array,                # [num_heads]
    B: Array,                # [batch, n_groups, state_size]
    C: Array,                # [batch, n_groups, state_size]
    D: Array,                # [num_heads]
    ssm_state: Array,        # [batch, num_heads, head_dim, state_size]
    *,
    dt_bias: Optional[Array] = None,
    dt_limit: Tuple[float, float] = (0.0, float("inf")),
) -> Tuple[Array, Array]:
    """Single-step recurrent update for decoding.

        state' = exp(A * dt) * state + dt * B ⊗ x
        y      = state' · C + D * x

    Returns:
        Tuple of (output [batch, num_heads, head_dim], new_state)
    """
    num_heads = hidden_state.shape[1]
    n_groups = B.shape[1]

    dt = discretize_dt(dt, dt_bias, dt_limit)

    heads_per_group = num_heads // n_groups
    B = jnp.repeat(B, heads_per_group, axis=1)  # [batch, heads, state]
    C = jnp.repeat(C, heads_per_group, axis=1)

    dA = jnp.exp(A[None, :] * dt)[..., None, None]  # [batch, heads, 1, 1]
    dBx = (dt[..., None] * hidden_state)[..., None] * B[:, :, None, :]  # [batch, heads, dim, state]
    new_ssm_state = dA * ssm_state + dBx

    y = jnp.einsum("bhds,bhs->bhd", new_ssm_state, C)
    y = y + D[None, :, None] * hidden_state

    return y, new_ssm_state


# -----------------------------------------------------------------------------
# Mamba2 Mixer
# -----------------------------------------------------------------------------

class Mamba2Mixer(nnx.Module):
    """Mamba2 token mixer.

    Architecture:
        x -> InProj -> [z, xBC, dt]
        xBC -> causal Conv1D -> SiLU -> split(x, B, C)
        SSM(x, dt, A, B, C, D) -> gated_norm(*, z) -> OutProj

    Args:
        hidden_size: Input/output dimension.
        num_heads: Number of SSM heads.
        head_dim: Dimension per head (intermediate = num_heads * head_dim).
        state_size: SSM state dimension.
        n_groups: Number of groups for B/C; must divide ``num_heads``.
        conv_kernel: Causal convolution kernel size.
        use_conv_bias: Whether to use bias in convolution.
        use_bias: Whether to use bias in the in/out projections.
        activation: Activation applied after the convolution.
        chunk_size: Chunk size for the SSD scan.
        time_step_limit: Range to clamp dt.
        norm_eps: Epsilon of the gated norm.
        rngs: Random number generators.
    """

    def __init__(
        self,
        hidden_size: int,
        num_heads: int,
        *,
        head_dim: int = 64,
        state_size: int = 128,
        n_groups: int = 1,
        conv_kernel: int = 4,
        use_conv_bias: bool = True,
        use_bias: bool = False,
        activation: str = "silu",
        chunk_size: int = 256,
        time_step_limit: Tuple[float, float] = (0.0, float("inf")),
        norm_eps: float = 1e-5,
        rngs: nnx.Rngs,
    ):
        if num_heads % n_groups != 0:
            raise ConfigurationError(
                f"num_heads ({num_heads}) must be divisible by n_groups ({n_groups})"
            )
        self.hidden_size = hidden_size
        self.num_heads = num_heads
        self.head_dim = head_dim
        self.state_size = state_size
        self.intermediate_size = num_heads * head_dim
        self.n_groups = n_groups
        self.conv_kernel = conv_kernel
        self.chunk_size = chunk_size
        self.time_step_limit = tuple(time_step_limit)
        self.activation = get_activation(activation)

        # x, B and C all go through the convolution
        self.conv_dim = self.intermediate_size + 2 * n_groups * state_size

        projection_size = self.intermediate_size + self.conv_dim + num_heads
        self.in_proj = nnx.Linear(hidden_size, projection_size, use_bias=use_bias, rngs=rngs)

        conv_init_scale = 1.0 / math.sqrt(conv_kernel * self.conv_dim)
        self.conv_weight = nnx.Param(
            jax.random.normal(rngs.params(), (conv_kernel, self.conv_dim)) * conv_init_scale
        )
        self.conv_bias = nnx.Param(jnp.zeros((self.conv_dim,))) if use_conv_bias else None

        # A is stored as log and made negative during computation
        self.A_log = nnx.Param(jnp.log(jnp.arange(1, num_heads + 1, dtype=jnp.float32)))
        self.dt_bias = nnx.Param(jnp.ones((num_heads,)))
        self.D = nnx.Param(jnp.ones((num_heads,)))

        self.norm = RMSNormGated(
            self.intermediate_size,
            n_groups=n_groups,
            eps=norm_eps,
            norm_before_gate=False,
            rngs=rngs,
        )
        self.out_proj = nnx.Linear(self.intermediate_size, hidden_size, use_bias=use_bias, rngs=rngs)

    def state_shapes(self, batch_size: int) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
        """Shapes of (conv_state, ssm_state) for ``batch_size``."""
        return (
            (batch_size, max(0, self.conv_kernel - 1), self.conv_dim),
            (batch_size, self.num_heads, self.head_dim, self.state_size),
        )

    def __call__(
        self,
        x: Array,
        cache: Optional[MambaCache] = None,
        *,
        mode: Optional[KernelMode] = None,
    ) -> Array:
        """Forward pass.

        Args:
            x: Input tensor [batch, seq, hidden_size]
            cache: Optional Mamba cache; read as the incoming state and
                overwritten with the state after the last token.
            mode: Force chunk or recurrent scan. Chosen from seq_len when None.

        Returns:
            Output tensor [batch, seq, hidden_size].
        """
        batch_size, seq_len, _ = x.shape
        dtype = x.dtype

        if mode is None:
            mode = select_mode(seq_len)

        conv_history, ssm_state = None, None
        if cache is not None:
            conv_shape, ssm_shape = self.state_shapes(batch_size)
            conv_history, ssm_state = cache.ensure(conv_shape, ssm_shape, dtype)

        projected = self.in_proj(x)
        gate = projected[..., :self.intermediate_size]
        xBC = projected[..., self.intermediate_size:self.intermediate_size + self.conv_dim]
        dt = projected[..., -self.num_heads:]

        conv_out, new_conv_history = depthwise_conv1d_causal(
            xBC,
            self.conv_weight.value,
            self.conv_bias.value if self.conv_bias is not None else None,
            history=conv_history,
        )
        conv_out = self.activation(conv_out)

        groups_state_size = self.n_groups * self.state_size
        hidden_states = conv_out[..., :self.intermediate_size]
        B = conv_out[..., self.intermediate_size:self.intermediate_size + groups_state_size]
        C = conv_out[..., self.intermediate_size + groups_state_size:]

        hidden_states = hidden_states.reshape(batch_size, seq_len, self.num_heads, self.head_dim)
        B = B.reshape(batch_size, seq_len, self.n_groups, self.state_size)
        C = C.reshape(batch_size, seq_len, self.n_groups, self.state_size)

        A = -jnp.exp(self.A_log.value)

        if mode == KernelMode.CHUNK:
            ssm_out, new_ssm_state = ssd_chunk_scan(
                hidden_states, dt, A, B, C, self.D.value,
                chunk_size=self.chunk_size,
                ssm_state=ssm_state,
                dt_bias=self.dt_bias.value,
                dt_limit=self.time_step_limit,
            )
        else:
            if ssm_state is None:
                ssm_state = jnp.zeros(self.state_shapes(batch_size)[1], dtype=dtype)
            outputs = []
            current_state = ssm_state
            for t in range(seq_len):
                out_t, current_state = ssd_recurrent_step(
                    hidden_states[:, t], dt[:, t], A, B[:, t], C[:, t], self.D.value,
                    current_state,
                    dt_bias=self.dt_bias.value,
                    dt_limit=self.time_step_limit,
                )
                outputs.append(out_t)
            ssm_out = jnp.stack(outputs, axis=1)  # [batch, seq, heads, dim]
            new_ssm_state = current_state

        if cache is not None:
            cache.update(new_conv_history, new_ssm_state.astype(cache.ssm_state.dtype))

        ssm_out = ssm_out.reshape(batch_size, seq_len, self.intermediate_size)
        normed_out = self.norm(ssm_out, gate)
        return self.out_proj(normed_out.astype(dtype))

    def init_cache(
        self,
        batch_size: Optional[int] = None,
        dtype: jnp.dtype = jnp.float32,
    ) -> MambaCache:
        """Fresh zero state; allocated on first use when ``batch_size`` is None."""
        if batch_size is None:
            return MambaCache()
        return MambaCache.zeros(
            batch_size,
            self.conv_kernel,
            self.conv_dim,
            self.num_heads,
            self.head_dim,
            self.state_size,
            dtype,
        )
