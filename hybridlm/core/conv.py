"""Causal depthwise convolution used by the Mamba2 mixer."""

from __future__ import annotations

from typing import Optional

import jax
import jax.numpy as jnp

from .errors import CacheShapeError

Array = jax.Array


def depthwise_conv1d_causal(
    inputs: Array,
    weight: Array,
    bias: Optional[Array],
    *,
    history: Optional[Array] = None,
) -> tuple[Array, Array]:
    """Depthwise causal conv1d seeded with the previous ``kernel - 1`` inputs.

    Args:
        inputs: Tensor shaped [batch, seq, channels].
        weight: Depthwise weights shaped [kernel, channels].
        bias: Optional bias shaped [channels].
        history: Previous conv inputs [batch, kernel - 1, channels]. Zeros when None.
    Returns:
        Tuple of (conv_output, new_history). ``conv_output`` matches ``inputs``;
        ``new_history`` holds the trailing ``kernel - 1`` inputs, so its shape is
        the same on every call.
    """

    batch_size, seq_len, channels = inputs.shape
    kernel_size = weight.shape[0]
    if kernel_size < 1:
        raise ValueError("kernel_size must be >= 1")

    history_shape = (batch_size, kernel_size - 1, channels)
    if history is None:
        history = jnp.zeros(history_shape, dtype=inputs.dtype)
    elif tuple(history.shape) != history_shape:
        raise CacheShapeError(
            f"conv history must be (batch, kernel-1, channels)={history_shape}; "
            f"got {tuple(history.shape)}"
        )

    padded = jnp.concatenate([history.astype(inputs.dtype), inputs], axis=1)
    if kernel_size == 1:
        conv_output = inputs * weight[0]
    else:
        conv_output = jax.lax.conv_general_dilated(
            padded,
            weight[:, None, :],
            window_strides=(1,),
            padding="VALID",
            dimension_numbers=("NWC", "WIO", "NWC"),
            feature_group_count=channels,
        )
    if bias is not None:
        conv_output = conv_output + bias
    new_history = padded[:, padded.shape[1] - (kernel_size - 1):, :]
    return conv_output, new_history


__all__ = ["depthwise_conv1d_causal"]
