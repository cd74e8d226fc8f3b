"""State-space model blocks.

Mamba2 mixer with a chunked SSD scan for prefill and a single-step
recurrence for decoding; both read and write a ``MambaCache``.
"""

from .mamba2 import (
    Mamba2Mixer,
    RMSNormGated,
    discretize_dt,
    segment_sum,
    ssd_chunk_scan,
    ssd_recurrent_step,
)

__all__ = [
    "Mamba2Mixer",
    "RMSNormGated",
    "discretize_dt",
    "segment_sum",
    "ssd_chunk_scan",
    "ssd_recurrent_step",
]
