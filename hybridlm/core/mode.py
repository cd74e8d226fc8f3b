"""Selection between the chunked and the step-by-step SSM scan."""

from __future__ import annotations

from enum import Enum


class KernelMode(Enum):
    """Execution mode for the SSM scan."""
    CHUNK = "chunk"          # Chunk-parallel SSD (prefill)
    RECURRENT = "recurrent"  # One recurrence step per token (decode)


def select_mode(seq_len: int, *, threshold: int = 1) -> KernelMode:
    """Chooses chunk vs recurrent mode based on sequence length."""
    if 0 < seq_len <= threshold:
        return KernelMode.RECURRENT
    return KernelMode.CHUNK


__all__ = ["KernelMode", "select_mode"]
