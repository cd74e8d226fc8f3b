"""Sparse mixture-of-experts blocks.

- TopKRouter: sigmoid scores with group-limited top-k selection
- SwitchMLP: stacked routed experts
- MoEBlock: routed experts plus a shared expert
"""

from .router import TopKRouter, group_limited_scores
from .experts import MoEBlock, SwitchMLP

__all__ = [
    "TopKRouter",
    "group_limited_scores",
    "SwitchMLP",
    "MoEBlock",
]
