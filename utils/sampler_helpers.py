# utils/sampler_helpers.py
import math
from typing import Optional

import torch

NEG_INF = float("-inf")


# ── probability helpers ───────────────────────────────────────────────
def _get_probs(logits: torch.Tensor, temperature: float = 1.0) -> torch.Tensor:
    return torch.softmax(logits.float() / temperature, dim=-1)


def apply_top_k(logits: torch.Tensor, top_k: int) -> torch.Tensor:
    """Mask everything outside the k largest logits (k <= 0 keeps all)."""
    if top_k <= 0 or top_k >= logits.numel():
        return logits
    keep = torch.topk(logits, top_k).indices
    drop = torch.ones_like(logits, dtype=torch.bool)
    drop[keep] = False
    return logits.masked_fill(drop, NEG_INF)


def apply_top_p(logits: torch.Tensor, top_p: float) -> torch.Tensor:
    """
    Keep the smallest highest-probability prefix whose cumulative mass
    reaches `top_p`.  The most probable token always survives.
    """
    if top_p >= 1.0:
        return logits
    sorted_logits, sorted_idx = torch.sort(logits, descending=True)
    sorted_probs = torch.softmax(sorted_logits.float(), dim=-1)

    # token i stays iff the mass *before* it is still short of top_p
    before = torch.cumsum(sorted_probs, dim=-1) - sorted_probs
    drop_sorted = before >= top_p
    drop_sorted[0] = False

    drop = torch.zeros_like(drop_sorted)
    drop[sorted_idx] = drop_sorted
    return logits.masked_fill(drop, NEG_INF)


def draw(probs: torch.Tensor, generator: Optional[torch.Generator]) -> int:
    return int(torch.multinomial(probs, num_samples=1, generator=generator).item())


def surprise(prob: float) -> float:
    """Surprise in bits; zero-probability tokens are infinitely surprising."""
    if prob <= 0.0:
        return math.inf
    return -math.log2(prob)
