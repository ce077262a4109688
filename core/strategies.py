# core/strategies.py
"""
Next-token strategies
=====================

Two interchangeable ways to turn (penalised) logits into one token id:

* ``SamplerChain``       – temperature → top-k → top-p → draw,
                           greedy when temperature is 0.
* ``MirostatController`` – mirostat v2: truncate by surprise against a
                           running ceiling ``mu`` and steer ``mu`` so the
                           observed surprise hovers around ``tau``.

The session picks one with ``build_strategy`` at construction time and
never branches on it again.  Both draw from the same seeded
``torch.Generator`` so a fixed seed reproduces the stream.
"""
from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Optional

import torch

from core.session_config import SessionConfig
from utils.sampler_helpers import (
    _get_probs,
    apply_top_k,
    apply_top_p,
    draw,
    surprise,
)

logger = logging.getLogger(__name__)


def resolve_seed(seed: Optional[int]) -> int:
    """Explicit seed, or a 32-bit value derived from the wall clock."""
    if seed is not None:
        return seed
    return time.time_ns() & 0xFFFF_FFFF


def make_generator(seed: int) -> torch.Generator:
    gen = torch.Generator(device="cpu")
    gen.manual_seed(seed)
    return gen


class NextTokenStrategy(ABC):
    """Common interface: logits in, one token id out."""

    name: str  # subclasses must set

    @abstractmethod
    def select(self, logits: torch.Tensor) -> int:
        raise NotImplementedError


# --------------------------------------------------------------------------- #
#  Fixed pipeline                                                             #
# --------------------------------------------------------------------------- #
class SamplerChain(NextTokenStrategy):
    name = "chain"

    def __init__(
        self,
        temperature: float,
        top_k: int,
        top_p: float,
        generator: Optional[torch.Generator] = None,
    ) -> None:
        self.temperature = temperature
        self.top_k = top_k
        self.top_p = top_p
        self.generator = generator

    @property
    def is_greedy(self) -> bool:
        return self.temperature == 0.0

    def select(self, logits: torch.Tensor) -> int:
        logits = logits.float()
        if self.is_greedy:
            return int(torch.argmax(logits).item())

        logits = logits / self.temperature
        logits = apply_top_k(logits, self.top_k)
        logits = apply_top_p(logits, self.top_p)
        return draw(_get_probs(logits), self.generator)


# --------------------------------------------------------------------------- #
#  Adaptive controller                                                        #
# --------------------------------------------------------------------------- #
class MirostatController(NextTokenStrategy):
    name = "mirostat_v2"

    def __init__(self, tau: float, eta: float, generator: Optional[torch.Generator] = None) -> None:
        self.tau = tau
        self.eta = eta
        self.generator = generator
        self.mu = 2.0 * tau

        self.steps = 0
        self.last_surprise: Optional[float] = None
        self._surprise_sum = 0.0

    @property
    def average_surprise(self) -> float:
        return self._surprise_sum / self.steps if self.steps else 0.0

    def select(self, logits: torch.Tensor) -> int:
        sorted_logits, sorted_idx = torch.sort(logits.float(), descending=True)
        probs = torch.softmax(sorted_logits, dim=-1)

        # truncate where surprise first exceeds mu; keep at least the top token
        surprises = -torch.log2(probs)
        keep = int((surprises <= self.mu).sum().item())
        keep = max(1, keep)

        kept = probs[:keep]
        kept = kept / kept.sum()
        choice = draw(kept, self.generator)

        observed = surprise(float(kept[choice].item()))
        self.mu -= self.eta * (observed - self.tau)

        self.steps += 1
        self.last_surprise = observed
        self._surprise_sum += observed
        return int(sorted_idx[choice].item())


def build_strategy(config: SessionConfig, generator: torch.Generator) -> NextTokenStrategy:
    if config.mirostat_enabled:
        logger.info(f"Using mirostat v2 (tau={config.mirostat_tau}, eta={config.mirostat_eta}).")
        return MirostatController(config.mirostat_tau, config.mirostat_eta, generator)

    logger.info(
        f"Using sampler chain (T={config.temperature}, top_k={config.top_k}, top_p={config.top_p})."
    )
    return SamplerChain(config.temperature, config.top_k, config.top_p, generator)
