# core/penalties.py
"""
Repetition / presence / frequency penalties over a suffix of the token
history.  Order on the same vector:

    1. repeat penalty   (multiplicative, sign-aware so it always lowers)
    2. presence penalty (additive, once per distinct token)
    3. frequency penalty(additive, once per occurrence)

Tokens that do not occur in the window are left untouched.
"""
from __future__ import annotations

import logging
from typing import Sequence

import torch

from core.session_config import UNBOUNDED_WINDOW, SessionConfig

logger = logging.getLogger(__name__)


class PenaltyStage:
    def __init__(
        self,
        repeat_penalty: float = 1.0,
        presence_penalty: float = 0.0,
        frequency_penalty: float = 0.0,
        repeat_last_n: int = UNBOUNDED_WINDOW,
    ) -> None:
        self.repeat_penalty = repeat_penalty
        self.presence_penalty = presence_penalty
        self.frequency_penalty = frequency_penalty
        self.repeat_last_n = repeat_last_n

    @classmethod
    def from_config(cls, config: SessionConfig) -> "PenaltyStage":
        return cls(
            repeat_penalty=config.repeat_penalty,
            presence_penalty=config.presence_penalty,
            frequency_penalty=config.frequency_penalty,
            repeat_last_n=config.penalty_window,
        )

    @property
    def is_noop(self) -> bool:
        return (
            self.repeat_last_n == 0
            or (self.repeat_penalty == 1.0
                and self.presence_penalty == 0.0
                and self.frequency_penalty == 0.0)
        )

    def window(self, history_tokens: Sequence[int]) -> Sequence[int]:
        if self.repeat_last_n == UNBOUNDED_WINDOW:
            return history_tokens
        if self.repeat_last_n == 0:
            return []
        return history_tokens[-self.repeat_last_n:]

    def apply(self, logits: torch.Tensor, window_tokens: Sequence[int]) -> torch.Tensor:
        """Return a penalised copy of `logits`; the input is never modified."""
        if self.is_noop or len(window_tokens) == 0:
            return logits

        vocab = logits.shape[-1]
        ids = torch.as_tensor(list(window_tokens), dtype=torch.long)
        ids = ids[(ids >= 0) & (ids < vocab)]
        if ids.numel() == 0:
            return logits

        unique_ids, counts = torch.unique(ids, return_counts=True)
        out = logits.clone()
        score = out[unique_ids]

        if self.repeat_penalty != 1.0:
            score = torch.where(score < 0, score * self.repeat_penalty, score / self.repeat_penalty)
        if self.presence_penalty != 0.0:
            score = score - self.presence_penalty
        if self.frequency_penalty != 0.0:
            score = score - counts.to(score.dtype) * self.frequency_penalty

        out[unique_ids] = score
        return out
