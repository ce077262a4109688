from abc import ABC, abstractmethod
from typing import List

import torch

from core.errors import EngineFailure


class BaseInferenceEngine(ABC):
    """
    Stateful forward pass over a position-indexed cache.

    Tokens must arrive at strictly increasing, contiguous positions; the
    engine keeps `n_past` (number of positions already in its cache) and
    refuses anything else.
    """

    def __init__(self) -> None:
        self.n_past = 0

    @property
    @abstractmethod
    def vocab_size(self) -> int:
        ...

    @abstractmethod
    def _forward(self, tokens: List[int], start_position: int) -> torch.Tensor:
        """
        Run the model on `tokens` placed at `start_position` onwards and
        return the 1-D logit vector for the last of them.
        """

    def evaluate(self, tokens: List[int], start_position: int) -> torch.Tensor:
        """
        Feed the history suffix the cache has not seen yet.

        Args:
            tokens: Token ids, in order, not yet evaluated.
            start_position: Position of tokens[0]; must equal `n_past`.

        Returns:
            Logits over the vocabulary for the position after the last token.
        """
        if not tokens:
            raise EngineFailure("evaluate called with no tokens", start_position)
        if start_position != self.n_past:
            raise EngineFailure(
                f"non-contiguous evaluate: cache holds {self.n_past} positions, "
                f"got start_position={start_position}",
                start_position,
            )

        logits = self._forward(tokens, start_position)

        if logits is None or logits.dim() != 1 or logits.shape[0] != self.vocab_size:
            raise EngineFailure(
                f"engine returned malformed logits for position {start_position + len(tokens) - 1}",
                start_position + len(tokens) - 1,
            )
        # -inf is a legitimate mask value; NaN, +inf or an all -inf row is not
        if (torch.isnan(logits).any() or torch.isposinf(logits).any()
                or not torch.isfinite(logits).any()):
            raise EngineFailure(
                f"engine returned non-finite logits for position {start_position + len(tokens) - 1}",
                start_position + len(tokens) - 1,
            )
        self.n_past += len(tokens)
        return logits

    def reset(self) -> None:
        self.n_past = 0


class BaseTokenizer(ABC):
    @abstractmethod
    def encode(self, text: str, add_bos: bool = False) -> List[int]:
        ...

    @abstractmethod
    def decode(self, tokens: List[int]) -> str:
        ...

    def decode_token(self, token: int) -> str:
        return self.decode([token])

    def flush(self) -> str:
        """Text still held back by an incremental decoder."""
        return ""
