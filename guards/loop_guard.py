# guards/loop_guard.py
import logging
from typing import Callable, List, Optional, Sequence, Tuple

from nltk.util import ngrams as nltk_ngrams_util

from .base_guard import BaseGuard
from state.token_history import TokenHistory
from core.models import GuardViolation

logger = logging.getLogger(__name__)


class LoopGuard(BaseGuard):
    """
    Hard-stop guard for literal token n-gram repetition.

    Only *generated* tokens are scanned: prompt and anchor tokens are left
    out, otherwise a periodic anchor would look like a loop.

    Modes
    -----
    consecutive   the last ``ngram * repeats`` tokens are one n-gram repeated
                  back to back, ending at the newest token
    window        the n-gram ending at the newest token occurs at least
                  ``repeats`` times (overlaps counted) within the window
    """
    guard_type = "loop"

    def __init__(self, window: int = 64, ngram: int = 4, repeats: int = 3,
                 mode: str = "consecutive",
                 decode: Optional[Callable[[Sequence[int]], str]] = None) -> None:
        super().__init__()
        if mode not in ("consecutive", "window"):
            raise ValueError(f"unknown loop guard mode {mode!r}")
        self.window = window
        self.ngram = ngram
        self.repeats = repeats
        self.mode = mode
        self.decode = decode

        logger.info(
            f"LoopGuard ready: window={window}, ngram={ngram}, repeats={repeats}, mode={mode}"
        )

    def _scan_consecutive(self, tokens: List[int]) -> Optional[Tuple[Tuple[int, ...], int]]:
        span = self.ngram * self.repeats
        if len(tokens) < span:
            return None
        tail = tokens[-span:]
        gram = tuple(tail[-self.ngram:])
        for i in range(self.repeats):
            if tuple(tail[i * self.ngram:(i + 1) * self.ngram]) != gram:
                return None
        return gram, len(tokens) - span

    def _scan_window(self, tokens: List[int]) -> Optional[Tuple[Tuple[int, ...], int]]:
        if len(tokens) < self.ngram:
            return None
        gram = tuple(tokens[-self.ngram:])
        starts = [i for i, g in enumerate(nltk_ngrams_util(tokens, self.ngram)) if g == gram]
        if len(starts) < self.repeats:
            return None
        return gram, starts[0]

    def check(self, history: TokenHistory) -> Optional[GuardViolation]:
        tokens = history.generated_window(self.window)
        found = (
            self._scan_consecutive(tokens)
            if self.mode == "consecutive"
            else self._scan_window(tokens)
        )
        if found is None:
            return None

        gram, start_in_window = found
        generated_len = history.get_generated_length()
        violation_index = generated_len - len(tokens) + start_in_window
        context_len = min(len(tokens), self.ngram * self.repeats * 2)
        if self.decode is not None:
            # per-entry text is shifted when the decoder held back a partial character
            gram_text = self.decode(list(gram))
            context = self.decode(tokens[-context_len:])
        else:
            gram_text = history.generated_text_for(self.ngram)
            context = history.generated_text_for(context_len)

        logger.warning(
            f"Loop violation: {list(gram)} ('{gram_text}') repeated {self.repeats}x "
            f"@gen_tok={violation_index} (mode={self.mode})"
        )

        return GuardViolation(
            guard_type=self.guard_type,
            violation_index=violation_index,
            ngram=list(gram),
            ngram_text=gram_text,
            repeats=self.repeats,
            details={
                "mode": self.mode,
                "window": self.window,
                "generated_tokens": generated_len,
                "context": context,
            },
        )
