import logging
import math
from typing import Optional

from core.models import TerminalState

logger = logging.getLogger(__name__)


class ContextBudget:
    """
    Positions consumed against the context capacity.

    `check()` is called after every position-consuming event and returns the
    terminal state the session must enter, or None to keep going.
    Exhaustion is checked before the `max_tokens` cap, so a step that hits
    both ends in CONTEXT_EXHAUSTED.
    """

    def __init__(
        self,
        capacity: int,
        overflow_fraction: float = 0.95,
        max_tokens: Optional[int] = None,
    ) -> None:
        self.capacity = capacity
        self.overflow_fraction = overflow_fraction
        self.max_tokens = max_tokens
        # round first: 0.95 * 1000 is not exactly 950.0 in binary floating point
        self.threshold = math.ceil(round(capacity * overflow_fraction, 9))

        self.positions_used = 0
        self.generated = 0
        self.warned = False

    def consume(self, n: int = 1, generated: bool = False) -> None:
        self.positions_used += n
        if generated:
            self.generated += n

    @property
    def remaining(self) -> int:
        return max(0, self.threshold - self.positions_used)

    @property
    def exhausted(self) -> bool:
        return self.positions_used >= self.threshold

    def check(self) -> Optional[TerminalState]:
        if self.exhausted:
            if not self.warned:
                logger.warning(
                    f"Context window exhausted: {self.positions_used}/{self.capacity} positions used "
                    f"(threshold {self.threshold} = {self.overflow_fraction:.0%})."
                )
                self.warned = True
            return TerminalState.CONTEXT_EXHAUSTED

        if self.max_tokens is not None and self.generated >= self.max_tokens:
            logger.info(f"Reached max_tokens ({self.max_tokens}).")
            return TerminalState.MAX_TOKENS_REACHED

        return None
