# core/anchor_scheduler.py
import logging
from typing import List

logger = logging.getLogger(__name__)


class AnchorScheduler:
    """
    Re-grounds the model by feeding a fixed, pre-tokenized snippet back
    into the context every `interval` generated tokens.

    The scheduler only decides *when* and *what*; the session appends the
    tokens to the history, which is what assigns their positions.
    """

    def __init__(self, anchor_tokens: List[int], interval: int, enabled: bool = True) -> None:
        self.anchor_tokens = list(anchor_tokens)
        self.interval = interval
        self.enabled = enabled and interval > 0 and bool(self.anchor_tokens)
        self.countdown = interval
        self.injections = 0

        if self.enabled:
            logger.info(
                f"AnchorScheduler ready: {len(self.anchor_tokens)} tokens every {interval} generated tokens."
            )
        else:
            logger.info("AnchorScheduler disabled.")

    def __len__(self) -> int:
        return len(self.anchor_tokens)

    def on_generated(self) -> bool:
        """Count one generated token; True when an anchor is due now."""
        if not self.enabled:
            return False
        self.countdown -= 1
        if self.countdown > 0:
            return False
        self.countdown = self.interval
        self.injections += 1
        return True
